from .auth import get_current_actor, require_admin_actor
from .database import get_db
from .services import get_job_lock, get_settlement_service, get_transfer_gateway

__all__ = [
    "get_current_actor",
    "get_db",
    "get_job_lock",
    "get_settlement_service",
    "get_transfer_gateway",
    "require_admin_actor",
]
