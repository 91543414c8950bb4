"""The acting identity handed to the engine by the auth layer."""

from dataclasses import dataclass

from ..core.enums import ActorRole
from ..core.exceptions import ForbiddenException


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role is ActorRole.ADMIN

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=ActorRole.SYSTEM)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenException(
            "Admin access required",
            code="ADMIN_REQUIRED",
            details={"user_id": actor.user_id},
        )


__all__ = ["Actor", "require_admin"]
