# backend/mentr/api/dependencies/auth.py
"""
Actor dependencies.

Authentication happens upstream; the auth middleware places an ``Actor`` on
``request.state.actor``. These dependencies only read it and re-check the role.
"""

import logging

from fastapi import Depends, Request

from ...core.exceptions import UnauthorizedException
from ...domain.actor import Actor, require_admin

logger = logging.getLogger(__name__)


def get_current_actor(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if not isinstance(actor, Actor):
        raise UnauthorizedException("Authentication required", code="NOT_AUTHENTICATED")
    return actor


def require_admin_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    require_admin(actor)
    return actor
