"""Actor resolution for the HTTP surface

Authentication happens upstream (API gateway / session layer). By the time a
request reaches this service the caller is identified by two headers.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .domain.appointments.statuses import Actor, ActorRole

logger = logging.getLogger(__name__)


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """Resolve the acting user from X-Actor-Id / X-Actor-Role"""
    if not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Role header")

    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        logger.warning(f"⚠️ Rejected unknown actor role: {x_actor_role}")
        raise HTTPException(status_code=401, detail=f"Unknown actor role: {x_actor_role}") from None

    # System actions come from the webhook and the worker, never from a client
    if role == ActorRole.SYSTEM:
        raise HTTPException(status_code=403, detail="System actor cannot be used over HTTP")

    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")

    return Actor(role=role, id=x_actor_id.strip())


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def actor_user_id(actor: Actor) -> Optional[int]:
    try:
        return int(actor.id)
    except (TypeError, ValueError):
        return None
