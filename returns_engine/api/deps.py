from functools import lru_cache
from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from returns_engine.database import get_db
from returns_engine.core.permissions import Actor, ActorRole
from returns_engine.services.collaborators import Collaborators, build_collaborators
from returns_engine.services.event_publisher import EventPublisher
from returns_engine.services.return_service import ReturnService


logger = logging.getLogger(__name__)


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
    x_actor_name: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Actor identity forwarded by the API gateway.

    Authentication happens upstream; this service trusts the gateway headers.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or invalid actor headers",
    )
    if not x_actor_id or not x_actor_role:
        raise credentials_exception
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        logger.warning(f"Unknown actor role: {x_actor_role}")
        raise credentials_exception
    return Actor(id=x_actor_id, role=role, name=x_actor_name)


async def get_staff_actor(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Admin endpoints are staff only."""
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return actor


@lru_cache()
def get_collaborators() -> Collaborators:
    return build_collaborators()


@lru_cache()
def get_event_publisher() -> EventPublisher:
    return EventPublisher()


async def get_return_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    collaborators: Annotated[Collaborators, Depends(get_collaborators)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> ReturnService:
    return ReturnService(db, collaborators, publisher)


# Type aliases for cleaner dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(get_staff_actor)]
ReturnSvc = Annotated[ReturnService, Depends(get_return_service)]
