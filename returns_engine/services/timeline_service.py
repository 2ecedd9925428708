from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from returns_engine.core.permissions import Actor
from returns_engine.models.return_request import ReturnEvent


class TimelineRecorder:
    """
    Appends events to a return's timeline.

    Events join the caller's unit of work: record() flushes but never commits,
    so an event is persisted exactly when the surrounding transition is.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        return_id: uuid.UUID,
        event_type: str,
        previous_status: Optional[str],
        new_status: Optional[str],
        actor: Actor,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReturnEvent:
        """
        Create a timeline event.

        Args:
            return_id: Return request the event belongs to
            event_type: created, approved, rejected, status_change, pickup_scheduled,
                refund_initiated, replacement_initiated, note_added, side_effect_failed
            previous_status: Status before the event
            new_status: Status after the event (equal to previous for notes/failures)
            actor: Who caused the event
            notes: Free text shown in the timeline
            details: Structured extras (refund id, error, ...)

        Returns:
            The flushed ReturnEvent
        """
        entry = ReturnEvent(
            return_id=return_id,
            event_type=event_type,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            actor_type=actor.role.value,
            actor_id=actor.id,
            actor_name=actor.name,
            details=details,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_events(self, return_id: uuid.UUID) -> List[ReturnEvent]:
        """Timeline for a return, newest first."""
        result = await self.db.execute(
            select(ReturnEvent)
            .where(ReturnEvent.return_id == return_id)
            .order_by(ReturnEvent.created_at.desc(), ReturnEvent.id)
        )
        return list(result.scalars().all())
