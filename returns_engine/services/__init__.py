# Services module
from returns_engine.services.return_state_machine import ReturnStatus, TransitionValidator
from returns_engine.services.timeline_service import TimelineRecorder
from returns_engine.services.return_store import ReturnRequestStore
from returns_engine.services.side_effect_orchestrator import SideEffectOrchestrator
from returns_engine.services.event_publisher import EventPublisher
from returns_engine.services.return_service import ReturnService

__all__ = [
    "ReturnStatus",
    "TransitionValidator",
    "TimelineRecorder",
    "ReturnRequestStore",
    "SideEffectOrchestrator",
    "EventPublisher",
    "ReturnService",
]
