from returns_engine.models.return_request import (
    ReturnRequest,
    ReturnItem,
    ReturnEvent,
    TimelineImmutableError,
)

__all__ = [
    "ReturnRequest",
    "ReturnItem",
    "ReturnEvent",
    "TimelineImmutableError",
]
