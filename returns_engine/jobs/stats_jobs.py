"""
Return Stats Jobs

Keeps an in-memory snapshot of the dashboard counters so list/stat calls
don't aggregate the whole table on every request. The snapshot is
eventually consistent; stale snapshots are ignored and
ReturnService drops the snapshot after every committed write.
"""

import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone, timedelta

from returns_engine.config import settings

logger = logging.getLogger(__name__)

_stats_snapshot: Optional[Dict[str, Any]] = None
_stats_last_updated: Optional[datetime] = None


def set_cached_stats(stats: Dict[str, Any], refreshed_at: Optional[datetime] = None) -> None:
    global _stats_snapshot, _stats_last_updated
    _stats_last_updated = refreshed_at or datetime.now(timezone.utc)
    _stats_snapshot = {**stats, "generated_at": _stats_last_updated}


def get_cached_stats(max_age_seconds: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Snapshot if it is younger than max_age_seconds, else None."""
    if _stats_snapshot is None or _stats_last_updated is None:
        return None
    max_age = max_age_seconds if max_age_seconds is not None else settings.STATS_MAX_AGE_SECONDS
    if datetime.now(timezone.utc) - _stats_last_updated > timedelta(seconds=max_age):
        return None
    return _stats_snapshot


def clear_cached_stats() -> None:
    global _stats_snapshot, _stats_last_updated
    _stats_snapshot = None
    _stats_last_updated = None


async def refresh_return_stats(session_factory=None) -> Dict[str, Any]:
    """Recompute the stats snapshot. Scheduled by jobs/scheduler.py."""
    from returns_engine.services.return_store import ReturnRequestStore

    if session_factory is None:
        from returns_engine.database import get_db_session
        session_factory = get_db_session

    try:
        async with session_factory() as db:
            stats = await ReturnRequestStore(db).aggregate_stats()
    except Exception as e:
        logger.error(f"Return stats refresh failed: {e}")
        raise

    set_cached_stats(stats)
    logger.info(f"Return stats refreshed: {stats['total_returns']} returns, {stats['pending']} pending")
    return stats
