"""
Resonance — Periodic cleanup scheduling.

An APScheduler ``AsyncIOScheduler`` runs the match expiry sweep every
CLEANUP_INTERVAL_MINUTES on the application's event loop.  The sweep is
idempotent, so overlapping or missed runs are harmless; ``max_instances=1``
and ``coalesce=True`` simply avoid piling them up.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from resonance.config import Settings, get_settings
from resonance.services.matching_service import MatchLifecycleService

logger = structlog.get_logger("resonance.scheduler")

CLEANUP_JOB_ID = "match_cleanup_sweep"


async def run_cleanup_job(lifecycle: MatchLifecycleService) -> None:
    """Scheduled entry point; failures are logged and retried next tick."""
    try:
        report = await lifecycle.run_cleanup()
    except Exception:
        logger.exception("scheduled_cleanup_failed")
        return
    logger.info(
        "scheduled_cleanup_completed",
        expired_by_date=report.expired_by_date,
        expired_abandoned=report.expired_abandoned,
    )


def build_scheduler(
    lifecycle: MatchLifecycleService, settings: Settings | None = None
) -> AsyncIOScheduler:
    settings = settings or get_settings()
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_cleanup_job,
        "interval",
        minutes=settings.CLEANUP_INTERVAL_MINUTES,
        args=[lifecycle],
        id=CLEANUP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
