"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(tracker) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from crowdbus.config import settings

    scheduler = AsyncIOScheduler()

    # Cluster, aggregate and broadcast every vehicle
    scheduler.add_job(
        tracker.run_cycle,
        "interval",
        seconds=settings.aggregation_interval_seconds,
        id="aggregate_positions",
        name="Aggregate and broadcast vehicle positions",
        max_instances=1,
    )

    scheduler.add_job(
        tracker.expire_sessions,
        "interval",
        seconds=settings.session_sweep_interval_seconds,
        id="expire_sessions",
        name="End inactive tracking sessions",
        max_instances=1,
    )

    scheduler.add_job(
        tracker.recalculate_trust,
        "interval",
        minutes=settings.trust_recalc_interval_minutes,
        id="recalculate_trust",
        name="Recalculate device trust from behaviour windows",
        max_instances=1,
    )

    scheduler.add_job(
        tracker.prune_trust,
        "interval",
        hours=settings.trust_cleanup_interval_hours,
        id="prune_trust",
        name="Remove trust records of long-inactive devices",
        max_instances=1,
    )

    return scheduler
