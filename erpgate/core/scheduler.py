import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from erpgate.core.errors import ErrorHandler
from erpgate.services.client_manager import ClientManager
from erpgate.services.idempotency import IdempotencyStore

logger = structlog.get_logger(__name__)

scheduler = AsyncIOScheduler()


async def job_cleanup_idempotency_keys(store: IdempotencyStore) -> int:
    """Delete idempotency keys past their TTL."""
    with ErrorHandler("job_cleanup_idempotency_keys"):
        return store.cleanup_expired()
    return 0


async def job_cleanup_client_cache(client_manager: ClientManager) -> int:
    """Drop tenant clients whose cache entry expired."""
    with ErrorHandler("job_cleanup_client_cache"):
        return client_manager.cleanup_expired()
    return 0


def start_scheduler(store: IdempotencyStore, client_manager: ClientManager) -> None:
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up
    scheduler.add_job(
        job_cleanup_idempotency_keys,
        IntervalTrigger(hours=1),
        args=[store],
        id="job_cleanup_idempotency_keys",
        max_instances=1,
        misfire_grace_time=1800,  # 30 minutes
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_cleanup_client_cache,
        IntervalTrigger(minutes=5),
        args=[client_manager],
        id="job_cleanup_client_cache",
        max_instances=1,
        misfire_grace_time=300,  # 5 minutes
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started",
        jobs=["job_cleanup_idempotency_keys (1h)", "job_cleanup_client_cache (5m)"],
    )


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
