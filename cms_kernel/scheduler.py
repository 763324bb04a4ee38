import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.database import AsyncSessionLocal
from cms_kernel.services import analytics, communications, domain_events, scheduler_service
from cms_kernel.services.webhooks import WebhookService

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)

TICK_JOB_ID = "cms_kernel_tick"


async def run_maintenance(db: AsyncSession) -> dict[str, Any]:
    """Everything one runner pass does once it holds the lock."""
    summary: dict[str, Any] = {"schedules": await scheduler_service.run_due_schedules(db)}
    summary["analytics"] = await analytics.process_analytics_queue_batch(db)
    summary["domain_events"] = await domain_events.process_domain_queue_batch(db)
    summary["webhooks"] = await WebhookService(db).retry_pending_deliveries()
    summary["communications"] = len(await communications.retry_pending_communications(db))
    return summary


async def run_scheduler_tick() -> dict[str, Any] | None:
    """Background tick; returns None when another runner holds the lock."""
    async with AsyncSessionLocal() as db:
        holder = await scheduler_service.acquire_scheduler_lock(db)
        if holder is None:
            logger.info("[Scheduler] Tick skipped: runner lock is held")
            return None
        try:
            summary = await run_maintenance(db)
        except Exception:
            logger.exception("[Scheduler] Tick failed")
            await db.rollback()
            return None
        finally:
            await scheduler_service.release_scheduler_lock(db, holder)
    logger.info("[Scheduler] Tick finished: %s", summary)
    return summary


def start_scheduler() -> None:
    if not settings.scheduler_enabled:
        logger.info("[Scheduler] Disabled by configuration")
        return
    scheduler.add_job(
        run_scheduler_tick,
        trigger=IntervalTrigger(seconds=max(5, settings.scheduler_interval_seconds)),
        id=TICK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("[Scheduler] Started with a %ss interval", settings.scheduler_interval_seconds)


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
