"""
Cron Routes

External trigger for the scheduler runner, for deployments where the
in-process APScheduler tick is disabled. Authenticated with the static
``cron_run_token`` bearer token.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import verify_cron_token
from cms_kernel.database import get_db
from cms_kernel.exceptions import SchedulerBusyError
from cms_kernel.scheduler import run_maintenance
from cms_kernel.services import scheduler_service

router = APIRouter(prefix="/cron", tags=["Cron"])
logger = logging.getLogger(__name__)


@router.post("/run", dependencies=[Depends(verify_cron_token)])
async def run_cron(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """
    Run one runner pass under the scheduler lock.

    Raises:
        SchedulerBusyError: When another runner holds the lock (409)
    """
    holder = await scheduler_service.acquire_scheduler_lock(db)
    if holder is None:
        raise SchedulerBusyError(scheduler_service.SCHEDULER_LOCK_KEY)
    try:
        summary = await run_maintenance(db)
    finally:
        await scheduler_service.release_scheduler_lock(db, holder)
    return {"ok": True, **summary}
