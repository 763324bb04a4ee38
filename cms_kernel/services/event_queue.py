"""
Event Queue

Claim/ack/fail helpers shared by the analytics and domain event queues.
Rows move queued -> processing -> processed, or back to queued with an
exponential delay after a failure, and to dead_letter once the attempt
budget is spent.
"""

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.models.event_queue import EventQueueMixin, QueueStatus
from cms_kernel.utils.clock import utc_in, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 8
MAX_BACKOFF_SECONDS = 300
MAX_ERROR_LENGTH = 2000
DEFAULT_BATCH_SIZE = 25


def clamp_batch_size(limit: int, upper: int = 100) -> int:
    return max(1, min(upper, int(limit)))


def failure_backoff_seconds(attempts: int) -> int:
    return min(MAX_BACKOFF_SECONDS, 2 ** max(1, attempts))


async def enqueue(db: AsyncSession, model: type[EventQueueMixin], event: dict[str, Any]) -> str:
    row = model(event=event, status=QueueStatus.QUEUED.value, attempts=0, available_at=utcnow())
    db.add(row)
    await db.commit()
    logger.debug("%s enqueued: %s (%s)", model.__tablename__, row.id, event.get("name"))
    return row.id


async def claim_batch(db: AsyncSession, model: type[EventQueueMixin], limit: int = DEFAULT_BATCH_SIZE) -> list:
    """Claim up to ``limit`` due rows, oldest first, bumping their attempt counter."""
    take = clamp_batch_size(limit)
    result = await db.execute(
        select(model)
        .where(model.status == QueueStatus.QUEUED.value, model.available_at <= utcnow())
        .order_by(model.created_at.asc())
        .limit(take)
        .with_for_update(skip_locked=True)
    )
    rows = list(result.scalars().all())
    for row in rows:
        row.status = QueueStatus.PROCESSING.value
        row.attempts = (row.attempts or 0) + 1
    if rows:
        await db.commit()
    return rows


async def mark_processed(db: AsyncSession, model: type[EventQueueMixin], row_id: str) -> None:
    now = utcnow()
    await db.execute(
        update(model)
        .where(model.id == row_id)
        .values(status=QueueStatus.PROCESSED.value, processed_at=now, updated_at=now)
    )
    await db.commit()


async def mark_failed(
    db: AsyncSession, model: type[EventQueueMixin], row_id: str, attempts: int, error_message: str
) -> str:
    """Requeue with backoff, or dead-letter when attempts are exhausted. Returns the new status."""
    message = str(error_message)[:MAX_ERROR_LENGTH]
    values: dict[str, Any] = {"last_error": message, "updated_at": utcnow()}
    if attempts >= MAX_ATTEMPTS:
        values["status"] = QueueStatus.DEAD_LETTER.value
        logger.error("%s row %s dead-lettered after %s attempts: %s", model.__tablename__, row_id, attempts, message)
    else:
        values["status"] = QueueStatus.QUEUED.value
        values["available_at"] = utc_in(failure_backoff_seconds(attempts))
    await db.execute(update(model).where(model.id == row_id).values(**values))
    await db.commit()
    return values["status"]
