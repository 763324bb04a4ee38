"""
Domain Events

Named, versioned events describing things that happened (content published,
message sent, ...). Emitted events are queued, dispatched to plugins via the
``domain:event`` action and fanned out to webhook subscriptions.

Core event names are fixed. Extensions may only add names in the
``plugin.`` namespace.
"""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.extensions.hooks import ACTION_DOMAIN_EVENT
from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.models.event_queue import DomainEventQueueItem
from cms_kernel.services import event_queue
from cms_kernel.services.analytics import normalize_event_envelope
from cms_kernel.services.webhooks import WebhookService

logger = logging.getLogger(__name__)

PLUGIN_EVENT_PREFIX = "plugin."

CORE_DOMAIN_EVENT_NAMES = (
    "page_view",
    "content_published",
    "content_deleted",
    "custom_event",
    "site.created",
    "user.invited",
    "communication.queued",
    "communication.sent",
    "communication.failed",
    "communication.dead",
    "rbac.role.changed",
)

_registered_names: set[str] = set(CORE_DOMAIN_EVENT_NAMES)


# ── Names ─────────────────────────────────────────────────────────────────────


def is_valid_event_name(name: str) -> bool:
    if not name:
        return False
    return name in _registered_names or name.startswith(PLUGIN_EVENT_PREFIX)


def register_domain_event_name(name: str) -> bool:
    normalized = str(name or "").strip() if isinstance(name, str) else ""
    if not normalized:
        return False
    if not normalized.startswith(PLUGIN_EVENT_PREFIX) and normalized not in _registered_names:
        return False
    _registered_names.add(normalized)
    return True


def register_domain_event_names(names: list[str]) -> None:
    for name in names:
        register_domain_event_name(name)


def list_domain_event_names() -> list[str]:
    return sorted(_registered_names)


def reset_domain_event_names() -> None:
    """Forget every extension-registered name."""
    _registered_names.clear()
    _registered_names.update(CORE_DOMAIN_EVENT_NAMES)


def normalize_domain_event(data: Any) -> dict[str, Any] | None:
    normalized = normalize_event_envelope(data, is_valid_event_name)
    if normalized is None:
        return None
    event_id = data.get("id") if isinstance(data, dict) else None
    if isinstance(event_id, str) and event_id.strip():
        normalized = {"id": event_id.strip(), **normalized}
    return normalized


# ── Queue ─────────────────────────────────────────────────────────────────────


async def enqueue_domain_event(db: AsyncSession, event: dict[str, Any]) -> str:
    return await event_queue.enqueue(db, DomainEventQueueItem, event)


async def claim_domain_event_batch(db: AsyncSession, limit: int = event_queue.DEFAULT_BATCH_SIZE):
    return await event_queue.claim_batch(db, DomainEventQueueItem, limit)


async def mark_domain_event_processed(db: AsyncSession, row_id: str) -> None:
    await event_queue.mark_processed(db, DomainEventQueueItem, row_id)


async def mark_domain_event_failed(db: AsyncSession, row_id: str, attempts: int, error_message: str) -> str:
    return await event_queue.mark_failed(db, DomainEventQueueItem, row_id, attempts, error_message)


# ── Dispatch ──────────────────────────────────────────────────────────────────

# Guards re-entrant drains within this process only; cross-process
# exclusivity comes from the row claims and the scheduler lease.
_draining = False


async def dispatch_domain_event_immediate(db: AsyncSession, event: dict[str, Any]) -> None:
    """
    Run ``domain:event`` on a kernel for the event's site, then fan out to
    webhooks. Plugin failures propagate so the queue can retry; webhook
    failures are only logged.
    """
    kernel = await create_kernel_for_request(db, event.get("siteId"))
    await kernel.do_action(ACTION_DOMAIN_EVENT, event, strict=True)
    try:
        await WebhookService(db).fanout_domain_event(event)
    except Exception as exc:
        logger.warning(
            "Webhook fanout failed for %s (%s, site=%s): %s",
            event.get("name"),
            event.get("id"),
            event.get("siteId"),
            exc,
        )


async def process_domain_queue_batch(db: AsyncSession, limit: int = event_queue.DEFAULT_BATCH_SIZE) -> dict:
    global _draining
    if _draining:
        return {"processed": 0}
    _draining = True
    try:
        rows = await claim_domain_event_batch(db, limit)
        processed = 0
        for row in rows:
            try:
                await dispatch_domain_event_immediate(db, row.event)
            except Exception as exc:
                logger.warning("Domain event %s failed (attempt %s): %s", row.id, row.attempts, exc)
                await mark_domain_event_failed(db, row.id, row.attempts, str(exc))
                continue
            await mark_domain_event_processed(db, row.id)
            processed += 1
        return {"processed": processed}
    finally:
        _draining = False


async def emit_domain_event(db: AsyncSession, event: dict[str, Any]) -> str:
    """Queue ``event`` (assigning an id when it has none) and drain unless autodrain is off."""
    event = {**event, "id": event.get("id") or uuid.uuid4().hex}
    await enqueue_domain_event(db, event)
    if settings.domain_event_queue_autodrain:
        await process_domain_queue_batch(db)
    return event["id"]
