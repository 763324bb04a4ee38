"""
Analytics Ingestion

Privacy-gated analytics events. Events are normalized, written to the
analytics queue and dispatched to plugins through the ``analytics:event``
action on a kernel built for the event's site. Collection only happens
with explicit consent and never when Global Privacy Control is set.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.extensions.hooks import ACTION_ANALYTICS_EVENT, FILTER_ANALYTICS_SCRIPTS
from cms_kernel.extensions.kernel import Kernel
from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.models.event_queue import AnalyticsEventQueueItem
from cms_kernel.services import event_queue
from cms_kernel.utils.clock import iso_now

logger = logging.getLogger(__name__)

ANALYTICS_CONSENT_COOKIE = "cms_analytics_consent"

CONSENT_GRANTED = "granted"
CONSENT_DENIED = "denied"
CONSENT_UNKNOWN = "unknown"

ANALYTICS_EVENT_NAMES = ("page_view", "content_published", "content_deleted", "custom_event")
ACTOR_TYPES = ("anonymous", "user", "admin", "system")

_GRANTED_VALUES = {"true", "1", "yes", "accept", "accepted", "granted"}
_DENIED_VALUES = {"false", "0", "no", "decline", "declined", "denied"}


# ── Consent ───────────────────────────────────────────────────────────────────


def parse_analytics_consent(raw: str | None) -> str:
    normalized = str(raw or "").strip().lower()
    if normalized in _GRANTED_VALUES:
        return CONSENT_GRANTED
    if normalized in _DENIED_VALUES:
        return CONSENT_DENIED
    return CONSENT_UNKNOWN


def is_gpc_enabled(raw: str | None) -> bool:
    return str(raw or "").strip().lower() in ("1", "true", "yes")


def should_collect_analytics(consent: str, gpc_enabled: bool) -> bool:
    if gpc_enabled:
        return False
    return consent == CONSENT_GRANTED


# ── Normalization ─────────────────────────────────────────────────────────────


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _event_version(raw: Any) -> int | None:
    try:
        return int(raw if raw is not None else 1)
    except (TypeError, ValueError):
        return None


def normalize_event_envelope(data: Any, name_allowed) -> dict[str, Any] | None:
    """
    Shared envelope normalization for analytics and domain events.

    Returns None when the version is not 1 or ``name_allowed(name)`` is
    false. Optional string fields are dropped when blank.
    """
    event = _as_dict(data)
    if _event_version(event.get("version")) != 1:
        return None
    name = _as_str(event.get("name"))
    if not name or not name_allowed(name):
        return None

    actor_type = _as_str(event.get("actorType")).lower()
    if actor_type not in ACTOR_TYPES:
        actor_type = "anonymous"

    normalized: dict[str, Any] = {
        "version": 1,
        "name": name,
        "timestamp": _as_str(event.get("timestamp")) or iso_now(),
        "actorType": actor_type,
        "payload": _as_dict(event.get("payload")),
    }
    for key in ("siteId", "domain", "path", "actorId"):
        value = _as_str(event.get(key))
        if value:
            normalized[key] = value
    meta = _as_dict(event.get("meta"))
    if meta:
        normalized["meta"] = meta
    return normalized


def normalize_analytics_event(data: Any) -> dict[str, Any] | None:
    return normalize_event_envelope(data, lambda name: name in ANALYTICS_EVENT_NAMES)


# ── Queue ─────────────────────────────────────────────────────────────────────


async def enqueue_analytics_event(db: AsyncSession, event: dict[str, Any]) -> str:
    return await event_queue.enqueue(db, AnalyticsEventQueueItem, event)


async def claim_analytics_event_batch(db: AsyncSession, limit: int = event_queue.DEFAULT_BATCH_SIZE):
    return await event_queue.claim_batch(db, AnalyticsEventQueueItem, limit)


async def mark_analytics_event_processed(db: AsyncSession, row_id: str) -> None:
    await event_queue.mark_processed(db, AnalyticsEventQueueItem, row_id)


async def mark_analytics_event_failed(db: AsyncSession, row_id: str, attempts: int, error_message: str) -> str:
    return await event_queue.mark_failed(db, AnalyticsEventQueueItem, row_id, attempts, error_message)


# ── Dispatch ──────────────────────────────────────────────────────────────────

# Guards re-entrant drains within this process only; cross-process
# exclusivity comes from the row claims and the scheduler lease.
_draining = False


async def dispatch_analytics_event_immediate(db: AsyncSession, event: dict[str, Any]) -> None:
    kernel = await create_kernel_for_request(db, event.get("siteId"))
    await kernel.do_action(ACTION_ANALYTICS_EVENT, event, strict=True)


async def process_analytics_queue_batch(db: AsyncSession, limit: int = event_queue.DEFAULT_BATCH_SIZE) -> dict:
    """Drain one batch. A drain already in progress makes this a no-op."""
    global _draining
    if _draining:
        return {"processed": 0}
    _draining = True
    try:
        rows = await claim_analytics_event_batch(db, limit)
        processed = 0
        for row in rows:
            try:
                await dispatch_analytics_event_immediate(db, row.event)
            except Exception as exc:
                logger.warning("Analytics event %s failed (attempt %s): %s", row.id, row.attempts, exc)
                await mark_analytics_event_failed(db, row.id, row.attempts, str(exc))
                continue
            await mark_analytics_event_processed(db, row.id)
            processed += 1
        return {"processed": processed}
    finally:
        _draining = False


async def emit_analytics_event(db: AsyncSession, event: dict[str, Any]) -> str:
    row_id = await enqueue_analytics_event(db, event)
    if settings.analytics_queue_autodrain:
        await process_analytics_queue_batch(db)
    return row_id


async def collect_analytics_scripts(
    kernel: Kernel, site_id: str | None, consent: str, gpc_enabled: bool
) -> list[dict[str, Any]]:
    """Script descriptors contributed by plugins, or nothing without consent."""
    if not should_collect_analytics(consent, gpc_enabled):
        return []
    scripts = await kernel.apply_filters(FILTER_ANALYTICS_SCRIPTS, [], {"site_id": site_id})
    if not isinstance(scripts, list):
        return []
    return [item for item in scripts if isinstance(item, dict) and item.get("id")]
