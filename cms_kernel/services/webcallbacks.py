"""
Webcallbacks

Inbound HTTP callbacks routed to handlers registered by plugins through
``register_webcallback_handler``. Every callback is recorded before the
handler runs so failed or unroutable requests stay auditable.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.models.webcallback import WebcallbackEvent, WebcallbackStatus
from cms_kernel.utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)

PURGEABLE_STATUSES = (
    WebcallbackStatus.PROCESSED.value,
    WebcallbackStatus.IGNORED.value,
    WebcallbackStatus.FAILED.value,
)


@dataclass
class WebcallbackResult:
    ok: bool
    status_code: int
    message: str
    event_id: int | None = None
    provider_ref: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "event_id": self.event_id,
            "provider_ref": self.provider_ref,
            "result": self.result,
            "error": self.error,
        }


async def dispatch_webcallback(
    db: AsyncSession,
    handler_id: str,
    body: str,
    headers: dict[str, str] | None = None,
    query: dict[str, Any] | None = None,
    site_id: str | None = None,
) -> WebcallbackResult:
    """
    Record an inbound callback and hand it to the matching plugin handler.

    Handlers are matched by their own ``id`` or by ``"{plugin_id}:{id}"``.
    A handler returns a dict with ``ok`` and optionally ``status``,
    ``response`` and ``error``.
    """
    event = WebcallbackEvent(
        site_id=site_id or None,
        handler_id=handler_id,
        status=WebcallbackStatus.RECEIVED.value,
        request_body=body or "",
        request_headers=dict(headers or {}),
        request_query=dict(query or {}),
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)

    kernel = await create_kernel_for_request(db)
    handler = next(
        (
            entry
            for entry in kernel.get_all_plugin_webcallback_handlers()
            if entry.get("id") == handler_id or f"{entry['plugin_id']}:{entry.get('id')}" == handler_id
        ),
        None,
    )

    if handler is None:
        event.status = WebcallbackStatus.IGNORED.value
        event.response = {"reason": "handler_not_found"}
        event.updated_at = utcnow()
        await db.commit()
        logger.info("Webcallback %s ignored: no handler registered", handler_id)
        return WebcallbackResult(ok=False, status_code=404, message="No callback handler registered.", event_id=event.id)

    provider_ref = f"{handler['plugin_id']}:{handler.get('id')}"
    event.plugin_id = handler["plugin_id"]
    try:
        outcome = handler["handle"]({"body": body, "headers": dict(headers or {}), "query": dict(query or {})})
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except Exception as exc:
        event.status = WebcallbackStatus.FAILED.value
        event.error = str(exc)
        event.updated_at = utcnow()
        await db.commit()
        logger.error("Webcallback handler %s raised: %s", provider_ref, exc, extra={"plugin_id": handler["plugin_id"]})
        return WebcallbackResult(
            ok=False,
            status_code=500,
            message="Callback handler threw.",
            event_id=event.id,
            provider_ref=provider_ref,
            error=str(exc),
        )

    outcome = outcome if isinstance(outcome, dict) else {}
    ok = bool(outcome.get("ok"))
    event.status = outcome.get("status") or (WebcallbackStatus.PROCESSED.value if ok else WebcallbackStatus.FAILED.value)
    event.response = outcome.get("response") or {}
    event.error = outcome.get("error") or None
    event.updated_at = utcnow()
    await db.commit()
    return WebcallbackResult(
        ok=ok,
        status_code=202 if ok else 400,
        message="Callback processed." if ok else "Callback handler failed.",
        event_id=event.id,
        provider_ref=provider_ref,
        result=outcome,
    )


async def purge_webcallback_events(
    db: AsyncSession, statuses: list[str] | None = None, before: datetime | None = None
) -> dict[str, Any]:
    statuses = list(statuses or PURGEABLE_STATUSES)
    conditions = [WebcallbackEvent.status.in_(statuses)]
    if before is not None:
        conditions.append(WebcallbackEvent.created_at <= before)
    result = await db.execute(select(WebcallbackEvent.id).where(*conditions))
    ids = list(result.scalars().all())
    if ids:
        await db.execute(delete(WebcallbackEvent).where(WebcallbackEvent.id.in_(ids)))
        await db.commit()
    return {"count": len(ids), "ids": ids}


async def list_recent_webcallback_events(db: AsyncSession, limit: int = 50) -> list[dict[str, Any]]:
    result = await db.execute(
        select(WebcallbackEvent).order_by(WebcallbackEvent.id.desc()).limit(max(1, int(limit)))
    )
    return [
        {
            "id": row.id,
            "handler_id": row.handler_id,
            "plugin_id": row.plugin_id,
            "status": row.status,
            "error": row.error,
            "created_at": isoformat(row.created_at),
            "updated_at": isoformat(row.updated_at),
        }
        for row in result.scalars().all()
    ]
