"""
Analytics Routes

Public ingestion endpoint and the consent-aware script list for site pages.
Consent is read from the ``cms_analytics_consent`` cookie and the
``Sec-GPC`` header; without consent nothing is stored or returned.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.database import get_db
from cms_kernel.exceptions import ValidationError
from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.services import analytics

router = APIRouter(prefix="/analytics", tags=["Analytics"])
logger = logging.getLogger(__name__)


def _consent(request: Request) -> tuple[str, bool]:
    consent = analytics.parse_analytics_consent(request.cookies.get(analytics.ANALYTICS_CONSENT_COOKIE))
    return consent, analytics.is_gpc_enabled(request.headers.get("sec-gpc"))


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    payload: dict[str, Any],
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Accept one analytics event.

    Returns 202 with ``queued: false`` when consent is missing or GPC is on,
    and 400 when the envelope is not a known version 1 event.
    """
    consent, gpc_enabled = _consent(request)
    if not analytics.should_collect_analytics(consent, gpc_enabled):
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"ok": True, "queued": False})

    event = analytics.normalize_analytics_event(payload)
    if event is None:
        raise ValidationError("Invalid analytics event", field="name")
    event_id = await analytics.emit_analytics_event(db, event)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"ok": True, "queued": True, "id": event_id})


@router.get("/scripts")
async def analytics_scripts(
    request: Request,
    site_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    consent, gpc_enabled = _consent(request)
    kernel = await create_kernel_for_request(db, site_id)
    scripts = await analytics.collect_analytics_scripts(kernel, site_id, consent, gpc_enabled)
    return {"consent": consent, "gpc": gpc_enabled, "scripts": scripts}
