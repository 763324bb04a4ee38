"""
Webcallback Routes

Inbound provider callbacks. The raw body is checked against the
``x-cms-signature`` / ``x-cms-timestamp`` headers under the configured
signature policy, then handed to the plugin handler registered for
``handler_id``.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import NETWORK_ADMIN_ROLES, Principal, require_role
from cms_kernel.config import settings
from cms_kernel.database import get_db
from cms_kernel.exceptions import SignatureVerificationError
from cms_kernel.services import settings_store, webcallbacks
from cms_kernel.services.signing import verify_inbound_signature

router = APIRouter(prefix="/webcallbacks", tags=["Webcallbacks"])
logger = logging.getLogger(__name__)


@router.get("/events")
async def recent_events(
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_role(list(NETWORK_ADMIN_ROLES))),
) -> list[dict[str, Any]]:
    return await webcallbacks.list_recent_webcallback_events(db, limit)


@router.post("/{handler_id}")
async def receive_webcallback(
    handler_id: str,
    request: Request,
    site_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    raw_body = await request.body()
    policy = await settings_store.get_setting(db, settings_store.SIGNATURE_POLICY_KEY)
    verification = verify_inbound_signature(
        "webcallback", request.headers, raw_body, settings.webcallback_secret, policy=policy
    )
    if not verification.ok:
        logger.warning("Rejected webcallback for %s: %s", handler_id, verification.reason)
        raise SignatureVerificationError(verification.reason)

    query = {key: value for key, value in request.query_params.items() if key != "site_id"}
    result = await webcallbacks.dispatch_webcallback(
        db,
        handler_id,
        raw_body.decode("utf-8", errors="replace"),
        headers=dict(request.headers),
        query=query,
        site_id=site_id,
    )
    return JSONResponse(status_code=result.status_code, content=result.to_dict())
