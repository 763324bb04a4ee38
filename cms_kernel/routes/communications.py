"""
Communication Routes

Admin endpoints to send messages through the registered providers, inspect
and retry them, and purge the queue.
"""

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import NETWORK_ADMIN_ROLES, Principal, require_role
from cms_kernel.config import settings
from cms_kernel.database import get_db
from cms_kernel.exceptions import DeliveryError, MessageNotFoundError, SignatureVerificationError
from cms_kernel.services import communications, settings_store
from cms_kernel.services.signing import verify_inbound_signature
from cms_kernel.utils.clock import to_naive_utc

router = APIRouter(prefix="/communications", tags=["Communications"])
logger = logging.getLogger(__name__)

require_admin = require_role(list(NETWORK_ADMIN_ROLES))


# ============== Schemas ==============


class SendRequest(BaseModel):
    channel: str = Field(..., description="email, sms, mms or com-x")
    to: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    subject: str | None = None
    site_id: str | None = None
    category: Literal["transactional", "marketing"] = "transactional"
    metadata: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(None, ge=1, le=10)


class PurgeRequest(BaseModel):
    site_id: str | None = None
    statuses: list[str] | None = None
    before: datetime | None = None


class ProviderCallback(BaseModel):
    message_id: str | None = None
    external_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    status: Literal["sent", "failed", "dead", "logged"] = "sent"
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============== Routes ==============


@router.post("/send", status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    data: SendRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Queue and deliver a message. Governance rejections come back as 403 / 429."""
    return await communications.send_communication(
        db,
        channel=data.channel,
        to=data.to,
        body=data.body,
        site_id=data.site_id,
        subject=data.subject,
        category=data.category,
        metadata=data.metadata,
        max_attempts=data.max_attempts,
        created_by_user_id=principal.user_id,
    )


@router.get("/messages/{message_id}")
async def get_message(
    message_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict[str, Any]:
    return await communications.get_communication_message(db, message_id)


@router.post("/messages/{message_id}/retry")
async def retry_message(
    message_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict[str, Any]:
    result = await communications.retry_communication_message(db, message_id)
    if not result["ok"]:
        raise DeliveryError(result.get("error") or "Communication delivery failed.", target=message_id)
    return result


@router.post("/purge")
async def purge_messages(
    data: PurgeRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict[str, Any]:
    return await communications.purge_communication_queue(
        db, data.site_id, data.statuses, to_naive_utc(data.before)
    )


@router.post("/callbacks/{provider_id}")
async def provider_callback(
    provider_id: str,
    data: ProviderCallback,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Delivery report from a provider, signed like webcallbacks."""
    policy = await settings_store.get_setting(db, settings_store.SIGNATURE_POLICY_KEY)
    verification = verify_inbound_signature(
        "communication-callback", request.headers, await request.body(), settings.webcallback_secret, policy=policy
    )
    if not verification.ok:
        raise SignatureVerificationError(verification.reason)
    result = await communications.apply_communication_callback(
        db,
        provider_id,
        message_id=data.message_id,
        external_id=data.external_id,
        event_id=data.event_id,
        status=data.status,
        error=data.error,
        metadata=data.metadata,
        event_type=data.event_type,
    )
    if not result["ok"]:
        raise MessageNotFoundError(data.message_id or data.external_id or "")
    return result
