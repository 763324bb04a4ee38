"""
Webhook Routes

API endpoints for webhook subscription management and delivery retries.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import NETWORK_ADMIN_ROLES, Principal, require_role
from cms_kernel.database import get_db
from cms_kernel.services import domain_events
from cms_kernel.services.webhooks import WebhookService, subscription_to_dict

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)

require_admin = require_role(list(NETWORK_ADMIN_ROLES))


# ============== Schemas ==============


class SubscriptionRequest(BaseModel):
    """Create or update the subscription identified by (site, event, URL)."""

    event_name: str = Field(..., min_length=1)
    endpoint_url: HttpUrl
    site_id: str | None = None
    secret: str | None = Field(None, description="Shared secret used to sign deliveries")
    enabled: bool = True
    max_retries: int | None = Field(None, ge=0, le=20)
    backoff_base_seconds: int | None = Field(None, ge=5, le=600)
    headers: dict[str, str] = Field(default_factory=dict)


# ============== Routes ==============


@router.get("/events")
async def list_available_events(_principal: Principal = Depends(require_admin)) -> dict[str, list[str]]:
    """Domain event names a subscription can target, core and plugin-declared."""
    return {"events": domain_events.list_domain_event_names()}


@router.get("/subscriptions")
async def list_subscriptions(
    site_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> list[dict[str, Any]]:
    subscriptions = await WebhookService(db).list_subscriptions(site_id)
    return [subscription_to_dict(subscription) for subscription in subscriptions]


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def upsert_subscription(
    data: SubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict[str, Any]:
    subscription = await WebhookService(db).upsert_subscription(
        event_name=data.event_name,
        endpoint_url=str(data.endpoint_url),
        site_id=data.site_id,
        secret=data.secret,
        enabled=data.enabled,
        max_retries=data.max_retries,
        backoff_base_seconds=data.backoff_base_seconds,
        headers=data.headers,
    )
    return subscription_to_dict(subscription)


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: int,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> None:
    await WebhookService(db).delete_subscription(subscription_id)


@router.post("/deliveries/retry")
async def retry_deliveries(
    limit: int = 25,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> dict[str, int]:
    return await WebhookService(db).retry_pending_deliveries(limit)
