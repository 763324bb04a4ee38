"""
Webhook Delivery

Subscriptions map one domain event name to one endpoint, per site (or
network-wide with a null site). Every emitted domain event fans out into one
delivery row per matching enabled subscription; deliveries are POSTed with
signature headers and retried with exponential backoff until they are sent
or run out of attempts.
"""

import json
import logging
from typing import Any

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.exceptions import ValidationError
from cms_kernel.models.webhook import WebhookDelivery, WebhookDeliveryStatus, WebhookSubscription
from cms_kernel.services import signing
from cms_kernel.utils.clock import utc_in, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 4
DEFAULT_BACKOFF_BASE_SECONDS = 30
MIN_BACKOFF_BASE_SECONDS = 5
MAX_BACKOFF_SECONDS = 600
MAX_BODY_LENGTH = 2000
MAX_RETRY_BATCH = 200

PENDING_STATUSES = (
    WebhookDeliveryStatus.QUEUED.value,
    WebhookDeliveryStatus.RETRYING.value,
    WebhookDeliveryStatus.FAILED.value,
)


def _clean(value: Any) -> str:
    return str(value or "").strip()


def _positive_int(value: Any, default: int, floor: int) -> int:
    try:
        parsed = int(value) if value else default
    except (TypeError, ValueError):
        parsed = default
    return max(floor, parsed)


def calculate_backoff_seconds(base_seconds: int | None, attempt: int | None) -> int:
    base = max(MIN_BACKOFF_BASE_SECONDS, int(base_seconds or DEFAULT_BACKOFF_BASE_SECONDS))
    count = max(1, min(10, int(attempt or 1)))
    return min(MAX_BACKOFF_SECONDS, base * 2 ** (count - 1))


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def to_webhook_payload(event: dict[str, Any]) -> dict[str, Any]:
    """The snake_case envelope sent to subscribers."""
    return {
        "event_id": _clean(event.get("id")),
        "timestamp": event.get("timestamp"),
        "site_id": event.get("siteId") or None,
        "event_name": event.get("name"),
        "version": event.get("version", 1),
        "domain": event.get("domain") or None,
        "path": event.get("path") or None,
        "actor_type": event.get("actorType") or None,
        "actor_id": event.get("actorId") or None,
        "payload": event.get("payload") or {},
        "meta": event.get("meta") or {},
    }


def subscription_to_dict(subscription: WebhookSubscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "site_id": subscription.site_id,
        "event_name": subscription.event_name,
        "endpoint_url": subscription.endpoint_url,
        "has_secret": bool(subscription.secret),
        "enabled": subscription.enabled,
        "max_retries": subscription.max_retries,
        "backoff_base_seconds": subscription.backoff_base_seconds,
        "headers": subscription.headers or {},
    }


class WebhookService:
    """Subscription management and delivery of domain events to webhooks."""

    def __init__(self, db: AsyncSession, transport: httpx.AsyncBaseTransport | None = None):
        self.db = db
        self.transport = transport

    # ── Subscriptions ─────────────────────────────────────────────────────────

    async def list_subscriptions(self, site_id: str | None = None) -> list[WebhookSubscription]:
        """Subscriptions of one site, or the network-wide ones when ``site_id`` is blank."""
        site_id = _clean(site_id)
        site_filter = WebhookSubscription.site_id == site_id if site_id else WebhookSubscription.site_id.is_(None)
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(site_filter)
            .order_by(WebhookSubscription.event_name.asc(), WebhookSubscription.endpoint_url.asc())
        )
        return list(result.scalars().all())

    async def upsert_subscription(
        self,
        event_name: str,
        endpoint_url: str,
        site_id: str | None = None,
        secret: str | None = None,
        enabled: bool = True,
        max_retries: int | None = None,
        backoff_base_seconds: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> WebhookSubscription:
        """
        Create or update the subscription identified by (site, event, URL).

        Raises:
            ValidationError: When the event name or endpoint URL is blank
        """
        event_name = _clean(event_name)
        endpoint_url = _clean(endpoint_url)
        if not event_name:
            raise ValidationError("Webhook subscription event name is required.", field="event_name")
        if not endpoint_url:
            raise ValidationError("Webhook subscription endpoint URL is required.", field="endpoint_url")
        site_id = _clean(site_id) or None

        site_filter = WebhookSubscription.site_id == site_id if site_id else WebhookSubscription.site_id.is_(None)
        result = await self.db.execute(
            select(WebhookSubscription).where(
                site_filter,
                WebhookSubscription.event_name == event_name,
                WebhookSubscription.endpoint_url == endpoint_url,
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            subscription = WebhookSubscription(site_id=site_id, event_name=event_name, endpoint_url=endpoint_url)
            self.db.add(subscription)

        subscription.secret = _clean(secret) or None
        subscription.enabled = enabled is not False
        subscription.max_retries = _positive_int(max_retries, DEFAULT_MAX_RETRIES, 1)
        subscription.backoff_base_seconds = _positive_int(
            backoff_base_seconds, DEFAULT_BACKOFF_BASE_SECONDS, MIN_BACKOFF_BASE_SECONDS
        )
        subscription.headers = dict(headers or {})
        subscription.updated_at = utcnow()

        await self.db.commit()
        await self.db.refresh(subscription)
        logger.info("Webhook subscription %s stored: %s -> %s", subscription.id, event_name, endpoint_url)
        return subscription

    async def delete_subscription(self, subscription_id: int) -> None:
        await self.db.execute(delete(WebhookDelivery).where(WebhookDelivery.subscription_id == subscription_id))
        await self.db.execute(delete(WebhookSubscription).where(WebhookSubscription.id == subscription_id))
        await self.db.commit()
        logger.info("Webhook subscription %s deleted", subscription_id)

    # ── Deliveries ────────────────────────────────────────────────────────────

    async def enqueue_deliveries(self, event: dict[str, Any]) -> int:
        """Insert one delivery per matching subscription; repeats of an event id are ignored."""
        event_id = _clean(event.get("id"))
        if not event_id:
            return 0
        site_id = _clean(event.get("siteId"))
        site_filter = WebhookSubscription.site_id == site_id if site_id else WebhookSubscription.site_id.is_(None)
        result = await self.db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.enabled.is_(True),
                WebhookSubscription.event_name == event.get("name"),
                site_filter,
            )
        )
        subscriptions = list(result.scalars().all())
        if not subscriptions:
            return 0

        base_payload = to_webhook_payload(event)
        inserted = 0
        for subscription in subscriptions:
            existing = await self.db.execute(
                select(WebhookDelivery.id).where(
                    WebhookDelivery.subscription_id == subscription.id,
                    WebhookDelivery.event_id == event_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                continue

            signed = signing.sign_canonical_payload(canonical_json(base_payload), secret=subscription.secret)
            body = canonical_json({**base_payload, "signature": signed.signature})
            headers = {
                "content-type": "application/json",
                signing.EVENT_ID_HEADER: base_payload["event_id"],
                signing.EVENT_NAME_HEADER: base_payload["event_name"],
                signing.SITE_ID_HEADER: base_payload["site_id"] or "",
                signing.TIMESTAMP_HEADER: signed.timestamp,
                signing.SIGNATURE_HEADER: signed.signature,
                signing.PAYLOAD_HASH_HEADER: signed.payload_hash,
                **(subscription.headers if isinstance(subscription.headers, dict) else {}),
            }
            self.db.add(
                WebhookDelivery(
                    subscription_id=subscription.id,
                    site_id=subscription.site_id,
                    event_id=event_id,
                    event_name=base_payload["event_name"],
                    endpoint_url=subscription.endpoint_url,
                    status=WebhookDeliveryStatus.QUEUED.value,
                    attempt_count=0,
                    max_attempts=max(1, subscription.max_retries or DEFAULT_MAX_RETRIES),
                    request_body=body,
                    request_headers=headers,
                    next_attempt_at=utcnow(),
                )
            )
            inserted += 1

        if inserted:
            await self.db.commit()
        return inserted

    async def _backoff_base(self, subscription_id: int) -> int:
        result = await self.db.execute(
            select(WebhookSubscription.backoff_base_seconds).where(WebhookSubscription.id == subscription_id)
        )
        return result.scalar_one_or_none() or DEFAULT_BACKOFF_BASE_SECONDS

    async def deliver(self, delivery_id: str) -> dict[str, Any]:
        """POST one delivery and record the outcome."""
        delivery = await self.db.get(WebhookDelivery, delivery_id)
        if delivery is None:
            return {"ok": False, "status": WebhookDeliveryStatus.DEAD.value, "error": "delivery_not_found"}

        headers = delivery.request_headers if isinstance(delivery.request_headers, dict) else {}
        attempt = max(0, delivery.attempt_count or 0) + 1
        response_status = None
        response_body = None
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=settings.webhook_timeout_seconds) as client:
                response = await client.post(delivery.endpoint_url, content=delivery.request_body, headers=headers)
            response_status = response.status_code
            response_body = response.text[:MAX_BODY_LENGTH]
            error = None if response.is_success else f"http_{response.status_code}"
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
        except Exception as exc:
            logger.warning("Webhook delivery %s to %s raised: %s", delivery.id, delivery.endpoint_url, exc)
            error = str(exc) or type(exc).__name__

        delivery.attempt_count = attempt
        delivery.response_status = response_status
        delivery.response_body = response_body
        delivery.updated_at = utcnow()

        if error is None:
            delivery.status = WebhookDeliveryStatus.SENT.value
            delivery.next_attempt_at = None
            delivery.last_error = None
            await self.db.commit()
            return {"ok": True, "status": delivery.status}

        terminal = attempt >= max(1, delivery.max_attempts or DEFAULT_MAX_RETRIES)
        delivery.status = WebhookDeliveryStatus.DEAD.value if terminal else WebhookDeliveryStatus.RETRYING.value
        delivery.last_error = error[:MAX_BODY_LENGTH]
        if terminal:
            delivery.next_attempt_at = None
            logger.error("Webhook delivery %s dead after %s attempts: %s", delivery.id, attempt, error)
        else:
            backoff = calculate_backoff_seconds(await self._backoff_base(delivery.subscription_id), attempt)
            delivery.next_attempt_at = utc_in(backoff)
            logger.warning("Webhook delivery %s failed (attempt %s), retry in %ss: %s", delivery.id, attempt, backoff, error)
        await self.db.commit()
        return {"ok": False, "status": delivery.status, "error": error}

    async def retry_pending_deliveries(self, limit: int = 25) -> dict[str, int]:
        now = utcnow()
        result = await self.db.execute(
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status.in_(PENDING_STATUSES),
                (WebhookDelivery.next_attempt_at.is_(None)) | (WebhookDelivery.next_attempt_at <= now),
            )
            .order_by(WebhookDelivery.created_at.asc())
            .limit(max(1, min(MAX_RETRY_BATCH, int(limit))))
        )
        processed = failed = dead = 0
        for delivery_id in result.scalars().all():
            outcome = await self.deliver(delivery_id)
            processed += 1
            if not outcome["ok"]:
                failed += 1
            if outcome["status"] == WebhookDeliveryStatus.DEAD.value:
                dead += 1
        if processed:
            logger.info("Webhook retry batch: processed=%s failed=%s dead=%s", processed, failed, dead)
        return {"processed": processed, "failed": failed, "dead": dead}

    async def fanout_domain_event(self, event: dict[str, Any]) -> dict[str, int]:
        inserted = await self.enqueue_deliveries(event)
        if inserted <= 0:
            return {"inserted": 0, "delivered": 0}
        delivered = await self.retry_pending_deliveries(max(1, inserted))
        return {"inserted": inserted, "delivered": delivered["processed"]}


def get_webhook_service(db: AsyncSession) -> WebhookService:
    return WebhookService(db)
