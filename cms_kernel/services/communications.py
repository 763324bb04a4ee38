"""
Communications

Outbound messaging (email, sms, mms, com-x) delivered through providers that
plugins register with ``register_communication_provider``. Messages are
stored first, then handed to every provider supporting the channel until one
succeeds. Without any provider the built-in null provider logs the message.

Each status change emits the matching ``communication.*`` domain event.
Sends are subject to per-site governance: an on/off switch and a rate limit.
"""

import inspect
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.exceptions import CommunicationGovernanceError, MessageNotFoundError, ValidationError
from cms_kernel.extensions.hooks import ACTION_COMMUNICATION_QUEUED
from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.models.communication import CommunicationAttempt, CommunicationMessage, CommunicationStatus
from cms_kernel.services import domain_events, settings_store
from cms_kernel.utils.clock import iso_now, utc_in, utcnow

logger = logging.getLogger(__name__)

CHANNELS = ("email", "sms", "mms", "com-x")
CATEGORIES = ("transactional", "marketing")

NULL_PROVIDER_ID = "native:null-provider"
DEFAULT_MAX_ATTEMPTS = 3
RETRY_STEP_SECONDS = 15
MAX_RETRY_DELAY_SECONDS = 300

PENDING_STATUSES = (
    CommunicationStatus.QUEUED.value,
    CommunicationStatus.RETRYING.value,
    CommunicationStatus.FAILED.value,
)

RATE_LIMIT_MAX_KEY = "communication_rate_limit_max"
RATE_LIMIT_WINDOW_KEY = "communication_rate_limit_window_seconds"

_STATUS_EVENTS = {
    CommunicationStatus.QUEUED.value: "communication.queued",
    CommunicationStatus.SENT.value: "communication.sent",
    CommunicationStatus.LOGGED.value: "communication.sent",
    CommunicationStatus.FAILED.value: "communication.failed",
    CommunicationStatus.RETRYING.value: "communication.failed",
    CommunicationStatus.DEAD.value: "communication.dead",
}


# ── Normalization ─────────────────────────────────────────────────────────────


def normalize_channel(value: Any) -> str:
    channel = str(value or "").strip().lower()
    if channel not in CHANNELS:
        raise ValidationError(f"Unsupported communication channel: {channel or '(empty)'}", field="channel")
    return channel


def normalize_to(value: Any) -> str:
    to = str(value or "").strip()
    if not to:
        raise ValidationError("Communication recipient is required.", field="to")
    return to


def normalize_body(value: Any) -> str:
    body = str(value or "").strip()
    if not body:
        raise ValidationError("Communication body is required.", field="body")
    return body


def _metadata(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def retry_delay_seconds(attempt_count: int) -> int:
    return min(MAX_RETRY_DELAY_SECONDS, RETRY_STEP_SECONDS * max(1, attempt_count))


# ── Governance ────────────────────────────────────────────────────────────────


async def get_communication_governance(db: AsyncSession, site_id: str | None) -> dict[str, Any]:
    """
    Effective governance for a site. Site-scoped settings override the
    network ones; the rate limit falls back to application config.
    """
    keys = [settings_store.COMMUNICATION_ENABLED_KEY, RATE_LIMIT_MAX_KEY, RATE_LIMIT_WINDOW_KEY]
    if site_id:
        keys += [settings_store.site_scoped_key(site_id, key) for key in list(keys)]
    stored = await settings_store.get_settings(db, keys)

    def pick(key: str) -> str | None:
        if site_id:
            site_value = stored.get(settings_store.site_scoped_key(site_id, key))
            if site_value is not None:
                return site_value
        return stored.get(key)

    def positive(raw: str | None, default: int) -> int:
        try:
            return max(1, int(raw)) if raw is not None else default
        except ValueError:
            return default

    return {
        "enabled": settings_store.parse_bool(pick(settings_store.COMMUNICATION_ENABLED_KEY), True),
        "rate_limit_max": positive(pick(RATE_LIMIT_MAX_KEY), settings.communication_rate_limit_max),
        "rate_limit_window_seconds": positive(
            pick(RATE_LIMIT_WINDOW_KEY), settings.communication_rate_limit_window_seconds
        ),
    }


async def enforce_communication_governance(db: AsyncSession, site_id: str | None) -> None:
    governance = await get_communication_governance(db, site_id)
    if not governance["enabled"]:
        raise CommunicationGovernanceError("disabled", site_id)
    if not site_id:
        return
    window_start = utcnow() - timedelta(seconds=governance["rate_limit_window_seconds"])
    result = await db.execute(
        select(func.count(CommunicationMessage.id)).where(
            CommunicationMessage.site_id == site_id,
            CommunicationMessage.created_at >= window_start,
        )
    )
    if (result.scalar() or 0) >= governance["rate_limit_max"]:
        logger.warning("Communication rate limit hit for site %s", site_id)
        raise CommunicationGovernanceError("rate_limited", site_id)


# ── Lifecycle ─────────────────────────────────────────────────────────────────


async def _emit_lifecycle_event(
    db: AsyncSession,
    message: CommunicationMessage,
    status: str,
    previous_status: str | None = None,
    error: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    name = _STATUS_EVENTS.get(status)
    if name is None:
        return
    payload: dict[str, Any] = {
        "messageId": message.id,
        "status": status,
        "channel": message.channel,
        "category": message.category,
        "attemptCount": message.attempt_count,
        "maxAttempts": message.max_attempts,
    }
    if previous_status:
        payload["previousStatus"] = previous_status
    if message.provider_id:
        payload["providerId"] = message.provider_id
    if error:
        payload["error"] = error
    if metadata:
        payload["metadata"] = metadata
    event = {"version": 1, "name": name, "timestamp": iso_now(), "actorType": "system", "payload": payload}
    if message.site_id:
        event["siteId"] = message.site_id
    await domain_events.emit_domain_event(db, event)


async def _transition(
    db: AsyncSession,
    message: CommunicationMessage,
    status: str,
    metadata: dict[str, Any] | None = None,
    **changes: Any,
) -> None:
    previous = message.status
    for name, value in changes.items():
        setattr(message, name, value)
    message.status = status
    message.updated_at = utcnow()
    await db.commit()
    if previous != status:
        await _emit_lifecycle_event(db, message, status, previous, changes.get("last_error"), metadata)


def _record_attempt(
    db: AsyncSession,
    message_id: str,
    provider_id: str,
    status: str,
    error: str | None = None,
    response: dict[str, Any] | None = None,
    event_id: str | None = None,
) -> None:
    db.add(
        CommunicationAttempt(
            message_id=message_id,
            provider_id=provider_id,
            event_id=event_id or None,
            status=status,
            error=error or None,
            response=response or {},
        )
    )


def _message_payload(message: CommunicationMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "site_id": message.site_id,
        "channel": message.channel,
        "to": message.to,
        "subject": message.subject,
        "body": message.body,
        "category": message.category,
        "metadata": _metadata(message.meta),
    }


def _order_providers(providers: list[dict[str, Any]], preferred: str) -> list[dict[str, Any]]:
    if not preferred:
        return providers

    def is_preferred(provider: dict[str, Any]) -> bool:
        return provider.get("id") == preferred or f"{provider['plugin_id']}:{provider.get('id')}" == preferred

    # sorted() is stable, so non-preferred providers keep registration order.
    return sorted(providers, key=lambda provider: 0 if is_preferred(provider) else 1)


def _result(message: CommunicationMessage, ok: bool, provider_id: str, error: str | None = None) -> dict[str, Any]:
    result = {"ok": ok, "message_id": message.id, "status": message.status, "provider_id": provider_id}
    if error:
        result["error"] = error
    return result


async def deliver_message(db: AsyncSession, message_id: str) -> dict[str, Any]:
    """Try every provider for the message's channel, preferred provider first."""
    message = await db.get(CommunicationMessage, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)

    kernel = await create_kernel_for_request(db, message.site_id)
    providers = [
        provider
        for provider in kernel.get_all_plugin_communication_providers()
        if message.channel in (provider.get("channels") or ())
    ]
    metadata = _metadata(message.meta)
    providers = _order_providers(providers, str(metadata.get("preferredProvider") or "").strip())

    if not providers:
        _record_attempt(db, message.id, NULL_PROVIDER_ID, CommunicationStatus.SENT.value, response={"mode": "log-only"})
        await _transition(
            db,
            message,
            CommunicationStatus.LOGGED.value,
            metadata={"mode": "log-only"},
            provider_id=NULL_PROVIDER_ID,
            attempt_count=1,
            next_attempt_at=None,
            last_error=None,
        )
        logger.info("Communication %s handled by the null provider (%s to %s)", message.id, message.channel, message.to)
        return _result(message, True, NULL_PROVIDER_ID)

    payload = _message_payload(message)
    attempt_count = message.attempt_count or 0
    last_error = "Communication delivery failed."
    for provider in providers:
        provider_ref = f"{provider['plugin_id']}:{provider.get('id')}"
        try:
            outcome = provider["deliver"](payload)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            attempt_count += 1
            last_error = str(exc)
            _record_attempt(db, message.id, provider_ref, CommunicationStatus.FAILED.value, error=last_error)
            logger.warning("Communication provider %s raised for %s: %s", provider_ref, message.id, exc)
            continue

        attempt_count += 1
        outcome = outcome if isinstance(outcome, dict) else {}
        ok = bool(outcome.get("ok"))
        _record_attempt(
            db,
            message.id,
            provider_ref,
            CommunicationStatus.SENT.value if ok else CommunicationStatus.FAILED.value,
            error=outcome.get("error"),
            response=outcome.get("response"),
        )
        if ok:
            external_id = outcome.get("external_id") or outcome.get("externalId") or None
            await _transition(
                db,
                message,
                CommunicationStatus.SENT.value,
                metadata={"externalId": external_id},
                provider_id=provider_ref,
                external_id=external_id,
                attempt_count=attempt_count,
                next_attempt_at=None,
                last_error=None,
            )
            return _result(message, True, provider_ref)
        last_error = outcome.get("error") or last_error

    terminal = attempt_count >= max(1, message.max_attempts or DEFAULT_MAX_ATTEMPTS)
    status = CommunicationStatus.DEAD.value if terminal else CommunicationStatus.RETRYING.value
    await _transition(
        db,
        message,
        status,
        attempt_count=attempt_count,
        next_attempt_at=None if terminal else utc_in(retry_delay_seconds(attempt_count)),
        last_error=last_error,
    )
    return _result(message, False, "none", last_error)


async def send_communication(
    db: AsyncSession,
    channel: str,
    to: str,
    body: str,
    site_id: str | None = None,
    subject: str | None = None,
    category: str = "transactional",
    metadata: dict[str, Any] | None = None,
    max_attempts: int | None = None,
    created_by_user_id: str | None = None,
) -> dict[str, Any]:
    """
    Store and deliver one message.

    Raises:
        CommunicationGovernanceError: Communications disabled or rate limited
        ValidationError: Unknown channel, blank recipient or body
    """
    site_id = site_id or None
    await enforce_communication_governance(db, site_id)
    channel = normalize_channel(channel)
    to = normalize_to(to)
    body = normalize_body(body)

    message = CommunicationMessage(
        site_id=site_id,
        channel=channel,
        to=to,
        subject=(subject or "").strip() or None,
        body=body,
        category="marketing" if category == "marketing" else "transactional",
        status=CommunicationStatus.QUEUED.value,
        meta=_metadata(metadata),
        created_by_user_id=created_by_user_id,
        max_attempts=max(1, int(max_attempts or DEFAULT_MAX_ATTEMPTS)),
        attempt_count=0,
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    await _emit_lifecycle_event(db, message, CommunicationStatus.QUEUED.value, metadata=_metadata(metadata))

    try:
        kernel = await create_kernel_for_request(db, site_id)
        await kernel.do_action(
            ACTION_COMMUNICATION_QUEUED,
            {"message_id": message.id, "site_id": site_id, "channel": channel, "to": to, "category": message.category},
        )
    except Exception as exc:
        logger.warning("communication:queued action failed for %s: %s", message.id, exc)

    return await deliver_message(db, message.id)


async def retry_pending_communications(db: AsyncSession, limit: int = 20) -> list[dict[str, Any]]:
    now = utcnow()
    result = await db.execute(
        select(CommunicationMessage.id)
        .where(
            CommunicationMessage.status.in_(PENDING_STATUSES),
            or_(CommunicationMessage.next_attempt_at.is_(None), CommunicationMessage.next_attempt_at <= now),
        )
        .order_by(CommunicationMessage.created_at.asc())
        .limit(max(1, int(limit)))
    )
    return [await deliver_message(db, message_id) for message_id in result.scalars().all()]


async def apply_communication_callback(
    db: AsyncSession,
    provider_id: str,
    message_id: str | None = None,
    external_id: str | None = None,
    event_id: str | None = None,
    status: str = CommunicationStatus.SENT.value,
    error: str | None = None,
    metadata: dict[str, Any] | None = None,
    event_type: str | None = None,
) -> dict[str, Any]:
    """Apply a provider's delivery report. Repeated provider event ids are acknowledged once."""
    if message_id:
        message = await db.get(CommunicationMessage, message_id)
    else:
        result = await db.execute(
            select(CommunicationMessage).where(
                CommunicationMessage.provider_id == provider_id,
                CommunicationMessage.external_id == str(external_id or ""),
            )
        )
        message = result.scalars().first()
    if message is None:
        return {"ok": False, "reason": "message_not_found"}

    callback_event_id = str(event_id or "").strip()
    if callback_event_id:
        existing = await db.execute(
            select(CommunicationAttempt.id).where(
                CommunicationAttempt.provider_id == provider_id,
                CommunicationAttempt.event_id == callback_event_id,
            )
        )
        if existing.scalars().first() is not None:
            return {"ok": True, "message_id": message.id, "duplicate": True}

    details = {"eventType": event_type or "callback", **_metadata(metadata)}
    _record_attempt(db, message.id, provider_id, status, error=error, response=details, event_id=callback_event_id)
    await _transition(db, message, status, metadata=details, last_error=error or None)
    return {"ok": True, "message_id": message.id}


async def purge_communication_queue(
    db: AsyncSession,
    site_id: str | None = None,
    statuses: list[str] | None = None,
    before: datetime | None = None,
) -> dict[str, Any]:
    statuses = list(statuses or [status.value for status in CommunicationStatus if status.value != "sent"])
    conditions = [CommunicationMessage.status.in_(statuses)]
    if site_id:
        conditions.append(CommunicationMessage.site_id == site_id)
    if before is not None:
        conditions.append(CommunicationMessage.created_at <= before)
    result = await db.execute(select(CommunicationMessage.id).where(*conditions))
    ids = list(result.scalars().all())
    if ids:
        await db.execute(delete(CommunicationAttempt).where(CommunicationAttempt.message_id.in_(ids)))
        await db.execute(delete(CommunicationMessage).where(CommunicationMessage.id.in_(ids)))
        await db.commit()
    return {"count": len(ids), "ids": ids}


async def get_communication_message(db: AsyncSession, message_id: str) -> dict[str, Any]:
    message = await db.get(CommunicationMessage, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    result = await db.execute(
        select(CommunicationAttempt)
        .where(CommunicationAttempt.message_id == message_id)
        .order_by(CommunicationAttempt.id.asc())
    )
    data = message.to_dict()
    data["attempts"] = [
        {
            "provider_id": attempt.provider_id,
            "event_id": attempt.event_id,
            "status": attempt.status,
            "error": attempt.error,
            "response": attempt.response or {},
        }
        for attempt in result.scalars().all()
    ]
    return data


async def retry_communication_message(db: AsyncSession, message_id: str) -> dict[str, Any]:
    """Requeue one message by hand and deliver it right away."""
    message = await db.get(CommunicationMessage, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    await _transition(db, message, CommunicationStatus.QUEUED.value, next_attempt_at=None, last_error=None)
    return await deliver_message(db, message_id)
