"""
Scheduler Service

Recurring scheduled actions owned by core, plugins or themes, and the cron
runner that executes the due ones.

Core actions are built in (``core.http_ping``). Plugin actions are looked
up among the schedule handlers registered on a freshly built kernel; their
``action_key`` must match the handler id. A runner lease row keeps two
runners from processing the same entries concurrently.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.exceptions import AuthorizationError, ScheduleNotFoundError, ValidationError
from cms_kernel.extensions.runtime import create_kernel_for_request
from cms_kernel.models.schedule import ScheduledAction, ScheduleOwnerType, SchedulerLock, ScheduleRunStatus
from cms_kernel.services import settings_store
from cms_kernel.utils.clock import to_naive_utc, utc_in, utcnow

logger = logging.getLogger(__name__)

SCHEDULER_LOCK_KEY = "cms_scheduler_lock"
DEFAULT_RUN_EVERY_MINUTES = 60
MAX_RUN_EVERY_MINUTES = 24 * 60
HTTP_PING_ACTIONS = ("core.http_ping", "http_ping")
HTTP_PING_TIMEOUT_SECONDS = 15.0


@dataclass
class ScheduleActor:
    """Who is mutating a schedule entry. Admins may touch any entry."""

    is_admin: bool = False
    owner_type: str | None = None
    owner_id: str | None = None


@dataclass
class ActionResult:
    status: str
    error: str | None = None


def to_run_every_minutes(value: Any, fallback: int = DEFAULT_RUN_EVERY_MINUTES) -> int:
    try:
        minutes = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return max(1, min(MAX_RUN_EVERY_MINUTES, minutes))


def to_datetime(value: Any, fallback: datetime) -> datetime:
    """Accept a datetime or ISO string; aware values are converted to naive UTC."""
    if isinstance(value, str) and value.strip():
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return fallback
    if not isinstance(value, datetime):
        return fallback
    return to_naive_utc(value)


def _required(value: Any, label: str, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"Schedule {label} is required", field=field)
    return text


def can_mutate(entry: ScheduledAction, actor: ScheduleActor) -> bool:
    if actor.is_admin:
        return True
    return actor.owner_type == entry.owner_type and actor.owner_id == entry.owner_id


# ── CRUD ──────────────────────────────────────────────────────────────────────


async def create_schedule_entry(
    db: AsyncSession,
    owner_type: str,
    owner_id: str,
    name: str,
    action_key: str,
    site_id: str | None = None,
    payload: dict[str, Any] | None = None,
    enabled: bool = True,
    run_every_minutes: Any = DEFAULT_RUN_EVERY_MINUTES,
    next_run_at: Any = None,
) -> ScheduledAction:
    """
    Create a schedule entry.

    Raises:
        ValidationError: When the name or action key is blank
    """
    entry = ScheduledAction(
        owner_type=ScheduleOwnerType(owner_type).value,
        owner_id=owner_id,
        site_id=site_id or None,
        name=_required(name, "name", "name"),
        action_key=_required(action_key, "action key", "action_key"),
        payload=dict(payload or {}),
        enabled=enabled is not False,
        run_every_minutes=to_run_every_minutes(run_every_minutes),
        next_run_at=to_datetime(next_run_at, utcnow()),
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    logger.info("Schedule %s created for %s:%s (%s)", entry.id, owner_type, owner_id, entry.action_key)
    return entry


async def get_schedule_entry(db: AsyncSession, schedule_id: str) -> ScheduledAction | None:
    return await db.get(ScheduledAction, schedule_id)


async def list_schedule_entries(
    db: AsyncSession,
    owner_type: str | None = None,
    owner_id: str | None = None,
    include_disabled: bool = False,
) -> list[ScheduledAction]:
    query = select(ScheduledAction)
    if not include_disabled:
        query = query.where(ScheduledAction.enabled.is_(True))
    if owner_type:
        query = query.where(ScheduledAction.owner_type == owner_type)
    if owner_id:
        query = query.where(ScheduledAction.owner_id == owner_id)
    result = await db.execute(query.order_by(ScheduledAction.next_run_at.asc(), ScheduledAction.created_at.desc()))
    return list(result.scalars().all())


async def update_schedule_entry(
    db: AsyncSession, schedule_id: str, changes: dict[str, Any], actor: ScheduleActor
) -> ScheduledAction:
    """Apply the provided fields only; omitted fields keep their values."""
    entry = await get_schedule_entry(db, schedule_id)
    if entry is None:
        raise ScheduleNotFoundError(schedule_id)
    if not can_mutate(entry, actor):
        raise AuthorizationError("Not authorized to modify this schedule", required_permission="schedule.owner")

    if "site_id" in changes:
        entry.site_id = changes["site_id"] or None
    if "name" in changes:
        entry.name = _required(changes["name"], "name", "name")
    if "action_key" in changes:
        entry.action_key = _required(changes["action_key"], "action key", "action_key")
    if "payload" in changes:
        entry.payload = dict(changes["payload"] or {})
    if "enabled" in changes:
        entry.enabled = bool(changes["enabled"])
    if "run_every_minutes" in changes:
        entry.run_every_minutes = to_run_every_minutes(changes["run_every_minutes"], entry.run_every_minutes)
    if "next_run_at" in changes:
        entry.next_run_at = to_datetime(changes["next_run_at"], entry.next_run_at)
    entry.updated_at = utcnow()

    await db.commit()
    await db.refresh(entry)
    return entry


async def delete_schedule_entry(db: AsyncSession, schedule_id: str, actor: ScheduleActor) -> dict[str, bool]:
    entry = await get_schedule_entry(db, schedule_id)
    if entry is None:
        return {"ok": True}
    if not can_mutate(entry, actor):
        raise AuthorizationError("Not authorized to delete this schedule", required_permission="schedule.owner")
    await db.execute(delete(ScheduledAction).where(ScheduledAction.id == schedule_id))
    await db.commit()
    logger.info("Schedule %s deleted", schedule_id)
    return {"ok": True}


# ── Runner lock ───────────────────────────────────────────────────────────────


async def acquire_scheduler_lock(
    db: AsyncSession, key: str = SCHEDULER_LOCK_KEY, ttl_seconds: int | None = None
) -> str | None:
    """
    Take the runner lease. Returns a holder token, or None when another
    runner holds an unexpired lease.
    """
    ttl = ttl_seconds or settings.scheduler_lock_ttl_seconds
    now = utcnow()
    holder = uuid.uuid4().hex
    expires_at = now + timedelta(seconds=ttl)

    lock = await db.get(SchedulerLock, key, populate_existing=True)
    if lock is not None:
        if lock.expires_at > now:
            logger.info("Scheduler lock %s is held by %s until %s", key, lock.holder, lock.expires_at)
            return None
        # Expired lease left behind by a runner that died; only one taker wins.
        taken = await db.execute(
            update(SchedulerLock)
            .where(SchedulerLock.key == key, SchedulerLock.expires_at <= now)
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
        )
        await db.commit()
        return holder if taken.rowcount else None

    db.add(SchedulerLock(key=key, holder=holder, acquired_at=now, expires_at=expires_at))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Scheduler lock %s is held by another runner", key)
        return None
    return holder


async def release_scheduler_lock(db: AsyncSession, holder: str, key: str = SCHEDULER_LOCK_KEY) -> None:
    await db.execute(delete(SchedulerLock).where(SchedulerLock.key == key, SchedulerLock.holder == holder))
    await db.commit()


# ── Runner ────────────────────────────────────────────────────────────────────


async def _run_core_action(entry: ScheduledAction, transport: httpx.AsyncBaseTransport | None) -> ActionResult:
    if entry.action_key in HTTP_PING_ACTIONS:
        payload = entry.payload or {}
        url = str(payload.get("url") or "").strip()
        if not url:
            return ActionResult(ScheduleRunStatus.ERROR.value, "payload.url is required")
        method = str(payload.get("method") or "GET").upper()
        async with httpx.AsyncClient(transport=transport, timeout=HTTP_PING_TIMEOUT_SECONDS) as client:
            response = await client.request(method, url)
        if not response.is_success:
            return ActionResult(ScheduleRunStatus.ERROR.value, f"http ping failed: {response.status_code}")
        return ActionResult(ScheduleRunStatus.SUCCESS.value)

    return ActionResult(ScheduleRunStatus.SKIPPED.value, f"core action not found: {entry.action_key}")


async def _run_plugin_action(db: AsyncSession, entry: ScheduledAction) -> ActionResult:
    if entry.owner_type != ScheduleOwnerType.PLUGIN.value:
        return ActionResult(ScheduleRunStatus.SKIPPED.value, f"handler not found for owner type: {entry.owner_type}")

    kernel = await create_kernel_for_request(db)
    handler = next(
        (item for item in kernel.get_plugin_schedule_handlers(entry.owner_id) if item.get("id") == entry.action_key),
        None,
    )
    if handler is None:
        return ActionResult(ScheduleRunStatus.SKIPPED.value, f"handler not found: {entry.owner_id}:{entry.action_key}")
    result = handler["run"]({"site_id": entry.site_id, "payload": dict(entry.payload or {})})
    if inspect.isawaitable(result):
        await result
    return ActionResult(ScheduleRunStatus.SUCCESS.value)


async def run_schedule_entry(
    db: AsyncSession, entry: ScheduledAction, transport: httpx.AsyncBaseTransport | None = None
) -> ActionResult:
    try:
        if entry.owner_type == ScheduleOwnerType.CORE.value:
            return await _run_core_action(entry, transport)
        return await _run_plugin_action(db, entry)
    except Exception as exc:
        logger.warning("Schedule %s (%s) failed: %s", entry.id, entry.action_key, exc)
        return ActionResult(ScheduleRunStatus.ERROR.value, str(exc) or type(exc).__name__)


async def run_due_schedules(
    db: AsyncSession, limit: int = 25, transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, Any]:
    """
    Run every enabled entry whose ``next_run_at`` has passed.

    Returns:
        dict with ``ran``, ``skipped``, ``errors`` and ``message``
    """
    if not await settings_store.get_bool_setting(db, settings_store.SCHEDULES_ENABLED_KEY, False):
        return {"ran": 0, "skipped": 0, "errors": 0, "message": "schedules disabled"}

    result = await db.execute(
        select(ScheduledAction)
        .where(ScheduledAction.enabled.is_(True), ScheduledAction.next_run_at <= utcnow())
        .order_by(ScheduledAction.next_run_at.asc())
        .limit(max(1, min(100, int(limit))))
    )
    due = list(result.scalars().all())

    ran = skipped = errors = 0
    for entry in due:
        outcome = await run_schedule_entry(db, entry, transport)
        entry.last_run_at = utcnow()
        entry.last_status = outcome.status
        entry.last_error = outcome.error or ""
        entry.next_run_at = utc_in(entry.run_every_minutes * 60)
        entry.updated_at = utcnow()
        await db.commit()

        ran += 1
        if outcome.status == ScheduleRunStatus.SKIPPED.value:
            skipped += 1
        elif outcome.status == ScheduleRunStatus.ERROR.value:
            errors += 1

    logger.info("Due schedules processed: due=%s ran=%s skipped=%s errors=%s", len(due), ran, skipped, errors)
    return {"ran": ran, "skipped": skipped, "errors": errors, "message": "ok"}
