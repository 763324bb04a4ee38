"""
Scheduled action CRUD, runner lease and due-schedule runner tests.
"""

import textwrap
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cms_kernel.exceptions import AuthorizationError, ScheduleNotFoundError, ValidationError
from cms_kernel.services import scheduler_service, settings_store
from cms_kernel.services.scheduler_service import ScheduleActor
from cms_kernel.utils.clock import utcnow

HEARTBEAT_PLUGIN = textwrap.dedent(
    """
    CALLS = []

    def register(kernel, api):
        api.register_schedule_handler({"id": "heartbeat", "run": CALLS.append})
    """
)


async def enable_schedules(db):
    await settings_store.set_bool_setting(db, settings_store.SCHEDULES_ENABLED_KEY, True)


# ══════════════════════════════════════════════════════════════════════════════
# 1. Normalization
# ══════════════════════════════════════════════════════════════════════════════


class TestNormalization:
    @pytest.mark.parametrize("raw, expected", [("15", 15), (0, 1), (99999, 1440), ("2.9", 2), ("abc", 60), (None, 60)])
    def test_run_every_minutes(self, raw, expected):
        assert scheduler_service.to_run_every_minutes(raw) == expected

    def test_to_datetime_converts_aware_to_naive_utc(self):
        fallback = datetime(2000, 1, 1)
        aware = datetime(2026, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        assert scheduler_service.to_datetime(aware, fallback) == datetime(2026, 5, 1, 10, 0)
        assert scheduler_service.to_datetime("2026-05-01T10:00:00Z", fallback) == datetime(2026, 5, 1, 10, 0)
        assert scheduler_service.to_datetime("not a date", fallback) is fallback
        assert scheduler_service.to_datetime(None, fallback) is fallback


# ══════════════════════════════════════════════════════════════════════════════
# 2. CRUD
# ══════════════════════════════════════════════════════════════════════════════


class TestCrud:
    async def test_create_and_list(self, db_session):
        entry = await scheduler_service.create_schedule_entry(
            db_session, "plugin", "demo", name="Ping", action_key="heartbeat", run_every_minutes="5"
        )

        assert entry.run_every_minutes == 5
        assert entry.enabled is True
        listed = await scheduler_service.list_schedule_entries(db_session, owner_type="plugin", owner_id="demo")
        assert [item.id for item in listed] == [entry.id]

    async def test_blank_name_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await scheduler_service.create_schedule_entry(db_session, "core", "core", name=" ", action_key="x")

    async def test_unknown_owner_type_rejected(self, db_session):
        with pytest.raises(ValueError):
            await scheduler_service.create_schedule_entry(db_session, "robot", "r", name="x", action_key="y")

    async def test_disabled_hidden_by_default(self, db_session):
        await scheduler_service.create_schedule_entry(
            db_session, "core", "core", name="Off", action_key="core.http_ping", enabled=False
        )

        assert await scheduler_service.list_schedule_entries(db_session) == []
        assert len(await scheduler_service.list_schedule_entries(db_session, include_disabled=True)) == 1

    async def test_partial_update(self, db_session):
        entry = await scheduler_service.create_schedule_entry(
            db_session, "plugin", "demo", name="Ping", action_key="heartbeat", payload={"a": 1}
        )
        owner = ScheduleActor(owner_type="plugin", owner_id="demo")

        updated = await scheduler_service.update_schedule_entry(db_session, entry.id, {"name": "Pong"}, owner)

        assert updated.name == "Pong"
        assert updated.payload == {"a": 1}
        assert updated.action_key == "heartbeat"

    async def test_other_owner_cannot_update(self, db_session):
        entry = await scheduler_service.create_schedule_entry(
            db_session, "plugin", "demo", name="Ping", action_key="heartbeat"
        )
        stranger = ScheduleActor(owner_type="plugin", owner_id="other")

        with pytest.raises(AuthorizationError):
            await scheduler_service.update_schedule_entry(db_session, entry.id, {"enabled": False}, stranger)
        with pytest.raises(AuthorizationError):
            await scheduler_service.delete_schedule_entry(db_session, entry.id, stranger)

    async def test_admin_can_delete_any(self, db_session):
        entry = await scheduler_service.create_schedule_entry(
            db_session, "theme", "t", name="Ping", action_key="core.http_ping"
        )

        await scheduler_service.delete_schedule_entry(db_session, entry.id, ScheduleActor(is_admin=True))

        assert await scheduler_service.get_schedule_entry(db_session, entry.id) is None

    async def test_missing_entry(self, db_session):
        with pytest.raises(ScheduleNotFoundError):
            await scheduler_service.update_schedule_entry(db_session, "nope", {}, ScheduleActor(is_admin=True))
        assert await scheduler_service.delete_schedule_entry(db_session, "nope", ScheduleActor()) == {"ok": True}


# ══════════════════════════════════════════════════════════════════════════════
# 3. Runner lease
# ══════════════════════════════════════════════════════════════════════════════


class TestLock:
    async def test_second_runner_blocked(self, db_session):
        holder = await scheduler_service.acquire_scheduler_lock(db_session)

        assert holder is not None
        assert await scheduler_service.acquire_scheduler_lock(db_session) is None

    async def test_release_frees_lock(self, db_session):
        holder = await scheduler_service.acquire_scheduler_lock(db_session)
        await scheduler_service.release_scheduler_lock(db_session, holder)

        assert await scheduler_service.acquire_scheduler_lock(db_session) is not None

    async def test_expired_lease_taken_over(self, db_session):
        from cms_kernel.models.schedule import SchedulerLock

        db_session.add(
            SchedulerLock(
                key=scheduler_service.SCHEDULER_LOCK_KEY,
                holder="dead-runner",
                acquired_at=utcnow() - timedelta(hours=1),
                expires_at=utcnow() - timedelta(minutes=1),
            )
        )
        await db_session.commit()

        holder = await scheduler_service.acquire_scheduler_lock(db_session)

        assert holder not in (None, "dead-runner")


# ══════════════════════════════════════════════════════════════════════════════
# 4. Running due schedules
# ══════════════════════════════════════════════════════════════════════════════


class TestRunDueSchedules:
    async def test_disabled_by_default(self, db_session):
        await scheduler_service.create_schedule_entry(db_session, "core", "core", name="x", action_key="core.http_ping")

        result = await scheduler_service.run_due_schedules(db_session)

        assert result == {"ran": 0, "skipped": 0, "errors": 0, "message": "schedules disabled"}

    async def test_http_ping(self, db_session):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        await enable_schedules(db_session)
        entry = await scheduler_service.create_schedule_entry(
            db_session,
            "core",
            "core",
            name="Ping",
            action_key="core.http_ping",
            payload={"url": "https://status.example/ping", "method": "post"},
            run_every_minutes=10,
        )

        result = await scheduler_service.run_due_schedules(db_session, transport=httpx.MockTransport(handler))

        assert result["ran"] == 1
        assert result["errors"] == 0
        assert requests[0].method == "POST"
        await db_session.refresh(entry)
        assert entry.last_status == "success"
        assert entry.next_run_at > utcnow() + timedelta(minutes=9)

    async def test_ping_failure_and_missing_url(self, db_session):
        await enable_schedules(db_session)
        await scheduler_service.create_schedule_entry(
            db_session, "core", "core", name="Bad", action_key="core.http_ping", payload={"url": "https://x.example"}
        )
        await scheduler_service.create_schedule_entry(
            db_session, "core", "core", name="NoUrl", action_key="core.http_ping"
        )
        transport = httpx.MockTransport(lambda request: httpx.Response(500))

        result = await scheduler_service.run_due_schedules(db_session, transport=transport)

        assert result["errors"] == 2

    async def test_unknown_core_action_skipped(self, db_session):
        await enable_schedules(db_session)
        await scheduler_service.create_schedule_entry(db_session, "core", "core", name="x", action_key="core.mystery")

        result = await scheduler_service.run_due_schedules(db_session)

        assert result["skipped"] == 1

    async def test_future_entries_wait(self, db_session):
        await enable_schedules(db_session)
        await scheduler_service.create_schedule_entry(
            db_session,
            "core",
            "core",
            name="Later",
            action_key="core.mystery",
            next_run_at=utcnow() + timedelta(hours=1),
        )

        assert (await scheduler_service.run_due_schedules(db_session))["ran"] == 0

    async def test_plugin_handler_runs(self, db_session, make_plugin):
        import sys

        make_plugin("ticker", source=HEARTBEAT_PLUGIN, capabilities={"scheduleJobs": True})
        await settings_store.set_setting(db_session, "plugin_ticker_enabled", "true")
        await enable_schedules(db_session)
        await scheduler_service.create_schedule_entry(
            db_session, "plugin", "ticker", name="Beat", action_key="heartbeat", site_id="s1", payload={"n": 1}
        )

        result = await scheduler_service.run_due_schedules(db_session)

        assert result == {"ran": 1, "skipped": 0, "errors": 0, "message": "ok"}
        assert sys.modules["cms_plugins.ticker"].CALLS == [{"site_id": "s1", "payload": {"n": 1}}]

    async def test_missing_plugin_handler_skipped(self, db_session):
        await enable_schedules(db_session)
        await scheduler_service.create_schedule_entry(
            db_session, "plugin", "ghost", name="Beat", action_key="heartbeat"
        )

        result = await scheduler_service.run_due_schedules(db_session)

        assert result["skipped"] == 1
