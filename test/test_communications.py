"""
Outbound communication tests: providers, retries, governance and callbacks.
"""

import textwrap

import pytest
from sqlalchemy import select

from cms_kernel.exceptions import CommunicationGovernanceError, MessageNotFoundError, ValidationError
from cms_kernel.models.communication import CommunicationAttempt
from cms_kernel.models.event_queue import DomainEventQueueItem
from cms_kernel.services import communications, settings_store

OK_PROVIDER = textwrap.dedent(
    """
    SENT = []

    def deliver(message):
        SENT.append(message)
        return {"ok": True, "external_id": "ext-" + message["id"][:6]}

    def register(kernel, api):
        api.register_communication_provider({"id": "mailer", "channels": ["email"], "deliver": deliver})
    """
)

FAILING_PROVIDER = textwrap.dedent(
    """
    def deliver(message):
        return {"ok": False, "error": "mailbox full"}

    def register(kernel, api):
        api.register_communication_provider({"id": "bouncer", "channels": ["email"], "deliver": deliver})
    """
)

RAISING_PROVIDER = textwrap.dedent(
    """
    def deliver(message):
        raise ConnectionError("smtp down")

    def register(kernel, api):
        api.register_communication_provider({"id": "broken", "channels": ["email", "sms"], "deliver": deliver})
    """
)


@pytest.fixture
def provider_plugin(db_session, make_plugin):
    async def _install(plugin_id, source):
        make_plugin(plugin_id, source=source, capabilities={"communicationProviders": True})
        await settings_store.set_setting(db_session, f"plugin_{plugin_id}_enabled", "true")

    return _install


async def emitted_event_names(db):
    result = await db.execute(select(DomainEventQueueItem))
    return [row.event["name"] for row in result.scalars().all()]


# ══════════════════════════════════════════════════════════════════════════════
# 1. Validation
# ══════════════════════════════════════════════════════════════════════════════


class TestValidation:
    def test_channels(self):
        assert communications.normalize_channel(" EMAIL ") == "email"
        assert communications.normalize_channel("com-x") == "com-x"
        with pytest.raises(ValidationError):
            communications.normalize_channel("fax")

    async def test_blank_recipient_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await communications.send_communication(db_session, channel="email", to=" ", body="hi")

    async def test_blank_body_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await communications.send_communication(db_session, channel="sms", to="+100", body="")

    def test_retry_delay(self):
        assert communications.retry_delay_seconds(1) == 15
        assert communications.retry_delay_seconds(3) == 45
        assert communications.retry_delay_seconds(100) == 300


# ══════════════════════════════════════════════════════════════════════════════
# 2. Delivery
# ══════════════════════════════════════════════════════════════════════════════


class TestDelivery:
    async def test_null_provider_logs(self, db_session):
        result = await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi")

        assert result["ok"] is True
        assert result["status"] == "logged"
        assert result["provider_id"] == communications.NULL_PROVIDER_ID
        assert await emitted_event_names(db_session) == ["communication.queued", "communication.sent"]

    async def test_plugin_provider_used(self, db_session, provider_plugin):
        await provider_plugin("mailer-plugin", OK_PROVIDER)

        result = await communications.send_communication(
            db_session, channel="email", to="a@example.com", subject=" Hello ", body="hi", site_id="s1"
        )

        assert result["ok"] is True
        assert result["status"] == "sent"
        assert result["provider_id"] == "mailer-plugin:mailer"
        message = await communications.get_communication_message(db_session, result["message_id"])
        assert message["subject"] == "Hello"
        assert message["external_id"].startswith("ext-")
        assert [attempt["status"] for attempt in message["attempts"]] == ["sent"]

    async def test_provider_needs_matching_channel(self, db_session, provider_plugin):
        await provider_plugin("mailer-plugin", OK_PROVIDER)

        result = await communications.send_communication(db_session, channel="sms", to="+100", body="hi")

        assert result["provider_id"] == communications.NULL_PROVIDER_ID

    async def test_falls_through_to_next_provider(self, db_session, provider_plugin):
        await provider_plugin("a-broken", RAISING_PROVIDER)
        await provider_plugin("b-mailer", OK_PROVIDER)

        result = await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi")

        assert result["provider_id"] == "b-mailer:mailer"
        message = await communications.get_communication_message(db_session, result["message_id"])
        assert [attempt["status"] for attempt in message["attempts"]] == ["failed", "sent"]
        assert message["attempt_count"] == 2

    async def test_preferred_provider_first(self, db_session, provider_plugin):
        await provider_plugin("a-mailer", OK_PROVIDER)
        await provider_plugin("b-broken", RAISING_PROVIDER)

        result = await communications.send_communication(
            db_session,
            channel="email",
            to="a@example.com",
            body="hi",
            metadata={"preferredProvider": "b-broken:broken"},
        )

        message = await communications.get_communication_message(db_session, result["message_id"])
        assert [attempt["provider_id"] for attempt in message["attempts"]] == ["b-broken:broken", "a-mailer:mailer"]

    async def test_failure_schedules_retry_then_dead(self, db_session, provider_plugin):
        await provider_plugin("bouncer-plugin", FAILING_PROVIDER)

        first = await communications.send_communication(
            db_session, channel="email", to="a@example.com", body="hi", max_attempts=2
        )
        assert first["ok"] is False
        assert first["status"] == "retrying"
        assert first["error"] == "mailbox full"

        second = await communications.retry_communication_message(db_session, first["message_id"])
        assert second["status"] == "dead"
        assert "communication.dead" in await emitted_event_names(db_session)

    async def test_retry_pending_skips_future(self, db_session, provider_plugin):
        await provider_plugin("bouncer-plugin", FAILING_PROVIDER)
        await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi")

        assert await communications.retry_pending_communications(db_session) == []

    async def test_unknown_message(self, db_session):
        with pytest.raises(MessageNotFoundError):
            await communications.deliver_message(db_session, "missing")
        with pytest.raises(MessageNotFoundError):
            await communications.get_communication_message(db_session, "missing")


# ══════════════════════════════════════════════════════════════════════════════
# 3. Governance
# ══════════════════════════════════════════════════════════════════════════════


class TestGovernance:
    async def test_defaults_from_config(self, db_session):
        governance = await communications.get_communication_governance(db_session, "s1")
        assert governance == {"enabled": True, "rate_limit_max": 60, "rate_limit_window_seconds": 60}

    async def test_site_setting_overrides_network(self, db_session):
        await settings_store.set_setting(db_session, "communication_enabled", "false")
        await settings_store.set_setting(db_session, "site_s1_communication_enabled", "true")

        assert (await communications.get_communication_governance(db_session, "s1"))["enabled"] is True
        assert (await communications.get_communication_governance(db_session, "s2"))["enabled"] is False

    async def test_disabled_site_rejects(self, db_session):
        await settings_store.set_setting(db_session, "site_s1_communication_enabled", "false")

        with pytest.raises(CommunicationGovernanceError) as exc_info:
            await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi", site_id="s1")

        assert exc_info.value.status_code == 403

    async def test_rate_limit(self, db_session):
        await settings_store.set_setting(db_session, "site_s1_communication_rate_limit_max", "1")
        await communications.send_communication(db_session, channel="email", to="a@example.com", body="1", site_id="s1")

        with pytest.raises(CommunicationGovernanceError) as exc_info:
            await communications.send_communication(
                db_session, channel="email", to="a@example.com", body="2", site_id="s1"
            )

        assert exc_info.value.status_code == 429
        await communications.send_communication(db_session, channel="email", to="a@example.com", body="3", site_id="s2")


# ══════════════════════════════════════════════════════════════════════════════
# 4. Provider callbacks and purge
# ══════════════════════════════════════════════════════════════════════════════


class TestCallbacksAndPurge:
    async def test_callback_by_external_id(self, db_session, provider_plugin):
        await provider_plugin("mailer-plugin", OK_PROVIDER)
        sent = await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi")
        message = await communications.get_communication_message(db_session, sent["message_id"])

        result = await communications.apply_communication_callback(
            db_session,
            "mailer-plugin:mailer",
            external_id=message["external_id"],
            event_id="evt-9",
            status="failed",
            error="bounced",
        )

        assert result == {"ok": True, "message_id": sent["message_id"]}
        updated = await communications.get_communication_message(db_session, sent["message_id"])
        assert updated["status"] == "failed"
        assert updated["last_error"] == "bounced"

    async def test_duplicate_callback_acknowledged_once(self, db_session):
        sent = await communications.send_communication(db_session, channel="sms", to="+100", body="hi")

        for _ in range(2):
            result = await communications.apply_communication_callback(
                db_session, "carrier", message_id=sent["message_id"], event_id="dup-1"
            )

        assert result["duplicate"] is True
        rows = await db_session.execute(
            select(CommunicationAttempt).where(CommunicationAttempt.provider_id == "carrier")
        )
        assert len(rows.scalars().all()) == 1

    async def test_callback_for_unknown_message(self, db_session):
        result = await communications.apply_communication_callback(db_session, "carrier", external_id="nope")
        assert result == {"ok": False, "reason": "message_not_found"}

    async def test_purge_keeps_sent(self, db_session, provider_plugin):
        await provider_plugin("mailer-plugin", OK_PROVIDER)
        sent = await communications.send_communication(db_session, channel="email", to="a@example.com", body="hi")
        logged = await communications.send_communication(db_session, channel="sms", to="+100", body="hi")

        result = await communications.purge_communication_queue(db_session)

        assert result["ids"] == [logged["message_id"]]
        assert (await communications.get_communication_message(db_session, sent["message_id"]))["status"] == "sent"
