"""
Extension API tests: capability guards, theme guards and setting lookup.
"""

import pytest

from cms_kernel.exceptions import CapabilityError, CoreRegistryUnavailableError, ThemeGuardError, ValidationError
from cms_kernel.extensions.api import GuardedKernel, PluginExtensionApi, ThemeExtensionApi
from cms_kernel.extensions.contracts import PluginCapabilities
from cms_kernel.extensions.kernel import Kernel
from cms_kernel.services import settings_store

# ══════════════════════════════════════════════════════════════════════════════
# 1. Guarded kernel
# ══════════════════════════════════════════════════════════════════════════════


class TestGuardedKernel:
    def test_hooks_capability_required(self):
        guarded = GuardedKernel("quiet", Kernel(), PluginCapabilities(hooks=False))

        with pytest.raises(CapabilityError) as exc_info:
            guarded.add_action("kernel:init", lambda payload: None)

        assert exc_info.value.message == (
            '[plugin-guard] Plugin "quiet" attempted kernel.add_action '
            "without declaring the required capability."
        )
        assert exc_info.value.status_code == 403

    def test_callbacks_tagged_with_owner(self):
        kernel = Kernel()
        guarded = GuardedKernel("tagger", kernel, PluginCapabilities())

        guarded.add_filter("nav:items", lambda value, ctx: value)

        assert kernel._filters["nav:items"][0].owner == "tagger"

    def test_auth_filters_need_auth_extensions(self):
        guarded = GuardedKernel("p", Kernel(), PluginCapabilities())

        with pytest.raises(CapabilityError) as exc_info:
            guarded.add_filter("auth:providers", lambda value, ctx: value)

        assert "kernel.add_filter(auth:providers)" in exc_info.value.message

    def test_auth_filters_allowed_with_capability(self):
        kernel = Kernel()
        guarded = GuardedKernel("p", kernel, PluginCapabilities(auth_extensions=True))

        guarded.add_filter("auth:providers", lambda value, ctx: value)

        assert kernel.has_filter("auth:providers")

    def test_menus_need_admin_extensions(self):
        kernel = Kernel()
        guarded = GuardedKernel("p", kernel, PluginCapabilities(admin_extensions=False))

        with pytest.raises(CapabilityError):
            guarded.add_menu_items("footer", [{"label": "x"}])
        with pytest.raises(CapabilityError):
            guarded.register_menu_location("sidebar")
        assert guarded.get_menu_items("footer") == []

    def test_assets_need_hooks(self):
        kernel = Kernel()
        GuardedKernel("p", kernel, PluginCapabilities()).enqueue_style("/a.css")
        assert kernel.get_enqueued_assets()[0]["id"] == "style:/a.css"

        with pytest.raises(CapabilityError):
            GuardedKernel("p", kernel, PluginCapabilities(hooks=False)).enqueue_script("/a.js")


# ══════════════════════════════════════════════════════════════════════════════
# 2. Plugin registrations
# ══════════════════════════════════════════════════════════════════════════════


class TestPluginRegistrations:
    def _api(self, db=None, kernel=None, **caps):
        return PluginExtensionApi(db, "demo", capabilities=PluginCapabilities(**caps), core_registry=kernel)

    def test_capability_checked_before_registry(self):
        api = self._api(kernel=None)

        with pytest.raises(CapabilityError):
            api.register_schedule_handler({"id": "job"})

    def test_registry_required(self):
        api = self._api(kernel=None, schedule_jobs=True)

        with pytest.raises(CoreRegistryUnavailableError) as exc_info:
            api.register_schedule_handler({"id": "job", "run": lambda ctx: None})

        assert exc_info.value.message.endswith("is unavailable outside Core runtime.")
        assert exc_info.value.status_code == 409

    def test_registration_lands_in_kernel(self):
        kernel = Kernel()
        api = self._api(kernel=kernel, web_callbacks=True, communication_providers=True, content_types=True)

        api.register_webcallback_handler({"id": "stripe"})
        api.register_communication_provider({"id": "smtp", "channels": ["email"]})
        api.register_content_type({"key": "recipe"})

        assert kernel.get_all_plugin_webcallback_handlers() == [{"plugin_id": "demo", "id": "stripe"}]
        assert kernel.get_all_plugin_communication_providers()[0]["channels"] == ["email"]
        assert kernel.get_plugin_content_types("demo") == [{"key": "recipe"}]

    @pytest.mark.parametrize(
        "method, capability",
        [
            ("register_content_type", "content_types"),
            ("register_server_handler", "server_handlers"),
            ("register_auth_adapter", "auth_extensions"),
            ("register_communication_provider", "communication_providers"),
            ("register_webcallback_handler", "web_callbacks"),
        ],
    )
    def test_every_registration_is_guarded(self, method, capability):
        api = self._api(kernel=Kernel())

        with pytest.raises(CapabilityError) as exc_info:
            getattr(api, method)({"id": "x"})

        assert f"{method}()" in exc_info.value.message

    def test_content_states_use_hooks_capability(self):
        kernel = Kernel()
        self._api(kernel=kernel).register_content_state({"key": "review", "label": "Review"})
        assert kernel.get_content_states()[0]["key"] == "review"

        with pytest.raises(CapabilityError):
            self._api(kernel=kernel, hooks=False).register_content_transition(
                {"key": "approve", "label": "Approve", "to": "published"}
            )

    async def test_schedule_api_guarded(self, db_session):
        api = self._api(db=db_session)
        with pytest.raises(CapabilityError):
            await api.create_schedule(name="x", action_key="core.noop", run_every_minutes=5)


# ══════════════════════════════════════════════════════════════════════════════
# 3. Settings lookup
# ══════════════════════════════════════════════════════════════════════════════


class TestPluginSettingLookup:
    async def test_site_direct_key_wins(self, db_session):
        await settings_store.set_setting(db_session, "site_s1_plugin_demo_greeting", "site-direct")
        await settings_store.set_setting(db_session, "site_s1_plugin_demo_config", '{"greeting": "site-json"}')
        await settings_store.set_setting(db_session, "plugin_demo_config", '{"greeting": "net-json"}')
        await settings_store.set_setting(db_session, "plugin_demo_greeting", "net-direct")

        api = PluginExtensionApi(db_session, "demo", site_id="s1")

        assert await api.get_plugin_setting("greeting") == "site-direct"

    async def test_site_config_before_network(self, db_session):
        await settings_store.set_setting(db_session, "site_s1_plugin_demo_config", '{"greeting": "site-json"}')
        await settings_store.set_setting(db_session, "plugin_demo_config", '{"greeting": "net-json"}')

        api = PluginExtensionApi(db_session, "demo", site_id="s1")

        assert await api.get_plugin_setting("greeting") == "site-json"

    async def test_network_config_before_direct(self, db_session):
        await settings_store.set_setting(db_session, "plugin_demo_config", '{"limit": 5, "on": true}')
        await settings_store.set_setting(db_session, "plugin_demo_limit", "1")

        api = PluginExtensionApi(db_session, "demo")

        assert await api.get_plugin_setting("limit") == "5"
        assert await api.get_plugin_setting("on") == "true"

    async def test_direct_key_then_fallback(self, db_session):
        await settings_store.set_setting(db_session, "plugin_demo_greeting", "net-direct")
        api = PluginExtensionApi(db_session, "demo")

        assert await api.get_plugin_setting("greeting") == "net-direct"
        assert await api.get_plugin_setting("missing", "fallback") == "fallback"

    async def test_network_only_api_ignores_site(self, db_session):
        await settings_store.set_setting(db_session, "site_s1_plugin_demo_greeting", "site-direct")
        await settings_store.set_setting(db_session, "plugin_demo_greeting", "net-direct")

        api = PluginExtensionApi(db_session, "demo", site_id="s1", network_required=True)

        assert await api.get_plugin_setting("greeting") == "net-direct"

    async def test_plugin_writes(self, db_session):
        api = PluginExtensionApi(db_session, "demo")
        await api.set_plugin_setting("token", "abc")
        await api.set_setting("global_flag", "on")

        assert await settings_store.get_setting(db_session, "plugin_demo_token") == "abc"
        assert await api.get_setting("global_flag") == "on"
        assert await api.get_setting("absent", "dflt") == "dflt"


# ══════════════════════════════════════════════════════════════════════════════
# 4. Themes and domain events
# ══════════════════════════════════════════════════════════════════════════════


class TestThemeApi:
    async def test_writes_rejected(self, db_session):
        api = ThemeExtensionApi(db_session, theme_id="default-light")

        with pytest.raises(ThemeGuardError) as exc_info:
            await api.set_setting("k", "v")
        assert exc_info.value.message == "[theme-guard] Themes cannot call side-effect API: set_setting"

        with pytest.raises(ThemeGuardError):
            await api.set_plugin_setting("k", "v")

    async def test_reads_allowed(self, db_session):
        await settings_store.set_setting(db_session, "site_name", "Demo")
        api = ThemeExtensionApi(db_session)
        assert await api.get_setting("site_name") == "Demo"

    async def test_schedules_need_theme_id(self, db_session):
        api = ThemeExtensionApi(db_session)
        with pytest.raises(ThemeGuardError):
            await api.list_schedules()


class TestPluginDomainEvents:
    async def test_only_plugin_namespace(self, db_session):
        api = PluginExtensionApi(db_session, "demo")

        with pytest.raises(ValidationError):
            await api.emit_domain_event("content_published", {})

    async def test_emit_queues_and_returns_id(self, db_session, monkeypatch):
        from sqlalchemy import select

        from cms_kernel.config import settings
        from cms_kernel.models.event_queue import DomainEventQueueItem

        monkeypatch.setattr(settings, "domain_event_queue_autodrain", False)
        api = PluginExtensionApi(db_session, "demo", site_id="s1")

        event_id = await api.emit_domain_event("plugin.demo.done", {"n": 1})

        row = (await db_session.execute(select(DomainEventQueueItem))).scalar_one()
        assert row.event["id"] == event_id
        assert row.event["name"] == "plugin.demo.done"
        assert row.event["siteId"] == "s1"
        assert row.event["meta"] == {"pluginId": "demo"}
        assert row.event["payload"] == {"n": 1}
