"""
Per-request kernel construction tests.

Plugins are written to a temp directory by the ``make_plugin`` fixture and
enabled through the settings store.
"""

import textwrap

from cms_kernel.extensions import runtime
from cms_kernel.services import settings_store

FILTER_PLUGIN = textwrap.dedent(
    """
    def register(kernel, api):
        kernel.add_filter("nav:items", lambda items, ctx: items + ["{label}"])
    """
)

BROKEN_PLUGIN = textwrap.dedent(
    """
    def register(kernel, api):
        raise RuntimeError("cannot register")
    """
)


async def enable(db, plugin_id, site_id=None, enabled=True):
    await settings_store.set_setting(db, f"plugin_{plugin_id}_enabled", "true")
    if site_id is not None:
        await settings_store.set_bool_setting(db, f"site_{site_id}_plugin_{plugin_id}_enabled", enabled)


# ══════════════════════════════════════════════════════════════════════════════
# 1. Bootstrap
# ══════════════════════════════════════════════════════════════════════════════


class TestBootstrap:
    async def test_standard_menu_locations(self, db_session):
        kernel = await runtime.create_kernel_for_request(db_session)
        assert kernel.get_menu_locations() == ["header", "footer", "dashboard"]

    async def test_disabled_plugins_not_loaded(self, db_session, make_plugin):
        make_plugin("off", source=FILTER_PLUGIN.replace("{label}", "off"))

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.has_filter("nav:items") is False

    async def test_enabled_plugin_registers_hooks(self, db_session, make_plugin):
        make_plugin("on", source=FILTER_PLUGIN.replace("{label}", "on"))
        await enable(db_session, "on")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert await kernel.apply_filters("nav:items", []) == ["on"]

    async def test_async_register_is_awaited(self, db_session, make_plugin):
        source = textwrap.dedent(
            """
            async def register(kernel, api):
                kernel.add_action("request:begin", lambda payload: None)
            """
        )
        make_plugin("async-one", source=source)
        await enable(db_session, "async-one")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.has_action("request:begin")

    async def test_plugin_without_entry_is_fine(self, db_session, make_plugin):
        make_plugin("manifest-only")
        await enable(db_session, "manifest-only")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.get_menu_items("dashboard") == []


# ══════════════════════════════════════════════════════════════════════════════
# 2. Isolation
# ══════════════════════════════════════════════════════════════════════════════


class TestIsolation:
    async def test_failing_plugin_is_skipped(self, db_session, make_plugin):
        make_plugin("a-broken", source=BROKEN_PLUGIN)
        make_plugin("b-working", source=FILTER_PLUGIN.replace("{label}", "works"))
        await enable(db_session, "a-broken")
        await enable(db_session, "b-working")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert await kernel.apply_filters("nav:items", []) == ["works"]

    async def test_syntax_error_is_skipped(self, db_session, make_plugin):
        make_plugin("bad-syntax", source="def register(:\n")
        await enable(db_session, "bad-syntax")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.has_filter("nav:items") is False

    async def test_undeclared_capability_is_skipped(self, db_session, make_plugin):
        source = textwrap.dedent(
            """
            def register(kernel, api):
                api.register_webcallback_handler({"id": "hook", "handle": lambda ctx: None})
            """
        )
        make_plugin("sneaky", source=source)
        await enable(db_session, "sneaky")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.get_all_plugin_webcallback_handlers() == []


# ══════════════════════════════════════════════════════════════════════════════
# 3. Site scoping
# ══════════════════════════════════════════════════════════════════════════════


class TestSiteScoping:
    async def test_site_disabled_plugin_skipped(self, db_session, make_plugin):
        make_plugin("per-site", source=FILTER_PLUGIN.replace("{label}", "per-site"))
        await enable(db_session, "per-site", site_id="s1", enabled=False)

        s1 = await runtime.create_kernel_for_request(db_session, "s1")
        s2 = await runtime.create_kernel_for_request(db_session, "s2")

        assert s1.has_filter("nav:items") is False
        assert await s2.apply_filters("nav:items", []) == ["per-site"]

    async def test_core_scope_ignores_site_flag(self, db_session, make_plugin):
        make_plugin("core-one", source=FILTER_PLUGIN.replace("{label}", "core"), scope="core")
        await enable(db_session, "core-one", site_id="s1", enabled=False)

        kernel = await runtime.create_kernel_for_request(db_session, "s1")

        assert await kernel.apply_filters("nav:items", []) == ["core"]

    async def test_site_bound_api(self, db_session, make_plugin):
        source = textwrap.dedent(
            """
            async def register(kernel, api):
                greeting = await api.get_plugin_setting("greeting", "none")
                kernel.add_filter("page:meta", lambda meta, ctx: {**meta, "greeting": greeting})
            """
        )
        make_plugin("greeter", source=source)
        await enable(db_session, "greeter")
        await settings_store.set_setting(db_session, "site_s1_plugin_greeter_greeting", "hola")

        kernel = await runtime.create_kernel_for_request(db_session, "s1")

        assert await kernel.apply_filters("page:meta", {}) == {"greeting": "hola"}


# ══════════════════════════════════════════════════════════════════════════════
# 4. Menus, events, entry cache
# ══════════════════════════════════════════════════════════════════════════════


class TestMenusAndEvents:
    async def test_dashboard_menu_item(self, db_session, make_plugin):
        make_plugin("tools", menu={"label": "Tools"})
        await enable(db_session, "tools")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.get_menu_items("dashboard") == [
            {"label": "Tools", "href": "/plugins/tools", "order": runtime.PLUGIN_MENU_ORDER}
        ]

    async def test_menu_needs_admin_extensions(self, db_session, make_plugin):
        make_plugin("hidden", menu={"label": "Hidden"}, capabilities={"adminExtensions": False})
        await enable(db_session, "hidden")

        kernel = await runtime.create_kernel_for_request(db_session)

        assert kernel.get_menu_items("dashboard") == []

    async def test_declared_events_registered(self, db_session, make_plugin):
        from cms_kernel.services.domain_events import list_domain_event_names

        make_plugin("eventful", events=["plugin.eventful.ping"])
        await enable(db_session, "eventful")

        await runtime.create_kernel_for_request(db_session)

        assert "plugin.eventful.ping" in list_domain_event_names()

    async def test_dashboard_items_numbered(self, db_session, make_plugin):
        make_plugin("a-menu", menu={"label": "A"})
        make_plugin("b-menu", menu={"label": "B"})
        await enable(db_session, "a-menu")
        await enable(db_session, "b-menu")

        items = await runtime.get_dashboard_plugin_menu_items(db_session)

        assert [(item["label"], item["order"]) for item in items] == [("A", 90), ("B", 91)]


class TestEntryCache:
    def test_module_cached_until_file_changes(self, make_plugin):
        import os

        from cms_kernel.extensions.registry import get_plugin_by_id

        directory = make_plugin("cached", source="VALUE = 1\n")
        plugin = get_plugin_by_id("cached")

        first = runtime.load_plugin_entry(plugin)
        assert runtime.load_plugin_entry(plugin) is first
        assert first.__name__ == "cms_plugins.cached"

        entry = directory / "plugin.py"
        entry.write_text("VALUE = 2\n", encoding="utf-8")
        stat = entry.stat()
        os.utime(entry, (stat.st_atime, stat.st_mtime + 5))

        second = runtime.load_plugin_entry(plugin)
        assert second.VALUE == 2

    def test_module_name_sanitized(self):
        assert runtime._module_name("hello-world") == "cms_plugins.hello_world"

    def test_missing_entry(self, make_plugin):
        from cms_kernel.extensions.registry import get_plugin_by_id

        make_plugin("no-entry")
        assert runtime.load_plugin_entry(get_plugin_by_id("no-entry")) is None
