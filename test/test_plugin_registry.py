"""
Plugin discovery and state tests.
"""

import pytest

from cms_kernel.exceptions import ExtensionNotFoundError
from cms_kernel.extensions import registry
from cms_kernel.services import settings_store

# ══════════════════════════════════════════════════════════════════════════════
# Discovery
# ══════════════════════════════════════════════════════════════════════════════


class TestDiscovery:
    def test_empty_directory(self):
        assert registry.get_available_plugins() == []

    def test_missing_directory(self, plugins_dir, monkeypatch):
        from cms_kernel.config import settings

        monkeypatch.setattr(settings, "plugins_path", str(plugins_dir / "nope"))
        assert registry.get_available_plugins() == []

    def test_sorted_by_name_case_insensitive(self, make_plugin):
        make_plugin("b-plugin", name="beta")
        make_plugin("a-plugin", name="Alpha")
        make_plugin("c-plugin", name="Gamma")

        assert [plugin.name for plugin in registry.get_available_plugins()] == ["Alpha", "beta", "Gamma"]

    def test_invalid_manifests_skipped(self, plugins_dir, make_plugin):
        make_plugin("good")
        broken = plugins_dir / "broken"
        broken.mkdir()
        (broken / "plugin.json").write_text("{not json", encoding="utf-8")
        (plugins_dir / "no-manifest").mkdir()
        (plugins_dir / "stray.txt").write_text("x", encoding="utf-8")

        assert [plugin.id for plugin in registry.get_available_plugins()] == ["good"]

    def test_incompatible_core_version_skipped(self, make_plugin):
        make_plugin("future", minCoreVersion="9.0")
        make_plugin("current", minCoreVersion="0.4.x")

        assert [plugin.id for plugin in registry.get_available_plugins()] == ["current"]

    def test_menu_path_normalized(self, make_plugin):
        make_plugin("menu-plugin", menu={"label": "  ", "path": "relative"})

        plugin = registry.get_plugin_by_id("menu-plugin")
        assert plugin.menu.label == "Menu Plugin"
        assert plugin.menu.path == "/plugins/menu-plugin"

    def test_lookup_normalizes_id(self, make_plugin):
        make_plugin("hello")
        assert registry.get_plugin_by_id("  HELLO ").id == "hello"
        assert registry.get_plugin_by_id("other") is None

    def test_require_plugin_raises(self):
        with pytest.raises(ExtensionNotFoundError) as exc_info:
            registry.require_plugin("ghost")
        assert exc_info.value.status_code == 404
        assert "ghost" in exc_info.value.message

    def test_entry_path(self, make_plugin, plugins_dir):
        make_plugin("entry", source="def register(kernel, api):\n    pass\n")
        plugin = registry.get_plugin_by_id("entry")
        assert plugin.entry_path == plugins_dir.resolve() / "entry" / "plugin.py"


# ══════════════════════════════════════════════════════════════════════════════
# Persisted state
# ══════════════════════════════════════════════════════════════════════════════


class TestState:
    async def test_disabled_by_default(self, db_session, make_plugin):
        make_plugin("quiet")

        plugins = await registry.list_plugins_with_state(db_session)

        assert plugins[0].enabled is False
        assert plugins[0].config == {}

    async def test_enable_and_configure(self, db_session, make_plugin):
        make_plugin("loud")

        await registry.set_plugin_enabled(db_session, "loud", True)
        await registry.save_plugin_config(db_session, "loud", {"greeting": "hey"})

        plugin = (await registry.list_plugins_with_state(db_session))[0]
        assert plugin.enabled is True
        assert plugin.config == {"greeting": "hey"}
        assert await settings_store.get_setting(db_session, "plugin_loud_enabled") == "true"
        assert await registry.get_plugin_config(db_session, "LOUD") == {"greeting": "hey"}

    async def test_unknown_plugin_cannot_be_enabled(self, db_session):
        with pytest.raises(ExtensionNotFoundError):
            await registry.set_plugin_enabled(db_session, "ghost", True)

    async def test_site_state_defaults_to_enabled(self, db_session, make_plugin):
        make_plugin("site-aware")

        plugin = (await registry.list_plugins_with_site_state(db_session, "s1"))[0]

        assert plugin.site_enabled is True
        assert plugin.site_config == {}

    async def test_site_overrides(self, db_session, make_plugin):
        make_plugin("site-aware")
        await registry.set_site_plugin_enabled(db_session, "s1", "site-aware", False)
        await registry.save_site_plugin_config(db_session, "s1", "site-aware", {"color": "red"})

        s1 = (await registry.list_plugins_with_site_state(db_session, "s1"))[0]
        s2 = (await registry.list_plugins_with_site_state(db_session, "s2"))[0]

        assert s1.site_enabled is False
        assert s1.site_config == {"color": "red"}
        assert s2.site_enabled is True
        assert await registry.get_site_plugin_config(db_session, "s1", "site-aware") == {"color": "red"}

    async def test_menu_items_only_for_enabled_plugins(self, db_session, make_plugin):
        make_plugin("with-menu", menu={"label": "Tools", "path": "/admin/tools"})
        make_plugin("off-menu", menu={"label": "Off"})
        await registry.set_plugin_enabled(db_session, "with-menu", True)

        items = await registry.get_enabled_plugin_menu_items(db_session)

        assert items == [{"plugin_id": "with-menu", "label": "Tools", "href": "/admin/tools"}]


class TestSettingKeys:
    def test_key_shapes(self):
        assert registry.plugin_enabled_key("x") == "plugin_x_enabled"
        assert registry.plugin_config_key("x") == "plugin_x_config"
        assert registry.site_plugin_enabled_key("s", "x") == "site_s_plugin_x_enabled"
        assert registry.site_plugin_setting_key("s", "x", "k") == "site_s_plugin_x_k"

    def test_normalize_plugin_path(self):
        assert registry.normalize_plugin_path("x", "/custom") == "/custom"
        assert registry.normalize_plugin_path("x", None) == "/plugins/x"
