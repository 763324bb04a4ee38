"""
Manifest contract validation tests.
"""

from cms_kernel.extensions.contracts import (
    PluginCapabilities,
    normalize_extension_id,
    validate_plugin_contract,
    validate_theme_contract,
)

# ══════════════════════════════════════════════════════════════════════════════
# Ids and settings fields
# ══════════════════════════════════════════════════════════════════════════════


class TestExtensionIds:
    def test_normalizes_case_and_strips_symbols(self):
        assert normalize_extension_id("  Hello World!  ") == "helloworld"
        assert normalize_extension_id("Auth_GitHub-2") == "auth_github-2"

    def test_none_is_empty(self):
        assert normalize_extension_id(None) == ""

    def test_fallback_id_used_when_manifest_has_none(self):
        contract = validate_plugin_contract({"name": "Foo"}, "Foo-Dir")
        assert contract.id == "foo-dir"

    def test_missing_name_defaults_to_id(self):
        contract = validate_plugin_contract({"id": "bar"}, "ignored")
        assert contract.name == "bar"

    def test_unusable_id_rejects_manifest(self):
        assert validate_plugin_contract({"id": "!!!", "name": "x"}, "") is None
        assert validate_theme_contract("not a dict", "") is None


class TestSettingsFields:
    def test_fields_without_key_or_label_are_dropped(self):
        contract = validate_plugin_contract(
            {
                "id": "p",
                "name": "P",
                "settingsFields": [
                    {"key": "a", "label": "A"},
                    {"key": "b"},
                    {"label": "C"},
                    "junk",
                ],
            },
            "p",
        )
        assert [field.key for field in contract.settings_fields] == ["a"]

    def test_unknown_type_falls_back_to_text(self):
        contract = validate_plugin_contract(
            {"id": "p", "name": "P", "settingsFields": [{"key": "a", "label": "A", "type": "color"}]}, "p"
        )
        assert contract.settings_fields[0].type == "text"

    def test_default_values_are_stringified(self):
        contract = validate_plugin_contract(
            {
                "id": "p",
                "name": "P",
                "settingsFields": [
                    {"key": "on", "label": "On", "type": "checkbox", "defaultValue": True},
                    {"key": "n", "label": "N", "type": "number", "defaultValue": 5},
                    {"key": "none", "label": "None"},
                ],
            },
            "p",
        )
        defaults = {field.key: field.default_value for field in contract.settings_fields}
        assert defaults == {"on": "true", "n": "5", "none": None}


# ══════════════════════════════════════════════════════════════════════════════
# Plugin contracts
# ══════════════════════════════════════════════════════════════════════════════


class TestPluginContract:
    def test_capability_defaults(self):
        caps = PluginCapabilities()
        assert caps.hooks is True
        assert caps.admin_extensions is True
        assert caps.content_types is False
        assert caps.schedule_jobs is False
        assert caps.web_callbacks is False

    def test_camel_case_capabilities_are_read(self):
        contract = validate_plugin_contract(
            {
                "id": "p",
                "name": "P",
                "capabilities": {"hooks": False, "scheduleJobs": True, "communicationProviders": 1},
            },
            "p",
        )
        assert contract.capabilities.hooks is False
        assert contract.capabilities.schedule_jobs is True
        assert contract.capabilities.communication_providers is True
        assert contract.capabilities.admin_extensions is True

    def test_scope_defaults_to_site(self):
        assert validate_plugin_contract({"id": "p", "name": "P"}, "p").scope == "site"
        assert validate_plugin_contract({"id": "p", "name": "P", "scope": "CORE"}, "p").scope == "core"
        assert validate_plugin_contract({"id": "p", "name": "P", "scope": "galaxy"}, "p").scope == "site"

    def test_menu_label_defaults_to_name(self):
        contract = validate_plugin_contract({"id": "p", "name": "Pretty", "menu": {"path": "/x"}}, "p")
        assert contract.menu.label == "Pretty"
        assert contract.menu.path == "/x"

    def test_editor_snippets_cleaned(self):
        contract = validate_plugin_contract(
            {
                "id": "snip",
                "name": "Snip",
                "editor": {
                    "snippets": [
                        {"title": "Hero", "content": "<section/>"},
                        {"id": "kept", "title": "Quote", "content": "> hi"},
                        {"title": "", "content": "x"},
                        {"title": "Empty"},
                    ]
                },
            },
            "snip",
        )
        snippets = contract.editor.snippets
        assert [s.id for s in snippets] == ["snip-snippet-1", "kept"]

    def test_events_keep_only_plugin_namespace(self):
        contract = validate_plugin_contract(
            {"id": "p", "name": "P", "events": ["plugin.p.done", "content.published", "PLUGIN.P.DONE", 5]}, "p"
        )
        assert contract.events == ["plugin.p.done"]

    def test_to_manifest_uses_camel_case(self):
        contract = validate_plugin_contract({"id": "p", "name": "P", "minCoreVersion": "0.4"}, "p")
        manifest = contract.to_manifest()
        assert manifest["minCoreVersion"] == "0.4"
        assert "adminExtensions" in manifest["capabilities"]


# ══════════════════════════════════════════════════════════════════════════════
# Theme contracts
# ══════════════════════════════════════════════════════════════════════════════


class TestThemeContract:
    def test_assets_templates_and_tokens(self):
        contract = validate_theme_contract(
            {
                "id": "t",
                "name": "T",
                "tokens": {"shellBg": "bg-black"},
                "assets": {"styles": ["assets/a.css", ""], "scripts": "nope"},
                "templates": {"home": "front.html", "post": 3},
            },
            "t",
        )
        assert contract.tokens == {"shellBg": "bg-black"}
        assert contract.assets.styles == ["assets/a.css"]
        assert contract.assets.scripts == []
        assert contract.templates.home == "front.html"
        assert contract.templates.post is None

    def test_queries_require_key_and_known_source(self):
        contract = validate_theme_contract(
            {
                "id": "t",
                "name": "T",
                "queries": [
                    {"key": "latest", "source": "content.list", "scope": "network", "route": "HOME", "params": []},
                    {"key": "bad", "source": "sql"},
                    {"source": "content.list"},
                ],
            },
            "t",
        )
        assert len(contract.queries) == 1
        query = contract.queries[0]
        assert query.scope == "network"
        assert query.route == "home"
        assert query.params == {}
