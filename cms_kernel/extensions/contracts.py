"""
Extension Contracts

Turns raw plugin.json / theme.json documents into validated contracts.
Manifests are authored by third parties, so validation is lenient: unknown
keys are ignored, malformed optional sections are dropped, and only a
missing id or name rejects a manifest outright.

Manifest JSON uses camelCase keys (``minCoreVersion``, ``settingsFields``);
the models expose snake_case attributes and serialize back to camelCase.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_ID_STRIP = re.compile(r"[^a-z0-9_-]")

FIELD_TYPES = ("text", "textarea", "password", "number", "checkbox")


def normalize_extension_id(raw: Any) -> str:
    return _ID_STRIP.sub("", str(raw or "").strip().lower())


class ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Shared pieces ─────────────────────────────────────────────────────────────


class SettingsField(ContractModel):
    key: str
    label: str
    type: Literal["text", "textarea", "password", "number", "checkbox"] = "text"
    placeholder: str = ""
    help_text: str = ""
    default_value: str | None = None


class PluginCapabilities(ContractModel):
    hooks: bool = True
    admin_extensions: bool = True
    content_types: bool = False
    server_handlers: bool = False
    auth_extensions: bool = False
    schedule_jobs: bool = False
    communication_providers: bool = False
    web_callbacks: bool = False


class PluginMenu(ContractModel):
    label: str
    path: str = ""


class EditorSnippet(ContractModel):
    id: str
    title: str
    description: str = ""
    content: str


class PluginEditor(ContractModel):
    snippets: list[EditorSnippet] = Field(default_factory=list)


class PluginContract(ContractModel):
    kind: Literal["plugin"] = "plugin"
    id: str
    name: str
    description: str = ""
    version: str = ""
    min_core_version: str = ""
    scope: Literal["site", "core"] = "site"
    capabilities: PluginCapabilities = Field(default_factory=PluginCapabilities)
    menu: PluginMenu | None = None
    settings_fields: list[SettingsField] = Field(default_factory=list)
    editor: PluginEditor | None = None
    events: list[str] = Field(default_factory=list)


class ThemeCapabilities(ContractModel):
    layouts: bool = True
    components: bool = True
    styles: bool = True
    assets: bool = True
    render_logic: bool = True


class ThemeAssets(ContractModel):
    styles: list[str] = Field(default_factory=list)
    scripts: list[str] = Field(default_factory=list)


class ThemeTemplates(ContractModel):
    home: str | None = None
    post: str | None = None


class ThemeQuery(ContractModel):
    key: str
    source: Literal["content.list"] = "content.list"
    scope: Literal["site", "network"] = "site"
    route: str = ""
    params: dict[str, Any] = Field(default_factory=dict)


class ThemeContract(ContractModel):
    kind: Literal["theme"] = "theme"
    id: str
    name: str
    description: str = ""
    version: str = ""
    min_core_version: str = ""
    capabilities: ThemeCapabilities = Field(default_factory=ThemeCapabilities)
    tokens: dict[str, Any] = Field(default_factory=dict)
    assets: ThemeAssets = Field(default_factory=ThemeAssets)
    templates: ThemeTemplates = Field(default_factory=ThemeTemplates)
    queries: list[ThemeQuery] = Field(default_factory=list)
    settings_fields: list[SettingsField] = Field(default_factory=list)


# ── Lenient parsing ───────────────────────────────────────────────────────────


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _first(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def clean_settings_field(raw: Any) -> SettingsField | None:
    candidate = _as_dict(raw)
    key = _text(candidate.get("key"))
    label = _text(candidate.get("label"))
    if not key or not label:
        return None
    field_type = candidate.get("type")
    default_value = candidate.get("defaultValue")
    return SettingsField(
        key=key,
        label=label,
        type=field_type if field_type in FIELD_TYPES else "text",
        placeholder=_text(candidate.get("placeholder")),
        help_text=_text(candidate.get("helpText")),
        default_value=None if default_value is None else _stringify(default_value),
    )


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _clean_settings_fields(raw: Any) -> list[SettingsField]:
    fields = (clean_settings_field(item) for item in _as_list(raw))
    return [field for field in fields if field is not None]


def _capability_flags(raw: Any, model: type[ContractModel]) -> dict[str, bool]:
    """Read camelCase capability flags, falling back to the model defaults."""
    given = _as_dict(raw)
    flags = {}
    for name, field in model.model_fields.items():
        value = given.get(to_camel(name), given.get(name))
        flags[name] = field.default if value is None else bool(value)
    return flags


def validate_plugin_contract(data: Any, fallback_id: str) -> PluginContract | None:
    """Validate a plugin manifest, or return None if it has no usable id/name."""
    candidate = _as_dict(data)
    plugin_id = normalize_extension_id(_first(candidate.get("id"), fallback_id))
    name = _text(candidate.get("name"), plugin_id)
    if not plugin_id or not name:
        return None

    menu = None
    if candidate.get("menu"):
        raw_menu = _as_dict(candidate["menu"])
        menu = PluginMenu(label=_text(raw_menu.get("label"), name) or name, path=_text(raw_menu.get("path")))

    editor = None
    if candidate.get("editor"):
        snippets = []
        for index, raw_snippet in enumerate(_as_list(_as_dict(candidate["editor"]).get("snippets")), start=1):
            snippet = _as_dict(raw_snippet)
            title = _text(snippet.get("title"))
            content = "" if snippet.get("content") is None else str(snippet["content"])
            if not title or not content:
                continue
            snippets.append(
                EditorSnippet(
                    id=_text(snippet.get("id"), f"{plugin_id}-snippet-{index}"),
                    title=title,
                    description=_text(snippet.get("description")),
                    content=content,
                )
            )
        editor = PluginEditor(snippets=snippets)

    events = []
    for raw_event in _as_list(candidate.get("events")):
        event_name = _text(raw_event).lower()
        if event_name.startswith("plugin.") and event_name not in events:
            events.append(event_name)

    return PluginContract(
        id=plugin_id,
        name=name,
        description=_text(candidate.get("description")),
        version=_text(candidate.get("version")),
        min_core_version=_text(candidate.get("minCoreVersion")),
        scope="core" if _text(candidate.get("scope")).lower() == "core" else "site",
        capabilities=PluginCapabilities(**_capability_flags(candidate.get("capabilities"), PluginCapabilities)),
        menu=menu,
        settings_fields=_clean_settings_fields(candidate.get("settingsFields")),
        editor=editor,
        events=events,
    )


def validate_theme_contract(data: Any, fallback_id: str) -> ThemeContract | None:
    """Validate a theme manifest, or return None if it has no usable id/name."""
    candidate = _as_dict(data)
    theme_id = normalize_extension_id(_first(candidate.get("id"), fallback_id))
    name = _text(candidate.get("name"), theme_id)
    if not theme_id or not name:
        return None

    assets = _as_dict(candidate.get("assets"))
    templates = _as_dict(candidate.get("templates"))

    queries = []
    for raw_query in _as_list(candidate.get("queries")):
        query = _as_dict(raw_query)
        key = _text(query.get("key"))
        if not key or _text(query.get("source")) != "content.list":
            continue
        params = query.get("params")
        queries.append(
            ThemeQuery(
                key=key,
                scope="network" if _text(query.get("scope"), "site") == "network" else "site",
                route=_text(query.get("route")).lower(),
                params=params if isinstance(params, dict) else {},
            )
        )

    return ThemeContract(
        id=theme_id,
        name=name,
        description=_text(candidate.get("description")),
        version=_text(candidate.get("version")),
        min_core_version=_text(candidate.get("minCoreVersion")),
        capabilities=ThemeCapabilities(**_capability_flags(candidate.get("capabilities"), ThemeCapabilities)),
        tokens=_as_dict(candidate.get("tokens")),
        assets=ThemeAssets(
            styles=[str(item) for item in _as_list(assets.get("styles")) if item],
            scripts=[str(item) for item in _as_list(assets.get("scripts")) if item],
        ),
        templates=ThemeTemplates(
            home=templates.get("home") if isinstance(templates.get("home"), str) else None,
            post=templates.get("post") if isinstance(templates.get("post"), str) else None,
        ),
        queries=queries,
        settings_fields=_clean_settings_fields(candidate.get("settingsFields")),
    )
