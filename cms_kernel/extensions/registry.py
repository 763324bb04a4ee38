"""
Plugin Registry

Discovers plugin manifests on disk and joins them with their persisted
state. Every plugin lives in its own directory under ``settings.plugins_path``:

    plugins/
      hello-world/
        plugin.json   required manifest
        plugin.py     optional entry exposing ``register(kernel, api)``

Network state is stored under ``plugin_{id}_enabled`` / ``plugin_{id}_config``;
per-site overrides under ``site_{siteId}_plugin_{id}_enabled`` / ``_config``.
Plugins are disabled network-wide until an administrator enables them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.exceptions import ExtensionNotFoundError
from cms_kernel.extensions.contracts import PluginContract, normalize_extension_id, validate_plugin_contract
from cms_kernel.extensions.core_version import CORE_VERSION, is_core_version_compatible
from cms_kernel.services import settings_store

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plugin.json"
ENTRY_FILE = "plugin.py"


class PluginWithState(PluginContract):
    enabled: bool = False
    config: dict[str, Any] = Field(default_factory=dict)
    site_enabled: bool | None = None
    site_config: dict[str, Any] | None = None
    source_dir: str = Field(default="", exclude=True)

    @property
    def entry_path(self) -> Path:
        return Path(self.source_dir) / ENTRY_FILE


# ── Setting keys ──────────────────────────────────────────────────────────────


def plugin_enabled_key(plugin_id: str) -> str:
    return f"plugin_{plugin_id}_enabled"


def plugin_config_key(plugin_id: str) -> str:
    return f"plugin_{plugin_id}_config"


def plugin_setting_key(plugin_id: str, key: str) -> str:
    return f"plugin_{plugin_id}_{key}"


def site_plugin_enabled_key(site_id: str, plugin_id: str) -> str:
    return f"site_{site_id}_plugin_{plugin_id}_enabled"


def site_plugin_config_key(site_id: str, plugin_id: str) -> str:
    return f"site_{site_id}_plugin_{plugin_id}_config"


def site_plugin_setting_key(site_id: str, plugin_id: str, key: str) -> str:
    return f"site_{site_id}_plugin_{plugin_id}_{key}"


def normalize_plugin_path(plugin_id: str, path: str | None) -> str:
    if path and path.startswith("/"):
        return path
    return f"/plugins/{plugin_id}"


def get_plugins_dir() -> Path:
    return Path(settings.plugins_path).resolve()


# ── Discovery ─────────────────────────────────────────────────────────────────


def _read_manifest(manifest_path: Path) -> Any:
    try:
        return json.loads(manifest_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.warning("Skipping plugin manifest %s: invalid JSON (%s)", manifest_path, exc)
    except OSError as exc:
        logger.warning("Skipping plugin manifest %s: %s", manifest_path, exc)
    return None


def get_available_plugins() -> list[PluginWithState]:
    """
    Scan the plugins directory and return every valid, core-compatible
    manifest sorted by name. Nothing here touches the database.
    """
    plugins_dir = get_plugins_dir()
    if not plugins_dir.is_dir():
        logger.debug("Plugins directory %s does not exist", plugins_dir)
        return []

    manifests: list[PluginWithState] = []
    for entry in sorted(plugins_dir.iterdir()):
        manifest_path = entry / MANIFEST_FILE
        if not entry.is_dir() or not manifest_path.is_file():
            continue
        raw = _read_manifest(manifest_path)
        if raw is None:
            continue
        contract = validate_plugin_contract(raw, entry.name)
        if contract is None:
            logger.warning("Skipping plugin manifest %s: missing id or name", manifest_path)
            continue
        if not is_core_version_compatible(contract.min_core_version):
            logger.info(
                "Plugin %s skipped: requires core %s, running %s",
                contract.id,
                contract.min_core_version,
                CORE_VERSION,
            )
            continue
        if contract.menu is not None:
            contract.menu.label = contract.menu.label.strip() or contract.name
            contract.menu.path = normalize_plugin_path(contract.id, contract.menu.path)
        manifests.append(PluginWithState(**contract.model_dump(), source_dir=str(entry)))

    return sorted(manifests, key=lambda plugin: plugin.name.lower())


def get_plugin_by_id(plugin_id: str) -> PluginWithState | None:
    normalized = normalize_extension_id(plugin_id)
    for plugin in get_available_plugins():
        if plugin.id == normalized:
            return plugin
    return None


def require_plugin(plugin_id: str) -> PluginWithState:
    plugin = get_plugin_by_id(plugin_id)
    if plugin is None:
        raise ExtensionNotFoundError(plugin_id)
    return plugin


# ── State ─────────────────────────────────────────────────────────────────────


async def list_plugins_with_state(db: AsyncSession) -> list[PluginWithState]:
    plugins = get_available_plugins()
    if not plugins:
        return []
    keys = [key for plugin in plugins for key in (plugin_enabled_key(plugin.id), plugin_config_key(plugin.id))]
    stored = await settings_store.get_settings(db, keys)
    for plugin in plugins:
        plugin.enabled = stored.get(plugin_enabled_key(plugin.id)) == "true"
        plugin.config = settings_store.parse_json_object(stored.get(plugin_config_key(plugin.id)))
    return plugins


async def list_plugins_with_site_state(db: AsyncSession, site_id: str) -> list[PluginWithState]:
    """Network state plus the site's overrides. An unset site flag means enabled."""
    plugins = await list_plugins_with_state(db)
    if not plugins:
        return []
    keys = [
        key
        for plugin in plugins
        for key in (site_plugin_enabled_key(site_id, plugin.id), site_plugin_config_key(site_id, plugin.id))
    ]
    stored = await settings_store.get_settings(db, keys)
    for plugin in plugins:
        plugin.site_enabled = settings_store.parse_bool(stored.get(site_plugin_enabled_key(site_id, plugin.id)), True)
        plugin.site_config = settings_store.parse_json_object(stored.get(site_plugin_config_key(site_id, plugin.id)))
    return plugins


async def set_plugin_enabled(db: AsyncSession, plugin_id: str, enabled: bool) -> None:
    plugin = require_plugin(plugin_id)
    await settings_store.set_bool_setting(db, plugin_enabled_key(plugin.id), enabled)
    logger.info("Plugin %s %s", plugin.id, "enabled" if enabled else "disabled")


async def set_site_plugin_enabled(db: AsyncSession, site_id: str, plugin_id: str, enabled: bool) -> None:
    plugin = require_plugin(plugin_id)
    await settings_store.set_bool_setting(db, site_plugin_enabled_key(site_id, plugin.id), enabled)
    logger.info("Plugin %s %s for site %s", plugin.id, "enabled" if enabled else "disabled", site_id)


async def save_plugin_config(db: AsyncSession, plugin_id: str, config: dict[str, Any]) -> None:
    plugin = require_plugin(plugin_id)
    await settings_store.set_json_setting(db, plugin_config_key(plugin.id), config)


async def get_plugin_config(db: AsyncSession, plugin_id: str) -> dict[str, Any]:
    return await settings_store.get_json_setting(db, plugin_config_key(normalize_extension_id(plugin_id)))


async def save_site_plugin_config(db: AsyncSession, site_id: str, plugin_id: str, config: dict[str, Any]) -> None:
    plugin = require_plugin(plugin_id)
    await settings_store.set_json_setting(db, site_plugin_config_key(site_id, plugin.id), config)


async def get_site_plugin_config(db: AsyncSession, site_id: str, plugin_id: str) -> dict[str, Any]:
    return await settings_store.get_json_setting(
        db, site_plugin_config_key(site_id, normalize_extension_id(plugin_id))
    )


async def get_enabled_plugin_menu_items(db: AsyncSession) -> list[dict[str, str]]:
    return [
        {
            "plugin_id": plugin.id,
            "label": plugin.menu.label or plugin.name,
            "href": normalize_plugin_path(plugin.id, plugin.menu.path),
        }
        for plugin in await list_plugins_with_state(db)
        if plugin.enabled and plugin.menu is not None
    ]
