"""
Plugin Runtime

Builds the per-request kernel: registers the standard menu locations, fires
the bootstrap actions and lets every enabled plugin register its hooks via
the ``register(kernel, api)`` function in its ``plugin.py``.

Loading is isolated per plugin. A plugin whose entry fails to import or
whose ``register`` raises is logged and skipped; the rest still load.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import re
import sys
from types import ModuleType
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.extensions.api import GuardedKernel, PluginExtensionApi
from cms_kernel.extensions.hooks import (
    ACTION_KERNEL_INIT,
    ACTION_PLUGINS_REGISTER,
    MENU_DASHBOARD,
    MENU_FOOTER,
    MENU_HEADER,
)
from cms_kernel.extensions.kernel import Kernel, create_kernel
from cms_kernel.extensions.registry import (
    PluginWithState,
    get_enabled_plugin_menu_items,
    list_plugins_with_site_state,
    list_plugins_with_state,
    normalize_plugin_path,
)

logger = logging.getLogger(__name__)

PLUGIN_MENU_ORDER = 90
ENTRY_MODULE_PREFIX = "cms_plugins"

# entry path -> (mtime, module)
_entry_cache: dict[str, tuple[float, ModuleType]] = {}


def clear_plugin_entry_cache() -> None:
    for _, module in _entry_cache.values():
        sys.modules.pop(module.__name__, None)
    _entry_cache.clear()


def _module_name(plugin_id: str) -> str:
    return f"{ENTRY_MODULE_PREFIX}.{re.sub(r'[^a-zA-Z0-9_]', '_', plugin_id)}"


def load_plugin_entry(plugin: PluginWithState) -> ModuleType | None:
    """
    Import a plugin's ``plugin.py``. Returns None when the plugin ships no
    entry file. Modules are cached until the file's mtime changes.
    """
    entry = plugin.entry_path
    if not entry.is_file():
        logger.debug("Plugin %s has no runtime entry at %s", plugin.id, entry)
        return None

    key = str(entry)
    mtime = entry.stat().st_mtime
    cached = _entry_cache.get(key)
    if cached is not None and cached[0] == mtime:
        return cached[1]

    name = _module_name(plugin.id)
    spec = importlib.util.spec_from_file_location(name, entry)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load plugin entry {entry}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except Exception:
        sys.modules.pop(name, None)
        raise
    _entry_cache[key] = (mtime, module)
    return module


async def _register_plugin(db: AsyncSession, plugin: PluginWithState, kernel: Kernel, site_id: str | None) -> None:
    module = load_plugin_entry(plugin)
    if module is None:
        return
    register = getattr(module, "register", None)
    if not callable(register):
        logger.debug("Plugin %s entry exposes no register()", plugin.id)
        return

    capabilities = plugin.capabilities
    api = PluginExtensionApi(
        db,
        plugin.id,
        capabilities=capabilities,
        core_registry=kernel,
        site_id=site_id,
        network_required=plugin.scope == "core",
    )
    result = register(GuardedKernel(plugin.id, kernel, capabilities), api)
    if inspect.isawaitable(result):
        await result


def _register_plugin_events(plugin: PluginWithState) -> None:
    if not plugin.events:
        return
    from cms_kernel.services.domain_events import register_domain_event_names

    register_domain_event_names(plugin.events)


async def create_kernel_for_request(db: AsyncSession, site_id: str | None = None) -> Kernel:
    """Build a kernel populated by every plugin enabled for ``site_id`` (or the network)."""
    kernel = create_kernel()

    kernel.register_menu_location(MENU_HEADER)
    kernel.register_menu_location(MENU_FOOTER)
    kernel.register_menu_location(MENU_DASHBOARD)

    await kernel.do_action(ACTION_KERNEL_INIT)
    await kernel.do_action(ACTION_PLUGINS_REGISTER)

    plugins = await list_plugins_with_site_state(db, site_id) if site_id else await list_plugins_with_state(db)
    for plugin in plugins:
        if not plugin.enabled:
            continue
        if site_id and plugin.scope != "core" and plugin.site_enabled is False:
            continue

        if plugin.menu is not None:
            if plugin.capabilities.admin_extensions:
                kernel.add_menu_items(
                    MENU_DASHBOARD,
                    [
                        {
                            "label": plugin.menu.label or plugin.name,
                            "href": normalize_plugin_path(plugin.id, plugin.menu.path),
                            "order": PLUGIN_MENU_ORDER,
                        }
                    ],
                )
            else:
                logger.info("Plugin %s menu skipped: adminExtensions capability not declared", plugin.id)

        try:
            _register_plugin_events(plugin)
            await _register_plugin(db, plugin, kernel, site_id)
        except Exception as exc:
            logger.error("Plugin %s registration failed: %s", plugin.id, exc, extra={"plugin_id": plugin.id})

    return kernel


async def get_dashboard_plugin_menu_items(db: AsyncSession) -> list[dict[str, Any]]:
    items = await get_enabled_plugin_menu_items(db)
    return [
        {"label": item["label"], "href": item["href"], "order": PLUGIN_MENU_ORDER + index}
        for index, item in enumerate(items)
    ]

