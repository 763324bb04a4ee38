"""
Extension APIs

Objects handed to extension code. Plugins receive a PluginExtensionApi bound
to their id and declared capabilities, plus a GuardedKernel view over the
request kernel. Themes receive a ThemeExtensionApi that can read settings
but never write them.

Every guarded entry point checks the capability first and raises
CapabilityError before anything is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.exceptions import CapabilityError, CoreRegistryUnavailableError, ThemeGuardError, ValidationError
from cms_kernel.extensions.contracts import PluginCapabilities
from cms_kernel.extensions.hooks import is_auth_filter
from cms_kernel.extensions.kernel import DEFAULT_PRIORITY
from cms_kernel.extensions.registry import (
    plugin_config_key,
    plugin_setting_key,
    site_plugin_config_key,
    site_plugin_setting_key,
)
from cms_kernel.services import settings_store

if TYPE_CHECKING:
    from cms_kernel.extensions.kernel import Kernel

logger = logging.getLogger(__name__)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _ReadApi:
    """Read-only setting access shared by plugins and themes."""

    def __init__(self, db: AsyncSession, plugin_id: str | None = None, site_id: str | None = None,
                 network_required: bool = False):
        self.db = db
        self.plugin_id = plugin_id
        self.site_id = site_id
        self.network_required = network_required

    async def get_setting(self, key: str, fallback: str = "") -> str:
        value = await settings_store.get_setting(self.db, key)
        return fallback if value is None else value

    async def get_plugin_setting(self, key: str, fallback: str = "") -> str:
        """
        Resolve one plugin setting.

        Lookup order, first hit wins:
            1. ``site_{siteId}_plugin_{id}_{key}``   (bound site only)
            2. ``site_{siteId}_plugin_{id}_config``  JSON, field ``key``
            3. ``plugin_{id}_config``                JSON, field ``key``
            4. ``plugin_{id}_{key}``
        Site lookups are skipped when the API is network-only.
        """
        if not self.plugin_id:
            return await self.get_setting(key, fallback)

        direct_key = plugin_setting_key(self.plugin_id, key)
        network_config_key = plugin_config_key(self.plugin_id)
        lookup = [network_config_key, direct_key]
        use_site = bool(self.site_id) and not self.network_required
        if use_site:
            site_direct_key = site_plugin_setting_key(self.site_id, self.plugin_id, key)
            site_config_key = site_plugin_config_key(self.site_id, self.plugin_id)
            lookup += [site_direct_key, site_config_key]

        stored = await settings_store.get_settings(self.db, lookup)

        if use_site:
            if site_direct_key in stored:
                return stored[site_direct_key]
            site_value = settings_store.parse_json_object(stored.get(site_config_key)).get(key)
            if site_value is not None:
                return _stringify(site_value)

        network_value = settings_store.parse_json_object(stored.get(network_config_key)).get(key)
        if network_value is not None:
            return _stringify(network_value)

        return stored.get(direct_key, fallback)


# ── Plugins ───────────────────────────────────────────────────────────────────


class PluginExtensionApi(_ReadApi):
    def __init__(
        self,
        db: AsyncSession,
        plugin_id: str,
        capabilities: PluginCapabilities | None = None,
        core_registry: Kernel | None = None,
        site_id: str | None = None,
        network_required: bool = False,
    ):
        super().__init__(db, plugin_id=plugin_id, site_id=site_id, network_required=network_required)
        self.capabilities = capabilities or PluginCapabilities()
        self._core_registry = core_registry

    def _require(self, capability: str, feature: str) -> None:
        if not getattr(self.capabilities, capability):
            raise CapabilityError(self.plugin_id, feature)

    def _registry(self, feature: str) -> Kernel:
        if self._core_registry is None:
            raise CoreRegistryUnavailableError(f'[plugin-guard] Plugin "{self.plugin_id}" {feature}')
        return self._core_registry

    # Settings

    async def set_setting(self, key: str, value: str) -> None:
        await settings_store.set_setting(self.db, key, value)

    async def set_plugin_setting(self, key: str, value: str) -> None:
        await settings_store.set_setting(self.db, plugin_setting_key(self.plugin_id, key), value)

    # Registrations

    def register_content_type(self, registration: Mapping[str, Any]) -> None:
        self._require("content_types", "register_content_type()")
        self._registry("register_content_type()").register_plugin_content_type(self.plugin_id, registration)

    def register_server_handler(self, registration: Mapping[str, Any]) -> None:
        self._require("server_handlers", "register_server_handler()")
        self._registry("register_server_handler()").register_plugin_server_handler(self.plugin_id, registration)

    def register_auth_adapter(self, registration: Mapping[str, Any]) -> None:
        self._require("auth_extensions", "register_auth_adapter()")
        self._registry("register_auth_adapter()").register_plugin_auth_adapter(self.plugin_id, registration)

    def register_schedule_handler(self, registration: Mapping[str, Any]) -> None:
        self._require("schedule_jobs", "register_schedule_handler()")
        self._registry("register_schedule_handler()").register_plugin_schedule_handler(self.plugin_id, registration)

    def register_communication_provider(self, registration: Mapping[str, Any]) -> None:
        self._require("communication_providers", "register_communication_provider()")
        self._registry("register_communication_provider()").register_plugin_communication_provider(
            self.plugin_id, registration
        )

    def register_webcallback_handler(self, registration: Mapping[str, Any]) -> None:
        self._require("web_callbacks", "register_webcallback_handler()")
        self._registry("register_webcallback_handler()").register_plugin_webcallback_handler(
            self.plugin_id, registration
        )

    def register_content_state(self, registration: Mapping[str, Any]) -> None:
        self._require("hooks", "register_content_state()")
        self._registry("register_content_state()").register_content_state(registration)

    def register_content_transition(self, registration: Mapping[str, Any]) -> None:
        self._require("hooks", "register_content_transition()")
        self._registry("register_content_transition()").register_content_transition(registration)

    # Schedules

    async def create_schedule(self, **fields: Any) -> dict[str, Any]:
        from cms_kernel.services import scheduler_service

        self._require("schedule_jobs", "create_schedule()")
        entry = await scheduler_service.create_schedule_entry(self.db, "plugin", self.plugin_id, **fields)
        return entry.to_dict()

    async def list_schedules(self) -> list[dict[str, Any]]:
        from cms_kernel.services import scheduler_service

        self._require("schedule_jobs", "list_schedules()")
        entries = await scheduler_service.list_schedule_entries(
            self.db, owner_type="plugin", owner_id=self.plugin_id, include_disabled=True
        )
        return [entry.to_dict() for entry in entries]

    async def update_schedule(self, schedule_id: str, **changes: Any) -> dict[str, Any]:
        from cms_kernel.services import scheduler_service

        self._require("schedule_jobs", "update_schedule()")
        actor = scheduler_service.ScheduleActor(is_admin=False, owner_type="plugin", owner_id=self.plugin_id)
        entry = await scheduler_service.update_schedule_entry(self.db, schedule_id, changes, actor)
        return entry.to_dict()

    async def delete_schedule(self, schedule_id: str) -> None:
        from cms_kernel.services import scheduler_service

        self._require("schedule_jobs", "delete_schedule()")
        actor = scheduler_service.ScheduleActor(is_admin=False, owner_type="plugin", owner_id=self.plugin_id)
        await scheduler_service.delete_schedule_entry(self.db, schedule_id, actor)

    # Core services

    async def emit_domain_event(self, name: str, payload: dict[str, Any] | None = None, **envelope: Any) -> str:
        """Emit a ``plugin.*`` domain event on behalf of this plugin."""
        from cms_kernel.services import domain_events

        name = str(name or "").strip()
        if not name.startswith(domain_events.PLUGIN_EVENT_PREFIX):
            raise ValidationError(f'Plugin "{self.plugin_id}" may only emit plugin.* events, got "{name}"', field="name")
        event = domain_events.normalize_domain_event(
            {
                "version": 1,
                "name": name,
                "actorType": "system",
                "siteId": self.site_id or "",
                "meta": {"pluginId": self.plugin_id},
                **envelope,
                "payload": payload or {},
            }
        )
        return await domain_events.emit_domain_event(self.db, event)

    async def send_communication(self, **message: Any) -> dict[str, Any]:
        from cms_kernel.services import communications

        message.setdefault("site_id", self.site_id)
        metadata = dict(message.pop("metadata", None) or {})
        metadata.setdefault("sourcePluginId", self.plugin_id)
        return await communications.send_communication(self.db, metadata=metadata, **message)


# ── Themes ────────────────────────────────────────────────────────────────────


class ThemeExtensionApi(_ReadApi):
    """Read-only API for themes. Writes raise ThemeGuardError."""

    def __init__(self, db: AsyncSession, theme_id: str | None = None, site_id: str | None = None):
        super().__init__(db, site_id=site_id)
        self.theme_id = str(theme_id or "").strip()

    def _require_owner(self) -> str:
        if not self.theme_id:
            raise ThemeGuardError("scheduler API without a bound theme id")
        return self.theme_id

    async def set_setting(self, key: str, value: str) -> None:
        raise ThemeGuardError("set_setting")

    async def set_plugin_setting(self, key: str, value: str) -> None:
        raise ThemeGuardError("set_plugin_setting")

    async def create_schedule(self, **fields: Any) -> dict[str, Any]:
        from cms_kernel.services import scheduler_service

        entry = await scheduler_service.create_schedule_entry(self.db, "theme", self._require_owner(), **fields)
        return entry.to_dict()

    async def list_schedules(self) -> list[dict[str, Any]]:
        from cms_kernel.services import scheduler_service

        entries = await scheduler_service.list_schedule_entries(
            self.db, owner_type="theme", owner_id=self._require_owner(), include_disabled=True
        )
        return [entry.to_dict() for entry in entries]

    async def update_schedule(self, schedule_id: str, **changes: Any) -> dict[str, Any]:
        from cms_kernel.services import scheduler_service

        actor = scheduler_service.ScheduleActor(is_admin=False, owner_type="theme", owner_id=self._require_owner())
        entry = await scheduler_service.update_schedule_entry(self.db, schedule_id, changes, actor)
        return entry.to_dict()

    async def delete_schedule(self, schedule_id: str) -> None:
        from cms_kernel.services import scheduler_service

        actor = scheduler_service.ScheduleActor(is_admin=False, owner_type="theme", owner_id=self._require_owner())
        await scheduler_service.delete_schedule_entry(self.db, schedule_id, actor)


# ── Guarded kernel view ───────────────────────────────────────────────────────


class GuardedKernel:
    """
    The kernel as a plugin sees it. Hook and menu registration is checked
    against the plugin's capabilities; callbacks are tagged with the plugin id
    so failures are attributed in the logs.
    """

    def __init__(self, plugin_id: str, kernel: Kernel, capabilities: PluginCapabilities):
        self.plugin_id = plugin_id
        self._kernel = kernel
        self._capabilities = capabilities

    def _ensure(self, allowed: bool, feature: str) -> None:
        if not allowed:
            raise CapabilityError(self.plugin_id, feature)

    def add_action(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY) -> None:
        self._ensure(self._capabilities.hooks, "kernel.add_action")
        self._kernel.add_action(name, callback, priority, owner=self.plugin_id)

    def add_filter(self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY) -> None:
        self._ensure(self._capabilities.hooks, "kernel.add_filter")
        if is_auth_filter(name):
            self._ensure(self._capabilities.auth_extensions, f"kernel.add_filter({name})")
        self._kernel.add_filter(name, callback, priority, owner=self.plugin_id)

    def register_menu_location(self, location: str) -> None:
        self._ensure(self._capabilities.admin_extensions, "kernel.register_menu_location")
        self._kernel.register_menu_location(location)

    def add_menu_items(self, location: str, items: list[Mapping[str, Any]]) -> None:
        self._ensure(self._capabilities.admin_extensions, "kernel.add_menu_items")
        self._kernel.add_menu_items(location, items)

    def get_menu_items(self, location: str) -> list[dict[str, Any]]:
        return self._kernel.get_menu_items(location)

    def enqueue_script(self, spec: str | Mapping[str, Any]) -> None:
        self._ensure(self._capabilities.hooks, "kernel.enqueue_script")
        self._kernel.enqueue_script(spec)

    def enqueue_style(self, spec: str | Mapping[str, Any]) -> None:
        self._ensure(self._capabilities.hooks, "kernel.enqueue_style")
        self._kernel.enqueue_style(spec)
