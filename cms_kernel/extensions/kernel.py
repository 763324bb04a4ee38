"""
Extension Kernel

Kernel: per-request container for hook callbacks, menu items, extension
registrations and enqueued assets. A fresh kernel is built for every
request (see runtime.create_kernel_for_request) so plugins enabled for one
site never leak callbacks into another.

Actions and filters run in ascending priority; callbacks sharing a priority
run in registration order. A callback that raises is logged and skipped so
one misbehaving plugin cannot break the request. Callers that need the
failure (queue drains that retry later) pass ``strict=True``.
"""

from __future__ import annotations

import hashlib
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from cms_kernel.extensions.hooks import MENU_LOCATIONS

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 10
DEFAULT_MENU_ORDER = 999
DEFAULT_SCRIPT_STRATEGY = "afterInteractive"

# Registration kinds held per plugin.
CONTENT_TYPES = "content_types"
SERVER_HANDLERS = "server_handlers"
AUTH_ADAPTERS = "auth_adapters"
SCHEDULE_HANDLERS = "schedule_handlers"
COMMUNICATION_PROVIDERS = "communication_providers"
WEBCALLBACK_HANDLERS = "webcallback_handlers"

REGISTRATION_KINDS = (
    CONTENT_TYPES,
    SERVER_HANDLERS,
    AUTH_ADAPTERS,
    SCHEDULE_HANDLERS,
    COMMUNICATION_PROVIDERS,
    WEBCALLBACK_HANDLERS,
)


@dataclass
class RegisteredCallback:
    callback: Callable[..., Any]
    priority: int
    owner: str | None = None


async def _invoke(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


class Kernel:
    def __init__(self) -> None:
        self._actions: dict[str, list[RegisteredCallback]] = defaultdict(list)
        self._filters: dict[str, list[RegisteredCallback]] = defaultdict(list)
        self._menu_locations: set[str] = set()
        self._menu_items: dict[str, list[dict[str, Any]]] = {}
        self._registrations: dict[str, dict[str, list[dict[str, Any]]]] = {
            kind: defaultdict(list) for kind in REGISTRATION_KINDS
        }
        self._content_states: dict[str, dict[str, Any]] = {}
        self._content_transitions: dict[str, dict[str, Any]] = {}
        self._assets: dict[str, dict[str, Any]] = {}

    # ── Actions ───────────────────────────────────────────────────────────────

    def add_action(
        self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY, owner: str | None = None
    ) -> None:
        self._add(self._actions, name, callback, priority, owner)
        logger.debug("action registered: %s (priority=%s, count=%s)", name, priority, len(self._actions[name]))

    async def do_action(self, name: str, payload: Any = None, *, strict: bool = False) -> None:
        """Await every callback registered for ``name`` with ``payload``."""
        callbacks = list(self._actions.get(name, ()))
        logger.debug("action begin: %s (callbacks=%s)", name, len(callbacks))
        for entry in callbacks:
            try:
                await _invoke(entry.callback, payload)
            except Exception as exc:
                if strict:
                    raise
                logger.warning(
                    "Plugin %s action %s raised: %s",
                    entry.owner or "core",
                    name,
                    exc,
                    extra={"plugin_id": entry.owner, "hook": name},
                )
        logger.debug("action end: %s", name)

    def has_action(self, name: str) -> bool:
        return bool(self._actions.get(name))

    # ── Filters ───────────────────────────────────────────────────────────────

    def add_filter(
        self, name: str, callback: Callable[..., Any], priority: int = DEFAULT_PRIORITY, owner: str | None = None
    ) -> None:
        self._add(self._filters, name, callback, priority, owner)
        logger.debug("filter registered: %s (priority=%s, count=%s)", name, priority, len(self._filters[name]))

    async def apply_filters(self, name: str, value: Any, context: Any = None, *, strict: bool = False) -> Any:
        """
        Thread ``value`` through every filter callback for ``name``.

        Each callback receives ``(value, context)`` and returns the new value.
        When a callback raises (and ``strict`` is off) the value it was given
        passes on unchanged.
        """
        callbacks = list(self._filters.get(name, ()))
        logger.debug("filter begin: %s (callbacks=%s)", name, len(callbacks))
        current = value
        for entry in callbacks:
            try:
                current = await _invoke(entry.callback, current, context)
            except Exception as exc:
                if strict:
                    raise
                logger.warning(
                    "Plugin %s filter %s raised: %s",
                    entry.owner or "core",
                    name,
                    exc,
                    extra={"plugin_id": entry.owner, "hook": name},
                )
        logger.debug("filter end: %s", name)
        return current

    def has_filter(self, name: str) -> bool:
        return bool(self._filters.get(name))

    @staticmethod
    def _add(
        table: dict[str, list[RegisteredCallback]],
        name: str,
        callback: Callable[..., Any],
        priority: int,
        owner: str | None,
    ) -> None:
        if not callable(callback):
            raise TypeError(f"Hook callback for {name!r} must be callable")
        entries = table[name]
        entries.append(RegisteredCallback(callback=callback, priority=int(priority), owner=owner))
        # list.sort is stable, so equal priorities keep registration order.
        entries.sort(key=lambda entry: entry.priority)

    # ── Menus ─────────────────────────────────────────────────────────────────

    def register_menu_location(self, location: str) -> None:
        self._menu_locations.add(location)
        self._menu_items.setdefault(location, [])

    def add_menu_items(self, location: str, items: list[Mapping[str, Any]]) -> None:
        if location not in self._menu_locations:
            self.register_menu_location(location)
        self._menu_items[location].extend(dict(item) for item in items)

    def get_menu_items(self, location: str) -> list[dict[str, Any]]:
        items = self._menu_items.get(location, [])
        return sorted(
            (dict(item) for item in items),
            key=lambda item: item.get("order") if item.get("order") is not None else DEFAULT_MENU_ORDER,
        )

    def get_menu_locations(self) -> list[str]:
        known = [location for location in MENU_LOCATIONS if location in self._menu_locations]
        return known + sorted(self._menu_locations.difference(MENU_LOCATIONS))

    # ── Plugin registrations ──────────────────────────────────────────────────

    def register_plugin_extension(self, kind: str, plugin_id: str, registration: Mapping[str, Any]) -> None:
        if kind not in self._registrations:
            raise ValueError(f"Unknown registration kind: {kind}")
        self._registrations[kind][plugin_id].append(dict(registration))
        logger.debug(
            "plugin %s registered (plugin=%s, id=%s)",
            kind,
            plugin_id,
            registration.get("id") or registration.get("key"),
        )

    def get_plugin_extensions(self, kind: str, plugin_id: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._registrations[kind].get(plugin_id, [])]

    def get_all_plugin_extensions(self, kind: str) -> list[dict[str, Any]]:
        """Every registration of ``kind``, each tagged with its ``plugin_id``."""
        return [
            {"plugin_id": plugin_id, **row}
            for plugin_id, rows in self._registrations[kind].items()
            for row in rows
        ]

    def register_plugin_content_type(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(CONTENT_TYPES, plugin_id, registration)

    def register_plugin_server_handler(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(SERVER_HANDLERS, plugin_id, registration)

    def register_plugin_auth_adapter(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(AUTH_ADAPTERS, plugin_id, registration)

    def register_plugin_schedule_handler(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(SCHEDULE_HANDLERS, plugin_id, registration)

    def register_plugin_communication_provider(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(COMMUNICATION_PROVIDERS, plugin_id, registration)

    def register_plugin_webcallback_handler(self, plugin_id: str, registration: Mapping[str, Any]) -> None:
        self.register_plugin_extension(WEBCALLBACK_HANDLERS, plugin_id, registration)

    def get_plugin_content_types(self, plugin_id: str) -> list[dict[str, Any]]:
        return self.get_plugin_extensions(CONTENT_TYPES, plugin_id)

    def get_plugin_server_handlers(self, plugin_id: str) -> list[dict[str, Any]]:
        return self.get_plugin_extensions(SERVER_HANDLERS, plugin_id)

    def get_plugin_schedule_handlers(self, plugin_id: str) -> list[dict[str, Any]]:
        return self.get_plugin_extensions(SCHEDULE_HANDLERS, plugin_id)

    def get_all_plugin_auth_adapters(self) -> list[dict[str, Any]]:
        return self.get_all_plugin_extensions(AUTH_ADAPTERS)

    def get_all_plugin_communication_providers(self) -> list[dict[str, Any]]:
        return self.get_all_plugin_extensions(COMMUNICATION_PROVIDERS)

    def get_all_plugin_webcallback_handlers(self) -> list[dict[str, Any]]:
        return self.get_all_plugin_extensions(WEBCALLBACK_HANDLERS)

    # ── Content states ────────────────────────────────────────────────────────

    def register_content_state(self, registration: Mapping[str, Any]) -> None:
        key = str(registration.get("key") or "").strip().lower()
        label = str(registration.get("label") or "").strip()
        if not key or not label:
            return
        transitions: list[str] = []
        for raw in registration.get("transitions") or []:
            item = str(raw or "").strip().lower()
            if item and item not in transitions:
                transitions.append(item)
        self._content_states[key] = {"key": key, "label": label, "transitions": transitions}

    def get_content_states(self) -> list[dict[str, Any]]:
        return [dict(state) for state in self._content_states.values()]

    def register_content_transition(self, registration: Mapping[str, Any]) -> None:
        key = str(registration.get("key") or "").strip().lower()
        label = str(registration.get("label") or "").strip()
        target = str(registration.get("to") or "").strip().lower()
        if not key or not label or not target:
            return
        self._content_transitions[key] = {"key": key, "label": label, "to": target}

    def get_content_transitions(self) -> list[dict[str, Any]]:
        return [dict(transition) for transition in self._content_transitions.values()]

    # ── Assets ────────────────────────────────────────────────────────────────

    def enqueue_script(self, spec: str | Mapping[str, Any]) -> None:
        raw = {"src": spec} if isinstance(spec, str) else dict(spec or {})
        src = str(raw.get("src") or "").strip()
        inline = str(raw.get("inline") or "").strip()
        if not src and not inline:
            return
        asset_id = str(raw.get("id") or "").strip() or (
            f"script:{src}" if src else f"script:inline:{_short_hash(inline)}"
        )
        self._assets[asset_id] = {
            "id": asset_id,
            "kind": "script",
            "src": src or None,
            "inline": inline or None,
            "strategy": raw.get("strategy") or DEFAULT_SCRIPT_STRATEGY,
            "attrs": dict(raw.get("attrs") or {}),
        }
        logger.debug("asset enqueued: %s", asset_id)

    def enqueue_style(self, spec: str | Mapping[str, Any]) -> None:
        raw = {"href": spec} if isinstance(spec, str) else dict(spec or {})
        href = str(raw.get("href") or "").strip()
        inline = str(raw.get("inline") or "").strip()
        if not href and not inline:
            return
        asset_id = str(raw.get("id") or "").strip() or (
            f"style:{href}" if href else f"style:inline:{_short_hash(inline)}"
        )
        attrs = dict(raw.get("attrs") or {})
        if not inline and not attrs.get("rel"):
            attrs["rel"] = "stylesheet"
        self._assets[asset_id] = {
            "id": asset_id,
            "kind": "style",
            "src": href or None,
            "inline": inline or None,
            "attrs": attrs,
        }
        logger.debug("asset enqueued: %s", asset_id)

    def get_enqueued_assets(self) -> list[dict[str, Any]]:
        return [dict(asset) for asset in self._assets.values()]


def create_kernel() -> Kernel:
    return Kernel()
