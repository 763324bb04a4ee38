"""
Plugin Administration Routes

GET  /api/v1/plugins                          → list discovered plugins with state
GET  /api/v1/plugins/menu                     → dashboard menu items of enabled plugins
GET  /api/v1/plugins/{plugin_id}              → single plugin
POST /api/v1/plugins/{plugin_id}/enable       → enable network-wide
POST /api/v1/plugins/{plugin_id}/disable      → disable network-wide
PUT  /api/v1/plugins/{plugin_id}/config       → replace network config
POST /api/v1/plugins/{plugin_id}/sites/{site_id}/enable   → per-site switch
POST /api/v1/plugins/{plugin_id}/sites/{site_id}/disable
PUT  /api/v1/plugins/{plugin_id}/sites/{site_id}/config   → replace site config

All routes require a network admin.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import NETWORK_ADMIN_ROLES, Principal, require_role
from cms_kernel.database import get_db
from cms_kernel.extensions import registry
from cms_kernel.extensions.contracts import normalize_extension_id
from cms_kernel.extensions.registry import PluginWithState
from cms_kernel.extensions.runtime import get_dashboard_plugin_menu_items

router = APIRouter(prefix="/plugins", tags=["Plugins"])
logger = logging.getLogger(__name__)

require_admin = require_role(list(NETWORK_ADMIN_ROLES))


# ── Pydantic schemas ───────────────────────────────────────────────────────────


class PluginConfigUpdate(BaseModel):
    config: dict[str, Any]


class PluginResponse(BaseModel):
    id: str
    name: str
    description: str
    version: str
    scope: str
    enabled: bool
    capabilities: dict[str, bool]
    config: dict[str, Any]
    site_enabled: bool | None = None
    site_config: dict[str, Any] | None = None
    menu: dict[str, str] | None = None


# ── Helpers ────────────────────────────────────────────────────────────────────


def _build_response(plugin: PluginWithState) -> PluginResponse:
    return PluginResponse(
        id=plugin.id,
        name=plugin.name,
        description=plugin.description,
        version=plugin.version,
        scope=plugin.scope,
        enabled=plugin.enabled,
        capabilities=plugin.capabilities.model_dump(),
        config=plugin.config,
        site_enabled=plugin.site_enabled,
        site_config=plugin.site_config,
        menu=plugin.menu.model_dump() if plugin.menu else None,
    )


async def _load(db: AsyncSession, plugin_id: str, site_id: str | None = None) -> PluginResponse:
    registry.require_plugin(plugin_id)
    plugins = (
        await registry.list_plugins_with_site_state(db, site_id)
        if site_id
        else await registry.list_plugins_with_state(db)
    )
    normalized = normalize_extension_id(plugin_id)
    return _build_response(next(plugin for plugin in plugins if plugin.id == normalized))


# ── Routes ─────────────────────────────────────────────────────────────────────


@router.get("", response_model=list[PluginResponse])
async def list_plugins(
    site_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> list[PluginResponse]:
    """List discovered plugins; with ``site_id`` the site overrides are included."""
    plugins = (
        await registry.list_plugins_with_site_state(db, site_id)
        if site_id
        else await registry.list_plugins_with_state(db)
    )
    return [_build_response(plugin) for plugin in plugins]


@router.get("/menu")
async def plugin_menu(
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> list[dict[str, Any]]:
    return await get_dashboard_plugin_menu_items(db)


@router.get("/{plugin_id}", response_model=PluginResponse)
async def get_plugin(
    plugin_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    return await _load(db, plugin_id)


@router.post("/{plugin_id}/enable", response_model=PluginResponse)
async def enable_plugin(
    plugin_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.set_plugin_enabled(db, plugin_id, True)
    return await _load(db, plugin_id)


@router.post("/{plugin_id}/disable", response_model=PluginResponse)
async def disable_plugin(
    plugin_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.set_plugin_enabled(db, plugin_id, False)
    return await _load(db, plugin_id)


@router.put("/{plugin_id}/config", response_model=PluginResponse)
async def update_plugin_config(
    plugin_id: str,
    payload: PluginConfigUpdate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.save_plugin_config(db, plugin_id, payload.config)
    logger.info("Plugin config updated: %s", plugin_id)
    return await _load(db, plugin_id)


@router.post("/{plugin_id}/sites/{site_id}/enable", response_model=PluginResponse)
async def enable_plugin_for_site(
    plugin_id: str,
    site_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.set_site_plugin_enabled(db, site_id, plugin_id, True)
    return await _load(db, plugin_id, site_id)


@router.post("/{plugin_id}/sites/{site_id}/disable", response_model=PluginResponse)
async def disable_plugin_for_site(
    plugin_id: str,
    site_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.set_site_plugin_enabled(db, site_id, plugin_id, False)
    return await _load(db, plugin_id, site_id)


@router.put("/{plugin_id}/sites/{site_id}/config", response_model=PluginResponse)
async def update_site_plugin_config(
    plugin_id: str,
    site_id: str,
    payload: PluginConfigUpdate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> PluginResponse:
    await registry.save_site_plugin_config(db, site_id, plugin_id, payload.config)
    logger.info("Plugin config updated: %s (site %s)", plugin_id, site_id)
    return await _load(db, plugin_id, site_id)
