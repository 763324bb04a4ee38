"""
Theme Routes

API endpoints for theme state and per-site theme selection, plus the public
asset route serving files from a theme's ``assets/`` directory.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.auth import NETWORK_ADMIN_ROLES, Principal, require_role
from cms_kernel.database import get_db
from cms_kernel.exceptions import ResourceNotFoundError
from cms_kernel.services import themes
from cms_kernel.services.themes import ThemeWithState

router = APIRouter(prefix="/themes", tags=["Themes"])
assets_router = APIRouter(tags=["Themes"])
logger = logging.getLogger(__name__)

require_admin = require_role(list(NETWORK_ADMIN_ROLES))


# ============== Schemas ==============


class ThemeResponse(BaseModel):
    id: str
    name: str
    description: str
    version: str
    enabled: bool
    tokens: dict[str, Any]
    config: dict[str, Any]


class ThemeConfigUpdate(BaseModel):
    config: dict[str, Any]


class SiteThemeUpdate(BaseModel):
    theme_id: str


class SiteThemeResponse(BaseModel):
    site_id: str
    theme_id: str
    tokens: dict[str, Any]
    assets: dict[str, list[str]]


def _build_response(theme: ThemeWithState) -> ThemeResponse:
    return ThemeResponse(
        id=theme.id,
        name=theme.name,
        description=theme.description,
        version=theme.version,
        enabled=theme.enabled,
        tokens=theme.tokens,
        config=theme.config,
    )


async def _load(db: AsyncSession, theme_id: str) -> ThemeResponse:
    theme = themes.require_theme(theme_id)
    for item in await themes.list_themes_with_state(db):
        if item.id == theme.id:
            return _build_response(item)
    return _build_response(theme)


async def _site_response(db: AsyncSession, site_id: str) -> SiteThemeResponse:
    active = await themes.get_active_theme_for_site(db, site_id)
    return SiteThemeResponse(
        site_id=site_id,
        theme_id=active.id if active else "",
        tokens=await themes.get_site_theme_tokens(db, site_id),
        assets=await themes.get_theme_assets_for_site(db, site_id),
    )


# ============== Themes ==============


@router.get("", response_model=list[ThemeResponse])
async def list_themes(
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> list[ThemeResponse]:
    return [_build_response(theme) for theme in await themes.list_themes_with_state(db)]


@router.post("/{theme_id}/enable", response_model=ThemeResponse)
async def enable_theme(
    theme_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> ThemeResponse:
    await themes.set_theme_enabled(db, theme_id, True)
    return await _load(db, theme_id)


@router.post("/{theme_id}/disable", response_model=ThemeResponse)
async def disable_theme(
    theme_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> ThemeResponse:
    await themes.set_theme_enabled(db, theme_id, False)
    return await _load(db, theme_id)


@router.put("/{theme_id}/config", response_model=ThemeResponse)
async def update_theme_config(
    theme_id: str,
    payload: ThemeConfigUpdate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> ThemeResponse:
    await themes.save_theme_config(db, theme_id, payload.config)
    return await _load(db, theme_id)


# ============== Site selection ==============


@router.get("/sites/{site_id}", response_model=SiteThemeResponse)
async def get_site_theme(
    site_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> SiteThemeResponse:
    """The theme a site actually renders with, after enabled-state fallback."""
    return await _site_response(db, site_id)


@router.put("/sites/{site_id}", response_model=SiteThemeResponse)
async def set_site_theme(
    site_id: str,
    payload: SiteThemeUpdate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_admin),
) -> SiteThemeResponse:
    await themes.set_site_theme(db, site_id, payload.theme_id)
    return await _site_response(db, site_id)


# ============== Assets ==============


@assets_router.get("/theme-assets/{theme_id}/{asset_path:path}")
async def get_theme_asset(theme_id: str, asset_path: str) -> FileResponse:
    path = themes.resolve_theme_asset_path(theme_id, asset_path)
    if path is None:
        raise ResourceNotFoundError("Theme asset", f"{theme_id}/{asset_path}")
    return FileResponse(path)
