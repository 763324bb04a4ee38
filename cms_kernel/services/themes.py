"""
Themes

Theme discovery, per-theme state, per-site theme selection and template
rendering. Themes live in their own directory under any of the configured
theme roots:

    themes/
      default-light/
        theme.json          manifest
        templates/*.html    Jinja2 templates (header.html / footer.html partials)
        assets/style.css    served under /theme-assets/{id}/style.css

State is stored under ``theme_{id}_enabled`` / ``theme_{id}_config`` and the
site's selection under ``site_{siteId}_theme``.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from jinja2.sandbox import SandboxedEnvironment
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.config import settings
from cms_kernel.exceptions import ExtensionNotFoundError
from cms_kernel.extensions.contracts import ThemeContract, normalize_extension_id, validate_theme_contract
from cms_kernel.extensions.core_version import CORE_VERSION, CORE_VERSION_SERIES, is_core_version_compatible
from cms_kernel.extensions.hooks import ACTION_RENDER_BEFORE, FILTER_RENDER_LAYOUT, FILTER_THEME_TOKENS
from cms_kernel.extensions.kernel import Kernel
from cms_kernel.services import settings_store

logger = logging.getLogger(__name__)

MANIFEST_FILE = "theme.json"
DEFAULT_THEME_ID = "default-light"
THEME_ASSET_PREFIX = "/theme-assets"
PARTIAL_FILES = ("header.html", "footer.html")

FALLBACK_TOKENS: dict[str, str] = {
    "shellBg": "bg-[#f3e8d0]",
    "shellText": "text-stone-900",
    "topMuted": "text-stone-600",
    "titleText": "text-stone-900",
    "navText": "text-stone-700",
    "navHover": "hover:text-orange-600",
}

SYSTEM_THEME_PRIMARIES: dict[str, str] = {
    "documentation_category_slug": "documentation",
    "post_mascot_mode": "none",
    "category_base": "c",
    "tag_base": "t",
}
MASCOT_MODES = ("none", "fixed_reading", "random_non_docs")

_SLUG_STRIP = re.compile(r"[^a-z0-9_-]")

# Names every template may reference.
RENDER_DEFAULTS: dict[str, Any] = {"site": {}, "theme": {}, "config": {}, "tokens": {}}


class ThemeWithState(ThemeContract):
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    source_dir: str = Field(default="", exclude=True)

    @property
    def templates_dir(self) -> Path:
        return Path(self.source_dir) / self.id / "templates"

    @property
    def assets_dir(self) -> Path:
        return Path(self.source_dir) / self.id / "assets"


# ── Setting keys ──────────────────────────────────────────────────────────────


def theme_enabled_key(theme_id: str) -> str:
    return f"theme_{theme_id}_enabled"


def theme_config_key(theme_id: str) -> str:
    return f"theme_{theme_id}_config"


def site_theme_key(site_id: str) -> str:
    return f"site_{site_id}_theme"


def normalize_theme_config(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``raw`` on the system primaries and clean each primary."""
    merged = {**SYSTEM_THEME_PRIMARIES, **raw}

    def _slug(key: str) -> str:
        value = merged.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
        return SYSTEM_THEME_PRIMARIES[key]

    mascot_mode = str(merged.get("post_mascot_mode") or "").strip()
    merged["documentation_category_slug"] = _slug("documentation_category_slug")
    merged["post_mascot_mode"] = mascot_mode if mascot_mode in MASCOT_MODES else "none"
    merged["category_base"] = _slug("category_base")
    merged["tag_base"] = _slug("tag_base")
    return merged


def fallback_theme() -> ThemeWithState:
    return ThemeWithState(
        id=DEFAULT_THEME_ID,
        name="Default Light",
        description="Built-in fallback theme",
        version=CORE_VERSION,
        min_core_version=CORE_VERSION_SERIES,
        tokens=dict(FALLBACK_TOKENS),
        enabled=True,
        config=dict(SYSTEM_THEME_PRIMARIES),
    )


# ── Discovery ─────────────────────────────────────────────────────────────────


def get_themes_dirs() -> list[Path]:
    return [Path(path).resolve() for path in settings.get_themes_dirs()]


def _read_manifest(manifest_path: Path) -> Any:
    try:
        return json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Skipping theme manifest %s: %s", manifest_path, exc)
    return None


def get_available_themes() -> list[ThemeWithState]:
    """Every valid, core-compatible theme; the first directory wins on duplicate ids."""
    by_id: dict[str, ThemeWithState] = {}
    for themes_dir in get_themes_dirs():
        if not themes_dir.is_dir():
            continue
        for entry in sorted(themes_dir.iterdir()):
            manifest_path = entry / MANIFEST_FILE
            if not entry.is_dir() or not manifest_path.is_file():
                continue
            raw = _read_manifest(manifest_path)
            if raw is None:
                continue
            contract = validate_theme_contract(raw, entry.name)
            if contract is None:
                continue
            if not is_core_version_compatible(contract.min_core_version):
                logger.info(
                    "Theme %s skipped: requires core %s, running %s",
                    contract.id,
                    contract.min_core_version,
                    CORE_VERSION,
                )
                continue
            if contract.id in by_id:
                logger.debug("Theme %s in %s shadowed by an earlier directory", contract.id, themes_dir)
                continue
            by_id[contract.id] = ThemeWithState(**contract.model_dump(), source_dir=str(themes_dir))

    return sorted(by_id.values(), key=lambda theme: theme.name.lower())


# ── State ─────────────────────────────────────────────────────────────────────


async def list_themes_with_state(db: AsyncSession) -> list[ThemeWithState]:
    themes = get_available_themes()
    if not themes:
        return [fallback_theme()]

    keys = [key for theme in themes for key in (theme_enabled_key(theme.id), theme_config_key(theme.id))]
    stored = await settings_store.get_settings(db, keys)
    for theme in themes:
        defaults = {
            field.key: field.default_value for field in theme.settings_fields if isinstance(field.default_value, str)
        }
        stored_config = settings_store.parse_json_object(stored.get(theme_config_key(theme.id)))
        theme.enabled = settings_store.parse_bool(stored.get(theme_enabled_key(theme.id)), True)
        theme.config = normalize_theme_config({**defaults, **stored_config})
    return themes


def require_theme(theme_id: str) -> ThemeWithState:
    normalized = normalize_extension_id(theme_id)
    for theme in get_available_themes() or [fallback_theme()]:
        if theme.id == normalized:
            return theme
    raise ExtensionNotFoundError(theme_id, kind="Theme")


async def set_theme_enabled(db: AsyncSession, theme_id: str, enabled: bool) -> None:
    theme = require_theme(theme_id)
    await settings_store.set_bool_setting(db, theme_enabled_key(theme.id), enabled)
    logger.info("Theme %s %s", theme.id, "enabled" if enabled else "disabled")


async def save_theme_config(db: AsyncSession, theme_id: str, config: dict[str, Any]) -> None:
    theme = require_theme(theme_id)
    await settings_store.set_json_setting(db, theme_config_key(theme.id), config)


async def set_site_theme(db: AsyncSession, site_id: str, theme_id: str) -> None:
    theme = require_theme(theme_id)
    await settings_store.set_setting(db, site_theme_key(site_id), theme.id)
    logger.info("Site %s switched to theme %s", site_id, theme.id)


async def get_site_theme_id(db: AsyncSession, site_id: str) -> str:
    stored = (await settings_store.get_setting(db, site_theme_key(site_id)) or "").strip()
    return stored or DEFAULT_THEME_ID


async def get_active_theme_for_site(db: AsyncSession, site_id: str) -> ThemeWithState | None:
    """The selected theme if enabled, else the first enabled theme, else the first theme."""
    themes = await list_themes_with_state(db)
    if not themes:
        return None
    selected_id = await get_site_theme_id(db, site_id)
    enabled = [theme for theme in themes if theme.enabled]
    for theme in enabled:
        if theme.id == selected_id:
            return theme
    return enabled[0] if enabled else themes[0]


async def get_site_theme_tokens(db: AsyncSession, site_id: str, kernel: Kernel | None = None) -> dict[str, Any]:
    active = await get_active_theme_for_site(db, site_id)
    tokens = {**FALLBACK_TOKENS, **(active.tokens if active else {})}
    if kernel is None:
        return tokens
    filtered = await kernel.apply_filters(FILTER_THEME_TOKENS, tokens, {"site_id": site_id})
    return filtered if isinstance(filtered, dict) else tokens


# ── Assets ────────────────────────────────────────────────────────────────────


def _is_external(url: str) -> bool:
    return url.startswith(("http://", "https://", "/"))


def to_theme_asset_url(theme_id: str, asset: str) -> str:
    if _is_external(asset):
        return asset
    clean = asset.lstrip("/")
    if clean.startswith("assets/"):
        clean = clean[len("assets/"):]
    return f"{THEME_ASSET_PREFIX}/{theme_id}/{clean}"


async def get_theme_assets_for_site(db: AsyncSession, site_id: str) -> dict[str, list[str]]:
    active = await get_active_theme_for_site(db, site_id)
    if active is None:
        return {"styles": [], "scripts": []}

    styles = [to_theme_asset_url(active.id, asset) for asset in active.assets.styles]
    scripts = [to_theme_asset_url(active.id, asset) for asset in active.assets.scripts]
    if active.source_dir:
        if not styles and (active.assets_dir / "style.css").is_file():
            styles.append(f"{THEME_ASSET_PREFIX}/{active.id}/style.css")
        if not scripts and (active.assets_dir / "theme.js").is_file():
            scripts.append(f"{THEME_ASSET_PREFIX}/{active.id}/theme.js")
    return {"styles": styles, "scripts": scripts}


def resolve_theme_asset_path(theme_id: str, asset: str) -> Path | None:
    """Filesystem path of a theme asset, or None when it is missing or escapes the assets dir."""
    for theme in get_available_themes():
        if theme.id != normalize_extension_id(theme_id):
            continue
        root = theme.assets_dir.resolve()
        candidate = (root / asset.lstrip("/")).resolve()
        if root not in candidate.parents or not candidate.is_file():
            return None
        return candidate
    return None


# ── Template candidates ───────────────────────────────────────────────────────


def pluralize(label: str) -> str:
    value = label.strip()
    if not value:
        return value
    lower = value.lower()
    if lower.endswith("ies"):
        return value
    if re.search(r"[^aeiou]y$", lower):
        return value[:-1] + "ies"
    if re.search(r"(s|x|z|ch|sh)$", lower):
        return value + "es"
    return value + "s"


def unique_candidates(candidates: list[str | None]) -> list[str]:
    seen: list[str] = []
    for item in candidates:
        value = (item or "").strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


def home_template_candidates(configured: str | None = None) -> list[str]:
    return unique_candidates([configured, "home.html", "index.html"])


def domain_detail_template_candidates(data_domain: str, slug: str) -> list[str]:
    key = data_domain.strip().lower()
    plural = pluralize(key).lower()
    slug = slug.strip().lower()
    return unique_candidates(
        [
            f"single-{plural}-{slug}.html" if slug else None,
            f"single-{key}-{slug}.html" if slug else None,
            f"single-{plural}.html",
            f"single-{key}.html",
            f"{plural}-{slug}.html" if slug else None,
            f"{key}-{slug}.html" if slug else None,
            "single.html",
            "index.html",
        ]
    )


def domain_archive_template_candidates(data_domain: str, plural_segment: str = "") -> list[str]:
    key = data_domain.strip().lower()
    plural = (plural_segment or pluralize(key)).strip().lower()
    return unique_candidates(
        [
            f"archive-{plural}.html",
            f"archive-{key}.html",
            "archive.html",
            f"{plural}.html",
            f"{key}.html",
            "index.html",
        ]
    )


def taxonomy_archive_template_candidates(taxonomy: str, slug: str) -> list[str]:
    slug = slug.strip().lower()
    return unique_candidates(
        [
            f"taxonomy-{taxonomy}-{slug}.html",
            f"taxonomy-{taxonomy}.html",
            f"tax_{slug}.html",
            f"tax_{taxonomy}_{slug}.html",
            f"{taxonomy}-{slug}.html",
            f"{taxonomy}.html",
            "taxonomy.html",
            "archive.html",
            "index.html",
        ]
    )


def taxonomy_template_candidates(taxonomy: str, slug: str, data_domain: str = "") -> list[str]:
    """Domain-specific taxonomy templates first, then generic taxonomy, then the domain archive."""
    slug = slug.strip().lower()
    data_domain = data_domain.strip().lower()
    domain_specific = [f"{data_domain}-{taxonomy}-{slug}.html"] if data_domain else []
    domain_archive = domain_archive_template_candidates(data_domain) if data_domain else []
    return unique_candidates(
        domain_specific + taxonomy_archive_template_candidates(taxonomy, slug) + domain_archive
    )


def not_found_template_candidates() -> list[str]:
    return ["404.html", "index.html"]


def layout_template_candidates(layout: str, data_domain: str = "") -> list[str]:
    layout = layout.strip().lower()
    if not layout:
        return []
    data_domain = data_domain.strip().lower()
    return unique_candidates(
        [
            f"{data_domain}-{layout}.html" if data_domain else None,
            f"{data_domain}_{layout}.html" if data_domain else None,
            f"layout-{layout}.html",
            f"{layout}.html",
        ]
    )


# ── Template lookup ───────────────────────────────────────────────────────────


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


async def get_theme_template_from_candidates(
    db: AsyncSession, site_id: str, candidates: list[str]
) -> dict[str, Any] | None:
    """
    Load the first candidate template that exists in the active theme.

    Returns:
        dict with ``template``, ``theme_id``, ``theme_name``, ``config`` and
        ``partials`` (``header`` / ``footer``, empty when absent), or None
    """
    active = await get_active_theme_for_site(db, site_id)
    if active is None or not active.source_dir:
        return None

    templates_dir = active.templates_dir
    for candidate in candidates:
        if not candidate:
            continue
        raw = _read_text(templates_dir / candidate.lstrip("/"))
        if raw is None:
            continue
        partials = {name.removesuffix(".html"): _read_text(templates_dir / name) or "" for name in PARTIAL_FILES}
        return {
            "template": raw,
            "theme_id": active.id,
            "theme_name": active.name,
            "config": dict(active.config),
            "partials": partials,
        }
    return None


async def get_theme_home_template(db: AsyncSession, site_id: str) -> dict[str, Any] | None:
    active = await get_active_theme_for_site(db, site_id)
    configured = active.templates.home if active else None
    return await get_theme_template_from_candidates(db, site_id, home_template_candidates(configured))


# ── Rendering ─────────────────────────────────────────────────────────────────

_env = SandboxedEnvironment(autoescape=True, trim_blocks=True, lstrip_blocks=True)


def _as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _slug_like(value: str, default: str) -> str:
    return _SLUG_STRIP.sub("", value.strip().lower()) or default


def build_theme_system_context(context: dict[str, Any]) -> dict[str, Any]:
    site = context.get("site") if isinstance(context.get("site"), dict) else {}
    theme = context.get("theme") if isinstance(context.get("theme"), dict) else {}
    nested = context.get("system") if isinstance(context.get("system"), dict) else {}

    data_domain = (
        _as_str(context.get("data_domain"))
        or _as_str(context.get("dataDomain"))
        or _as_str(nested.get("data_domain"))
        or "post"
    )
    site_domain = _as_str(site.get("domain"), _as_str(site.get("url")))
    site_domain = re.sub(r"^https?://", "", site_domain)

    return {
        "route_kind": _as_str(context.get("route_kind"), "home").strip().lower() or "home",
        "data_domain": _slug_like(data_domain, "post"),
        "category_base": _slug_like(_as_str(context.get("category_base"), "c"), "c"),
        "tag_base": _slug_like(_as_str(context.get("tag_base"), "t"), "t"),
        "site_id": _as_str(site.get("id")),
        "site_domain": site_domain,
        "site_subdomain": _as_str(site.get("subdomain")),
        "site_is_primary": bool(site.get("is_primary", site.get("isPrimary", False))),
        "theme_id": _as_str(theme.get("id")),
        "theme_name": _as_str(theme.get("name")),
    }


async def render_theme_template(template: str, context: dict[str, Any], kernel: Kernel | None = None) -> str:
    """
    Render a theme template string.

    The system context is exposed both flattened and as ``system``; caller
    context wins on key clashes. With a kernel, ``render:before`` fires
    before rendering and the output passes through ``render:layout``.
    """
    system = build_theme_system_context(context)
    variables = {**RENDER_DEFAULTS, **system, "system": system, **context}
    if kernel is not None:
        await kernel.do_action(ACTION_RENDER_BEFORE, {"system": system, "context": context})

    html = _env.from_string(template).render(**variables)

    if kernel is None:
        return html
    filtered = await kernel.apply_filters(FILTER_RENDER_LAYOUT, html, {"system": system})
    return filtered if isinstance(filtered, str) else html
