"""
Settings Store

Key/value persistence on top of ``cms_settings``. Values are always strings;
callers JSON-encode structured config and store booleans as "true"/"false".

Site-scoped keys follow ``site_{siteId}_{localKey}``.
"""

import json
import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.models.settings import CmsSetting

logger = logging.getLogger(__name__)

SCHEDULES_ENABLED_KEY = "schedules_enabled"
COMMUNICATION_ENABLED_KEY = "communication_enabled"
SIGNATURE_POLICY_KEY = "webcallback_signature_policy"


def parse_site_scoped_key(key: str) -> tuple[str, str] | None:
    """Split ``site_{siteId}_{localKey}`` into ``(siteId, localKey)``."""
    normalized = str(key or "").strip()
    if not normalized.startswith("site_"):
        return None
    rest = normalized[len("site_"):]
    site_id, sep, local_key = rest.partition("_")
    if not sep or not site_id.strip() or not local_key.strip():
        return None
    return site_id.strip(), local_key.strip()


def site_scoped_key(site_id: str, local_key: str) -> str:
    return f"site_{site_id}_{local_key}"


async def get_setting(db: AsyncSession, key: str) -> str | None:
    key = str(key or "").strip()
    if not key:
        return None
    row = await db.get(CmsSetting, key)
    return row.value if row is not None else None


async def get_settings(db: AsyncSession, keys: list[str]) -> dict[str, str]:
    """Fetch several keys at once; missing keys are absent from the result."""
    wanted = [key for key in dict.fromkeys(keys) if key]
    if not wanted:
        return {}
    result = await db.execute(select(CmsSetting).where(CmsSetting.key.in_(wanted)))
    return {row.key: row.value for row in result.scalars().all()}


async def set_setting(db: AsyncSession, key: str, value: str, *, commit: bool = True) -> None:
    key = str(key or "").strip()
    if not key:
        raise ValueError("Setting key is required")
    row = await db.get(CmsSetting, key)
    if row is None:
        db.add(CmsSetting(key=key, value=str(value)))
    else:
        row.value = str(value)
    if commit:
        await db.commit()
    logger.debug("setting stored: %s", key)


async def delete_setting(db: AsyncSession, key: str) -> None:
    await db.execute(delete(CmsSetting).where(CmsSetting.key == key))
    await db.commit()


# ── Typed helpers ─────────────────────────────────────────────────────────────


def parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def parse_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Ignoring malformed JSON setting value")
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def get_bool_setting(db: AsyncSession, key: str, default: bool = False) -> bool:
    return parse_bool(await get_setting(db, key), default)


async def set_bool_setting(db: AsyncSession, key: str, value: bool) -> None:
    await set_setting(db, key, "true" if value else "false")


async def get_json_setting(db: AsyncSession, key: str) -> dict[str, Any]:
    return parse_json_object(await get_setting(db, key))


async def set_json_setting(db: AsyncSession, key: str, value: dict[str, Any]) -> None:
    await set_setting(db, key, json.dumps(value, ensure_ascii=False))
