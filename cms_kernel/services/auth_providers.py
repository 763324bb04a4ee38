"""
Auth Providers

OAuth providers are switched on by enabling the matching auth plugin
(``auth-github`` enables ``github``, ...). Credentials come from the
plugin's stored config, falling back to ``AUTH_{PROVIDER}_ID`` /
``AUTH_{PROVIDER}_SECRET`` environment variables. Plugins with the
authExtensions capability can reshape the result through the auth filters.
"""

import logging
import os
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cms_kernel.extensions.hooks import (
    FILTER_AUTH_ADAPTER,
    FILTER_AUTH_CALLBACK_JWT,
    FILTER_AUTH_CALLBACK_SESSION,
    FILTER_AUTH_CALLBACK_SIGN_IN,
    FILTER_AUTH_PROVIDERS,
)
from cms_kernel.extensions.kernel import Kernel
from cms_kernel.extensions.registry import list_plugins_with_state

logger = logging.getLogger(__name__)

AUTH_PLUGIN_PROVIDER_MAP: dict[str, str] = {
    "auth-github": "github",
    "auth-google": "google",
    "auth-facebook": "facebook",
    "auth-apple": "apple",
}

AUTH_CALLBACK_FILTERS = {
    "signIn": FILTER_AUTH_CALLBACK_SIGN_IN,
    "jwt": FILTER_AUTH_CALLBACK_JWT,
    "session": FILTER_AUTH_CALLBACK_SESSION,
}


def is_auth_plugin_id(plugin_id: str) -> bool:
    return plugin_id in AUTH_PLUGIN_PROVIDER_MAP


def provider_env_keys(provider_id: str) -> tuple[str, str]:
    prefix = f"AUTH_{provider_id.upper()}"
    return f"{prefix}_ID", f"{prefix}_SECRET"


def _credentials(provider_id: str, config: dict[str, Any]) -> tuple[str, str, str]:
    client_id = str(config.get("clientId") or "").strip()
    client_secret = str(config.get("clientSecret") or "").strip()
    if client_id and client_secret:
        return client_id, client_secret, "config"
    id_key, secret_key = provider_env_keys(provider_id)
    return os.getenv(id_key, "").strip(), os.getenv(secret_key, "").strip(), "env"


async def resolve_oauth_providers(db: AsyncSession, kernel: Kernel | None = None) -> list[dict[str, Any]]:
    """
    Provider configs for every enabled auth plugin that has credentials,
    passed through the ``auth:providers`` filter when a kernel is given.
    """
    providers: list[dict[str, Any]] = []
    for plugin in await list_plugins_with_state(db):
        provider_id = AUTH_PLUGIN_PROVIDER_MAP.get(plugin.id)
        if provider_id is None or not plugin.enabled:
            continue
        client_id, client_secret, source = _credentials(provider_id, plugin.config)
        if not client_id or not client_secret:
            logger.info("Auth provider %s enabled without credentials; skipped", provider_id)
            continue
        providers.append(
            {
                "id": provider_id,
                "plugin_id": plugin.id,
                "client_id": client_id,
                "client_secret": client_secret,
                "source": source,
            }
        )

    if kernel is None:
        return providers
    filtered = await kernel.apply_filters(FILTER_AUTH_PROVIDERS, providers)
    return filtered if isinstance(filtered, list) else providers


async def resolve_auth_adapter(kernel: Kernel) -> Any:
    """First registered auth adapter, after the ``auth:adapter`` filter. None when nothing is registered."""
    adapters = kernel.get_all_plugin_auth_adapters()
    adapter = adapters[0].get("adapter") if adapters else None
    if adapters:
        logger.debug("Using auth adapter %s from plugin %s", adapters[0].get("id"), adapters[0]["plugin_id"])
    return await kernel.apply_filters(FILTER_AUTH_ADAPTER, adapter)


async def apply_auth_callback(kernel: Kernel, callback: str, value: Any, context: dict[str, Any] | None = None) -> Any:
    """Run one of the ``auth:callbacks:*`` filters (``signIn``, ``jwt`` or ``session``)."""
    name = AUTH_CALLBACK_FILTERS.get(callback)
    if name is None:
        raise ValueError(f"Unknown auth callback: {callback}")
    return await kernel.apply_filters(name, value, context or {})
