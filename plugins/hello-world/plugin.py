"""Example plugin: a footer link, a token tweak and a heartbeat job."""

import logging

logger = logging.getLogger(__name__)


async def register(kernel, api):
    greeting = await api.get_plugin_setting("greeting", "Hello")

    kernel.add_menu_items("footer", [{"label": greeting, "href": "/hello"}])

    def tweak_tokens(tokens, context):
        return {**tokens, "navHover": "hover:text-teal-600"}

    kernel.add_filter("theme:tokens", tweak_tokens)

    async def heartbeat(context):
        await api.emit_domain_event("plugin.hello-world.heartbeat", {"site_id": context.get("site_id")})
        logger.info("hello-world heartbeat for site %s", context.get("site_id"))

    api.register_schedule_handler({"id": "heartbeat", "run": heartbeat})
