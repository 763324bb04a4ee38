"""
Hook Names

Canonical action and filter names fired by the kernel and its services.
Plugins register against these strings; names outside these lists are
allowed (the kernel does not reject unknown hooks) but nothing in core
fires them.

Actions are awaited for side effects; filters thread a value through every
callback and return the result.
"""

# ── Actions ───────────────────────────────────────────────────────────────────

ACTION_KERNEL_INIT = "kernel:init"
ACTION_PLUGINS_REGISTER = "plugins:register"
ACTION_THEMES_REGISTER = "themes:register"
ACTION_MENUS_REGISTER = "menus:register"
ACTION_DOMAIN_EVENT = "domain:event"
ACTION_ANALYTICS_EVENT = "analytics:event"
ACTION_COMMUNICATION_QUEUED = "communication:queued"
ACTION_REQUEST_BEGIN = "request:begin"
ACTION_CONTENT_LOAD = "content:load"
ACTION_RENDER_BEFORE = "render:before"
ACTION_RENDER_AFTER = "render:after"
ACTION_REQUEST_END = "request:end"

ALL_ACTIONS: list[str] = [
    ACTION_KERNEL_INIT,
    ACTION_PLUGINS_REGISTER,
    ACTION_THEMES_REGISTER,
    ACTION_MENUS_REGISTER,
    ACTION_DOMAIN_EVENT,
    ACTION_ANALYTICS_EVENT,
    ACTION_COMMUNICATION_QUEUED,
    ACTION_REQUEST_BEGIN,
    ACTION_CONTENT_LOAD,
    ACTION_RENDER_BEFORE,
    ACTION_RENDER_AFTER,
    ACTION_REQUEST_END,
]

# ── Filters ───────────────────────────────────────────────────────────────────

FILTER_CONTENT_TRANSFORM = "content:transform"
FILTER_NAV_ITEMS = "nav:items"
FILTER_THEME_TOKENS = "theme:tokens"
FILTER_PAGE_META = "page:meta"
FILTER_RENDER_LAYOUT = "render:layout"
FILTER_ADMIN_ENVIRONMENT_BADGE = "admin:environment-badge"
FILTER_ADMIN_SCHEDULE_ACTIONS = "admin:schedule-actions"
FILTER_DOMAIN_SCRIPTS = "domain:scripts"
FILTER_DOMAIN_QUERY = "domain:query"
FILTER_ANALYTICS_SCRIPTS = "analytics:scripts"
FILTER_COMMUNICATION_DELIVER = "communication:deliver"
FILTER_CONTENT_STATES = "content:states"
FILTER_CONTENT_TRANSITIONS = "content:transitions"
FILTER_CONTENT_TRANSITION_DECISION = "content:transition:decision"

FILTER_AUTH_PROVIDERS = "auth:providers"
FILTER_AUTH_ADAPTER = "auth:adapter"
FILTER_AUTH_CALLBACK_SIGN_IN = "auth:callbacks:signIn"
FILTER_AUTH_CALLBACK_JWT = "auth:callbacks:jwt"
FILTER_AUTH_CALLBACK_SESSION = "auth:callbacks:session"

# Registering any of these additionally requires the authExtensions capability.
AUTH_FILTERS: frozenset[str] = frozenset(
    {
        FILTER_AUTH_PROVIDERS,
        FILTER_AUTH_ADAPTER,
        FILTER_AUTH_CALLBACK_SIGN_IN,
        FILTER_AUTH_CALLBACK_JWT,
        FILTER_AUTH_CALLBACK_SESSION,
    }
)

ALL_FILTERS: list[str] = [
    FILTER_CONTENT_TRANSFORM,
    FILTER_NAV_ITEMS,
    FILTER_THEME_TOKENS,
    FILTER_PAGE_META,
    FILTER_RENDER_LAYOUT,
    FILTER_ADMIN_ENVIRONMENT_BADGE,
    FILTER_ADMIN_SCHEDULE_ACTIONS,
    FILTER_DOMAIN_SCRIPTS,
    FILTER_DOMAIN_QUERY,
    FILTER_ANALYTICS_SCRIPTS,
    FILTER_COMMUNICATION_DELIVER,
    FILTER_CONTENT_STATES,
    FILTER_CONTENT_TRANSITIONS,
    FILTER_CONTENT_TRANSITION_DECISION,
    *sorted(AUTH_FILTERS),
]

# ── Menu locations ────────────────────────────────────────────────────────────

MENU_HEADER = "header"
MENU_FOOTER = "footer"
MENU_DASHBOARD = "dashboard"

MENU_LOCATIONS: tuple[str, ...] = (MENU_HEADER, MENU_FOOTER, MENU_DASHBOARD)


def is_auth_filter(name: str) -> bool:
    return name in AUTH_FILTERS
