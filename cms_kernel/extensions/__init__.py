"""
Extension runtime.

core_version -- the core release plugins and themes declare compatibility with
contracts    -- manifest (plugin.json / theme.json) validation
hooks        -- well-known action and filter names
kernel       -- per-request hook, menu and registration container
registry     -- plugin discovery and persisted enable/config state
api          -- capability-guarded API objects handed to extensions
runtime      -- builds a kernel with every enabled plugin registered
"""
