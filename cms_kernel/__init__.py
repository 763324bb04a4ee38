"""
CMS Extension Kernel

Plugin/theme runtime for a multi-tenant CMS: manifest discovery, hook
dispatch, capability guards and the queues that fan events out to
extensions and webhooks.
"""

__version__ = "0.4.0"
