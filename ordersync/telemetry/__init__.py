"""
Telemetry Module
================

Observability for the order sync API and worker. Logging is plain stdlib
`logging` with `[COMPONENT]` prefixes; errors go to Sentry when configured.

Components:
- sentry.py: Error tracking (enabled when SENTRY_DSN is set)

Usage:
    from ordersync.telemetry import init_observability, capture_exception

    @app.on_event("startup")
    async def startup():
        status = init_observability()   # {"sentry": True/False}
"""

from ordersync.telemetry.sentry import capture_exception, init_sentry, set_sync_context


def init_observability() -> dict:
    """Initialize error tracking; returns the status of each tool."""
    return {"sentry": init_sentry()}


__all__ = [
    "init_observability",
    "capture_exception",
    "set_sync_context",
]
