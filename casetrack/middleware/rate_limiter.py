"""
Per-blueprint rate limits applied with Flask-Limiter.

The Limiter instance is created in casetrack/__init__.py with no default
limits; this module attaches limits per route family. Callers are keyed
by organization when authenticated, otherwise by remote address.

Usage:
    from casetrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request

logger = logging.getLogger(__name__)

BLUEPRINT_LIMITS = {
    "mcp": "60/minute",
    "history": "120/minute",
    "cases": "200/minute",
    "folders": "200/minute",
}


def rate_limit_key() -> str:
    """Organization id if the request is authenticated, else remote IP."""
    auth = getattr(g, "auth", None)
    if auth is not None:
        return f"org:{auth.organization_id}"
    return request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """Attach limits to registered blueprints; disabled in testing mode."""
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit, key_func=rate_limit_key)(bp)

    app.logger.info(
        "Rate limiter configured: %s",
        ", ".join(f"{name}={limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )
