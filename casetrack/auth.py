"""
casetrack
Authentication & authorization middleware.

Provides:
    - ``AuthContext`` on ``g.auth`` for every authenticated /api/v1/* request
    - ``require_auth(level)`` decorator (401 without credentials, 403 below level)
    - ``has_permission`` for service-level checks

Credentials (``Authorization: Bearer <token>``):
    - ``st_<id>.<secret>``   API token of a protocol client
    - anything else          UI access JWT (sub, org, permissions)

Invalid credentials never abort in the hook itself; the route decorator
decides.
"""

import functools
import logging
from dataclasses import dataclass

import jwt as pyjwt
from flask import g, request

from casetrack.models import db
from casetrack.models.auth import User
from casetrack.services.token_service import (
    API_TOKEN_PREFIX,
    PERMISSION_LEVELS,
    decode_access_token,
    validate_api_token,
)
from casetrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip authentication entirely
AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
)


@dataclass(frozen=True)
class AuthContext:
    organization_id: str
    user_id: str
    permissions: str = "read"
    client_id: str = "web"
    token_id: str | None = None
    session_id: str | None = None


def has_permission(auth: AuthContext | None, required: str) -> bool:
    if auth is None:
        return False
    return PERMISSION_LEVELS.get(auth.permissions, 0) >= PERMISSION_LEVELS[required]


def current_auth() -> AuthContext | None:
    return getattr(g, "auth", None)


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[7:].strip() or None


def _resolve_api_token(raw: str) -> AuthContext | None:
    token = validate_api_token(raw)
    if token is None:
        return None
    return AuthContext(
        organization_id=token.organization_id,
        user_id=token.user_id,
        permissions=token.permissions,
        client_id=request.headers.get("X-MCP-Client") or token.name,
        token_id=token.id,
        session_id=request.headers.get("Mcp-Session-Id"),
    )


def _resolve_jwt(raw: str) -> AuthContext | None:
    try:
        payload = decode_access_token(raw)
    except pyjwt.InvalidTokenError:
        return None
    user = db.session.get(User, payload.get("sub"))
    if user is None or user.organization_id != payload.get("org"):
        return None
    permissions = payload.get("permissions", "read")
    if permissions not in PERMISSION_LEVELS:
        permissions = "read"
    return AuthContext(organization_id=user.organization_id, user_id=user.id,
                       permissions=permissions)


# ── Authorization decorator ──────────────────────────────────────────────────

def require_auth(level: str = "read"):
    """
    Decorator: require an authenticated caller with at least ``level``.

    Usage:
        @bp.route("/history/undo", methods=["POST"])
        @require_auth("write")
        def undo(): ...

    Permission hierarchy: admin > write > read
    """
    if level not in PERMISSION_LEVELS:
        raise ValueError(f"Unknown permission level: {level}")

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            auth = current_auth()
            if auth is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if not has_permission(auth, level):
                logger.warning(
                    "Access denied: '%s' token tried '%s'-level endpoint %s",
                    auth.permissions, level, request.path,
                )
                return api_error(E.FORBIDDEN, f"Permission denied: {level} access required")
            return f(*args, **kwargs)
        return decorated
    return decorator


# ── before_request hook installer ────────────────────────────────────────────

def init_auth(app):
    """Resolve the bearer credential of every /api/v1/* request onto ``g.auth``."""

    @app.before_request
    def _before_request_auth():
        g.auth = None
        path = request.path
        if not path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in AUTH_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        raw = _bearer_token()
        if raw is None:
            return None
        if raw.startswith(API_TOKEN_PREFIX):
            g.auth = _resolve_api_token(raw)
        else:
            g.auth = _resolve_jwt(raw)
        if g.auth is None:
            logger.info("Rejected bearer credential for %s", path)
        return None

    logger.debug("Auth middleware installed")
