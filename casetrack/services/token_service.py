"""
Token Service: API tokens for protocol clients and JWTs for UI sessions.

API token:   ``st_<id>.<secret>``; only SHA-256(secret) is stored
Access JWT:  15 minutes (configurable via JWT_ACCESS_EXPIRES), HS256

Access token payload:
{
    "sub": <user_id>,
    "org": <organization_id>,
    "permissions": "read" | "write" | "admin",
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import UTC, datetime, timedelta

import jwt
from flask import current_app

from casetrack.core.exceptions import ValidationError
from casetrack.models import db
from casetrack.models.auth import ApiToken

logger = logging.getLogger(__name__)

# ─── Defaults ────────────────────────────────────────────────
API_TOKEN_PREFIX = "st_"
PERMISSION_LEVELS = {"read": 1, "write": 2, "admin": 3}
DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ═══════════════════════════════════════════════════════════════
# API tokens
# ═══════════════════════════════════════════════════════════════
def hash_secret(secret: str) -> str:
    """SHA-256 hex digest of a token secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def parse_api_token(raw: str | None) -> tuple[str, str] | None:
    """Split ``st_<id>.<secret>`` into ``(id, secret)``; None if malformed."""
    if not raw or not raw.startswith(API_TOKEN_PREFIX):
        return None
    token_id, sep, secret = raw[len(API_TOKEN_PREFIX):].partition(".")
    if not sep or not token_id or not secret:
        return None
    return token_id, secret


def create_api_token(
    organization_id: str,
    user_id: str,
    name: str,
    permissions: str = "read",
    expires_at: datetime | None = None,
) -> tuple[ApiToken, str]:
    """Mint a token. The raw value is returned once and never stored."""
    if permissions not in PERMISSION_LEVELS:
        raise ValidationError(
            f"permissions must be one of {sorted(PERMISSION_LEVELS)}",
            details={"permissions": permissions},
        )
    token_id = secrets.token_hex(8)
    secret = secrets.token_urlsafe(32)
    token = ApiToken(
        id=token_id,
        organization_id=organization_id,
        user_id=user_id,
        name=name,
        secret_hash=hash_secret(secret),
        permissions=permissions,
        expires_at=expires_at,
    )
    db.session.add(token)
    db.session.flush()
    return token, f"{API_TOKEN_PREFIX}{token_id}.{secret}"


def validate_api_token(raw: str) -> ApiToken | None:
    """Return the live token for ``raw`` and stamp ``last_used_at``."""
    parsed = parse_api_token(raw)
    if parsed is None:
        return None
    token_id, secret = parsed
    token = db.session.get(ApiToken, token_id)
    if token is None:
        return None
    if not hmac.compare_digest(token.secret_hash, hash_secret(secret)):
        logger.warning("API token %s presented with a bad secret", token_id)
        return None
    now = datetime.now(UTC)
    if token.revoked_at is not None:
        return None
    if token.expires_at is not None and _aware(token.expires_at) <= now:
        return None
    token.last_used_at = now
    db.session.commit()
    return token


def revoke_api_token(organization_id: str, token_id: str) -> bool:
    token = ApiToken.query.filter_by(id=token_id, organization_id=organization_id).first()
    if token is None or token.revoked_at is not None:
        return False
    token.revoked_at = datetime.now(UTC)
    db.session.flush()
    return True


# ═══════════════════════════════════════════════════════════════
# Access JWTs
# ═══════════════════════════════════════════════════════════════
def generate_access_token(user_id: str, organization_id: str, permissions: str = "write") -> str:
    """Generate a short-lived access token for a UI session."""
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "org": organization_id,
        "permissions": permissions,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=_get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    return payload
