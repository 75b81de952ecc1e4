"""
Auth Models: organizations, users and API tokens.

Organizations are the tenant boundary: every test-management and history
row carries an organization_id. API tokens authenticate protocol clients;
UI sessions use short-lived JWTs and need no table of their own.
"""

import uuid

from casetrack.models import db
from casetrack.models.base import utcnow


def _uuid_hex():
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════
# 1. ORGANIZATIONS
# ═══════════════════════════════════════════════════════════════
class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.String(64), primary_key=True, default=_uuid_hex)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    users = db.relationship("User", back_populates="organization", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(64), primary_key=True, default=_uuid_hex)
    organization_id = db.Column(
        db.String(64), db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    name = db.Column(db.String(200))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
        db.Index("ix_users_organization_id", "organization_id"),
    )

    organization = db.relationship("Organization", back_populates="users")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 3. API TOKENS
# ═══════════════════════════════════════════════════════════════
class ApiToken(db.Model):
    """Bearer token for protocol clients.

    The raw token has the form ``st_<id>.<secret>``; only the SHA-256 hex
    digest of the secret is stored.
    """

    __tablename__ = "api_tokens"

    id = db.Column(db.String(40), primary_key=True)
    organization_id = db.Column(
        db.String(64), db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.String(64), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(200), nullable=False)
    secret_hash = db.Column(db.String(64), nullable=False)
    permissions = db.Column(db.String(20), nullable=False, default="read",
                            comment="read | write | admin")
    last_used_at = db.Column(db.DateTime(timezone=True))
    expires_at = db.Column(db.DateTime(timezone=True))
    revoked_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "name": self.name,
            "permissions": self.permissions,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
