"""
TenantModel: Abstract base class for organization-scoped models.

Every model that belongs to an organization inherits from TenantModel
instead of db.Model directly. This adds:
  - organization_id FK column with index
  - query_for_org(organization_id) classmethod
  - Composite index helper
"""

from datetime import UTC, datetime

from sqlalchemy.orm import declared_attr

from casetrack.models import db


def utcnow() -> datetime:
    return datetime.now(UTC)


class TenantModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    @declared_attr
    def organization_id(cls):
        return db.Column(
            db.String(64),
            db.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)

    @classmethod
    def org_composite_index(cls, tablename, *extra_cols):
        """Helper to build an (organization_id, ...) composite index."""
        name = f"ix_{tablename}_org_{'_'.join(extra_cols)}"
        return db.Index(name, "organization_id", *extra_cols)
