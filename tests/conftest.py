"""
Shared pytest fixtures for the casetrack test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB reset + two seeded organizations (autouse)
    - client: Flask test client
    - auth_a / auth_b: service-level AuthContext for each organization
    - jwt_headers / token_headers: Authorization header factories
"""

import pytest

from casetrack import create_app
from casetrack.auth import AuthContext
from casetrack.models import db as _db
from casetrack.models.auth import Organization, User
from casetrack.services.token_service import create_api_token, generate_access_token

ORG_A = "org-a"
ORG_B = "org-b"
USER_A = "user-a"
USER_A2 = "user-a2"
USER_B = "user-b"


def _seed():
    _db.session.add_all([
        Organization(id=ORG_A, name="Org A", slug="org-a"),
        Organization(id=ORG_B, name="Org B", slug="org-b"),
    ])
    _db.session.flush()
    _db.session.add_all([
        User(id=USER_A, organization_id=ORG_A, email="ada@a.example", name="Ada"),
        User(id=USER_A2, organization_id=ORG_A, email="sam@a.example", name="Sam"),
        User(id=USER_B, organization_id=ORG_B, email="kim@b.example", name="Kim"),
    ])
    _db.session.commit()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, seed organizations, reset tables afterwards."""
    with app.app_context():
        _seed()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Auth fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def auth_a():
    return AuthContext(organization_id=ORG_A, user_id=USER_A, permissions="write",
                       client_id="test-client", session_id="sess-1")


@pytest.fixture()
def auth_b():
    return AuthContext(organization_id=ORG_B, user_id=USER_B, permissions="write",
                       client_id="test-client")


@pytest.fixture()
def jwt_headers():
    """Factory: Authorization header carrying a UI access JWT."""

    def _make(user_id=USER_A, organization_id=ORG_A, permissions="write"):
        token = generate_access_token(user_id, organization_id, permissions)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture()
def token_headers():
    """Factory: Authorization header carrying a freshly minted API token."""

    def _make(permissions="write", user_id=USER_A, organization_id=ORG_A, **kwargs):
        _, raw = create_api_token(organization_id, user_id, "pytest", permissions, **kwargs)
        _db.session.commit()
        return {"Authorization": f"Bearer {raw}"}

    return _make
