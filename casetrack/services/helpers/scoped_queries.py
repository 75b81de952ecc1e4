"""
Organization-scoped query helpers.

Every get-by-id in casetrack goes through these helpers instead of
db.session.get(Model, pk). Models without their own organization_id
column (Scenario, TestRunResult) are scoped through their owning parent,
so a scenario id guessed from another organization resolves to nothing.

Usage:
    case = get_scoped(TestCase, case_id, organization_id=org_id)
    scenario = get_scoped_or_none(Scenario, scenario_id, organization_id=org_id)

Cross-organization access is indistinguishable from a missing record:
both raise NotFoundError (HTTP 404).
"""

import logging

from sqlalchemy import select

from casetrack.core.exceptions import NotFoundError
from casetrack.models import db
from casetrack.models.testing import Scenario, TestCase, TestRun, TestRunResult

logger = logging.getLogger(__name__)

# Child model → (parent model, child FK column name)
_PARENT_SCOPES = {
    Scenario: (TestCase, "test_case_id"),
    TestRunResult: (TestRun, "test_run_id"),
}


def scoped_select(model, organization_id: str):
    """Return ``select(model)`` restricted to one organization."""
    if not organization_id:
        raise ValueError(
            f"{model.__name__} lookups require an organization_id. "
            "Unscoped lookups are forbidden."
        )
    if hasattr(model, "organization_id"):
        return select(model).where(model.organization_id == organization_id)
    if model in _PARENT_SCOPES:
        parent, fk = _PARENT_SCOPES[model]
        return (
            select(model)
            .join(parent, parent.id == getattr(model, fk))
            .where(parent.organization_id == organization_id)
        )
    raise ValueError(f"{model.__name__} has no organization scope")


def get_scoped(model, pk: int, *, organization_id: str):
    """Fetch a single entity by PK within one organization.

    Raises:
        ValueError: If organization_id is empty or the model cannot be scoped.
        NotFoundError: If the entity does not exist OR belongs to a different
                       organization. The two cases are intentionally
                       indistinguishable.
    """
    stmt = scoped_select(model, organization_id).where(model.id == pk)
    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in org %s", model.__name__, pk, organization_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def get_scoped_or_none(model, pk: int | None, *, organization_id: str):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, organization_id=organization_id)
    except NotFoundError:
        return None
