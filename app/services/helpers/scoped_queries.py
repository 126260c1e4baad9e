"""
Project-scoped query helper.

Every get-by-id on a governed record goes through get_scoped so that a
record from another project is indistinguishable from a missing one.

Usage:
    ws = get_scoped(Workshop, ws_id, project_id=project_id)
    item = get_scoped(VariationMilestone, item_id, variation_id=variation.id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.  A
    lookup where none of the supplied scope columns exists on the model is
    refused with ValueError so the bug surfaces during development.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def _scoped_statement(model, pk, scopes: dict):
    provided = {k: v for k, v in scopes.items() if v is not None}
    if not provided:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            "(project_id or variation_id)."
        )

    applicable = {field: value for field, value in provided.items() if hasattr(model, field)}
    missing = set(provided) - set(applicable)
    if missing:
        logger.warning(
            "get_scoped(%s, %s): scope field(s) %s not found on model — "
            "those filters were NOT applied.",
            model.__name__, pk, sorted(missing),
        )
    if not applicable:
        raise ValueError(
            f"{model.__name__} id={pk}: none of the scope fields {sorted(provided)} "
            f"exist on {model.__name__}. Refusing to perform an unscoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in applicable.items():
        stmt = stmt.where(getattr(model, field) == value)
    return stmt, applicable


def get_scoped(
    model,
    pk: int,
    *,
    project_id: int | None = None,
    variation_id: int | None = None,
):
    """Fetch a single entity by PK with a mandatory scope filter.

    Raises:
        ValueError: no scope given, or no scope column exists on the model.
        NotFoundError: entity missing or outside the scope.
    """
    stmt, applicable = _scoped_statement(
        model, pk,
        {"project_id": project_id, "variation_id": variation_id},
    )

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, applicable)
        raise NotFoundError(resource=model.__name__, resource_id=pk, project_id=project_id)
    return result
