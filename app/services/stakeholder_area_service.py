"""
Stakeholder Area Service — area configuration for weighted phase-gate consensus.

Functions:
    create_stakeholder_area(project_id, name, ...)  -> StakeholderArea
    configure_stakeholder_area(project_id, area_id, ...) -> StakeholderArea
    list_stakeholder_areas(project_id) -> list[StakeholderArea]
    delete_stakeholder_area(project_id, area_id)  (soft delete)
    validate_area_weights(project_id) -> {"valid", "total", "message"}

Weight-sum validation is advisory: a project whose area weights do not sum
to 1.0 is reported (and a diagnostic emitted) but saving is never blocked.
"""

import logging

from flask import current_app
from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.auth import User
from app.models.project import Project
from app.models.stakeholder import StakeholderArea
from app.services.diagnostics import record_diagnostic
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_CONFIGURABLE_FIELDS = ("name", "description", "color", "weight", "approval_threshold",
                        "primary_contact_id", "sort_order")


def _check_unit_interval(field: str, value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number between 0 and 1", details={field: value}) from exc
    if not 0 <= number <= 1:
        raise ValidationError(f"{field} must be between 0 and 1", details={field: value})
    return number


def _validated_changes(changes: dict) -> dict:
    """Range/type checks on every supplied field, before anything is written."""
    clean = {}
    for key, value in changes.items():
        if key not in _CONFIGURABLE_FIELDS:
            raise ValidationError(f"Field '{key}' is not configurable", details={key: "unknown"})
        if key in ("weight", "approval_threshold"):
            clean[key] = _check_unit_interval(key, value)
        elif key == "name":
            name = (value or "").strip()
            if not name:
                raise ValidationError("name is required", details={"name": "required"})
            clean[key] = name
        elif key == "primary_contact_id":
            if value is not None and db.session.get(User, value) is None:
                raise ValidationError("primary_contact_id does not reference a user",
                                      details={"primary_contact_id": value})
            clean[key] = value
        elif key == "sort_order":
            clean[key] = int(value or 0)
        else:
            clean[key] = value
    return clean


def create_stakeholder_area(project_id: int, name: str, **fields) -> StakeholderArea:
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    clean = _validated_changes({"name": name, **fields})
    if "sort_order" not in clean:
        current_max = db.session.execute(
            select(func.max(StakeholderArea.sort_order)).where(StakeholderArea.project_id == project_id)
        ).scalar()
        clean["sort_order"] = (current_max or 0) + 1

    area = StakeholderArea(project_id=project_id, **clean)
    db.session.add(area)
    db.session.commit()

    logger.info("Stakeholder area created project=%s area=%s weight=%s",
                project_id, area.id, area.weight, extra={"project_id": project_id})
    validate_area_weights(project_id)
    return area


def configure_stakeholder_area(project_id: int, area_id: int, **changes) -> StakeholderArea:
    """Update weight / approval_threshold / primary contact (and descriptive fields).

    Out-of-range values are rejected before any write.
    """
    area = get_scoped(StakeholderArea, area_id, project_id=project_id)
    if area.is_deleted:
        raise NotFoundError(resource="StakeholderArea", resource_id=area_id, project_id=project_id)

    clean = _validated_changes(changes)
    for key, value in clean.items():
        setattr(area, key, value)
    db.session.commit()

    logger.info("Stakeholder area configured project=%s area=%s fields=%s",
                project_id, area_id, sorted(clean), extra={"project_id": project_id})
    if "weight" in clean:
        validate_area_weights(project_id)
    return area


def list_stakeholder_areas(project_id: int) -> list:
    """Live (non-deleted) areas, in configured order."""
    return db.session.execute(
        select(StakeholderArea)
        .where(StakeholderArea.project_id == project_id, StakeholderArea.is_deleted.is_(False))
        .order_by(StakeholderArea.sort_order, StakeholderArea.id)
    ).scalars().all()


def delete_stakeholder_area(project_id: int, area_id: int) -> None:
    area = get_scoped(StakeholderArea, area_id, project_id=project_id)
    area.is_deleted = True
    db.session.commit()
    logger.info("Stakeholder area deleted project=%s area=%s", project_id, area_id,
                extra={"project_id": project_id})


def validate_area_weights(project_id: int) -> dict:
    """Advisory check that live area weights sum to 1.0 (within tolerance)."""
    tolerance = current_app.config.get("AREA_WEIGHT_TOLERANCE", 0.01)
    areas = list_stakeholder_areas(project_id)
    total = round(sum(a.weight or 0 for a in areas), 2)
    valid = abs(total - 1.0) < tolerance

    if valid:
        message = "Weights are valid"
    else:
        message = f"Stakeholder area weights should sum to 1.0 (currently {total})"
        if areas:
            record_diagnostic(
                "AREA-WEIGHT-SUM", message, project_id=project_id,
                details={"total": total, "area_count": len(areas)},
            )
    return {"valid": valid, "total": total, "message": message, "areaCount": len(areas)}
