"""
Participation Service — weighted, capped engagement scoring.

score = round( Σ min(count · (weight / 5), weight) / Σ weight · 100, 2 )

Each activity saturates at PARTICIPATION_SATURATION occurrences: the fifth
occurrence earns the category's full weight and later ones add nothing.
The stored score is always recomputed from the complete set of stored
counters, never patched incrementally.

Usage:
    from app.services.participation_service import record_participation

    metric = record_participation(project_id, area_id, user_id, "comments_made")
    metric.participation_score  # Decimal("2.00")
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

from sqlalchemy import func, select, update

from app.core.exceptions import ValidationError
from app.models import db
from app.models.stakeholder import PARTICIPATION_ACTIVITIES, ParticipationMetric, StakeholderArea
from app.services.helpers.optimistic import retry_on_conflict
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

PARTICIPATION_WEIGHTS = MappingProxyType({
    "requirements_contributed": 25,
    "workshop_sessions_attended": 30,
    "approvals_completed": 25,
    "comments_made": 10,
    "scores_submitted": 10,
})

PARTICIPATION_SATURATION = 5


def calculate_participation_score(counters: dict) -> Decimal:
    """Pure score function over the five activity counters (missing → 0)."""
    total_weight = sum(PARTICIPATION_WEIGHTS.values())
    earned = Decimal(0)
    for activity, weight in PARTICIPATION_WEIGHTS.items():
        count = int(counters.get(activity) or 0)
        per_occurrence = Decimal(weight) / PARTICIPATION_SATURATION
        earned += min(count * per_occurrence, Decimal(weight))
    score = earned / total_weight * 100
    return score.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _validate_activity(activity_type: str, increment: int) -> None:
    if activity_type not in PARTICIPATION_WEIGHTS:
        raise ValidationError(
            f"Unknown participation activity '{activity_type}'",
            details={"activity_type": activity_type, "valid": list(PARTICIPATION_WEIGHTS)},
        )
    if not isinstance(increment, int) or isinstance(increment, bool) or increment < 1:
        raise ValidationError(
            "increment must be a positive integer",
            details={"increment": increment},
        )


def _get_or_create_metric(project_id: int, area_id: int, user_id: int) -> ParticipationMetric:
    metric = db.session.execute(
        select(ParticipationMetric).where(
            ParticipationMetric.project_id == project_id,
            ParticipationMetric.stakeholder_area_id == area_id,
            ParticipationMetric.user_id == user_id,
        )
    ).scalar_one_or_none()
    if metric is None:
        metric = ParticipationMetric(
            project_id=project_id,
            stakeholder_area_id=area_id,
            user_id=user_id,
            **{name: 0 for name in PARTICIPATION_ACTIVITIES},
            participation_score=0,
        )
        db.session.add(metric)
        db.session.flush()
    return metric


def _increment_and_rescore(project_id, area_id, user_id, activity_type, increment) -> ParticipationMetric:
    metric = _get_or_create_metric(project_id, area_id, user_id)
    column = getattr(ParticipationMetric, activity_type)
    db.session.execute(
        update(ParticipationMetric)
        .where(ParticipationMetric.id == metric.id)
        .values({activity_type: column + increment, "last_activity_at": datetime.now(timezone.utc)})
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(metric)
    metric.participation_score = calculate_participation_score(metric.counters())
    db.session.flush()
    return metric


def record_participation(
    project_id: int,
    area_id: int,
    user_id: int,
    activity_type: str,
    increment: int = 1,
    *,
    commit: bool = True,
) -> ParticipationMetric:
    """Increment exactly one counter and recompute the score from all counters.

    Unknown activity or a non-positive increment is rejected before any write.
    With ``commit=False`` the change joins the caller's transaction.
    """
    _validate_activity(activity_type, increment)
    get_scoped(StakeholderArea, area_id, project_id=project_id)

    if not commit:
        return _increment_and_rescore(project_id, area_id, user_id, activity_type, increment)

    def _unit():
        metric = _increment_and_rescore(project_id, area_id, user_id, activity_type, increment)
        db.session.commit()
        return metric

    metric = retry_on_conflict(_unit, label="participation")
    logger.info(
        "Participation recorded project=%s area=%s user=%s %s+%d score=%s",
        project_id, area_id, user_id, activity_type, increment, metric.participation_score,
        extra={"project_id": project_id},
    )
    return metric


def recalculate_participation_score(metric_id: int, project_id: int) -> ParticipationMetric:
    """Re-derive a stored score from its counters (audit / repair)."""
    metric = get_scoped(ParticipationMetric, metric_id, project_id=project_id)
    metric.participation_score = calculate_participation_score(metric.counters())
    db.session.commit()
    return metric


def get_participation_metrics(project_id: int) -> list:
    """All metrics for a project, highest score first."""
    return db.session.execute(
        select(ParticipationMetric)
        .where(ParticipationMetric.project_id == project_id)
        .order_by(ParticipationMetric.participation_score.desc(), ParticipationMetric.id)
    ).scalars().all()


def get_participation_by_area(project_id: int) -> list[dict]:
    """Per-area participant count, average score and activity totals (live areas only)."""
    areas = db.session.execute(
        select(StakeholderArea)
        .where(StakeholderArea.project_id == project_id, StakeholderArea.is_deleted.is_(False))
        .order_by(StakeholderArea.sort_order, StakeholderArea.id)
    ).scalars().all()

    rows = db.session.execute(
        select(
            ParticipationMetric.stakeholder_area_id,
            func.count(ParticipationMetric.id),
            func.avg(ParticipationMetric.participation_score),
            *[func.sum(getattr(ParticipationMetric, name)) for name in PARTICIPATION_ACTIVITIES],
        )
        .where(ParticipationMetric.project_id == project_id)
        .group_by(ParticipationMetric.stakeholder_area_id)
    ).all()
    by_area = {row[0]: row for row in rows}

    result = []
    for area in areas:
        row = by_area.get(area.id)
        totals = {name: 0 for name in PARTICIPATION_ACTIVITIES}
        participants = 0
        average = 0.0
        if row is not None:
            participants = row[1]
            average = round(float(row[2] or 0), 2)
            totals = {name: int(row[3 + i] or 0) for i, name in enumerate(PARTICIPATION_ACTIVITIES)}
        result.append({
            "area": area.to_dict(),
            "totalParticipants": participants,
            "averageScore": average,
            "totals": totals,
        })
    return result
