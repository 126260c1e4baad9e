"""
Security Assessment Service — vendor security reviews.

    pending → in_progress → completed
    pending / in_progress → waived  (reason required)

``notify_due_reviews`` publishes a ReviewDue event for every open assessment
whose review_due_date falls within the reminder window (overdue included).
"""

import logging
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.project import Project
from app.models.security_assessment import ASSESSMENT_TYPES, RISK_LEVELS, SecurityAssessment
from app.services.helpers.scoped_queries import get_scoped
from app.services.notification import ReviewDue, publish_event
from app.services.status_transitions import TransitionResult, transition_status

logger = logging.getLogger(__name__)

_OPEN_STATUSES = ("pending", "in_progress")


def create_assessment(
    project_id: int,
    vendor_name: str,
    *,
    assessment_type: str = "questionnaire",
    review_due_date: date | None = None,
) -> SecurityAssessment:
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    if not (vendor_name or "").strip():
        raise ValidationError("vendor_name is required", details={"vendor_name": "required"})
    if assessment_type not in ASSESSMENT_TYPES:
        raise ValidationError("Invalid assessment_type",
                              details={"assessment_type": assessment_type, "valid": sorted(ASSESSMENT_TYPES)})

    assessment = SecurityAssessment(
        project_id=project_id,
        vendor_name=vendor_name.strip(),
        assessment_type=assessment_type,
        review_due_date=review_due_date,
        status="pending",
    )
    db.session.add(assessment)
    db.session.commit()
    logger.info("Security assessment created project=%s id=%s vendor=%s",
                project_id, assessment.id, assessment.vendor_name, extra={"project_id": project_id})
    return assessment


def list_assessments(project_id: int, status: str | None = None) -> list:
    stmt = select(SecurityAssessment).where(SecurityAssessment.project_id == project_id)
    if status:
        stmt = stmt.where(SecurityAssessment.status == status)
    return db.session.execute(
        stmt.order_by(SecurityAssessment.review_due_date.is_(None),
                      SecurityAssessment.review_due_date, SecurityAssessment.id)
    ).scalars().all()


def start_assessment(project_id: int, assessment_id: int, *, now: datetime | None = None) -> TransitionResult:
    return transition_status(SecurityAssessment, assessment_id, "in_progress",
                             entity_type="security_assessment", project_id=project_id, now=now)


def complete_assessment(
    project_id: int,
    assessment_id: int,
    *,
    score: int | None = None,
    risk_level: str | None = None,
    findings: str | None = None,
    assessed_by: int | None = None,
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Complete with outcome fields written in the same status update."""
    extra = {}
    if score is not None:
        try:
            score = int(score)
        except (TypeError, ValueError) as exc:
            raise ValidationError("score must be an integer", details={"score": score}) from exc
        if not 0 <= score <= 100:
            raise ValidationError("score must be between 0 and 100", details={"score": score})
        extra["score"] = score
    if risk_level is not None:
        if risk_level not in RISK_LEVELS:
            raise ValidationError("Invalid risk_level",
                                  details={"risk_level": risk_level, "valid": sorted(RISK_LEVELS)})
        extra["risk_level"] = risk_level
    if findings is not None:
        extra["findings"] = findings
    if assessed_by is not None:
        extra["assessed_by"] = assessed_by

    return transition_status(SecurityAssessment, assessment_id, "completed",
                             entity_type="security_assessment", project_id=project_id, now=now,
                             duration_minutes=duration_minutes, extra_values=extra or None)


def waive_assessment(project_id: int, assessment_id: int, reason: str, *,
                     now: datetime | None = None) -> TransitionResult:
    return transition_status(SecurityAssessment, assessment_id, "waived",
                             entity_type="security_assessment", project_id=project_id,
                             now=now, reason=reason)


def transition_assessment(project_id: int, assessment_id: int, to_status: str, **kwargs) -> TransitionResult:
    if to_status == "in_progress":
        return start_assessment(project_id, assessment_id, **kwargs)
    if to_status == "completed":
        return complete_assessment(project_id, assessment_id, **kwargs)
    if to_status == "waived":
        return waive_assessment(project_id, assessment_id, kwargs.pop("reason", None), **kwargs)
    return transition_status(SecurityAssessment, assessment_id, to_status,
                             entity_type="security_assessment", project_id=project_id)


def get_assessment(project_id: int, assessment_id: int) -> SecurityAssessment:
    return get_scoped(SecurityAssessment, assessment_id, project_id=project_id)


def notify_due_reviews(project_id: int, within_days: int | None = None, *,
                       today: date | None = None) -> list[dict]:
    """Publish ReviewDue for open assessments due within the window.

    Returns one entry per assessment: ``{"assessment_id", "days_left", "notified"}``.
    """
    if within_days is None:
        within_days = current_app.config.get("REVIEW_REMINDER_DAYS", 7)
    if within_days < 0:
        raise ValidationError("within_days must not be negative", details={"within_days": within_days})
    today = today or date.today()
    horizon = today + timedelta(days=within_days)

    due = db.session.execute(
        select(SecurityAssessment).where(
            SecurityAssessment.project_id == project_id,
            SecurityAssessment.status.in_(_OPEN_STATUSES),
            SecurityAssessment.review_due_date.is_not(None),
            SecurityAssessment.review_due_date <= horizon,
        ).order_by(SecurityAssessment.review_due_date)
    ).scalars().all()

    sent = []
    for assessment in due:
        days_left = (assessment.review_due_date - today).days
        notified = publish_event(ReviewDue(
            project_id=project_id,
            assessment=assessment.to_dict(),
            days_left=days_left,
        ))
        sent.append({"assessment_id": assessment.id, "days_left": days_left, "notified": notified})

    logger.info("Review reminders project=%s due=%d window=%dd", project_id, len(sent), within_days,
                extra={"project_id": project_id, "event_type": "ReviewDue"})
    return sent
