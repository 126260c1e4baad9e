"""
Workshop Service — stakeholder workshop lifecycle and attendance.

Status changes go through the status transition guard:

    draft → scheduled → in_progress → complete
      ↘ cancelled ↙        ↘ cancelled
    cancelled → draft (reopen)

Marking an attendee as attended credits their ``workshop_sessions_attended``
participation counter in the attendee's stakeholder area.

Usage:
    ws = create_workshop(project_id, name="Finance requirements", created_by=user_id)
    schedule_workshop(project_id, ws.id, scheduled_date=...)
    start_workshop(project_id, ws.id)
    complete_workshop(project_id, ws.id, summary="...")
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.workshop import RSVP_STATUSES, WORKSHOP_TYPES, Workshop, WorkshopAttendee
from app.services import participation_service
from app.services.helpers.scoped_queries import get_scoped
from app.services.status_transitions import TransitionResult, transition_status

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "workshop_type", "stakeholder_area_id", "scheduled_date",
                    "scheduled_duration_minutes", "location", "facilitator_id", "agenda", "notes")


def _validate_fields(fields: dict) -> None:
    unknown = set(fields) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown workshop field(s): {', '.join(sorted(unknown))}",
                              details={f: "unknown" for f in unknown})
    if "workshop_type" in fields and fields["workshop_type"] not in WORKSHOP_TYPES:
        raise ValidationError("Invalid workshop_type",
                              details={"workshop_type": fields["workshop_type"], "valid": sorted(WORKSHOP_TYPES)})
    if "name" in fields and not (fields["name"] or "").strip():
        raise ValidationError("name is required", details={"name": "required"})


def create_workshop(project_id: int, name: str, *, created_by: int | None = None, **fields) -> Workshop:
    _validate_fields({"name": name, **fields})
    ws = Workshop(project_id=project_id, name=name.strip(), status="draft", created_by=created_by, **fields)
    db.session.add(ws)
    db.session.commit()
    logger.info("Workshop created project=%s workshop=%s", project_id, ws.id,
                extra={"project_id": project_id})
    return ws


def update_workshop(project_id: int, workshop_id: int, **fields) -> Workshop:
    _validate_fields(fields)
    ws = get_scoped(Workshop, workshop_id, project_id=project_id)
    for key, value in fields.items():
        setattr(ws, key, value)
    db.session.commit()
    return ws


def get_workshop(project_id: int, workshop_id: int) -> Workshop:
    return get_scoped(Workshop, workshop_id, project_id=project_id)


def list_workshops(project_id: int, status: str | None = None) -> list:
    stmt = select(Workshop).where(Workshop.project_id == project_id)
    if status:
        stmt = stmt.where(Workshop.status == status)
    return db.session.execute(
        stmt.order_by(Workshop.scheduled_date.is_(None), Workshop.scheduled_date, Workshop.id)
    ).scalars().all()


# ── Lifecycle ────────────────────────────────────────────────────────────────

def schedule_workshop(project_id: int, workshop_id: int, *, scheduled_date: datetime | None = None) -> TransitionResult:
    extra = {"scheduled_date": scheduled_date} if scheduled_date else None
    return transition_status(Workshop, workshop_id, "scheduled",
                             entity_type="workshop", project_id=project_id, extra_values=extra)


def start_workshop(project_id: int, workshop_id: int, *, now: datetime | None = None) -> TransitionResult:
    return transition_status(Workshop, workshop_id, "in_progress",
                             entity_type="workshop", project_id=project_id, now=now)


def complete_workshop(
    project_id: int,
    workshop_id: int,
    *,
    duration_minutes: int | None = None,
    summary: str | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Complete; duration derives from started_at when not supplied."""
    if duration_minutes is not None and int(duration_minutes) < 0:
        raise ValidationError("duration_minutes must not be negative",
                              details={"duration_minutes": duration_minutes})
    extra = {"summary": summary} if summary is not None else None
    return transition_status(Workshop, workshop_id, "complete",
                             entity_type="workshop", project_id=project_id, now=now,
                             duration_minutes=duration_minutes, extra_values=extra)


def cancel_workshop(project_id: int, workshop_id: int, *, reason: str | None = None) -> TransitionResult:
    return transition_status(Workshop, workshop_id, "cancelled",
                             entity_type="workshop", project_id=project_id, reason=reason)


def reopen_workshop(project_id: int, workshop_id: int) -> TransitionResult:
    """Return a scheduled or cancelled workshop to draft."""
    return transition_status(Workshop, workshop_id, "draft",
                             entity_type="workshop", project_id=project_id)


_TRANSITION_HANDLERS = {
    "scheduled": schedule_workshop,
    "in_progress": start_workshop,
    "complete": complete_workshop,
    "cancelled": cancel_workshop,
    "draft": reopen_workshop,
}


def transition_workshop(project_id: int, workshop_id: int, to_status: str, **kwargs) -> TransitionResult:
    handler = _TRANSITION_HANDLERS.get(to_status)
    if handler is None:
        # Not a workshop status at all; let the guard report it as not allowed
        return transition_status(Workshop, workshop_id, to_status,
                                 entity_type="workshop", project_id=project_id)
    return handler(project_id, workshop_id, **kwargs)


# ── Attendance ───────────────────────────────────────────────────────────────

def invite_attendee(project_id: int, workshop_id: int, user_id: int, *,
                    stakeholder_area_id: int | None = None) -> WorkshopAttendee:
    ws = get_scoped(Workshop, workshop_id, project_id=project_id)
    attendee = db.session.execute(
        select(WorkshopAttendee).where(
            WorkshopAttendee.workshop_id == ws.id,
            WorkshopAttendee.user_id == user_id,
        )
    ).scalar_one_or_none()
    if attendee is None:
        attendee = WorkshopAttendee(
            workshop_id=ws.id,
            user_id=user_id,
            stakeholder_area_id=stakeholder_area_id or ws.stakeholder_area_id,
            rsvp_status="pending",
        )
        db.session.add(attendee)
        db.session.commit()
    return attendee


def update_rsvp(project_id: int, workshop_id: int, user_id: int, rsvp_status: str) -> WorkshopAttendee:
    if rsvp_status not in RSVP_STATUSES:
        raise ValidationError("Invalid rsvp_status",
                              details={"rsvp_status": rsvp_status, "valid": sorted(RSVP_STATUSES)})
    attendee = invite_attendee(project_id, workshop_id, user_id)
    attendee.rsvp_status = rsvp_status
    db.session.commit()
    return attendee


def record_attendance(
    project_id: int,
    workshop_id: int,
    user_id: int,
    *,
    attended: bool = True,
    stakeholder_area_id: int | None = None,
) -> WorkshopAttendee:
    """Mark attendance; each attendee credits at most one workshop session, ever."""
    ws = get_scoped(Workshop, workshop_id, project_id=project_id)
    if attended and ws.status not in ("in_progress", "complete"):
        raise ValidationError(
            f"Attendance can only be recorded for a workshop in progress or complete (status={ws.status})",
            details={"status": ws.status},
        )

    attendee = invite_attendee(project_id, workshop_id, user_id, stakeholder_area_id=stakeholder_area_id)
    if stakeholder_area_id is not None:
        attendee.stakeholder_area_id = stakeholder_area_id

    now = datetime.now(timezone.utc)
    attendee.attended = attended
    attendee.attended_at = now if attended else None

    # Un-attending keeps the credit stamp so re-attending cannot credit again
    if (attended and attendee.participation_credited_at is None
            and attendee.stakeholder_area_id is not None):
        attendee.participation_credited_at = now
        participation_service.record_participation(
            project_id, attendee.stakeholder_area_id, user_id,
            "workshop_sessions_attended", commit=False,
        )
    db.session.commit()

    logger.info("Attendance recorded project=%s workshop=%s user=%s attended=%s",
                project_id, workshop_id, user_id, attended, extra={"project_id": project_id})
    return attendee
