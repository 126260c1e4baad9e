"""
Programme Governance Engine
Workshop models.

Workshop, WorkshopAttendee.

Workshop.status is engine-controlled: it only moves through
``status_transitions.transition_status`` which also stamps ``started_at`` /
``completed_at`` and derives ``actual_duration_minutes``.
"""

from datetime import datetime, timezone

from app.models import db


__all__ = [
    "Workshop",
    "WorkshopAttendee",
    "WORKSHOP_TYPES",
    "RSVP_STATUSES",
]


# ── Constants ────────────────────────────────────────────────────────────────

WORKSHOP_TYPES = frozenset({
    "discovery", "requirements", "review", "sign_off", "vendor_demo", "other",
})

RSVP_STATUSES = frozenset({"pending", "accepted", "declined", "tentative"})


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Workshop
# ═════════════════════════════════════════════════════════════════════════════

class Workshop(db.Model):
    """Stakeholder workshop session governed by the workshop transition table."""

    __tablename__ = "workshops"
    __table_args__ = (
        db.Index("ix_workshops_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stakeholder_area_id = db.Column(
        db.Integer, db.ForeignKey("stakeholder_areas.id", ondelete="SET NULL"),
        nullable=True,
    )
    name = db.Column(db.String(200), nullable=False)
    workshop_type = db.Column(db.String(30), nullable=False, default="requirements")
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | scheduled | in_progress | complete | cancelled",
    )

    # Scheduling
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    scheduled_duration_minutes = db.Column(db.Integer, nullable=True)
    location = db.Column(db.String(200), nullable=True)
    facilitator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Lifecycle stamps (written by the transition guard)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_duration_minutes = db.Column(db.Integer, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    # Content
    agenda = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    summary = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    attendees = db.relationship(
        "WorkshopAttendee", backref="workshop", lazy="select",
        cascade="all, delete-orphan", order_by="WorkshopAttendee.id",
    )

    def to_dict(self, include_attendees=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "stakeholder_area_id": self.stakeholder_area_id,
            "name": self.name,
            "workshop_type": self.workshop_type,
            "status": self.status,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "scheduled_duration_minutes": self.scheduled_duration_minutes,
            "location": self.location,
            "facilitator_id": self.facilitator_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "actual_duration_minutes": self.actual_duration_minutes,
            "cancellation_reason": self.cancellation_reason,
            "agenda": self.agenda,
            "notes": self.notes,
            "summary": self.summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_attendees:
            d["attendees"] = [a.to_dict() for a in self.attendees]
        return d

    def __repr__(self):
        return f"<Workshop {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkshopAttendee
# ═════════════════════════════════════════════════════════════════════════════

class WorkshopAttendee(db.Model):
    """Invited participant; ``attended`` feeds the participation scorer."""

    __tablename__ = "workshop_attendees"
    __table_args__ = (
        db.UniqueConstraint("workshop_id", "user_id", name="uq_workshop_attendee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workshop_id = db.Column(
        db.Integer, db.ForeignKey("workshops.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    stakeholder_area_id = db.Column(
        db.Integer, db.ForeignKey("stakeholder_areas.id", ondelete="SET NULL"),
        nullable=True,
    )
    rsvp_status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | accepted | declined | tentative",
    )
    attended = db.Column(db.Boolean, nullable=False, default=False)
    attended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    participation_credited_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Set once when the session is credited; never cleared",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workshop_id": self.workshop_id,
            "user_id": self.user_id,
            "stakeholder_area_id": self.stakeholder_area_id,
            "rsvp_status": self.rsvp_status,
            "attended": self.attended,
            "attended_at": self.attended_at.isoformat() if self.attended_at else None,
            "participation_credited": self.participation_credited_at is not None,
        }

    def __repr__(self):
        return f"<WorkshopAttendee ws={self.workshop_id} user={self.user_id}>"
