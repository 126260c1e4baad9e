"""
Programme Governance Engine
Stakeholder engagement models.

Models:
    - StakeholderArea: weighted department/function taking part in phase-gate consensus
    - ParticipationMetric: per (project, area, user) activity counters + derived score

The participation score is never written directly by callers; it is
recomputed from the five counters by ``participation_service`` on every write.
"""

from datetime import datetime, timezone
from decimal import Decimal

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PARTICIPATION_ACTIVITIES = (
    "requirements_contributed",
    "workshop_sessions_attended",
    "approvals_completed",
    "comments_made",
    "scores_submitted",
)


def _utcnow():
    return datetime.now(timezone.utc)


def _to_float(value):
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


class StakeholderArea(db.Model):
    """
    Stakeholder area (department / function) within a project.

    weight feeds the phase-gate weighted approval rate; approval_threshold
    is used by areas that gate their own sub-approvals.  Deleted areas are
    soft-deleted and excluded from every live read.
    """

    __tablename__ = "stakeholder_areas"
    __table_args__ = (
        db.Index("ix_stakeholder_areas_project_live", "project_id", "is_deleted"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    color = db.Column(db.String(20), default="#6366f1")
    weight = db.Column(db.Float, nullable=False, default=0.25, comment="0–1 share of the gate decision")
    approval_threshold = db.Column(db.Float, nullable=False, default=0.5, comment="0–1")
    primary_contact_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "weight": self.weight,
            "approval_threshold": self.approval_threshold,
            "primary_contact_id": self.primary_contact_id,
            "sort_order": self.sort_order,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<StakeholderArea {self.id}: {self.name} w={self.weight}>"


class ParticipationMetric(db.Model):
    __tablename__ = "participation_metrics"
    __table_args__ = (
        db.UniqueConstraint("project_id", "stakeholder_area_id", "user_id", name="uq_participation_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stakeholder_area_id = db.Column(
        db.Integer, db.ForeignKey("stakeholder_areas.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    requirements_contributed = db.Column(db.Integer, nullable=False, default=0)
    workshop_sessions_attended = db.Column(db.Integer, nullable=False, default=0)
    approvals_completed = db.Column(db.Integer, nullable=False, default=0)
    comments_made = db.Column(db.Integer, nullable=False, default=0)
    scores_submitted = db.Column(db.Integer, nullable=False, default=0)

    participation_score = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship("User", lazy="joined")
    stakeholder_area = db.relationship("StakeholderArea", lazy="joined")

    def counters(self) -> dict:
        return {name: getattr(self, name) or 0 for name in PARTICIPATION_ACTIVITIES}

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stakeholder_area_id": self.stakeholder_area_id,
            "stakeholder_area_name": self.stakeholder_area.name if self.stakeholder_area else None,
            "user_id": self.user_id,
            "user_name": self.user.full_name if self.user else None,
            **self.counters(),
            "participation_score": _to_float(self.participation_score),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }

    def __repr__(self):
        return f"<ParticipationMetric area={self.stakeholder_area_id} user={self.user_id} score={self.participation_score}>"
