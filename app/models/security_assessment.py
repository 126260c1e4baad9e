"""
Programme Governance Engine
Vendor security assessment model.

Status lifecycle: pending → in_progress → completed; pending/in_progress → waived.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ASSESSMENT_TYPES = frozenset({"questionnaire", "penetration_test", "document_review", "site_visit"})
RISK_LEVELS = frozenset({"low", "medium", "high", "critical"})


def _utcnow():
    return datetime.now(timezone.utc)


class SecurityAssessment(db.Model):
    __tablename__ = "security_assessments"
    __table_args__ = (
        db.Index("ix_security_assessments_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    vendor_name = db.Column(db.String(200), nullable=False)
    assessment_type = db.Column(db.String(30), nullable=False, default="questionnaire")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | waived",
    )

    review_due_date = db.Column(db.Date, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=True)

    score = db.Column(db.Integer, nullable=True, comment="0–100")
    risk_level = db.Column(db.String(20), nullable=True)
    findings = db.Column(db.Text, nullable=True)
    assessed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    waived_reason = db.Column(db.Text, nullable=True)
    waived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "vendor_name": self.vendor_name,
            "assessment_type": self.assessment_type,
            "status": self.status,
            "review_due_date": self.review_due_date.isoformat() if self.review_due_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_minutes": self.duration_minutes,
            "score": self.score,
            "risk_level": self.risk_level,
            "findings": self.findings,
            "assessed_by": self.assessed_by,
            "waived_reason": self.waived_reason,
            "waived_at": self.waived_at.isoformat() if self.waived_at else None,
        }

    def __repr__(self):
        return f"<SecurityAssessment {self.id}: {self.vendor_name} [{self.status}]>"
