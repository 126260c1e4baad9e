"""
Programme Governance Engine
Phase-gate configuration, state and approval models.

Models:
    - PhaseGateConfig: per-project override of a static gate (enabled, threshold,
      order) plus the persisted pass state guarded by ``revision``
    - PhaseGateApproval: one approval per (project, gate, area); area NULL is the
      global override row.  Latest write wins, no history.

The gate catalogue itself (names, default thresholds, default order) is static
configuration in ``phase_gate_service.PHASE_GATES``.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class PhaseGateConfig(db.Model):
    __tablename__ = "phase_gate_configs"
    __table_args__ = (
        db.UniqueConstraint("project_id", "gate", name="uq_phase_gate_config"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gate = db.Column(db.String(40), nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    threshold = db.Column(db.Float, nullable=True, comment="NULL → static default threshold")
    sort_order = db.Column(db.Integer, nullable=True, comment="NULL → static default order")

    # Persisted gate state; written only through a revision compare-and-set
    is_passed = db.Column(db.Boolean, nullable=False, default=False)
    passed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revision = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "gate": self.gate,
            "enabled": self.enabled,
            "threshold": self.threshold,
            "sort_order": self.sort_order,
            "is_passed": self.is_passed,
            "passed_at": self.passed_at.isoformat() if self.passed_at else None,
            "revision": self.revision,
        }

    def __repr__(self):
        return f"<PhaseGateConfig project={self.project_id} {self.gate} rev={self.revision}>"


class PhaseGateApproval(db.Model):
    __tablename__ = "phase_gate_approvals"
    __table_args__ = (
        db.UniqueConstraint("project_id", "gate", "stakeholder_area_id", name="uq_phase_gate_approval"),
        db.Index("ix_phase_gate_approvals_gate", "project_id", "gate"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gate = db.Column(db.String(40), nullable=False)
    stakeholder_area_id = db.Column(
        db.Integer, db.ForeignKey("stakeholder_areas.id", ondelete="CASCADE"),
        nullable=True, comment="NULL = global override approval",
    )
    approved = db.Column(db.Boolean, nullable=False, default=False)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stakeholder_area = db.relationship("StakeholderArea", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "gate": self.gate,
            "stakeholder_area_id": self.stakeholder_area_id,
            "stakeholder_area_name": self.stakeholder_area.name if self.stakeholder_area else None,
            "approved": self.approved,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejection_reason": self.rejection_reason,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<PhaseGateApproval {self.gate} area={self.stakeholder_area_id} approved={self.approved}>"
