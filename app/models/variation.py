"""
Programme Governance Engine
Variation (change control) models.

Models:
    - Milestone: contracted milestone whose baseline a variation changes
    - MilestoneBaselineVersion: append-only baseline history, one row per applied variation
    - Variation: the governed change entity (dual-signature lifecycle)
    - VariationMilestone: itemised change to one milestone (signed deltas)
    - VariationSignature: one row per side, never updated
    - VariationCertificate: derived sign-off certificate with an items snapshot

Business rules:
    - Impact values are signed deltas (positive = increase).
    - A certificate status is a pure function of the signatures present.
    - A variation only reaches ``applied`` together with a ``signed`` certificate.
"""

from datetime import datetime, timezone
from decimal import Decimal

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

VARIATION_TYPES = frozenset({
    "scope_extension",
    "scope_reduction",
    "time_extension",
    "cost_adjustment",
    "combined",
})

SIGNATURE_SIDES = ("supplier", "customer")

CERTIFICATE_STATUSES = frozenset({"unsigned", "partially_signed", "signed"})


def _utcnow():
    return datetime.now(timezone.utc)


def _money(value):
    if value is None:
        return None
    return float(value)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Milestones
# ═════════════════════════════════════════════════════════════════════════════

class Milestone(db.Model):
    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    milestone_ref = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=False)

    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    baseline_version = db.Column(db.Integer, nullable=False, default=1)

    start_date = db.Column(db.Date, nullable=True)
    forecast_end_date = db.Column(db.Date, nullable=True)
    forecast_billable = db.Column(db.Numeric(14, 2), nullable=True)
    billable = db.Column(db.Numeric(14, 2), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_ref": self.milestone_ref,
            "name": self.name,
            "baseline_start_date": _iso(self.baseline_start_date),
            "baseline_end_date": _iso(self.baseline_end_date),
            "baseline_billable": _money(self.baseline_billable),
            "baseline_version": self.baseline_version,
            "start_date": _iso(self.start_date),
            "forecast_end_date": _iso(self.forecast_end_date),
            "forecast_billable": _money(self.forecast_billable),
            "billable": _money(self.billable),
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.milestone_ref}>"


class MilestoneBaselineVersion(db.Model):
    __tablename__ = "milestone_baseline_versions"
    __table_args__ = (
        db.UniqueConstraint("milestone_id", "version", name="uq_milestone_baseline_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="SET NULL"), nullable=True,
    )
    version = db.Column(db.Integer, nullable=False)
    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    supplier_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "variation_id": self.variation_id,
            "version": self.version,
            "baseline_start_date": _iso(self.baseline_start_date),
            "baseline_end_date": _iso(self.baseline_end_date),
            "baseline_billable": _money(self.baseline_billable),
            "supplier_signed_by": self.supplier_signed_by,
            "supplier_signed_at": _iso(self.supplier_signed_at),
            "customer_signed_by": self.customer_signed_by,
            "customer_signed_at": _iso(self.customer_signed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MilestoneBaselineVersion milestone={self.milestone_id} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# Variation
# ═════════════════════════════════════════════════════════════════════════════

class Variation(db.Model):
    __tablename__ = "variations"
    __table_args__ = (
        db.UniqueConstraint("project_id", "variation_ref", name="uq_variation_ref"),
        db.Index("ix_variations_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    variation_ref = db.Column(db.String(20), nullable=False, comment="VAR-001, VAR-002, ...")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    reason = db.Column(db.Text, default="")
    variation_type = db.Column(db.String(30), nullable=False, default="scope_extension")
    status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="draft | submitted | awaiting_customer | awaiting_supplier | approved | applied | rejected",
    )

    # Declared aggregate impact (signed deltas); NULL until declared or derived
    total_cost_impact = db.Column(db.Numeric(14, 2), nullable=True)
    total_days_impact = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "VariationMilestone", backref="variation", lazy="select",
        cascade="all, delete-orphan", order_by="VariationMilestone.id",
    )
    signatures = db.relationship(
        "VariationSignature", backref="variation", lazy="select",
        cascade="all, delete-orphan", order_by="VariationSignature.signed_at",
    )
    certificate = db.relationship(
        "VariationCertificate", backref="variation", uselist=False,
        cascade="all, delete-orphan",
    )

    def signed_sides(self) -> set:
        return {s.side for s in self.signatures}

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "variation_ref": self.variation_ref,
            "title": self.title,
            "description": self.description,
            "reason": self.reason,
            "variation_type": self.variation_type,
            "status": self.status,
            "total_cost_impact": _money(self.total_cost_impact),
            "total_days_impact": self.total_days_impact,
            "created_by": self.created_by,
            "submitted_by": self.submitted_by,
            "submitted_at": _iso(self.submitted_at),
            "approved_at": _iso(self.approved_at),
            "applied_at": _iso(self.applied_at),
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
        }
        if include_children:
            d["items"] = [i.to_dict() for i in self.items]
            d["signatures"] = [s.to_dict() for s in self.signatures]
            d["certificate"] = self.certificate.to_dict() if self.certificate else None
        return d

    def __repr__(self):
        return f"<Variation {self.id}: {self.variation_ref} [{self.status}]>"


class VariationMilestone(db.Model):
    __tablename__ = "variation_milestones"
    __table_args__ = (
        db.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
    )

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False,
    )

    original_baseline_start = db.Column(db.Date, nullable=True)
    original_baseline_end = db.Column(db.Date, nullable=True)
    original_baseline_cost = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    new_baseline_start = db.Column(db.Date, nullable=True)
    new_baseline_end = db.Column(db.Date, nullable=True)
    new_baseline_cost = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    change_description = db.Column(db.Text, default="")

    baseline_version_before = db.Column(db.Integer, nullable=True)
    baseline_version_after = db.Column(db.Integer, nullable=True)

    milestone = db.relationship("Milestone", lazy="joined")

    @property
    def cost_delta(self) -> Decimal:
        return Decimal(self.new_baseline_cost or 0) - Decimal(self.original_baseline_cost or 0)

    @property
    def days_delta(self) -> int:
        if self.new_baseline_end and self.original_baseline_end:
            return (self.new_baseline_end - self.original_baseline_end).days
        return 0

    def to_dict(self):
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "milestone_id": self.milestone_id,
            "milestone_ref": self.milestone.milestone_ref if self.milestone else None,
            "original_baseline_start": _iso(self.original_baseline_start),
            "original_baseline_end": _iso(self.original_baseline_end),
            "original_baseline_cost": _money(self.original_baseline_cost),
            "new_baseline_start": _iso(self.new_baseline_start),
            "new_baseline_end": _iso(self.new_baseline_end),
            "new_baseline_cost": _money(self.new_baseline_cost),
            "cost_delta": float(self.cost_delta),
            "days_delta": self.days_delta,
            "change_description": self.change_description,
            "baseline_version_before": self.baseline_version_before,
            "baseline_version_after": self.baseline_version_after,
        }

    def __repr__(self):
        return f"<VariationMilestone var={self.variation_id} ms={self.milestone_id}>"


class VariationSignature(db.Model):
    """Immutable signature; at most one per (variation, side)."""

    __tablename__ = "variation_signatures"
    __table_args__ = (
        db.UniqueConstraint("variation_id", "side", name="uq_variation_signature_side"),
    )

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    side = db.Column(db.String(20), nullable=False, comment="supplier | customer")
    signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    signer_role = db.Column(db.String(30), nullable=False)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "side": self.side,
            "signed_by": self.signed_by,
            "signer_role": self.signer_role,
            "signed_at": _iso(self.signed_at),
        }

    def __repr__(self):
        return f"<VariationSignature var={self.variation_id} {self.side}>"


class VariationCertificate(db.Model):
    __tablename__ = "variation_certificates"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    certificate_number = db.Column(db.String(80), nullable=True, unique=True)
    status = db.Column(
        db.String(20), nullable=False, default="unsigned",
        comment="unsigned | partially_signed | signed",
    )
    snapshot = db.Column(db.JSON, nullable=True, comment="Items certified, frozen at submit/sign time")
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "certificate_number": self.certificate_number,
            "status": self.status,
            "snapshot": self.snapshot,
            "signed_at": _iso(self.signed_at),
        }

    def __repr__(self):
        return f"<VariationCertificate var={self.variation_id} [{self.status}]>"
