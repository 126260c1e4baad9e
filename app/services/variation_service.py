"""
Variation Service — change control with dual supplier/customer signature.

Lifecycle (status guarded by status_transitions):

    draft → submitted → awaiting_customer ─┐
                     ↘ awaiting_supplier ──┴→ approved → applied
    submitted / awaiting_* → rejected

Signing:
    Each side signs once.  The first signature moves the variation to
    ``awaiting_<other side>`` and the certificate to ``partially_signed``.
    The second signature completes the variation in ONE transaction:

        1. certificate → signed (number, snapshot with both signatures)
        2. every affected milestone gets its new baseline, forecast/billable
           reset and a MilestoneBaselineVersion row
        3. approved → applied

    Any failure in that unit rolls everything back, including the second
    signature, and the exception propagates.

Impact values are signed deltas.  Declared totals that disagree with the
itemised deltas produce warnings (diagnostic VARIATION-IMPACT-MISMATCH),
never a block.

Usage:
    v = create_variation(project_id, "Add payroll interface", created_by=user_id)
    add_affected_milestone(project_id, v.id, ms.id, new_baseline_cost=12000)
    submit_for_approval(project_id, v.id, user_id)
    sign_variation(project_id, v.id, "supplier", supplier_user, "supplier_pm")
    sign_variation(project_id, v.id, "customer", customer_user, "customer_pm")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import func, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.project import Project
from app.models.variation import (
    SIGNATURE_SIDES,
    VARIATION_TYPES,
    Milestone,
    MilestoneBaselineVersion,
    Variation,
    VariationCertificate,
    VariationMilestone,
    VariationSignature,
)
from app.services import permission_matrix as pm
from app.services.diagnostics import record_diagnostic
from app.services.helpers.optimistic import retry_on_conflict
from app.services.helpers.scoped_queries import get_scoped
from app.services.status_transitions import TransitionResult, allowed_next_statuses, transition_status

logger = logging.getLogger(__name__)

_TWO_PLACES = Decimal("0.01")
_REF_PATTERN = re.compile(r"^VAR-(\d+)$")

_SIGN_ACTIONS = {"supplier": "signAsSupplier", "customer": "signAsCustomer"}
_PENDING_STATUSES = ("submitted", "awaiting_customer", "awaiting_supplier")


# ═════════════════════════════════════════════════════════════════════════════
# Signature state (pure)
# ═════════════════════════════════════════════════════════════════════════════

class SignatureState(str, Enum):
    UNSIGNED = "UNSIGNED"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    FULLY_SIGNED = "FULLY_SIGNED"


def signature_state(sides) -> SignatureState:
    """Workflow state from the set of sides that have signed."""
    present = set(sides) & set(SIGNATURE_SIDES)
    if not present:
        return SignatureState.UNSIGNED
    if present == set(SIGNATURE_SIDES):
        return SignatureState.FULLY_SIGNED
    return SignatureState.PARTIALLY_SIGNED


def certificate_status(sides) -> str:
    return {
        SignatureState.UNSIGNED: "unsigned",
        SignatureState.PARTIALLY_SIGNED: "partially_signed",
        SignatureState.FULLY_SIGNED: "signed",
    }[signature_state(sides)]


def _other_side(side: str) -> str:
    return "customer" if side == "supplier" else "supplier"


@dataclass
class SigningResult:
    signed: bool
    variation_id: int
    side: str
    reason: str | None = None
    state: SignatureState = SignatureState.UNSIGNED
    status: str | None = None
    warnings: list[str] = field(default_factory=list)
    certificate: dict | None = None

    def to_dict(self) -> dict:
        return {
            "signed": self.signed,
            "variation_id": self.variation_id,
            "side": self.side,
            "reason": self.reason,
            "state": self.state.value,
            "status": self.status,
            "warnings": self.warnings,
            "certificate": self.certificate,
        }


@dataclass
class SubmissionResult:
    submitted: bool
    variation_id: int
    status: str | None = None
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "submitted": self.submitted,
            "variation_id": self.variation_id,
            "status": self.status,
            "reason": self.reason,
            "warnings": self.warnings,
        }


# ── Value helpers ────────────────────────────────────────────────────────────

def _money(value, field_name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(_TWO_PLACES)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number", details={field_name: value}) from exc


def _date(value, field_name: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD)",
                              details={field_name: value}) from exc


def _require_draft(variation: Variation) -> None:
    if variation.status != "draft":
        raise ValidationError(
            f"Variation {variation.variation_ref} can only be edited in draft (status={variation.status})",
            details={"status": variation.status},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Impact reconciliation
# ═════════════════════════════════════════════════════════════════════════════

def itemised_impact(variation: Variation) -> tuple[Decimal, int]:
    cost = sum((item.cost_delta for item in variation.items), Decimal("0"))
    days = sum(item.days_delta for item in variation.items)
    return cost.quantize(_TWO_PLACES), days


def reconcile_impact(variation: Variation) -> list[str]:
    """Compare declared totals with the sum of itemised deltas.

    Returns human-readable warnings; each mismatch is also recorded as a
    diagnostic.  Undeclared totals are not compared.
    """
    cost, days = itemised_impact(variation)
    warnings = []

    if variation.total_cost_impact is not None:
        declared = Decimal(str(variation.total_cost_impact)).quantize(_TWO_PLACES)
        if declared != cost:
            warnings.append(
                f"Declared cost impact {declared} differs from itemised milestone changes {cost}"
            )
    if variation.total_days_impact is not None and int(variation.total_days_impact) != days:
        warnings.append(
            f"Declared schedule impact {variation.total_days_impact} day(s) differs "
            f"from itemised milestone changes {days} day(s)"
        )

    for message in warnings:
        record_diagnostic(
            "VARIATION-IMPACT-MISMATCH", message, project_id=variation.project_id,
            details={"variation_id": variation.id, "variation_ref": variation.variation_ref},
        )
    return warnings


# ═════════════════════════════════════════════════════════════════════════════
# Milestones
# ═════════════════════════════════════════════════════════════════════════════

def create_milestone(project_id: int, milestone_ref: str, name: str, *,
                     baseline_start_date=None, baseline_end_date=None, baseline_billable=0) -> Milestone:
    start = _date(baseline_start_date, "baseline_start_date")
    end = _date(baseline_end_date, "baseline_end_date")
    billable = _money(baseline_billable or 0, "baseline_billable")
    ms = Milestone(
        project_id=project_id,
        milestone_ref=milestone_ref,
        name=name,
        baseline_start_date=start,
        baseline_end_date=end,
        baseline_billable=billable,
        baseline_version=1,
        start_date=start,
        forecast_end_date=end,
        forecast_billable=billable,
        billable=billable,
    )
    db.session.add(ms)
    db.session.commit()
    return ms


def get_milestone_baseline_history(project_id: int, milestone_id: int) -> list:
    """Baseline versions of a milestone, newest first."""
    ms = get_scoped(Milestone, milestone_id, project_id=project_id)
    return db.session.execute(
        select(MilestoneBaselineVersion)
        .where(MilestoneBaselineVersion.milestone_id == ms.id)
        .order_by(MilestoneBaselineVersion.version.desc())
    ).scalars().all()


# ═════════════════════════════════════════════════════════════════════════════
# Authoring
# ═════════════════════════════════════════════════════════════════════════════

def _next_reference(project_id: int) -> str:
    refs = db.session.execute(
        select(Variation.variation_ref).where(Variation.project_id == project_id)
    ).scalars().all()
    numbers = [int(m.group(1)) for m in (_REF_PATTERN.match(r or "") for r in refs) if m]
    return f"VAR-{(max(numbers) if numbers else 0) + 1:03d}"


def create_variation(
    project_id: int,
    title: str,
    *,
    created_by: int | None = None,
    variation_type: str = "scope_extension",
    description: str = "",
    reason: str = "",
    total_cost_impact=None,
    total_days_impact=None,
) -> Variation:
    """Create a draft variation with the next VAR-NNN reference and an unsigned certificate."""
    if not (title or "").strip():
        raise ValidationError("title is required", details={"title": "required"})
    if variation_type not in VARIATION_TYPES:
        raise ValidationError("Invalid variation_type",
                              details={"variation_type": variation_type, "valid": sorted(VARIATION_TYPES)})
    cost = _money(total_cost_impact, "total_cost_impact")
    days = int(total_days_impact) if total_days_impact is not None else None
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    def _create():
        variation = Variation(
            project_id=project_id,
            variation_ref=_next_reference(project_id),
            title=title.strip(),
            description=description or "",
            reason=reason or "",
            variation_type=variation_type,
            status="draft",
            total_cost_impact=cost,
            total_days_impact=days,
            created_by=created_by,
        )
        variation.certificate = VariationCertificate(status="unsigned")
        db.session.add(variation)
        db.session.commit()
        return variation

    variation = retry_on_conflict(_create, label="variation_create")
    logger.info("Variation created project=%s ref=%s", project_id, variation.variation_ref,
                extra={"project_id": project_id, "entity_type": "variation", "entity_id": variation.id})
    return variation


def list_variations(project_id: int, status: str | None = None) -> list:
    stmt = select(Variation).where(Variation.project_id == project_id)
    if status:
        stmt = stmt.where(Variation.status == status)
    return db.session.execute(stmt.order_by(Variation.variation_ref)).scalars().all()


def add_affected_milestone(
    project_id: int,
    variation_id: int,
    milestone_id: int,
    *,
    new_baseline_start=None,
    new_baseline_end=None,
    new_baseline_cost=None,
    original_baseline_start=None,
    original_baseline_end=None,
    original_baseline_cost=None,
    change_description: str = "",
) -> VariationMilestone:
    """Itemise a milestone change on a draft variation.

    Original values default to the milestone's current baseline; new values
    default to the originals (i.e. "no change" for that field).
    """
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    _require_draft(variation)
    ms = get_scoped(Milestone, milestone_id, project_id=project_id)

    existing = db.session.execute(
        select(VariationMilestone).where(
            VariationMilestone.variation_id == variation.id,
            VariationMilestone.milestone_id == ms.id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("VariationMilestone", "milestone_id", str(ms.id))

    orig_start = _date(original_baseline_start, "original_baseline_start") or ms.baseline_start_date
    orig_end = _date(original_baseline_end, "original_baseline_end") or ms.baseline_end_date
    orig_cost = _money(original_baseline_cost, "original_baseline_cost")
    if orig_cost is None:
        orig_cost = Decimal(str(ms.baseline_billable or 0)).quantize(_TWO_PLACES)

    new_start = _date(new_baseline_start, "new_baseline_start") or orig_start
    new_end = _date(new_baseline_end, "new_baseline_end") or orig_end
    new_cost = _money(new_baseline_cost, "new_baseline_cost")
    if new_cost is None:
        new_cost = orig_cost
    if new_start and new_end and new_end < new_start:
        raise ValidationError("new_baseline_end must not be before new_baseline_start",
                              details={"new_baseline_start": str(new_start), "new_baseline_end": str(new_end)})

    item = VariationMilestone(
        variation_id=variation.id,
        milestone_id=ms.id,
        original_baseline_start=orig_start,
        original_baseline_end=orig_end,
        original_baseline_cost=orig_cost,
        new_baseline_start=new_start,
        new_baseline_end=new_end,
        new_baseline_cost=new_cost,
        change_description=change_description or "",
    )
    db.session.add(item)
    db.session.commit()
    return item


def remove_affected_milestone(project_id: int, variation_id: int, item_id: int) -> None:
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    _require_draft(variation)
    item = get_scoped(VariationMilestone, item_id, variation_id=variation.id)
    db.session.delete(item)
    db.session.commit()


def _snapshot(variation: Variation, *, applied_at: datetime | None = None) -> dict:
    signatures = {s.side: s for s in variation.signatures}
    snap = {
        "variation_ref": variation.variation_ref,
        "title": variation.title,
        "type": variation.variation_type,
        "description": variation.description,
        "reason": variation.reason,
        "total_cost_impact": float(variation.total_cost_impact) if variation.total_cost_impact is not None else None,
        "total_days_impact": variation.total_days_impact,
        "affected_milestones": [item.to_dict() for item in variation.items],
    }
    for side in SIGNATURE_SIDES:
        sig = signatures.get(side)
        snap[f"{side}_signed_by"] = sig.signed_by if sig else None
        snap[f"{side}_signed_at"] = sig.signed_at.isoformat() if sig and sig.signed_at else None
    if applied_at is not None:
        snap["applied_at"] = applied_at.isoformat()
    return snap


def submit_for_approval(project_id: int, variation_id: int, user_id: int | None, *,
                        now: datetime | None = None) -> SubmissionResult:
    """draft → submitted.

    Undeclared totals are derived from the items; declared totals are kept
    and reconciled (warnings only).
    """
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    if variation.status == "draft" and not variation.items:
        raise ValidationError("A variation needs at least one affected milestone before submission",
                              details={"items": "required"})

    cost, days = itemised_impact(variation)
    extra = {"submitted_by": user_id}
    if variation.total_cost_impact is None:
        extra["total_cost_impact"] = cost
    if variation.total_days_impact is None:
        extra["total_days_impact"] = days

    result = transition_status(Variation, variation.id, "submitted", entity_type="variation",
                               project_id=project_id, now=now, extra_values=extra, commit=False)
    if not result.allowed:
        return SubmissionResult(submitted=False, variation_id=variation.id,
                                status=result.from_status, reason=result.reason)

    warnings = reconcile_impact(variation)
    variation.certificate.snapshot = _snapshot(variation)
    db.session.commit()

    logger.info("Variation submitted project=%s ref=%s warnings=%d",
                project_id, variation.variation_ref, len(warnings),
                extra={"project_id": project_id, "entity_type": "variation", "entity_id": variation.id})
    return SubmissionResult(submitted=True, variation_id=variation.id,
                            status=variation.status, warnings=warnings)


def reject_variation(project_id: int, variation_id: int, user_id: int | None, role: str | None,
                     reason: str, *, now: datetime | None = None) -> TransitionResult:
    """Reject a pending variation; the reason is stored verbatim."""
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    role = pm.migrate_role(pm.SCOPE_PROJECT, role)
    if not pm.has_permission(role, "variations", "reject"):
        return TransitionResult(allowed=False, entity_type="variation", entity_id=variation.id,
                                from_status=variation.status, to_status="rejected",
                                reason="not_authorized")
    return transition_status(Variation, variation.id, "rejected", entity_type="variation",
                             project_id=project_id, now=now, reason=reason,
                             extra_values={"rejected_by": user_id})


# ═════════════════════════════════════════════════════════════════════════════
# Dual signature
# ═════════════════════════════════════════════════════════════════════════════

def _apply_milestones(variation: Variation) -> None:
    """Write each item's new baseline onto its milestone and version it."""
    signatures = {s.side: s for s in variation.signatures}
    supplier = signatures.get("supplier")
    customer = signatures.get("customer")

    for item in variation.items:
        ms = db.session.get(Milestone, item.milestone_id)
        latest = db.session.execute(
            select(func.max(MilestoneBaselineVersion.version))
            .where(MilestoneBaselineVersion.milestone_id == ms.id)
        ).scalar()
        before = max(latest or 0, ms.baseline_version or 1)
        after = before + 1

        ms.baseline_start_date = item.new_baseline_start
        ms.baseline_end_date = item.new_baseline_end
        ms.baseline_billable = item.new_baseline_cost
        ms.start_date = item.new_baseline_start
        ms.forecast_end_date = item.new_baseline_end
        ms.forecast_billable = item.new_baseline_cost
        ms.billable = item.new_baseline_cost
        ms.baseline_version = after

        db.session.add(MilestoneBaselineVersion(
            milestone_id=ms.id,
            variation_id=variation.id,
            version=after,
            baseline_start_date=item.new_baseline_start,
            baseline_end_date=item.new_baseline_end,
            baseline_billable=item.new_baseline_cost,
            supplier_signed_by=supplier.signed_by if supplier else None,
            supplier_signed_at=supplier.signed_at if supplier else None,
            customer_signed_by=customer.signed_by if customer else None,
            customer_signed_at=customer.signed_at if customer else None,
        ))
        item.baseline_version_before = before
        item.baseline_version_after = after
    db.session.flush()


def _complete(project_id: int, variation: Variation, now: datetime) -> None:
    """Certificate signed → milestones applied → approved → applied (no commit)."""
    project = db.session.get(Project, project_id)
    cert = variation.certificate or VariationCertificate(variation_id=variation.id)
    cert.status = "signed"
    cert.certificate_number = f"{project.code}-{variation.variation_ref}-CERT"
    cert.signed_at = now
    variation.certificate = cert

    _apply_milestones(variation)
    cert.snapshot = _snapshot(variation, applied_at=now)
    db.session.flush()

    result = transition_status(Variation, variation.id, "applied", entity_type="variation",
                               project_id=project_id, now=now, commit=False)
    if not result.allowed:
        raise ValidationError(f"Variation {variation.variation_ref} could not be applied: {result.reason}",
                              details={"status": result.from_status})


def _sign_once(project_id: int, variation_id: int, side: str, user_id: int | None,
               role: str | None, now: datetime) -> SigningResult:
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    sides = variation.signed_sides()

    def _rejected(reason: str) -> SigningResult:
        logger.info("Signature rejected project=%s ref=%s side=%s reason=%s",
                    project_id, variation.variation_ref, side, reason,
                    extra={"project_id": project_id, "entity_type": "variation", "entity_id": variation.id})
        return SigningResult(signed=False, variation_id=variation.id, side=side, reason=reason,
                             state=signature_state(sides), status=variation.status)

    if not pm.has_permission(role, "variations", _SIGN_ACTIONS[side]):
        return _rejected("not_authorized")
    if side in sides:
        return _rejected("already_signed")
    if variation.status not in ("submitted", f"awaiting_{side}"):
        return _rejected("status_not_signable")

    db.session.add(VariationSignature(
        variation_id=variation.id, side=side, signed_by=user_id, signer_role=role, signed_at=now,
    ))
    db.session.flush()
    db.session.refresh(variation, ["signatures"])
    sides = variation.signed_sides()
    state = signature_state(sides)

    to_status = "approved" if state is SignatureState.FULLY_SIGNED else f"awaiting_{_other_side(side)}"
    result = transition_status(Variation, variation.id, to_status, entity_type="variation",
                               project_id=project_id, now=now, commit=False)
    if not result.allowed:
        raise ValidationError(f"Variation {variation.variation_ref}: {result.reason}",
                              details={"status": result.from_status})

    cert = variation.certificate
    if cert is None:
        cert = VariationCertificate(variation_id=variation.id)
        variation.certificate = cert
    cert.status = certificate_status(sides)

    warnings = []
    if state is SignatureState.FULLY_SIGNED:
        warnings = reconcile_impact(variation)
        _complete(project_id, variation, now)

    db.session.commit()
    logger.info("Variation signed project=%s ref=%s side=%s state=%s status=%s",
                project_id, variation.variation_ref, side, state.value, variation.status,
                extra={"project_id": project_id, "entity_type": "variation", "entity_id": variation.id})
    return SigningResult(
        signed=True,
        variation_id=variation.id,
        side=side,
        state=state,
        status=variation.status,
        warnings=warnings,
        certificate=variation.certificate.to_dict() if variation.certificate else None,
    )


def sign_variation(project_id: int, variation_id: int, side: str, user_id: int | None,
                   role: str | None, *, now: datetime | None = None) -> SigningResult:
    """Record one side's signature; completes the variation when both are present.

    Returns a SigningResult with ``signed=False`` and a reason of
    ``not_authorized``, ``already_signed`` or ``status_not_signable`` when the
    signature is refused.  Those outcomes write nothing.

    Raises:
        ValidationError: unknown side.
        NotFoundError: variation not in the project.
    """
    if side not in SIGNATURE_SIDES:
        raise ValidationError(f"Unknown signature side '{side}'",
                              details={"side": side, "valid": list(SIGNATURE_SIDES)})
    role = pm.migrate_role(pm.SCOPE_PROJECT, role)
    now = now or datetime.now(timezone.utc)

    try:
        return retry_on_conflict(
            lambda: _sign_once(project_id, variation_id, side, user_id, role, now),
            label="variation_signature",
        )
    except Exception:
        db.session.rollback()
        logger.error("Signing failed and was rolled back project=%s variation=%s side=%s",
                     project_id, variation_id, side, exc_info=True,
                     extra={"project_id": project_id, "entity_type": "variation", "entity_id": variation_id})
        raise


# ═════════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════════

def get_variation(project_id: int, variation_id: int, *, include_certificate: bool = True) -> dict:
    """Variation with children. Without ``include_certificate`` only the certificate status is kept."""
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    d = variation.to_dict(include_children=True)
    if not include_certificate and d["certificate"] is not None:
        d["certificate"] = {"status": d["certificate"]["status"]}
    d["signature_state"] = signature_state(variation.signed_sides()).value
    d["allowed_transitions"] = allowed_next_statuses("variation", variation.status)
    return d


def get_certificate(project_id: int, variation_id: int) -> dict:
    variation = get_scoped(Variation, variation_id, project_id=project_id)
    if variation.certificate is None:
        return {"variation_id": variation.id, "status": certificate_status(variation.signed_sides()),
                "certificate_number": None, "snapshot": None, "signed_at": None}
    return variation.certificate.to_dict()


def get_variation_summary(project_id: int) -> dict:
    """Counts per status bucket plus cost/day totals of applied variations."""
    summary = {
        "total": 0, "draft": 0, "pending": 0, "approved": 0, "applied": 0, "rejected": 0,
        "totalCostImpact": 0.0, "totalDaysImpact": 0,
    }
    applied_cost = Decimal("0")
    for variation in list_variations(project_id):
        summary["total"] += 1
        if variation.status in _PENDING_STATUSES:
            summary["pending"] += 1
        elif variation.status in summary:
            summary[variation.status] += 1
        if variation.status == "applied":
            applied_cost += Decimal(str(variation.total_cost_impact or 0))
            summary["totalDaysImpact"] += variation.total_days_impact or 0
    summary["totalCostImpact"] = float(applied_cost)
    return summary
