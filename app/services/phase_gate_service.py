"""
Phase Gate Service — weighted stakeholder consensus for governance checkpoints.

A gate passes when the weighted share of approving stakeholder areas reaches
its threshold:

    approvalRate = Σ(weight_i · approved_i) / Σ(weight_i)      (0 when no weight)
    passed       = approvalRate >= threshold                     (inclusive)

The computation always reads the live set of non-deleted areas and the
current approval rows; a missing approval counts as "not approved".

Recording an approval is one optimistic unit of work: lock the gate state row,
upsert the approval, credit the approver's participation, recompute, and
compare-and-set the stored pass state on its ``revision``.  A conflicting
writer forces a full retry.  A PhaseGateReady event is published after commit,
exactly once, and only on a not-passed → passed transition.

Functions:
    check_phase_gate(project_id, gate)            -> dict | None
    get_approval_status(project_id)               -> dict
    get_current_phase(project_id)                 -> dict | None
    configure_phase_gate(project_id, gate, ...)   -> dict
    record_phase_approval(project_id, gate, ...)  -> dict
    get_phase_approvals(project_id, gate=None)    -> list[PhaseGateApproval]
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

from sqlalchemy import select

from app.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from app.models import db
from app.models.phase_gate import PhaseGateApproval, PhaseGateConfig
from app.models.project import Project
from app.models.stakeholder import StakeholderArea
from app.services import participation_service
from app.services.diagnostics import record_diagnostic
from app.services.helpers.optimistic import compare_and_set, retry_on_conflict
from app.services.helpers.scoped_queries import get_scoped
from app.services.notification import PhaseGateReady, publish_event
from app.services.stakeholder_area_service import list_stakeholder_areas

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Static gate catalogue
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GateDefinition:
    key: str
    name: str
    description: str
    default_threshold: float
    order: int


PHASE_GATES = MappingProxyType({
    g.key: g for g in (
        GateDefinition("requirements_approved", "Requirements Approved",
                       "All stakeholder areas have approved their requirements", 0.75, 1),
        GateDefinition("rfp_ready", "RFP Ready",
                       "Requirements are finalised and ready for RFP", 0.75, 2),
        GateDefinition("vendor_selected", "Vendor Selected",
                       "Stakeholders agree on vendor selection", 0.80, 3),
        GateDefinition("evaluation_complete", "Evaluation Complete",
                       "All evaluation activities are complete", 0.80, 4),
    )
})

NO_AREAS_MESSAGE = "no stakeholder areas configured"
DISABLED_MESSAGE = "Phase gate is disabled"


def _dec(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def _round2(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _known_gate_or_none(gate: str, project_id: int | None = None) -> GateDefinition | None:
    definition = PHASE_GATES.get(gate)
    if definition is None:
        record_diagnostic(
            "GATE-UNKNOWN", f"Unknown phase gate '{gate}'", project_id=project_id,
            details={"gate": gate, "known": list(PHASE_GATES)},
        )
    return definition


def _require_gate(gate: str) -> GateDefinition:
    definition = PHASE_GATES.get(gate)
    if definition is None:
        raise ConfigurationError(f"Unknown phase gate '{gate}'", code="GATE-UNKNOWN")
    return definition


def _get_config(project_id: int, gate: str, *, for_update: bool = False) -> PhaseGateConfig | None:
    stmt = select(PhaseGateConfig).where(
        PhaseGateConfig.project_id == project_id,
        PhaseGateConfig.gate == gate,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.session.execute(stmt).scalar_one_or_none()


def _get_or_create_config(project_id: int, gate: str) -> PhaseGateConfig:
    cfg = _get_config(project_id, gate, for_update=True)
    if cfg is None:
        cfg = PhaseGateConfig(project_id=project_id, gate=gate, enabled=True, revision=0, is_passed=False)
        db.session.add(cfg)
        db.session.flush()
    return cfg


def effective_config(definition: GateDefinition, cfg: PhaseGateConfig | None) -> dict:
    """Stored overrides on top of the static defaults."""
    return {
        "gate": definition.key,
        "name": definition.name,
        "description": definition.description,
        "enabled": cfg.enabled if cfg is not None else True,
        "threshold": cfg.threshold if cfg is not None and cfg.threshold is not None
        else definition.default_threshold,
        "defaultThreshold": definition.default_threshold,
        "order": cfg.sort_order if cfg is not None and cfg.sort_order is not None else definition.order,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Computation
# ═════════════════════════════════════════════════════════════════════════════

def _evaluate(project_id: int, definition: GateDefinition, cfg: PhaseGateConfig | None) -> dict:
    conf = effective_config(definition, cfg)
    threshold = conf["threshold"]

    if not conf["enabled"]:
        return {
            "passed": True,
            "approvalRate": 1,
            "threshold": threshold,
            "details": {
                "gate": definition.key,
                "gateName": definition.name,
                "message": DISABLED_MESSAGE,
                "enabled": False,
                "areasApproved": 0,
                "totalAreas": 0,
                "areas": [],
            },
        }

    areas = list_stakeholder_areas(project_id)
    approvals = {
        a.stakeholder_area_id: a
        for a in db.session.execute(
            select(PhaseGateApproval).where(
                PhaseGateApproval.project_id == project_id,
                PhaseGateApproval.gate == definition.key,
            )
        ).scalars()
    }
    global_override = approvals.get(None)

    if not areas:
        return {
            "passed": False,
            "approvalRate": 0,
            "threshold": threshold,
            "details": {
                "gate": definition.key,
                "gateName": definition.name,
                "message": NO_AREAS_MESSAGE,
                "enabled": True,
                "areasApproved": 0,
                "totalAreas": 0,
                "areas": [],
                "globalOverride": global_override.to_dict() if global_override else None,
            },
        }

    weighted_sum = Decimal(0)
    total_weight = Decimal(0)
    breakdown = []
    approved_count = 0
    for area in areas:
        approval = approvals.get(area.id)
        is_approved = bool(approval and approval.approved)
        weight = _dec(area.weight)
        total_weight += weight
        if is_approved:
            weighted_sum += weight
            approved_count += 1
        breakdown.append({
            "areaId": area.id,
            "areaName": area.name,
            "weight": area.weight,
            "approved": is_approved,
            "approvedAt": approval.approved_at.isoformat() if approval and approval.approved_at else None,
            "approvedBy": approval.approved_by if approval else None,
            "rejectionReason": approval.rejection_reason if approval else None,
        })

    rate = weighted_sum / total_weight if total_weight > 0 else Decimal(0)
    passed = rate >= _dec(threshold)

    return {
        "passed": passed,
        "approvalRate": _round2(rate),
        "threshold": threshold,
        "details": {
            "gate": definition.key,
            "gateName": definition.name,
            "enabled": True,
            "areasApproved": approved_count,
            "totalAreas": len(areas),
            "areas": breakdown,
            "globalOverride": global_override.to_dict() if global_override else None,
        },
    }


def check_phase_gate(project_id: int, gate: str) -> dict | None:
    """Evaluate a gate from live data. Unknown gate → None (diagnostic emitted)."""
    definition = _known_gate_or_none(gate, project_id)
    if definition is None:
        return None
    return _evaluate(project_id, definition, _get_config(project_id, gate))


def _ordered_gates(project_id: int) -> list[tuple[GateDefinition, PhaseGateConfig | None]]:
    configs = {
        c.gate: c for c in db.session.execute(
            select(PhaseGateConfig).where(PhaseGateConfig.project_id == project_id)
        ).scalars()
    }
    pairs = [(d, configs.get(d.key)) for d in PHASE_GATES.values()]
    pairs.sort(key=lambda p: (effective_config(*p)["order"], p[0].order))
    return pairs


def get_approval_status(project_id: int) -> dict:
    """Every gate's live result in configured order plus the current phase."""
    gates = []
    current = None
    for definition, cfg in _ordered_gates(project_id):
        result = _evaluate(project_id, definition, cfg)
        conf = effective_config(definition, cfg)
        gates.append({**conf, "result": result})
        if current is None and not result["passed"]:
            current = {"gate": definition.key, "name": definition.name, "order": conf["order"]}
    return {
        "projectId": project_id,
        "gates": gates,
        "currentPhase": current,
        "allPassed": current is None,
    }


def get_current_phase(project_id: int) -> dict | None:
    """First gate, by configured order, not yet passed; None when all pass."""
    return get_approval_status(project_id)["currentPhase"]


def get_phase_approvals(project_id: int, gate: str | None = None) -> list:
    stmt = select(PhaseGateApproval).where(PhaseGateApproval.project_id == project_id)
    if gate is not None:
        _require_gate(gate)
        stmt = stmt.where(PhaseGateApproval.gate == gate)
    stmt = stmt.order_by(PhaseGateApproval.updated_at.desc(), PhaseGateApproval.id.desc())
    return db.session.execute(stmt).scalars().all()


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════

def _sync_gate_state(project_id: int, definition: GateDefinition, cfg: PhaseGateConfig, now: datetime):
    """Recompute and compare-and-set the stored pass state. Returns (result, became_passed)."""
    db.session.flush()
    revision = cfg.revision
    was_passed = cfg.is_passed
    result = _evaluate(project_id, definition, cfg)
    passed = result["passed"]

    if passed and not was_passed:
        passed_at = now
    elif passed:
        passed_at = cfg.passed_at
    else:
        passed_at = None

    compare_and_set(
        PhaseGateConfig, cfg.id,
        {"revision": revision},
        {"is_passed": passed, "passed_at": passed_at, "revision": revision + 1},
    )
    became_passed = passed and not was_passed and result["details"]["enabled"]
    return result, became_passed


def configure_phase_gate(
    project_id: int,
    gate: str,
    *,
    enabled: bool | None = None,
    threshold: float | None = None,
    sort_order: int | None = None,
) -> dict:
    """Merge enabled / threshold / order overrides into the stored gate config.

    The stored pass state is re-synced; no notification is emitted.
    """
    definition = _require_gate(gate)
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    if threshold is not None:
        try:
            threshold = float(threshold)
        except (TypeError, ValueError) as exc:
            raise ValidationError("threshold must be a number", details={"threshold": threshold}) from exc
        if not 0 <= threshold <= 1:
            raise ValidationError("threshold must be between 0 and 1", details={"threshold": threshold})

    def _unit():
        cfg = _get_or_create_config(project_id, gate)
        if enabled is not None:
            cfg.enabled = bool(enabled)
        if threshold is not None:
            cfg.threshold = threshold
        if sort_order is not None:
            cfg.sort_order = int(sort_order)
        result, _ = _sync_gate_state(project_id, definition, cfg, datetime.now(timezone.utc))
        db.session.commit()
        return cfg, result

    cfg, result = retry_on_conflict(_unit, label="phase_gate_configure")
    logger.info("Phase gate configured project=%s gate=%s enabled=%s threshold=%s",
                project_id, gate, cfg.enabled, cfg.threshold,
                extra={"project_id": project_id})
    return {**effective_config(definition, cfg), "result": result}


def record_phase_approval(
    project_id: int,
    gate: str,
    area_id: int | None,
    approved: bool,
    user_id: int | None,
    *,
    rejection_reason: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Upsert one area's (or the global) approval and recompute the gate.

    Returns {"approval", "gate", "gateBecamePassed", "notified"}.
    """
    definition = _require_gate(gate)
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    area = None
    if area_id is not None:
        area = get_scoped(StakeholderArea, area_id, project_id=project_id)
        if area.is_deleted:
            raise NotFoundError(resource="StakeholderArea", resource_id=area_id, project_id=project_id)
    approved = bool(approved)

    def _unit():
        ts = now or datetime.now(timezone.utc)
        cfg = _get_or_create_config(project_id, gate)

        stmt = select(PhaseGateApproval).where(
            PhaseGateApproval.project_id == project_id,
            PhaseGateApproval.gate == gate,
        )
        if area_id is None:
            stmt = stmt.where(PhaseGateApproval.stakeholder_area_id.is_(None))
        else:
            stmt = stmt.where(PhaseGateApproval.stakeholder_area_id == area_id)
        approval = db.session.execute(stmt).scalar_one_or_none()
        if approval is None:
            approval = PhaseGateApproval(project_id=project_id, gate=gate, stakeholder_area_id=area_id)
            db.session.add(approval)

        approval.approved = approved
        approval.approved_by = user_id
        approval.approved_at = ts if approved else None
        approval.rejection_reason = None if approved else rejection_reason
        approval.notes = notes

        if approved and area_id is not None and user_id is not None:
            participation_service.record_participation(
                project_id, area_id, user_id, "approvals_completed", commit=False,
            )

        result, became_passed = _sync_gate_state(project_id, definition, cfg, ts)
        db.session.commit()
        return approval, result, became_passed

    approval, result, became_passed = retry_on_conflict(_unit, label="phase_gate_approval")

    logger.info(
        "Phase approval recorded project=%s gate=%s area=%s approved=%s rate=%s passed=%s",
        project_id, gate, area_id, approved, result["approvalRate"], result["passed"],
        extra={"project_id": project_id, "event_type": "phase_approval"},
    )

    notified = False
    if became_passed:
        notified = publish_event(PhaseGateReady(
            project_id=project_id,
            gate=definition.key,
            gate_name=definition.name,
            approval_rate=result["approvalRate"],
            threshold=result["threshold"],
            area=area.to_dict() if area is not None else None,
        ))

    return {
        "approval": approval.to_dict(),
        "gate": result,
        "gateBecamePassed": became_passed,
        "notified": notified,
    }
