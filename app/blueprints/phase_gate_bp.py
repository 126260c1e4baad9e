"""
Phase Gate Blueprint — weighted stakeholder consensus per governance gate.

Endpoints:
  GET  /projects/<pid>/phase-gates                     all gates + current phase
  GET  /projects/<pid>/phase-gates/<gate>              live evaluation of one gate
  PUT  /projects/<pid>/phase-gates/<gate>/config       enabled / threshold / sort_order
  GET  /projects/<pid>/phase-gates/<gate>/approvals    recorded approvals, newest first
  POST /projects/<pid>/phase-gates/<gate>/approvals    approve / reject for an area
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.middleware.permission_required import require_project_permission
from app.services import phase_gate_service
from app.utils.errors import E, api_error, register_governance_error_handlers
from app.utils.helpers import parse_bool, parse_int

logger = logging.getLogger(__name__)

phase_gate_bp = Blueprint("phase_gate", __name__, url_prefix="/api/v1")
register_governance_error_handlers(phase_gate_bp)


@phase_gate_bp.route("/projects/<int:project_id>/phase-gates", methods=["GET"])
def approval_status(project_id):
    return jsonify(phase_gate_service.get_approval_status(project_id)), 200


@phase_gate_bp.route("/projects/<int:project_id>/phase-gates/<gate>", methods=["GET"])
def check_gate(project_id, gate):
    result = phase_gate_service.check_phase_gate(project_id, gate)
    if result is None:
        return api_error(E.NOT_FOUND, f"Unknown phase gate '{gate}'")
    return jsonify(result), 200


@phase_gate_bp.route("/projects/<int:project_id>/phase-gates/<gate>/config", methods=["PUT"])
@require_project_permission("phaseGates", "configure")
def configure_gate(project_id, gate):
    """Body: { "enabled"?: bool, "threshold"?: float, "sort_order"?: int }"""
    data = request.get_json(silent=True) or {}
    config = phase_gate_service.configure_phase_gate(
        project_id,
        gate,
        enabled=parse_bool(data["enabled"]) if "enabled" in data else None,
        threshold=data.get("threshold"),
        sort_order=data.get("sort_order"),
    )
    return jsonify(config), 200


@phase_gate_bp.route("/projects/<int:project_id>/phase-gates/<gate>/approvals", methods=["GET"])
def list_approvals(project_id, gate):
    approvals = phase_gate_service.get_phase_approvals(project_id, gate)
    return jsonify({"items": [a.to_dict() for a in approvals], "total": len(approvals)}), 200


@phase_gate_bp.route("/projects/<int:project_id>/phase-gates/<gate>/approvals", methods=["POST"])
@require_project_permission("phaseGates", "approve")
def record_approval(project_id, gate):
    """Body: { "stakeholder_area_id": int | null, "approved": bool,
               "rejection_reason"?: str, "notes"?: str }
    """
    data = request.get_json(silent=True) or {}
    if "approved" not in data:
        return api_error(E.VALIDATION_REQUIRED, "approved is required")
    area_id = data.get("stakeholder_area_id")
    result = phase_gate_service.record_phase_approval(
        project_id,
        gate,
        parse_int(area_id, "stakeholder_area_id"),
        parse_bool(data["approved"]),
        g.current_user_id,
        rejection_reason=data.get("rejection_reason"),
        notes=data.get("notes"),
    )
    return jsonify(result), 200
