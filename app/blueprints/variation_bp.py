"""
Variation Blueprint — change control with dual signature.

Endpoints:
  GET/POST /projects/<pid>/variations
  GET      /projects/<pid>/variations/summary
  GET      /projects/<pid>/variations/<vid>
  POST     /projects/<pid>/variations/<vid>/milestones
  DELETE   /projects/<pid>/variations/<vid>/milestones/<item_id>
  POST     /projects/<pid>/variations/<vid>/submit
  POST     /projects/<pid>/variations/<vid>/sign          { "side": "supplier" | "customer" }
  POST     /projects/<pid>/variations/<vid>/reject        { "reason": str }
  GET      /projects/<pid>/variations/<vid>/certificate
  GET      /projects/<pid>/milestones/<mid>/baseline-history

Signing and rejection resolve the caller's project role from the store;
the service decides whether that role may act.  A refused signature is
403 (not_authorized) or 409 (already_signed / status_not_signable).
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from app.blueprints import paginate_items
from app.middleware.permission_required import require_identity, require_project_permission
from app.services import permission_service, variation_service
from app.utils.errors import E, api_error, register_governance_error_handlers
from app.utils.helpers import parse_int, require_json

logger = logging.getLogger(__name__)

variation_bp = Blueprint("variation", __name__, url_prefix="/api/v1")
register_governance_error_handlers(variation_bp)

_ITEM_FIELDS = ("new_baseline_start", "new_baseline_end", "new_baseline_cost",
                "original_baseline_start", "original_baseline_end", "original_baseline_cost",
                "change_description")


def _caller_role(project_id):
    role = permission_service.get_project_role(g.current_user_id, project_id)
    return role or current_app.config.get("DEFAULT_PROJECT_ROLE", "viewer")


def _may_view_certificate(project_id):
    return permission_service.can(g.current_user_id, project_id, "certificates", "view")


# ═════════════════════════════════════════════════════════════════════════════
# Authoring
# ═════════════════════════════════════════════════════════════════════════════


@variation_bp.route("/projects/<int:project_id>/variations", methods=["GET"])
def list_variations(project_id):
    variations = variation_service.list_variations(project_id, status=request.args.get("status"))
    page, total = paginate_items(variations)
    return jsonify({"items": [v.to_dict() for v in page], "total": total}), 200


@variation_bp.route("/projects/<int:project_id>/variations", methods=["POST"])
@require_project_permission("variations", "create")
def create_variation(project_id):
    """Body: { "title": str, "variation_type"?: str, "description"?: str, "reason"?: str,
               "total_cost_impact"?: number, "total_days_impact"?: int }
    """
    data = require_json("title")
    variation = variation_service.create_variation(
        project_id,
        data["title"],
        created_by=g.current_user_id,
        variation_type=data.get("variation_type", "scope_extension"),
        description=data.get("description", ""),
        reason=data.get("reason", ""),
        total_cost_impact=data.get("total_cost_impact"),
        total_days_impact=data.get("total_days_impact"),
    )
    return jsonify(variation.to_dict(include_children=True)), 201


@variation_bp.route("/projects/<int:project_id>/variations/summary", methods=["GET"])
def variation_summary(project_id):
    return jsonify(variation_service.get_variation_summary(project_id)), 200


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>", methods=["GET"])
def get_variation(project_id, variation_id):
    variation = variation_service.get_variation(
        project_id, variation_id, include_certificate=_may_view_certificate(project_id),
    )
    return jsonify(variation), 200


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>/milestones", methods=["POST"])
@require_project_permission("variations", "edit")
def add_milestone(project_id, variation_id):
    data = require_json("milestone_id")
    fields = {k: data[k] for k in _ITEM_FIELDS if k in data}
    milestone_id = parse_int(data["milestone_id"], "milestone_id")
    item = variation_service.add_affected_milestone(project_id, variation_id, milestone_id, **fields)
    return jsonify(item.to_dict()), 201


@variation_bp.route(
    "/projects/<int:project_id>/variations/<int:variation_id>/milestones/<int:item_id>", methods=["DELETE"],
)
@require_project_permission("variations", "edit")
def remove_milestone(project_id, variation_id, item_id):
    variation_service.remove_affected_milestone(project_id, variation_id, item_id)
    return jsonify({"deleted": True, "id": item_id}), 200


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>/submit", methods=["POST"])
@require_project_permission("variations", "submit")
def submit_variation(project_id, variation_id):
    result = variation_service.submit_for_approval(project_id, variation_id, g.current_user_id)
    if not result.submitted:
        return api_error(E.GOVERNANCE_TRANSITION_REJECTED, result.reason, details=result.to_dict())
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>/sign", methods=["POST"])
@require_identity
def sign_variation(project_id, variation_id):
    data = require_json("side")
    result = variation_service.sign_variation(
        project_id, variation_id, data["side"], g.current_user_id, _caller_role(project_id),
    )
    if not result.signed:
        code = E.FORBIDDEN if result.reason == "not_authorized" else E.GOVERNANCE_SIGNATURE_REJECTED
        return api_error(code, f"Signature refused: {result.reason}", details=result.to_dict())
    return jsonify(result.to_dict()), 200


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>/reject", methods=["POST"])
@require_identity
def reject_variation(project_id, variation_id):
    data = request.get_json(silent=True) or {}
    result = variation_service.reject_variation(
        project_id, variation_id, g.current_user_id, _caller_role(project_id), data.get("reason"),
    )
    if not result.allowed:
        if result.reason == "not_authorized":
            return api_error(E.FORBIDDEN, "Permission denied",
                             details={"entity": "variations", "action": "reject"})
        return api_error(E.GOVERNANCE_TRANSITION_REJECTED, result.reason, details=result.to_dict())
    variation = variation_service.get_variation(
        project_id, variation_id, include_certificate=_may_view_certificate(project_id),
    )
    return jsonify({"transition": result.to_dict(), "variation": variation}), 200


@variation_bp.route("/projects/<int:project_id>/variations/<int:variation_id>/certificate", methods=["GET"])
@require_project_permission("certificates", "view")
def get_certificate(project_id, variation_id):
    return jsonify(variation_service.get_certificate(project_id, variation_id)), 200


@variation_bp.route("/projects/<int:project_id>/milestones/<int:milestone_id>/baseline-history", methods=["GET"])
def baseline_history(project_id, milestone_id):
    versions = variation_service.get_milestone_baseline_history(project_id, milestone_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)}), 200
