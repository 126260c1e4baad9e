"""
Stakeholder Engagement Blueprint.

Stakeholder areas (weighted consensus units), participation tracking and
the engagement dashboard.  All business logic is delegated to the
stakeholder_area / participation / engagement services.

Endpoints:
  Areas:          GET/POST     /projects/<pid>/stakeholder-areas
                  PATCH/DELETE /projects/<pid>/stakeholder-areas/<aid>
                  GET          /projects/<pid>/stakeholder-areas/weight-validation
  Participation:  GET/POST     /projects/<pid>/participation
                  GET          /projects/<pid>/participation/by-area
  Dashboard:      GET          /projects/<pid>/engagement/dashboard
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.middleware.permission_required import require_project_permission
from app.services import engagement_service, participation_service, stakeholder_area_service
from app.utils.errors import register_governance_error_handlers
from app.utils.helpers import parse_int, require_json

logger = logging.getLogger(__name__)

stakeholder_bp = Blueprint("stakeholder", __name__, url_prefix="/api/v1")
register_governance_error_handlers(stakeholder_bp)

_AREA_FIELDS = ("description", "color", "weight", "approval_threshold", "primary_contact_id", "sort_order")


# ═════════════════════════════════════════════════════════════════════════════
# Stakeholder areas
# ═════════════════════════════════════════════════════════════════════════════


@stakeholder_bp.route("/projects/<int:project_id>/stakeholder-areas", methods=["GET"])
def list_areas(project_id):
    areas = stakeholder_area_service.list_stakeholder_areas(project_id)
    return jsonify({"items": [a.to_dict() for a in areas], "total": len(areas)}), 200


@stakeholder_bp.route("/projects/<int:project_id>/stakeholder-areas", methods=["POST"])
@require_project_permission("stakeholderAreas", "create")
def create_area(project_id):
    """Body: { "name": str, "weight"?: float, "approval_threshold"?: float, ... }"""
    data = require_json("name")
    fields = {k: data[k] for k in _AREA_FIELDS if k in data}
    area = stakeholder_area_service.create_stakeholder_area(project_id, data["name"], **fields)
    return jsonify(area.to_dict()), 201


@stakeholder_bp.route("/projects/<int:project_id>/stakeholder-areas/<int:area_id>", methods=["PATCH"])
@require_project_permission("stakeholderAreas", "edit")
def configure_area(project_id, area_id):
    data = request.get_json(silent=True) or {}
    area = stakeholder_area_service.configure_stakeholder_area(project_id, area_id, **data)
    return jsonify(area.to_dict()), 200


@stakeholder_bp.route("/projects/<int:project_id>/stakeholder-areas/<int:area_id>", methods=["DELETE"])
@require_project_permission("stakeholderAreas", "delete")
def delete_area(project_id, area_id):
    stakeholder_area_service.delete_stakeholder_area(project_id, area_id)
    return jsonify({"deleted": True, "id": area_id}), 200


@stakeholder_bp.route("/projects/<int:project_id>/stakeholder-areas/weight-validation", methods=["GET"])
def weight_validation(project_id):
    return jsonify(stakeholder_area_service.validate_area_weights(project_id)), 200


# ═════════════════════════════════════════════════════════════════════════════
# Participation
# ═════════════════════════════════════════════════════════════════════════════


@stakeholder_bp.route("/projects/<int:project_id>/participation", methods=["GET"])
def list_participation(project_id):
    metrics = participation_service.get_participation_metrics(project_id)
    return jsonify({"items": [m.to_dict() for m in metrics], "total": len(metrics)}), 200


@stakeholder_bp.route("/projects/<int:project_id>/participation", methods=["POST"])
@require_project_permission("participation", "record")
def record_participation(project_id):
    """Body: { "stakeholder_area_id": int, "activity_type": str,
               "user_id"?: int (defaults to caller), "increment"?: int }
    """
    data = require_json("stakeholder_area_id", "activity_type")
    increment = data.get("increment")
    metric = participation_service.record_participation(
        project_id,
        parse_int(data["stakeholder_area_id"], "stakeholder_area_id"),
        parse_int(data.get("user_id") or g.current_user_id, "user_id"),
        data["activity_type"],
        parse_int(increment, "increment") if increment is not None else 1,
    )
    return jsonify(metric.to_dict()), 201


@stakeholder_bp.route("/projects/<int:project_id>/participation/by-area", methods=["GET"])
def participation_by_area(project_id):
    return jsonify({"items": participation_service.get_participation_by_area(project_id)}), 200


@stakeholder_bp.route("/projects/<int:project_id>/engagement/dashboard", methods=["GET"])
def engagement_dashboard(project_id):
    return jsonify(engagement_service.get_dashboard_data(project_id)), 200
