"""
Workshop Blueprint — stakeholder workshops and attendance.

Endpoints:
  GET/POST /projects/<pid>/workshops
  GET      /projects/<pid>/workshops/<wid>
  POST     /projects/<pid>/workshops/<wid>/transition    { "status": ..., ... }
  POST     /projects/<pid>/workshops/<wid>/attendance    { "user_id", "attended", ... }

A transition the state machine does not allow answers 409 with the
rejected TransitionResult in ``details``; the stored status is untouched.
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import paginate_items
from app.middleware.permission_required import require_project_permission
from app.services import workshop_service
from app.utils.errors import E, api_error, register_governance_error_handlers
from app.utils.helpers import parse_bool, parse_datetime, parse_int, require_json

logger = logging.getLogger(__name__)

workshop_bp = Blueprint("workshop", __name__, url_prefix="/api/v1")
register_governance_error_handlers(workshop_bp)

_CREATE_FIELDS = ("workshop_type", "stakeholder_area_id", "scheduled_duration_minutes",
                  "location", "facilitator_id", "agenda", "notes")


@workshop_bp.route("/projects/<int:project_id>/workshops", methods=["GET"])
def list_workshops(project_id):
    workshops = workshop_service.list_workshops(project_id, status=request.args.get("status"))
    page, total = paginate_items(workshops)
    return jsonify({"items": [w.to_dict() for w in page], "total": total}), 200


@workshop_bp.route("/projects/<int:project_id>/workshops", methods=["POST"])
@require_project_permission("workshops", "create")
def create_workshop(project_id):
    data = require_json("name")
    fields = {k: data[k] for k in _CREATE_FIELDS if k in data}
    if data.get("scheduled_date"):
        fields["scheduled_date"] = parse_datetime(data["scheduled_date"], "scheduled_date")
    ws = workshop_service.create_workshop(project_id, data["name"], created_by=g.current_user_id, **fields)
    return jsonify(ws.to_dict()), 201


@workshop_bp.route("/projects/<int:project_id>/workshops/<int:workshop_id>", methods=["GET"])
def get_workshop(project_id, workshop_id):
    ws = workshop_service.get_workshop(project_id, workshop_id)
    return jsonify(ws.to_dict(include_attendees=True)), 200


@workshop_bp.route("/projects/<int:project_id>/workshops/<int:workshop_id>/transition", methods=["POST"])
@require_project_permission("workshops", "transition")
def transition_workshop(project_id, workshop_id):
    """Body: { "status": str, "reason"?: str, "duration_minutes"?: int,
               "summary"?: str, "scheduled_date"?: iso }
    """
    data = require_json("status")
    to_status = data["status"]
    kwargs = {}
    if to_status == "cancelled" and "reason" in data:
        kwargs["reason"] = data["reason"]
    elif to_status == "complete":
        if data.get("duration_minutes") is not None:
            kwargs["duration_minutes"] = parse_int(data["duration_minutes"], "duration_minutes")
        if "summary" in data:
            kwargs["summary"] = data["summary"]
    elif to_status == "scheduled" and data.get("scheduled_date"):
        kwargs["scheduled_date"] = parse_datetime(data["scheduled_date"], "scheduled_date")

    result = workshop_service.transition_workshop(project_id, workshop_id, to_status, **kwargs)
    if not result.allowed:
        return api_error(E.GOVERNANCE_TRANSITION_REJECTED, result.reason, details=result.to_dict())
    ws = workshop_service.get_workshop(project_id, workshop_id)
    return jsonify({"transition": result.to_dict(), "workshop": ws.to_dict()}), 200


@workshop_bp.route("/projects/<int:project_id>/workshops/<int:workshop_id>/attendance", methods=["POST"])
@require_project_permission("workshops", "recordAttendance")
def record_attendance(project_id, workshop_id):
    """Body: { "user_id": int, "attended"?: bool, "stakeholder_area_id"?: int }"""
    data = require_json("user_id")
    area_id = data.get("stakeholder_area_id")
    attendee = workshop_service.record_attendance(
        project_id,
        workshop_id,
        parse_int(data["user_id"], "user_id"),
        attended=parse_bool(data.get("attended"), default=True),
        stakeholder_area_id=parse_int(area_id, "stakeholder_area_id"),
    )
    return jsonify(attendee.to_dict()), 200
