"""
Security Assessment Blueprint — vendor security reviews.

Endpoints:
  GET/POST /projects/<pid>/security-assessments
  POST     /projects/<pid>/security-assessments/<id>/transition
  POST     /projects/<pid>/security-assessments/review-reminders
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.middleware.permission_required import require_project_permission
from app.services import permission_service, security_assessment_service
from app.utils.errors import E, api_error, register_governance_error_handlers
from app.utils.helpers import parse_date_input, parse_int, require_json

logger = logging.getLogger(__name__)

security_assessment_bp = Blueprint("security_assessment", __name__, url_prefix="/api/v1")
register_governance_error_handlers(security_assessment_bp)

# to_status → permission action
_TRANSITION_ACTIONS = {"in_progress": "assess", "completed": "assess", "waived": "waive"}


@security_assessment_bp.route("/projects/<int:project_id>/security-assessments", methods=["GET"])
def list_assessments(project_id):
    items = security_assessment_service.list_assessments(project_id, status=request.args.get("status"))
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)}), 200


@security_assessment_bp.route("/projects/<int:project_id>/security-assessments", methods=["POST"])
@require_project_permission("securityAssessments", "create")
def create_assessment(project_id):
    data = require_json("vendor_name")
    assessment = security_assessment_service.create_assessment(
        project_id,
        data["vendor_name"],
        assessment_type=data.get("assessment_type", "questionnaire"),
        review_due_date=parse_date_input(data.get("review_due_date"), "review_due_date"),
    )
    return jsonify(assessment.to_dict()), 201


@security_assessment_bp.route(
    "/projects/<int:project_id>/security-assessments/<int:assessment_id>/transition", methods=["POST"],
)
@require_project_permission("securityAssessments", "assess")
def transition_assessment(project_id, assessment_id):
    """Body: { "status": str, "reason"?: str, "score"?: int, "risk_level"?: str,
               "findings"?: str, "duration_minutes"?: int }

    Waiving additionally needs the ``waive`` action.
    """
    data = require_json("status")
    to_status = data["status"]

    action = _TRANSITION_ACTIONS.get(to_status, "assess")
    if action != "assess" and not permission_service.can(
        g.current_user_id, project_id, "securityAssessments", action,
    ):
        return api_error(E.FORBIDDEN, "Permission denied",
                         details={"entity": "securityAssessments", "action": action})

    kwargs = {}
    if to_status == "waived":
        kwargs["reason"] = data.get("reason")
    elif to_status == "completed":
        kwargs = {
            "score": data.get("score"),
            "risk_level": data.get("risk_level"),
            "findings": data.get("findings"),
            "assessed_by": g.current_user_id,
            "duration_minutes": data.get("duration_minutes"),
        }

    result = security_assessment_service.transition_assessment(project_id, assessment_id, to_status, **kwargs)
    if not result.allowed:
        return api_error(E.GOVERNANCE_TRANSITION_REJECTED, result.reason, details=result.to_dict())
    assessment = security_assessment_service.get_assessment(project_id, assessment_id)
    return jsonify({"transition": result.to_dict(), "assessment": assessment.to_dict()}), 200


@security_assessment_bp.route(
    "/projects/<int:project_id>/security-assessments/review-reminders", methods=["POST"],
)
@require_project_permission("securityAssessments", "view")
def review_reminders(project_id):
    """Body: { "within_days"?: int } — defaults to REVIEW_REMINDER_DAYS."""
    data = request.get_json(silent=True) or {}
    sent = security_assessment_service.notify_due_reviews(
        project_id, parse_int(data.get("within_days"), "within_days"),
    )
    return jsonify({"items": sent, "total": len(sent)}), 200
