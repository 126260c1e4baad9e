"""Stakeholder engagement dashboard aggregation."""

import logging

from sqlalchemy import func, select

from app.models import db
from app.models.stakeholder import ParticipationMetric
from app.services import participation_service, phase_gate_service, stakeholder_area_service

logger = logging.getLogger(__name__)


def get_dashboard_data(project_id: int) -> dict:
    """Areas with participation, gate status, current phase and weight validation."""
    areas = participation_service.get_participation_by_area(project_id)
    approval_status = phase_gate_service.get_approval_status(project_id)
    weights = stakeholder_area_service.validate_area_weights(project_id)

    participants, avg_score, requirements = db.session.execute(
        select(
            func.count(func.distinct(ParticipationMetric.user_id)),
            func.avg(ParticipationMetric.participation_score),
            func.sum(ParticipationMetric.requirements_contributed),
        ).where(ParticipationMetric.project_id == project_id)
    ).one()

    return {
        "summary": {
            "totalAreas": len(areas),
            "totalParticipants": participants or 0,
            "averageScore": round(float(avg_score or 0), 2),
            "totalRequirements": int(requirements or 0),
            "weightValidation": weights,
        },
        "areas": areas,
        "phaseGates": approval_status["gates"],
        "currentPhase": approval_status["currentPhase"],
        "allPassed": approval_status["allPassed"],
    }
