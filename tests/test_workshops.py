"""
Workshop lifecycle and attendance tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.stakeholder import ParticipationMetric
from app.models.workshop import Workshop
from app.services import workshop_service

T0 = datetime(2026, 2, 10, 13, 0, tzinfo=timezone.utc)


def _make_workshop(project, **fields):
    return workshop_service.create_workshop(project.id, "Order-to-cash walkthrough", **fields)


def _run_to(project, ws, status):
    """Drive a workshop forward along the happy path."""
    path = ["scheduled", "in_progress", "complete"]
    for step in path[: path.index(status) + 1]:
        result = workshop_service.transition_workshop(project.id, ws.id, step)
        assert result.allowed, result.reason


def test_create_defaults_to_draft(project, users):
    ws = _make_workshop(project, created_by=users["supplier_pm"].id, workshop_type="discovery")
    assert ws.status == "draft"
    assert ws.workshop_type == "discovery"


def test_create_rejects_unknown_type(project):
    with pytest.raises(ValidationError):
        _make_workshop(project, workshop_type="karaoke")


def test_create_rejects_unknown_field(project):
    with pytest.raises(ValidationError):
        _make_workshop(project, status="complete")


def test_update_workshop_fields(project):
    ws = _make_workshop(project)
    updated = workshop_service.update_workshop(project.id, ws.id, location="Room 4", agenda="1. Intro")
    assert updated.location == "Room 4"


def test_get_workshop_scoped_to_project(project):
    ws = _make_workshop(project)
    with pytest.raises(NotFoundError):
        workshop_service.get_workshop(project.id + 1, ws.id)


def test_happy_path_with_derived_duration(project):
    ws = _make_workshop(project)
    workshop_service.schedule_workshop(project.id, ws.id, scheduled_date=T0)
    workshop_service.start_workshop(project.id, ws.id, now=T0)
    result = workshop_service.complete_workshop(project.id, ws.id, summary="Agreed 12 gaps",
                                                now=T0 + timedelta(minutes=75))
    assert result.allowed is True

    db.session.expire_all()
    stored = db.session.get(Workshop, ws.id)
    assert stored.status == "complete"
    assert stored.actual_duration_minutes == 75
    assert stored.summary == "Agreed 12 gaps"


def test_complete_from_draft_not_allowed(project):
    ws = _make_workshop(project)
    result = workshop_service.complete_workshop(project.id, ws.id)
    assert result.allowed is False
    db.session.expire_all()
    assert db.session.get(Workshop, ws.id).status == "draft"


def test_negative_duration_rejected(project):
    ws = _make_workshop(project)
    _run_to(project, ws, "in_progress")
    with pytest.raises(ValidationError):
        workshop_service.complete_workshop(project.id, ws.id, duration_minutes=-5)


def test_cancel_and_reopen(project):
    ws = _make_workshop(project)
    workshop_service.cancel_workshop(project.id, ws.id, reason="Facilitator ill")
    assert workshop_service.reopen_workshop(project.id, ws.id).allowed is True
    db.session.expire_all()
    stored = db.session.get(Workshop, ws.id)
    assert stored.status == "draft"
    assert stored.cancellation_reason == "Facilitator ill"


def test_unknown_target_status_is_not_allowed(project):
    ws = _make_workshop(project)
    assert workshop_service.transition_workshop(project.id, ws.id, "archived").allowed is False


def test_list_filters_by_status(project):
    a = _make_workshop(project)
    _make_workshop(project)
    _run_to(project, a, "scheduled")
    assert [w.id for w in workshop_service.list_workshops(project.id, status="scheduled")] == [a.id]
    assert len(workshop_service.list_workshops(project.id)) == 2


# ── Attendance ───────────────────────────────────────────────────────────────


def test_attendance_before_start_rejected(project, users, areas):
    ws = _make_workshop(project, stakeholder_area_id=areas[0].id)
    with pytest.raises(ValidationError):
        workshop_service.record_attendance(project.id, ws.id, users["contributor"].id)


def test_attendance_credits_participation_once(project, users, areas):
    """Marking the same attendee twice credits one session."""
    ws = _make_workshop(project, stakeholder_area_id=areas[0].id)
    _run_to(project, ws, "in_progress")
    user_id = users["contributor"].id

    workshop_service.record_attendance(project.id, ws.id, user_id)
    attendee = workshop_service.record_attendance(project.id, ws.id, user_id)
    assert attendee.attended is True

    metric = db.session.query(ParticipationMetric).filter_by(user_id=user_id).one()
    assert metric.stakeholder_area_id == areas[0].id
    assert metric.workshop_sessions_attended == 1
    assert metric.participation_score == Decimal("6.00")


def test_toggling_attendance_does_not_credit_again(project, users, areas):
    ws = _make_workshop(project, stakeholder_area_id=areas[0].id)
    _run_to(project, ws, "in_progress")
    user_id = users["contributor"].id

    for _ in range(2):
        workshop_service.record_attendance(project.id, ws.id, user_id)
        attendee = workshop_service.record_attendance(project.id, ws.id, user_id, attended=False)
        assert attendee.attended is False
        assert attendee.attended_at is None
    attendee = workshop_service.record_attendance(project.id, ws.id, user_id)

    assert attendee.attended is True
    assert attendee.to_dict()["participation_credited"] is True
    metric = db.session.query(ParticipationMetric).filter_by(user_id=user_id).one()
    assert metric.workshop_sessions_attended == 1
    assert metric.participation_score == Decimal("6.00")


def test_attendance_area_override(project, users, areas):
    ws = _make_workshop(project, stakeholder_area_id=areas[0].id)
    _run_to(project, ws, "complete")
    workshop_service.record_attendance(project.id, ws.id, users["viewer"].id, stakeholder_area_id=areas[2].id)
    metric = db.session.query(ParticipationMetric).filter_by(user_id=users["viewer"].id).one()
    assert metric.stakeholder_area_id == areas[2].id


def test_attendance_without_area_records_no_metric(project, users):
    ws = _make_workshop(project)
    _run_to(project, ws, "in_progress")
    attendee = workshop_service.record_attendance(project.id, ws.id, users["viewer"].id)
    assert attendee.attended is True
    assert db.session.query(ParticipationMetric).count() == 0


def test_rsvp_validation(project, users):
    ws = _make_workshop(project)
    assert workshop_service.update_rsvp(project.id, ws.id, users["viewer"].id, "accepted").rsvp_status == "accepted"
    with pytest.raises(ValidationError):
        workshop_service.update_rsvp(project.id, ws.id, users["viewer"].id, "maybe-later")
