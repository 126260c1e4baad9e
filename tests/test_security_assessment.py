"""
Vendor security assessment tests — lifecycle and review reminders.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.notification import Notification
from app.models.security_assessment import SecurityAssessment
from app.services import security_assessment_service as sas

TODAY = date(2026, 6, 15)
T0 = datetime(2026, 6, 15, 8, 0, tzinfo=timezone.utc)


def _make_assessment(project, vendor="Initech", due_in=None, **kwargs):
    due = TODAY + timedelta(days=due_in) if due_in is not None else None
    return sas.create_assessment(project.id, vendor, review_due_date=due, **kwargs)


def _stored(assessment_id):
    db.session.expire_all()
    return db.session.get(SecurityAssessment, assessment_id)


def test_create_validates_input(project):
    with pytest.raises(ValidationError):
        sas.create_assessment(project.id, "  ")
    with pytest.raises(ValidationError):
        sas.create_assessment(project.id, "Initech", assessment_type="vibes_check")
    with pytest.raises(NotFoundError):
        sas.create_assessment(9999, "Initech")


def test_complete_writes_outcome_and_duration(project, users):
    a = _make_assessment(project, assessment_type="penetration_test")
    sas.start_assessment(project.id, a.id, now=T0)
    result = sas.complete_assessment(project.id, a.id, score=82, risk_level="medium",
                                     findings="TLS 1.0 still enabled", assessed_by=users["customer_pm"].id,
                                     now=T0 + timedelta(hours=3))
    assert result.allowed is True

    stored = _stored(a.id)
    assert stored.status == "completed"
    assert stored.score == 82
    assert stored.risk_level == "medium"
    assert stored.duration_minutes == 180
    assert stored.assessed_by == users["customer_pm"].id


@pytest.mark.parametrize("kwargs", [{"score": 101}, {"score": -1}, {"score": "n/a"}, {"risk_level": "severe"}])
def test_complete_rejects_bad_outcome(project, kwargs):
    a = _make_assessment(project)
    sas.start_assessment(project.id, a.id)
    with pytest.raises(ValidationError):
        sas.complete_assessment(project.id, a.id, **kwargs)
    assert _stored(a.id).status == "in_progress"


def test_complete_requires_start(project):
    a = _make_assessment(project)
    assert sas.complete_assessment(project.id, a.id, score=50).allowed is False
    assert _stored(a.id).score is None


def test_waive_from_pending(project):
    a = _make_assessment(project)
    result = sas.transition_assessment(project.id, a.id, "waived", reason="Covered by group audit")
    assert result.allowed is True
    assert _stored(a.id).waived_reason == "Covered by group audit"


def test_waive_without_reason_rejected(project):
    a = _make_assessment(project)
    with pytest.raises(ValidationError):
        sas.waive_assessment(project.id, a.id, "")


def test_completed_is_terminal(project):
    a = _make_assessment(project)
    sas.start_assessment(project.id, a.id)
    sas.complete_assessment(project.id, a.id)
    assert sas.transition_assessment(project.id, a.id, "waived", reason="late").allowed is False
    assert sas.transition_assessment(project.id, a.id, "pending").allowed is False


# ── Review reminders ─────────────────────────────────────────────────────────


def test_due_reviews_within_window_are_published(project, recording_dispatcher):
    overdue = _make_assessment(project, "Overdue Ltd", due_in=-2)
    soon = _make_assessment(project, "Soon GmbH", due_in=3)
    _make_assessment(project, "Later Inc", due_in=30)
    _make_assessment(project, "Undated SA")

    sent = sas.notify_due_reviews(project.id, within_days=7, today=TODAY)

    assert [s["assessment_id"] for s in sent] == [overdue.id, soon.id]
    assert [s["days_left"] for s in sent] == [-2, 3]
    assert all(s["notified"] for s in sent)
    assert [(vendor["vendor_name"], days) for _, vendor, days in recording_dispatcher.review_due] == [
        ("Overdue Ltd", -2), ("Soon GmbH", 3),
    ]


def test_closed_assessments_get_no_reminder(project, recording_dispatcher):
    done = _make_assessment(project, due_in=1)
    sas.start_assessment(project.id, done.id)
    sas.complete_assessment(project.id, done.id)
    waived = _make_assessment(project, "Waived Co", due_in=1)
    sas.waive_assessment(project.id, waived.id, "Out of scope")

    assert sas.notify_due_reviews(project.id, within_days=7, today=TODAY) == []
    assert recording_dispatcher.review_due == []


def test_window_defaults_from_config(project, app, recording_dispatcher):
    _make_assessment(project, due_in=app.config["REVIEW_REMINDER_DAYS"])
    _make_assessment(project, "Beyond", due_in=app.config["REVIEW_REMINDER_DAYS"] + 1)
    assert len(sas.notify_due_reviews(project.id, today=TODAY)) == 1


def test_negative_window_rejected(project):
    with pytest.raises(ValidationError):
        sas.notify_due_reviews(project.id, within_days=-1)


def test_in_app_dispatcher_persists_notification(project):
    """The default dispatcher stores one broadcast notification per reminder."""
    a = _make_assessment(project, "Hooli", due_in=0)
    sas.notify_due_reviews(project.id, within_days=0, today=TODAY)

    notif = db.session.query(Notification).one()
    assert notif.event_type == "ReviewDue"
    assert notif.entity_id == str(a.id)
    assert notif.severity == "error"
    assert "due today" in notif.title
