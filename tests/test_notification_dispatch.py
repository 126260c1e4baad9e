"""
Domain-event dispatch tests.

Dispatch happens after commit and is fire-and-forget: a failing or missing
dispatcher never undoes or fails the state change that triggered it.
"""

from dataclasses import dataclass, field

import pytest

from app.models import db
from app.models.notification import Notification
from app.models.phase_gate import PhaseGateConfig
from app.models.stakeholder import StakeholderArea
from app.services import phase_gate_service
from app.services.diagnostics import get_recent_diagnostics
from app.services.notification import (
    AnomalyDetected,
    InAppNotificationDispatcher,
    NotificationDispatcher,
    PhaseGateReady,
    QuestionSubmitted,
    get_dispatcher,
    install_dispatcher,
    publish_event,
)


class _ExplodingDispatcher(NotificationDispatcher):
    def on_phase_gate_ready(self, project_id, gate, area):
        raise ConnectionError("smtp relay down")


@dataclass(frozen=True)
class _UnknownEvent:
    project_id: int
    event_type: str = field(default="Unknown", init=False)


@pytest.fixture()
def dispatcher_slot(app):
    """Restore whatever dispatcher was installed before the test."""
    previous = get_dispatcher()
    yield lambda d: install_dispatcher(app, d)
    install_dispatcher(app, previous)


def _ready_event(project_id):
    return PhaseGateReady(project_id=project_id, gate="rfp_ready", gate_name="RFP Ready",
                          approval_rate=0.8, threshold=0.75)


def test_failing_dispatcher_is_swallowed(project, dispatcher_slot):
    dispatcher_slot(_ExplodingDispatcher())
    assert publish_event(_ready_event(project.id)) is False
    diag = get_recent_diagnostics(code="NOTIFICATION-DISPATCH-FAILED")
    assert len(diag) == 1
    assert "smtp relay down" in diag[0]["message"]
    assert diag[0]["details"]["event"]["gate"] == "rfp_ready"


def test_failing_dispatcher_does_not_undo_gate_pass(project, users, dispatcher_slot):
    """The approval that passed the gate stays committed even though delivery failed."""
    dispatcher_slot(_ExplodingDispatcher())
    area = StakeholderArea(project_id=project.id, name="Everyone", weight=1.0)
    db.session.add(area)
    db.session.commit()

    out = phase_gate_service.record_phase_approval(
        project.id, "requirements_approved", area.id, True, users["customer_pm"].id,
    )
    assert out["gateBecamePassed"] is True
    assert out["notified"] is False

    db.session.expire_all()
    cfg = db.session.query(PhaseGateConfig).filter_by(project_id=project.id, gate="requirements_approved").one()
    assert cfg.is_passed is True
    assert cfg.passed_at is not None


def test_notifications_disabled_drops_event(project, app, monkeypatch, recording_dispatcher):
    monkeypatch.setitem(app.config, "NOTIFICATIONS_ENABLED", False)
    assert publish_event(_ready_event(project.id)) is False
    assert recording_dispatcher.events == []


def test_no_dispatcher_installed(project, dispatcher_slot):
    dispatcher_slot(None)
    assert publish_event(_ready_event(project.id)) is False


def test_unsupported_event_is_reported(project, recording_dispatcher):
    assert publish_event(_UnknownEvent(project_id=project.id)) is False
    assert get_recent_diagnostics(code="NOTIFICATION-DISPATCH-FAILED")


def test_base_dispatcher_ignores_events(project, dispatcher_slot):
    dispatcher_slot(NotificationDispatcher())
    assert publish_event(_ready_event(project.id)) is True


# ── In-app dispatcher ────────────────────────────────────────────────────────


def test_in_app_phase_gate_ready(project, dispatcher_slot):
    dispatcher_slot(InAppNotificationDispatcher())
    assert publish_event(_ready_event(project.id)) is True
    notif = db.session.query(Notification).one()
    assert notif.event_type == "PhaseGateReady"
    assert notif.title == "Phase gate ready: RFP Ready"
    assert "80%" in notif.message
    assert notif.entity_id == "rfp_ready"
    assert notif.recipient == "all"


def test_in_app_question_and_anomaly(project, dispatcher_slot):
    dispatcher_slot(InAppNotificationDispatcher())
    publish_event(QuestionSubmitted(project_id=project.id,
                                    question={"id": 7, "question_text": "Is SSO in scope?"},
                                    vendor={"name": "Globex"}))
    publish_event(AnomalyDetected(project_id=project.id,
                                  anomaly={"id": 3, "description": "Score spread > 40", "severity": "error"}))

    rows = {n.event_type: n for n in db.session.query(Notification).all()}
    assert rows["QuestionSubmitted"].title == "New question from Globex"
    assert rows["QuestionSubmitted"].message == "Is SSO in scope?"
    assert rows["AnomalyDetected"].severity == "error"
    assert rows["AnomalyDetected"].title == "Anomaly detected: vendor"


def test_recording_dispatcher_sees_every_event(project, recording_dispatcher):
    publish_event(_ready_event(project.id))
    publish_event(QuestionSubmitted(project_id=project.id, question={"id": 1}))
    assert [e.event_type for e in recording_dispatcher.events] == ["PhaseGateReady", "QuestionSubmitted"]
    assert recording_dispatcher.phase_gate_ready[0][1]["participation_score"] == 0.8
