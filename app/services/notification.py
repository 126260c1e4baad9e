"""
Programme Governance Engine
Domain events and notification dispatch.

Core services never call a delivery channel directly.  After a state change
has been committed they publish a domain event:

    publish_event(PhaseGateReady(project_id=1, gate="rfp_ready", ...))

``publish_event`` routes the event to the installed NotificationDispatcher
(``app.extensions["notification_dispatcher"]``).  Dispatch is fire-and-forget:
any failure is wrapped in ExternalNotificationError, logged, recorded as a
diagnostic, and swallowed, so the caller's success never depends on it.

The default InAppNotificationDispatcher persists Notification rows in its own
commit; alternative dispatchers (email, push, test recorders) subclass
NotificationDispatcher and are installed with ``install_dispatcher``.
"""

import logging
from dataclasses import asdict, dataclass, field

from flask import current_app

from app.core.exceptions import ExternalNotificationError
from app.models import db
from app.models.notification import Notification
from app.services.diagnostics import record_diagnostic

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "notification_dispatcher"


# ═════════════════════════════════════════════════════════════════════════════
# Domain events
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PhaseGateReady:
    project_id: int
    gate: str
    gate_name: str
    approval_rate: float
    threshold: float
    area: dict | None = None
    event_type: str = field(default="PhaseGateReady", init=False)


@dataclass(frozen=True)
class QuestionSubmitted:
    project_id: int
    question: dict
    vendor: dict | None = None
    event_type: str = field(default="QuestionSubmitted", init=False)


@dataclass(frozen=True)
class ReviewDue:
    project_id: int
    assessment: dict
    days_left: int
    event_type: str = field(default="ReviewDue", init=False)


@dataclass(frozen=True)
class AnomalyDetected:
    project_id: int
    anomaly: dict
    vendor: dict | None = None
    event_type: str = field(default="AnomalyDetected", init=False)


# ═════════════════════════════════════════════════════════════════════════════
# Dispatchers
# ═════════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """One-way event sink. Return values are never inspected."""

    def on_phase_gate_ready(self, project_id, gate, area):
        pass

    def on_question_submitted(self, project_id, question, vendor):
        pass

    def on_review_due(self, project_id, assessment, days_left):
        pass

    def on_anomaly_detected(self, project_id, anomaly, vendor):
        pass

    def dispatch(self, event):
        if isinstance(event, PhaseGateReady):
            gate = {
                "id": event.gate,
                "name": event.gate_name,
                "participation_score": event.approval_rate,
                "threshold": event.threshold,
            }
            self.on_phase_gate_ready(event.project_id, gate, event.area)
        elif isinstance(event, QuestionSubmitted):
            self.on_question_submitted(event.project_id, event.question, event.vendor)
        elif isinstance(event, ReviewDue):
            self.on_review_due(event.project_id, event.assessment, event.days_left)
        elif isinstance(event, AnomalyDetected):
            self.on_anomaly_detected(event.project_id, event.anomaly, event.vendor)
        else:
            raise TypeError(f"Unsupported event {type(event).__name__}")


class InAppNotificationDispatcher(NotificationDispatcher):
    """Persists one broadcast Notification row per event."""

    def _create(self, *, project_id, event_type, title, message, category,
                severity="info", entity_type="", entity_id=None):
        notif = Notification(
            project_id=project_id,
            recipient="all",
            event_type=event_type,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    def on_phase_gate_ready(self, project_id, gate, area):
        pct = round(gate["participation_score"] * 100)
        self._create(
            project_id=project_id,
            event_type="PhaseGateReady",
            title=f"Phase gate ready: {gate['name']}",
            message=f"{gate['name']} reached {pct}% weighted approval "
                    f"(threshold {round(gate['threshold'] * 100)}%).",
            category="gate",
            severity="success",
            entity_type="phase_gate",
            entity_id=gate["id"],
        )

    def on_question_submitted(self, project_id, question, vendor):
        vendor_name = (vendor or {}).get("name", "A vendor")
        self._create(
            project_id=project_id,
            event_type="QuestionSubmitted",
            title=f"New question from {vendor_name}",
            message=question.get("question_text") or question.get("text") or "",
            category="question",
            entity_type="question",
            entity_id=question.get("id"),
        )

    def on_review_due(self, project_id, assessment, days_left):
        vendor = assessment.get("vendor_name", "vendor")
        when = "today" if days_left <= 0 else f"in {days_left} day(s)"
        self._create(
            project_id=project_id,
            event_type="ReviewDue",
            title=f"Security review due {when}: {vendor}",
            message=f"Security assessment #{assessment.get('id')} for {vendor} is due {when}.",
            category="security",
            severity="warning" if days_left > 0 else "error",
            entity_type="security_assessment",
            entity_id=assessment.get("id"),
        )

    def on_anomaly_detected(self, project_id, anomaly, vendor):
        vendor_name = (vendor or {}).get("name", "vendor")
        self._create(
            project_id=project_id,
            event_type="AnomalyDetected",
            title=f"Anomaly detected: {vendor_name}",
            message=anomaly.get("description", ""),
            category="anomaly",
            severity=anomaly.get("severity", "warning"),
            entity_type="anomaly",
            entity_id=anomaly.get("id"),
        )


# ── Registry / publishing ────────────────────────────────────────────────────

def install_dispatcher(app, dispatcher: NotificationDispatcher) -> NotificationDispatcher:
    """Install (or replace) the app's dispatcher. Returns the previous one."""
    previous = app.extensions.get(_EXTENSION_KEY)
    app.extensions[_EXTENSION_KEY] = dispatcher
    return previous


def get_dispatcher() -> NotificationDispatcher | None:
    return current_app.extensions.get(_EXTENSION_KEY)


def publish_event(event) -> bool:
    """Deliver a domain event to the installed dispatcher.

    Call only after the triggering state change is committed.  Returns True
    when the dispatcher accepted the event; failures are logged and
    swallowed (returns False).
    """
    if not current_app.config.get("NOTIFICATIONS_ENABLED", True):
        logger.info("Notifications disabled; dropped %s", event.event_type,
                    extra={"project_id": event.project_id, "event_type": event.event_type})
        return False

    dispatcher = get_dispatcher()
    if dispatcher is None:
        logger.warning("No notification dispatcher installed; dropped %s", event.event_type,
                       extra={"project_id": event.project_id, "event_type": event.event_type})
        return False

    try:
        dispatcher.dispatch(event)
    except Exception as exc:
        # The dispatcher may have left the session mid-transaction
        db.session.rollback()
        error = ExternalNotificationError(event.event_type, exc)
        logger.error("%s", error, exc_info=True,
                     extra={"project_id": event.project_id, "event_type": event.event_type})
        record_diagnostic(
            "NOTIFICATION-DISPATCH-FAILED", str(error), project_id=event.project_id,
            details={"event": asdict(event)},
        )
        return False

    logger.info("Published %s", event.event_type,
                extra={"project_id": event.project_id, "event_type": event.event_type})
    return True
