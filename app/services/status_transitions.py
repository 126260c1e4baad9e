"""
Status Transition Guard — generic state machine for governed entities.

Each governed entity type (workshop, variation, security_assessment) owns a
directed adjacency table.  A (from, to) pair absent from the table is
rejected; terminal statuses reject every outgoing transition; an unknown
entity type fails closed.

Accepted transitions are written with one atomic compare-and-set

    UPDATE <table> SET status = :to, <side effects>
    WHERE id = :id AND status = :from

so two callers racing from the same prior status cannot both succeed: the
loser gets ConcurrencyError.  Side effects are part of the same statement:

    - entering an in-progress state stamps the start time
    - entering a completion state stamps the completion time and, unless an
      explicit duration was supplied, derives duration minutes from the stamps
    - other mandated stamps / reasons per status (see _SIDE_EFFECTS)

Usage:
    from app.services.status_transitions import is_valid_transition, transition_status

    is_valid_transition("workshop", "draft", "complete")   # False

    result = transition_status(Workshop, ws.id, "in_progress",
                               entity_type="workshop", project_id=ws.project_id)
    if not result.allowed:
        ...  # stored status untouched
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType

from app.core.exceptions import ValidationError
from app.models import db
from app.services.diagnostics import record_diagnostic
from app.services.helpers.optimistic import compare_and_set
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Transition tables
# ═════════════════════════════════════════════════════════════════════════════

def _freeze(table: dict) -> MappingProxyType:
    return MappingProxyType({status: frozenset(targets) for status, targets in table.items()})


WORKSHOP_TRANSITIONS = _freeze({
    "draft": {"scheduled", "cancelled"},
    "scheduled": {"in_progress", "cancelled", "draft"},
    "in_progress": {"complete", "cancelled"},
    "complete": set(),
    "cancelled": {"draft"},
})

VARIATION_TRANSITIONS = _freeze({
    "draft": {"submitted"},
    "submitted": {"awaiting_customer", "awaiting_supplier", "rejected"},
    "awaiting_customer": {"approved", "rejected"},
    "awaiting_supplier": {"approved", "rejected"},
    "approved": {"applied"},
    "applied": set(),
    "rejected": set(),
})

SECURITY_ASSESSMENT_TRANSITIONS = _freeze({
    "pending": {"in_progress", "waived"},
    "in_progress": {"completed", "waived"},
    "completed": set(),
    "waived": set(),
})

TRANSITIONS = MappingProxyType({
    "workshop": WORKSHOP_TRANSITIONS,
    "variation": VARIATION_TRANSITIONS,
    "security_assessment": SECURITY_ASSESSMENT_TRANSITIONS,
})


@dataclass(frozen=True)
class StatusEffect:
    """Columns written together with the status when entering a state."""

    stamp: str | None = None            # column stamped with "now"
    duration: str | None = None         # duration-minutes column derived on completion
    start_column: str = "started_at"    # start stamp the duration is measured from
    reason: str | None = None           # column receiving the caller's free-text reason
    require_reason: bool = False


_SIDE_EFFECTS = MappingProxyType({
    "workshop": MappingProxyType({
        "in_progress": StatusEffect(stamp="started_at"),
        "complete": StatusEffect(stamp="completed_at", duration="actual_duration_minutes"),
        "cancelled": StatusEffect(reason="cancellation_reason"),
    }),
    "security_assessment": MappingProxyType({
        "in_progress": StatusEffect(stamp="started_at"),
        "completed": StatusEffect(stamp="completed_at", duration="duration_minutes"),
        "waived": StatusEffect(stamp="waived_at", reason="waived_reason", require_reason=True),
    }),
    "variation": MappingProxyType({
        "submitted": StatusEffect(stamp="submitted_at"),
        "approved": StatusEffect(stamp="approved_at"),
        "applied": StatusEffect(stamp="applied_at"),
        "rejected": StatusEffect(stamp="rejected_at", reason="rejection_reason", require_reason=True),
    }),
})

_NO_EFFECT = StatusEffect()


# ── Pure checks ──────────────────────────────────────────────────────────────

def is_valid_transition(entity_type: str, from_status: str | None, to_status: str | None) -> bool:
    """True only when (from, to) is an edge of the entity type's table."""
    table = TRANSITIONS.get(entity_type)
    if table is None:
        record_diagnostic(
            "TRANSITION-UNKNOWN-ENTITY",
            f"No transition table for entity type '{entity_type}'",
            details={"entity_type": entity_type, "from": from_status, "to": to_status},
        )
        return False
    return to_status in table.get(from_status, frozenset())


def allowed_next_statuses(entity_type: str, status: str) -> list:
    table = TRANSITIONS.get(entity_type) or {}
    return sorted(table.get(status, ()))


def is_terminal(entity_type: str, status: str) -> bool:
    table = TRANSITIONS.get(entity_type) or {}
    return status in table and not table[status]


def side_effect_for(entity_type: str, to_status: str) -> StatusEffect:
    return (_SIDE_EFFECTS.get(entity_type) or {}).get(to_status, _NO_EFFECT)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def derive_duration_minutes(started_at: datetime | None, completed_at: datetime) -> int | None:
    started_at = _as_utc(started_at)
    if started_at is None:
        return None
    return int(round((_as_utc(completed_at) - started_at).total_seconds() / 60))


# ═════════════════════════════════════════════════════════════════════════════
# Atomic write
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TransitionResult:
    allowed: bool
    entity_type: str
    entity_id: int
    from_status: str | None
    to_status: str
    reason: str | None = None
    changes: dict = field(default_factory=dict)

    def to_dict(self):
        d = asdict(self)
        d["changes"] = {
            k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in self.changes.items()
        }
        return d


def transition_status(
    model,
    entity_id: int,
    to_status: str,
    *,
    entity_type: str,
    project_id: int,
    now: datetime | None = None,
    duration_minutes: int | None = None,
    reason: str | None = None,
    extra_values: dict | None = None,
    commit: bool = True,
) -> TransitionResult:
    """Validate and write a status change as one atomic check-then-set.

    Rejected transitions return ``allowed=False`` and write nothing.
    A concurrent writer that moved the row first raises ConcurrencyError.

    Args:
        model: Governed SQLAlchemy model with ``id`` and ``status`` columns.
        entity_id: PK of the governed record.
        to_status: Requested next status.
        entity_type: Key into TRANSITIONS.
        project_id: Scope for the lookup.
        now: Clock override (tests).
        duration_minutes: Explicit duration for completion states.
        reason: Free-text reason, stored verbatim where the state records one.
        extra_values: Additional columns written in the same statement.
        commit: False when the caller owns a larger transaction.
    """
    entity = get_scoped(model, entity_id, project_id=project_id)
    from_status = entity.status

    if not is_valid_transition(entity_type, from_status, to_status):
        msg = f"{entity_type} {entity_id}: {from_status} → {to_status} is not allowed"
        record_diagnostic(
            "TRANSITION-REJECTED", msg, project_id=project_id,
            details={"entity_type": entity_type, "entity_id": entity_id,
                     "from": from_status, "to": to_status},
        )
        return TransitionResult(
            allowed=False,
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            reason=msg,
        )

    effect = side_effect_for(entity_type, to_status)
    if effect.require_reason and not (reason or "").strip():
        raise ValidationError(
            f"A reason is required to move {entity_type} to '{to_status}'",
            details={"reason": "required"},
        )

    now = now or datetime.now(timezone.utc)
    values = {"status": to_status}
    if extra_values:
        values.update(extra_values)
    if effect.stamp:
        values[effect.stamp] = now
    if effect.duration:
        if duration_minutes is not None:
            values[effect.duration] = int(duration_minutes)
        else:
            derived = derive_duration_minutes(getattr(entity, effect.start_column, None), now)
            if derived is not None:
                values[effect.duration] = derived
    if effect.reason and reason is not None:
        values[effect.reason] = reason

    compare_and_set(model, entity_id, {"status": from_status}, values)

    if commit:
        db.session.commit()
    else:
        db.session.expire(entity)

    logger.info(
        "Status transition %s %s: %s → %s",
        entity_type, entity_id, from_status, to_status,
        extra={"project_id": project_id, "event_type": "status_transition"},
    )
    return TransitionResult(
        allowed=True,
        entity_type=entity_type,
        entity_id=entity_id,
        from_status=from_status,
        to_status=to_status,
        changes={k: v for k, v in values.items() if k != "status"},
    )
