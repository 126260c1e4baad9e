"""
Optimistic-concurrency helpers.

compare_and_set:   UPDATE ... WHERE id = :id AND <guard> — raises ConcurrencyError on 0 rows
retry_on_conflict: re-run a full read-modify-write unit after a ConcurrencyError

Usage:
    compare_and_set(PhaseGateConfig, cfg.id, {"revision": cfg.revision},
                    {"is_passed": True, "revision": cfg.revision + 1})

    result = retry_on_conflict(lambda: _record_once(...), label="phase_gate_approval")
"""

import logging

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConcurrencyError
from app.models import db

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def compare_and_set(model, pk, expected: dict, values: dict) -> None:
    """Atomic check-then-set on a single row.

    Every key in ``expected`` becomes part of the WHERE clause, so the write
    only lands when the row still holds the values the caller read.
    """
    stmt = update(model).where(model.id == pk)
    for column, value in expected.items():
        stmt = stmt.where(getattr(model, column) == value)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrencyError(model.__name__, pk, expected=expected)


def retry_on_conflict(unit, *, label: str, max_attempts: int | None = None):
    """Run ``unit()`` and retry it from scratch on ConcurrencyError.

    ``unit`` must perform its own reads, writes and commit; the session is
    rolled back and expired before every retry so the next attempt reads
    fresh state.  An IntegrityError from a concurrent insert of the same
    unique key is treated as a conflict too.
    """
    if max_attempts is None:
        max_attempts = current_app.config.get("GOVERNANCE_MAX_RETRIES", DEFAULT_MAX_ATTEMPTS)

    attempt = 0
    while True:
        attempt += 1
        try:
            return unit()
        except (ConcurrencyError, IntegrityError) as exc:
            db.session.rollback()
            if attempt >= max_attempts:
                logger.warning("%s: giving up after %d attempt(s): %s", label, attempt, exc)
                if isinstance(exc, IntegrityError):
                    raise ConcurrencyError(label, expected="unique key") from exc
                raise
            logger.info("%s: write conflict, retrying (attempt %d/%d)", label, attempt + 1, max_attempts)
            db.session.expire_all()
