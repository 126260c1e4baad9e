"""Structured diagnostics for fail-closed governance decisions.

Read paths that must never raise (permission checks, transition checks,
gate checks) still need to report that something is misconfigured: an
unknown entity or action, an unknown gate, area weights that do not sum to
1.0, a variation whose itemised deltas disagree with its declared impact.
Each such case is reported here once, as a structured log record plus an
entry in a bounded in-memory buffer that tests and the health endpoint can
inspect.

Usage:
    from app.services.diagnostics import record_diagnostic

    record_diagnostic(
        "PERM-UNKNOWN-ENTITY",
        "Unknown permission entity 'invoicez'",
        details={"entity": "invoicez", "scope": "project"},
    )
"""

from __future__ import annotations

import logging
import time
from typing import Any

from flask import g, has_request_context, request

logger = logging.getLogger(__name__)

_DIAGNOSTICS: list[dict[str, Any]] = []
_MAX_DIAGNOSTICS = 5000


# ── Diagnostic codes ─────────────────────────────────────────────────────────

DIAGNOSTIC_CODES = {
    "PERM-UNKNOWN-ENTITY": "warning",
    "PERM-UNKNOWN-ACTION": "warning",
    "PERM-UNKNOWN-SCOPE": "error",
    "ROLE-MIGRATED": "info",
    "TRANSITION-UNKNOWN-ENTITY": "warning",
    "TRANSITION-REJECTED": "info",
    "GATE-UNKNOWN": "warning",
    "AREA-WEIGHT-SUM": "warning",
    "VARIATION-IMPACT-MISMATCH": "warning",
    "NOTIFICATION-DISPATCH-FAILED": "error",
}

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _trim() -> None:
    if len(_DIAGNOSTICS) > _MAX_DIAGNOSTICS:
        del _DIAGNOSTICS[: _MAX_DIAGNOSTICS // 2]


def _request_scope() -> tuple[str | None, str | None, int | None]:
    if not has_request_context():
        return None, None, None
    project_id = (request.view_args or {}).get("project_id")
    return request.path, getattr(g, "request_id", None), project_id


def record_diagnostic(
    code: str,
    message: str,
    *,
    severity: str | None = None,
    project_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Log a structured diagnostic and keep it in the recent-diagnostics buffer.

    Never raises; the caller's fail-closed return value is unaffected.
    """
    severity = severity or DIAGNOSTIC_CODES.get(code, "warning")
    path, request_id, r_project = _request_scope()
    if project_id is None:
        project_id = r_project

    event = {
        "ts": time.time(),
        "code": code,
        "severity": severity,
        "message": message,
        "project_id": project_id,
        "path": path,
        "request_id": request_id,
        "details": details or {},
    }
    _DIAGNOSTICS.append(event)
    _trim()

    logger.log(
        _LEVELS.get(severity, logging.WARNING),
        "[%s] %s", code, message,
        extra={
            "diagnostic_code": code,
            "project_id": project_id,
            "request_id": request_id,
            "details": event["details"],
        },
    )
    return event


def get_recent_diagnostics(*, seconds: int = 3600, code: str | None = None) -> list[dict[str, Any]]:
    cutoff = time.time() - seconds
    rows = [e for e in _DIAGNOSTICS if e["ts"] >= cutoff]
    if code:
        rows = [e for e in rows if e["code"] == code]
    return rows


def summarize_diagnostics(*, seconds: int = 3600) -> dict[str, int]:
    """Count recent diagnostics per code (health endpoint)."""
    counts: dict[str, int] = {}
    for e in get_recent_diagnostics(seconds=seconds):
        counts[e["code"]] = counts.get(e["code"], 0) + 1
    return counts


def reset_diagnostics() -> None:
    """Clear the buffer (for testing)."""
    _DIAGNOSTICS.clear()
