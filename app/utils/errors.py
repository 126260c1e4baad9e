"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workshop not found")
    return api_error(E.VALIDATION_REQUIRED, "reason is required")
    return api_error(E.FORBIDDEN, "Permission denied", details={"entity": "variations"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • GOVERNANCE_ prefix for governance decisions reported as errors
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"

    # Permissions / identity – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Configuration – HTTP 400
    CONFIGURATION = "ERR_CONFIGURATION"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"

    # Governance – rejected transition / signature
    GOVERNANCE_TRANSITION_REJECTED = "GOVERNANCE_TRANSITION_REJECTED"
    GOVERNANCE_SIGNATURE_REJECTED = "GOVERNANCE_SIGNATURE_REJECTED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.CONFIGURATION: 400,
    E.INTERNAL: 500,
    E.GOVERNANCE_TRANSITION_REJECTED: 409,
    E.GOVERNANCE_SIGNATURE_REJECTED: 409,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (transition result, field errors, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_governance_error_handlers(bp):
    """Attach the shared exception → HTTP mapping to a blueprint.

    NotFoundError → 404, ValidationError → 422, ConflictError / ConcurrencyError
    → 409, ConfigurationError → 400.
    """
    from app.core.exceptions import (
        ConcurrencyError,
        ConfigurationError,
        ConflictError,
        NotFoundError,
        ValidationError,
    )

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(ConcurrencyError)
    def _handle_concurrency(error: ConcurrencyError):
        return api_error(E.CONFLICT_CONCURRENT, str(error))

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(error: ConfigurationError):
        return api_error(E.CONFIGURATION, str(error), details={"code": error.code} if error.code else None)
