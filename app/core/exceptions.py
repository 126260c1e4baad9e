"""
Governance engine exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Propagation policy:
  "caller is not authorized" and "transition not allowed" are ordinary
  results (False / a rejected outcome object), never exceptions.  The types
  below are reserved for programmer, configuration, concurrency and
  input-validation failures.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Variation", resource_id=42)
    raise ValidationError("weight must be between 0 and 1", details={"weight": 1.4})
"""


class NotFoundError(Exception):
    """Raised when a direct single-record fetch by id finds nothing in scope.

    Aggregate lookups of possibly-absent records (e.g. a phase-gate approval
    not yet given) never raise this; they default to "not approved".

    Args:
        resource: Human-readable model/entity name (e.g. "Variation", "Workshop").
        resource_id: The PK that was looked up. Included in logs and message.
        project_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation before any write.

    Out-of-range weight/threshold, unknown activity type, missing rejection
    reason, and similar.  Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConfigurationError(Exception):
    """Raised by write paths that reference an unknown entity, action or gate.

    Read paths (permission checks, gate checks) never raise this: they fail
    closed and emit a diagnostic instead.  Maps to HTTP 400.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class ConcurrencyError(Exception):
    """Raised when an optimistic compare-and-set write finds the row changed.

    Callers retry the full read-modify-write (see
    ``app.services.helpers.optimistic.retry_on_conflict``).  Surfaces as
    HTTP 409 once retries are exhausted.

    Args:
        resource: Model name.
        resource_id: PK of the contended row.
        expected: The value the writer expected to find (status or revision).
    """

    def __init__(self, resource: str, resource_id=None, expected=None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected = expected
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected {expected!r})"
        super().__init__(msg)


class ExternalNotificationError(Exception):
    """Wraps a notification-dispatch failure.

    Always caught and logged by ``notification.publish_event``; never
    propagated to the caller of the state change that triggered it.
    """

    def __init__(self, event_type: str, cause: Exception | None = None) -> None:
        self.event_type = event_type
        self.cause = cause
        msg = f"Dispatch of {event_type} failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
