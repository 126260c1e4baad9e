"""Shared utility functions for blueprints and services.

parse_date:       returns None on bad input
parse_date_input: raises ValidationError on bad input
parse_datetime:   ISO datetime → aware UTC datetime
parse_bool:       JSON/query-string truthiness
parse_int:        JSON/query-string integer, raises ValidationError on bad input
require_json:     body parsing with required-field check
"""
import logging
from datetime import date, datetime, timezone

from flask import request

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value, field="date"):
    """Same as parse_date() but raises ValidationError instead of returning None."""
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.",
            details={field: value},
        )
    return parsed


def parse_datetime(value, field="datetime"):
    """Parse an ISO-8601 datetime; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError("Invalid datetime format. Use ISO-8601.", details={field: value}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value, field="value"):
    """Coerce a JSON number or numeric string to int; None passes through."""
    if value is None:
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: value}) from exc


def require_json(*required):
    """Return the JSON body; raise ValidationError listing missing required fields."""
    data = request.get_json(silent=True) or {}
    missing = [f for f in required if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    return data
