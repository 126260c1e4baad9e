"""
Identity Context Middleware — resolves the acting user for API requests.

The calling gateway authenticates the user and forwards their id in the
``X-User-Id`` header.  This hook validates it and sets:

    g.current_user_id   int | None
    g.current_user      User | None

Requests without the header continue anonymously; write routes reject
them through ``require_identity`` / ``require_project_permission``.
An unknown or inactive user id is refused with 401.
"""

import logging

from flask import g, request

from app.models import db
from app.models.auth import User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

IDENTITY_HEADER = "X-User-Id"

_SKIP_PREFIXES = ("/api/v1/health",)


def init_identity_context(app):
    """Register identity resolution as a before_request hook."""

    @app.before_request
    def _identity_context():
        g.current_user_id = None
        g.current_user = None

        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith(_SKIP_PREFIXES):
            return None

        raw = request.headers.get(IDENTITY_HEADER)
        if not raw:
            return None

        try:
            user_id = int(raw)
        except ValueError:
            return api_error(E.UNAUTHENTICATED, f"{IDENTITY_HEADER} must be an integer user id")

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("Rejected unknown or inactive user id %s", user_id,
                           extra={"user_id": user_id, "path": request.path})
            return api_error(E.UNAUTHENTICATED, "Unknown or inactive user")

        g.current_user_id = user.id
        g.current_user = user
        return None
