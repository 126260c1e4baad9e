"""
Permission Decorators — role-matrix checks for route protection.

Usage:
    @bp.route("/projects/<int:project_id>/workshops", methods=["POST"])
    @require_project_permission("workshops", "create")
    def create_workshop(project_id):
        ...

    @bp.route("/projects/<int:project_id>/participation", methods=["POST"])
    @require_identity
    def record(project_id):
        ...

A missing identity is 401; a role lacking the (entity, action) pair is 403.
Both are JSON bodies built by ``api_error``, never exceptions.
"""

import functools
import logging

from flask import g, request

from app.services import permission_service
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def require_identity(f):
    """Decorator: reject anonymous requests."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "current_user_id", None) is None:
            return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
        return f(*args, **kwargs)
    return decorated


def require_project_permission(entity: str, action: str, param_name: str = "project_id"):
    """
    Decorator: require the current user's project role to grant
    ``entity.action`` in the project named by the route parameter.

    Args:
        entity: Permission matrix entity, e.g. "variations".
        action: Action on that entity, e.g. "signAsSupplier".
        param_name: Route parameter holding the project id.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = getattr(g, "current_user_id", None)
            if user_id is None:
                return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")

            project_id = kwargs.get(param_name) or (request.view_args or {}).get(param_name)
            if not permission_service.can(user_id, project_id, entity, action):
                logger.warning(
                    "User %d denied %s.%s on project %s (%s)",
                    user_id, entity, action, project_id, f.__name__,
                    extra={"user_id": user_id, "project_id": project_id},
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied",
                    details={"entity": entity, "action": action},
                )
            return f(*args, **kwargs)
        return decorated
    return decorator
