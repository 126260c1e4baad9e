"""
Permission Blueprint — read-only views over the role matrices.

Endpoints:
  GET /permissions/matrix/<scope>/<role>     capability map for a role
  GET /permissions/check                     ?role=&entity=&action=[&scope=]
  GET /projects/<pid>/capabilities           effective role + map for the caller
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.services import permission_matrix as pm
from app.services import permission_service
from app.utils.errors import E, api_error, register_governance_error_handlers

logger = logging.getLogger(__name__)

permission_bp = Blueprint("permission", __name__, url_prefix="/api/v1")
register_governance_error_handlers(permission_bp)


@permission_bp.route("/permissions/matrix/<scope>/<role>", methods=["GET"])
def role_matrix(scope, role):
    matrix = pm.matrix_for_scope(scope)
    if matrix is None:
        return api_error(E.NOT_FOUND, f"Unknown permission scope '{scope}'")
    migrated = pm.migrate_role(scope, role)
    return jsonify({
        "scope": scope,
        "role": migrated,
        "requestedRole": role,
        "known": migrated in matrix.roles,
        "permissions": matrix.permissions_for_role(migrated),
    }), 200


@permission_bp.route("/permissions/check", methods=["GET"])
def check_permission():
    """Query params: role, entity, action (required); scope (default project)."""
    scope = request.args.get("scope", pm.SCOPE_PROJECT)
    role = request.args.get("role")
    entity = request.args.get("entity")
    action = request.args.get("action")
    if not entity or not action:
        return api_error(E.VALIDATION_REQUIRED, "entity and action are required")

    matrix = pm.matrix_for_scope(scope)
    if matrix is None:
        return api_error(E.NOT_FOUND, f"Unknown permission scope '{scope}'")

    migrated = pm.migrate_role(scope, role)
    return jsonify({
        "scope": scope,
        "role": migrated,
        "entity": entity,
        "action": action,
        "allowed": matrix.has_permission(migrated, entity, action),
        "allowedRoles": matrix.roles_for_permission(entity, action),
    }), 200


@permission_bp.route("/projects/<int:project_id>/capabilities", methods=["GET"])
def project_capabilities(project_id):
    return jsonify(permission_service.get_capabilities(getattr(g, "current_user_id", None), project_id)), 200
