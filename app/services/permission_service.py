"""
Permission Service — role assignments from the store + matrix evaluation.

Reads project and organisation role assignments, rewrites deprecated role
names through ``permission_matrix.migrate_role`` at this boundary, and
evaluates them against the scope-appropriate matrix.

Usage:
    from app.services.permission_service import can, get_capabilities

    if can(user_id, project_id, "variations", "signAsCustomer"):
        ...

    caps = get_capabilities(user_id, project_id)
    # {"effective_role": "supplier_pm", "source": "org_admin", "permissions": {...}}
"""

import logging

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.auth import OrganizationMember, ProjectMember, User
from app.models.project import Project
from app.services import permission_matrix as pm

logger = logging.getLogger(__name__)


def get_project_role(user_id: int | None, project_id: int) -> str | None:
    """Assigned project role (migrated), or None when the user has no assignment."""
    if user_id is None:
        return None
    role = db.session.execute(
        select(ProjectMember.role).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    ).scalar_one_or_none()
    return pm.migrate_role(pm.SCOPE_PROJECT, role)


def get_org_role(user_id: int | None, organization_id: int) -> str | None:
    """Active organisation role (migrated), or None."""
    if user_id is None:
        return None
    role = db.session.execute(
        select(OrganizationMember.org_role).where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active.is_(True),
        )
    ).scalar_one_or_none()
    return pm.migrate_role(pm.SCOPE_ORGANIZATION, role)


def assign_project_role(project_id: int, user_id: int, role: str) -> ProjectMember:
    """Create or update a project role assignment (legacy names migrated first)."""
    role = pm.migrate_role(pm.SCOPE_PROJECT, role)
    if role not in pm.PROJECT_ROLES:
        raise ValidationError(f"Unknown project role '{role}'", details={"role": role})

    member = db.session.execute(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    ).scalar_one_or_none()
    if member is None:
        member = ProjectMember(project_id=project_id, user_id=user_id, role=role)
        db.session.add(member)
    else:
        member.role = role
    db.session.commit()
    logger.info("Project role assigned project=%s user=%s role=%s", project_id, user_id, role,
                extra={"project_id": project_id})
    return member


def get_effective_role(user_id: int | None, project_id: int) -> pm.EffectiveRole:
    """Resolve the capability-surface role for a user on a project."""
    user = db.session.get(User, user_id) if user_id is not None else None
    project = db.session.get(Project, project_id)

    is_org_admin = False
    if user is not None and project is not None:
        is_org_admin = pm.is_org_admin_role(get_org_role(user.id, project.organization_id))

    return pm.resolve_effective_role(
        is_system_admin=bool(user and user.is_system_admin),
        is_org_admin=is_org_admin,
        project_role=get_project_role(user_id, project_id),
        full_capability_role=current_app.config.get("FULL_CAPABILITY_ROLE", pm.SUPPLIER_PM),
        default_role=current_app.config.get("DEFAULT_PROJECT_ROLE", pm.VIEWER),
    )


def can(user_id: int | None, project_id: int, entity: str, action: str) -> bool:
    """Project-scope permission check for the caller's assigned project role.

    No assignment → default least-privileged role.
    """
    role = get_project_role(user_id, project_id)
    if role is None:
        role = current_app.config.get("DEFAULT_PROJECT_ROLE", pm.VIEWER)
    return pm.has_permission(role, entity, action)


def can_in_org(user_id: int | None, organization_id: int, entity: str, action: str) -> bool:
    """Organisation-scope permission check."""
    return pm.has_org_permission(get_org_role(user_id, organization_id), entity, action)


def get_capabilities(user_id: int | None, project_id: int) -> dict:
    """Full capability map for the caller's effective role on a project."""
    effective = get_effective_role(user_id, project_id)
    return {
        "user_id": user_id,
        "project_id": project_id,
        "effective_role": effective.role,
        "source": effective.source,
        "permissions": pm.get_permissions_for_role(effective.role),
    }
