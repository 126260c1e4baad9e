"""
Role-based permission matrices — project scope and organisation scope.

Two independent, immutable matrices map (entity, action) → allowed roles.
They are never merged: a caller picks the scope of the action it is checking.

    PROJECT_PERMISSIONS.has_permission("customer_pm", "variations", "signAsCustomer")  # True
    ORG_PERMISSIONS.has_permission("org_member", "orgMembers", "invite")               # False

Unknown entity / action → False plus a structured diagnostic, never an
exception.  Deprecated role names are rewritten once at the data boundary
through the versioned ``ROLE_MIGRATIONS`` map (see ``migrate_role``).

Functions:
    has_permission / has_org_permission
    get_permissions_for_role / get_org_permissions_for_role
    get_roles_for_permission / get_org_roles_for_permission
    is_org_admin_role / is_org_owner_role
    migrate_role
    resolve_effective_role
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType

from app.services.diagnostics import record_diagnostic

logger = logging.getLogger(__name__)


# ── Role vocabularies ────────────────────────────────────────────────────────

SCOPE_PROJECT = "project"
SCOPE_ORGANIZATION = "organization"

SUPPLIER_PM = "supplier_pm"
SUPPLIER_FINANCE = "supplier_finance"
CUSTOMER_PM = "customer_pm"
CUSTOMER_FINANCE = "customer_finance"
CONTRIBUTOR = "contributor"
VIEWER = "viewer"

PROJECT_ROLES = frozenset({
    SUPPLIER_PM, SUPPLIER_FINANCE, CUSTOMER_PM, CUSTOMER_FINANCE, CONTRIBUTOR, VIEWER,
})

ORG_OWNER = "org_owner"
ORG_ADMIN = "org_admin"
ORG_MEMBER = "org_member"

ORG_ROLES = frozenset({ORG_OWNER, ORG_ADMIN, ORG_MEMBER})

# Project role groupings
_ALL = PROJECT_ROLES
_MANAGERS = frozenset({SUPPLIER_PM, CUSTOMER_PM})
_SUPPLIER_SIDE = frozenset({SUPPLIER_PM, SUPPLIER_FINANCE})
_CUSTOMER_SIDE = frozenset({CUSTOMER_PM, CUSTOMER_FINANCE})
_SIGNATORIES = _SUPPLIER_SIDE | _CUSTOMER_SIDE
_WORKERS = frozenset({SUPPLIER_PM, SUPPLIER_FINANCE, CUSTOMER_FINANCE, CONTRIBUTOR})
_ENGAGED = _MANAGERS | _WORKERS
_FULL_ONLY = frozenset({SUPPLIER_PM})
_DELIVERY = frozenset({SUPPLIER_PM, CONTRIBUTOR})

# Organisation role groupings
_ALL_ORG = ORG_ROLES
_ORG_ADMINS = frozenset({ORG_OWNER, ORG_ADMIN})
_ORG_OWNER_ONLY = frozenset({ORG_OWNER})


# ═════════════════════════════════════════════════════════════════════════════
# Matrices
# ═════════════════════════════════════════════════════════════════════════════

_PROJECT_MATRIX = {
    "timesheets": {
        "view": _ALL,
        "create": _WORKERS,
        "createForOthers": _SUPPLIER_SIDE,
        "edit": _WORKERS,
        "delete": _SUPPLIER_SIDE,
        "submit": _WORKERS,
        "approve": _CUSTOMER_SIDE,
    },
    "expenses": {
        "view": _ALL,
        "create": _WORKERS,
        "createForOthers": _SUPPLIER_SIDE,
        "edit": _WORKERS,
        "delete": _SUPPLIER_SIDE,
        "submit": _WORKERS,
        "validateChargeable": _CUSTOMER_SIDE,
        "validateNonChargeable": _SUPPLIER_SIDE,
    },
    "milestones": {
        "view": _ALL,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _FULL_ONLY,
        "useGantt": _SUPPLIER_SIDE,
        "editBilling": _SUPPLIER_SIDE,
    },
    "deliverables": {
        "view": _ALL,
        "create": _DELIVERY,
        "edit": _DELIVERY,
        "delete": _SUPPLIER_SIDE,
        "submit": _DELIVERY,
        "review": _CUSTOMER_SIDE,
        "markDelivered": _CUSTOMER_SIDE,
    },
    "kpis": {
        "view": _ALL,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _SUPPLIER_SIDE,
        "manage": _SUPPLIER_SIDE,
    },
    "qualityStandards": {
        "view": _ALL,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _SUPPLIER_SIDE,
        "manage": _SUPPLIER_SIDE,
    },
    "raid": {
        "view": _ALL,
        "create": _MANAGERS,
        "edit": _MANAGERS,
        "delete": _SUPPLIER_SIDE,
        "manage": _MANAGERS,
        "updateStatus": _MANAGERS,
        "assignOwner": _MANAGERS,
    },
    "resources": {
        "view": _ALL,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _FULL_ONLY,
        "manage": _SUPPLIER_SIDE,
        "seeCostPrice": _SUPPLIER_SIDE,
        "seeResourceType": _SUPPLIER_SIDE,
        "seeMargins": _SUPPLIER_SIDE,
    },
    "partners": {
        "view": _SUPPLIER_SIDE,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _SUPPLIER_SIDE,
        "manage": _SUPPLIER_SIDE,
    },
    "variations": {
        "view": _ALL,
        "create": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
        "delete": _SUPPLIER_SIDE,
        "submit": _SUPPLIER_SIDE,
        "signAsSupplier": _SUPPLIER_SIDE,
        "signAsCustomer": _CUSTOMER_SIDE,
        "reject": _MANAGERS,
        "apply": _SUPPLIER_SIDE,
    },
    "certificates": {
        "view": _MANAGERS,
        "create": _MANAGERS,
        "signAsSupplier": _SUPPLIER_SIDE,
        "signAsCustomer": _CUSTOMER_SIDE,
    },
    "invoices": {
        "view": _MANAGERS,
        "generateCustomer": _MANAGERS,
        "generateThirdParty": _SUPPLIER_SIDE,
        "viewMargins": _SUPPLIER_SIDE,
    },
    "settings": {
        "access": _SUPPLIER_SIDE,
        "edit": _SUPPLIER_SIDE,
    },
    "users": {
        "view": _SUPPLIER_SIDE,
        "manage": _FULL_ONLY,
    },
    "reports": {
        "access": _MANAGERS,
        "viewWorkflowSummary": _MANAGERS,
    },
    # ── Governance entities ──────────────────────────────────────────────
    "workshops": {
        "view": _ALL,
        "create": _MANAGERS,
        "edit": _MANAGERS,
        "delete": _FULL_ONLY,
        "transition": _MANAGERS,
        "recordAttendance": _MANAGERS,
    },
    "stakeholderAreas": {
        "view": _ALL,
        "create": _MANAGERS,
        "edit": _MANAGERS,
        "delete": _FULL_ONLY,
    },
    "phaseGates": {
        "view": _ALL,
        "configure": _MANAGERS,
        "approve": _SIGNATORIES,
    },
    "participation": {
        "view": _ALL,
        "record": _ENGAGED,
    },
    "securityAssessments": {
        "view": _ALL,
        "create": _MANAGERS,
        "assess": _MANAGERS,
        "waive": _MANAGERS,
    },
}

_ORG_MATRIX = {
    "organisation": {
        "view": _ALL_ORG,
        "edit": _ORG_ADMINS,
        "delete": _ORG_OWNER_ONLY,
        "manageBilling": _ORG_OWNER_ONLY,
        "viewBilling": _ORG_ADMINS,
    },
    "orgMembers": {
        "view": _ALL_ORG,
        "invite": _ORG_ADMINS,
        "remove": _ORG_ADMINS,
        "changeRole": _ORG_ADMINS,
        "promoteToOwner": _ORG_OWNER_ONLY,
    },
    "orgProjects": {
        "view": _ALL_ORG,
        "create": _ORG_ADMINS,
        "delete": _ORG_ADMINS,
        "assignMembers": _ORG_ADMINS,
    },
    "orgSettings": {
        "view": _ORG_ADMINS,
        "edit": _ORG_ADMINS,
        "manageFeatures": _ORG_OWNER_ONLY,
        "manageBranding": _ORG_ADMINS,
    },
}


class PermissionMatrix:
    """Read-only (entity, action) → roles lookup for a single role scope."""

    def __init__(self, scope: str, rules: dict, roles: frozenset):
        self.scope = scope
        self.roles = roles
        self._rules = MappingProxyType({
            entity: MappingProxyType({action: frozenset(allowed) for action, allowed in actions.items()})
            for entity, actions in rules.items()
        })

    @property
    def entities(self):
        return tuple(self._rules)

    def actions_for(self, entity: str) -> tuple:
        return tuple(self._rules.get(entity, ()))

    def allowed_roles(self, entity: str, action: str) -> frozenset | None:
        """Allowed roles, or None when the pair is unknown (diagnostic emitted)."""
        actions = self._rules.get(entity)
        if actions is None:
            record_diagnostic(
                "PERM-UNKNOWN-ENTITY",
                f"Unknown {self.scope} permission entity '{entity}'",
                details={"scope": self.scope, "entity": entity, "action": action},
            )
            return None
        allowed = actions.get(action)
        if allowed is None:
            record_diagnostic(
                "PERM-UNKNOWN-ACTION",
                f"Unknown action '{action}' for {self.scope} entity '{entity}'",
                details={"scope": self.scope, "entity": entity, "action": action},
            )
            return None
        return allowed

    def has_permission(self, role: str | None, entity: str, action: str) -> bool:
        allowed = self.allowed_roles(entity, action)
        if allowed is None or role is None:
            return False
        return role in allowed

    def permissions_for_role(self, role: str | None) -> dict:
        return {
            entity: {action: role in allowed for action, allowed in actions.items()}
            for entity, actions in self._rules.items()
        }

    def roles_for_permission(self, entity: str, action: str) -> list:
        actions = self._rules.get(entity) or {}
        return sorted(actions.get(action, ()))


PROJECT_PERMISSIONS = PermissionMatrix(SCOPE_PROJECT, _PROJECT_MATRIX, PROJECT_ROLES)
ORG_PERMISSIONS = PermissionMatrix(SCOPE_ORGANIZATION, _ORG_MATRIX, ORG_ROLES)

_MATRICES = MappingProxyType({
    SCOPE_PROJECT: PROJECT_PERMISSIONS,
    SCOPE_ORGANIZATION: ORG_PERMISSIONS,
})


def matrix_for_scope(scope: str) -> PermissionMatrix | None:
    matrix = _MATRICES.get(scope)
    if matrix is None:
        record_diagnostic(
            "PERM-UNKNOWN-SCOPE",
            f"Unknown permission scope '{scope}'",
            details={"scope": scope},
        )
    return matrix


# ── Module-level helpers ─────────────────────────────────────────────────────

def has_permission(role: str | None, entity: str, action: str) -> bool:
    """Project-scope check. Unknown entity/action → False (never raises)."""
    return PROJECT_PERMISSIONS.has_permission(role, entity, action)


def has_org_permission(org_role: str | None, entity: str, action: str) -> bool:
    """Organisation-scope check. Unknown entity/action → False (never raises)."""
    return ORG_PERMISSIONS.has_permission(org_role, entity, action)


def get_permissions_for_role(role: str | None) -> dict:
    return PROJECT_PERMISSIONS.permissions_for_role(role)


def get_org_permissions_for_role(org_role: str | None) -> dict:
    return ORG_PERMISSIONS.permissions_for_role(org_role)


def get_roles_for_permission(entity: str, action: str) -> list:
    return PROJECT_PERMISSIONS.roles_for_permission(entity, action)


def get_org_roles_for_permission(entity: str, action: str) -> list:
    return ORG_PERMISSIONS.roles_for_permission(entity, action)


def is_org_admin_role(org_role: str | None) -> bool:
    return org_role in _ORG_ADMINS


def is_org_owner_role(org_role: str | None) -> bool:
    return org_role == ORG_OWNER


# ═════════════════════════════════════════════════════════════════════════════
# Deprecated-role migration
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RoleMigration:
    version: int
    scope: str
    old: str
    new: str
    note: str = ""


ROLE_MIGRATIONS = (
    RoleMigration(1, SCOPE_ORGANIZATION, "owner", ORG_OWNER, "org roles prefixed"),
    RoleMigration(1, SCOPE_ORGANIZATION, "admin", ORG_ADMIN, "org roles prefixed"),
    RoleMigration(1, SCOPE_ORGANIZATION, "member", ORG_MEMBER, "org roles prefixed"),
    RoleMigration(2, SCOPE_PROJECT, "admin", SUPPLIER_PM, "project admin folded into supplier_pm"),
    RoleMigration(2, SCOPE_ORGANIZATION, "supplier_pm", ORG_ADMIN, "org-level supplier_pm treated as org_admin"),
)

_MIGRATION_INDEX = MappingProxyType({(m.scope, m.old): m for m in ROLE_MIGRATIONS})

CURRENT_ROLE_SCHEMA_VERSION = max(m.version for m in ROLE_MIGRATIONS)


def migrate_role(scope: str, role: str | None) -> str | None:
    """Rewrite a deprecated role name to its current equivalent.

    Applied once where role assignments are read from or written to the
    store.  Every rewrite is logged with the migration version; unknown
    names pass through unchanged.
    """
    if role is None:
        return None
    migration = _MIGRATION_INDEX.get((scope, role))
    if migration is None:
        return role
    logger.info(
        "Role migrated scope=%s %s → %s (v%d)",
        scope, migration.old, migration.new, migration.version,
        extra={"event_type": "role_migrated"},
    )
    record_diagnostic(
        "ROLE-MIGRATED",
        f"Deprecated {scope} role '{migration.old}' read as '{migration.new}'",
        details={"scope": scope, "old": migration.old, "new": migration.new, "version": migration.version},
    )
    return migration.new


# ═════════════════════════════════════════════════════════════════════════════
# Effective role
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EffectiveRole:
    role: str
    source: str  # system_admin | org_admin | project_role | default


def resolve_effective_role(
    *,
    is_system_admin: bool,
    is_org_admin: bool,
    project_role: str | None,
    full_capability_role: str = SUPPLIER_PM,
    default_role: str = VIEWER,
) -> EffectiveRole:
    """Fixed precedence: system-admin flag > org-admin flag > project role > default.

    Used for capability-surface computation only; raw permission checks
    take the caller's role directly.
    """
    if is_system_admin:
        return EffectiveRole(full_capability_role, "system_admin")
    if is_org_admin:
        return EffectiveRole(full_capability_role, "org_admin")
    if project_role:
        return EffectiveRole(project_role, "project_role")
    return EffectiveRole(default_role, "default")
