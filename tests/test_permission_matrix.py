"""
Permission matrix tests — project and organisation scopes.

Covers:
    - Signature authority is split by side (supplier vs customer)
    - Unknown entity / action / scope fails closed for every role, with a diagnostic
    - Matrix lookups are pure (same answer every time, no state change)
    - Deprecated role names are migrated through the versioned map
    - Effective-role precedence: system admin > org admin > project role > default
"""

import pytest

from app.services import permission_matrix as pm
from app.services.diagnostics import get_recent_diagnostics


# ═════════════════════════════════════════════════════════════════════════════
# Project matrix
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("role,expected", [
    ("supplier_pm", True),
    ("supplier_finance", True),
    ("customer_pm", False),
    ("customer_finance", False),
    ("contributor", False),
    ("viewer", False),
])
def test_sign_as_supplier_is_supplier_side_only(role, expected):
    """Only supplier-side roles may sign for the supplier."""
    assert pm.has_permission(role, "variations", "signAsSupplier") is expected


@pytest.mark.parametrize("role,expected", [
    ("supplier_pm", False),
    ("supplier_finance", False),
    ("customer_pm", True),
    ("customer_finance", True),
    ("contributor", False),
    ("viewer", False),
])
def test_sign_as_customer_is_customer_side_only(role, expected):
    """Only customer-side roles may sign for the customer."""
    assert pm.has_permission(role, "variations", "signAsCustomer") is expected


def test_viewer_only_has_view_actions():
    """Viewer is granted nothing beyond view."""
    perms = pm.get_permissions_for_role("viewer")
    for entity, actions in perms.items():
        for action, allowed in actions.items():
            if action != "view":
                assert allowed is False, f"viewer should not {entity}.{action}"


def test_every_role_can_view_variations():
    for role in pm.PROJECT_ROLES:
        assert pm.has_permission(role, "variations", "view") is True


def test_phase_gate_configure_is_managers_only():
    assert pm.get_roles_for_permission("phaseGates", "configure") == ["customer_pm", "supplier_pm"]


def test_permissions_for_role_covers_every_entity():
    """The capability map lists every entity and action of the matrix."""
    perms = pm.get_permissions_for_role("contributor")
    assert set(perms) == set(pm.PROJECT_PERMISSIONS.entities)
    assert set(perms["variations"]) == set(pm.PROJECT_PERMISSIONS.actions_for("variations"))


def test_unknown_role_is_denied_everything():
    perms = pm.get_permissions_for_role("janitor")
    assert not any(allowed for actions in perms.values() for allowed in actions.values())


def test_none_role_is_denied():
    assert pm.has_permission(None, "variations", "view") is False


# ── Fail-closed lookups ──────────────────────────────────────────────────────


def test_unknown_entity_denies_every_role_and_records_diagnostic():
    """An unknown entity never raises; every role is denied."""
    for role in pm.PROJECT_ROLES:
        assert pm.has_permission(role, "invoicez", "view") is False
    diags = get_recent_diagnostics(code="PERM-UNKNOWN-ENTITY")
    assert len(diags) == len(pm.PROJECT_ROLES)
    assert diags[0]["details"]["entity"] == "invoicez"


def test_unknown_action_denies_every_role_and_records_diagnostic():
    for role in pm.PROJECT_ROLES:
        assert pm.has_permission(role, "variations", "teleport") is False
    diags = get_recent_diagnostics(code="PERM-UNKNOWN-ACTION")
    assert diags
    assert diags[-1]["details"]["action"] == "teleport"


def test_roles_for_unknown_pair_is_empty():
    assert pm.get_roles_for_permission("invoicez", "view") == []


def test_unknown_scope_returns_none_with_diagnostic():
    assert pm.matrix_for_scope("galaxy") is None
    assert get_recent_diagnostics(code="PERM-UNKNOWN-SCOPE")


def test_lookup_is_pure():
    """Repeated checks give the same answer and leave the matrix unchanged."""
    before = pm.get_permissions_for_role("customer_pm")
    for _ in range(3):
        assert pm.has_permission("customer_pm", "variations", "reject") is True
    assert pm.get_permissions_for_role("customer_pm") == before


def test_matrix_is_read_only():
    with pytest.raises(TypeError):
        pm.PROJECT_PERMISSIONS._rules["variations"] = {}


# ═════════════════════════════════════════════════════════════════════════════
# Organisation matrix
# ═════════════════════════════════════════════════════════════════════════════


def test_org_member_cannot_invite():
    assert pm.has_org_permission("org_member", "orgMembers", "invite") is False
    assert pm.has_org_permission("org_admin", "orgMembers", "invite") is True


def test_only_owner_manages_billing():
    assert pm.get_org_roles_for_permission("organisation", "manageBilling") == ["org_owner"]


def test_scopes_are_not_merged():
    """A project role carries no organisation permission and vice versa."""
    assert pm.has_org_permission("supplier_pm", "orgProjects", "create") is False
    assert pm.has_permission("org_owner", "variations", "view") is False


def test_org_role_helpers():
    assert pm.is_org_admin_role("org_owner") is True
    assert pm.is_org_admin_role("org_admin") is True
    assert pm.is_org_admin_role("org_member") is False
    assert pm.is_org_owner_role("org_owner") is True
    assert pm.is_org_owner_role("org_admin") is False


# ═════════════════════════════════════════════════════════════════════════════
# Role migration & effective role
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("scope,old,new", [
    ("organization", "owner", "org_owner"),
    ("organization", "admin", "org_admin"),
    ("organization", "member", "org_member"),
    ("project", "admin", "supplier_pm"),
    ("organization", "supplier_pm", "org_admin"),
])
def test_migrate_role(scope, old, new):
    assert pm.migrate_role(scope, old) == new


def test_migrate_role_records_diagnostic():
    pm.migrate_role("project", "admin")
    diag = get_recent_diagnostics(code="ROLE-MIGRATED")[-1]
    assert diag["details"] == {"scope": "project", "old": "admin", "new": "supplier_pm", "version": 2}


def test_current_role_passes_through_untouched():
    assert pm.migrate_role("project", "customer_pm") == "customer_pm"
    assert pm.migrate_role("project", None) is None
    assert get_recent_diagnostics(code="ROLE-MIGRATED") == []


def test_project_admin_is_not_an_org_migration():
    """Migrations are keyed by scope: 'admin' means different things."""
    assert pm.migrate_role("project", "admin") != pm.migrate_role("organization", "admin")


def test_schema_version_is_latest_migration():
    assert pm.CURRENT_ROLE_SCHEMA_VERSION == 2


def test_effective_role_system_admin_wins():
    eff = pm.resolve_effective_role(is_system_admin=True, is_org_admin=True, project_role="viewer")
    assert eff == pm.EffectiveRole("supplier_pm", "system_admin")


def test_effective_role_org_admin_beats_project_role():
    eff = pm.resolve_effective_role(is_system_admin=False, is_org_admin=True, project_role="viewer")
    assert eff.role == "supplier_pm"
    assert eff.source == "org_admin"


def test_effective_role_uses_project_role():
    eff = pm.resolve_effective_role(is_system_admin=False, is_org_admin=False, project_role="customer_finance")
    assert eff == pm.EffectiveRole("customer_finance", "project_role")


def test_effective_role_defaults_to_viewer():
    eff = pm.resolve_effective_role(is_system_admin=False, is_org_admin=False, project_role=None)
    assert eff == pm.EffectiveRole("viewer", "default")
