"""
Variation change-control tests — authoring, submission and dual signature.

Covers:
    - VAR-NNN numbering, draft-only editing, duplicate milestone items
    - Submission derives undeclared totals and warns on impact mismatch
    - Either signing order reaches FULLY_SIGNED and status applied
    - Refusals: not_authorized, already_signed, status_not_signable
    - Completion writes certificate number, baseline versions and forecasts
    - A failure while applying rolls back the second signature entirely
    - Rejection and the per-project summary
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from app.core.exceptions import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.variation import Milestone, Variation, VariationCertificate, VariationSignature
from app.services import status_transitions, variation_service
from app.services.diagnostics import get_recent_diagnostics
from app.services.variation_service import SignatureState, certificate_status, signature_state

NOW = datetime(2026, 5, 4, 10, 30, tzinfo=timezone.utc)


def _make_milestone(project_id, ref="M1", billable=10000):
    return variation_service.create_milestone(
        project_id, ref, f"Milestone {ref}",
        baseline_start_date=date(2026, 1, 1),
        baseline_end_date=date(2026, 3, 31),
        baseline_billable=billable,
    )


def _make_variation(project, users, milestone, *, submit=True, **declared):
    """Draft variation moving ``milestone`` out 30 days and +2,500."""
    v = variation_service.create_variation(
        project.id, "Add payroll interface", created_by=users["supplier_pm"].id, **declared,
    )
    variation_service.add_affected_milestone(
        project.id, v.id, milestone.id,
        new_baseline_end="2026-04-30",
        new_baseline_cost=12500,
        change_description="Interface build and test",
    )
    if submit:
        result = variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id, now=NOW)
        assert result.submitted is True
    return v


def _sign(project, v, side, users, role):
    return variation_service.sign_variation(project.id, v.id, side, users[role].id, role, now=NOW)


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


# ═════════════════════════════════════════════════════════════════════════════
# Pure signature state
# ═════════════════════════════════════════════════════════════════════════════


def test_signature_state_mapping():
    assert signature_state(set()) is SignatureState.UNSIGNED
    assert signature_state({"supplier"}) is SignatureState.PARTIALLY_SIGNED
    assert signature_state({"customer"}) is SignatureState.PARTIALLY_SIGNED
    assert signature_state({"supplier", "customer"}) is SignatureState.FULLY_SIGNED


def test_certificate_status_mapping():
    assert certificate_status([]) == "unsigned"
    assert certificate_status(["customer"]) == "partially_signed"
    assert certificate_status(["customer", "supplier"]) == "signed"


# ═════════════════════════════════════════════════════════════════════════════
# Authoring & submission
# ═════════════════════════════════════════════════════════════════════════════


def test_references_are_sequential_per_project(project, users):
    first = variation_service.create_variation(project.id, "First")
    second = variation_service.create_variation(project.id, "Second")
    assert first.variation_ref == "VAR-001"
    assert second.variation_ref == "VAR-002"
    assert first.certificate.status == "unsigned"


def test_create_on_unknown_project_raises():
    with pytest.raises(NotFoundError):
        variation_service.create_variation(9999, "Orphan")


def test_create_rejects_unknown_type(project):
    with pytest.raises(ValidationError):
        variation_service.create_variation(project.id, "Odd", variation_type="wishful_thinking")


def test_item_defaults_from_milestone(project, users):
    ms = _make_milestone(project.id)
    v = variation_service.create_variation(project.id, "Shift only")
    item = variation_service.add_affected_milestone(project.id, v.id, ms.id, new_baseline_end="2026-04-10")
    assert item.original_baseline_end == date(2026, 3, 31)
    assert item.new_baseline_start == date(2026, 1, 1)
    assert item.cost_delta == Decimal("0")
    assert item.days_delta == 10


def test_duplicate_milestone_item_conflicts(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms, submit=False)
    with pytest.raises(ConflictError):
        variation_service.add_affected_milestone(project.id, v.id, ms.id)


def test_end_before_start_rejected(project):
    ms = _make_milestone(project.id)
    v = variation_service.create_variation(project.id, "Backwards")
    with pytest.raises(ValidationError):
        variation_service.add_affected_milestone(project.id, v.id, ms.id,
                                                 new_baseline_start="2026-05-01", new_baseline_end="2026-04-01")


def test_submit_requires_an_item(project, users):
    v = variation_service.create_variation(project.id, "Empty")
    with pytest.raises(ValidationError):
        variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id)


def test_submit_derives_undeclared_totals(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    stored = _reload(Variation, v.id)
    assert stored.status == "submitted"
    assert stored.total_cost_impact == Decimal("2500.00")
    assert stored.total_days_impact == 30
    assert stored.submitted_by == users["supplier_pm"].id
    assert stored.certificate.snapshot["affected_milestones"][0]["days_delta"] == 30


def test_submit_warns_on_declared_mismatch(project, users):
    """A declared total that disagrees with the items warns but does not block."""
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms, submit=False, total_cost_impact=1000, total_days_impact=30)
    result = variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id)
    assert result.submitted is True
    assert len(result.warnings) == 1
    assert "1000.00" in result.warnings[0]
    assert get_recent_diagnostics(code="VARIATION-IMPACT-MISMATCH")
    assert _reload(Variation, v.id).total_cost_impact == Decimal("1000.00")


def test_items_frozen_after_submission(project, users):
    ms = _make_milestone(project.id)
    other = _make_milestone(project.id, "M2")
    v = _make_variation(project, users, ms)
    with pytest.raises(ValidationError):
        variation_service.add_affected_milestone(project.id, v.id, other.id)
    item_id = _reload(Variation, v.id).items[0].id
    with pytest.raises(ValidationError):
        variation_service.remove_affected_milestone(project.id, v.id, item_id)


def test_second_submission_is_refused(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    again = variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id)
    assert again.submitted is False
    assert again.status == "submitted"


# ═════════════════════════════════════════════════════════════════════════════
# Dual signature
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("first,first_role,second,second_role", [
    ("supplier", "supplier_pm", "customer", "customer_pm"),
    ("customer", "customer_finance", "supplier", "supplier_finance"),
])
def test_either_signing_order_completes(project, users, first, first_role, second, second_role):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)

    one = _sign(project, v, first, users, first_role)
    assert one.signed is True
    assert one.state is SignatureState.PARTIALLY_SIGNED
    assert one.status == f"awaiting_{second}"
    assert one.certificate["status"] == "partially_signed"

    two = _sign(project, v, second, users, second_role)
    assert two.signed is True
    assert two.state is SignatureState.FULLY_SIGNED
    assert two.status == "applied"
    assert two.certificate["status"] == "signed"
    assert two.certificate["certificate_number"] == "ERP-VAR-001-CERT"

    stored = _reload(Variation, v.id)
    assert stored.status == "applied"
    assert stored.approved_at is not None and stored.applied_at is not None
    assert stored.signed_sides() == {"supplier", "customer"}


def test_completion_rebaselines_milestone(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "supplier", users, "supplier_pm")
    _sign(project, v, "customer", users, "customer_pm")

    stored = _reload(Milestone, ms.id)
    assert stored.baseline_end_date == date(2026, 4, 30)
    assert stored.baseline_billable == Decimal("12500.00")
    assert stored.forecast_end_date == date(2026, 4, 30)
    assert stored.forecast_billable == Decimal("12500.00")
    assert stored.baseline_version == 2

    history = variation_service.get_milestone_baseline_history(project.id, ms.id)
    assert [h.version for h in history] == [2]
    assert history[0].variation_id == v.id
    assert history[0].supplier_signed_by == users["supplier_pm"].id
    assert history[0].customer_signed_by == users["customer_pm"].id

    item = _reload(Variation, v.id).items[0]
    assert (item.baseline_version_before, item.baseline_version_after) == (1, 2)


def test_second_variation_bumps_version_again(project, users):
    ms = _make_milestone(project.id)
    for _ in range(2):
        v = variation_service.create_variation(project.id, "Another shift")
        variation_service.add_affected_milestone(project.id, v.id, ms.id, new_baseline_cost=15000)
        variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id)
        _sign(project, v, "customer", users, "customer_pm")
        _sign(project, v, "supplier", users, "supplier_pm")

    history = variation_service.get_milestone_baseline_history(project.id, ms.id)
    assert [h.version for h in history] == [3, 2]
    assert _reload(Milestone, ms.id).baseline_version == 3


def test_snapshot_records_both_signers(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "supplier", users, "supplier_finance")
    _sign(project, v, "customer", users, "customer_finance")
    cert = variation_service.get_certificate(project.id, v.id)
    assert cert["snapshot"]["supplier_signed_by"] == users["supplier_finance"].id
    assert cert["snapshot"]["customer_signed_by"] == users["customer_finance"].id
    assert cert["snapshot"]["applied_at"] == NOW.isoformat()


def test_third_signature_is_refused(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "supplier", users, "supplier_pm")
    _sign(project, v, "customer", users, "customer_pm")

    again = _sign(project, v, "supplier", users, "supplier_finance")
    assert again.signed is False
    assert again.reason == "already_signed"
    assert db.session.query(VariationSignature).filter_by(variation_id=v.id).count() == 2


def test_same_side_twice_is_refused(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "customer", users, "customer_pm")
    again = _sign(project, v, "customer", users, "customer_finance")
    assert again.reason == "already_signed"
    assert _reload(Variation, v.id).status == "awaiting_supplier"


def test_wrong_side_role_is_not_authorized(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    result = _sign(project, v, "supplier", users, "customer_pm")
    assert result.signed is False
    assert result.reason == "not_authorized"
    assert result.state is SignatureState.UNSIGNED
    assert db.session.query(VariationSignature).count() == 0
    assert _reload(Variation, v.id).status == "submitted"


@pytest.mark.parametrize("role", ["contributor", "viewer", None])
def test_non_signatory_roles_not_authorized(project, users, role):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    result = variation_service.sign_variation(project.id, v.id, "customer", users["contributor"].id, role)
    assert result.reason == "not_authorized"


def test_legacy_admin_role_signs_for_supplier(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    result = variation_service.sign_variation(project.id, v.id, "supplier", users["supplier_pm"].id, "admin")
    assert result.signed is True
    assert db.session.query(VariationSignature).one().signer_role == "supplier_pm"


def test_draft_is_not_signable(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms, submit=False)
    result = _sign(project, v, "supplier", users, "supplier_pm")
    assert result.signed is False
    assert result.reason == "status_not_signable"
    assert _reload(VariationCertificate, v.certificate.id).status == "unsigned"


def test_unknown_side_raises(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    with pytest.raises(ValidationError):
        _sign(project, v, "auditor", users, "supplier_pm")


def test_apply_failure_rolls_back_second_signature(project, users, monkeypatch):
    """If rebaselining fails, the variation stays awaiting the second side."""
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "supplier", users, "supplier_pm")

    def _boom(variation):
        raise RuntimeError("baseline store unavailable")

    monkeypatch.setattr(variation_service, "_apply_milestones", _boom)
    with pytest.raises(RuntimeError):
        _sign(project, v, "customer", users, "customer_pm")

    stored = _reload(Variation, v.id)
    assert stored.status == "awaiting_customer"
    assert stored.signed_sides() == {"supplier"}
    assert stored.certificate.status == "partially_signed"
    assert stored.certificate.certificate_number is None
    assert _reload(Milestone, ms.id).baseline_version == 1

    monkeypatch.undo()
    retry = _sign(project, v, "customer", users, "customer_pm")
    assert retry.status == "applied"


def test_mismatch_warning_surfaces_on_completion(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms, submit=False, total_days_impact=5)
    variation_service.submit_for_approval(project.id, v.id, users["supplier_pm"].id)
    _sign(project, v, "supplier", users, "supplier_pm")
    result = _sign(project, v, "customer", users, "customer_pm")
    assert result.status == "applied"
    assert any("schedule impact" in w for w in result.warnings)


# ═════════════════════════════════════════════════════════════════════════════
# Rejection & read models
# ═════════════════════════════════════════════════════════════════════════════


def test_reject_requires_reason(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    with pytest.raises(ValidationError):
        variation_service.reject_variation(project.id, v.id, users["customer_pm"].id, "customer_pm", "  ")


def test_reject_not_authorized_for_finance(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    result = variation_service.reject_variation(project.id, v.id, users["customer_finance"].id,
                                                "customer_finance", "Too expensive")
    assert result.allowed is False
    assert result.reason == "not_authorized"


def test_rejected_variation_cannot_be_signed(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "supplier", users, "supplier_pm")
    result = variation_service.reject_variation(project.id, v.id, users["customer_pm"].id,
                                                "customer_pm", "Out of contract scope")
    assert result.allowed is True

    stored = _reload(Variation, v.id)
    assert stored.status == "rejected"
    assert stored.rejection_reason == "Out of contract scope"
    assert stored.rejected_by == users["customer_pm"].id

    late = _sign(project, v, "customer", users, "customer_pm")
    assert late.reason == "status_not_signable"


def test_get_variation_read_model(project, users):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _sign(project, v, "customer", users, "customer_pm")
    d = variation_service.get_variation(project.id, v.id)
    assert d["signature_state"] == "PARTIALLY_SIGNED"
    assert d["allowed_transitions"] == ["approved", "rejected"]


def test_summary_counts_and_applied_totals(project, users):
    ms = _make_milestone(project.id)
    m2 = _make_milestone(project.id, "M2")
    applied = _make_variation(project, users, ms)
    _sign(project, applied, "supplier", users, "supplier_pm")
    _sign(project, applied, "customer", users, "customer_pm")
    _make_variation(project, users, m2)
    variation_service.create_variation(project.id, "Idea")

    summary = variation_service.get_variation_summary(project.id)
    assert summary["total"] == 3
    assert summary["draft"] == 1
    assert summary["pending"] == 1
    assert summary["applied"] == 1
    assert summary["totalCostImpact"] == 2500.0
    assert summary["totalDaysImpact"] == 30


# ═════════════════════════════════════════════════════════════════════════════
# Concurrent writers
# ═════════════════════════════════════════════════════════════════════════════


def _cas_after_status_change(monkeypatch, *, times):
    """Move Variation.status between the signer's read and its compare-and-set."""
    original = status_transitions.compare_and_set
    calls = []

    def _compare_and_set(model, pk, expected, values):
        calls.append(expected.get("status"))
        if model is Variation and len(calls) <= times:
            db.session.execute(
                update(Variation).where(Variation.id == pk)
                .values(status="awaiting_supplier")
                .execution_options(synchronize_session=False)
            )
        return original(model, pk, expected, values)

    monkeypatch.setattr(status_transitions, "compare_and_set", _compare_and_set)
    return calls


def test_signature_retries_after_concurrent_status_change(project, users, monkeypatch):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    calls = _cas_after_status_change(monkeypatch, times=1)

    result = _sign(project, v, "supplier", users, "supplier_pm")

    assert calls == ["submitted", "submitted"]
    assert result.signed is True
    assert result.status == "awaiting_customer"
    stored = _reload(Variation, v.id)
    assert stored.signed_sides() == {"supplier"}
    assert db.session.query(VariationSignature).filter_by(variation_id=v.id).count() == 1


def test_opposite_sides_both_land_when_first_write_conflicts(project, users, monkeypatch):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    _cas_after_status_change(monkeypatch, times=1)

    _sign(project, v, "customer", users, "customer_pm")
    monkeypatch.undo()
    final = _sign(project, v, "supplier", users, "supplier_pm")

    assert final.state is SignatureState.FULLY_SIGNED
    assert final.status == "applied"
    assert _reload(Variation, v.id).signed_sides() == {"supplier", "customer"}


def test_signature_gives_up_after_repeated_conflicts(project, users, monkeypatch):
    ms = _make_milestone(project.id)
    v = _make_variation(project, users, ms)
    calls = _cas_after_status_change(monkeypatch, times=10)

    with pytest.raises(ConcurrencyError):
        _sign(project, v, "supplier", users, "supplier_pm")

    assert len(calls) == 3
    stored = _reload(Variation, v.id)
    assert stored.status == "submitted"
    assert stored.signed_sides() == set()
    assert stored.certificate.status == "unsigned"
