"""
Participation scoring tests.

Scores are weighted per activity and capped at five occurrences:
workshop sessions weigh 30, so five or more sessions contribute 30.00.
"""

from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.stakeholder import ParticipationMetric
from app.services import participation_service
from app.services.participation_service import calculate_participation_score


# ═════════════════════════════════════════════════════════════════════════════
# Pure scoring
# ═════════════════════════════════════════════════════════════════════════════


def test_empty_counters_score_zero():
    assert calculate_participation_score({}) == Decimal("0.00")


def test_workshop_sessions_saturate_at_five():
    """Five and ten sessions score the same: the category weight."""
    assert calculate_participation_score({"workshop_sessions_attended": 5}) == Decimal("30.00")
    assert calculate_participation_score({"workshop_sessions_attended": 10}) == Decimal("30.00")


def test_partial_category_is_proportional():
    assert calculate_participation_score({"comments_made": 1}) == Decimal("2.00")
    assert calculate_participation_score({"requirements_contributed": 3}) == Decimal("15.00")


def test_all_categories_saturated_score_hundred():
    counters = {name: 7 for name in participation_service.PARTICIPATION_WEIGHTS}
    assert calculate_participation_score(counters) == Decimal("100.00")


def test_score_is_rounded_to_two_places():
    counters = {"comments_made": 1, "scores_submitted": 2, "approvals_completed": 1}
    # 2 + 4 + 5
    assert calculate_participation_score(counters) == Decimal("11.00")


def test_none_counters_treated_as_zero():
    assert calculate_participation_score({"comments_made": None}) == Decimal("0.00")


# ═════════════════════════════════════════════════════════════════════════════
# Recording
# ═════════════════════════════════════════════════════════════════════════════


def test_record_creates_metric_and_scores(project, users, areas):
    metric = participation_service.record_participation(
        project.id, areas[0].id, users["contributor"].id, "workshop_sessions_attended",
    )
    assert metric.workshop_sessions_attended == 1
    assert metric.participation_score == Decimal("6.00")


def test_record_accumulates_on_single_row(project, users, areas):
    user_id = users["contributor"].id
    for _ in range(7):
        participation_service.record_participation(project.id, areas[0].id, user_id, "workshop_sessions_attended")
    participation_service.record_participation(project.id, areas[0].id, user_id, "comments_made", increment=2)

    rows = db.session.query(ParticipationMetric).filter_by(user_id=user_id).all()
    assert len(rows) == 1
    assert rows[0].workshop_sessions_attended == 7
    assert rows[0].comments_made == 2
    assert rows[0].participation_score == Decimal("34.00")


def test_unknown_activity_rejected_without_write(project, users, areas):
    with pytest.raises(ValidationError):
        participation_service.record_participation(project.id, areas[0].id, users["viewer"].id, "lunches_eaten")
    assert db.session.query(ParticipationMetric).count() == 0


@pytest.mark.parametrize("increment", [0, -1, True])
def test_non_positive_increment_rejected(project, users, areas, increment):
    with pytest.raises(ValidationError):
        participation_service.record_participation(
            project.id, areas[0].id, users["viewer"].id, "comments_made", increment=increment,
        )


def test_area_from_other_project_not_found(project, users, areas):
    with pytest.raises(NotFoundError):
        participation_service.record_participation(project.id + 99, areas[0].id, users["viewer"].id, "comments_made")


def test_recalculate_repairs_stored_score(project, users, areas):
    metric = participation_service.record_participation(
        project.id, areas[1].id, users["contributor"].id, "scores_submitted",
    )
    metric.participation_score = Decimal("99.00")
    db.session.commit()
    repaired = participation_service.recalculate_participation_score(metric.id, project.id)
    assert repaired.participation_score == Decimal("2.00")


def test_participation_by_area_aggregates(project, users, areas):
    participation_service.record_participation(project.id, areas[0].id, users["contributor"].id, "comments_made")
    participation_service.record_participation(project.id, areas[0].id, users["viewer"].id, "comments_made", 3)

    by_area = {row["area"]["name"]: row for row in participation_service.get_participation_by_area(project.id)}
    assert by_area["Finance"]["totalParticipants"] == 2
    assert by_area["Finance"]["totals"]["comments_made"] == 4
    assert by_area["Finance"]["averageScore"] == 4.0
    assert by_area["IT"]["totalParticipants"] == 0
