import logging
import random

from leadmagnet.scoring.projector import project_optimized
from leadmagnet.scoring.scorer import score


def test_projection_uses_configured_ceilings(agent_bank, worst):
    result = score(worst(agent_bank), agent_bank)
    projection = project_optimized(result, agent_bank.ceilings)

    assert projection.current_score == 17
    assert projection.optimized_score == 98
    assert projection.optimized_percentage == 98
    assert projection.improvement_points == 81
    assert projection.clamped_categories == []
    process = projection.categories[0]
    assert process.ceiling == 29
    assert process.point_gain == 22
    assert process.percentage_gain == 97 - 23


def test_missing_ceiling_projects_to_max(agent_bank, worst):
    result = score(worst(agent_bank), agent_bank)
    projection = project_optimized(result)
    assert [category.ceiling for category in projection.categories] == [30, 30, 40]
    assert projection.optimized_percentage == 100


def test_out_of_range_ceilings_are_clamped_and_flagged(agent_bank, worst, caplog):
    result = score(worst(agent_bank), agent_bank)
    with caplog.at_level(logging.WARNING, logger="scoring.projector"):
        projection = project_optimized(result, {"process_efficiency": 5, "risk_management": 45})

    by_key = {category.key: category for category in projection.categories}
    assert by_key["process_efficiency"].ceiling == 7
    assert by_key["process_efficiency"].point_gain == 0
    assert by_key["risk_management"].ceiling == 30
    assert by_key["client_experience"].clamped is False
    assert projection.clamped_categories == ["process_efficiency", "risk_management"]
    assert projection.optimized_score == 7 + 30 + 40
    assert "clamped" in caplog.text


def test_bonus_category_excluded_from_totals(brokerage_bank, worst):
    result = score(worst(brokerage_bank), brokerage_bank)
    projection = project_optimized(result, brokerage_bank.ceilings)
    assert projection.optimized_score == 97 + 98 + 97 + 97 + 66
    assert projection.max_score == 467
    assert projection.optimized_percentage == 97
    bonus = [category for category in projection.categories if category.bonus]
    assert [category.key for category in bonus] == ["growth_readiness"]


def test_ceiling_never_below_actual(brokerage_bank):
    rng = random.Random(11)
    for _ in range(50):
        responses = {question.id: rng.choice(question.options).label for question in brokerage_bank.questions}
        result = score(responses, brokerage_bank)
        projection = project_optimized(result, brokerage_bank.ceilings)
        for category in projection.categories:
            assert category.current_score <= category.ceiling <= category.max
        assert projection.optimized_score >= projection.current_score
