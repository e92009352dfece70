"""
Tests for criteria matching and rule ranking.
"""
import random

import pytest

from task_router.matcher import match_criteria, request_categories
from task_router.models import QueueHandler, RequestCriteria, RoutingRequest, RoutingRule
from task_router.ranker import rank_rules, select_rule, select_rules


@pytest.fixture
def outage_request():
    return RoutingRequest(
        type="support",
        content="The production dashboard is down",
        subject="Outage",
        sender="ops@vip.com",
        metadata={"urgency": 0.9, "tier": "enterprise"},
        categories=["support", "technical"],
    )


def _rule(name, priority=100, sequence=0, active=True, **criteria):
    return RoutingRule(
        name=name,
        priority=priority,
        sequence=sequence,
        is_active=active,
        criteria=RequestCriteria(**criteria),
        handler=QueueHandler(queue_name="general"),
    )


# ==================== MATCHER ====================

def test_empty_criteria_is_catch_all(outage_request):
    match = match_criteria(outage_request, RequestCriteria())
    assert match.matched
    assert match.strength == 1.0


def test_category_overlap_score(outage_request):
    match = match_criteria(outage_request, RequestCriteria(categories=["support", "billing"]))
    assert match.matched
    assert match.field_scores["categories"] == 0.5
    assert match.strength == 0.5


def test_keywords_use_word_boundaries(outage_request):
    match = match_criteria(outage_request, RequestCriteria(keywords=["down", "outage", "refund"]))
    assert match.matched
    assert match.field_scores["keywords"] == pytest.approx(2 / 3)

    miss = match_criteria(outage_request, RequestCriteria(keywords=["dash"]))
    assert not miss.matched
    assert miss.failed_field == "keywords"


def test_populated_fields_are_anded(outage_request):
    match = match_criteria(outage_request, RequestCriteria(categories=["support"], keywords=["refund"]))
    assert not match.matched
    assert match.failed_field == "keywords"


@pytest.mark.parametrize("patterns, expected", [
    (["@vip.com"], True),
    (["*@vip.com"], True),
    (["ops@*"], True),
    (["*@other.com"], False),
])
def test_sender_patterns(outage_request, patterns, expected):
    assert match_criteria(outage_request, RequestCriteria(sender_patterns=patterns)).matched is expected


def test_sender_pattern_without_sender_fails():
    request = RoutingRequest(content="hello there")
    match = match_criteria(request, RequestCriteria(sender_patterns=["@vip.com"]))
    assert not match.matched
    assert match.failed_field == "sender"


def test_urgency_range_is_inclusive_and_uses_metadata(outage_request):
    assert match_criteria(outage_request, RequestCriteria(min_urgency=0.9)).matched
    assert match_criteria(outage_request, RequestCriteria(min_urgency=0.8, max_urgency=0.9)).matched
    assert not match_criteria(outage_request, RequestCriteria(max_urgency=0.5)).matched


def test_urgency_defaults_to_neutral():
    request = RoutingRequest(content="hello there")
    assert request.effective_urgency == 0.5
    assert match_criteria(request, RequestCriteria(min_urgency=0.5, max_urgency=0.5)).matched


def test_weighted_strength_over_populated_fields(outage_request):
    criteria = RequestCriteria(categories=["support", "billing"], request_types=["support"])
    match = match_criteria(outage_request, criteria)
    # (0.35 * 0.5 + 0.15 * 1.0) / (0.35 + 0.15)
    assert match.strength == pytest.approx(0.65)


def test_custom_expression_is_an_extra_condition(outage_request):
    passing = RequestCriteria(categories=["support"], custom_expression="metadata.tier == 'enterprise'")
    failing = RequestCriteria(categories=["support"], custom_expression="metadata.tier == 'free'")
    assert match_criteria(outage_request, passing).matched
    assert match_criteria(outage_request, failing).failed_field == "custom_expression"


def test_custom_expression_evaluation_error_means_no_match(outage_request):
    match = match_criteria(outage_request, RequestCriteria(custom_expression="metadata.tier > 3"))
    assert not match.matched
    assert match.failed_field == "custom_expression"


def test_request_categories_fall_back_to_type():
    assert request_categories(RoutingRequest(type="Billing", content="x")) == ["billing"]


# ==================== RANKER ====================

def test_ranking_order_priority_strength_sequence(outage_request):
    rules = [
        _rule("billing-only", priority=10, sequence=1, categories=["billing"]),
        _rule("partial", priority=20, sequence=2, categories=["support", "billing"]),
        _rule("full-early", priority=20, sequence=3, categories=["support"]),
        _rule("full-late", priority=20, sequence=4, categories=["support"]),
        _rule("inactive-catch-all", priority=1, sequence=5, active=False),
        _rule("catch-all", priority=500, sequence=6),
    ]

    ranked = [r.rule.name for r in rank_rules(rules, outage_request)]
    assert ranked == ["full-early", "full-late", "partial", "catch-all"]


def test_ranking_is_deterministic_for_any_input_order(outage_request):
    rules = [
        _rule(f"rule-{i}", priority=i % 3, sequence=i, categories=["support"] if i % 2 else [])
        for i in range(12)
    ]
    expected = [r.rule.id for r in rank_rules(rules, outage_request)]

    shuffler = random.Random(7)
    for _ in range(5):
        shuffled = rules[:]
        shuffler.shuffle(shuffled)
        assert [r.rule.id for r in rank_rules(shuffled, outage_request)] == expected


def test_select_helpers(outage_request):
    rules = [_rule("a", priority=2, sequence=1), _rule("b", priority=1, sequence=2)]
    assert select_rule(rules, outage_request).rule.name == "b"
    assert [r.rule.name for r in select_rules(rules, outage_request, top_n=5)] == ["b", "a"]
    assert select_rule([_rule("x", categories=["billing"])], outage_request) is None
