"""
Tests for feedback intake, accuracy and the metrics projection.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from task_router.metrics import MetricsAggregator, smoothed_accuracy
from pydantic import ValidationError

from task_router.models import (
    DecisionQuery,
    FeedbackCategory,
    HandlerType,
    RoutingDecision,
    RoutingFeedback,
    TrendInterval,
)
from task_router.store import DecisionNotFoundError
from task_router.utils import get_utc_datetime


def _decision(request_id, handler_id, confidence, request_type="support", categories=("support",),
              rule_id=None, revision=1, supersedes=None, rerouted=False, processing_time_ms=0.0,
              escalated=False, created_at=None):
    extra = {"created_at": created_at} if created_at is not None else {}
    return RoutingDecision(
        request_id=request_id,
        revision=revision,
        supersedes=supersedes,
        request_type=request_type,
        categories=list(categories),
        matched_rule_id=rule_id,
        matched_rule_name="Support rule" if rule_id else None,
        handler_type=HandlerType.PERSON,
        handler_id=handler_id,
        confidence=confidence,
        reasoning="test",
        was_rerouted=rerouted,
        processing_time_ms=processing_time_ms,
        was_escalated=escalated,
        **extra
    )


@pytest_asyncio.fixture
async def history(store):
    """Three requests: one clean, one rerouted, one with positive feedback."""
    d1 = await store.commit_decision(_decision("req1", "alice", 0.8, rule_id="r1", processing_time_ms=10))
    d2 = await store.commit_decision(_decision("req2", "alice", 0.6, rule_id="r1", processing_time_ms=20))
    d3 = await store.commit_decision(
        _decision("req2", "bob", 1.0, revision=2, supersedes=d2.id, rerouted=True, processing_time_ms=100),
        expected_current=d2.id,
    )
    d4 = await store.commit_decision(
        _decision("req3", "carol", 0.4, request_type="billing", categories=("billing",), processing_time_ms=30)
    )
    await store.add_feedback(RoutingFeedback(
        decision_id=d4.id, score=5, category=FeedbackCategory.ACCEPTED, resolution_time_ms=5000
    ))
    return {"d1": d1, "d2": d2, "d3": d3, "d4": d4}


@pytest.fixture
def aggregator(store):
    return MetricsAggregator(store, low_confidence_threshold=0.6)


def test_smoothed_accuracy():
    assert smoothed_accuracy(0, 0) == 0.5
    assert smoothed_accuracy(3, 3) == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_headline_metrics(aggregator, history):
    metrics = await aggregator.compute_metrics()

    assert metrics.total_decisions == 4
    assert metrics.accuracy_rate == pytest.approx(0.6667)
    assert metrics.reroute_rate == pytest.approx(0.3333)
    assert metrics.escalation_rate == 0.0
    # Revisions other than the first are excluded from processing time
    assert metrics.average_processing_time_ms == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_breakdowns(aggregator, history):
    metrics = await aggregator.compute_metrics()

    support = metrics.by_request_type["support"]
    assert support.total_decisions == 3
    assert support.reroute_rate == 0.5
    assert support.accuracy_rate == 0.5

    billing = metrics.by_request_type["billing"]
    assert billing.accuracy_rate == 1.0
    assert billing.feedback_count == 1
    assert billing.average_feedback_score == 5.0
    assert billing.average_resolution_time_ms == 5000.0

    alice = metrics.by_handler["alice"]
    assert alice.total_decisions == 2
    assert alice.accuracy_rate == 0.5
    assert alice.reroute_rate == 0.5
    assert metrics.by_handler["bob"].accuracy_rate == 1.0


@pytest.mark.asyncio
async def test_category_distribution_and_rule_effectiveness(aggregator, history):
    metrics = await aggregator.compute_metrics()

    distribution = {c.category: c for c in metrics.category_distribution}
    assert distribution["support"].count == 2
    assert distribution["support"].percentage == pytest.approx(66.67)
    assert distribution["billing"].count == 1

    [rule] = metrics.rule_effectiveness
    assert rule.rule_id == "r1"
    assert rule.rule_name == "Support rule"
    assert rule.matches == 2
    assert rule.accuracy_rate == 0.5
    assert rule.average_confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_window_excludes_other_decisions(aggregator, history):
    start = get_utc_datetime() + timedelta(hours=1)
    metrics = await aggregator.compute_metrics(start=start, end=start + timedelta(days=1))
    assert metrics.total_decisions == 0
    assert metrics.accuracy_rate == 0.0
    assert metrics.by_handler == {}


@pytest.mark.asyncio
async def test_historical_accuracy_cache(aggregator, history):
    assert aggregator.historical_accuracy("alice") == 0.5

    await aggregator.rebuild()
    assert aggregator.handler_counts("alice") == (1, 2)
    assert aggregator.historical_accuracy("bob") == pytest.approx(2 / 3)
    assert aggregator.historical_accuracy("nobody") == 0.5

    # Positive feedback on the superseded decision overrides the reroute signal
    annotated = await aggregator.submit_feedback(RoutingFeedback(decision_id=history["d2"].id, score=5))
    assert annotated.feedback_score == 5
    assert aggregator.handler_counts("alice") == (2, 2)

    metrics = await aggregator.compute_metrics()
    assert metrics.accuracy_rate == 1.0


@pytest.mark.asyncio
async def test_latest_feedback_wins(aggregator, history):
    await aggregator.submit_feedback(RoutingFeedback(decision_id=history["d4"].id, score=1))
    metrics = await aggregator.compute_metrics()
    assert metrics.by_request_type["billing"].accuracy_rate == 0.0


@pytest.mark.asyncio
async def test_feedback_for_unknown_decision(aggregator):
    with pytest.raises(DecisionNotFoundError):
        await aggregator.submit_feedback(RoutingFeedback(decision_id="rd_missing", score=3))


@pytest.mark.asyncio
async def test_low_confidence_listing_and_rollup(aggregator, history):
    low = await aggregator.low_confidence_decisions()
    assert [d.id for d in low] == [history["d4"].id]

    assert aggregator.latest_rollup is None
    rollup = await aggregator.rollup()
    assert aggregator.latest_rollup is rollup
    assert rollup.total_decisions == 4


# ==================== TRENDS & SEARCH ====================

MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def timeline(store):
    """Two requests on a Monday (one escalated an hour later) and one on Tuesday with positive feedback."""
    a = await store.commit_decision(_decision("req-a", "alice", 0.8, created_at=MONDAY + timedelta(hours=10, minutes=15)))
    b = await store.commit_decision(_decision("req-b", "bob", 0.6, created_at=MONDAY + timedelta(hours=10, minutes=45)))
    b2 = await store.commit_decision(
        _decision("req-b", "dave", 1.0, revision=2, supersedes=b.id, escalated=True,
                  created_at=MONDAY + timedelta(hours=11, minutes=5)),
        expected_current=b.id,
    )
    c = await store.commit_decision(_decision("req-c", "carol", 0.4, created_at=MONDAY + timedelta(days=1, hours=9)))
    await store.add_feedback(RoutingFeedback(decision_id=c.id, score=5))
    return {"a": a, "b": b, "b2": b2, "c": c}


@pytest.mark.asyncio
async def test_hourly_trends(aggregator, timeline):
    trends = await aggregator.compute_trends(MONDAY, MONDAY + timedelta(days=2), TrendInterval.HOUR)

    assert [p.time for p in trends.volume] == [
        MONDAY + timedelta(hours=10),
        MONDAY + timedelta(hours=11),
        MONDAY + timedelta(days=1, hours=9),
    ]
    assert [p.value for p in trends.volume] == [2, 1, 1]
    assert [p.value for p in trends.confidence] == [pytest.approx(0.7), 1.0, 0.4]
    # The superseded decision at 10:45 is the only unsuccessful one
    assert [p.value for p in trends.success_rate] == [0.5, 1.0, 1.0]
    assert [p.value for p in trends.escalation_rate] == [0.0, 1.0, 0.0]


@pytest.mark.asyncio
async def test_daily_and_weekly_trends(aggregator, timeline):
    daily = await aggregator.compute_trends(MONDAY, MONDAY + timedelta(days=2))
    assert daily.interval == TrendInterval.DAY
    assert [p.time for p in daily.volume] == [MONDAY, MONDAY + timedelta(days=1)]
    assert [p.value for p in daily.volume] == [3, 1]
    assert daily.confidence[0].value == pytest.approx(0.8)
    assert daily.success_rate[0].value == pytest.approx(0.6667)
    assert daily.escalation_rate[0].value == pytest.approx(0.3333)

    weekly = await aggregator.compute_trends(MONDAY, MONDAY + timedelta(days=2), TrendInterval.WEEK)
    [week] = weekly.volume
    assert week.value == 4
    # Weeks are aligned to the Unix epoch, which fell on a Thursday
    assert week.time.weekday() == 3
    assert week.time <= MONDAY


@pytest.mark.asyncio
async def test_trends_outside_window_are_empty(aggregator, timeline):
    trends = await aggregator.compute_trends(MONDAY + timedelta(days=3), MONDAY + timedelta(days=4))
    assert trends.volume == []
    assert trends.success_rate == []


@pytest.mark.asyncio
async def test_decision_search_filters(store, timeline):
    async def ids(**filters):
        page, _ = await store.query_decisions(DecisionQuery(**filters))
        return [d.id for d in page]

    assert await ids(handler_id="bob") == [timeline["b"].id]
    assert await ids(was_escalated=True) == [timeline["b2"].id]
    assert await ids(min_confidence=0.5, max_confidence=0.9) == [timeline["b"].id, timeline["a"].id]
    assert await ids(start=MONDAY + timedelta(days=1)) == [timeline["c"].id]
    assert await ids(end=MONDAY + timedelta(hours=11)) == [timeline["b"].id, timeline["a"].id]

    page, total = await store.query_decisions(DecisionQuery(limit=2, offset=1))
    assert total == 4
    assert [d.id for d in page] == [timeline["b2"].id, timeline["b"].id]


def test_decision_search_rejects_inverted_confidence_range():
    with pytest.raises(ValidationError):
        DecisionQuery(min_confidence=0.9, max_confidence=0.1)
