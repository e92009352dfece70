"""
Tests for the routing store's transactional commit and bookkeeping.
"""
import pytest

from task_router.models import (
    CloseReason,
    EscalationRecord,
    EscalationState,
    HandlerType,
    PersonHandler,
    QueueHandler,
    RoutingDecision,
    RoutingRule,
)
from task_router.store import RoundRobinCommit, RuleNotFoundError, StaleWriteError


def _decision(request_id="req1", handler_id="alice", revision=1, supersedes=None,
              handler_type=HandlerType.PERSON):
    return RoutingDecision(
        request_id=request_id,
        revision=revision,
        supersedes=supersedes,
        request_type="support",
        handler_type=handler_type,
        handler_id=handler_id,
        confidence=0.7,
        reasoning="test",
    )


def _record(decision, version=0):
    return EscalationRecord(
        request_id=decision.request_id,
        current_decision_id=decision.id,
        original_handler_type=decision.handler_type,
        original_handler_id=decision.handler_id,
        version=version,
    )


@pytest.mark.asyncio
async def test_rules_keep_creation_order(store):
    first = await store.add_rule(RoutingRule(name="a", priority=5, handler=QueueHandler(queue_name="general")))
    second = await store.add_rule(RoutingRule(name="b", priority=5, handler=QueueHandler(queue_name="general")))
    assert second.sequence > first.sequence

    replaced = await store.replace_rule(first.model_copy(update={"name": "a2", "sequence": 99}))
    assert replaced.sequence == first.sequence
    assert [r.name for r in await store.list_rules()] == ["a2", "b"]


@pytest.mark.asyncio
async def test_deleted_rule_name_is_still_resolvable(store):
    rule = await store.add_rule(RoutingRule(name="gone", handler=PersonHandler(person_id="alice")))
    await store.delete_rule(rule.id)

    assert store.rule_name(rule.id) == "gone"
    with pytest.raises(RuleNotFoundError):
        await store.get_rule(rule.id)
    with pytest.raises(RuleNotFoundError):
        await store.delete_rule(rule.id)


@pytest.mark.asyncio
async def test_commit_requires_expected_current(store):
    first = await store.commit_decision(_decision())

    with pytest.raises(StaleWriteError):
        await store.commit_decision(_decision(revision=2))

    second = await store.commit_decision(_decision(handler_id="bob", revision=2, supersedes=first.id),
                                         expected_current=first.id)
    assert (await store.current_decision("req1")).id == second.id
    assert await store.is_current(second.id)
    assert not await store.is_current(first.id)
    # Superseding releases the previous assignee
    assert store.in_flight("alice") == 0
    assert store.in_flight("bob") == 1


@pytest.mark.asyncio
async def test_stale_cursor_commits_nothing(store):
    await store.commit_decision(_decision(), round_robin=RoundRobinCommit(key="rr:x", expected_cursor=0))
    assert store.cursor("rr:x") == 1

    with pytest.raises(StaleWriteError):
        await store.commit_decision(_decision(request_id="req2"), round_robin=RoundRobinCommit(key="rr:x", expected_cursor=0))

    assert await store.current_decision("req2") is None
    assert store.in_flight("alice") == 1
    assert store.cursor("rr:x") == 1


@pytest.mark.asyncio
async def test_rule_and_handler_counters(store):
    decision = await store.commit_decision(_decision(), rule_id="rule_1")
    await store.commit_decision(_decision(request_id="req2", handler_id="general", handler_type=HandlerType.QUEUE))

    assert store.in_flight("alice") == 1
    assert store.in_flight("general") == 0
    assert store.rule_in_flight("rule_1") == 1

    assert await store.release_decision(decision.id) is True
    assert await store.release_decision(decision.id) is False
    assert store.in_flight("alice") == 0
    assert store.rule_in_flight("rule_1") == 0


@pytest.mark.asyncio
async def test_escalation_version_guard(store):
    first = _decision()
    await store.commit_decision(first, escalation=_record(first))

    with pytest.raises(StaleWriteError):
        await store.commit_decision(
            _decision(handler_id="bob", revision=2, supersedes=first.id),
            expected_current=first.id,
            expected_escalation_version=3,
        )

    assert await store.close_escalation("req1", CloseReason.ACKNOWLEDGED, decision_id="rd_other") is False
    assert await store.close_escalation("req1", CloseReason.ACKNOWLEDGED, decision_id=first.id) is True
    assert await store.close_escalation("req1", CloseReason.ACKNOWLEDGED) is False

    with pytest.raises(StaleWriteError):
        await store.commit_decision(
            _decision(handler_id="bob", revision=2, supersedes=first.id),
            expected_current=first.id,
            expected_escalation_version=1,
        )


@pytest.mark.asyncio
async def test_commit_without_record_supersedes_open_escalation(store):
    first = _decision()
    await store.commit_decision(first, escalation=_record(first))
    await store.commit_decision(_decision(handler_id="bob", revision=2, supersedes=first.id), expected_current=first.id)

    record = await store.get_escalation("req1")
    assert record.state == EscalationState.CLOSED
    assert record.closed_reason == CloseReason.SUPERSEDED


@pytest.mark.asyncio
async def test_escalation_reads_are_copies(store):
    first = _decision()
    await store.commit_decision(first, escalation=_record(first))

    record = await store.get_escalation("req1")
    record.level = 7
    assert (await store.get_escalation("req1")).level == 0


@pytest.mark.asyncio
async def test_stats_and_health(store):
    await store.commit_decision(_decision())
    stats = await store.get_stats()
    assert stats.total_decisions == 1
    assert stats.total_requests == 1

    health = await store.get_health_status()
    assert health["storage"]["decisions"] == 1
    assert health["status"] in {"healthy", "degraded"}
