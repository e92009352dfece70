"""
In-memory transactional storage for rules, decisions, feedback and escalations.

This module provides asyncio-safe storage for:
- Routing rules with creation-order sequencing
- Append-only routing decision history, one revision chain per request
- Round-robin rotation cursors (compare-and-increment on commit)
- Per-handler and per-rule in-flight workload counters
- Durable escalation records that double as timer entries
- Feedback log and recent routing events

Key Features:
- Single lock per store: a decision and its cursor/counter/escalation
  updates are committed together or not at all
- Per-request locks so revisions for one request are strictly ordered
- Per-rotation locks so concurrent requests on one pool never race for a slot
- Decisions are never deleted; reroutes and escalations append revisions
"""

import asyncio
from collections import defaultdict, deque
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional, Tuple

import psutil
from loguru import logger

from task_router.models import (
    CloseReason,
    DecisionQuery,
    EscalationRecord,
    EscalationState,
    HandlerType,
    RoutingDecision,
    RoutingEvent,
    RoutingFeedback,
    RoutingRequest,
    RoutingRule,
)


class RuleNotFoundError(KeyError):
    """Raised when a rule id is unknown."""
    pass


class DecisionNotFoundError(KeyError):
    """Raised when a decision id is unknown."""
    pass


class StaleWriteError(Exception):
    """Raised when a commit's preconditions no longer hold (cursor moved, decision superseded)."""
    pass


@dataclass(frozen=True)
class RoundRobinCommit:
    """Cursor advance to apply when a decision is committed."""
    key: str
    expected_cursor: int
    next_cursor: Optional[int] = None


@dataclass
class StoreStats:
    """Counters tracked by the routing store."""
    total_rules: int = 0
    active_rules: int = 0
    total_decisions: int = 0
    total_requests: int = 0
    total_feedback: int = 0
    pending_escalations: int = 0
    memory_usage_mb: float = 0.0


class RoutingStore:
    """Asyncio-safe in-memory persistence for the routing engine."""

    def __init__(self, recent_event_limit: int = 500):
        self._lock = asyncio.Lock()
        self._request_locks: Dict[str, asyncio.Lock] = {}
        self._rotation_locks: Dict[str, asyncio.Lock] = {}

        self._rules: Dict[str, RoutingRule] = {}
        self._deleted_rules: Dict[str, RoutingRule] = {}
        self._rule_sequence = 0

        self._requests: Dict[str, RoutingRequest] = {}
        self._decisions: Dict[str, RoutingDecision] = {}
        self._request_history: Dict[str, List[str]] = defaultdict(list)
        self._decision_rule: Dict[str, Optional[str]] = {}
        self._released: set = set()

        self._cursors: Dict[str, int] = defaultdict(int)
        self._in_flight: Dict[str, int] = defaultdict(int)
        self._rule_in_flight: Dict[str, int] = defaultdict(int)

        self._escalations: Dict[str, EscalationRecord] = {}
        self._feedback: List[RoutingFeedback] = []
        self._events: Deque[RoutingEvent] = deque(maxlen=recent_event_limit)

    # ==================== LOCKS ====================

    def request_lock(self, request_id: str) -> asyncio.Lock:
        """Lock serialising route/reroute/escalation for one request."""
        lock = self._request_locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._request_locks[request_id] = lock
        return lock

    @asynccontextmanager
    async def rotation_locks(self, keys: Iterable[str]):
        """
        Hold the rotation locks for ``keys`` from resolution until commit.

        Locks are taken in sorted key order, so overlapping holders cannot deadlock.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._rotation_locks.get(key)
                if lock is None:
                    lock = asyncio.Lock()
                    self._rotation_locks[key] = lock
                await stack.enter_async_context(lock)
            yield

    # ==================== RULES ====================

    async def add_rule(self, rule: RoutingRule) -> RoutingRule:
        async with self._lock:
            self._rule_sequence += 1
            stored = rule.model_copy(update={"sequence": self._rule_sequence})
            self._rules[stored.id] = stored
            return stored

    async def replace_rule(self, rule: RoutingRule) -> RoutingRule:
        async with self._lock:
            if rule.id not in self._rules:
                raise RuleNotFoundError(rule.id)
            # Creation order is preserved across updates
            stored = rule.model_copy(update={
                "sequence": self._rules[rule.id].sequence,
                "updated_at": datetime.now(timezone.utc),
            })
            self._rules[rule.id] = stored
            return stored

    async def delete_rule(self, rule_id: str) -> RoutingRule:
        """Remove a rule from evaluation. Decisions referencing it are kept."""
        async with self._lock:
            rule = self._rules.pop(rule_id, None)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            self._deleted_rules[rule_id] = rule
            return rule

    async def get_rule(self, rule_id: str) -> RoutingRule:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            return rule

    async def list_rules(self, is_active: Optional[bool] = None) -> List[RoutingRule]:
        async with self._lock:
            rules = list(self._rules.values())
        if is_active is not None:
            rules = [r for r in rules if r.is_active == is_active]
        rules.sort(key=lambda r: (r.priority, r.sequence))
        return rules

    def rule_name(self, rule_id: str) -> Optional[str]:
        rule = self._rules.get(rule_id) or self._deleted_rules.get(rule_id)
        return rule.name if rule else None

    # ==================== COUNTERS ====================

    def cursor(self, key: str) -> int:
        return self._cursors.get(key, 0)

    def in_flight(self, handler_id: str) -> int:
        return self._in_flight.get(handler_id, 0)

    def rule_in_flight(self, rule_id: str) -> int:
        return self._rule_in_flight.get(rule_id, 0)

    def _release_locked(self, decision: RoutingDecision) -> None:
        if decision.id in self._released:
            return
        self._released.add(decision.id)
        if self._in_flight.get(decision.handler_id, 0) > 0:
            self._in_flight[decision.handler_id] -= 1
        rule_id = self._decision_rule.get(decision.id)
        if rule_id and self._rule_in_flight.get(rule_id, 0) > 0:
            self._rule_in_flight[rule_id] -= 1

    # ==================== DECISIONS ====================

    async def commit_decision(
        self,
        decision: RoutingDecision,
        *,
        request: Optional[RoutingRequest] = None,
        rule_id: Optional[str] = None,
        round_robin: Optional[RoundRobinCommit] = None,
        expected_current: Optional[str] = None,
        escalation: Optional[EscalationRecord] = None,
        expected_escalation_version: Optional[int] = None,
        event: bool = True,
    ) -> RoutingDecision:
        """
        Atomically record a decision revision and its side effects.

        Args:
            decision: The new revision
            request: Request being routed, stored on its first decision
            rule_id: Rule whose in-flight counter the assignment counts against
            round_robin: Cursor advance; applied only if the cursor is unchanged
            expected_current: Decision id that must still be current for the request
            escalation: Escalation record to store with the decision (None supersedes any open one)
            expected_escalation_version: If given, the request's escalation record must be open at this version
            event: Whether to append a ``routing.decision`` event

        Returns:
            RoutingDecision: The stored revision

        Raises:
            StaleWriteError: If the cursor moved or the request has a newer revision
        """
        async with self._lock:
            history = self._request_history.get(decision.request_id, [])
            current_id = history[-1] if history else None
            if current_id != expected_current:
                raise StaleWriteError(
                    f"Request {decision.request_id} current decision is {current_id}, expected {expected_current}"
                )
            if round_robin is not None and self._cursors.get(round_robin.key, 0) != round_robin.expected_cursor:
                raise StaleWriteError(f"Round-robin cursor {round_robin.key} moved")
            if expected_escalation_version is not None:
                record = self._escalations.get(decision.request_id)
                if (record is None or record.state == EscalationState.CLOSED
                        or record.version != expected_escalation_version):
                    raise StaleWriteError(f"Escalation for {decision.request_id} changed or closed")

            if current_id is not None:
                self._release_locked(self._decisions[current_id])

            if request is not None and request.id not in self._requests:
                self._requests[request.id] = request
            self._decisions[decision.id] = decision
            self._request_history[decision.request_id].append(decision.id)
            self._decision_rule[decision.id] = rule_id

            if round_robin is not None:
                self._cursors[round_robin.key] = (
                    round_robin.next_cursor if round_robin.next_cursor is not None
                    else round_robin.expected_cursor + 1
                )
            if decision.handler_type != HandlerType.QUEUE:
                self._in_flight[decision.handler_id] += 1
            if rule_id:
                self._rule_in_flight[rule_id] += 1

            if escalation is not None:
                self._escalations[decision.request_id] = escalation
            else:
                previous = self._escalations.get(decision.request_id)
                if previous is not None and previous.state != EscalationState.CLOSED:
                    previous.state = EscalationState.CLOSED
                    previous.closed_reason = CloseReason.SUPERSEDED
                    previous.due_at = None
                    previous.version += 1

            if event:
                self._events.append(RoutingEvent(decision=decision))

            logger.debug(
                "Decision committed",
                decision_id=decision.id,
                request_id=decision.request_id,
                revision=decision.revision,
                handler_id=decision.handler_id
            )
            return decision

    async def release_decision(self, decision_id: str) -> bool:
        """Free the workload held by a decision (work completed). Idempotent."""
        async with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                raise DecisionNotFoundError(decision_id)
            if decision.id in self._released:
                return False
            self._release_locked(decision)
            return True

    async def get_decision(self, decision_id: str) -> RoutingDecision:
        async with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                raise DecisionNotFoundError(decision_id)
            return decision

    async def current_decision(self, request_id: str) -> Optional[RoutingDecision]:
        async with self._lock:
            history = self._request_history.get(request_id)
            if not history:
                return None
            return self._decisions[history[-1]]

    async def request_history(self, request_id: str) -> List[RoutingDecision]:
        async with self._lock:
            return [self._decisions[d] for d in self._request_history.get(request_id, [])]

    async def is_current(self, decision_id: str) -> bool:
        async with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                return False
            return self._request_history[decision.request_id][-1] == decision_id

    async def list_decisions(self, start: Optional[datetime] = None,
                             end: Optional[datetime] = None) -> List[RoutingDecision]:
        async with self._lock:
            decisions = list(self._decisions.values())
        if start is not None:
            decisions = [d for d in decisions if d.created_at >= start]
        if end is not None:
            decisions = [d for d in decisions if d.created_at <= end]
        decisions.sort(key=lambda d: d.created_at)
        return decisions

    async def query_decisions(self, query: DecisionQuery) -> Tuple[List[RoutingDecision], int]:
        """
        Decisions accepted by ``query``, newest first.

        Returns:
            Tuple of (the requested page, number of matching decisions)
        """
        async with self._lock:
            decisions = [d for d in reversed(list(self._decisions.values())) if query.accepts(d)]
        decisions.sort(key=lambda d: d.created_at, reverse=True)
        return decisions[query.offset:query.offset + query.limit], len(decisions)

    async def get_request(self, request_id: str) -> Optional[RoutingRequest]:
        async with self._lock:
            return self._requests.get(request_id)

    # ==================== FEEDBACK ====================

    async def add_feedback(self, feedback: RoutingFeedback) -> RoutingDecision:
        """Append feedback and annotate the decision's feedback fields."""
        async with self._lock:
            decision = self._decisions.get(feedback.decision_id)
            if decision is None:
                raise DecisionNotFoundError(feedback.decision_id)
            self._feedback.append(feedback)
            annotated = decision.model_copy(update={
                "feedback_score": feedback.score,
                "feedback_comment": feedback.comment,
            })
            self._decisions[decision.id] = annotated
            return annotated

    async def list_feedback(self) -> List[RoutingFeedback]:
        async with self._lock:
            return list(self._feedback)

    # ==================== ESCALATIONS ====================

    async def get_escalation(self, request_id: str) -> Optional[EscalationRecord]:
        async with self._lock:
            record = self._escalations.get(request_id)
            return record.model_copy(deep=True) if record else None

    async def due_escalations(self, now: datetime) -> List[EscalationRecord]:
        """Open escalation records whose timer has expired."""
        async with self._lock:
            return [
                record.model_copy(deep=True) for record in self._escalations.values()
                if record.state != EscalationState.CLOSED
                and record.due_at is not None
                and record.due_at <= now
            ]

    async def close_escalation(self, request_id: str, reason: CloseReason,
                               decision_id: Optional[str] = None) -> bool:
        """
        Close an open escalation record. Returns False if already closed or
        if ``decision_id`` is given and is not the record's current decision.
        """
        async with self._lock:
            record = self._escalations.get(request_id)
            if record is None or record.state == EscalationState.CLOSED:
                return False
            if decision_id is not None and record.current_decision_id != decision_id:
                return False
            record.state = EscalationState.CLOSED
            record.closed_reason = reason
            record.due_at = None
            record.version += 1
            record.updated_at = datetime.now(timezone.utc)
            return True

    async def finalize_escalation(self, request_id: str, expected_version: int) -> bool:
        """Stop the timer of an exhausted chain, leaving the state escalated."""
        async with self._lock:
            record = self._escalations.get(request_id)
            if record is None or record.version != expected_version or record.state == EscalationState.CLOSED:
                return False
            record.due_at = None
            record.closed_reason = CloseReason.EXHAUSTED
            record.version += 1
            record.updated_at = datetime.now(timezone.utc)
            return True

    # ==================== EVENTS & HEALTH ====================

    async def recent_events(self, limit: int = 50) -> List[RoutingEvent]:
        async with self._lock:
            return list(self._events)[-limit:]

    async def get_stats(self) -> StoreStats:
        async with self._lock:
            stats = StoreStats(
                total_rules=len(self._rules),
                active_rules=sum(1 for r in self._rules.values() if r.is_active),
                total_decisions=len(self._decisions),
                total_requests=len(self._request_history),
                total_feedback=len(self._feedback),
                pending_escalations=sum(
                    1 for r in self._escalations.values()
                    if r.state != EscalationState.CLOSED and r.due_at is not None
                ),
            )
        try:
            stats.memory_usage_mb = psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error:
            # If psutil fails, report zero
            pass
        return stats

    async def get_health_status(self) -> Dict[str, object]:
        """Health status of the store."""
        stats = await self.get_stats()

        memory_status = "healthy" if stats.memory_usage_mb < 500 else "warning"
        if stats.memory_usage_mb > 1000:
            memory_status = "critical"

        return {
            "status": "healthy" if memory_status != "critical" else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "memory": {"status": memory_status, "usage_mb": stats.memory_usage_mb},
            "storage": {
                "rules": stats.total_rules,
                "active_rules": stats.active_rules,
                "decisions": stats.total_decisions,
                "requests": stats.total_requests,
                "feedback": stats.total_feedback,
                "pending_escalations": stats.pending_escalations,
            },
        }


# Global store instance
_store_instance: Optional[RoutingStore] = None


def get_routing_store() -> RoutingStore:
    """Get the global routing store instance."""
    global _store_instance
    if _store_instance is None:
        _store_instance = RoutingStore()
    return _store_instance


__all__ = [
    'RoutingStore',
    'StoreStats',
    'RoundRobinCommit',
    'RuleNotFoundError',
    'DecisionNotFoundError',
    'StaleWriteError',
    'get_routing_store'
]
