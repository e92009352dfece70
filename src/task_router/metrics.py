"""
Feedback intake and routing metrics.

Metrics are a pure projection of the store's decision history and feedback
log, so they can be recomputed at any time. The aggregator also keeps a
per-handler accuracy cache that the composer reads as the historical
accuracy factor. The cache is refreshed incrementally on feedback and new
revisions, and rebuilt in full by the periodic rollup worker.

Accuracy rules:
- A request's decision chain is accurate if the latest feedback on any of
  its revisions scored 4 or more, or, with no feedback, if it was never
  rerouted or escalated.
- A single decision is accurate if its latest feedback scored 4 or more, or,
  with no feedback, if no later revision superseded it.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from task_router.models import (
    CategoryDistribution,
    MetricsBreakdown,
    RoutingDecision,
    RoutingFeedback,
    RoutingMetrics,
    RoutingTrends,
    RuleEffectiveness,
    TrendInterval,
    TrendPoint,
)
from task_router.store import RoutingStore
from task_router.utils import Timer, get_utc_datetime


DEFAULT_WINDOW = timedelta(days=7)
ACCURATE_SCORE = 4
INTERVAL_SECONDS = {
    TrendInterval.HOUR: 3600,
    TrendInterval.DAY: 86400,
    TrendInterval.WEEK: 7 * 86400,
}


def _mean(values: List[float]) -> float:
    return round(sum(values) / len(values), 4) if values else 0.0


def _rate(count: int, total: int) -> float:
    return round(count / total, 4) if total else 0.0


def build_chains(decisions: Iterable[RoutingDecision]) -> Dict[str, List[RoutingDecision]]:
    """Group decisions by request, each chain ordered by revision."""
    chains: Dict[str, List[RoutingDecision]] = defaultdict(list)
    for decision in decisions:
        chains[decision.request_id].append(decision)
    for chain in chains.values():
        chain.sort(key=lambda d: d.revision)
    return dict(chains)


def latest_feedback(feedback: Iterable[RoutingFeedback]) -> Dict[str, RoutingFeedback]:
    """Most recent feedback per decision id."""
    latest: Dict[str, RoutingFeedback] = {}
    for item in feedback:
        current = latest.get(item.decision_id)
        if current is None or item.created_at >= current.created_at:
            latest[item.decision_id] = item
    return latest


def chain_is_accurate(chain: List[RoutingDecision], feedback: Dict[str, RoutingFeedback]) -> bool:
    scored = [feedback[d.id] for d in chain if d.id in feedback]
    if scored:
        return max(scored, key=lambda f: f.created_at).score >= ACCURATE_SCORE
    return not any(d.was_rerouted or d.was_escalated for d in chain)


def decision_is_accurate(decision: RoutingDecision, superseded: bool,
                         feedback: Dict[str, RoutingFeedback]) -> bool:
    item = feedback.get(decision.id)
    if item is not None:
        return item.score >= ACCURATE_SCORE
    return not superseded


def smoothed_accuracy(accurate: int, total: int) -> float:
    """Laplace-smoothed accuracy; 0.5 with no history."""
    return (accurate + 1) / (total + 2)


class MetricsAggregator:
    """Feedback intake, metrics projection and the historical accuracy cache."""

    def __init__(self, store: RoutingStore, low_confidence_threshold: float = 0.6,
                 rollup_seconds: float = 60.0):
        self.store = store
        self.low_confidence_threshold = low_confidence_threshold
        self.rollup_seconds = rollup_seconds

        self._handler_counts: Dict[str, Tuple[int, int]] = {}
        self._latest_rollup: Optional[RoutingMetrics] = None
        self._rollup_task: Optional[asyncio.Task] = None

    # ==================== HISTORICAL ACCURACY ====================

    def historical_accuracy(self, handler_id: str) -> float:
        accurate, total = self._handler_counts.get(handler_id, (0, 0))
        return smoothed_accuracy(accurate, total)

    def handler_counts(self, handler_id: str) -> Tuple[int, int]:
        """(accurate, total) decisions recorded for a handler."""
        return self._handler_counts.get(handler_id, (0, 0))

    async def _count_handlers(self, handler_ids: Optional[Iterable[str]] = None) -> Dict[str, Tuple[int, int]]:
        decisions = await self.store.list_decisions()
        feedback = latest_feedback(await self.store.list_feedback())
        superseded = {d.supersedes for d in decisions if d.supersedes}
        wanted = set(handler_ids) if handler_ids is not None else None

        counts: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        for decision in decisions:
            if wanted is not None and decision.handler_id not in wanted:
                continue
            entry = counts[decision.handler_id]
            entry[1] += 1
            if decision_is_accurate(decision, decision.id in superseded, feedback):
                entry[0] += 1
        return {handler_id: (entry[0], entry[1]) for handler_id, entry in counts.items()}

    async def refresh_handlers(self, handler_ids: Iterable[str]) -> None:
        """Recompute the accuracy cache for a few handlers."""
        handler_ids = [h for h in handler_ids if h]
        counts = await self._count_handlers(handler_ids)
        for handler_id in handler_ids:
            self._handler_counts[handler_id] = counts.get(handler_id, (0, 0))

    async def rebuild(self) -> None:
        """Recompute the accuracy cache from the full history."""
        with Timer("metrics_rebuild"):
            self._handler_counts = await self._count_handlers()

    async def note_decision(self, decision: RoutingDecision) -> None:
        """Refresh accuracy for a new revision and the one it superseded."""
        handlers = [decision.handler_id]
        if decision.supersedes:
            try:
                previous = await self.store.get_decision(decision.supersedes)
                handlers.append(previous.handler_id)
            except KeyError:
                pass
        try:
            await self.refresh_handlers(handlers)
        except Exception as e:
            logger.error("Accuracy refresh failed, deferring to next rollup", decision_id=decision.id, error=str(e))

    # ==================== FEEDBACK ====================

    async def submit_feedback(self, feedback: RoutingFeedback) -> RoutingDecision:
        """
        Record feedback for a decision.

        Returns:
            RoutingDecision: The decision annotated with the feedback

        Raises:
            DecisionNotFoundError: If the decision does not exist
        """
        decision = await self.store.add_feedback(feedback)
        logger.info(
            "Feedback recorded",
            decision_id=feedback.decision_id,
            score=feedback.score,
            category=feedback.category.value
        )

        try:
            await self.refresh_handlers([decision.handler_id])
        except Exception as e:
            logger.error("Accuracy refresh failed, deferring to next rollup", decision_id=decision.id, error=str(e))
        return decision

    # ==================== PROJECTION ====================

    async def compute_metrics(self, start: Optional[datetime] = None,
                              end: Optional[datetime] = None) -> RoutingMetrics:
        """
        Project decisions and feedback in ``[start, end]`` into metrics.

        Args:
            start: Window start, default seven days before ``end``
            end: Window end, default now
        """
        end = end or get_utc_datetime()
        start = start or end - DEFAULT_WINDOW

        decisions = await self.store.list_decisions(start, end)
        all_feedback = await self.store.list_feedback()
        decision_ids = {d.id for d in decisions}
        window_feedback = [f for f in all_feedback if f.decision_id in decision_ids]
        feedback = latest_feedback(window_feedback)

        chains = build_chains(decisions)
        chain_list = list(chains.values())
        superseded = {d.supersedes for d in decisions if d.supersedes}

        def escalated(chain):
            return any(d.was_escalated for d in chain)

        def rerouted(chain):
            return any(d.was_rerouted for d in chain)

        # By request type (chain level)
        by_type: Dict[str, List[List[RoutingDecision]]] = defaultdict(list)
        for chain in chain_list:
            by_type[chain[0].request_type].append(chain)

        by_request_type = {}
        for request_type, group in by_type.items():
            members = [d for chain in group for d in chain]
            fb = [feedback[d.id] for d in members if d.id in feedback]
            by_request_type[request_type] = self._breakdown(
                request_type,
                members,
                escalations=sum(1 for c in group if escalated(c)),
                reroutes=sum(1 for c in group if rerouted(c)),
                accurate=sum(1 for c in group if chain_is_accurate(c, feedback)),
                units=len(group),
                feedback=fb,
            )

        # By handler (decision level)
        successor: Dict[str, RoutingDecision] = {d.supersedes: d for d in decisions if d.supersedes}
        by_handler_groups: Dict[str, List[RoutingDecision]] = defaultdict(list)
        for decision in decisions:
            by_handler_groups[decision.handler_id].append(decision)

        by_handler = {}
        for handler_id, members in by_handler_groups.items():
            fb = [feedback[d.id] for d in members if d.id in feedback]
            by_handler[handler_id] = self._breakdown(
                handler_id,
                members,
                escalations=sum(1 for d in members if d.id in successor and successor[d.id].was_escalated),
                reroutes=sum(1 for d in members if d.id in successor and successor[d.id].was_rerouted),
                accurate=sum(1 for d in members if decision_is_accurate(d, d.id in superseded, feedback)),
                units=len(members),
                feedback=fb,
            )

        # Category distribution over each request's first decision
        category_counts: Dict[str, List[float]] = defaultdict(list)
        for chain in chain_list:
            for category in chain[0].categories or ["uncategorized"]:
                category_counts[category].append(chain[0].confidence)
        category_distribution = [
            CategoryDistribution(
                category=category,
                count=len(confidences),
                percentage=round(100.0 * len(confidences) / len(chain_list), 2),
                average_confidence=_mean(confidences),
            )
            for category, confidences in sorted(category_counts.items(), key=lambda item: (-len(item[1]), item[0]))
        ]

        # Rule effectiveness over each request's first decision
        rule_chains: Dict[str, List[List[RoutingDecision]]] = defaultdict(list)
        for chain in chain_list:
            if chain[0].matched_rule_id:
                rule_chains[chain[0].matched_rule_id].append(chain)
        rule_effectiveness = [
            RuleEffectiveness(
                rule_id=rule_id,
                rule_name=group[0][0].matched_rule_name or self.store.rule_name(rule_id),
                matches=len(group),
                average_confidence=_mean([c[0].confidence for c in group]),
                accuracy_rate=_rate(sum(1 for c in group if chain_is_accurate(c, feedback)), len(group)),
                escalation_rate=_rate(sum(1 for c in group if escalated(c)), len(group)),
            )
            for rule_id, group in sorted(rule_chains.items(), key=lambda item: (-len(item[1]), item[0]))
        ]

        return RoutingMetrics(
            window_start=start,
            window_end=end,
            total_decisions=len(decisions),
            average_confidence=_mean([d.confidence for d in decisions]),
            escalation_rate=_rate(sum(1 for c in chain_list if escalated(c)), len(chain_list)),
            reroute_rate=_rate(sum(1 for c in chain_list if rerouted(c)), len(chain_list)),
            accuracy_rate=_rate(sum(1 for c in chain_list if chain_is_accurate(c, feedback)), len(chain_list)),
            average_processing_time_ms=_mean([d.processing_time_ms for d in decisions if d.revision == 1]),
            by_request_type=by_request_type,
            by_handler=by_handler,
            category_distribution=category_distribution,
            rule_effectiveness=rule_effectiveness,
        )

    def _breakdown(self, key: str, members: List[RoutingDecision], *, escalations: int, reroutes: int,
                   accurate: int, units: int, feedback: List[RoutingFeedback]) -> MetricsBreakdown:
        resolution_times = [f.resolution_time_ms for f in feedback if f.resolution_time_ms is not None]
        return MetricsBreakdown(
            key=key,
            total_decisions=len(members),
            average_confidence=_mean([d.confidence for d in members]),
            escalation_rate=_rate(escalations, units),
            reroute_rate=_rate(reroutes, units),
            accuracy_rate=_rate(accurate, units),
            feedback_count=len(feedback),
            average_feedback_score=_mean([f.score for f in feedback]) if feedback else None,
            average_resolution_time_ms=_mean(resolution_times) if resolution_times else None,
        )

    async def low_confidence_decisions(self, threshold: Optional[float] = None,
                                       limit: int = 50) -> List[RoutingDecision]:
        """Decisions scored below the threshold, newest first."""
        threshold = self.low_confidence_threshold if threshold is None else threshold
        decisions = await self.store.list_decisions()
        low = [d for d in decisions if d.confidence < threshold]
        low.sort(key=lambda d: d.created_at, reverse=True)
        return low[:max(0, limit)]

    async def compute_trends(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                             interval: TrendInterval = TrendInterval.DAY) -> RoutingTrends:
        """
        Bucket the decisions in ``[start, end]`` into time series.

        Buckets are aligned to the Unix epoch in UTC. Success is per decision,
        by the same rule as the historical accuracy factor.

        Args:
            start: Window start, default seven days before ``end``
            end: Window end, default now
            interval: Bucket width
        """
        end = end or get_utc_datetime()
        start = start or end - DEFAULT_WINDOW
        width = INTERVAL_SECONDS[interval]

        with Timer("compute_trends"):
            decisions = await self.store.list_decisions(start, end)
            superseded = {d.supersedes for d in await self.store.list_decisions() if d.supersedes}
            feedback = latest_feedback(await self.store.list_feedback())

            buckets: Dict[int, List[RoutingDecision]] = defaultdict(list)
            for decision in decisions:
                buckets[int(decision.created_at.timestamp() // width) * width].append(decision)

            trends = RoutingTrends(interval=interval, window_start=start, window_end=end)
            for key in sorted(buckets):
                members = buckets[key]
                time = datetime.fromtimestamp(key, tz=timezone.utc)
                successes = sum(1 for d in members if decision_is_accurate(d, d.id in superseded, feedback))
                trends.volume.append(TrendPoint(time=time, value=len(members)))
                trends.confidence.append(TrendPoint(time=time, value=_mean([d.confidence for d in members])))
                trends.success_rate.append(TrendPoint(time=time, value=_rate(successes, len(members))))
                trends.escalation_rate.append(
                    TrendPoint(time=time, value=_rate(sum(1 for d in members if d.was_escalated), len(members)))
                )
        return trends

    # ==================== ROLLUP ====================

    @property
    def latest_rollup(self) -> Optional[RoutingMetrics]:
        return self._latest_rollup

    async def rollup(self) -> RoutingMetrics:
        """Rebuild the accuracy cache and snapshot the default-window metrics."""
        await self.rebuild()
        self._latest_rollup = await self.compute_metrics()
        logger.debug(
            "Metrics rollup complete",
            total_decisions=self._latest_rollup.total_decisions,
            accuracy_rate=self._latest_rollup.accuracy_rate
        )
        return self._latest_rollup

    def start(self) -> None:
        """Start the periodic rollup worker on the running loop."""
        if self._rollup_task is not None and not self._rollup_task.done():
            return

        async def rollup_worker():
            while True:
                try:
                    await asyncio.sleep(self.rollup_seconds)
                    await self.rollup()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Log error but don't crash the worker
                    logger.error("Metrics rollup failed", error=str(e))

        self._rollup_task = asyncio.get_running_loop().create_task(rollup_worker())
        logger.info("Metrics rollup worker started", interval_seconds=self.rollup_seconds)

    async def stop(self) -> None:
        if self._rollup_task is None:
            return
        self._rollup_task.cancel()
        try:
            await self._rollup_task
        except asyncio.CancelledError:
            pass
        self._rollup_task = None
