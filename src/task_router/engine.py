"""
Routing engine: the pipeline that turns a request into a routing decision.

Pipeline:
1. Classify the request (categories, urgency)
2. Match every active rule's criteria and rank the matches
3. Resolve the winning rule's handler to a concrete assignee
4. Compose the decision with its confidence and reasoning
5. Commit the decision, cursor advance, workload counters and escalation
   timer in one store transaction
6. Publish the ``routing.decision`` event and refresh accuracy

A caller of ``route`` always receives a decision: when no rule matches, or
every handler in the chain is unavailable, the request lands in the default
queue.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import ValidationError

from task_router.collaborators import (
    Classifier,
    KeywordClassifier,
    Notifier,
    WorkloadService,
    build_collaborators,
)
from task_router.composer import ConfidenceWeights, DecisionComposer, RoutingUnresolvedError
from task_router.directory import HandlerDirectory
from task_router.escalation import EscalationScheduler
from task_router.events import EventBus
from task_router.metrics import MetricsAggregator
from task_router.models import (
    AcknowledgeResponse,
    BatchRouteResult,
    DecisionPage,
    DecisionQuery,
    EscalationState,
    FeedbackPayload,
    Person,
    Queue,
    RerouteRequest,
    RouteHandler,
    RoutingDecision,
    RoutingEvent,
    RoutingFeedback,
    RoutingMetrics,
    RoutingOptions,
    RoutingRequest,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleUpdate,
    RoutingTrends,
    RuleMatchPreview,
    RuleMatchResponse,
    Team,
    TrendInterval,
)
from task_router.ranker import rank_rules
from task_router.resolver import HandlerResolver, Resolution
from task_router.store import RoutingStore, StaleWriteError, get_routing_store
from task_router.utils import Timer, get_config, get_utc_datetime, sanitize_for_logging


MAX_COMMIT_ATTEMPTS = 5


class RuleValidationError(ValueError):
    """Raised when a rule is malformed or references handlers that do not exist."""
    pass


def _dedupe(values: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


class RoutingEngine:
    """Orchestrates classification, rule evaluation, resolution and escalation."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        store: Optional[RoutingStore] = None,
        directory: Optional[HandlerDirectory] = None,
        classifier: Optional[Classifier] = None,
        workload: Optional[WorkloadService] = None,
        notifier: Optional[Notifier] = None,
        events: Optional[EventBus] = None,
    ):
        self.config = config if config is not None else get_config()
        self.default_queue = self.config.get("ROUTING_DEFAULT_QUEUE", "general")

        built_classifier, built_workload, built_notifier = build_collaborators(self.config)
        self.classifier = classifier or built_classifier
        self.workload = workload or built_workload
        self.notifier = notifier or built_notifier
        self._fallback_classifier = KeywordClassifier()

        self.store = store or RoutingStore()
        self.directory = directory or HandlerDirectory()
        directory_path = self.config.get("DIRECTORY_PATH")
        if directory_path and directory is None:
            self.directory.load_file(directory_path)
        if not self.directory.has_queue(self.default_queue):
            self.directory.add_queue(Queue(name=self.default_queue, description="Default routing queue"))

        self.events = events or EventBus()
        self.resolver = HandlerResolver(
            self.directory,
            self.workload,
            self.store,
            default_queue=self.default_queue,
            max_alternatives=int(self.config.get("MAX_ALTERNATIVES", 3)),
        )
        self.composer = DecisionComposer(
            ConfidenceWeights.from_config(self.config),
            low_confidence_threshold=float(self.config.get("LOW_CONFIDENCE_THRESHOLD", 0.6)),
        )
        self.metrics = MetricsAggregator(
            self.store,
            low_confidence_threshold=float(self.config.get("LOW_CONFIDENCE_THRESHOLD", 0.6)),
            rollup_seconds=float(self.config.get("METRICS_ROLLUP_SECONDS", 60)),
        )
        self.scheduler = EscalationScheduler(
            self.store,
            self.resolver,
            self.composer,
            self.notifier,
            metrics=self.metrics,
            events=self.events,
            poll_seconds=float(self.config.get("ESCALATION_POLL_SECONDS", 5)),
        )

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        """Rebuild caches and start background workers."""
        await self.metrics.rebuild()
        self.scheduler.start()
        self.metrics.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.metrics.stop()

    # ==================== CLASSIFICATION ====================

    async def classify(self, request: RoutingRequest) -> RoutingRequest:
        """
        Attach categories and urgency to a request.

        Caller-supplied categories and urgency win. Otherwise categories come
        from the classifier plus the request type, and urgency from
        ``metadata["urgency"]`` before the classifier's score.
        """
        if request.categories is not None and request.urgency_score is not None:
            return request

        try:
            result = await self.classifier.classify(request)
        except Exception as e:
            logger.warning(
                "Classifier unavailable, using keyword fallback",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__
            )
            result = self._fallback_classifier.classify_text(request.content, request.subject)

        categories = request.categories
        if categories is None:
            categories = _dedupe(list(result.categories) + [request.type])

        urgency = request.urgency_score
        if urgency is None:
            urgency = request.effective_urgency if "urgency" in request.metadata else result.urgency_score

        return request.model_copy(update={"categories": categories, "urgency_score": urgency})

    # ==================== ROUTING ====================

    def _escalation_handler(self, rule: RoutingRule, resolution: Resolution) -> Optional[RouteHandler]:
        if resolution.used_default_queue:
            return None
        if resolution.used_fallback:
            return rule.fallback_handler
        return rule.handler

    async def route(self, request: RoutingRequest, options: Optional[RoutingOptions] = None) -> RoutingDecision:
        """
        Route a request to a handler.

        Re-submitting a request id that already has a decision returns the
        current decision unchanged.

        Raises:
            RoutingUnresolvedError: If not even the default queue is available
        """
        options = options or RoutingOptions()

        with Timer("route_request") as timer:
            async with self.store.request_lock(request.id):
                existing = await self.store.current_decision(request.id)
                if existing is not None:
                    logger.info("Request already routed", request_id=request.id, decision_id=existing.id)
                    return existing

                enriched = await self.classify(request)
                decision = await self._route_locked(enriched, options, timer)

        logger.info(
            "Request routed",
            request_id=decision.request_id,
            decision_id=decision.id,
            handler_type=decision.handler_type.value,
            handler_id=decision.handler_id,
            matched_rule_id=decision.matched_rule_id,
            confidence=decision.confidence,
            processing_time_ms=decision.processing_time_ms,
            content_preview=sanitize_for_logging(request.content, 80)
        )

        await self.metrics.note_decision(decision)
        await self.events.publish(decision)
        return decision

    async def _route_locked(self, request: RoutingRequest, options: RoutingOptions, timer: Timer) -> RoutingDecision:
        for attempt in range(MAX_COMMIT_ATTEMPTS):
            rules = [] if options.skip_rules else await self.store.list_rules(is_active=True)
            ranked = rank_rules(rules, request)
            if not ranked:
                return await self._commit_default(request, timer, note=None, unmatched=True)

            winner = ranked[0]
            rule = winner.rule
            async with self.store.rotation_locks(self.resolver.rotation_keys(rule.handler, rule)):
                resolution = await self.resolver.resolve(
                    rule.handler,
                    request,
                    rule=rule,
                    ignore_workload=options.ignore_workload,
                    max_alternatives=options.max_alternatives,
                )
                candidate = resolution.candidate
                notes = []
                if len(ranked) > 1:
                    notes.append(f"{len(ranked) - 1} lower-ranked rule(s) also matched")

                decision = self.composer.compose(
                    request,
                    resolution,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    rule_match=winner.match.strength,
                    historical_accuracy=self.metrics.historical_accuracy(candidate.handler_id) if candidate else 0.5,
                    notes=notes,
                    processing_time_ms=timer.duration_ms,
                )

                direct = not (resolution.used_fallback or resolution.used_skill_backup or resolution.used_default_queue)
                handler = self._escalation_handler(rule, resolution)
                escalation = self.scheduler.plan_record(decision, handler) if handler is not None else None

                try:
                    return await self.store.commit_decision(
                        decision,
                        request=request,
                        rule_id=rule.id if direct else None,
                        round_robin=resolution.round_robin,
                        escalation=escalation,
                    )
                except StaleWriteError as e:
                    logger.info("Routing commit conflicted, re-resolving", request_id=request.id, attempt=attempt + 1, error=str(e))

        logger.warning("Routing commit kept conflicting, using default queue", request_id=request.id, attempts=MAX_COMMIT_ATTEMPTS)
        return await self._commit_default(request, timer, note="commit kept conflicting, fell back to default queue")

    async def _commit_default(self, request: RoutingRequest, timer: Timer, note: Optional[str],
                              unmatched: bool = False) -> RoutingDecision:
        """Land a first-time request in the default queue. Cannot conflict while the request lock is held."""
        resolution = self.resolver.resolve_default(note)
        if unmatched:
            decision = self.composer.compose_unmatched(request, resolution, processing_time_ms=timer.duration_ms)
        else:
            decision = self.composer.compose(
                request,
                resolution,
                rule_match=0.0,
                historical_accuracy=0.5,
                processing_time_ms=timer.duration_ms,
            )
        return await self.store.commit_decision(decision, request=request)

    async def match_rules(self, request: RoutingRequest, options: Optional[RoutingOptions] = None) -> RuleMatchResponse:
        """
        Classify a request and rank the rules it would match, without routing it.

        Nothing is committed: cursors, workload counters and escalation timers
        are untouched.
        """
        options = options or RoutingOptions()
        enriched = await self.classify(request)
        rules = [] if options.skip_rules else await self.store.list_rules(is_active=True)
        ranked = rank_rules(rules, enriched)
        logger.info("Rules matched (dry run)", request_id=request.id, matches=len(ranked))
        return RuleMatchResponse(
            request_id=enriched.id,
            categories=enriched.categories or [],
            urgency_score=enriched.effective_urgency,
            matches=[
                RuleMatchPreview(
                    rule_id=r.rule.id,
                    rule_name=r.rule.name,
                    priority=r.rule.priority,
                    strength=r.match.strength,
                    field_scores=dict(r.match.field_scores),
                )
                for r in ranked
            ],
        )

    async def route_batch(self, items: Sequence[Tuple[RoutingRequest, Optional[RoutingOptions]]]) -> List[BatchRouteResult]:
        """Route several requests independently; one failure does not affect the others."""
        outcomes = await asyncio.gather(
            *(self.route(request, options) for request, options in items),
            return_exceptions=True
        )

        results = []
        for (request, _), outcome in zip(items, outcomes):
            if isinstance(outcome, RoutingDecision):
                results.append(BatchRouteResult(request_id=request.id, decision=outcome))
            elif isinstance(outcome, Exception):
                logger.error("Batch item failed", request_id=request.id, error=str(outcome))
                results.append(BatchRouteResult(request_id=request.id, error=str(outcome)))
            else:
                raise outcome
        return results

    async def reroute(self, decision_id: str, instruction: RerouteRequest) -> RoutingDecision:
        """
        Manually move a request to another handler, appending a revision.

        Raises:
            DecisionNotFoundError: If the decision does not exist
            RuleValidationError: If the target handler does not exist
        """
        self._validate_handler(instruction.handler, "reroute handler")
        base = await self.store.get_decision(decision_id)

        with Timer("reroute_request") as timer:
            async with self.store.request_lock(base.request_id):
                request = await self.store.get_request(base.request_id)
                if request is None:
                    raise RoutingUnresolvedError(base.request_id, f"Request {base.request_id} is missing from the store")
                await self.scheduler.cancel_for_reroute(base.request_id)

                decision = None
                async with self.store.rotation_locks(self.resolver.rotation_keys(instruction.handler)):
                    for attempt in range(MAX_COMMIT_ATTEMPTS):
                        current = await self.store.current_decision(base.request_id)
                        resolution = await self.resolver.resolve(instruction.handler, request, ignore_workload=True)
                        decision = await self._commit_reroute(
                            request, current, resolution, instruction, timer,
                            escalation_handler=None if resolution.used_default_queue else instruction.handler,
                        )
                        if decision is not None:
                            break
                        logger.info("Reroute commit conflicted, retrying", request_id=base.request_id, attempt=attempt + 1)

                if decision is None:
                    logger.warning("Reroute kept conflicting, using default queue", request_id=base.request_id)
                    current = await self.store.current_decision(base.request_id)
                    decision = await self._commit_reroute(
                        request, current, self.resolver.resolve_default("reroute commit kept conflicting"),
                        instruction, timer, escalation_handler=None,
                    )
                    if decision is None:
                        raise RoutingUnresolvedError(base.request_id, f"Reroute of {base.request_id} could not be committed")

        logger.info(
            "Request rerouted",
            request_id=decision.request_id,
            decision_id=decision.id,
            revision=decision.revision,
            handler_id=decision.handler_id
        )
        await self.metrics.note_decision(decision)
        await self.events.publish(decision)
        return decision

    async def _commit_reroute(self, request: RoutingRequest, current: RoutingDecision, resolution: Resolution,
                              instruction: RerouteRequest, timer: Timer,
                              escalation_handler: Optional[RouteHandler]) -> Optional[RoutingDecision]:
        """Append a rerouted revision; None if another revision got there first."""
        candidate = resolution.candidate
        decision = self.composer.compose(
            request,
            resolution,
            rule_match=1.0,
            historical_accuracy=self.metrics.historical_accuracy(candidate.handler_id) if candidate else 0.5,
            revision=current.revision + 1,
            supersedes=current.id,
            was_rerouted=True,
            notes=["manually rerouted" + (f": {instruction.reason}" if instruction.reason else "")],
            processing_time_ms=timer.duration_ms,
        )
        escalation = self.scheduler.plan_record(decision, escalation_handler) if escalation_handler else None
        try:
            return await self.store.commit_decision(
                decision,
                round_robin=resolution.round_robin,
                expected_current=current.id,
                escalation=escalation,
            )
        except StaleWriteError as e:
            logger.debug("Reroute commit rejected", request_id=request.id, error=str(e))
            return None

    # ==================== ACK / COMPLETE / FEEDBACK ====================

    async def _ack_response(self, decision_id: str, acknowledged: bool, released: bool = False) -> AcknowledgeResponse:
        decision = await self.store.get_decision(decision_id)
        record = await self.store.get_escalation(decision.request_id)
        return AcknowledgeResponse(
            decision_id=decision_id,
            acknowledged=acknowledged,
            released=released,
            escalation_state=record.state if record else None,
        )

    async def acknowledge(self, decision_id: str) -> AcknowledgeResponse:
        """Stop escalation for the decision's request. Safe to repeat."""
        acknowledged = await self.scheduler.acknowledge(decision_id)
        return await self._ack_response(decision_id, acknowledged)

    async def complete(self, decision_id: str) -> AcknowledgeResponse:
        """Mark the assigned work done: stop escalation and release workload."""
        acknowledged = await self.scheduler.acknowledge(decision_id)
        released = await self.store.release_decision(decision_id)
        return await self._ack_response(decision_id, acknowledged, released)

    async def submit_feedback(self, decision_id: str, payload: FeedbackPayload) -> RoutingDecision:
        feedback = RoutingFeedback(decision_id=decision_id, **payload.model_dump())
        return await self.metrics.submit_feedback(feedback)

    async def get_decision(self, decision_id: str) -> RoutingDecision:
        return await self.store.get_decision(decision_id)

    async def request_history(self, request_id: str) -> List[RoutingDecision]:
        return await self.store.request_history(request_id)

    async def query_decisions(self, query: DecisionQuery) -> DecisionPage:
        decisions, total = await self.store.query_decisions(query)
        return DecisionPage(decisions=decisions, total=total, limit=query.limit, offset=query.offset)

    async def get_escalation_state(self, request_id: str) -> Optional[EscalationState]:
        record = await self.store.get_escalation(request_id)
        return record.state if record else None

    # ==================== RULES ====================

    def _validate_handler(self, handler: Optional[RouteHandler], label: str) -> None:
        if handler is None:
            return
        if not self.resolver.handler_exists(handler):
            raise RuleValidationError(f"{label} references unknown {handler.type} '{handler.target_id}'")
        for index, step in enumerate(handler.escalation_path, start=1):
            self._validate_handler(step.handler, f"{label} escalation step {index}")

    def _validate_rule(self, rule: RoutingRule) -> None:
        self._validate_handler(rule.handler, "handler")
        self._validate_handler(rule.fallback_handler, "fallback_handler")

    async def create_rule(self, payload: RoutingRuleCreate) -> RoutingRule:
        """
        Validate and store a new rule.

        Raises:
            RuleValidationError: If the rule is malformed or references unknown handlers
        """
        try:
            rule = RoutingRule(**payload.model_dump())
        except ValidationError as e:
            raise RuleValidationError(str(e))
        self._validate_rule(rule)

        stored = await self.store.add_rule(rule)
        logger.info("Rule created", rule_id=stored.id, name=stored.name, priority=stored.priority)
        return stored

    async def update_rule(self, rule_id: str, payload: RoutingRuleUpdate) -> RoutingRule:
        existing = await self.store.get_rule(rule_id)
        data = existing.model_dump()
        data.update(payload.model_dump(exclude_unset=True))
        try:
            rule = RoutingRule(**data)
        except ValidationError as e:
            raise RuleValidationError(str(e))
        self._validate_rule(rule)

        stored = await self.store.replace_rule(rule)
        logger.info("Rule updated", rule_id=rule_id, fields=sorted(payload.model_dump(exclude_unset=True)))
        return stored

    async def delete_rule(self, rule_id: str) -> None:
        await self.store.delete_rule(rule_id)
        logger.info("Rule deleted", rule_id=rule_id)

    async def get_rule(self, rule_id: str) -> RoutingRule:
        return await self.store.get_rule(rule_id)

    async def list_rules(self, is_active: Optional[bool] = None) -> List[RoutingRule]:
        return await self.store.list_rules(is_active=is_active)

    # ==================== DIRECTORY ====================

    def add_person(self, person: Person) -> Person:
        return self.directory.upsert_person(person)

    def add_team(self, team: Team) -> Team:
        return self.directory.upsert_team(team)

    def add_queue(self, queue: Queue) -> Queue:
        return self.directory.add_queue(queue)

    # ==================== METRICS & EVENTS ====================

    async def compute_metrics(self, start=None, end=None) -> RoutingMetrics:
        return await self.metrics.compute_metrics(start, end)

    async def compute_trends(self, start=None, end=None, interval: TrendInterval = TrendInterval.DAY) -> RoutingTrends:
        return await self.metrics.compute_trends(start, end, interval)

    async def low_confidence_decisions(self, threshold: Optional[float] = None, limit: int = 50) -> List[RoutingDecision]:
        return await self.metrics.low_confidence_decisions(threshold, limit)

    async def recent_events(self, limit: int = 50) -> List[RoutingEvent]:
        return await self.store.recent_events(limit)

    async def fire_due_escalations(self, now=None) -> List[RoutingDecision]:
        return await self.scheduler.fire_due(now or get_utc_datetime())

    async def get_health_status(self) -> Dict[str, Any]:
        status = await self.store.get_health_status()
        status["workers"] = {
            "escalation": "running" if self.scheduler.running else "stopped",
            "last_metrics_rollup": (
                self.metrics.latest_rollup.generated_at.isoformat() if self.metrics.latest_rollup else None
            ),
        }
        status["events"] = {"published": self.events.published, "subscribers": self.events.subscriber_count}
        return status


# Global engine instance
_engine_instance: Optional[RoutingEngine] = None


def get_routing_engine() -> RoutingEngine:
    """Get the global routing engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RoutingEngine(store=get_routing_store())
    return _engine_instance


def set_routing_engine(engine: Optional[RoutingEngine]) -> None:
    """Replace the global routing engine, e.g. with a test instance."""
    global _engine_instance
    _engine_instance = engine
