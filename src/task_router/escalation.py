"""
Escalation scheduling for unacknowledged assignments.

Each request whose handler has an escalation path gets one durable
``EscalationRecord`` in the store. The record is the timer: ``due_at`` says
when the next step fires and ``version`` guards every transition, so an
acknowledgment always wins over a timer firing at the same moment.

State machine:
    assigned -> closed(acknowledged)
    assigned -> escalated(1) -> ... -> escalated(k)
    escalated(k) -> escalated(k), timer stopped, unresolved alert
    assigned/escalated -> closed(superseded) on manual reroute
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from task_router.collaborators import Notifier
from task_router.composer import DecisionComposer, RoutingUnresolvedError
from task_router.events import EventBus
from task_router.metrics import MetricsAggregator
from task_router.models import (
    CloseReason,
    EscalationRecord,
    EscalationState,
    RouteHandler,
    RoutingDecision,
    RoutingRequest,
)
from task_router.resolver import HandlerResolver
from task_router.store import RoutingStore, StaleWriteError
from task_router.utils import get_utc_datetime


MAX_COMMIT_ATTEMPTS = 5


class EscalationScheduler:
    """Arms, fires and closes escalation timers."""

    def __init__(
        self,
        store: RoutingStore,
        resolver: HandlerResolver,
        composer: DecisionComposer,
        notifier: Notifier,
        metrics: Optional[MetricsAggregator] = None,
        events: Optional[EventBus] = None,
        poll_seconds: float = 5.0,
        clock: Callable[[], datetime] = get_utc_datetime,
    ):
        self.store = store
        self.resolver = resolver
        self.composer = composer
        self.notifier = notifier
        self.metrics = metrics
        self.events = events
        self.poll_seconds = poll_seconds
        self.clock = clock
        self._worker_task: Optional[asyncio.Task] = None
        self._notifications: Set[asyncio.Task] = set()

    # ==================== PLANNING ====================

    def plan_record(self, decision: RoutingDecision, handler: RouteHandler,
                    now: Optional[datetime] = None) -> Optional[EscalationRecord]:
        """Escalation record for a fresh assignment, or None if the handler never escalates."""
        if not handler.escalation_path:
            return None
        now = now or self.clock()
        steps = list(handler.escalation_path)
        return EscalationRecord(
            request_id=decision.request_id,
            current_decision_id=decision.id,
            original_handler_type=decision.handler_type,
            original_handler_id=decision.handler_id,
            steps=steps,
            state=EscalationState.ASSIGNED,
            level=0,
            due_at=now + timedelta(minutes=steps[0].wait_minutes),
            updated_at=now,
        )

    # ==================== NOTIFICATIONS ====================

    def _dispatch(self, recipients: Sequence[str], message: str) -> Optional[asyncio.Task]:
        """Deliver a notification in the background so a slow notifier never holds up a firing pass."""
        recipients = [r for r in dict.fromkeys(recipients) if r]
        if not recipients:
            return None
        task = asyncio.get_running_loop().create_task(self._deliver(recipients, message))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
        return task

    async def _deliver(self, recipients: List[str], message: str) -> bool:
        try:
            delivered = await self.notifier.notify(recipients, message)
        except Exception as e:
            logger.error("Escalation notification failed", recipients=recipients, error=str(e))
            return False
        if delivered is False:
            logger.error("Escalation notification not delivered", recipients=recipients)
            return False
        return True

    async def flush_notifications(self) -> None:
        """Wait for notifications still being delivered."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications))

    @property
    def pending_notifications(self) -> int:
        return len(self._notifications)

    def notify_original(self, record: EscalationRecord, decision: RoutingDecision) -> Optional[asyncio.Task]:
        """Tell the originally assigned handler that the request moved on."""
        return self._dispatch(
            [record.original_handler_id],
            f"Request {record.request_id} was escalated to {decision.handler_id} "
            f"(level {decision.escalation_level}) after no acknowledgment."
        )

    async def _alert_unresolved(self, record: EscalationRecord) -> None:
        current = await self.store.get_decision(record.current_decision_id)
        logger.warning(
            "Escalation chain exhausted without acknowledgment",
            request_id=record.request_id,
            level=record.level,
            handler_id=current.handler_id
        )
        self._dispatch(
            [current.handler_id, record.original_handler_id],
            f"Unresolved escalation: request {record.request_id} reached final level "
            f"{record.level} without acknowledgment."
        )

    # ==================== FIRING ====================

    async def fire_due(self, now: Optional[datetime] = None) -> List[RoutingDecision]:
        """
        Fire every escalation timer due at ``now``.

        Returns:
            List[RoutingDecision]: Escalated revisions appended by this pass
        """
        now = now or self.clock()
        fired = []
        for record in await self.store.due_escalations(now):
            try:
                decision = await self._fire(record, now)
            except RoutingUnresolvedError as e:
                logger.error("Escalation step could not be resolved", request_id=record.request_id, error=str(e))
                continue
            if decision is not None:
                fired.append(decision)
        return fired

    async def _fire(self, record: EscalationRecord, now: datetime) -> Optional[RoutingDecision]:
        async with self.store.request_lock(record.request_id):
            for attempt in range(MAX_COMMIT_ATTEMPTS):
                latest = await self.store.get_escalation(record.request_id)
                if (latest is None or latest.state == EscalationState.CLOSED
                        or latest.version != record.version or latest.due_at is None):
                    logger.debug("Escalation timer no longer armed", request_id=record.request_id)
                    return None

                current = await self.store.current_decision(record.request_id)
                if current is None or current.id != latest.current_decision_id:
                    return None

                if latest.is_final:
                    if await self.store.finalize_escalation(latest.request_id, latest.version):
                        await self._alert_unresolved(latest)
                    return None

                request = await self.store.get_request(latest.request_id)
                if request is None:
                    logger.error("Escalated request is missing from the store", request_id=latest.request_id)
                    return None

                step = latest.steps[latest.level]
                async with self.store.rotation_locks(self.resolver.rotation_keys(step.handler)):
                    committed = await self._escalate(latest, current, request, now)
                if committed is not None:
                    decision, next_record = committed
                    break
                logger.info("Escalation commit conflicted, re-checking", request_id=latest.request_id, attempt=attempt + 1)
            else:
                logger.error("Escalation gave up after repeated conflicts", request_id=record.request_id)
                return None

        logger.info(
            "Request escalated",
            request_id=decision.request_id,
            decision_id=decision.id,
            level=decision.escalation_level,
            handler_id=decision.handler_id
        )

        self._dispatch(
            [decision.handler_id],
            f"Request {decision.request_id} escalated to you (level {decision.escalation_level})."
        )
        if step.notify_original:
            self.notify_original(next_record, decision)
        if self.metrics is not None:
            await self.metrics.note_decision(decision)
        if self.events is not None:
            await self.events.publish(decision)
        return decision

    async def _escalate(self, latest: EscalationRecord, current: RoutingDecision, request: RoutingRequest,
                        now: datetime) -> Optional[Tuple[RoutingDecision, EscalationRecord]]:
        """Resolve the next step and commit it; None if the record or cursor moved underneath."""
        step = latest.steps[latest.level]
        level = latest.level + 1
        resolution = await self.resolver.resolve(step.handler, request)
        historical = (
            self.metrics.historical_accuracy(resolution.candidate.handler_id)
            if self.metrics is not None and resolution.candidate is not None else 0.5
        )
        decision = self.composer.compose(
            request,
            resolution,
            rule_id=current.matched_rule_id,
            rule_name=current.matched_rule_name,
            rule_match=current.factors.rule_match,
            historical_accuracy=historical,
            revision=current.revision + 1,
            supersedes=current.id,
            was_escalated=True,
            escalation_level=level,
            notes=[f"escalated to level {level} after {step.wait_minutes:g} minutes without acknowledgment"],
        )

        # After the last step the timer re-arms once more to raise the unresolved alert
        wait = latest.steps[level].wait_minutes if level < len(latest.steps) else step.wait_minutes
        next_record = latest.model_copy(update={
            "current_decision_id": decision.id,
            "state": EscalationState.ESCALATED,
            "level": level,
            "due_at": now + timedelta(minutes=wait),
            "version": latest.version + 1,
            "updated_at": now,
        })

        try:
            await self.store.commit_decision(
                decision,
                round_robin=resolution.round_robin,
                expected_current=current.id,
                escalation=next_record,
                expected_escalation_version=latest.version,
            )
        except StaleWriteError as e:
            logger.debug("Escalation commit rejected", request_id=latest.request_id, error=str(e))
            return None
        return decision, next_record

    # ==================== ACK / CANCEL ====================

    async def acknowledge(self, decision_id: str) -> bool:
        """
        Stop escalation for the request the decision belongs to.

        Idempotent: returns False if there was nothing open to stop, or if
        the decision has been superseded.

        Raises:
            DecisionNotFoundError: If the decision does not exist
        """
        decision = await self.store.get_decision(decision_id)
        closed = await self.store.close_escalation(
            decision.request_id, CloseReason.ACKNOWLEDGED, decision_id=decision_id
        )
        if closed:
            logger.info("Escalation acknowledged", request_id=decision.request_id, decision_id=decision_id)
        return closed

    async def cancel_for_reroute(self, request_id: str) -> bool:
        """Close any open escalation for a request being rerouted."""
        closed = await self.store.close_escalation(request_id, CloseReason.SUPERSEDED)
        if closed:
            logger.info("Escalation superseded by reroute", request_id=request_id)
        return closed

    # ==================== WORKER ====================

    def start(self) -> None:
        """Start the polling worker on the running loop."""
        if self._worker_task is not None and not self._worker_task.done():
            return

        async def escalation_worker():
            while True:
                try:
                    await asyncio.sleep(self.poll_seconds)
                    await self.fire_due()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Log error but don't crash the worker
                    logger.error("Escalation worker error", error=str(e))

        self._worker_task = asyncio.get_running_loop().create_task(escalation_worker())
        logger.info("Escalation worker started", poll_seconds=self.poll_seconds)

    async def stop(self) -> None:
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        await self.flush_notifications()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()
