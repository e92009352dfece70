"""
Handler resolution: turn a rule's abstract handler into a concrete assignee.

Resolution order for a rule:
1. The primary handler, unless the rule's workload limit is reached
2. The rule's fallback handler
3. For a person who exists but is over capacity, the least-loaded person
   sharing their skills
4. The default queue

A missing person, team or queue is never an error here: resolution fails
closed down this chain. Round-robin and team rotation cursors are only
read; the advance is returned as a ``RoundRobinCommit`` and applied by the
store when the decision is committed.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from loguru import logger

from task_router.collaborators import CollaboratorError, WorkloadService
from task_router.directory import HandlerDirectory
from task_router.matcher import request_categories
from task_router.models import (
    AlternativeHandler,
    CapacityInfo,
    HandlerType,
    PersonHandler,
    QueueHandler,
    RoundRobinHandler,
    RouteHandler,
    RoutingRequest,
    RoutingRule,
    TeamHandler,
)
from task_router.store import RoundRobinCommit, RoutingStore


# Skill score floor for people a rule names explicitly
NAMED_TARGET_SKILL_BASE = 0.6
QUEUE_SKILL_MATCH = 0.5
QUEUE_AVAILABILITY = 1.0
UNKNOWN_LOAD_AVAILABILITY = 0.5


@dataclass
class Candidate:
    """Concrete assignment target with its scoring inputs."""
    handler_type: HandlerType
    handler_id: str
    handler_name: Optional[str] = None
    skill_match: float = 0.0
    availability: float = 0.0
    load: int = 0


@dataclass
class Resolution:
    """Result of resolving a handler for one request."""
    candidate: Optional[Candidate]
    alternatives: List[AlternativeHandler] = field(default_factory=list)
    round_robin: Optional[RoundRobinCommit] = None
    used_fallback: bool = False
    used_skill_backup: bool = False
    used_default_queue: bool = False
    notes: List[str] = field(default_factory=list)


@dataclass
class _Load:
    capacity: Optional[CapacityInfo]
    load: int
    has_capacity: bool
    availability: float


class HandlerResolver:
    """Resolves handler references against the directory and workload signals."""

    def __init__(self, directory: HandlerDirectory, workload: WorkloadService, store: RoutingStore,
                 default_queue: str = "general", max_alternatives: int = 3):
        self.directory = directory
        self.workload = workload
        self.store = store
        self.default_queue = default_queue
        self.max_alternatives = max_alternatives

    # ==================== WORKLOAD ====================

    async def _load(self, person_id: str) -> _Load:
        """Capacity reading plus in-flight assignments not yet reflected upstream."""
        in_flight = self.store.in_flight(person_id)
        try:
            info = await self.workload.get_capacity(person_id)
        except CollaboratorError as e:
            logger.warning("Capacity unavailable, assuming unknown load", handler_id=person_id, error=str(e))
            return _Load(capacity=None, load=in_flight, has_capacity=True, availability=UNKNOWN_LOAD_AVAILABILITY)

        load = info.active_tasks + in_flight
        if not info.available or info.capacity <= 0:
            return _Load(capacity=info, load=load, has_capacity=False, availability=0.0)
        headroom = max(0.0, (info.capacity - load) / info.capacity)
        return _Load(capacity=info, load=load, has_capacity=load < info.capacity, availability=round(headroom, 6))

    # ==================== ALTERNATIVES ====================

    async def _ranked_people(self, person_ids: List[str], categories: List[str],
                             ignore_workload: bool) -> List[Tuple[str, _Load]]:
        ranked = []
        for person_id in person_ids:
            load = await self._load(person_id)
            if load.has_capacity or ignore_workload:
                ranked.append((person_id, load))
        ranked.sort(key=lambda item: (item[1].load, -self.directory.skill_overlap(item[0], categories), item[0]))
        return ranked

    async def same_skill_alternatives(self, person_id: str, request: RoutingRequest, limit: int,
                                      ignore_workload: bool = False,
                                      exclude: Tuple[str, ...] = ()) -> List[AlternativeHandler]:
        """People sharing skills with ``person_id``, least loaded first."""
        person = self.directory.get_person(person_id)
        skills = list(person.skills) if person else []
        if not skills:
            skills = request_categories(request)
        peers = self.directory.persons_with_skills(skills, exclude=(person_id,) + tuple(exclude))
        categories = request_categories(request)
        ranked = await self._ranked_people([p.id for p in peers], categories, ignore_workload)
        return [
            AlternativeHandler(
                handler_type=HandlerType.PERSON,
                handler_id=pid,
                score=round(min(1.0, 0.5 * load.availability + 0.5 * self.directory.skill_overlap(pid, categories)), 6),
                reason=f"Shares skills with {person_id}, current load {load.load}"
            )
            for pid, load in ranked[:limit]
        ]

    # ==================== ROTATION KEYS ====================

    @staticmethod
    def _team_key(handler: TeamHandler) -> str:
        return f"team:{handler.team_id}"

    @staticmethod
    def _round_robin_key(handler: RoundRobinHandler, rule: Optional[RoutingRule]) -> str:
        return f"rr:{rule.id}" if rule is not None else "rr:" + "|".join(handler.person_ids)

    def rotation_keys(self, handler: RouteHandler, rule: Optional[RoutingRule] = None) -> List[str]:
        """Cursor keys that resolving ``handler`` (and the rule's fallback) may advance."""
        keys = []
        for target, owner in ((handler, rule), (rule.fallback_handler if rule else None, None)):
            if isinstance(target, TeamHandler):
                keys.append(self._team_key(target))
            elif isinstance(target, RoundRobinHandler):
                keys.append(self._round_robin_key(target, owner))
        return keys

    # ==================== PER-VARIANT RESOLUTION ====================

    def _named_skill(self, person_id: str, categories: List[str]) -> float:
        overlap = self.directory.skill_overlap(person_id, categories)
        return round(NAMED_TARGET_SKILL_BASE + (1.0 - NAMED_TARGET_SKILL_BASE) * overlap, 6)

    async def _resolve_person(self, handler: PersonHandler, request: RoutingRequest,
                              ignore_workload: bool, limit: int) -> Optional[Resolution]:
        person = self.directory.get_person(handler.person_id)
        if person is None or not person.active:
            logger.warning("Person handler no longer exists", person_id=handler.person_id, request_id=request.id)
            return None

        load = await self._load(person.id)
        if not load.has_capacity and not ignore_workload:
            logger.info("Person over capacity", person_id=person.id, load=load.load)
            return None

        candidate = Candidate(
            handler_type=HandlerType.PERSON,
            handler_id=person.id,
            handler_name=person.name,
            skill_match=self._named_skill(person.id, request_categories(request)),
            availability=load.availability,
            load=load.load,
        )
        alternatives = await self.same_skill_alternatives(person.id, request, limit, ignore_workload)
        return Resolution(candidate=candidate, alternatives=alternatives)

    async def _resolve_team(self, handler: TeamHandler, request: RoutingRequest,
                            ignore_workload: bool, limit: int) -> Optional[Resolution]:
        if not self.directory.has_team(handler.team_id):
            logger.warning("Team handler no longer exists", team_id=handler.team_id, request_id=request.id)
            return None

        members = self.directory.team_members(handler.team_id)
        if not members:
            logger.warning("Team has no active members", team_id=handler.team_id)
            return None

        key = self._team_key(handler)
        cursor = self.store.cursor(key)
        size = len(members)
        rotation = {m.id: (index - cursor) % size for index, m in enumerate(members)}

        eligible = []
        for member in members:
            load = await self._load(member.id)
            if load.has_capacity or ignore_workload:
                eligible.append((member, load))
        if not eligible:
            logger.info("No team member has capacity", team_id=handler.team_id)
            return None

        # Least loaded first, ties broken by rotation order from the cursor
        eligible.sort(key=lambda item: (item[1].load, rotation[item[0].id]))
        chosen, chosen_load = eligible[0]
        categories = request_categories(request)

        candidate = Candidate(
            handler_type=HandlerType.PERSON,
            handler_id=chosen.id,
            handler_name=chosen.name,
            skill_match=self._named_skill(chosen.id, categories),
            availability=chosen_load.availability,
            load=chosen_load.load,
        )
        alternatives = [
            AlternativeHandler(
                handler_type=HandlerType.PERSON,
                handler_id=member.id,
                score=round(min(1.0, 0.5 * load.availability + 0.5 * self._named_skill(member.id, categories)), 6),
                reason=f"Member of team {handler.team_id}, current load {load.load}"
            )
            for member, load in eligible[1:limit + 1]
        ]
        return Resolution(
            candidate=candidate,
            alternatives=alternatives,
            round_robin=RoundRobinCommit(key=key, expected_cursor=cursor, next_cursor=cursor + 1),
            notes=[f"least-loaded member of team {handler.team_id}"],
        )

    def _resolve_queue(self, handler: QueueHandler, request: RoutingRequest) -> Optional[Resolution]:
        if not self.directory.has_queue(handler.queue_name):
            logger.warning("Queue handler no longer exists", queue=handler.queue_name, request_id=request.id)
            return None
        return Resolution(candidate=Candidate(
            handler_type=HandlerType.QUEUE,
            handler_id=handler.queue_name,
            handler_name=handler.queue_name,
            skill_match=QUEUE_SKILL_MATCH,
            availability=QUEUE_AVAILABILITY,
        ))

    async def _resolve_round_robin(self, handler: RoundRobinHandler, request: RoutingRequest,
                                   rule: Optional[RoutingRule], ignore_workload: bool) -> Optional[Resolution]:
        key = self._round_robin_key(handler, rule)
        cursor = self.store.cursor(key)
        size = len(handler.person_ids)
        categories = request_categories(request)

        for offset in range(size):
            person_id = handler.person_ids[(cursor + offset) % size]
            if not self.directory.has_person(person_id):
                logger.warning("Round-robin member no longer exists", person_id=person_id)
                continue
            load = await self._load(person_id)
            if not load.has_capacity and not ignore_workload:
                continue

            person = self.directory.get_person(person_id)
            candidate = Candidate(
                handler_type=HandlerType.PERSON,
                handler_id=person_id,
                handler_name=person.name if person else None,
                skill_match=self._named_skill(person_id, categories),
                availability=load.availability,
                load=load.load,
            )
            upcoming = [
                handler.person_ids[(cursor + offset + step) % size]
                for step in range(1, size)
            ]
            alternatives = [
                AlternativeHandler(
                    handler_type=HandlerType.PERSON,
                    handler_id=pid,
                    score=0.5,
                    reason="Next in round-robin rotation"
                )
                for pid in dict.fromkeys(upcoming) if pid != person_id and self.directory.has_person(pid)
            ][:self.max_alternatives]
            return Resolution(
                candidate=candidate,
                alternatives=alternatives,
                round_robin=RoundRobinCommit(key=key, expected_cursor=cursor, next_cursor=cursor + offset + 1),
                notes=[f"round-robin slot {(cursor + offset) % size + 1} of {size}"],
            )

        return None

    async def _resolve_handler(self, handler: RouteHandler, request: RoutingRequest,
                               rule: Optional[RoutingRule], ignore_workload: bool,
                               limit: int) -> Optional[Resolution]:
        if isinstance(handler, PersonHandler):
            return await self._resolve_person(handler, request, ignore_workload, limit)
        if isinstance(handler, TeamHandler):
            return await self._resolve_team(handler, request, ignore_workload, limit)
        if isinstance(handler, QueueHandler):
            return self._resolve_queue(handler, request)
        if isinstance(handler, RoundRobinHandler):
            return await self._resolve_round_robin(handler, request, rule, ignore_workload)
        raise TypeError(f"Unsupported handler type: {type(handler).__name__}")

    # ==================== PUBLIC API ====================

    def handler_exists(self, handler: RouteHandler) -> bool:
        """Whether every target the handler references is in the directory."""
        if isinstance(handler, PersonHandler):
            return self.directory.has_person(handler.person_id)
        if isinstance(handler, TeamHandler):
            return self.directory.has_team(handler.team_id)
        if isinstance(handler, QueueHandler):
            return self.directory.has_queue(handler.queue_name)
        if isinstance(handler, RoundRobinHandler):
            return all(self.directory.has_person(pid) for pid in handler.person_ids)
        raise TypeError(f"Unsupported handler type: {type(handler).__name__}")

    def resolve_default(self, note: Optional[str] = None) -> Resolution:
        """The default queue, or an empty resolution if even that is missing."""
        if not self.directory.has_queue(self.default_queue):
            logger.error("Default queue is not registered", queue=self.default_queue)
            return Resolution(candidate=None, notes=[note] if note else [])
        return Resolution(
            candidate=Candidate(
                handler_type=HandlerType.QUEUE,
                handler_id=self.default_queue,
                handler_name=self.default_queue,
                skill_match=QUEUE_SKILL_MATCH,
                availability=QUEUE_AVAILABILITY,
            ),
            used_default_queue=True,
            notes=[note] if note else [],
        )

    async def resolve(self, handler: RouteHandler, request: RoutingRequest, *,
                      rule: Optional[RoutingRule] = None,
                      ignore_workload: bool = False,
                      max_alternatives: Optional[int] = None) -> Resolution:
        """
        Resolve a handler (and the rule's fallback chain) to a concrete candidate.

        Args:
            handler: Primary handler reference
            request: Request being routed
            rule: Rule that selected the handler, for workload limit and fallback
            ignore_workload: Skip capacity checks
            max_alternatives: Override the configured alternative count

        Returns:
            Resolution: candidate is None only if the default queue is missing
        """
        limit = self.max_alternatives if max_alternatives is None else max_alternatives

        limit_reached = (
            rule is not None
            and rule.workload_limit is not None
            and not ignore_workload
            and self.store.rule_in_flight(rule.id) >= rule.workload_limit
        )
        if limit_reached:
            logger.info("Rule workload limit reached", rule_id=rule.id, workload_limit=rule.workload_limit)
        else:
            resolution = await self._resolve_handler(handler, request, rule, ignore_workload, limit)
            if resolution is not None:
                return resolution

        reason = "workload limit reached" if limit_reached else "primary handler unavailable"

        if rule is not None and rule.fallback_handler is not None:
            resolution = await self._resolve_handler(rule.fallback_handler, request, None, ignore_workload, limit)
            if resolution is not None:
                resolution.used_fallback = True
                resolution.notes.insert(0, f"{reason}, used fallback handler")
                return resolution

        if isinstance(handler, PersonHandler) and self.directory.has_person(handler.person_id):
            backups = await self.same_skill_alternatives(handler.person_id, request, limit + 1, ignore_workload)
            if backups:
                chosen = backups[0]
                person = self.directory.get_person(chosen.handler_id)
                load = await self._load(chosen.handler_id)
                return Resolution(
                    candidate=Candidate(
                        handler_type=HandlerType.PERSON,
                        handler_id=chosen.handler_id,
                        handler_name=person.name if person else None,
                        skill_match=self.directory.skill_overlap(chosen.handler_id, request_categories(request)),
                        availability=load.availability,
                        load=load.load,
                    ),
                    alternatives=backups[1:limit + 1],
                    used_skill_backup=True,
                    notes=[f"{reason}, assigned same-skill backup"],
                )

        return self.resolve_default(f"{reason}, fell back to default queue")
