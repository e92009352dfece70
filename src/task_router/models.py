"""
Pydantic data models for the Task Routing Engine.

This module defines all data structures used throughout the engine,
including routing rules and handlers, requests and decisions, feedback,
metrics, escalation records, directory entries and API payloads.
"""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Optional, Union, Literal, Any
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from enum import Enum
import uuid

from task_router.expressions import ExpressionError, compile_expression


def utc_now():
    """Timezone-aware now, used as the default for every timestamp field."""
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================
class HandlerType(str, Enum):
    """Kinds of routing targets."""
    PERSON = "person"
    TEAM = "team"
    QUEUE = "queue"
    ROUND_ROBIN = "round_robin"


class FeedbackCategory(str, Enum):
    """What the human reviewer did with the routing decision."""
    ACCEPTED = "accepted"
    CORRECTED = "corrected"
    REROUTED = "rerouted"
    OTHER = "other"


class EscalationState(str, Enum):
    """Escalation state machine states."""
    ASSIGNED = "assigned"
    ESCALATED = "escalated"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why an escalation record reached a terminal state."""
    ACKNOWLEDGED = "acknowledged"
    SUPERSEDED = "superseded"
    EXHAUSTED = "exhausted"


class TrendInterval(str, Enum):
    """Bucket width for routing trends."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


# Handler models
class EscalationStep(BaseModel):
    """One step of an escalation chain."""
    wait_minutes: float = Field(..., gt=0, description="Minutes to wait for acknowledgment before this step fires")
    handler: "RouteHandler" = Field(..., description="Handler that receives the request at this step")
    notify_original: bool = Field(default=False, description="Notify the originally assigned handler when this step fires")


class _HandlerBase(BaseModel):
    escalation_path: List[EscalationStep] = Field(default_factory=list, description="Ordered escalation steps")


class PersonHandler(_HandlerBase):
    """Route directly to one person."""
    type: Literal["person"] = "person"
    person_id: str = Field(..., min_length=1)

    @property
    def target_id(self) -> str:
        return self.person_id


class TeamHandler(_HandlerBase):
    """Route to the least-loaded available member of a team."""
    type: Literal["team"] = "team"
    team_id: str = Field(..., min_length=1)

    @property
    def target_id(self) -> str:
        return self.team_id


class QueueHandler(_HandlerBase):
    """Route to a shared queue without individual assignment."""
    type: Literal["queue"] = "queue"
    queue_name: str = Field(..., min_length=1)

    @property
    def target_id(self) -> str:
        return self.queue_name


class RoundRobinHandler(_HandlerBase):
    """Rotate through an ordered pool of people."""
    type: Literal["round_robin"] = "round_robin"
    person_ids: List[str] = Field(..., min_length=1, description="Ordered rotation pool")

    @property
    def target_id(self) -> str:
        return ",".join(self.person_ids)


RouteHandler = Annotated[
    Union[PersonHandler, TeamHandler, QueueHandler, RoundRobinHandler],
    Field(discriminator="type"),
]

for _model in (EscalationStep, PersonHandler, TeamHandler, QueueHandler, RoundRobinHandler):
    _model.model_rebuild()


# Rule models
class RequestCriteria(BaseModel):
    """Match predicate of a routing rule. Empty fields are wildcards."""
    categories: List[str] = Field(default_factory=list, description="Any of these classifier categories")
    keywords: List[str] = Field(default_factory=list, description="Any of these keywords in subject or content")
    sender_patterns: List[str] = Field(default_factory=list, description="Glob patterns or @domain suffixes for the sender")
    min_urgency: Optional[float] = Field(None, ge=0.0, le=1.0, description="Inclusive lower urgency bound")
    max_urgency: Optional[float] = Field(None, ge=0.0, le=1.0, description="Inclusive upper urgency bound")
    request_types: List[str] = Field(default_factory=list, description="Any of these request types")
    custom_expression: Optional[str] = Field(None, description="Boolean expression in the sandboxed rule language")

    @field_validator('max_urgency')
    @classmethod
    def validate_urgency_range(cls, v, info: ValidationInfo):
        min_urgency = info.data.get('min_urgency')
        if v is not None and min_urgency is not None and min_urgency > v:
            raise ValueError(f'min_urgency ({min_urgency}) must not exceed max_urgency ({v})')
        return v

    @field_validator('custom_expression')
    @classmethod
    def validate_custom_expression(cls, v):
        if v is None or not v.strip():
            return None
        try:
            compile_expression(v)
        except ExpressionError as e:
            raise ValueError(f'Invalid custom expression: {e}')
        return v.strip()

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "categories": ["support"],
            "keywords": ["outage", "down"],
            "min_urgency": 0.8,
            "custom_expression": "metadata.tier == 'enterprise'"
        }
    })


class RoutingRule(BaseModel):
    """A named, prioritized routing policy."""
    id: str = Field(default_factory=lambda: f"rule_{uuid.uuid4().hex[:16]}", description="Unique rule identifier")
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None)
    priority: int = Field(default=100, ge=0, description="Lower values are evaluated first")
    is_active: bool = Field(default=True)
    criteria: RequestCriteria = Field(default_factory=RequestCriteria)
    handler: RouteHandler
    fallback_handler: Optional[RouteHandler] = Field(None)
    workload_limit: Optional[int] = Field(None, ge=0, description="Max in-flight assignments before the fallback is used")
    sequence: int = Field(default=0, ge=0, description="Creation order, used as the final tie-break")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "rule_9b1c2d3e4f5a6b7c",
            "name": "Urgent support to senior team",
            "priority": 100,
            "is_active": True,
            "criteria": {"categories": ["support"], "min_urgency": 0.8},
            "handler": {"type": "team", "team_id": "senior-support"},
            "fallback_handler": {"type": "queue", "queue_name": "support"},
            "workload_limit": 25
        }
    })


class RoutingRuleCreate(BaseModel):
    """Payload for creating a routing rule."""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: int = Field(default=100, ge=0)
    is_active: bool = True
    criteria: RequestCriteria = Field(default_factory=RequestCriteria)
    handler: RouteHandler
    fallback_handler: Optional[RouteHandler] = None
    workload_limit: Optional[int] = Field(None, ge=0)


class RoutingRuleUpdate(BaseModel):
    """Partial update for a routing rule."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    criteria: Optional[RequestCriteria] = None
    handler: Optional[RouteHandler] = None
    fallback_handler: Optional[RouteHandler] = None
    workload_limit: Optional[int] = Field(None, ge=0)


# Request models
class RoutingRequest(BaseModel):
    """Normalized unit of work submitted for routing. Immutable once created."""
    id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}", description="Request identifier")
    type: str = Field(default="general", min_length=1, description="Request type, e.g. support or billing")
    content: str = Field(..., min_length=1, max_length=20000)
    subject: Optional[str] = Field(None, max_length=500)
    sender: Optional[str] = Field(None, max_length=320)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    categories: Optional[List[str]] = Field(None, description="Classifier-derived categories, if already known")
    urgency_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="Classifier-derived urgency, if already known")

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        if not v or v.isspace():
            raise ValueError('Request content cannot be empty or only whitespace')
        return v.strip()

    @property
    def effective_urgency(self) -> float:
        """Urgency from the classifier, then metadata, then a neutral 0.5."""
        if self.urgency_score is not None:
            return self.urgency_score
        raw = self.metadata.get("urgency")
        if raw is not None:
            try:
                return min(1.0, max(0.0, float(raw)))
            except (TypeError, ValueError):
                pass
        return 0.5

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "id": "req_550e8400e29b41d4",
            "type": "support",
            "content": "Production dashboard is down for all users",
            "subject": "Outage",
            "sender": "ops@customer.com",
            "metadata": {"urgency": 0.9, "tier": "enterprise"}
        }
    })


class RoutingOptions(BaseModel):
    """Per-call routing options."""
    ignore_workload: bool = Field(default=False, description="Skip capacity checks")
    skip_rules: bool = Field(default=False, description="Route straight to the default queue")
    max_alternatives: Optional[int] = Field(None, ge=0, le=20)


class RouteRequestPayload(RoutingRequest):
    """Body of POST /routing/route."""
    options: RoutingOptions = Field(default_factory=RoutingOptions)

    def to_request(self) -> RoutingRequest:
        return RoutingRequest(**self.model_dump(exclude={"options"}))


class BatchRouteRequest(BaseModel):
    """Body of POST /routing/route/batch."""
    requests: List[RouteRequestPayload] = Field(..., min_length=1, max_length=100)


class BatchRouteResult(BaseModel):
    """Outcome for one item of a batch; exactly one of decision or error is set."""
    request_id: str
    decision: Optional["RoutingDecision"] = None
    error: Optional[str] = None


class ClassificationResult(BaseModel):
    """Output of the content classifier."""
    categories: List[str] = Field(default_factory=list)
    urgency_score: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class CapacityInfo(BaseModel):
    """Workload reading for one handler."""
    handler_id: str
    active_tasks: int = Field(default=0, ge=0)
    capacity: int = Field(default=0, ge=0)
    available: bool = Field(default=True, description="False when the handler is away or unreachable")


# Decision models
class ConfidenceFactors(BaseModel):
    """Per-factor inputs to the confidence score."""
    rule_match: float = Field(default=0.0, ge=0.0, le=1.0)
    skill_match: float = Field(default=0.0, ge=0.0, le=1.0)
    availability: float = Field(default=0.0, ge=0.0, le=1.0)
    historical_accuracy: float = Field(default=0.0, ge=0.0, le=1.0)


class AlternativeHandler(BaseModel):
    """A ranked runner-up target."""
    handler_type: HandlerType
    handler_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""


class RoutingDecision(BaseModel):
    """One revision of the routing outcome for a request."""
    id: str = Field(default_factory=lambda: f"rd_{uuid.uuid4().hex[:16]}")
    request_id: str
    revision: int = Field(default=1, ge=1)
    supersedes: Optional[str] = Field(None, description="Decision id of the previous revision")
    request_type: str
    categories: List[str] = Field(default_factory=list)
    urgency_score: float = Field(default=0.5, ge=0.0, le=1.0)
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    handler_type: HandlerType
    handler_id: str
    handler_name: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    factors: ConfidenceFactors = Field(default_factory=ConfidenceFactors)
    reasoning: str
    alternative_handlers: List[AlternativeHandler] = Field(default_factory=list)
    was_escalated: bool = False
    was_rerouted: bool = False
    escalation_level: int = Field(default=0, ge=0)
    feedback_score: Optional[int] = Field(None, ge=1, le=5)
    feedback_comment: Optional[str] = None
    processing_time_ms: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "rd_0f1e2d3c4b5a6978",
            "request_id": "req_550e8400e29b41d4",
            "revision": 1,
            "request_type": "support",
            "categories": ["support"],
            "urgency_score": 0.9,
            "matched_rule_id": "rule_9b1c2d3e4f5a6b7c",
            "matched_rule_name": "Urgent support to senior team",
            "handler_type": "person",
            "handler_id": "alice",
            "confidence": 0.86,
            "factors": {"rule_match": 1.0, "skill_match": 0.8, "availability": 0.7, "historical_accuracy": 0.5},
            "reasoning": "Matched rule \"Urgent support to senior team\". Dominant factor: rule match (1.00).",
            "alternative_handlers": [],
            "was_escalated": False,
            "was_rerouted": False
        }
    })


class RerouteRequest(BaseModel):
    """Manual reroute instruction."""
    handler: RouteHandler
    reason: Optional[str] = Field(None, max_length=1000)


class RoutingFeedback(BaseModel):
    """Post-hoc feedback on a routing decision."""
    decision_id: str
    score: int = Field(..., ge=1, le=5)
    category: FeedbackCategory = FeedbackCategory.OTHER
    comment: Optional[str] = Field(None, max_length=2000)
    corrected_handler_id: Optional[str] = None
    resolution_time_ms: Optional[float] = Field(None, ge=0.0)
    created_at: datetime = Field(default_factory=utc_now)


class FeedbackPayload(BaseModel):
    """Body of POST /routing/decisions/{id}/feedback."""
    score: int = Field(..., ge=1, le=5)
    category: FeedbackCategory = FeedbackCategory.OTHER
    comment: Optional[str] = Field(None, max_length=2000)
    corrected_handler_id: Optional[str] = None
    resolution_time_ms: Optional[float] = Field(None, ge=0.0)


# Escalation models
class EscalationRecord(BaseModel):
    """Durable escalation state for one request. Doubles as the timer entry."""
    request_id: str
    current_decision_id: str
    original_handler_type: HandlerType
    original_handler_id: str
    steps: List[EscalationStep] = Field(default_factory=list)
    state: EscalationState = EscalationState.ASSIGNED
    level: int = Field(default=0, ge=0)
    due_at: Optional[datetime] = None
    closed_reason: Optional[CloseReason] = None
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_final(self) -> bool:
        return self.level >= len(self.steps)


class AcknowledgeResponse(BaseModel):
    """Result of acknowledging or completing a decision."""
    decision_id: str
    acknowledged: bool
    released: bool = False
    escalation_state: Optional[EscalationState] = None


# Directory models
class Person(BaseModel):
    """Someone who can be assigned work."""
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    team_ids: List[str] = Field(default_factory=list)
    active: bool = True


class Team(BaseModel):
    """A group of people sharing a workload."""
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)


class Queue(BaseModel):
    """A shared work queue."""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


# Metrics models
class MetricsBreakdown(BaseModel):
    """Aggregates for one slice (request type or handler)."""
    key: str
    total_decisions: int = 0
    average_confidence: float = 0.0
    escalation_rate: float = 0.0
    reroute_rate: float = 0.0
    accuracy_rate: float = 0.0
    feedback_count: int = 0
    average_feedback_score: Optional[float] = None
    average_resolution_time_ms: Optional[float] = None


class CategoryDistribution(BaseModel):
    category: str
    count: int
    percentage: float
    average_confidence: float


class RuleEffectiveness(BaseModel):
    rule_id: str
    rule_name: Optional[str] = None
    matches: int = 0
    average_confidence: float = 0.0
    accuracy_rate: float = 0.0
    escalation_rate: float = 0.0


class RoutingMetrics(BaseModel):
    """Projection of decision and feedback history over a time window."""
    window_start: datetime
    window_end: datetime
    total_decisions: int = 0
    average_confidence: float = 0.0
    escalation_rate: float = 0.0
    reroute_rate: float = 0.0
    accuracy_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    by_request_type: Dict[str, MetricsBreakdown] = Field(default_factory=dict)
    by_handler: Dict[str, MetricsBreakdown] = Field(default_factory=dict)
    category_distribution: List[CategoryDistribution] = Field(default_factory=list)
    rule_effectiveness: List[RuleEffectiveness] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


class TrendPoint(BaseModel):
    time: datetime = Field(..., description="Start of the bucket")
    value: float


class RoutingTrends(BaseModel):
    """Per-bucket time series over a window. Buckets without decisions are omitted."""
    interval: TrendInterval
    window_start: datetime
    window_end: datetime
    volume: List[TrendPoint] = Field(default_factory=list)
    confidence: List[TrendPoint] = Field(default_factory=list)
    success_rate: List[TrendPoint] = Field(default_factory=list)
    escalation_rate: List[TrendPoint] = Field(default_factory=list)


# Event and API support models
class RoutingEvent(BaseModel):
    """Real-time notification of a new decision revision."""
    event: str = "routing.decision"
    decision: RoutingDecision
    timestamp: datetime = Field(default_factory=utc_now)


class DecisionQuery(BaseModel):
    """Filters for listing decisions. Every filter is optional."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    handler_id: Optional[str] = None
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    was_escalated: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    @field_validator('max_confidence')
    @classmethod
    def validate_confidence_range(cls, v, info: ValidationInfo):
        min_confidence = info.data.get('min_confidence')
        if v is not None and min_confidence is not None and min_confidence > v:
            raise ValueError(f'min_confidence ({min_confidence}) must not exceed max_confidence ({v})')
        return v

    def accepts(self, decision: RoutingDecision) -> bool:
        if self.start is not None and decision.created_at < self.start:
            return False
        if self.end is not None and decision.created_at > self.end:
            return False
        if self.handler_id is not None and decision.handler_id != self.handler_id:
            return False
        if self.min_confidence is not None and decision.confidence < self.min_confidence:
            return False
        if self.max_confidence is not None and decision.confidence > self.max_confidence:
            return False
        if self.was_escalated is not None and decision.was_escalated != self.was_escalated:
            return False
        return True


class DecisionPage(BaseModel):
    """One page of decisions, newest first, and the number matching overall."""
    decisions: List[RoutingDecision] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int


class RuleMatchPreview(BaseModel):
    """A rule that would match, in evaluation order."""
    rule_id: str
    rule_name: str
    priority: int
    strength: float
    field_scores: Dict[str, float] = Field(default_factory=dict)


class RuleMatchResponse(BaseModel):
    """Result of a dry-run rule match. Nothing is committed."""
    request_id: str
    categories: List[str] = Field(default_factory=list)
    urgency_score: float
    matches: List[RuleMatchPreview] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Body returned for every non-2xx response."""
    error: str = Field(..., description="Machine-readable code, e.g. RULE_NOT_FOUND")
    message: str = Field(..., description="What went wrong")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured context, e.g. field errors")
    request_id: Optional[str] = Field(None, description="Correlation id from X-Request-ID")
    timestamp: datetime = Field(default_factory=utc_now, description="When the error was produced")


class HealthResponse(BaseModel):
    """Result of GET /health."""
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: str
    version: str = "1.0.0"
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


BatchRouteResult.model_rebuild()
