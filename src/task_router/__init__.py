"""
Task Routing Engine
Rule-based routing of incoming work to people, teams and queues, with
confidence scoring, workload awareness, escalation and feedback metrics.
"""

__version__ = "1.0.0"

from .models import (
    HandlerType,
    PersonHandler,
    TeamHandler,
    QueueHandler,
    RoundRobinHandler,
    EscalationStep,
    RequestCriteria,
    RoutingRule,
    RoutingRequest,
    RoutingDecision,
    RoutingFeedback,
    RoutingMetrics,
)
from .engine import RoutingEngine, RuleValidationError, get_routing_engine
from .composer import RoutingUnresolvedError
from .store import RoutingStore, RuleNotFoundError, DecisionNotFoundError

__all__ = [
    '__version__',
    'HandlerType',
    'PersonHandler',
    'TeamHandler',
    'QueueHandler',
    'RoundRobinHandler',
    'EscalationStep',
    'RequestCriteria',
    'RoutingRule',
    'RoutingRequest',
    'RoutingDecision',
    'RoutingFeedback',
    'RoutingMetrics',
    'RoutingEngine',
    'RuleValidationError',
    'RoutingUnresolvedError',
    'RoutingStore',
    'RuleNotFoundError',
    'DecisionNotFoundError',
    'get_routing_engine',
]
