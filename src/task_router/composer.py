"""
Decision composition: confidence scoring and reasoning for routing decisions.

Confidence is a weighted sum of four factors, each in [0,1]:
- rule_match: strength of the winning rule's criteria match
- skill_match: overlap between request categories and the assignee's skills
- availability: the assignee's free capacity
- historical_accuracy: smoothed accuracy of past decisions for the assignee

Weights come from configuration and are normalised to sum to 1.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from task_router.models import ConfidenceFactors, RoutingDecision, RoutingRequest
from task_router.resolver import Resolution


class RoutingUnresolvedError(Exception):
    """Raised when no handler, not even the default queue, can take a request."""

    code = "ROUTING_UNRESOLVED"

    def __init__(self, request_id: str, message: Optional[str] = None):
        self.request_id = request_id
        super().__init__(message or f"No handler could be resolved for request {request_id}")


FACTOR_LABELS = {
    "rule_match": "rule match",
    "skill_match": "skill match",
    "availability": "availability",
    "historical_accuracy": "historical accuracy",
}


@dataclass(frozen=True)
class ConfidenceWeights:
    rule_match: float = 0.40
    skill_match: float = 0.30
    availability: float = 0.25
    historical_accuracy: float = 0.05

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConfidenceWeights":
        return cls(
            rule_match=float(config.get("CONFIDENCE_WEIGHT_RULE_MATCH", cls.rule_match)),
            skill_match=float(config.get("CONFIDENCE_WEIGHT_SKILL_MATCH", cls.skill_match)),
            availability=float(config.get("CONFIDENCE_WEIGHT_AVAILABILITY", cls.availability)),
            historical_accuracy=float(config.get("CONFIDENCE_WEIGHT_HISTORICAL", cls.historical_accuracy)),
        ).normalized()

    def normalized(self) -> "ConfidenceWeights":
        total = self.rule_match + self.skill_match + self.availability + self.historical_accuracy
        if total <= 0:
            return ConfidenceWeights()
        return ConfidenceWeights(
            rule_match=self.rule_match / total,
            skill_match=self.skill_match / total,
            availability=self.availability / total,
            historical_accuracy=self.historical_accuracy / total,
        )

    def as_dict(self) -> Dict[str, float]:
        return {
            "rule_match": self.rule_match,
            "skill_match": self.skill_match,
            "availability": self.availability,
            "historical_accuracy": self.historical_accuracy,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class DecisionComposer:
    """Builds ``RoutingDecision`` revisions from a resolution and its scoring inputs."""

    def __init__(self, weights: Optional[ConfidenceWeights] = None, low_confidence_threshold: float = 0.6):
        self.weights = (weights or ConfidenceWeights()).normalized()
        self.low_confidence_threshold = low_confidence_threshold

    def score(self, factors: ConfidenceFactors) -> float:
        """Weighted confidence, clamped to [0,1]."""
        w = self.weights
        raw = (
            w.rule_match * factors.rule_match
            + w.skill_match * factors.skill_match
            + w.availability * factors.availability
            + w.historical_accuracy * factors.historical_accuracy
        )
        return round(_clamp(raw), 4)

    def dominant_factor(self, factors: ConfidenceFactors) -> str:
        """Factor contributing most to the score. Ties resolve in declaration order."""
        contributions = {
            name: weight * getattr(factors, name)
            for name, weight in self.weights.as_dict().items()
        }
        return max(contributions, key=lambda name: contributions[name])

    def build_reasoning(self, resolution: Resolution, factors: ConfidenceFactors, confidence: float, *,
                        rule_name: Optional[str] = None,
                        notes: Optional[List[str]] = None) -> str:
        candidate = resolution.candidate
        parts = []
        if rule_name:
            parts.append(f'Matched rule "{rule_name}".')
        parts.extend(note[0].upper() + note[1:] + "." for note in (notes or []) if note)
        parts.extend(note[0].upper() + note[1:] + "." for note in resolution.notes if note)
        parts.append(f"Assigned to {candidate.handler_type.value} {candidate.handler_id}.")

        dominant = self.dominant_factor(factors)
        parts.append(f"Dominant factor: {FACTOR_LABELS[dominant]} ({getattr(factors, dominant):.2f}).")
        if confidence < self.low_confidence_threshold:
            parts.append("Low confidence, review recommended.")
        return " ".join(parts)

    def compose(
        self,
        request: RoutingRequest,
        resolution: Resolution,
        *,
        rule_id: Optional[str] = None,
        rule_name: Optional[str] = None,
        rule_match: float = 0.0,
        historical_accuracy: float = 0.5,
        revision: int = 1,
        supersedes: Optional[str] = None,
        was_escalated: bool = False,
        was_rerouted: bool = False,
        escalation_level: int = 0,
        notes: Optional[List[str]] = None,
        processing_time_ms: float = 0.0,
    ) -> RoutingDecision:
        """
        Compose a decision revision for a resolved candidate.

        Raises:
            RoutingUnresolvedError: If the resolution has no candidate
        """
        candidate = resolution.candidate
        if candidate is None:
            raise RoutingUnresolvedError(request.id)

        factors = ConfidenceFactors(
            rule_match=_clamp(rule_match),
            skill_match=_clamp(candidate.skill_match),
            availability=_clamp(candidate.availability),
            historical_accuracy=_clamp(historical_accuracy),
        )
        confidence = self.score(factors)

        return RoutingDecision(
            request_id=request.id,
            revision=revision,
            supersedes=supersedes,
            request_type=request.type,
            categories=list(request.categories or []),
            urgency_score=request.effective_urgency,
            matched_rule_id=rule_id,
            matched_rule_name=rule_name,
            handler_type=candidate.handler_type,
            handler_id=candidate.handler_id,
            handler_name=candidate.handler_name,
            confidence=confidence,
            factors=factors,
            reasoning=self.build_reasoning(resolution, factors, confidence, rule_name=rule_name, notes=notes),
            alternative_handlers=list(resolution.alternatives),
            was_escalated=was_escalated,
            was_rerouted=was_rerouted,
            escalation_level=escalation_level,
            processing_time_ms=round(max(0.0, processing_time_ms), 3),
        )

    def compose_unmatched(self, request: RoutingRequest, resolution: Resolution,
                          processing_time_ms: float = 0.0) -> RoutingDecision:
        """Decision for a request no rule matched: default queue, confidence 0."""
        candidate = resolution.candidate
        if candidate is None:
            raise RoutingUnresolvedError(request.id)

        return RoutingDecision(
            request_id=request.id,
            request_type=request.type,
            categories=list(request.categories or []),
            urgency_score=request.effective_urgency,
            handler_type=candidate.handler_type,
            handler_id=candidate.handler_id,
            handler_name=candidate.handler_name,
            confidence=0.0,
            factors=ConfidenceFactors(),
            reasoning=f"No rule matched. Routed to default queue {candidate.handler_id}.",
            alternative_handlers=[],
            processing_time_ms=round(max(0.0, processing_time_ms), 3),
        )
