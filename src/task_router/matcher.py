"""
Criteria matching for routing rules.

Every populated criteria field is a hard condition (AND semantics). Each
field also yields an overlap score; the weighted average over populated
fields is the rule's match strength, used to order rules that share a
priority. Custom expressions run last and are an additional hard condition.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from task_router.expressions import ExpressionError, compile_expression
from task_router.models import RequestCriteria, RoutingRequest


# Relative weight of each criteria dimension in the match strength
FIELD_WEIGHTS = {
    "categories": 0.35,
    "keywords": 0.25,
    "urgency": 0.15,
    "request_types": 0.15,
    "sender": 0.10,
}


@dataclass
class CriteriaMatch:
    """Outcome of evaluating one rule's criteria against a request."""
    matched: bool
    strength: float = 0.0
    field_scores: Dict[str, float] = field(default_factory=dict)
    failed_field: Optional[str] = None

    @classmethod
    def failure(cls, failed_field: str, field_scores: Dict[str, float]) -> "CriteriaMatch":
        return cls(matched=False, strength=0.0, field_scores=field_scores, failed_field=failed_field)


def _normalize(values: List[str]) -> List[str]:
    return [v.strip().lower() for v in values if v and v.strip()]


def _keyword_in_text(keyword: str, text: str) -> bool:
    # Word boundaries to avoid partial matches, as the classifier does
    return re.search(rf'\b{re.escape(keyword)}\b', text) is not None


def _sender_matches(pattern: str, sender: str) -> bool:
    pattern = pattern.strip().lower()
    if pattern.startswith("@"):
        return sender.endswith(pattern)
    return fnmatch.fnmatchcase(sender, pattern)


def request_categories(request: RoutingRequest) -> List[str]:
    """Categories attached by the classifier, falling back to the request type."""
    if request.categories:
        return _normalize(request.categories)
    return _normalize([request.type])


def build_expression_context(request: RoutingRequest) -> Dict[str, Any]:
    """Names visible to custom rule expressions."""
    return {
        "id": request.id,
        "type": request.type,
        "content": request.content,
        "subject": request.subject,
        "sender": request.sender,
        "categories": request_categories(request),
        "urgency": request.effective_urgency,
        "metadata": dict(request.metadata),
    }


def match_criteria(request: RoutingRequest, criteria: RequestCriteria) -> CriteriaMatch:
    """
    Evaluate a rule's criteria against a request.

    Args:
        request: Request with classifier output attached
        criteria: Match predicate of the rule

    Returns:
        CriteriaMatch: match flag, weighted strength in [0,1] and per-field scores
    """
    scores: Dict[str, float] = {}

    wanted_categories = _normalize(criteria.categories)
    if wanted_categories:
        have = set(request_categories(request))
        overlap = have.intersection(wanted_categories)
        scores["categories"] = len(overlap) / len(set(wanted_categories))
        if not overlap:
            return CriteriaMatch.failure("categories", scores)

    wanted_keywords = _normalize(criteria.keywords)
    if wanted_keywords:
        text = f"{request.subject or ''} {request.content}".lower()
        found = [kw for kw in wanted_keywords if _keyword_in_text(kw, text)]
        scores["keywords"] = len(found) / len(wanted_keywords)
        if not found:
            return CriteriaMatch.failure("keywords", scores)

    patterns = [p for p in criteria.sender_patterns if p and p.strip()]
    if patterns:
        sender = (request.sender or "").strip().lower()
        hit = bool(sender) and any(_sender_matches(p, sender) for p in patterns)
        scores["sender"] = 1.0 if hit else 0.0
        if not hit:
            return CriteriaMatch.failure("sender", scores)

    wanted_types = _normalize(criteria.request_types)
    if wanted_types:
        hit = request.type.strip().lower() in wanted_types
        scores["request_types"] = 1.0 if hit else 0.0
        if not hit:
            return CriteriaMatch.failure("request_types", scores)

    if criteria.min_urgency is not None or criteria.max_urgency is not None:
        urgency = request.effective_urgency
        low = criteria.min_urgency if criteria.min_urgency is not None else 0.0
        high = criteria.max_urgency if criteria.max_urgency is not None else 1.0
        hit = low <= urgency <= high
        scores["urgency"] = 1.0 if hit else 0.0
        if not hit:
            return CriteriaMatch.failure("urgency", scores)

    if criteria.custom_expression:
        try:
            passed = compile_expression(criteria.custom_expression).evaluate(build_expression_context(request))
        except ExpressionError as e:
            logger.warning(
                "Custom expression failed to evaluate, rule does not match",
                expression=criteria.custom_expression,
                request_id=request.id,
                error=str(e)
            )
            return CriteriaMatch.failure("custom_expression", scores)
        if not passed:
            return CriteriaMatch.failure("custom_expression", scores)

    total_weight = sum(FIELD_WEIGHTS[name] for name in scores)
    if total_weight == 0:
        # Only a custom expression, or nothing at all: a full match
        strength = 1.0
    else:
        strength = sum(FIELD_WEIGHTS[name] * score for name, score in scores.items()) / total_weight

    return CriteriaMatch(matched=True, strength=round(min(1.0, max(0.0, strength)), 6), field_scores=scores)
