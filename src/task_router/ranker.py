"""
Rule ranking.

Orders matching active rules by priority (ascending), then match strength
(descending), then creation sequence (ascending). The ordering is total, so
the same rule set and request always produce the same ranking.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from task_router.matcher import CriteriaMatch, match_criteria
from task_router.models import RoutingRequest, RoutingRule


@dataclass
class RankedRule:
    """A rule that matched, with its match details."""
    rule: RoutingRule
    match: CriteriaMatch

    @property
    def sort_key(self):
        return (self.rule.priority, -self.match.strength, self.rule.sequence, self.rule.id)


def rank_rules(rules: Iterable[RoutingRule], request: RoutingRequest) -> List[RankedRule]:
    """
    Return every active rule whose criteria match, most applicable first.

    Args:
        rules: Candidate rule set (inactive rules are skipped)
        request: Request with classifier output attached

    Returns:
        List[RankedRule]: Matching rules in evaluation order
    """
    ranked = []
    for rule in rules:
        if not rule.is_active:
            continue
        match = match_criteria(request, rule.criteria)
        if match.matched:
            ranked.append(RankedRule(rule=rule, match=match))

    ranked.sort(key=lambda r: r.sort_key)
    return ranked


def select_rules(rules: Iterable[RoutingRule], request: RoutingRequest, top_n: int = 1) -> List[RankedRule]:
    """First ``top_n`` matching rules."""
    return rank_rules(rules, request)[:max(0, top_n)]


def select_rule(rules: Iterable[RoutingRule], request: RoutingRequest) -> Optional[RankedRule]:
    """The winning rule, or None when nothing matches."""
    winners = select_rules(rules, request, top_n=1)
    return winners[0] if winners else None
