"""
Exclusion Matcher
Marks orders whose fulfillment type matches an enabled pattern so downstream
email dispatch skips them. Excluded orders are still stored.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExclusionRule:
    pattern: str
    description: Optional[str] = None

    @property
    def reason(self) -> str:
        return (self.description or "").strip() or self.pattern


class ExclusionMatcher:
    """First matching rule wins; rules are expected in creation order."""

    def __init__(self, rules: Sequence[ExclusionRule] = (), enabled: bool = True):
        self.enabled = enabled
        self.rules: Tuple[ExclusionRule, ...] = tuple(r for r in rules if r.pattern)

    @classmethod
    def disabled(cls) -> "ExclusionMatcher":
        return cls((), enabled=False)

    def match(self, fulfillment_type: Optional[str]) -> Optional[str]:
        """Exclusion reason for a fulfillment type, or None."""
        if not self.enabled or not fulfillment_type or not self.rules:
            return None
        for rule in self.rules:
            if rule.pattern in fulfillment_type:
                logger.debug(f"Exclusion pattern {rule.pattern!r} matched {fulfillment_type!r}")
                return rule.reason
        return None
