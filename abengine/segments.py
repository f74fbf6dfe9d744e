"""
ABEngine Segment Matching

Pure rule evaluation over a user context. A segment matches when every
rule matches; anything unexpected (absent property, wrong type, unknown
operator) evaluates to False rather than raising.
"""

from __future__ import annotations

import numbers
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from abengine.types import RuleOperator, Segment, SegmentRule, WILDCARD_SEGMENT

_MISSING = object()


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return False


def _greater_than(actual: Any, expected: Any) -> bool:
    return _is_number(actual) and _is_number(expected) and actual > expected


def _less_than(actual: Any, expected: Any) -> bool:
    return _is_number(actual) and _is_number(expected) and actual < expected


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    RuleOperator.EQUALS.value: _equals,
    RuleOperator.NOT_EQUALS.value: lambda a, e: not _equals(a, e),
    RuleOperator.CONTAINS.value: _contains,
    RuleOperator.GREATER_THAN.value: _greater_than,
    RuleOperator.LESS_THAN.value: _less_than,
}


class SegmentMatcher:
    """Evaluates segment rules against user contexts."""

    @staticmethod
    def rule_matches(user_context: Mapping[str, Any], rule: SegmentRule) -> bool:
        op = _OPERATORS.get(rule.operator)
        if op is None:
            return False
        actual = user_context.get(rule.property, _MISSING)
        if actual is _MISSING:
            return False
        return op(actual, rule.value)

    def matches(self, user_context: Optional[Mapping[str, Any]], segment: Segment) -> bool:
        context = user_context or {}
        return all(self.rule_matches(context, rule) for rule in segment.rules)

    def matches_any(
        self,
        user_context: Optional[Mapping[str, Any]],
        segment_ids: Iterable[str],
        segments: Mapping[str, Segment],
    ) -> bool:
        """True if the context matches at least one listed segment.

        The wildcard id ``"all"`` matches every context; ids without a
        registered segment never match.
        """
        for segment_id in segment_ids:
            if segment_id == WILDCARD_SEGMENT:
                return True
            segment = segments.get(segment_id)
            if segment is not None and self.matches(user_context, segment):
                return True
        return False
