"""Condition Evaluator - Safe evaluation of transition conditions"""
import operator as op
from typing import Any, List, Mapping, Optional

from ..domain.models import Condition, ConditionFailure
from ..domain.enums import ConditionOperator, ConditionFailureReason
from ..utils.logger import get_logger

logger = get_logger(__name__)


_COMPARATORS = {
    ConditionOperator.EQUALS: op.eq,
    ConditionOperator.NOT_EQUALS: op.ne,
    ConditionOperator.GREATER_THAN: op.gt,
    ConditionOperator.GREATER_THAN_OR_EQUALS: op.ge,
    ConditionOperator.LESS_THAN: op.lt,
    ConditionOperator.LESS_THAN_OR_EQUALS: op.le,
}

_EQUALITY_OPERATORS = frozenset({ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS})


def _is_number(value: Any) -> bool:
    # bool is an int subclass; never treat it as a number
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConditionEvaluator:
    """
    Evaluate transition conditions against an application's facts

    Uses a fixed operator table - no eval() or exec(). All conditions are
    combined with AND; an empty list always passes. A fact that is absent or
    null fails its condition, and so does any comparison between values of
    different kinds (fail closed).
    """

    def evaluate(
        self,
        conditions: List[Condition],
        facts: Mapping[str, Any]
    ) -> bool:
        """
        Evaluate a list of conditions

        Args:
            conditions: Conditions to AND together
            facts: Fact name to value

        Returns:
            True if every condition holds
        """
        return all(self._check(condition, facts) is None for condition in conditions)

    def missing_requirements(
        self,
        conditions: List[Condition],
        facts: Mapping[str, Any]
    ) -> List[ConditionFailure]:
        """
        Explain which conditions do not hold

        Returns:
            One failure per unmet condition, in condition order
        """
        failures = []
        for condition in conditions:
            failure = self._check(condition, facts)
            if failure is not None:
                failures.append(failure)
        return failures

    def _check(
        self,
        condition: Condition,
        facts: Mapping[str, Any]
    ) -> Optional[ConditionFailure]:
        """Evaluate a single condition, returning the failure or None"""
        actual = facts.get(condition.field)
        expected = condition.value
        operator = condition.operator

        if actual is None:
            return self._failure(condition, actual, ConditionFailureReason.MISSING)

        if not self._same_kind(actual, expected):
            logger.debug(
                f"Condition on '{condition.field}' compares {type(actual).__name__} "
                f"with {type(expected).__name__}"
            )
            return self._failure(condition, actual, ConditionFailureReason.TYPE_MISMATCH)

        if not _is_number(expected) and operator not in _EQUALITY_OPERATORS:
            return self._failure(condition, actual, ConditionFailureReason.UNSUPPORTED_OPERATOR)

        if _COMPARATORS[operator](actual, expected):
            return None
        return self._failure(condition, actual, ConditionFailureReason.MISMATCH)

    def _same_kind(self, actual: Any, expected: Any) -> bool:
        if isinstance(expected, bool):
            return isinstance(actual, bool)
        if _is_number(expected):
            return _is_number(actual)
        if isinstance(expected, str):
            return isinstance(actual, str)
        return False

    def _failure(
        self,
        condition: Condition,
        actual: Any,
        reason: ConditionFailureReason
    ) -> ConditionFailure:
        return ConditionFailure(
            field=condition.field,
            operator=condition.operator,
            expected=condition.value,
            actual=actual,
            reason=reason,
        )

