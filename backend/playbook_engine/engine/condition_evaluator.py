"""Condition Evaluator - Branch decisions for conditional steps"""
import operator
from typing import Any, Callable, Dict

from .variable_resolver import get_path
from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionOperator
from ..utils.logger import get_logger

logger = get_logger(__name__)

Predicate = Callable[[Any, Any], bool]

_COLLECTIONS = (list, tuple, set)


def _ordered(compare: Callable[[float, float], bool]) -> Predicate:
    def predicate(field_value: Any, expected: Any) -> bool:
        # A missing side never satisfies an ordering
        if field_value is None or expected is None:
            return False
        try:
            return compare(float(field_value), float(expected))
        except (TypeError, ValueError):
            return False
    return predicate


def _contains(field_value: Any, expected: Any) -> bool:
    if field_value is None:
        return False
    if isinstance(field_value, _COLLECTIONS):
        return expected in field_value
    return str(expected) in str(field_value)


def _one_of(field_value: Any, expected: Any) -> bool:
    options = expected if isinstance(expected, list) else [expected]
    return field_value in options


def _is_empty(field_value: Any, _expected: Any = None) -> bool:
    return field_value is None or field_value in ("", [], {})


_PREDICATES: Dict[ConditionOperator, Predicate] = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.GREATER_THAN: _ordered(operator.gt),
    ConditionOperator.LESS_THAN: _ordered(operator.lt),
    ConditionOperator.GREATER_THAN_OR_EQUALS: _ordered(operator.ge),
    ConditionOperator.LESS_THAN_OR_EQUALS: _ordered(operator.le),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda field_value, expected: not _contains(field_value, expected),
    ConditionOperator.IN: _one_of,
    ConditionOperator.NOT_IN: lambda field_value, expected: not _one_of(field_value, expected),
    ConditionOperator.IS_EMPTY: _is_empty,
    ConditionOperator.IS_NOT_EMPTY: lambda field_value, expected: not _is_empty(field_value),
}


class ConditionEvaluator:
    """
    Decide whether a conditional step's actions run

    Field paths are dotted lookups into the run variables. Operators come
    from a fixed table; nothing is evaluated as code.
    """

    def evaluate(
        self,
        condition_group: ConditionGroup,
        variables: Dict[str, Any]
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            condition_group: Conditions joined by AND (default) or OR
            variables: Run variables plus reserved run fields

        Returns:
            True when the group holds; an empty group always holds
        """
        if not condition_group.conditions:
            return True

        outcomes = (self._holds(c, variables) for c in condition_group.conditions)
        if condition_group.logic.upper() == "OR":
            return any(outcomes)
        return all(outcomes)

    def _holds(self, condition: Condition, variables: Dict[str, Any]) -> bool:
        predicate = _PREDICATES.get(condition.operator)
        if predicate is None:
            logger.warning(f"Unsupported condition operator {condition.operator}")
            return False
        try:
            return bool(predicate(get_path(condition.field, variables), condition.value))
        except Exception as e:
            logger.warning(f"Condition on {condition.field} could not be evaluated: {e}")
            return False
