"""Structured predicates over activity payloads.

A rule's ``conditions`` JSON is either a leaf::

    {"field": "device.type", "operator": "in", "value": ["ring", "band"]}

or a group::

    {"operator": "AND", "conditions": [...]}

Evaluation fails closed: a missing field or a type mismatch makes the leaf
false rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

_MISSING = object()


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


def _lookup(payload: Any, path: str) -> Any:
    value = payload
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


@dataclass(frozen=True)
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, payload: dict[str, Any]) -> bool:
        actual = _lookup(payload, self.field)
        if actual is _MISSING:
            return False
        try:
            return self._apply(actual)
        except TypeError:
            return False

    def _apply(self, actual: Any) -> bool:
        op, expected = self.operator, self.value
        if op is ConditionOperator.EQUALS:
            return actual == expected
        if op is ConditionOperator.NOT_EQUALS:
            return actual != expected
        if op in (
            ConditionOperator.GREATER_THAN,
            ConditionOperator.LESS_THAN,
            ConditionOperator.GREATER_THAN_OR_EQUAL,
            ConditionOperator.LESS_THAN_OR_EQUAL,
        ):
            # bools compare as ints in Python; treat them as a mismatch
            if isinstance(actual, bool) or isinstance(expected, bool):
                return False
            if op is ConditionOperator.GREATER_THAN:
                return actual > expected
            if op is ConditionOperator.LESS_THAN:
                return actual < expected
            if op is ConditionOperator.GREATER_THAN_OR_EQUAL:
                return actual >= expected
            return actual <= expected
        if op is ConditionOperator.CONTAINS:
            return isinstance(actual, (str, list, tuple)) and expected in actual
        if op is ConditionOperator.NOT_CONTAINS:
            return isinstance(actual, (str, list, tuple)) and expected not in actual
        if op is ConditionOperator.IN:
            return isinstance(expected, (list, tuple, str)) and actual in expected
        if op is ConditionOperator.NOT_IN:
            return isinstance(expected, (list, tuple, str)) and actual not in expected
        if op is ConditionOperator.IS_TRUE:
            return actual is True
        if op is ConditionOperator.IS_FALSE:
            return actual is False
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class ConditionGroup:
    operator: LogicalOperator
    conditions: tuple[Union[Condition, ConditionGroup], ...]

    def evaluate(self, payload: dict[str, Any]) -> bool:
        if not self.conditions:
            return True
        results = (cond.evaluate(payload) for cond in self.conditions)
        return all(results) if self.operator is LogicalOperator.AND else any(results)

    def to_dict(self) -> dict[str, Any]:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}


Predicate = Union[Condition, ConditionGroup]


def parse_conditions(data: dict[str, Any] | list[Any] | None) -> Predicate | None:
    """Build a predicate tree from stored JSON. ``None`` or empty means match everything.

    A bare list is treated as an AND group. Raises ValueError on malformed input.
    """
    if not data:
        return None
    if isinstance(data, list):
        data = {"operator": LogicalOperator.AND.value, "conditions": data}
    if not isinstance(data, dict):
        raise ValueError("Conditions must be an object or a list")

    if "conditions" in data:
        children = data["conditions"]
        if not isinstance(children, list):
            raise ValueError("Group 'conditions' must be a list")
        parsed = []
        for child in children:
            node = parse_conditions(child)
            if node is None:
                raise ValueError("Empty condition inside a group")
            parsed.append(node)
        return ConditionGroup(
            operator=LogicalOperator(str(data.get("operator", "AND")).upper()),
            conditions=tuple(parsed),
        )

    if "field" not in data or "operator" not in data:
        raise ValueError("Condition requires 'field' and 'operator'")
    return Condition(
        field=str(data["field"]),
        operator=ConditionOperator(data["operator"]),
        value=data.get("value"),
    )


def matches(predicate: Predicate | None, payload: dict[str, Any]) -> bool:
    return True if predicate is None else predicate.evaluate(payload)


def specificity(predicate: Predicate | None) -> int:
    """Number of leaf conditions: narrower rules win priority ties."""
    if predicate is None:
        return 0
    if isinstance(predicate, Condition):
        return 1
    return sum(specificity(child) for child in predicate.conditions)
