# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Segment filter evaluator.

A saved segment stores ``{"logic": "and" | "or", "conditions": [...]}``
where each condition is ``{"field", "operator", "value"}``. Conditions are
parsed into a closed set of typed variants; any condition whose field is
not allow-listed, or whose operator/value do not fit the field's type, is
dropped at parse time. A filter left with no conditions matches nobody.

The same filter renders to a SQL predicate over ``customers`` (used by
recipient resolution) and evaluates in memory against a customer row;
both give the same answer.

Field types:
    text: firstName, lastName, company, email, phone, mobile, city,
          country, category, afm, doy, lifecycleStage, leadSource
    numeric: revenue, leadScore
    boolean: isVip, isActive (equals/notEquals only)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .logger import get_logger

logger = get_logger("SegmentFilter")

TEXT_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "company": "company",
    "email": "email",
    "phone": "phone",
    "mobile": "mobile",
    "city": "city",
    "country": "country",
    "category": "category",
    "afm": "afm",
    "doy": "doy",
    "lifecycleStage": "lifecycle_stage",
    "leadSource": "lead_source",
}
NUMERIC_FIELDS = {"revenue": "revenue", "leadScore": "lead_score"}
BOOLEAN_FIELDS = {"isVip": "is_vip", "isActive": "is_active"}


class FieldType(str, Enum):
    TEXT = "text"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"


def _build_field_index() -> dict[str, tuple[str, FieldType]]:
    index: dict[str, tuple[str, FieldType]] = {}
    for mapping, ftype in (
        (TEXT_FIELDS, FieldType.TEXT),
        (NUMERIC_FIELDS, FieldType.NUMERIC),
        (BOOLEAN_FIELDS, FieldType.BOOLEAN),
    ):
        for name, column in mapping.items():
            index[name] = (column, ftype)
            index[column] = (column, ftype)
    return index


FIELD_INDEX = _build_field_index()

RANGE_OPERATORS = {
    "greaterThan": ">",
    "lessThan": "<",
    "greaterOrEqual": ">=",
    "lessOrEqual": "<=",
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class EqualityCondition:
    """``equals`` / ``notEquals`` on any field type.

    A NULL column never satisfies either operator, as in SQL.
    """

    column: str
    value: str | float | bool
    negate: bool = False

    def to_sql(self, param: str, alias: str) -> tuple[str, dict[str, Any]]:
        op = "<>" if self.negate else "="
        value = int(self.value) if isinstance(self.value, bool) else self.value
        return f"{alias}.{self.column} {op} :{param}", {param: value}

    def evaluate(self, customer: dict[str, Any]) -> bool:
        current = customer.get(self.column)
        if current is None:
            return False
        if isinstance(self.value, bool):
            equal = bool(current) == self.value
        elif _is_number(self.value):
            equal = float(current) == float(self.value)
        else:
            equal = str(current) == self.value
        return not equal if self.negate else equal


@dataclass(frozen=True)
class TextCondition:
    """Case-insensitive ``contains`` / ``startsWith`` on text fields.

    Both sides are folded with ``str.casefold``. In SQL this is the
    ``casefold`` function every adapter provides, so non-ASCII text such as
    Greek folds the same way in the database and in memory.
    """

    column: str
    value: str
    prefix_only: bool = False

    def pattern(self) -> str:
        escaped = _escape_like(self.value.casefold())
        return f"{escaped}%" if self.prefix_only else f"%{escaped}%"

    def to_sql(self, param: str, alias: str) -> tuple[str, dict[str, Any]]:
        return (
            f"casefold({alias}.{self.column}) LIKE :{param} ESCAPE '\\'",
            {param: self.pattern()},
        )

    def evaluate(self, customer: dict[str, Any]) -> bool:
        current = customer.get(self.column)
        if current is None:
            return False
        text = str(current).casefold()
        needle = self.value.casefold()
        return text.startswith(needle) if self.prefix_only else needle in text


@dataclass(frozen=True)
class RangeCondition:
    """Numeric comparison on numeric fields."""

    column: str
    operator: str
    value: float

    def to_sql(self, param: str, alias: str) -> tuple[str, dict[str, Any]]:
        return f"{alias}.{self.column} {RANGE_OPERATORS[self.operator]} :{param}", {param: self.value}

    def evaluate(self, customer: dict[str, Any]) -> bool:
        current = customer.get(self.column)
        if current is None:
            return False
        current = float(current)
        if self.operator == "greaterThan":
            return current > self.value
        if self.operator == "lessThan":
            return current < self.value
        if self.operator == "greaterOrEqual":
            return current >= self.value
        return current <= self.value


Condition = Union[EqualityCondition, TextCondition, RangeCondition]


def parse_condition(raw: Any) -> Condition | None:
    """Build a typed condition, or None when the combination is not allowed."""
    if not isinstance(raw, dict):
        return None
    field_name = raw.get("field")
    operator = raw.get("operator")
    value = raw.get("value")
    if field_name not in FIELD_INDEX or not isinstance(operator, str):
        return None
    column, ftype = FIELD_INDEX[field_name]

    if operator in ("equals", "notEquals"):
        negate = operator == "notEquals"
        if ftype is FieldType.TEXT and isinstance(value, str):
            return EqualityCondition(column, value, negate)
        if ftype is FieldType.NUMERIC and _is_number(value):
            return EqualityCondition(column, float(value), negate)
        if ftype is FieldType.BOOLEAN and isinstance(value, bool):
            return EqualityCondition(column, value, negate)
        return None

    if operator in ("contains", "startsWith"):
        if ftype is FieldType.TEXT and isinstance(value, str) and value != "":
            return TextCondition(column, value, prefix_only=operator == "startsWith")
        return None

    if operator in RANGE_OPERATORS:
        if ftype is FieldType.NUMERIC and _is_number(value):
            return RangeCondition(column, operator, float(value))
        return None

    return None


@dataclass(frozen=True)
class SegmentFilter:
    """A parsed segment definition."""

    logic: str = "and"
    conditions: tuple[Condition, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> SegmentFilter:
        """Parse a stored definition (dict or JSON text), dropping invalid conditions."""
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Ignoring segment filter that is not valid JSON")
                return cls()
        if not isinstance(raw, dict):
            return cls()
        logic = "or" if str(raw.get("logic", "and")).lower() == "or" else "and"
        raw_conditions = raw.get("conditions") or []
        if not isinstance(raw_conditions, list):
            raw_conditions = []
        parsed = [parse_condition(c) for c in raw_conditions]
        kept = tuple(c for c in parsed if c is not None)
        dropped = len(raw_conditions) - len(kept)
        if dropped:
            logger.debug("Dropped %d invalid segment condition(s)", dropped)
        return cls(logic=logic, conditions=kept)

    @property
    def is_empty(self) -> bool:
        return not self.conditions

    def to_sql(self, prefix: str = "seg", alias: str = "c") -> tuple[str, dict[str, Any]] | None:
        """Render as a parenthesized predicate; None when there is nothing to match."""
        if self.is_empty:
            return None
        parts: list[str] = []
        params: dict[str, Any] = {}
        for i, condition in enumerate(self.conditions):
            clause, cparams = condition.to_sql(f"{prefix}_{i}", alias)
            parts.append(clause)
            params.update(cparams)
        joiner = " OR " if self.logic == "or" else " AND "
        return "(" + joiner.join(parts) + ")", params

    def matches(self, customer: dict[str, Any]) -> bool:
        if self.is_empty:
            return False
        results = (c.evaluate(customer) for c in self.conditions)
        return any(results) if self.logic == "or" else all(results)


def matches(customer: dict[str, Any], filters: Any) -> bool:
    """Does ``customer`` (a customers row) satisfy a stored segment definition?"""
    return SegmentFilter.parse(filters).matches(customer)


__all__ = [
    "Condition",
    "EqualityCondition",
    "RangeCondition",
    "SegmentFilter",
    "TextCondition",
    "matches",
    "parse_condition",
]
