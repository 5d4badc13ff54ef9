"""
Structured metadata filters.

Filters are produced by the self-query service (or passed directly by
callers), validated against the filter registry, and evaluated either by
the storage layer (SQL pushdown) or in-process with `matches_filters`.
"""

import enum
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class FilterOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"

    def __str__(self) -> str:
        return self.value


class FilterValueType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ARRAY = "array"

    def __str__(self) -> str:
        return self.value


class LogicalOperator(str, enum.Enum):
    """How a filter combines with the filters before it."""

    AND = "and"
    OR = "or"
    NOT = "not"

    def __str__(self) -> str:
        return self.value


class MetadataFilter(BaseModel):
    """A single field/operator/value condition."""

    field: str = Field(description="Registry field name, e.g. category, upload_date, file_name")
    operator: FilterOperator = Field(description="Comparison operator")
    value: Any = Field(description="Typed comparison value")
    value_type: FilterValueType = Field(default=FilterValueType.STRING)
    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND)


# Registry field name -> candidate/document record key
FIELD_RECORD_KEYS: Dict[str, str] = {
    "category": "category",
    "upload_date": "uploaded_at",
    "file_name": "file_name",
    "owner_id": "owner_id",
}


def _as_comparable(value: Any) -> Any:
    """Normalize dates/datetimes so they compare with each other."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        return value.lower()
    return value


def evaluate_filter(record: Dict[str, Any], flt: MetadataFilter) -> bool:
    """Evaluate one filter against a record dict. Missing fields never match."""
    key = FIELD_RECORD_KEYS.get(flt.field, flt.field)
    actual = record.get(key)
    if actual is None:
        return False

    op = flt.operator
    actual_cmp = _as_comparable(actual)

    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        values = flt.value if isinstance(flt.value, (list, tuple, set)) else [flt.value]
        found = actual_cmp in {_as_comparable(v) for v in values}
        return found if op == FilterOperator.IN else not found

    expected = _as_comparable(flt.value)

    try:
        if op == FilterOperator.EQUALS:
            if isinstance(actual_cmp, datetime) and isinstance(expected, datetime):
                return actual_cmp.date() == expected.date()
            return actual_cmp == expected
        if op == FilterOperator.NOT_EQUALS:
            return actual_cmp != expected
        if op == FilterOperator.GREATER_THAN:
            return actual_cmp > expected
        if op == FilterOperator.GREATER_THAN_OR_EQUAL:
            return actual_cmp >= expected
        if op == FilterOperator.LESS_THAN:
            return actual_cmp < expected
        if op == FilterOperator.LESS_THAN_OR_EQUAL:
            return actual_cmp <= expected
        if op == FilterOperator.CONTAINS:
            return str(expected) in str(actual_cmp)
        if op == FilterOperator.NOT_CONTAINS:
            return str(expected) not in str(actual_cmp)
        if op == FilterOperator.STARTS_WITH:
            return str(actual_cmp).startswith(str(expected))
        if op == FilterOperator.ENDS_WITH:
            return str(actual_cmp).endswith(str(expected))
    except TypeError:
        logger.debug(f"Incomparable values for filter {flt.field}: {actual!r} vs {flt.value!r}")
        return False

    return False


def matches_filters(record: Dict[str, Any], filters: List[MetadataFilter]) -> bool:
    """
    Evaluate a filter chain left to right.

    AND/OR combine with the running result; NOT means "and not".
    An empty chain matches everything.
    """
    if not filters:
        return True

    result = None
    for flt in filters:
        matched = evaluate_filter(record, flt)
        if result is None:
            result = (not matched) if flt.logical_operator == LogicalOperator.NOT else matched
        elif flt.logical_operator == LogicalOperator.OR:
            result = result or matched
        elif flt.logical_operator == LogicalOperator.NOT:
            result = result and not matched
        else:
            result = result and matched

    return bool(result)
