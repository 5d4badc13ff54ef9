"""
Tests for Self-Query Retrieval

This module tests:
- Relative and absolute date resolution
- Operator aliases
- Filter validation (unknown fields, unsupported operators, strict mode)
- Filter extraction from the language model and its fallback
- Filtered search statistics
"""

from datetime import datetime, timezone

import pytest

from docrag.core.exceptions import QueryValidationError
from docrag.services.rag.hybrid_search import HybridSearchService
from docrag.services.rag.self_query import SelfQueryService, parse_operator, resolve_date
from docrag.services.storage.base import SearchOptions
from docrag.services.storage.filters import FilterOperator, LogicalOperator


NOW = datetime(2024, 6, 15, 14, 30, tzinfo=timezone.utc)


# ========================================
# Fixtures
# ========================================

@pytest.fixture
def search(store, embedder):
    return HybridSearchService(store, embedder)


@pytest.fixture
def make_self_query(search, store, make_language_model):
    def _make(responses=None, fail=False):
        return SelfQueryService(search, make_language_model(responses=responses, fail=fail), store)
    return _make


@pytest.fixture
def options():
    return SearchOptions(top_k=5, min_similarity=0.0, owner_id="u1")


# ========================================
# Date Resolution
# ========================================

@pytest.mark.parametrize("value, expected", [
    ("last 3 months", datetime(2024, 3, 15, tzinfo=timezone.utc)),
    ("past 2 weeks", datetime(2024, 6, 1, tzinfo=timezone.utc)),
    ("last year", datetime(2023, 6, 15, tzinfo=timezone.utc)),
    ("yesterday", datetime(2024, 6, 14, tzinfo=timezone.utc)),
    ("this year", datetime(2024, 1, 1, tzinfo=timezone.utc)),
    ("2023", datetime(2023, 1, 1, tzinfo=timezone.utc)),
    ("2024-05-01", datetime(2024, 5, 1, tzinfo=timezone.utc)),
])
def test_resolve_date(value, expected):
    assert resolve_date(value, now=NOW) == expected


def test_resolve_date_clamps_to_month_end():
    now = datetime(2024, 5, 31, tzinfo=timezone.utc)

    assert resolve_date("last 3 months", now=now) == datetime(2024, 2, 29, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["", None, "sometime soon"])
def test_unresolvable_date_is_none(value):
    assert resolve_date(value, now=NOW) is None


@pytest.mark.parametrize("raw, expected", [
    ("equals", FilterOperator.EQUALS),
    (">=", FilterOperator.GREATER_THAN_OR_EQUAL),
    ("Greater Than", FilterOperator.GREATER_THAN),
    ("starts_with", FilterOperator.STARTS_WITH),
    ("between", None),
])
def test_parse_operator(raw, expected):
    assert parse_operator(raw) == expected


# ========================================
# Validation
# ========================================

def test_validation_drops_unknown_and_unsupported(make_self_query):
    self_query = make_self_query()

    filters = self_query.validate_and_normalize_filters([
        {"field": "Upload Date", "operator": "gte", "value": "last 3 months"},
        {"field": "author", "operator": "equals", "value": "Rossi"},
        {"field": "category", "operator": "contains", "value": "contr"},
        {"field": "category", "operator": "in", "value": ["contracts", "invoices"], "logicalOperator": "OR"},
    ], now=NOW)

    assert [f.field for f in filters] == ["upload_date", "category"]
    assert filters[0].value == datetime(2024, 3, 15, tzinfo=timezone.utc)
    assert filters[1].operator == FilterOperator.IN
    assert filters[1].value == ["contracts", "invoices"]
    assert filters[1].logical_operator == LogicalOperator.OR


def test_strict_validation_rejects_bad_operator(make_self_query):
    self_query = make_self_query()

    with pytest.raises(QueryValidationError):
        self_query.validate_and_normalize_filters(
            [{"field": "category", "operator": "between", "value": "x"}], strict=True
        )


def test_strict_validation_rejects_bad_date(make_self_query):
    self_query = make_self_query()

    with pytest.raises(QueryValidationError):
        self_query.validate_and_normalize_filters(
            [{"field": "upload_date", "operator": "gt", "value": "whenever"}], strict=True
        )


# ========================================
# Extraction
# ========================================

@pytest.mark.asyncio
async def test_parse_query_with_filters(make_self_query):
    self_query = make_self_query(responses={
        "Analyze the following natural-language query": (
            '```json\n{"semanticQuery": "penalty clause", "filters": '
            '[{"field": "category", "operator": "equals", "value": "contracts"}, {"operator": "eq"}]}\n```'
        ),
    })

    parsed = await self_query.parse_query_with_filters("contracts about the penalty clause")

    assert parsed["success"] is True
    assert parsed["semantic_query"] == "penalty clause"
    assert parsed["filters"] == [{"field": "category", "operator": "equals", "value": "contracts"}]


@pytest.mark.asyncio
async def test_parse_failure_keeps_original_query(make_self_query):
    self_query = make_self_query(fail=True)

    parsed = await self_query.parse_query_with_filters("contracts about the penalty clause")

    assert parsed["success"] is False
    assert parsed["semantic_query"] == "contracts about the penalty clause"
    assert parsed["filters"] == []
    assert parsed["messages"]


@pytest.mark.asyncio
async def test_parse_rejects_empty_query(make_self_query):
    with pytest.raises(QueryValidationError):
        await make_self_query().parse_query_with_filters("  ")


# ========================================
# Filtered Search
# ========================================

@pytest.mark.asyncio
async def test_execute_self_query_applies_category_filter(make_self_query, options):
    self_query = make_self_query(responses={
        "Analyze the following natural-language query": (
            '{"semanticQuery": "penalty clause", "filters": '
            '[{"field": "category", "operator": "equals", "value": "contracts"}]}'
        ),
    })

    outcome = await self_query.execute_self_query("contracts about the penalty clause", options=options)

    assert outcome["semantic_query"] == "penalty clause"
    assert [f.field for f in outcome["applied_filters"]] == ["category"]
    assert outcome["results"]
    assert {r["category"] for r in outcome["results"]} == {"contracts"}
    assert outcome["statistics"]["total_documents"] == 4
    assert outcome["statistics"]["filtered_documents"] == 1
    assert outcome["statistics"]["returned_results"] == len(outcome["results"])


@pytest.mark.asyncio
async def test_execute_self_query_date_filter(make_self_query, options):
    self_query = make_self_query(responses={
        "Analyze the following natural-language query": (
            '{"semanticQuery": "penalty clause delivery", "filters": '
            '[{"field": "upload_date", "operator": "gte", "value": "2024-05-15"}]}'
        ),
    })

    outcome = await self_query.execute_self_query("recent notes about penalties", options=options)

    assert {r["document_id"] for r in outcome["results"]} <= {1, 2}
    assert outcome["statistics"]["filtered_documents"] == 2


@pytest.mark.asyncio
async def test_invalid_extracted_filters_are_dropped(make_self_query, options):
    self_query = make_self_query(responses={
        "Analyze the following natural-language query": (
            '{"semanticQuery": "penalty clause", "filters": '
            '[{"field": "category", "operator": "between", "value": "a"}]}'
        ),
    })

    outcome = await self_query.execute_self_query("penalty clause", options=options)

    assert outcome["applied_filters"] == []
    assert outcome["statistics"]["filtered_documents"] == outcome["statistics"]["total_documents"]
    assert outcome["results"]


@pytest.mark.asyncio
async def test_extraction_failure_searches_original_query(make_self_query, options):
    self_query = make_self_query(fail=True)

    outcome = await self_query.execute_self_query("penalty clause", options=options)

    assert outcome["semantic_query"] == "penalty clause"
    assert outcome["applied_filters"] == []
    assert outcome["results"]
