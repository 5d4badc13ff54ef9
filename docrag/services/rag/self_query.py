"""
Self-Query Retrieval

Turns "contracts uploaded in the last 3 months about penalties" into:
- a semantic query: "penalties"
- structured filters: category equals "contracts", upload_date gte <date>

Filters are validated against a registry of filterable fields, values are
coerced to the field's type (relative dates resolved to absolute ones),
and the surviving filters narrow the candidate set before hybrid search.
"""

import calendar
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from docrag.core.exceptions import QueryValidationError
from docrag.services.providers.base import LanguageModelProvider, with_timeout
from docrag.services.rag.hybrid_search import HybridSearchService
from docrag.services.storage.base import DocumentStore, SearchOptions
from docrag.services.storage.filters import (
    FilterOperator,
    FilterValueType,
    LogicalOperator,
    MetadataFilter,
)

logger = logging.getLogger(__name__)

SELF_QUERY_SYSTEM_PROMPT = (
    "You are an expert query parser. Extract the semantic query and the structured "
    "filters from natural-language queries. Always return valid JSON."
)

# Operator spellings accepted from the language model or API callers
_OPERATOR_ALIASES = {
    "equals": FilterOperator.EQUALS, "eq": FilterOperator.EQUALS, "=": FilterOperator.EQUALS,
    "notequals": FilterOperator.NOT_EQUALS, "ne": FilterOperator.NOT_EQUALS, "!=": FilterOperator.NOT_EQUALS,
    "greaterthan": FilterOperator.GREATER_THAN, "gt": FilterOperator.GREATER_THAN, ">": FilterOperator.GREATER_THAN,
    "greaterthanorequal": FilterOperator.GREATER_THAN_OR_EQUAL, "gte": FilterOperator.GREATER_THAN_OR_EQUAL,
    ">=": FilterOperator.GREATER_THAN_OR_EQUAL,
    "lessthan": FilterOperator.LESS_THAN, "lt": FilterOperator.LESS_THAN, "<": FilterOperator.LESS_THAN,
    "lessthanorequal": FilterOperator.LESS_THAN_OR_EQUAL, "lte": FilterOperator.LESS_THAN_OR_EQUAL,
    "<=": FilterOperator.LESS_THAN_OR_EQUAL,
    "contains": FilterOperator.CONTAINS,
    "notcontains": FilterOperator.NOT_CONTAINS,
    "startswith": FilterOperator.STARTS_WITH,
    "endswith": FilterOperator.ENDS_WITH,
    "in": FilterOperator.IN,
    "notin": FilterOperator.NOT_IN,
}

_RELATIVE_RE = re.compile(r"\b(?:last|past|previous)\s+(\d+)?\s*(day|week|month|year)s?\b", re.IGNORECASE)


class FilterDefinition(BaseModel):
    """One filterable field in the registry."""

    field: str
    display_name: str
    data_type: FilterValueType
    supported_operators: List[FilterOperator]
    description: str = ""
    examples: List[str] = Field(default_factory=list)


DEFAULT_FILTERS: List[FilterDefinition] = [
    FilterDefinition(
        field="category",
        display_name="Category",
        data_type=FilterValueType.STRING,
        supported_operators=[FilterOperator.EQUALS, FilterOperator.NOT_EQUALS, FilterOperator.IN],
        description="Document category",
        examples=["invoices category", "only HR documents", "contracts or invoices"],
    ),
    FilterDefinition(
        field="upload_date",
        display_name="Upload date",
        data_type=FilterValueType.DATE,
        supported_operators=[
            FilterOperator.EQUALS,
            FilterOperator.GREATER_THAN,
            FilterOperator.GREATER_THAN_OR_EQUAL,
            FilterOperator.LESS_THAN,
            FilterOperator.LESS_THAN_OR_EQUAL,
        ],
        description="Date the document was uploaded",
        examples=["last 3 months", "since January 2024", "before 2023"],
    ),
    FilterDefinition(
        field="file_name",
        display_name="File name",
        data_type=FilterValueType.STRING,
        supported_operators=[
            FilterOperator.CONTAINS,
            FilterOperator.STARTS_WITH,
            FilterOperator.ENDS_WITH,
            FilterOperator.EQUALS,
        ],
        description="Document file name",
        examples=["files starting with 'report'", "PDF files", "contains 'budget'"],
    ),
]


def _field_key(name: str) -> str:
    return re.sub(r"[\s_\-]", "", (name or "").lower())


def parse_operator(raw: Any) -> Optional[FilterOperator]:
    if isinstance(raw, FilterOperator):
        return raw
    return _OPERATOR_ALIASES.get(re.sub(r"[\s_]", "", str(raw or "").lower()))


def _subtract_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def resolve_date(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Coerce a date value or relative date phrase to an absolute UTC datetime.

    Understands ISO dates, "today", "yesterday", "this year", and
    "last N days/weeks/months/years" (N defaults to 1). Returns None when
    the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    text = str(value or "").strip()
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    if re.fullmatch(r"\d{4}", text):
        return datetime(int(text), 1, 1, tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    lowered = text.lower()

    if lowered == "today":
        return today
    if lowered == "yesterday":
        return today - timedelta(days=1)
    if lowered == "this year":
        return today.replace(month=1, day=1)

    match = _RELATIVE_RE.search(lowered)
    if match:
        amount = int(match.group(1) or 1)
        unit = match.group(2)
        if unit == "day":
            return today - timedelta(days=amount)
        if unit == "week":
            return today - timedelta(weeks=amount)
        if unit == "month":
            return _subtract_months(today, amount)
        return _subtract_months(today, amount * 12)

    return None


def normalize_value(value: Any, data_type: FilterValueType, now: Optional[datetime] = None) -> Any:
    """Coerce a raw value to the field type. Returns None when it cannot be coerced."""
    if isinstance(value, (list, tuple)):
        normalized = [normalize_value(v, data_type, now) for v in value]
        return None if any(v is None for v in normalized) or not normalized else normalized

    if data_type == FilterValueType.STRING:
        return None if value is None else str(value)
    if data_type == FilterValueType.NUMBER:
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    if data_type == FilterValueType.BOOLEAN:
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
        return None
    if data_type == FilterValueType.DATE:
        return resolve_date(value, now)
    return value


class SelfQueryService:
    """
    Natural-language query -> semantic query + validated metadata filters.

    Usage:
    ------
    self_query = SelfQueryService(search, language_model, store)
    outcome = await self_query.execute_self_query(
        "HR documents from the last 3 months about remote work",
        user_id="u1",
        top_k=5
    )
    outcome['semantic_query']   # 'remote work'
    outcome['applied_filters']  # [MetadataFilter(field='category', ...), MetadataFilter(field='upload_date', ...)]
    outcome['statistics']       # {'total_documents': ..., 'filtered_documents': ..., ...}
    """

    def __init__(
        self,
        search: HybridSearchService,
        language_model: Optional[LanguageModelProvider],
        store: DocumentStore,
        available_filters: Optional[List[FilterDefinition]] = None,
        provider_timeout: Optional[float] = None
    ):
        self.search = search
        self.language_model = language_model
        self.store = store
        self.available_filters = available_filters or DEFAULT_FILTERS
        self.provider_timeout = provider_timeout

    def get_available_filters(self) -> List[FilterDefinition]:
        return list(self.available_filters)

    async def parse_query_with_filters(
        self,
        query: str,
        available_filters: Optional[List[FilterDefinition]] = None
    ) -> Dict[str, Any]:
        """
        Ask the language model to split the query into semantics and filters.

        Returns:
            {
                'original_query': str,
                'semantic_query': str,
                'filters': List[dict],   # raw, unvalidated
                'success': bool,
                'messages': List[str]
            }
        """
        if not query or not query.strip():
            raise QueryValidationError("Query must not be empty")

        result = {
            'original_query': query,
            'semantic_query': query,
            'filters': [],
            'success': False,
            'messages': [],
        }
        if self.language_model is None:
            result['messages'].append("No language model configured for filter extraction")
            return result

        available_filters = available_filters or self.available_filters
        start = time.perf_counter()

        try:
            data = await with_timeout(
                self.language_model.complete_json(
                    [{"role": "user", "content": self._build_prompt(query, available_filters)}],
                    system=SELF_QUERY_SYSTEM_PROMPT,
                    temperature=0.1,
                    max_tokens=500,
                ),
                self.provider_timeout,
                self.language_model.name,
            )
        except Exception as e:
            logger.error(f"Error parsing self-query: {e}")
            result['messages'].append(f"Filter extraction failed: {e}")
            return result

        semantic = data.get("semanticQuery")
        if isinstance(semantic, str) and semantic.strip():
            result['semantic_query'] = semantic.strip()
        result['filters'] = [f for f in data.get("filters") or [] if isinstance(f, dict) and f.get("field")]
        result['success'] = True

        logger.info(
            f"Parsed self-query in {(time.perf_counter() - start) * 1000:.0f}ms. "
            f"Extracted {len(result['filters'])} filters"
        )
        return result

    def validate_and_normalize_filters(
        self,
        filters: List[Any],
        available_filters: Optional[List[FilterDefinition]] = None,
        strict: bool = False,
        now: Optional[datetime] = None
    ) -> List[MetadataFilter]:
        """
        Check filters against the registry and coerce their values.

        Unknown fields are always dropped. Unsupported operators and values
        that cannot be coerced are dropped too, or raise QueryValidationError
        when strict (caller-supplied filters).
        """
        registry = {_field_key(d.field): d for d in (available_filters or self.available_filters)}
        validated: List[MetadataFilter] = []

        for raw in filters:
            item = raw.model_dump() if isinstance(raw, MetadataFilter) else dict(raw)
            field_name = str(item.get("field") or "")
            definition = registry.get(_field_key(field_name))
            if definition is None:
                logger.warning(f"Unknown filter field dropped: {field_name}")
                continue

            operator = parse_operator(item.get("operator"))
            if operator is None or operator not in definition.supported_operators:
                message = f"Unsupported operator {item.get('operator')!r} for field {definition.field}"
                if strict:
                    raise QueryValidationError(message)
                logger.warning(message)
                continue

            value = normalize_value(item.get("value"), definition.data_type, now)
            if value is None:
                message = f"Invalid value {item.get('value')!r} for field {definition.field}"
                if strict:
                    raise QueryValidationError(message)
                logger.warning(message)
                continue

            logical = str(item.get("logical_operator") or item.get("logicalOperator") or "and").lower()
            try:
                logical_operator = LogicalOperator(logical)
            except ValueError:
                logical_operator = LogicalOperator.AND

            validated.append(MetadataFilter(
                field=definition.field,
                operator=operator,
                value=value,
                value_type=definition.data_type,
                logical_operator=logical_operator,
            ))

        return validated

    async def search_with_filters(
        self,
        semantic_query: str,
        filters: List[MetadataFilter],
        user_id: Optional[str] = None,
        top_k: int = 10,
        options: Optional[SearchOptions] = None
    ) -> List[Dict[str, Any]]:
        """Hybrid search over the candidates that pass the filters."""
        options = options or SearchOptions(top_k=top_k, owner_id=user_id)
        filtered = options.model_copy(update={"filters": list(options.filters) + list(filters)})

        try:
            results = await self.search.search(semantic_query, filtered)
            logger.info(f"Search with {len(filters)} filters returned {len(results)} results")
            return results
        except QueryValidationError:
            raise
        except Exception as e:
            logger.error(f"Error searching with filters, retrying without them: {e}")
            return await self.search.search(semantic_query, options)

    async def execute_self_query(
        self,
        query: str,
        user_id: Optional[str] = None,
        top_k: int = 10,
        options: Optional[SearchOptions] = None
    ) -> Dict[str, Any]:
        """
        Parse, validate, then search.

        Returns:
            {
                'results': List[dict],
                'semantic_query': str,
                'applied_filters': List[MetadataFilter],
                'statistics': {
                    'total_documents', 'filtered_documents', 'returned_results',
                    'filter_extraction_time_ms', 'search_time_ms', 'filters_extracted'
                }
            }
        """
        options = options or SearchOptions(top_k=top_k, owner_id=user_id)

        extraction_start = time.perf_counter()
        parsed = await self.parse_query_with_filters(query)
        filters = self.validate_and_normalize_filters(parsed['filters']) if parsed['success'] else []
        extraction_ms = (time.perf_counter() - extraction_start) * 1000

        if not parsed['success']:
            logger.warning("Filter extraction failed, searching with the original query")

        search_start = time.perf_counter()
        total = await self.store.count_documents(options)
        filtered_options = options.model_copy(update={"filters": list(options.filters) + filters})
        filtered_count = await self.store.count_documents(filtered_options) if filters else total
        results = await self.search_with_filters(parsed['semantic_query'], filters, options=options)
        search_ms = (time.perf_counter() - search_start) * 1000

        logger.info(
            f"Self-query completed: {len(filters)} filters, {filtered_count}/{total} documents, "
            f"{len(results)} results"
        )

        return {
            'results': results,
            'semantic_query': parsed['semantic_query'],
            'applied_filters': filters,
            'statistics': {
                'total_documents': total,
                'filtered_documents': filtered_count,
                'returned_results': len(results),
                'filter_extraction_time_ms': round(extraction_ms, 1),
                'search_time_ms': round(search_ms, 1),
                'filters_extracted': len(filters),
            },
        }

    def _build_prompt(self, query: str, available_filters: List[FilterDefinition]) -> str:
        lines = [
            "Analyze the following natural-language query and extract:",
            "1. The semantic query (without the filter conditions)",
            "2. The structured filters",
            "",
            f"Query: {query}",
            "",
            f"Today is {datetime.now(timezone.utc).date().isoformat()}.",
            "",
            "Available filters:",
        ]
        for definition in available_filters:
            operators = ", ".join(op.value for op in definition.supported_operators)
            lines.append(f"- {definition.field} ({definition.data_type.value}; operators: {operators}): {definition.description}")
            lines.append(f"  Examples: {', '.join(definition.examples)}")
        lines += [
            "",
            "Dates may be ISO dates or relative phrases such as 'last 3 months'.",
            "Respond with JSON only:",
            '{"semanticQuery": "query without filters", "filters": '
            '[{"field": "...", "operator": "...", "value": "...", "logicalOperator": "and|or|not"}]}',
        ]
        return "\n".join(lines)
