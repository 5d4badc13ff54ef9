"""
Tests for Document Storage

This module tests:
- Access checks (owner, public and organization visibility, tenant, ids)
- Metadata filter evaluation and filter chains
- Newest-first candidate windows (upload times normalized to UTC) and chunk candidates
- Chunk replacement as a gapless set
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from docrag.services.storage import (
    FilterOperator,
    FilterValueType,
    InMemoryDocumentStore,
    LogicalOperator,
    MetadataFilter,
    SearchOptions,
    matches_filters,
)


RECORD = {
    "document_id": 1,
    "file_name": "Rossi_contract.pdf",
    "category": "contracts",
    "uploaded_at": datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc),
}


def flt(field, operator, value, logical=LogicalOperator.AND, value_type=FilterValueType.STRING):
    return MetadataFilter(
        field=field, operator=operator, value=value, value_type=value_type, logical_operator=logical
    )


# ========================================
# Filters
# ========================================

@pytest.mark.parametrize("condition, expected", [
    (flt("category", FilterOperator.EQUALS, "Contracts"), True),
    (flt("category", FilterOperator.NOT_EQUALS, "contracts"), False),
    (flt("category", FilterOperator.IN, ["invoices", "contracts"]), True),
    (flt("category", FilterOperator.NOT_IN, ["invoices"]), True),
    (flt("file_name", FilterOperator.CONTAINS, "rossi"), True),
    (flt("file_name", FilterOperator.STARTS_WITH, "contract"), False),
    (flt("file_name", FilterOperator.ENDS_WITH, ".pdf"), True),
    (flt("upload_date", FilterOperator.EQUALS, date(2024, 6, 1), value_type=FilterValueType.DATE), True),
    (flt("upload_date", FilterOperator.GREATER_THAN, date(2024, 6, 1), value_type=FilterValueType.DATE), True),
    (flt("upload_date", FilterOperator.LESS_THAN, datetime(2024, 5, 1), value_type=FilterValueType.DATE), False),
    (flt("owner_id", FilterOperator.EQUALS, "u1"), False),
])
def test_single_filter(condition, expected):
    assert matches_filters(RECORD, [condition]) is expected


def test_incomparable_values_do_not_match():
    condition = flt("upload_date", FilterOperator.GREATER_THAN, 5, value_type=FilterValueType.NUMBER)

    assert matches_filters(RECORD, [condition]) is False


def test_filter_chain_left_to_right():
    is_invoice = flt("category", FilterOperator.EQUALS, "invoices")
    or_rossi = flt("file_name", FilterOperator.CONTAINS, "rossi", LogicalOperator.OR)
    not_pdf = flt("file_name", FilterOperator.ENDS_WITH, ".pdf", LogicalOperator.NOT)

    assert matches_filters(RECORD, []) is True
    assert matches_filters(RECORD, [is_invoice, or_rossi]) is True
    assert matches_filters(RECORD, [is_invoice, or_rossi, not_pdf]) is False
    assert matches_filters(RECORD, [flt("category", FilterOperator.EQUALS, "invoices", LogicalOperator.NOT)]) is True


# ========================================
# Access
# ========================================

@pytest.mark.asyncio
async def test_owner_sees_own_and_public_documents(store):
    assert await store.count_documents() == 5
    assert await store.count_documents(SearchOptions(owner_id="u1")) == 4
    assert await store.count_documents(SearchOptions(owner_id="u2")) == 2


@pytest.mark.asyncio
async def test_organization_documents_need_matching_tenant():
    store = InMemoryDocumentStore()
    store.add_document(1, text="Org policy", file_name="org.pdf", owner_id="u2", tenant_id="t1", visibility="organization")

    assert await store.count_documents(SearchOptions(owner_id="u1", tenant_id="t1")) == 1
    assert await store.count_documents(SearchOptions(owner_id="u1", tenant_id="t2")) == 0
    assert await store.count_documents(SearchOptions(owner_id="u1")) == 0


@pytest.mark.asyncio
async def test_document_ids_and_visibility_restrictions(store):
    assert await store.count_documents(SearchOptions(document_ids=[1, 4])) == 2
    assert await store.count_documents(SearchOptions(visibility=["public"])) == 1


# ========================================
# Candidates
# ========================================

@pytest.mark.asyncio
async def test_fetch_candidates_newest_first(store):
    candidates = await store.fetch_candidates(SearchOptions(owner_id="u1"), limit=2)

    assert [c["candidate_id"] for c in candidates] == ["doc:1", "doc:2"]
    assert candidates[0]["embedding"] is not None
    assert candidates[0]["chunk_id"] is None


@pytest.mark.asyncio
async def test_mixed_naive_and_aware_upload_times_sort_in_utc():
    store = InMemoryDocumentStore()
    store.add_document(1, text="older", file_name="a.txt", uploaded_at=datetime(2024, 6, 1, 9, 0))
    store.add_document(
        2, text="newer", file_name="b.txt",
        uploaded_at=datetime(2024, 6, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))),
    )
    store.add_document(3, text="newest", file_name="c.txt", uploaded_at=datetime(2024, 6, 1, 11, 0))

    candidates = await store.fetch_candidates(SearchOptions(), limit=10)

    assert [c["document_id"] for c in candidates] == [3, 2, 1]
    stored = await store.get_documents([1, 2])
    assert stored[0]["uploaded_at"] == datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
    assert stored[1]["uploaded_at"] == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fetch_candidates_applies_filters(store):
    options = SearchOptions(filters=[flt("category", FilterOperator.IN, ["contracts", "invoices"])])

    candidates = await store.fetch_candidates(options, limit=10)

    assert [c["document_id"] for c in candidates] == [1, 3]


@pytest.mark.asyncio
async def test_chunks_replace_document_candidates(vectorize):
    store = InMemoryDocumentStore()
    store.add_document(1, text="Full text", file_name="Rossi_contract.pdf", embedding=vectorize("full text"))
    store.replace_chunks(1, [
        {"chunk_index": 5, "chunk_text": "Penalty clause.", "embedding": vectorize("penalty clause")},
        {"chunk_index": 9, "chunk_text": "Payment terms.", "embedding": vectorize("payment terms")},
    ])

    chunked = await store.fetch_candidates(SearchOptions(), limit=10)
    whole = await store.fetch_candidates(SearchOptions(search_chunks=False), limit=10)

    assert [c["candidate_id"] for c in chunked] == ["chunk:1:0", "chunk:1:1"]
    assert [c["chunk_index"] for c in chunked] == [0, 1]
    assert chunked[1]["file_name"] == "Rossi_contract.pdf"
    assert [c["candidate_id"] for c in whole] == ["doc:1"]


@pytest.mark.asyncio
async def test_replace_chunks_keeps_offsets_contiguous():
    store = InMemoryDocumentStore()
    store.add_document(1, text="abcdefghij", file_name="a.txt", chunks=[
        {"chunk_text": "abcde"},
        {"chunk_text": "fghij"},
    ])

    document = (await store.get_documents([1]))[0]

    assert [(c["start_offset"], c["end_offset"]) for c in document["chunks"]] == [(0, 5), (5, 10)]


@pytest.mark.asyncio
async def test_get_documents_returns_copies(store):
    document = (await store.get_documents([1, 99]))[0]
    document["text"] = "changed"

    assert (await store.get_documents([1]))[0]["text"] != "changed"


@pytest.mark.asyncio
async def test_update_and_remove(store):
    store.update_metadata(4, visibility="public")
    assert await store.count_documents(SearchOptions(owner_id="u1")) == 5

    assert store.remove_document(4) is True
    assert store.remove_document(4) is False
