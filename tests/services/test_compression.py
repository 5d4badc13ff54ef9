"""
Tests for Contextual Compression

This module tests:
- Compressed context stays within budget (plus at most one sentence)
- Under-budget input comes back unchanged
- Near-duplicate chunks are dropped, first occurrence kept
- Sentence extraction keeps the original order
- Pass-through when the embedder is unavailable
"""

import pytest

from docrag.core.exceptions import ProviderUnavailable
from docrag.services.rag.compression import (
    ContextualCompressionService,
    estimate_token_count,
    split_sentences,
)


# ========================================
# Fixtures
# ========================================

def clause_sentences(count):
    return [f"Clause {i} sets a penalty for late delivery of the ordered goods." for i in range(count)]


def annex_sentences(count):
    return [f"Section {i} of annex B lists shipping milestones and the related delivery penalty." for i in range(count)]


@pytest.fixture
def compression(embedder):
    return ContextualCompressionService(embedder)


@pytest.fixture
def chunks():
    return [
        " ".join(clause_sentences(3)),
        " ".join(annex_sentences(17)),
        "Invoices are payable within thirty days of receipt.",
    ]


# ========================================
# Token Budget
# ========================================

@pytest.mark.asyncio
@pytest.mark.parametrize("target", [20, 60, 200, 1000])
async def test_compressed_context_respects_budget(compression, chunks, target):
    longest_sentence = max(
        estimate_token_count(sentence) for chunk in chunks for sentence in split_sentences(chunk)
    )

    compressed = await compression.compress_chunks("penalty for late delivery", chunks, target)

    assert compressed
    assert sum(c["token_count"] for c in compressed) <= target + longest_sentence
    indices = [c["original_index"] for c in compressed]
    assert indices == sorted(indices)


@pytest.mark.asyncio
async def test_overflowing_chunk_keeps_best_sentences_in_order(compression, chunks):
    compressed = await compression.compress_chunks("penalty for late delivery", chunks, target_token_count=150)

    assert compressed[0]["content"] == chunks[0]
    assert compressed[0]["compression_ratio"] == 1.0

    shortened = compressed[1]
    assert shortened["original_index"] == 1
    assert shortened["compression_ratio"] < 1.0
    kept = split_sentences(shortened["content"])
    source = split_sentences(chunks[1])
    assert [source.index(s) for s in kept] == sorted(source.index(s) for s in kept)


@pytest.mark.asyncio
async def test_under_budget_input_is_unchanged(compression, chunks):
    text = chunks[0]

    assert await compression.compress_text("penalty", text, max_tokens=10_000) == text

    compressed = await compression.compress_chunks("penalty", chunks, target_token_count=10_000)
    assert [c["content"] for c in compressed] == chunks
    assert all(c["compression_ratio"] == 1.0 for c in compressed)


@pytest.mark.asyncio
async def test_single_sentence_text_is_not_split(compression):
    text = "One very long sentence about the penalty clause without any stop"

    assert await compression.compress_text("penalty", text, max_tokens=2) == text


# ========================================
# Deduplication
# ========================================

@pytest.mark.asyncio
async def test_near_identical_chunks_collapse_to_first(compression):
    base = "the penalty clause applies when the supplier delivers the goods late"
    chunks = [
        base,
        base + " today",
        "The penalty clause applies, when the supplier delivers the goods LATE!",
    ]

    assert await compression.deduplicate_chunks(chunks) == [base]


@pytest.mark.asyncio
async def test_distinct_chunk_survives_deduplication(compression):
    base = "the penalty clause applies when the supplier delivers the goods late"
    distinct = "Invoices are payable within thirty days of receipt."

    unique = await compression.deduplicate_chunks([base, base + " today", distinct])

    assert unique == [base, distinct]


@pytest.mark.asyncio
async def test_deduplicate_candidates_uses_stored_embeddings(compression):
    candidates = [
        {"candidate_id": "a", "text": "x", "embedding": [1.0, 0.0]},
        {"candidate_id": "b", "text": "y", "embedding": [0.99, 0.01]},
        {"candidate_id": "c", "text": "z", "embedding": [0.0, 1.0]},
    ]

    unique = await compression.deduplicate_candidates(candidates)

    assert [c["candidate_id"] for c in unique] == ["a", "c"]


# ========================================
# Sentence Extraction
# ========================================

TEXT = "The weather was nice. The penalty clause applies. Lunch was served. Clause two covers penalty fees."


@pytest.mark.asyncio
async def test_extract_relevant_sentences_keeps_original_order(compression):
    sentences = await compression.extract_relevant_sentences("penalty clause", TEXT, max_sentences=2)

    assert sentences == ["The penalty clause applies.", "Clause two covers penalty fees."]


@pytest.mark.asyncio
async def test_sentence_extraction_falls_back_to_keywords(make_embedder):
    compression = ContextualCompressionService(make_embedder(fail=True))

    sentences = await compression.extract_relevant_sentences("penalty clause", TEXT, max_sentences=2)

    assert sentences == ["The penalty clause applies.", "Clause two covers penalty fees."]


# ========================================
# Fallback
# ========================================

@pytest.mark.asyncio
async def test_embedder_failure_returns_chunks_uncompressed(make_embedder, chunks):
    compression = ContextualCompressionService(make_embedder(fail=True))

    compressed = await compression.compress_chunks("penalty", chunks, target_token_count=20)

    assert [c["content"] for c in compressed] == chunks
    assert [c["original_index"] for c in compressed] == [0, 1, 2]


@pytest.mark.asyncio
async def test_embedder_failure_is_raised_without_fallback(make_embedder, chunks):
    compression = ContextualCompressionService(make_embedder(fail=True))

    with pytest.raises(ProviderUnavailable):
        await compression.compress_chunks("penalty", chunks, target_token_count=20, fallback_on_error=False)


@pytest.mark.asyncio
async def test_disabled_compression_passes_through(embedder, chunks):
    compression = ContextualCompressionService(embedder, enabled=False)

    compressed = await compression.compress_chunks("penalty", chunks, target_token_count=1)

    assert [c["content"] for c in compressed] == chunks
    assert embedder.calls == []


def test_estimate_token_count():
    assert estimate_token_count("") == 0
    assert estimate_token_count(None) == 0
    assert estimate_token_count("abcd" * 10) == 10
    assert estimate_token_count("abc") == 0
