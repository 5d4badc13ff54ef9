"""
Tests for the RAG Orchestrator

This module tests:
- Stage caching (hit, staleness within the TTL, expiry, degraded results skipped)
- Re-ranking timeout falling back to the retrieval order
- Streaming progress markers, the end marker and stalled-stream timeouts
- No-documents and generation-failure answers
- Query rewriting and HyDE retrieval paths
- Refinement loop and quality verification scheduling
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

from docrag.core.exceptions import QueryValidationError
from docrag.services.rag.hyde import HyDEService
from docrag.services.rag.orchestrator import (
    END_MARKER,
    GENERATION_FAILED_ANSWER,
    NO_DOCUMENTS_ANSWER,
    RAGOrchestrator,
)
from docrag.services.rag.reranker import CrossEncoderScorer
from docrag.services.storage.base import SearchOptions


QUERY = "penalty clause late delivery"


# ========================================
# Fixtures
# ========================================

@pytest.fixture
def cross_encoder():
    """Prefers later candidates so re-ranking visibly changes the order."""
    scorer = Mock(spec=CrossEncoderScorer)
    scorer.score = AsyncMock(side_effect=lambda query, texts: [0.1 + 0.1 * i for i in range(len(texts))])
    return scorer


@pytest.fixture
def slow_cross_encoder():
    async def slow_score(query, texts):
        await asyncio.sleep(1)
        return [1.0] * len(texts)

    scorer = Mock(spec=CrossEncoderScorer)
    scorer.score = slow_score
    return scorer


def candidate_ids(items):
    return [item["candidate_id"] for item in items]


async def _collect(fragments):
    return [f async for f in fragments]


# ========================================
# Caching
# ========================================

@pytest.mark.asyncio
async def test_retrieval_is_cached_until_ttl_expires(orchestrator, store, clock, vectorize):
    first = await orchestrator.generate_response(QUERY, user_id="u1")
    assert first["metadata"]["retrieval_cached"] is False

    second = await orchestrator.generate_response(QUERY, user_id="u1")
    assert second["metadata"]["retrieval_cached"] is True
    assert second["metadata"]["query_analysis_cached"] is True
    assert candidate_ids(second["source_documents"]) == candidate_ids(first["source_documents"])

    text = "Penalty clause amendment: late delivery penalty clause raised to ten percent."
    store.add_document(
        6,
        text=text,
        file_name="penalty_clause_amendment.pdf",
        category="contracts",
        owner_id="u1",
        embedding=vectorize(text),
    )

    stale = await orchestrator.generate_response(QUERY, user_id="u1")
    assert stale["metadata"]["retrieval_cached"] is True
    assert 6 not in {d["document_id"] for d in stale["source_documents"]}

    clock.advance(61)

    fresh = await orchestrator.generate_response(QUERY, user_id="u1")
    assert fresh["metadata"]["retrieval_cached"] is False
    assert 6 in {d["document_id"] for d in fresh["source_documents"]}


@pytest.mark.asyncio
async def test_caching_disabled_never_reports_hits(orchestrator, plain_config):
    config = plain_config.model_copy(update={"enable_caching": False})

    await orchestrator.generate_response(QUERY, user_id="u1", config=config)
    second = await orchestrator.generate_response(QUERY, user_id="u1", config=config)

    assert second["metadata"]["retrieval_cached"] is False


@pytest.mark.asyncio
async def test_different_users_do_not_share_retrieval_cache(orchestrator):
    await orchestrator.generate_response("remote work policy", user_id="u1")

    other = await orchestrator.generate_response("remote work policy", user_id="u2")

    assert other["metadata"]["retrieval_cached"] is False


@pytest.mark.asyncio
async def test_lexical_only_retrieval_is_not_cached(store, make_embedder, language_model, cache, plain_config):
    embedder = make_embedder(fail=True)
    orchestrator = RAGOrchestrator(store, embedder, language_model, cache=cache, config=plain_config)

    degraded = await orchestrator.generate_response(QUERY, user_id="u1")
    assert degraded["metadata"]["vector_degraded"] is True
    assert degraded["metadata"]["retrieval_cached"] is False

    embedder.fail = False

    recovered = await orchestrator.generate_response(QUERY, user_id="u1")
    assert recovered["metadata"]["retrieval_cached"] is False
    assert recovered["metadata"]["vector_degraded"] is False
    assert any(d["vector_score"] > 0 for d in recovered["source_documents"])

    repeated = await orchestrator.generate_response(QUERY, user_id="u1")
    assert repeated["metadata"]["retrieval_cached"] is True


# ========================================
# Re-ranking and MMR
# ========================================

@pytest.mark.asyncio
async def test_rerank_timeout_keeps_retrieval_order(store, embedder, language_model, plain_config, slow_cross_encoder):
    baseline = RAGOrchestrator(store, embedder, language_model, config=plain_config)
    expected = await baseline.generate_response(QUERY, user_id="u1")

    config = plain_config.model_copy(update={"enable_reranking": True, "provider_timeout_seconds": 0.05})
    orchestrator = RAGOrchestrator(store, embedder, language_model, cross_encoder=slow_cross_encoder, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["answer"]
    assert result["answer"] != GENERATION_FAILED_ANSWER
    assert result["metadata"]["reranking_fallback"] is True
    assert candidate_ids(result["source_documents"]) == candidate_ids(expected["source_documents"])


@pytest.mark.asyncio
async def test_reranking_reorders_sources(store, embedder, language_model, plain_config, cross_encoder):
    config = plain_config.model_copy(update={"enable_reranking": True, "min_similarity": 0.0})
    orchestrator = RAGOrchestrator(store, embedder, language_model, cross_encoder=cross_encoder, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    documents = result["source_documents"]
    assert len(documents) <= config.top_k
    scores = [d["rerank_score"] for d in documents]
    assert scores == sorted(scores, reverse=True)
    assert result["metadata"]["reranking_enabled"] is True
    assert "reranking_fallback" not in result["metadata"]


@pytest.mark.asyncio
async def test_mmr_selection_is_annotated(store, embedder, language_model, plain_config):
    config = plain_config.model_copy(update={"enable_mmr": True, "min_similarity": 0.0})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    result = await orchestrator.search(QUERY, SearchOptions(top_k=2, min_similarity=0.0, owner_id="u1"), config=config)

    assert len(result["results"]) <= 2
    assert [r["mmr_rank"] for r in result["results"]] == list(range(1, len(result["results"]) + 1))
    assert result["metadata"]["mmr_enabled"] is True


# ========================================
# Search Entry Point
# ========================================

@pytest.mark.asyncio
async def test_search_hides_embeddings(orchestrator):
    result = await orchestrator.search(QUERY, SearchOptions(top_k=3, min_similarity=0.0, owner_id="u1"))

    assert result["results"]
    assert all("embedding" not in r for r in result["results"])
    assert result["metadata"]["retrieval_method"] == "standard"


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   ", None])
async def test_empty_query_is_rejected(orchestrator, embedder, query):
    with pytest.raises(QueryValidationError):
        await orchestrator.generate_response(query)
    with pytest.raises(QueryValidationError):
        await orchestrator.search(query)

    assert embedder.calls == []


# ========================================
# Answers
# ========================================

@pytest.mark.asyncio
async def test_no_documents_answer(orchestrator, language_model):
    result = await orchestrator.generate_response("zebra giraffe safari", user_id="u1")

    assert result["answer"] == NO_DOCUMENTS_ANSWER
    assert result["sources"] == []
    assert language_model.prompts == []


@pytest.mark.asyncio
async def test_generation_failure_answer(store, embedder, make_language_model, plain_config):
    orchestrator = RAGOrchestrator(store, embedder, make_language_model(fail=True), config=plain_config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["answer"] == GENERATION_FAILED_ANSWER
    assert result["sources"] == []
    assert result["source_documents"]


@pytest.mark.asyncio
async def test_answer_cites_sources(orchestrator):
    result = await orchestrator.generate_response(QUERY, user_id="u1", conversation_id=42)

    assert result["answer"] == "Late delivery triggers the penalty clause [1]."
    assert [s["source_number"] for s in result["sources"]] == [1]
    assert result["sources"][0]["document_id"] == result["source_documents"][0]["document_id"]
    assert result["conversation_id"] == 42
    assert result["response_time_ms"] >= 0


# ========================================
# Streaming
# ========================================

@pytest.mark.asyncio
async def test_streaming_markers_in_stage_order(store, embedder, language_model, plain_config, cross_encoder):
    config = plain_config.model_copy(update={
        "enable_reranking": True,
        "enable_contextual_compression": True,
        "min_similarity": 0.0,
    })
    orchestrator = RAGOrchestrator(store, embedder, language_model, cross_encoder=cross_encoder, config=config)

    fragments = [f async for f in orchestrator.generate_streaming_response(QUERY, user_id="u1")]

    assert fragments[:4] == [
        "Analyzing query...\n",
        "✓ Query analyzed\n",
        "Retrieving documents...\n",
        fragments[3],
    ]
    assert fragments[3].startswith("✓ Found ")
    assert fragments[4:7] == [
        "Re-ranking results...\n",
        "Compressing context...\n",
        "Generating response...\n\n",
    ]
    assert "".join(fragments[7:-1]) == language_model.default
    assert fragments[-1] == f"\n\n{END_MARKER}"


@pytest.mark.asyncio
async def test_streaming_without_enhancements_skips_their_markers(orchestrator):
    fragments = [f async for f in orchestrator.generate_streaming_response(QUERY, user_id="u1")]

    assert "Re-ranking results...\n" not in fragments
    assert "Compressing context...\n" not in fragments
    assert fragments[-1] == "\n\n[DONE]"


@pytest.mark.asyncio
async def test_streaming_no_documents(orchestrator):
    fragments = [f async for f in orchestrator.generate_streaming_response("zebra giraffe safari", user_id="u1")]

    assert NO_DOCUMENTS_ANSWER in fragments
    assert fragments[-1] == "\n\n[DONE]"


@pytest.mark.asyncio
async def test_streaming_generation_failure(store, embedder, make_language_model, plain_config):
    orchestrator = RAGOrchestrator(store, embedder, make_language_model(fail=True), config=plain_config)

    fragments = [f async for f in orchestrator.generate_streaming_response(QUERY, user_id="u1")]

    assert GENERATION_FAILED_ANSWER in fragments
    assert fragments[-1] == "\n\n[DONE]"


@pytest.mark.asyncio
async def test_streaming_stalled_provider_times_out(store, embedder, make_language_model, plain_config):
    class StallingLanguageModel(make_language_model):
        async def stream(self, messages, system=None, temperature=0.7, max_tokens=None):
            yield "Late "
            await asyncio.sleep(10)
            yield "delivery."

    config = plain_config.model_copy(update={"provider_timeout_seconds": 0.05})
    orchestrator = RAGOrchestrator(store, embedder, StallingLanguageModel(), config=config)

    fragments = await asyncio.wait_for(
        _collect(orchestrator.generate_streaming_response(QUERY, user_id="u1")), timeout=2
    )

    assert "Late " in fragments
    assert fragments[-2] == f"\n\n{GENERATION_FAILED_ANSWER}"
    assert fragments[-1] == f"\n\n{END_MARKER}"


@pytest.mark.asyncio
async def test_streaming_empty_query_is_rejected(orchestrator):
    with pytest.raises(QueryValidationError):
        async for _ in orchestrator.generate_streaming_response("  "):
            pass


# ========================================
# Query Analysis
# ========================================

@pytest.mark.asyncio
async def test_query_rewriting_changes_search_query(store, embedder, make_language_model, plain_config):
    language_model = make_language_model(responses={
        "Rewrite the following query": "penalty clause in the Rossi supply agreement",
    })
    config = plain_config.model_copy(update={"enable_query_rewriting": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    result = await orchestrator.generate_response("what about that clause?", user_id="u1")

    assert result["metadata"]["rewritten_query"] == "penalty clause in the Rossi supply agreement"


@pytest.mark.asyncio
async def test_hyde_retrieval_when_recommended(store, embedder, make_language_model, plain_config):
    language_model = make_language_model(responses={
        "Decide whether HyDE": '{"isRecommended": true, "confidence": 0.8, "queryType": "Conceptual"}',
        "Write a company document": "The supplier pays a penalty when delivery of the goods is late.",
    })
    config = plain_config.model_copy(update={"enable_hyde": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["metadata"]["hyde_used"] is True
    assert result["metadata"]["query_type"] == "Conceptual"
    assert result["metadata"]["retrieval_method"] == "hyde"
    assert all("final_score" in d for d in result["source_documents"])


@pytest.mark.asyncio
async def test_hyde_failure_falls_back_to_standard_retrieval(store, embedder, make_language_model, plain_config):
    language_model = make_language_model(responses={
        "Decide whether HyDE": '{"isRecommended": true, "confidence": 0.8, "queryType": "Conceptual"}',
    })
    config = plain_config.model_copy(update={"enable_hyde": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    with patch.object(HyDEService, "search_with_documents", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["metadata"]["retrieval_method"] == "standard_fallback"
    assert result["source_documents"]


@pytest.mark.asyncio
async def test_hyde_fallback_retrieval_is_not_cached(store, embedder, make_language_model, cache, plain_config):
    language_model = make_language_model(responses={
        "Decide whether HyDE": '{"isRecommended": true, "confidence": 0.8, "queryType": "Conceptual"}',
    })
    config = plain_config.model_copy(update={"enable_hyde": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, cache=cache, config=config)

    with patch.object(HyDEService, "search_with_documents", AsyncMock(side_effect=RuntimeError("boom"))):
        await orchestrator.generate_response(QUERY, user_id="u1")

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["metadata"]["retrieval_cached"] is False
    assert result["metadata"]["retrieval_method"] == "hyde"


@pytest.mark.asyncio
async def test_hyde_failure_keeps_rewritten_query(store, embedder, make_language_model, cache, plain_config):
    language_model = make_language_model(responses={
        "Rewrite the following query": "penalty clause in the Rossi supply agreement",
    })
    config = plain_config.model_copy(update={"enable_query_rewriting": True, "enable_hyde": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, cache=cache, config=config)

    with patch.object(HyDEService, "analyze_query_for_hyde", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await orchestrator.generate_response("what about that clause?", user_id="u1")
        again = await orchestrator.generate_response("what about that clause?", user_id="u1")

    assert result["metadata"]["rewritten_query"] == "penalty clause in the Rossi supply agreement"
    assert result["metadata"]["hyde_used"] is False
    assert again["metadata"]["query_analysis_cached"] is False


# ========================================
# Refinement and Verification
# ========================================

@pytest.mark.asyncio
async def test_refinement_revises_until_limit(store, embedder, make_language_model, plain_config):
    language_model = make_language_model(responses={
        "Draft answer:": "The amount of the penalty is missing.",
        "Reviewer feedback:": "Late delivery costs 5% per week under the penalty clause [1].",
    })
    config = plain_config.model_copy(update={"max_refinement_iterations": 1})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["answer"] == "Late delivery costs 5% per week under the penalty clause [1]."
    assert result["metadata"]["refinement_iterations"] == 1


@pytest.mark.asyncio
async def test_refinement_stops_on_approval(store, embedder, make_language_model, plain_config):
    language_model = make_language_model(responses={"Draft answer:": "APPROVED"})
    config = plain_config.model_copy(update={"max_refinement_iterations": 3})
    orchestrator = RAGOrchestrator(store, embedder, language_model, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    assert result["answer"] == language_model.default
    assert result["metadata"]["refinement_iterations"] == 0


@pytest.mark.asyncio
async def test_quality_verification_is_dispatched(store, embedder, language_model, plain_config):
    dispatcher = Mock()
    config = plain_config.model_copy(update={"enable_quality_check": True})
    orchestrator = RAGOrchestrator(store, embedder, language_model, quality_dispatcher=dispatcher, config=config)

    result = await orchestrator.generate_response(QUERY, user_id="u1")

    dispatcher.assert_called_once()
    query, answer, source_texts = dispatcher.call_args.args
    assert query == QUERY
    assert answer == result["answer"]
    assert source_texts == [d["text"] for d in result["source_documents"]]
    assert result["metadata"]["quality_check_scheduled"] is True


@pytest.mark.asyncio
async def test_quality_verification_skipped_for_failed_answer(store, embedder, make_language_model, plain_config):
    dispatcher = Mock()
    config = plain_config.model_copy(update={"enable_quality_check": True})
    orchestrator = RAGOrchestrator(
        store, embedder, make_language_model(fail=True), quality_dispatcher=dispatcher, config=config
    )

    await orchestrator.generate_response(QUERY, user_id="u1")

    dispatcher.assert_not_called()
