"""
Tests for HyDE (Hypothetical Document Embeddings)

This module tests:
- A HyDE weight of 0 is the standard search
- Blending of standard and HyDE scores
- Fallback to the query text / standard search on provider failure
- Multi-document generation and de-duplication
- Heuristic query-type classification
"""

import pytest

from docrag.services.rag.hybrid_search import HybridSearchService
from docrag.services.rag.hyde import HyDEService, QueryType, classify_query_type
from docrag.services.storage.base import SearchOptions


# ========================================
# Fixtures
# ========================================

@pytest.fixture
def search(store, embedder):
    return HybridSearchService(store, embedder)


@pytest.fixture
def options():
    return SearchOptions(top_k=3, min_similarity=0.0, owner_id="u1")


def make_hyde(search, embedder, language_model, **kwargs):
    return HyDEService(search, embedder, language_model, **kwargs)


# ========================================
# Blending
# ========================================

@pytest.mark.asyncio
async def test_zero_weight_is_standard_search(search, embedder, language_model, options):
    hyde = make_hyde(search, embedder, language_model)

    blended = await hyde.search_hybrid_with_hyde("penalty clause", hyde_weight=0.0, options=options)
    standard = await search.search("penalty clause", options)

    assert [r["candidate_id"] for r in blended] == [r["candidate_id"] for r in standard]
    assert blended == standard
    assert language_model.prompts == []


def test_blend_results_weighting():
    standard = [
        {"candidate_id": "a", "combined_score": 0.8},
        {"candidate_id": "b", "combined_score": 0.4},
    ]
    hyde = [
        {"candidate_id": "a", "hyde_score": 0.2},
        {"candidate_id": "c", "hyde_score": 0.9},
    ]

    blended = HyDEService.blend_results(standard, hyde, weight=0.5, top_k=3)

    assert [r["candidate_id"] for r in blended] == ["c", "a", "b"]
    by_id = {r["candidate_id"]: r["final_score"] for r in blended}
    assert by_id["a"] == pytest.approx(0.5)
    assert by_id["b"] == pytest.approx(0.4)
    assert by_id["c"] == pytest.approx(0.9)


def test_blend_results_truncates_to_top_k():
    standard = [{"candidate_id": str(i), "combined_score": i / 10} for i in range(6)]

    blended = HyDEService.blend_results(standard, [], weight=0.6, top_k=2)

    assert [r["candidate_id"] for r in blended] == ["5", "4"]


@pytest.mark.asyncio
async def test_hybrid_hyde_results_carry_final_score(search, embedder, make_language_model, options):
    language_model = make_language_model(default=(
        "The penalty clause of the supply agreement applies when delivery of the goods is late."
    ))
    hyde = make_hyde(search, embedder, language_model)

    results = await hyde.search_hybrid_with_hyde("penalty clause", hyde_weight=0.6, options=options)

    assert results
    assert len(results) <= options.top_k
    assert all("final_score" in r for r in results)
    final_scores = [r["final_score"] for r in results]
    assert final_scores == sorted(final_scores, reverse=True)


# ========================================
# HyDE Search
# ========================================

@pytest.mark.asyncio
async def test_search_with_documents_keeps_best_score(search, embedder, language_model, options):
    hyde = make_hyde(search, embedder, language_model)
    documents = [
        "The penalty clause applies when delivery of the goods is late.",
        "Invoice for consulting services delivered in March.",
    ]

    results = await hyde.search_with_documents(documents, options)

    ids = [r["candidate_id"] for r in results]
    assert len(ids) == len(set(ids))
    for result in results:
        assert result["hyde_score"] == result["vector_score"]
    hyde_scores = [r["hyde_score"] for r in results]
    assert hyde_scores == sorted(hyde_scores, reverse=True)


@pytest.mark.asyncio
async def test_embedding_failure_falls_back_to_standard_search(store, make_embedder, language_model, options):
    failing = make_embedder(fail=True)
    search = HybridSearchService(store, failing)
    hyde = make_hyde(search, failing, language_model)

    results = await hyde.search_with_hyde("penalty clause", options=options)

    assert results == await search.search("penalty clause", options)
    assert all("hyde_score" not in r for r in results)


@pytest.mark.asyncio
async def test_disabled_hyde_uses_standard_search(search, embedder, language_model, options):
    hyde = make_hyde(search, embedder, language_model, enabled=False)

    results = await hyde.search_with_hyde("penalty clause", options=options)

    assert results == await search.search("penalty clause", options)
    assert language_model.prompts == []


# ========================================
# Generation
# ========================================

@pytest.mark.asyncio
async def test_generation_failure_returns_query(search, embedder, make_language_model):
    hyde = make_hyde(search, embedder, make_language_model(fail=True))

    assert await hyde.generate_hypothetical_document("penalty clause") == "penalty clause"


@pytest.mark.asyncio
async def test_empty_generation_returns_query(search, embedder, make_language_model):
    hyde = make_hyde(search, embedder, make_language_model(default="   "))

    assert await hyde.generate_hypothetical_document("penalty clause") == "penalty clause"


@pytest.mark.asyncio
async def test_multiple_documents_are_deduplicated(search, embedder, make_language_model):
    language_model = make_language_model(responses={
        "DIFFERENT hypothetical documents": '{"documents": ["Contract terms.", "Contract terms.", "Delivery annex."]}',
    })
    hyde = make_hyde(search, embedder, language_model)

    documents = await hyde.generate_multiple_hypothetical_documents("penalty clause", n=3)

    assert documents == ["Contract terms.", "Delivery annex."]


@pytest.mark.asyncio
async def test_multiple_documents_topped_up_individually(search, embedder, make_language_model):
    language_model = make_language_model(
        responses={"DIFFERENT hypothetical documents": '{"documents": ["Contract terms."]}'},
        default="A single generated document.",
    )
    hyde = make_hyde(search, embedder, language_model)

    documents = await hyde.generate_multiple_hypothetical_documents("penalty clause", n=2)

    assert documents == ["Contract terms.", "A single generated document."]


# ========================================
# Recommendation
# ========================================

@pytest.mark.parametrize("query, expected", [
    ('invoice "INV-2024" total', QueryType.EXACT),
    ("report_q3.pdf", QueryType.EXACT),
    ("Why did the delivery penalty apply?", QueryType.REASONING),
    ("penalty clause", QueryType.SIMPLE),
    ("What does the supply agreement say about payment terms", QueryType.CONCEPTUAL),
])
def test_classify_query_type(query, expected):
    assert classify_query_type(query) == expected


@pytest.mark.asyncio
async def test_analysis_uses_heuristics_when_model_fails(search, embedder, make_language_model):
    hyde = make_hyde(search, embedder, make_language_model(fail=True))

    recommendation = await hyde.analyze_query_for_hyde('invoice "INV-2024" total')

    assert recommendation["query_type"] == QueryType.EXACT
    assert recommendation["is_recommended"] is False


@pytest.mark.asyncio
async def test_analysis_parses_model_recommendation(search, embedder, make_language_model):
    language_model = make_language_model(responses={
        "Decide whether HyDE": (
            '{"isRecommended": true, "confidence": 0.9, "reason": "abstract", '
            '"queryType": "Conceptual", "suggestedHyDEWeight": 1.7}'
        ),
    })
    hyde = make_hyde(search, embedder, language_model)

    recommendation = await hyde.analyze_query_for_hyde("what is our approach to supplier risk")

    assert recommendation["is_recommended"] is True
    assert recommendation["query_type"] == QueryType.CONCEPTUAL
    assert recommendation["confidence"] == pytest.approx(0.9)
    assert recommendation["suggested_weight"] == 1.0
