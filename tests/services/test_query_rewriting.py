"""
Tests for Query Rewriting

This module tests:
- Local cleaning, tokenization, expansion and intent classification
- Language-model rewriting with context and its fallbacks
- Expansion, multi-query variants and decomposition
- Query quality analysis
"""

import pytest

from docrag.services.rag.query_rewriting import (
    QueryRewritingService,
    classify_intent,
    clean_query,
    expand_locally,
    tokenize,
)


# ========================================
# Local Analysis
# ========================================

def test_clean_query_keeps_hyphenated_words():
    assert clean_query("What's the Rossi-contract  penalty?!") == "what s the rossi-contract penalty"
    assert clean_query("") == ""


def test_tokenize_drops_single_characters():
    assert tokenize("what s the rossi-contract penalty") == ["what", "the", "rossi", "contract", "penalty"]


def test_expand_locally():
    tokens = ["what", "the", "rossi", "contract", "penalty"]

    assert expand_locally(tokens) == [
        "the rossi contract penalty",
        "contract penalty",
        "the rossi contract",
    ]


@pytest.mark.parametrize("tokens, intent", [
    (["what", "penalty"], "factual"),
    (["best", "contracts"], "exploratory"),
    (["contract", "vs", "invoice"], "comparison"),
    (["upload", "error"], "troubleshooting"),
    (["penalty", "clause"], "factual"),
])
def test_classify_intent(tokens, intent):
    assert classify_intent(tokens) == intent


def test_analyze_query():
    analysis = QueryRewritingService().analyze_query("What does the Rossi contract say?")

    assert analysis["original"] == "What does the Rossi contract say?"
    assert analysis["cleaned"] == "what does the rossi contract say"
    assert analysis["intent"] == "factual"
    assert analysis["expanded_queries"][0] == "the rossi contract say"


def test_analyze_empty_query():
    analysis = QueryRewritingService().analyze_query("?!")

    assert analysis["tokens"] == []
    assert analysis["expanded_queries"] == []
    assert analysis["intent"] == "unknown"


# ========================================
# Rewriting
# ========================================

@pytest.mark.asyncio
async def test_rewrite_uses_conversation_context(make_language_model):
    language_model = make_language_model(responses={
        "Rewrite the following query": '"penalty clause in the Rossi contract"',
    })
    rewriting = QueryRewritingService(language_model)

    rewritten = await rewriting.rewrite_query("and that clause?", "user: tell me about the Rossi contract")

    assert rewritten == "penalty clause in the Rossi contract"
    assert "Conversation context:" in language_model.prompts[-1]
    assert "Rossi contract" in language_model.prompts[-1]


@pytest.mark.asyncio
async def test_rewrite_falls_back_to_original(make_language_model):
    assert await QueryRewritingService(make_language_model(fail=True)).rewrite_query("q1") == "q1"
    assert await QueryRewritingService(make_language_model(default="  ")).rewrite_query("q2") == "q2"
    assert await QueryRewritingService().rewrite_query("q3") == "q3"


# ========================================
# Expansion and Variants
# ========================================

@pytest.mark.asyncio
async def test_expand_query_with_model_terms(make_language_model):
    language_model = make_language_model(responses={
        "Expand the following query": "fine, sanction, liquidated damages, extra",
    })

    expanded = await QueryRewritingService(language_model).expand_query("penalty")

    assert expanded == "penalty OR fine OR sanction OR liquidated damages"


@pytest.mark.asyncio
async def test_expand_query_falls_back_to_local_terms(make_language_model):
    rewriting = QueryRewritingService(make_language_model(fail=True))

    expanded = await rewriting.expand_query("what is the penalty clause")

    assert expanded.startswith("what is the penalty clause OR ")
    assert "penalty clause" in expanded.split(" OR ")[1:]


@pytest.mark.asyncio
async def test_expand_query_without_terms_returns_query():
    assert await QueryRewritingService().expand_query("a") == "a"


@pytest.mark.asyncio
async def test_multi_query_variants_keep_original_first(make_language_model):
    language_model = make_language_model(responses={
        "Generate 3 different variants": '{"variants": ["late delivery fine", "penalty clause", "delay sanction"]}',
    })

    variants = await QueryRewritingService(language_model).generate_multi_query_variants("penalty clause")

    assert variants == ["penalty clause", "late delivery fine", "delay sanction"]


@pytest.mark.asyncio
async def test_multi_query_variants_on_failure(make_language_model):
    rewriting = QueryRewritingService(make_language_model(default="not json"))

    assert await rewriting.generate_multi_query_variants("penalty clause") == ["penalty clause"]


@pytest.mark.asyncio
async def test_decompose_complex_query(make_language_model):
    language_model = make_language_model(responses={
        "split it into simpler sub-queries": '{"subqueries": ["Rossi penalty clause", "Rossi payment terms"]}',
    })

    subqueries = await QueryRewritingService(language_model).decompose_complex_query(
        "What are the penalty clause and the payment terms of the Rossi contract?"
    )

    assert subqueries == ["Rossi penalty clause", "Rossi payment terms"]


@pytest.mark.asyncio
async def test_decompose_falls_back_to_original(make_language_model):
    rewriting = QueryRewritingService(make_language_model(fail=True))

    assert await rewriting.decompose_complex_query("penalty clause") == ["penalty clause"]


# ========================================
# Quality Analysis
# ========================================

@pytest.mark.asyncio
async def test_analyze_query_quality(make_language_model):
    language_model = make_language_model(responses={
        "Assess the quality of the following query": (
            '{"qualityScore": 0.4, "isAmbiguous": true, "isComplex": false, "isTooGeneric": true, '
            '"suggestions": ["Name the contract"], "suggestedRewrite": "Rossi contract penalty clause"}'
        ),
    })

    result = await QueryRewritingService(language_model).analyze_query_quality("that clause")

    assert result["quality_score"] == pytest.approx(0.4)
    assert result["is_ambiguous"] is True
    assert result["is_too_generic"] is True
    assert result["suggestions"] == ["Name the contract"]
    assert result["suggested_rewrite"] == "Rossi contract penalty clause"


@pytest.mark.asyncio
async def test_analyze_query_quality_on_failure(make_language_model):
    result = await QueryRewritingService(make_language_model(fail=True)).analyze_query_quality("that clause")

    assert result["quality_score"] == 0.5
    assert result["suggestions"] == ["Query analysis unavailable"]
