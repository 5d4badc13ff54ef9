"""
Query Rewriting for RAG

This module prepares user queries for retrieval:
- Query cleaning, tokenization and intent classification (local heuristics)
- Rewriting ambiguous queries into specific ones (language model)
- Expansion with related terms
- Multi-query variants and decomposition of complex queries
- Query quality analysis

Every language-model path falls back to a local result; rewriting never
fails a request.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from docrag.services.providers.base import LanguageModelProvider, with_timeout

logger = logging.getLogger(__name__)

QUESTION_WORDS = {'what', 'how', 'why', 'when', 'where', 'who', 'which', 'is', 'are', 'can', 'does', 'do'}

REWRITE_SYSTEM_PROMPT = (
    "You are an expert in query rewriting for retrieval systems. "
    "Rewrite ambiguous queries into clearer, more specific ones."
)


def clean_query(query: str) -> str:
    """
    Clean and normalize query text.

    Steps:
    - Convert to lowercase
    - Remove punctuation (except hyphens in words)
    - Remove extra whitespace
    """
    if not query:
        return ""

    cleaned = query.lower()

    # Replace punctuation with spaces, keeping hyphens inside words ("full-stack")
    cleaned = re.sub(r'[^\w\s-]', ' ', cleaned)
    cleaned = re.sub(r'\s-+|-+\s', ' ', cleaned)

    return re.sub(r'\s+', ' ', cleaned).strip()


def tokenize(text: str) -> List[str]:
    """Word tokens of at least 2 characters."""
    if not text:
        return []
    return [t for t in re.findall(r'\b\w+\b', text.lower()) if len(t) >= 2]


def expand_locally(tokens: List[str], max_expansions: int = 3) -> List[str]:
    """
    Keyword-only expansions for improved recall.

    Strategies:
    1. Remove question words
    2. Last two content words (often the key topic)
    3. First three content words
    """
    expansions = []
    content_tokens = [t for t in tokens if t not in QUESTION_WORDS]

    if content_tokens and content_tokens != tokens:
        expansions.append(' '.join(content_tokens))

    if len(content_tokens) >= 2:
        key_phrase = ' '.join(content_tokens[-2:])
        if key_phrase not in expansions:
            expansions.append(key_phrase)

        start_phrase = ' '.join(content_tokens[:3])
        if start_phrase not in expansions:
            expansions.append(start_phrase)

    return expansions[:max_expansions]


def classify_intent(tokens: List[str]) -> str:
    """
    Classify query intent.

    Intent types:
    - factual: seeking specific information (what, how, definition)
    - exploratory: browsing (best, recommend, list)
    - comparison: comparing options (vs, difference, compare)
    - troubleshooting: solving problems (error, issue, fix)
    """
    factual_words = {'what', 'how', 'why', 'when', 'define', 'explain', 'introduction', 'overview'}
    if any(word in tokens for word in factual_words):
        return 'factual'

    exploratory_words = {'best', 'top', 'recommend', 'list', 'comparison', 'review', 'guide'}
    if any(word in tokens for word in exploratory_words):
        return 'exploratory'

    comparison_words = {'vs', 'versus', 'difference', 'compare', 'between', 'or'}
    if any(word in tokens for word in comparison_words):
        return 'comparison'

    troubleshooting_words = {'error', 'issue', 'problem', 'fix', 'solve', 'debug', 'help', 'not', 'working'}
    if any(word in tokens for word in troubleshooting_words):
        return 'troubleshooting'

    return 'factual'


class QueryRewritingService:
    """
    Rewrites, expands and decomposes user queries.

    Usage:
    ------
    rewriting = QueryRewritingService(language_model)

    analysis = rewriting.analyze_query("What does the Rossi contract say about penalties?")
    # {
    #     'original': 'What does the Rossi contract say about penalties?',
    #     'cleaned': 'what does the rossi contract say about penalties',
    #     'tokens': ['what', 'does', 'the', 'rossi', ...],
    #     'expanded_queries': ['the rossi contract say about penalties', ...],
    #     'intent': 'factual'
    # }

    better = await rewriting.rewrite_query("and what about that one?", conversation_context)
    """

    def __init__(
        self,
        language_model: Optional[LanguageModelProvider] = None,
        provider_timeout: Optional[float] = None
    ):
        self.language_model = language_model
        self.provider_timeout = provider_timeout

    def analyze_query(self, query: str, max_expansions: int = 3) -> Dict[str, Any]:
        """Local analysis: cleaned text, tokens, keyword expansions, intent."""
        cleaned = clean_query(query)
        tokens = tokenize(cleaned)

        result = {
            'original': query,
            'cleaned': cleaned,
            'tokens': tokens,
            'expanded_queries': expand_locally(tokens, max_expansions) if tokens else [],
            'intent': classify_intent(tokens) if tokens else 'unknown',
        }
        logger.debug(
            f"Analyzed query: intent={result['intent']}, expansions={len(result['expanded_queries'])}"
        )
        return result

    async def rewrite_query(self, original_query: str, conversation_context: Optional[str] = None) -> str:
        """Clearer, more specific version of the query. Returns the original on failure."""
        if self.language_model is None:
            return original_query

        prompt = [
            "Rewrite the following query into a clearer, more specific version for a document search system.",
            "",
            f"Original query: {original_query}",
        ]
        if conversation_context and conversation_context.strip():
            prompt += ["", "Conversation context:", conversation_context]
        prompt += [
            "",
            "Rules:",
            "- Resolve ambiguous references ('that', 'this', 'the document')",
            "- Make the query more specific and searchable",
            "- Keep the original intent",
            "- Return ONLY the rewritten query, no explanation",
            "",
            "Rewritten query:",
        ]

        try:
            rewritten = await self._complete("\n".join(prompt), system=REWRITE_SYSTEM_PROMPT, temperature=0.3, max_tokens=200)
            rewritten = (rewritten or "").strip().strip('"')
            if not rewritten:
                return original_query
            logger.info(f"Query rewritten: '{original_query}' -> '{rewritten}'")
            return rewritten
        except Exception as e:
            logger.error(f"Error rewriting query '{original_query}': {e}")
            return original_query

    async def expand_query(self, query: str, max_expansions: int = 3) -> str:
        """
        Query with related terms OR-ed on: "query OR term1 OR term2".

        Falls back to local keyword expansions when the model is unavailable.
        """
        terms: List[str] = []

        if self.language_model is not None:
            prompt = (
                f"Expand the following query with {max_expansions} synonyms or related terms.\n"
                "Return only the additional terms separated by commas, without the original query.\n\n"
                f"Query: {query}\n\nAdditional terms:"
            )
            try:
                response = await self._complete(prompt, temperature=0.5, max_tokens=100)
                terms = [t.strip() for t in (response or "").split(",") if t.strip()]
            except Exception as e:
                logger.error(f"Error expanding query '{query}': {e}")

        if not terms:
            terms = expand_locally(tokenize(clean_query(query)), max_expansions)

        terms = terms[:max_expansions]
        if not terms:
            return query

        expanded = f"{query} OR {' OR '.join(terms)}"
        logger.debug(f"Query expanded: '{query}' -> '{expanded}'")
        return expanded

    async def generate_multi_query_variants(self, query: str, num_variants: int = 3) -> List[str]:
        """Alternative phrasings with the same intent. The original query is always first."""
        variants = [query]
        if self.language_model is None:
            return variants

        prompt = (
            f"Generate {num_variants} different variants of the following query, using different "
            "perspectives and wording while keeping the same search intent.\n\n"
            f"Original query: {query}\n\n"
            'Respond with JSON only: {"variants": ["variant 1", "variant 2", "variant 3"]}'
        )

        try:
            data = await self._complete_json(prompt, ("variants",), temperature=0.7, max_tokens=300)
            for variant in data.get("variants") or []:
                if isinstance(variant, str) and variant.strip() and variant.strip() not in variants:
                    variants.append(variant.strip())
        except Exception as e:
            logger.error(f"Error generating query variants for '{query}': {e}")

        logger.info(f"Generated {len(variants)} query variants")
        return variants[:num_variants + 1]

    async def decompose_complex_query(self, complex_query: str) -> List[str]:
        """Split a multi-part query into simpler sub-queries; a simple query comes back alone."""
        if self.language_model is None:
            return [complex_query]

        prompt = (
            "Analyze the following query and split it into simpler sub-queries.\n"
            "If it contains several questions or concepts, separate them.\n"
            "If it is already simple, return only the original query.\n\n"
            f"Query: {complex_query}\n\n"
            'Respond with JSON only: {"subqueries": ["sub-query 1", "sub-query 2"]}'
        )

        try:
            data = await self._complete_json(prompt, ("subqueries",), temperature=0.3, max_tokens=300)
            subqueries = [s.strip() for s in data.get("subqueries") or [] if isinstance(s, str) and s.strip()]
        except Exception as e:
            logger.error(f"Error decomposing query '{complex_query}': {e}")
            subqueries = []

        if not subqueries:
            subqueries = [complex_query]

        logger.info(f"Decomposed query into {len(subqueries)} subqueries")
        return subqueries

    async def analyze_query_quality(self, query: str) -> Dict[str, Any]:
        """
        Judge how searchable a query is.

        Returns:
            {
                'quality_score': float,
                'is_ambiguous': bool,
                'is_complex': bool,
                'is_too_generic': bool,
                'suggestions': List[str],
                'suggested_rewrite': Optional[str]
            }
        """
        result = {
            'quality_score': 0.7,
            'is_ambiguous': False,
            'is_complex': False,
            'is_too_generic': False,
            'suggestions': [],
            'suggested_rewrite': None,
        }
        if self.language_model is None:
            return result

        prompt = (
            "Assess the quality of the following query for a document search system.\n\n"
            f"Query: {query}\n\n"
            "Evaluate clarity (specific or too vague?), complexity (several questions?) and "
            "ambiguity (unclear references?).\n\n"
            "Respond with JSON only:\n"
            '{"qualityScore": 0.0-1.0, "isAmbiguous": true/false, "isComplex": true/false, '
            '"isTooGeneric": true/false, "suggestions": ["..."], "suggestedRewrite": "optional"}'
        )

        try:
            data = await self._complete_json(prompt, ("qualityScore",), temperature=0.3, max_tokens=400)
        except Exception as e:
            logger.error(f"Error analyzing query quality for '{query}': {e}")
            return {**result, 'quality_score': 0.5, 'suggestions': ["Query analysis unavailable"]}

        try:
            result['quality_score'] = min(1.0, max(0.0, float(data.get("qualityScore"))))
        except (TypeError, ValueError):
            pass
        result['is_ambiguous'] = bool(data.get("isAmbiguous", False))
        result['is_complex'] = bool(data.get("isComplex", False))
        result['is_too_generic'] = bool(data.get("isTooGeneric", False))
        result['suggestions'] = [s for s in data.get("suggestions") or [] if isinstance(s, str) and s.strip()]
        result['suggested_rewrite'] = data.get("suggestedRewrite") or None

        logger.info(f"Query analysis: score={result['quality_score']}, ambiguous={result['is_ambiguous']}")
        return result

    async def _complete(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        return await with_timeout(
            self.language_model.complete([{"role": "user", "content": prompt}], system=system, **kwargs),
            self.provider_timeout,
            self.language_model.name,
        )

    async def _complete_json(self, prompt: str, required_keys, **kwargs) -> Dict[str, Any]:
        return await with_timeout(
            self.language_model.complete_json([{"role": "user", "content": prompt}], required_keys=required_keys, **kwargs),
            self.provider_timeout,
            self.language_model.name,
        )
