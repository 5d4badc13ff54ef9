"""
Response Quality Verification

Post-hoc checks of a produced answer against the sources it was built from:
- Faithfulness: how well each answer statement is supported by the sources
- Answer relevancy: how well the answer addresses the query
- Hallucinations: statements with weak or no support
- Citations: whether the text around each [N] marker matches its source

Verification runs after the answer has been returned (Celery task or
asyncio task) and never affects it. Failures are logged.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from docrag.services.providers.base import EmbeddingProvider, with_timeout
from docrag.services.rag.compression import split_sentences
from docrag.services.rag.scoring import LexicalScorer, cosine_similarity
from docrag.services.storage.base import DocumentStore

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.6
HALLUCINATION_THRESHOLD = 0.7
NO_EVIDENCE_THRESHOLD = 0.3
CITATION_VERIFIED_THRESHOLD = 0.6
CITATION_WINDOW = 100

_CITATION_RE = re.compile(r"\[(\d+)\]")
_WORD_SPLIT = re.compile(r"[\s.,!?]+")


def text_similarity(text1: str, text2: str) -> float:
    """Jaccard overlap of the two texts' lowercased word sets."""
    words1 = {w for w in _WORD_SPLIT.split((text1 or "").lower()) if w}
    words2 = {w for w in _WORD_SPLIT.split((text2 or "").lower()) if w}
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


class QualityService:
    """
    Scores an answer against its sources.

    With an embedding provider, statement support is the best cosine
    similarity to any source; without one (or if embedding fails), the best
    word-overlap similarity to any source sentence.

    Usage:
    ------
    quality = QualityService(store, embedder)
    report = await quality.verify_response_quality(query, answer, source_ids=[1, 7])
    report['faithfulness_score'], report['hallucination_detection']['hallucinations']
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        provider_timeout: Optional[float] = None
    ):
        self.store = store
        self.embedder = embedder
        self.provider_timeout = provider_timeout
        self._lexical = LexicalScorer()

    async def verify_response_quality(
        self,
        query: str,
        answer: str,
        source_ids: Optional[Iterable[Any]] = None,
        source_texts: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Full quality report for one answer.

        Sources are given either as stored document ids or directly as texts.
        """
        result = self._empty_result()

        try:
            if source_texts is None:
                source_texts = await self.get_source_texts(source_ids or [])

            statements = split_sentences(answer)
            scores = await self._statement_scores(statements, source_texts)

            for statement, score in zip(statements, scores):
                result['statement_confidence_scores'].append({'statement': statement, 'confidence': score})
                if score < LOW_CONFIDENCE_THRESHOLD:
                    result['low_confidence_statements'].append(statement)
            result['has_low_confidence_warnings'] = bool(result['low_confidence_statements'])

            result['faithfulness_score'] = sum(scores) / len(scores) if scores else 0.0
            result['overall_confidence_score'] = result['faithfulness_score']
            result['answer_relevancy_score'] = await self.calculate_answer_relevancy(query, answer)
            result['hallucination_detection'] = self.detect_hallucinations(statements, scores)
            result['citation_verification'] = self.verify_citations(answer, source_texts)

            self._generate_quality_warnings(result)

            if result['has_low_confidence_warnings'] or result['hallucination_detection']['has_potential_hallucinations']:
                self.log_discrepancy(
                    query,
                    answer,
                    "QualityWarning",
                    f"Low confidence: {result['overall_confidence_score']:.2f}, "
                    f"Hallucinations: {result['hallucination_detection']['has_potential_hallucinations']}",
                )

        except Exception as e:
            logger.error(f"Error verifying response quality: {e}")
            result['quality_warnings'].append("Error during quality verification")

        return result

    async def calculate_confidence_score(self, statement: str, source_texts: List[str]) -> float:
        """Support for one statement: best similarity to any source."""
        scores = await self._statement_scores([statement], source_texts)
        return scores[0] if scores else 0.0

    async def calculate_answer_relevancy(self, query: str, answer: str) -> float:
        """Embedding similarity of query and answer, or query keyword coverage."""
        if not query or not answer:
            return 0.0

        if self.embedder is not None:
            try:
                vectors = await with_timeout(
                    self.embedder.embed_batch([query, answer]), self.provider_timeout, self.embedder.name
                )
                return max(0.0, cosine_similarity(vectors[0], vectors[1]))
            except Exception as e:
                logger.warning(f"Answer relevancy embedding failed, using keyword coverage: {e}")

        keywords = self._lexical.extract_keywords(query)
        if not keywords:
            return 0.0
        answer_lower = answer.lower()
        return sum(1 for k in keywords if k in answer_lower) / len(keywords)

    def detect_hallucinations(self, statements: List[str], scores: List[float]) -> Dict[str, Any]:
        """Statements whose support is below the hallucination threshold."""
        hallucinations = []
        for statement, confidence in zip(statements, scores):
            if confidence < HALLUCINATION_THRESHOLD:
                hallucinations.append({
                    'text': statement,
                    'confidence': confidence,
                    'reason': (
                        "No supporting evidence found in source documents"
                        if confidence < NO_EVIDENCE_THRESHOLD
                        else "Weak supporting evidence in source documents"
                    ),
                })

        return {
            'has_potential_hallucinations': bool(hallucinations),
            'hallucination_score': (
                1.0 - sum(h['confidence'] for h in hallucinations) / len(hallucinations)
                if hallucinations else 0.0
            ),
            'hallucinations': hallucinations,
        }

    def verify_citations(self, answer: str, source_texts: List[str]) -> Dict[str, Any]:
        """
        Check each [N] marker.

        The text within 100 characters either side of the marker is compared
        with source N (or every source when N is out of range); the citation
        is verified when the best similarity exceeds 0.6.
        """
        citations = []
        for match in _CITATION_RE.finditer(answer or ""):
            number = int(match.group(1))
            start = max(0, match.start() - CITATION_WINDOW)
            context = answer[start:start + 2 * CITATION_WINDOW]

            candidates = [source_texts[number - 1]] if 1 <= number <= len(source_texts) else source_texts
            best = max((self._best_sentence_similarity(context, s) for s in candidates), default=0.0)

            citations.append({
                'citation_number': number,
                'cited_text': context,
                'is_verified': best > CITATION_VERIFIED_THRESHOLD,
                'confidence_score': best,
            })

        verified = sum(1 for c in citations if c['is_verified'])
        return {
            'total_citations': len(citations),
            'verified_citations': verified,
            'unverified_citations': len(citations) - verified,
            'citations': citations,
        }

    def log_discrepancy(self, query: str, answer: str, discrepancy_type: str, details: str) -> None:
        """Report a quality discrepancy to the audit log."""
        logger.warning(
            f"RAG quality discrepancy - type: {discrepancy_type}, query: {query[:100]!r}, "
            f"answer_chars: {len(answer or '')}, details: {details}"
        )

    async def get_source_texts(self, source_ids: Iterable[Any]) -> List[str]:
        """Chunk texts (or full text when a document has no chunks) of stored documents."""
        if self.store is None:
            return []

        texts: List[str] = []
        for document in await self.store.get_documents(list(source_ids)):
            chunks = document.get("chunks") or []
            if chunks:
                texts.extend(c.get("chunk_text") or "" for c in chunks)
            elif document.get("text"):
                texts.append(document["text"])
        return texts

    async def _statement_scores(self, statements: List[str], source_texts: List[str]) -> List[float]:
        if not statements:
            return []
        if not source_texts:
            return [0.0] * len(statements)

        if self.embedder is not None:
            try:
                vectors = await with_timeout(
                    self.embedder.embed_batch(statements + source_texts), self.provider_timeout, self.embedder.name
                )
                statement_vectors = vectors[:len(statements)]
                source_vectors = vectors[len(statements):]
                return [
                    max(0.0, max(cosine_similarity(sv, src) for src in source_vectors))
                    for sv in statement_vectors
                ]
            except Exception as e:
                logger.warning(f"Statement embedding failed, using word overlap: {e}")

        return [
            max(self._best_sentence_similarity(statement, source) for source in source_texts)
            for statement in statements
        ]

    @staticmethod
    def _best_sentence_similarity(text: str, source: str) -> float:
        sentences = split_sentences(source) or [source]
        return max(text_similarity(text, s) for s in sentences)

    @staticmethod
    def _generate_quality_warnings(result: Dict[str, Any]) -> None:
        warnings = result['quality_warnings']
        if result['overall_confidence_score'] < LOW_CONFIDENCE_THRESHOLD:
            warnings.append(f"Overall confidence score is low ({result['overall_confidence_score']:.2f})")
        if result['has_low_confidence_warnings']:
            warnings.append(f"{len(result['low_confidence_statements'])} statements have low confidence")
        if result['hallucination_detection']['has_potential_hallucinations']:
            warnings.append(
                f"{len(result['hallucination_detection']['hallucinations'])} potential hallucinations detected"
            )
        if result['citation_verification']['unverified_citations'] > 0:
            warnings.append(
                f"{result['citation_verification']['unverified_citations']} citations could not be verified"
            )

    @staticmethod
    def _empty_result() -> Dict[str, Any]:
        return {
            'faithfulness_score': 0.0,
            'answer_relevancy_score': 0.0,
            'overall_confidence_score': 0.0,
            'statement_confidence_scores': [],
            'low_confidence_statements': [],
            'has_low_confidence_warnings': False,
            'hallucination_detection': {
                'has_potential_hallucinations': False,
                'hallucination_score': 0.0,
                'hallucinations': [],
            },
            'citation_verification': {
                'total_citations': 0,
                'verified_citations': 0,
                'unverified_citations': 0,
                'citations': [],
            },
            'quality_warnings': [],
        }
