"""
Document Classification

Suggests a category, extracts tags and classifies the document type. The
three sub-tasks are independent provider round-trips and run concurrently;
each falls back on its own ("Uncategorized", [], "Unknown").
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider, with_timeout
from docrag.services.rag.hybrid_search import HybridSearchService
from docrag.services.storage.base import SearchOptions

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
UNKNOWN_TYPE = "Unknown"

DEFAULT_CATEGORIES = [
    "Invoice", "Contract", "Report", "Policy", "Manual",
    "Email", "Memo", "Presentation", "Spreadsheet", "Form",
]
DOCUMENT_TYPES = [
    "Invoice", "Contract", "Report", "Email", "Memo", "Letter",
    "Form", "Policy", "Manual", "Presentation", "Spreadsheet", "Other",
]


class ClassificationService:
    """
    Category / tags / type for a document.

    The category combines a language-model suggestion with the majority
    category of the most similar stored documents:
    - both agree and the model is confident (> 0.7): model suggestion
    - model is very confident (> 0.8): model suggestion
    - otherwise: model suggestion with the neighbour category as an alternative

    Usage:
    ------
    classifier = ClassificationService(language_model, embedder, search)
    result = await classifier.classify(text, file_name="Rossi_contract.pdf")
    # {'category': {...}, 'tags': [...], 'document_type': 'Contract'}
    """

    def __init__(
        self,
        language_model: Optional[LanguageModelProvider],
        embedder: Optional[EmbeddingProvider] = None,
        search: Optional[HybridSearchService] = None,
        known_categories: Optional[List[str]] = None,
        provider_timeout: Optional[float] = None
    ):
        self.language_model = language_model
        self.embedder = embedder
        self.search = search
        self.known_categories = known_categories or DEFAULT_CATEGORIES
        self.provider_timeout = provider_timeout

    async def classify(
        self,
        text: str,
        file_name: str = "",
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run category suggestion, tag extraction and type classification concurrently."""
        category, tags, document_type = await asyncio.gather(
            self.suggest_category(text, file_name, owner_id),
            self.extract_tags(text, file_name),
            self.classify_document_type(text, file_name),
        )
        logger.info(f"Classified '{file_name}': category={category['category']}, type={document_type}, tags={len(tags)}")
        return {'category': category, 'tags': tags, 'document_type': document_type}

    async def suggest_category(
        self,
        text: str,
        file_name: str = "",
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Returns:
            {
                'category': str,
                'confidence': float,
                'reasoning': str,
                'alternatives': List[str]
            }
        """
        fallback = {'category': UNCATEGORIZED, 'confidence': 0.0, 'reasoning': "", 'alternatives': []}
        if self.language_model is None:
            return {**fallback, 'reasoning': "Language model not configured"}

        ai_suggestion, neighbour_category = await asyncio.gather(
            self._ai_category(text, file_name),
            self._neighbour_category(text, owner_id),
        )

        if ai_suggestion['category'] == neighbour_category and ai_suggestion['confidence'] > 0.7:
            return ai_suggestion
        if ai_suggestion['confidence'] > 0.8:
            return ai_suggestion

        if neighbour_category != UNCATEGORIZED and neighbour_category not in ai_suggestion['alternatives']:
            ai_suggestion['alternatives'].append(neighbour_category)
        return ai_suggestion

    async def extract_tags(self, text: str, file_name: str = "") -> List[str]:
        """5-10 keywords describing the document; [] on failure."""
        if self.language_model is None:
            return []

        prompt = (
            "Extract 5-10 relevant tags/keywords from this document.\n\n"
            f"Document: {file_name}\nContent: {text[:2000]}\n\n"
            'Respond with JSON only: {"tags": ["tag1", "tag2"]}'
        )
        try:
            data = await self._complete_json(prompt, ("tags",), "You are a tagging expert.")
        except Exception as e:
            logger.warning(f"Tag extraction failed: {e}")
            return []

        tags = [t.strip() for t in data.get("tags") or [] if isinstance(t, str) and t.strip()]
        return list(dict.fromkeys(tags))[:10]

    async def classify_document_type(self, text: str, file_name: str = "") -> str:
        """One of DOCUMENT_TYPES; "Unknown" on failure."""
        if self.language_model is None:
            return UNKNOWN_TYPE

        prompt = (
            "Classify the type of this document.\n\n"
            f"Document: {file_name}\nContent: {text[:1000]}\n\n"
            f"Choose from: {', '.join(DOCUMENT_TYPES)}\n"
            "Respond with ONLY the document type, nothing else."
        )
        try:
            response = await with_timeout(
                self.language_model.complete(
                    [{"role": "user", "content": prompt}],
                    system="You are a document type classifier.",
                    temperature=0.0,
                    max_tokens=20,
                ),
                self.provider_timeout,
                self.language_model.name,
            )
        except Exception as e:
            logger.warning(f"Document type classification failed: {e}")
            return UNKNOWN_TYPE

        answer = (response or "").strip().strip(".").lower()
        for document_type in DOCUMENT_TYPES:
            if document_type.lower() == answer:
                return document_type
        return "Other" if answer else UNKNOWN_TYPE

    async def _ai_category(self, text: str, file_name: str) -> Dict[str, Any]:
        prompt = (
            "Analyze this document and suggest the most appropriate category.\n\n"
            f"Document: {file_name}\nContent: {text[:2000]}\n\n"
            f"Available categories: {', '.join(self.known_categories)}\n\n"
            'Respond with JSON only: {"category": "name", "confidence": 0.85, '
            '"reasoning": "brief explanation", "alternatives": ["alt1", "alt2"]}'
        )
        try:
            data = await self._complete_json(
                prompt, ("category",), "You are a document classification expert."
            )
        except Exception as e:
            logger.warning(f"Category suggestion failed: {e}")
            return {'category': UNCATEGORIZED, 'confidence': 0.0, 'reasoning': f"Error: {e}", 'alternatives': []}

        try:
            confidence = min(1.0, max(0.0, float(data.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5

        return {
            'category': str(data.get("category") or UNCATEGORIZED),
            'confidence': confidence,
            'reasoning': str(data.get("reasoning") or ""),
            'alternatives': [a for a in data.get("alternatives") or [] if isinstance(a, str) and a],
        }

    async def _neighbour_category(self, text: str, owner_id: Optional[str]) -> str:
        """Most common category among the five most similar stored documents."""
        if self.embedder is None or self.search is None or not text.strip():
            return UNCATEGORIZED
        try:
            embedding = await with_timeout(
                self.embedder.embed(text[:2000]), self.provider_timeout, self.embedder.name
            )
            neighbours = await self.search.vector_search(
                embedding,
                SearchOptions(top_k=5, min_similarity=0.0, owner_id=owner_id, search_chunks=False),
            )
        except Exception as e:
            logger.warning(f"Vector-based classification failed: {e}")
            return UNCATEGORIZED

        counts = Counter(n["category"] for n in neighbours if n.get("category"))
        return counts.most_common(1)[0][0] if counts else UNCATEGORIZED

    async def _complete_json(self, prompt: str, required_keys, system: str) -> Dict[str, Any]:
        return await with_timeout(
            self.language_model.complete_json(
                [{"role": "user", "content": prompt}],
                required_keys=required_keys,
                system=system + " Always respond with valid JSON only.",
                temperature=0.2,
            ),
            self.provider_timeout,
            self.language_model.name,
        )
