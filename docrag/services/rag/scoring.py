"""
Scoring primitives shared by the retrieval stages.

- cosine_similarity: vector similarity (numpy)
- LexicalScorer: weighted keyword presence in filename, category and body
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

_TOKEN_STRIP = ".,;:!?\"'()[]{}<>"


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when either vector is missing, empty, zero-magnitude, or the
    dimensions differ.
    """
    if a is None or b is None:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


class LexicalScorer:
    """
    Keyword-overlap scorer.

    Each keyword contributes the best of:
    - filename match (highest weight)
    - category match (medium weight)
    - body text match (lowest weight, scaled by occurrence count up to a cap)

    The candidate score is the mean keyword contribution multiplied by the
    fraction of keywords that matched at all, so it stays in [0, 1].
    """

    def __init__(
        self,
        filename_weight: float = 1.0,
        category_weight: float = 0.6,
        text_weight: float = 0.4,
        occurrence_cap: int = 5,
        min_keyword_length: int = 2
    ):
        self.filename_weight = filename_weight
        self.category_weight = category_weight
        self.text_weight = text_weight
        self.occurrence_cap = occurrence_cap
        self.min_keyword_length = min_keyword_length

    def extract_keywords(self, query: str) -> List[str]:
        """Whitespace-split, lowercased, deduplicated keywords of at least min length."""
        keywords = []
        seen = set()
        for raw in (query or "").split():
            token = raw.strip(_TOKEN_STRIP).lower()
            if len(token) < self.min_keyword_length or token in seen:
                continue
            seen.add(token)
            keywords.append(token)
        return keywords

    def _text_factor(self, occurrences: int) -> float:
        # One mention scores 0.6 of the text weight, rising to 1.0 at the cap
        capped = min(occurrences, self.occurrence_cap)
        return 0.5 + 0.5 * capped / self.occurrence_cap

    def score(self, keywords: List[str], candidate: Dict[str, Any]) -> float:
        if not keywords:
            return 0.0

        file_name = (candidate.get("file_name") or "").lower()
        category = (candidate.get("category") or "").lower()
        text = (candidate.get("text") or "").lower()

        total = 0.0
        matched = 0
        for keyword in keywords:
            best = 0.0
            if keyword in file_name:
                best = self.filename_weight
            if category and keyword in category:
                best = max(best, self.category_weight)
            if text:
                occurrences = len(re.findall(rf"\b{re.escape(keyword)}\b", text))
                if occurrences:
                    best = max(best, self.text_weight * self._text_factor(occurrences))
            if best > 0:
                matched += 1
                total += best

        if matched == 0:
            return 0.0

        n = len(keywords)
        return (total / n) * (matched / n)
