"""
Maximal Marginal Relevance (MMR) diversity selection.

Greedy selection: at each step pick the candidate maximizing

    lambda * sim(query, c) - (1 - lambda) * max(sim(c, s) for s in selected)

lambda = 1.0 is pure relevance, lambda = 0.0 is pure diversity.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from docrag.services.rag.scoring import cosine_similarity

logger = logging.getLogger(__name__)


class MMRService:
    """
    Re-orders candidates to trade relevance against redundancy.

    Each candidate/selected pair is compared at most once: the running
    "max similarity to the selected set" is kept per remaining candidate
    and updated only against the newest selection, so a full run costs
    O(top_k * |candidates|) similarity computations.
    """

    def __init__(self, default_lambda: float = 0.7):
        self.default_lambda = default_lambda

    def rerank_with_mmr(
        self,
        query_vector: Optional[Sequence[float]],
        candidates: List[Dict[str, Any]],
        top_k: int,
        lambda_param: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """
        Select up to top_k diverse, relevant candidates.

        Args:
            query_vector: Query embedding; without it relevance falls back to
                each candidate's incoming score
            candidates: Candidate dicts ('embedding' and a score key)
            top_k: Number of candidates to select
            lambda_param: Relevance/diversity trade-off in [0, 1]

        Returns:
            Selected candidates (copies) with 'mmr_score', 'mmr_relevance'
            and 'mmr_rank' added, in selection order
        """
        if not candidates or top_k <= 0:
            return []

        lam = self.default_lambda if lambda_param is None else lambda_param
        lam = min(1.0, max(0.0, lam))

        pool = [dict(c) for c in candidates]
        relevance = [self._relevance(query_vector, c) for c in pool]
        initial = [self.initial_score(c) for c in pool]
        max_sim_to_selected = [0.0] * len(pool)

        remaining = list(range(len(pool)))
        selected: List[Dict[str, Any]] = []

        while remaining and len(selected) < top_k:
            best_idx = None
            best_key = None

            for idx in remaining:
                penalty = max_sim_to_selected[idx] if selected else 0.0
                score = self.calculate_mmr_score(relevance[idx], penalty, lam)
                # Ties: higher relevance, then higher incoming score
                key = (score, relevance[idx], initial[idx])
                if best_key is None or key > best_key:
                    best_idx, best_key = idx, key

            remaining.remove(best_idx)
            chosen = pool[best_idx]
            chosen["mmr_score"] = best_key[0]
            chosen["mmr_relevance"] = relevance[best_idx]
            chosen["mmr_rank"] = len(selected) + 1
            selected.append(chosen)

            # Update the cached penalty against the newest selection only
            chosen_embedding = chosen.get("embedding")
            for idx in remaining:
                sim = cosine_similarity(pool[idx].get("embedding"), chosen_embedding)
                if sim > max_sim_to_selected[idx]:
                    max_sim_to_selected[idx] = sim

        logger.debug(f"MMR selected {len(selected)} of {len(candidates)} candidates (lambda={lam})")
        return selected

    @staticmethod
    def initial_score(candidate: Dict[str, Any]) -> float:
        for key in ("rerank_score", "final_score", "combined_score", "vector_score"):
            value = candidate.get(key)
            if value is not None:
                return float(value)
        return 0.0

    def _relevance(self, query_vector: Optional[Sequence[float]], candidate: Dict[str, Any]) -> float:
        embedding = candidate.get("embedding")
        if query_vector is not None and embedding:
            return cosine_similarity(query_vector, embedding)
        return self.initial_score(candidate)

    @staticmethod
    def calculate_mmr_score(relevance: float, max_similarity_to_selected: float, lambda_param: float) -> float:
        """Single MMR score from its two terms."""
        return lambda_param * relevance - (1.0 - lambda_param) * max_similarity_to_selected
