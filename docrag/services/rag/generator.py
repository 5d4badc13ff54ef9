"""
RAG Generator

This module implements answer synthesis on top of a LanguageModelProvider:
- Context assembly from the final candidates
- Prompt engineering for grounded answers with [N] citations
- Blocking and streaming generation
- Source attribution
- Review / revision prompts for the optional refinement loop
"""

import logging
import re
from typing import Any, AsyncGenerator, Dict, List, Optional

from docrag.services.providers.base import LanguageModelProvider, with_timeout
from docrag.services.rag.compression import estimate_token_count

logger = logging.getLogger(__name__)

APPROVAL_KEYWORD = "APPROVED"

_CITATION_RE = re.compile(r'\[(?:Source\s+)?(\d+)\]')


class RAGGenerator:
    """
    Grounded answer synthesis.

    Usage:
    ------
    generator = RAGGenerator(language_model)

    result = await generator.generate(query="What is the notice period?", chunks=final_candidates)

    async for fragment in generator.generate_stream(query, final_candidates):
        print(fragment, end="", flush=True)
    """

    def __init__(
        self,
        language_model: LanguageModelProvider,
        max_tokens: int = 2048,
        temperature: float = 0.7,
        provider_timeout: Optional[float] = None
    ):
        """
        Args:
            language_model: Provider used for synthesis
            max_tokens: Maximum tokens in the response (default: 2048)
            temperature: Sampling temperature 0-1 (default: 0.7)
            provider_timeout: Seconds allowed per blocking call
        """
        self.language_model = language_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.provider_timeout = provider_timeout

    async def generate(
        self,
        query: str,
        chunks: List[Dict[str, Any]],
        conversation_history: Optional[List[Dict[str, str]]] = None,
        max_context_tokens: int = 4000,
        include_citations: bool = True
    ) -> Dict[str, Any]:
        """
        Generate an answer grounded in the chunks.

        Returns:
            {
                'answer': 'The generated answer...',
                'sources': [{'source_number': 1, 'document_id': ..., 'file_name': ..., ...}],
                'citations': [0, 2]   # 0-indexed chunks cited
            }

        Raises:
            ProviderError: the language model failed
        """
        logger.info(f"Generating response with {len(chunks)} chunks")

        messages = self._build_messages(query, chunks, conversation_history, max_context_tokens)
        answer = await with_timeout(
            self.language_model.complete(
                messages,
                system=self._build_system_prompt(include_citations),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            self.provider_timeout,
            self.language_model.name,
        )

        citations = self.extract_citations(answer, chunks) if include_citations else []
        sources = self.build_sources_list(chunks, citations or list(range(len(chunks))))

        logger.info(f"Generated response: {len(answer)} chars, {len(sources)} sources")
        return {'answer': answer, 'sources': sources, 'citations': citations}

    async def generate_stream(
        self,
        query: str,
        chunks: List[Dict[str, Any]],
        conversation_history: Optional[List[Dict[str, str]]] = None,
        max_context_tokens: int = 4000,
        include_citations: bool = True
    ) -> AsyncGenerator[str, None]:
        """
        Yield answer fragments as the provider produces them.

        Each fragment must arrive within provider_timeout seconds, otherwise
        ProviderTimeout is raised and the provider stream is closed.
        """
        messages = self._build_messages(query, chunks, conversation_history, max_context_tokens)

        stream = self.language_model.stream(
            messages,
            system=self._build_system_prompt(include_citations),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        try:
            while True:
                try:
                    text = await with_timeout(stream.__anext__(), self.provider_timeout, self.language_model.name)
                except StopAsyncIteration:
                    break
                yield text
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def review(self, query: str, answer: str, chunks: List[Dict[str, Any]]) -> str:
        """
        Critique a draft answer against the context.

        The reply contains the approval keyword when no change is needed,
        otherwise concrete feedback.
        """
        prompt = (
            f"Question: {query}\n\n"
            f"Context:\n{self.assemble_context(chunks, 2000)}\n\n"
            f"Draft answer:\n{answer}\n\n"
            "Check that every claim in the draft is supported by the context and that the "
            f"question is fully answered. If the draft is good, reply with {APPROVAL_KEYWORD} only. "
            "Otherwise list the specific problems to fix."
        )
        return await with_timeout(
            self.language_model.complete([{"role": "user", "content": prompt}], temperature=0.0, max_tokens=400),
            self.provider_timeout,
            self.language_model.name,
        )

    async def revise(self, query: str, answer: str, feedback: str, chunks: List[Dict[str, Any]]) -> str:
        """Rewrite a draft answer following reviewer feedback."""
        prompt = (
            f"Question: {query}\n\n"
            f"Context:\n{self.assemble_context(chunks, 3000)}\n\n"
            f"Previous answer:\n{answer}\n\n"
            f"Reviewer feedback:\n{feedback}\n\n"
            "Write an improved answer that addresses the feedback, using only the context."
        )
        return await with_timeout(
            self.language_model.complete(
                [{"role": "user", "content": prompt}],
                system=self._build_system_prompt(True),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            self.provider_timeout,
            self.language_model.name,
        )

    def assemble_context(self, chunks: List[Dict[str, Any]], max_tokens: int = 4000) -> str:
        """Number chunks as [N] sources, stopping at the token limit."""
        context_parts = []
        current_tokens = 0

        for i, chunk in enumerate(chunks):
            header = f"[{i + 1}] {chunk.get('file_name') or 'Unknown'}"
            if chunk.get('category'):
                header += f" ({chunk['category']})"
            formatted_chunk = f"{header}\n{chunk.get('compressed_text') or chunk.get('text', '')}\n"

            chunk_tokens = estimate_token_count(formatted_chunk)
            if context_parts and current_tokens + chunk_tokens > max_tokens:
                logger.info(f"Context truncated at {i} chunks ({current_tokens} tokens)")
                break

            context_parts.append(formatted_chunk)
            current_tokens += chunk_tokens

        return "\n---\n\n".join(context_parts)

    def _build_messages(
        self,
        query: str,
        chunks: List[Dict[str, Any]],
        conversation_history: Optional[List[Dict[str, str]]],
        max_context_tokens: int
    ) -> List[Dict[str, str]]:
        messages = list(conversation_history or [])
        messages.append({
            "role": "user",
            "content": (
                "Context from the document library:\n\n"
                f"{self.assemble_context(chunks, max_context_tokens)}\n\n"
                "---\n\n"
                f"Question: {query}\n\n"
                "Please answer the question based on the context provided above."
            ),
        })
        return messages

    def _build_system_prompt(self, include_citations: bool = True) -> str:
        base_prompt = """You are a document assistant that answers questions using the provided excerpts from the user's document library.

Your task is to:
1. Answer the user's question using ONLY the information provided in the context
2. Be accurate and factual - don't make up information
3. If the context doesn't contain enough information to answer fully, say so
4. Be concise but comprehensive"""

        if include_citations:
            base_prompt += """
5. When referencing information, cite the excerpt number in square brackets, e.g. [1]
6. If multiple excerpts support a point, cite each of them, e.g. [1][3]"""

        base_prompt += """

Remember: You can ONLY use information from the provided context."""
        return base_prompt

    @staticmethod
    def extract_citations(answer: str, chunks: List[Dict[str, Any]]) -> List[int]:
        """0-indexed chunk positions cited as [N] or [Source N]."""
        citations = set()
        for match in _CITATION_RE.findall(answer or ""):
            number = int(match)
            if 1 <= number <= len(chunks):
                citations.add(number - 1)
        return sorted(citations)

    @staticmethod
    def build_sources_list(chunks: List[Dict[str, Any]], citation_indices: List[int]) -> List[Dict[str, Any]]:
        sources = []
        for idx in citation_indices:
            if idx < len(chunks):
                chunk = chunks[idx]
                text = chunk.get('text') or ''
                sources.append({
                    'source_number': idx + 1,
                    'document_id': chunk.get('document_id'),
                    'chunk_id': chunk.get('chunk_id'),
                    'file_name': chunk.get('file_name'),
                    'category': chunk.get('category'),
                    'score': chunk.get('rerank_score', chunk.get('final_score', chunk.get('combined_score'))),
                    'excerpt': text[:200] + ('...' if len(text) > 200 else ''),
                })
        return sources
