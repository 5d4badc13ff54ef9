"""
Pytest configuration and fixtures.

This file is automatically discovered by pytest and provides
shared fixtures for all test modules.

The pipeline is exercised against deterministic fakes:
- FakeEmbeddingProvider: hashed bag-of-words vectors (same text, same vector)
- FakeLanguageModel: canned replies selected by a substring of the prompt
- FakeClock: manually advanced time source for cache expiry

References:
-----------
- Pytest Fixtures: https://docs.pytest.org/en/stable/fixture.html
- FastAPI Testing: https://fastapi.tiangolo.com/advanced/async-tests/
"""

import hashlib
import math
import re
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from docrag.core.config import RAGPipelineConfig
from docrag.core.exceptions import InvalidInput, ProviderUnavailable
from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider
from docrag.services.rag.cache import CacheService, MemoryCacheBackend
from docrag.services.rag.orchestrator import RAGOrchestrator
from docrag.services.storage.memory import InMemoryDocumentStore

DIMENSION = 4096
_WORD_RE = re.compile(r"\w+")


def bag_of_words_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """L2-normalized term counts hashed into `dimension` buckets."""
    vector = [0.0] * dimension
    for token in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return vector
    return [v / norm for v in vector]


# ================================
# Fake Providers
# ================================

class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic embedder; set `fail` to simulate an outage."""

    name = "fake-embedding"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise InvalidInput("Cannot embed empty text", provider=self.name)
        if self.fail:
            raise ProviderUnavailable("embedding service offline", provider=self.name)
        self.calls.append(text)
        return bag_of_words_vector(text)

    @property
    def dimension(self) -> int:
        return DIMENSION


class FakeLanguageModel(LanguageModelProvider):
    """
    Canned language model.

    The first `responses` key found in the last message picks the reply;
    a reply that is an exception instance is raised instead. Everything
    else gets `default`.
    """

    name = "fake-llm"

    def __init__(
        self,
        responses: Optional[Dict[str, object]] = None,
        default: str = "Late delivery triggers the penalty clause [1].",
        fail: bool = False
    ):
        self.responses = dict(responses or {})
        self.default = default
        self.fail = fail
        self.prompts: List[str] = []

    def _reply(self, messages: List[Dict[str, str]]) -> str:
        prompt = messages[-1]["content"] if messages else ""
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderUnavailable("language model offline", provider=self.name)
        for marker, reply in self.responses.items():
            if marker in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return self.default

    async def complete(self, messages, system=None, temperature=0.7, max_tokens=None) -> str:
        return self._reply(messages)

    async def stream(self, messages, system=None, temperature=0.7, max_tokens=None):
        text = self._reply(messages)
        for fragment in re.findall(r"\S+\s*", text):
            yield fragment


class FakeClock:
    """Time source for MemoryCacheBackend that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ================================
# Provider Fixtures
# ================================

@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def language_model() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CacheService:
    return CacheService(MemoryCacheBackend(clock=clock), default_ttl_seconds=60)


# ================================
# Document Store Fixtures
# ================================

SAMPLE_DOCUMENTS = [
    {
        "document_id": 1,
        "file_name": "Rossi_contract.pdf",
        "category": "contracts",
        "owner_id": "u1",
        "text": (
            "Supply agreement between Acme and the supplier. "
            "The penalty clause applies when delivery of the goods is late. "
            "Payment terms are thirty days from invoice."
        ),
    },
    {
        "document_id": 2,
        "file_name": "meeting_notes.txt",
        "category": "notes",
        "owner_id": "u1",
        "text": "Weekly meeting notes. Mario Rossi asked about the delivery schedule and the penalty clause.",
    },
    {
        "document_id": 3,
        "file_name": "invoice_2024_03.pdf",
        "category": "invoices",
        "owner_id": "u1",
        "text": "Invoice for consulting services delivered in March. The total amount due is 4500 euros.",
    },
    {
        "document_id": 4,
        "file_name": "hr_policy.docx",
        "category": "policies",
        "owner_id": "u2",
        "text": "Remote work policy: employees may work from home two days per week.",
    },
    {
        "document_id": 5,
        "file_name": "employee_handbook.pdf",
        "category": "policies",
        "owner_id": "u2",
        "visibility": "public",
        "text": "Employee handbook covering holidays, remote work and travel expenses.",
    },
]


def populate_store(store: InMemoryDocumentStore, documents: List[dict], now: Optional[datetime] = None) -> None:
    """Add documents with fake embeddings; earlier entries are more recent."""
    now = now or datetime(2024, 6, 1, tzinfo=timezone.utc)
    for offset, document in enumerate(documents):
        store.add_document(
            document["document_id"],
            text=document["text"],
            file_name=document["file_name"],
            category=document.get("category"),
            owner_id=document.get("owner_id"),
            visibility=document.get("visibility", "private"),
            embedding=bag_of_words_vector(document["text"]),
            uploaded_at=document.get("uploaded_at", now - timedelta(days=offset * 10)),
        )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """In-memory store with five documents across two owners."""
    document_store = InMemoryDocumentStore()
    populate_store(document_store, SAMPLE_DOCUMENTS)
    return document_store


# ================================
# Factory Fixtures
# ================================
# Test modules build their own variants through these instead of
# importing from conftest.

@pytest.fixture
def vectorize():
    return bag_of_words_vector


@pytest.fixture
def make_store():
    def _make(documents: List[dict]) -> InMemoryDocumentStore:
        document_store = InMemoryDocumentStore()
        populate_store(document_store, documents)
        return document_store
    return _make


@pytest.fixture
def make_language_model():
    return FakeLanguageModel


@pytest.fixture
def make_embedder():
    return FakeEmbeddingProvider


# ================================
# Pipeline Fixtures
# ================================

@pytest.fixture
def plain_config() -> RAGPipelineConfig:
    """Retrieval only: every enhancement stage off, caching on."""
    return RAGPipelineConfig(
        enable_hyde=False,
        enable_query_rewriting=False,
        enable_reranking=False,
        enable_mmr=False,
        enable_contextual_compression=False,
        enable_caching=True,
        enable_quality_check=False,
        top_k=3,
        min_similarity=0.1,
        cache_ttl_seconds=60,
        provider_timeout_seconds=5.0,
    )


@pytest.fixture
def orchestrator(store, embedder, language_model, cache, plain_config) -> RAGOrchestrator:
    return RAGOrchestrator(store, embedder, language_model, cache=cache, config=plain_config)


# ================================
# FastAPI Client Fixtures
# ================================

@pytest_asyncio.fixture
async def client(orchestrator: RAGOrchestrator) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for the FastAPI app wired to the fake pipeline.

    Usage:
        async def test_something(client: AsyncClient):
            response = await client.post("/api/v1/search", json={...})
            assert response.status_code == 200
    """
    from docrag.api import deps
    from docrag.main import app
    from docrag.services.rag.classification import ClassificationService
    from docrag.services.rag.quality import QualityService
    from docrag.services.rag.self_query import SelfQueryService

    search = deps.shared_hybrid_search(orchestrator)

    async def override_orchestrator():
        return orchestrator

    async def override_self_query():
        return SelfQueryService(search, orchestrator.language_model, orchestrator.store)

    async def override_quality():
        return QualityService(orchestrator.store, orchestrator.embedder)

    async def override_classifier():
        return ClassificationService(orchestrator.language_model, orchestrator.embedder, search)

    app.dependency_overrides[deps.get_rag_orchestrator] = override_orchestrator
    app.dependency_overrides[deps.get_self_query_service] = override_self_query
    app.dependency_overrides[deps.get_quality_service] = override_quality
    app.dependency_overrides[deps.get_classification_service] = override_classifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ================================
# Pytest Hooks
# ================================

def pytest_addoption(parser):
    """Add custom pytest options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that require real models and API keys"
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires real models and API keys)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is given."""
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
