"""
Shared test fixtures and deterministic provider stubs.

The stubs implement the provider interfaces without any network access:
    HashEmbedding character-histogram vectors, records every batch
    LookupEmbedding fixed vectors per text, for controlled scores
    MiscountingEmbedding returns one vector too few
    StubCompletion canned (cycling) replies, records every prompt
    FailingCompletion raises ExternalServiceError
"""

from typing import Dict, List, Optional, Sequence

import pytest

from metarag.config import ChunkConfig, PipelineConfig
from metarag.errors import ExternalServiceError
from metarag.llm_client import EmbeddingProvider, TextCompletionProvider
from metarag.rag.embedder import Embedder
from metarag.rag.store_faiss import FAISSVectorStore

DIMENSION = 8


class HashEmbedding(EmbeddingProvider):
    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        vector[0] = 1.0
        for char in text:
            vector[ord(char) % self.dimension] += 1.0
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class LookupEmbedding(EmbeddingProvider):
    def __init__(self, vectors: Dict[str, Sequence[float]], default: Sequence[float]):
        self.vectors = vectors
        self.default = list(default)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [list(self.vectors.get(t, self.default)) for t in texts]


class MiscountingEmbedding(HashEmbedding):
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        vectors = await super().embed_batch(texts)
        return vectors[:-1]


class StubCompletion(TextCompletionProvider):
    def __init__(self, responses: Optional[List[str]] = None):
        self.responses = responses or ["stub answer"]
        self.prompts: List[str] = []

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str) -> str:
        reply = self.responses[len(self.prompts) % len(self.responses)]
        self.prompts.append(prompt)
        return reply


class FailingCompletion(TextCompletionProvider):
    def __init__(self):
        self.call_count = 0

    async def complete(self, prompt: str) -> str:
        self.call_count += 1
        raise ExternalServiceError("provider unavailable", provider="stub", status_code=503)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def chunk_config() -> ChunkConfig:
    return ChunkConfig(strategy="recursive", size=64, overlap=8, separator="\n", extract_keywords=False)


@pytest.fixture
def pipeline_config(chunk_config) -> PipelineConfig:
    return PipelineConfig(
        chunk=chunk_config,
        enable_filter=True,
        filter_mode="rules",
        top_k=10,
        index_name="test",
        dimension=DIMENSION,
        metric="cosine",
        clean=False,
    )


@pytest.fixture
def store() -> FAISSVectorStore:
    return FAISSVectorStore()


@pytest.fixture
def embedding() -> HashEmbedding:
    return HashEmbedding()


@pytest.fixture
def embedder(embedding) -> Embedder:
    return Embedder(embedding, dimension=DIMENSION)


@pytest.fixture
def completion() -> StubCompletion:
    return StubCompletion()


@pytest.fixture
def sample_text() -> str:
    return (
        "Vector stores index embeddings.\n"
        "Each entry carries metadata used for filtering.\n\n"
        "Chunking splits long documents into overlapping windows. "
        "Overlap keeps context across boundaries.\n"
        "Cleaning removes duplicates before embedding."
    )
