"""Batch embedding with contract checks on the provider's response."""
from numbers import Real
from typing import List, Optional, Sequence

import structlog

from metarag.errors import IntegrationError
from metarag.llm_client import EmbeddingProvider

logger = structlog.get_logger()


class Embedder:
    """Embeds ordered text batches through an EmbeddingProvider."""

    def __init__(self, provider: EmbeddingProvider, dimension: Optional[int] = None):
        """Initialize the embedder.

        Args:
            provider: External embedding provider
            dimension: Expected vector length (unchecked when None)
        """
        self.provider = provider
        self.dimension = dimension

    async def embed_batch(
        self, texts: Sequence[str], document_id: Optional[str] = None
    ) -> List[List[float]]:
        """Embed all texts in one provider call.

        Vectors are positionally aligned with ``texts``. An empty input
        returns an empty list without calling the provider.

        Raises:
            IntegrationError: If the provider returns the wrong number of
                vectors, a malformed vector, or the wrong dimension
        """
        if not texts:
            return []

        vectors = await self.provider.embed_batch(list(texts))

        if not isinstance(vectors, (list, tuple)) or len(vectors) != len(texts):
            count = len(vectors) if isinstance(vectors, (list, tuple)) else None
            logger.error(
                "embedding_count_mismatch",
                expected=len(texts),
                received=count,
                document_id=document_id,
            )
            raise IntegrationError(
                f"Embedding provider returned {count} vectors for {len(texts)} texts",
                step="embed",
                document_id=document_id,
            )

        checked = []
        for position, vector in enumerate(vectors):
            if not isinstance(vector, (list, tuple)) or not all(
                isinstance(x, Real) and not isinstance(x, bool) for x in vector
            ):
                raise IntegrationError(
                    f"Embedding at position {position} is not a numeric vector",
                    step="embed",
                    document_id=document_id,
                )
            if self.dimension is not None and len(vector) != self.dimension:
                raise IntegrationError(
                    f"Embedding at position {position} has dimension {len(vector)}, "
                    f"expected {self.dimension}",
                    step="embed",
                    document_id=document_id,
                )
            checked.append([float(x) for x in vector])

        logger.debug("embeddings_generated", count=len(checked), document_id=document_id)
        return checked

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        return (await self.embed_batch([text]))[0]
