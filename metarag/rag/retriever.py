"""Retriever for filtered semantic search over an index.

Handles:
- Query embedding generation
- Filtered vector search
- Context formatting for answer synthesis
"""
from typing import List, Optional, Sequence

import structlog

from metarag import config
from metarag.rag.embedder import Embedder
from metarag.rag.store_faiss import FilterSpec, QueryResult, VectorStore

logger = structlog.get_logger()


def result_source(result: QueryResult) -> str:
    """Formatted source string for display."""
    source = result.metadata.get("source") or result.metadata.get("doc_id") or result.id
    heading = result.metadata.get("heading")
    if heading:
        return f"{source} > {heading}"
    return str(source)


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        index_name: str = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: Vector store gateway
            embedder: Embedder used for queries
            index_name: Index to search (default from config)
            top_k: Number of results to retrieve (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.index_name = index_name or config.INDEX_NAME
        self.top_k = top_k or config.RETRIEVAL_TOP_K

        logger.info("retriever_initialized", index=self.index_name, top_k=self.top_k)

    async def retrieve(
        self,
        query: str,
        filter: FilterSpec = None,
        top_k: Optional[int] = None,
    ) -> List[QueryResult]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            filter: Optional metadata filter
            top_k: Number of results to return (overrides default)

        Returns:
            List of QueryResult objects, best first
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = top_k or self.top_k

        logger.info(
            "retrieval_started",
            query_length=len(query),
            top_k=top_k,
            filtered=filter is not None,
        )

        query_vector = await self.embedder.embed_query(query)
        results = await self.vector_store.query(
            self.index_name, query_vector, filter=filter, top_k=top_k
        )

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    def format_context(self, results: Sequence[QueryResult], max_chars: int = None) -> str:
        """Format retrieved chunks as a context block for an LLM prompt.

        Args:
            results: Retrieved chunks, best first
            max_chars: Maximum total characters of context to return

        Returns:
            Formatted context string ("" when there are no results)
        """
        max_chars = max_chars or config.MAX_CONTEXT_CHARS
        if not results:
            return ""

        context_parts = []
        total_chars = 0

        for i, result in enumerate(results, 1):
            chunk_text = (
                f"[Source {i}: {result_source(result)}]\n"
                f"{result.text.strip()}\n"
            )

            if total_chars + len(chunk_text) > max_chars:
                # Only add a truncated chunk if there is meaningful space
                remaining = max_chars - total_chars
                if remaining > 200:
                    context_parts.append(chunk_text[:remaining] + "...\n")
                break

            context_parts.append(chunk_text)
            total_chars += len(chunk_text)

        context = "\n".join(context_parts)

        logger.debug("context_formatted", num_chunks=len(context_parts), total_chars=len(context))

        return context
