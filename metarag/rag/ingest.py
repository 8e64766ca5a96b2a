"""Ingest pipeline for indexing documents.

Orchestrates:
- Chunking
- Optional LLM cleaning (the cleaned text is re-chunked)
- Metadata extraction
- Batch embedding
- Index creation and vector upsert

Embedding and upsert only start once chunking and cleaning have fully
completed, so a run cancelled or failed before the upsert step leaves the
index unchanged.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from metarag.config import PipelineConfig
from metarag.errors import DataQualityWarning, IntegrationError
from metarag.llm_client import TextCompletionProvider
from metarag.rag.chunker import Chunk, TextChunker
from metarag.rag.cleaner import Cleaner
from metarag.rag.document import Document
from metarag.rag.embedder import Embedder
from metarag.rag.md_parser import MarkdownParser
from metarag.rag.metadata import MetadataExtractor
from metarag.rag.store_faiss import VectorStore

logger = structlog.get_logger()

MARKDOWN_SUFFIXES = (".md", ".markdown")


class IngestState(str, Enum):
    RECEIVED = "received"
    CHUNKED = "chunked"
    CLEANED = "cleaned"
    EXTRACTED = "extracted"
    EMBEDDED = "embedded"
    UPSERTED = "upserted"
    DONE = "done"
    FAILED = "failed"


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    document_id: str
    state: IngestState = IngestState.RECEIVED
    transitions: List[IngestState] = field(default_factory=lambda: [IngestState.RECEIVED])
    chunk_count: int = 0
    vector_ids: List[str] = field(default_factory=list)
    warnings: List[DataQualityWarning] = field(default_factory=list)

    def advance(self, state: IngestState) -> None:
        self.state = state
        self.transitions.append(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "state": self.state.value,
            "chunk_count": self.chunk_count,
            "vector_ids": self.vector_ids,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def entry_id(document_id: str, chunk_index: int) -> str:
    """Stable index entry identity for a chunk."""
    return f"{document_id}:{chunk_index}"


class IngestPipeline:
    """Pipeline that chunks, cleans, embeds and upserts documents."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        pipeline_config: PipelineConfig = None,
        completion: Optional[TextCompletionProvider] = None,
        metadata_extractor: Optional[MetadataExtractor] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            vector_store: Caller-owned vector store gateway
            embedder: Embedder bound to an embedding provider
            pipeline_config: Chunking/index options (default from env)
            completion: Completion provider; required for cleaning
            metadata_extractor: Overrides the extractor derived from config
        """
        self.config = pipeline_config or PipelineConfig.from_env()
        self.vector_store = vector_store
        self.embedder = embedder
        self.chunker = TextChunker(self.config.chunk)
        self.cleaner = Cleaner(completion) if completion is not None else None
        self.metadata_extractor = metadata_extractor or MetadataExtractor(
            keywords=self.config.chunk.extract_keywords
        )
        self.parser = MarkdownParser()

        self.stats = self._empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            index=self.config.index_name,
            strategy=self.config.chunk.strategy,
            chunk_size=self.config.chunk.size,
            chunk_overlap=self.config.chunk.overlap,
            cleaning=self.cleaner is not None and self.config.clean,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "files_processed": 0,
            "files_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

    async def ensure_index(self) -> bool:
        """Create the target index if missing (idempotent)."""
        return await self.vector_store.create_index(
            self.config.index_name, self.config.dimension, self.config.metric
        )

    def _warn(self, result: IngestResult, step: str, message: str) -> None:
        warning = DataQualityWarning(message, step=step, document_id=result.document_id)
        result.warnings.append(warning)
        logger.warning(
            "data_quality_warning",
            step=step,
            document_id=result.document_id,
            message=message,
        )

    async def ingest(
        self,
        document: Document,
        clean: Optional[bool] = None,
        enrich: Optional[Callable[[Chunk], Dict[str, Any]]] = None,
    ) -> IngestResult:
        """Ingest a single document.

        Args:
            document: Document to index
            clean: Run the LLM cleaning pass (default from config)
            enrich: Extra per-chunk metadata; skipped when the text was
                cleaned, since positions no longer refer to the source

        Returns:
            IngestResult in the Done state

        Raises:
            Exception: Whatever failed, after the run is marked Failed
        """
        clean = self.config.clean if clean is None else clean
        result = IngestResult(document_id=document.doc_id)
        step = "chunk"

        logger.info("ingesting_document", document_id=result.document_id, length=len(document.text))

        try:
            chunks = self.chunker.chunk(document)
            result.advance(IngestState.CHUNKED)

            if clean:
                step = "clean"
                if self.cleaner is None:
                    raise IntegrationError(
                        "Cleaning requested but no completion provider configured",
                        step=step,
                        document_id=result.document_id,
                    )
                if chunks:
                    document = await self.cleaner.clean_document(document, chunks)
                    if not document.text:
                        self._warn(result, step, "Cleaning returned empty text")
                    chunks = self.chunker.chunk(document)
                result.advance(IngestState.CLEANED)

            if not chunks:
                self._warn(result, "chunk", "Document produced zero chunks")
                result.advance(IngestState.DONE)
                return result

            step = "extract"
            if self.metadata_extractor.enabled:
                await self.metadata_extractor.apply(chunks)
            if enrich is not None and not clean:
                for chunk in chunks:
                    chunk.metadata.update(enrich(chunk))
            result.advance(IngestState.EXTRACTED)

            step = "embed"
            texts = [chunk.text for chunk in chunks]
            vectors = await self.embedder.embed_batch(texts, document_id=result.document_id)
            self.stats["embeddings_generated"] += len(vectors)
            result.advance(IngestState.EMBEDDED)

            step = "upsert"
            ids = [entry_id(result.document_id, chunk.chunk_index) for chunk in chunks]
            metadata = [
                {
                    **chunk.metadata,
                    "text": chunk.text,
                    "doc_id": result.document_id,
                    "chunk_index": chunk.chunk_index,
                }
                for chunk in chunks
            ]
            await self.ensure_index()
            result.vector_ids = await self.vector_store.upsert(
                self.config.index_name, vectors, metadata, ids=ids
            )
            # Entries left over from a longer earlier version of this document
            stale = await self.vector_store.list_ids(
                self.config.index_name,
                {"doc_id": result.document_id, "chunk_index": {"$gte": len(chunks)}},
            )
            if stale:
                await self.vector_store.delete(self.config.index_name, stale)
                logger.info("stale_chunks_removed", document_id=result.document_id, count=len(stale))
            result.chunk_count = len(chunks)
            self.stats["chunks_created"] += len(chunks)
            result.advance(IngestState.UPSERTED)

            result.advance(IngestState.DONE)
        except Exception as e:
            if isinstance(e, IntegrationError) and e.document_id is None:
                e.document_id = result.document_id
            result.advance(IngestState.FAILED)
            logger.error(
                "document_ingestion_failed",
                document_id=result.document_id,
                step=step,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.info(
            "document_ingested",
            document_id=result.document_id,
            chunks_created=result.chunk_count,
            warnings=len(result.warnings),
        )
        return result

    async def ingest_many(
        self, documents: Sequence[Document], clean: Optional[bool] = None
    ) -> List[IngestResult]:
        """Ingest independent documents concurrently.

        Results are returned in input order; the first failure propagates.
        """
        return list(await asyncio.gather(*(self.ingest(doc, clean=clean) for doc in documents)))

    async def ingest_file(self, file_path: Path, clean: Optional[bool] = None) -> IngestResult:
        """Ingest a single file.

        Markdown files contribute frontmatter metadata and per-chunk
        heading context; other files are read as plain UTF-8 text.
        """
        file_path = Path(file_path)
        logger.info("ingesting_file", path=str(file_path))

        if file_path.suffix.lower() in MARKDOWN_SUFFIXES:
            parsed = self.parser.parse_file(file_path)

            def enrich(chunk: Chunk) -> Dict[str, Any]:
                position = chunk.char_start + chunk.overlap
                heading = self.parser.get_heading_context(parsed.headings, position)
                return {"heading": heading} if heading else {}

            result = await self.ingest(parsed.to_document(), clean=clean, enrich=enrich)
        else:
            text = file_path.read_text(encoding="utf-8")
            document = Document(
                text=text,
                metadata={"source": str(file_path), "file_name": file_path.name},
                id=str(file_path),
            )
            result = await self.ingest(document, clean=clean)

        self.stats["files_processed"] += 1
        return result

    async def ingest_directory(
        self,
        directory: Path,
        pattern: str = "*.md",
        clean: Optional[bool] = None,
        progress_callback=None,
    ) -> Dict[str, int]:
        """Ingest every matching file under a directory.

        A file that fails is logged and counted; the run continues.

        Args:
            directory: Directory to search recursively
            pattern: Glob pattern for files
            clean: Run the LLM cleaning pass (default from config)
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        directory = Path(directory)
        if not directory.exists():
            raise FileNotFoundError(f"Directory not found: {directory}")

        files = sorted(directory.rglob(pattern))
        logger.info("files_discovered", count=len(files), directory=str(directory))

        self.stats = self._empty_stats()

        for idx, file_path in enumerate(files, 1):
            if progress_callback:
                progress_callback(idx, len(files), file_path)
            try:
                await self.ingest_file(file_path, clean=clean)
            except Exception as e:
                logger.error("file_ingestion_failed", path=str(file_path), error=str(e))
                self.stats["files_failed"] += 1

        logger.info("ingest_directory_completed", stats=self.stats)
        return self.stats
