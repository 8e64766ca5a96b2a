"""Tests for the ingest pipeline state machine and file ingestion."""

import asyncio
import dataclasses

import pytest
from structlog.testing import capture_logs

from conftest import DIMENSION, FailingCompletion, MiscountingEmbedding, StubCompletion
from metarag.errors import ExternalServiceError, IntegrationError
from metarag.llm_client import TextCompletionProvider
from metarag.rag.document import Document
from metarag.rag.embedder import Embedder
from metarag.rag.ingest import IngestPipeline, IngestState
from metarag.rag.metadata import MetadataExtractor


class BlockingCompletion(TextCompletionProvider):
    def __init__(self):
        self.started = asyncio.Event()

    async def complete(self, prompt: str) -> str:
        self.started.set()
        await asyncio.Event().wait()
        return ""


class TestIngest:
    @pytest.mark.asyncio
    async def test_document_indexed(self, store, embedder, embedding, pipeline_config, sample_text):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        doc = Document(text=sample_text, metadata={"source": "notes.md", "nested": {"id": 7}}, id="doc")

        result = await pipeline.ingest(doc)

        assert result.state == IngestState.DONE
        assert result.transitions == [
            IngestState.RECEIVED,
            IngestState.CHUNKED,
            IngestState.EXTRACTED,
            IngestState.EMBEDDED,
            IngestState.UPSERTED,
            IngestState.DONE,
        ]
        assert result.chunk_count > 1
        assert result.vector_ids == [f"doc:{i}" for i in range(result.chunk_count)]
        assert len(embedding.calls) == 1
        assert len(embedding.calls[0]) == result.chunk_count

        stats = await store.describe_index("test")
        assert stats.count == result.chunk_count
        assert {"text", "doc_id", "chunk_index", "source", "nested.id"} <= set(stats.metadata_fields)

    @pytest.mark.asyncio
    async def test_stored_text_reconstructs_document(self, store, embedder, pipeline_config, sample_text):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        await pipeline.ingest(Document(text=sample_text, id="doc"))

        results = await store.query("test", [1.0] * DIMENSION, top_k=100)
        ordered = sorted(results, key=lambda r: r.metadata["chunk_index"])

        assert "".join(r.text for r in ordered).startswith(sample_text[:20])
        assert all(r.metadata["doc_id"] == "doc" for r in results)

    @pytest.mark.asyncio
    async def test_reingest_overwrites_entries(self, store, embedder, pipeline_config, sample_text):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        doc = Document(text=sample_text, id="doc")

        first = await pipeline.ingest(doc)
        second = await pipeline.ingest(doc)

        assert first.vector_ids == second.vector_ids
        assert (await store.describe_index("test")).count == first.chunk_count

    @pytest.mark.asyncio
    async def test_reingesting_shorter_document_drops_old_chunks(self, store, embedder, pipeline_config, sample_text):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        other = await pipeline.ingest(Document(text=sample_text, id="other"))
        first = await pipeline.ingest(Document(text=sample_text, id="doc"))
        assert first.chunk_count > 1

        second = await pipeline.ingest(Document(text="new fact\n", id="doc"))

        assert second.vector_ids == ["doc:0"]
        results = await store.query("test", [1.0] * DIMENSION, filter={"doc_id": "doc"}, top_k=100)
        assert [r.text for r in results] == ["new fact\n"]
        assert (await store.describe_index("test")).count == other.chunk_count + 1

    @pytest.mark.asyncio
    async def test_content_hash_identity(self, store, embedder, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        result = await pipeline.ingest(Document(text="hash me"))

        assert result.document_id == Document(text="hash me").doc_id
        assert len(result.document_id) == 16

    @pytest.mark.asyncio
    async def test_empty_document_skips_embedding(self, store, embedder, embedding, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        result = await pipeline.ingest(Document(text="", id="empty"))

        assert result.state == IngestState.DONE
        assert result.chunk_count == 0
        assert [w.step for w in result.warnings] == ["chunk"]
        assert embedding.calls == []
        assert await store.list_indexes() == []

    @pytest.mark.asyncio
    async def test_keywords_extracted(self, store, embedder, pipeline_config):
        config = dataclasses.replace(
            pipeline_config, chunk=dataclasses.replace(pipeline_config.chunk, extract_keywords=True)
        )
        pipeline = IngestPipeline(store, embedder, config)
        await pipeline.ingest(Document(text="storm storm warning", id="doc"))

        results = await store.query("test", [1.0] * DIMENSION)
        assert results[0].metadata["extract"]["keywords"] == ["storm", "warning"]

    @pytest.mark.asyncio
    async def test_custom_extractor(self, store, embedder, pipeline_config):
        extractor = MetadataExtractor(fields={"length": len})
        pipeline = IngestPipeline(store, embedder, pipeline_config, metadata_extractor=extractor)
        await pipeline.ingest(Document(text="short", id="doc"))

        assert (await store.query("test", [1.0] * DIMENSION))[0].metadata["length"] == 5


class TestCleaning:
    @pytest.mark.asyncio
    async def test_cleaned_text_is_rechunked(self, store, embedder, pipeline_config, sample_text):
        completion = StubCompletion(["Vector stores index embeddings."])
        pipeline = IngestPipeline(store, embedder, pipeline_config, completion=completion)

        result = await pipeline.ingest(Document(text=sample_text, id="doc"), clean=True)

        assert IngestState.CLEANED in result.transitions
        assert result.chunk_count == 1
        results = await store.query("test", [1.0] * DIMENSION)
        assert results[0].text == "Vector stores index embeddings."

    @pytest.mark.asyncio
    async def test_empty_cleaned_output_completes_with_warning(self, store, embedder, embedding, pipeline_config):
        completion = StubCompletion([""])
        pipeline = IngestPipeline(store, embedder, pipeline_config, completion=completion)

        with capture_logs() as logs:
            result = await pipeline.ingest(Document(text="duplicate duplicate", id="doc"), clean=True)

        assert result.state == IngestState.DONE
        assert result.transitions == [
            IngestState.RECEIVED,
            IngestState.CHUNKED,
            IngestState.CLEANED,
            IngestState.DONE,
        ]
        assert result.chunk_count == 0
        assert result.warnings
        assert result.warnings[0].step == "clean"
        assert embedding.calls == []
        assert await store.list_indexes() == []

        warnings = [e for e in logs if e["event"] == "data_quality_warning"]
        assert warnings and warnings[0]["document_id"] == "doc"

    @pytest.mark.asyncio
    async def test_cleaning_without_completion_fails(self, store, embedder, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config)

        with pytest.raises(IntegrationError) as exc_info:
            await pipeline.ingest(Document(text="text", id="doc"), clean=True)

        assert exc_info.value.step == "clean"

    @pytest.mark.asyncio
    async def test_provider_error_propagates_and_index_untouched(self, store, embedder, embedding, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config, completion=FailingCompletion())

        with capture_logs() as logs:
            with pytest.raises(ExternalServiceError):
                await pipeline.ingest(Document(text="text", id="doc"), clean=True)

        assert embedding.calls == []
        assert await store.list_indexes() == []
        failed = [e for e in logs if e["event"] == "document_ingestion_failed"]
        assert failed[0]["step"] == "clean"

    @pytest.mark.asyncio
    async def test_cancellation_before_upsert_leaves_index_unchanged(self, store, embedder, embedding, pipeline_config):
        completion = BlockingCompletion()
        pipeline = IngestPipeline(store, embedder, pipeline_config, completion=completion)

        task = asyncio.create_task(pipeline.ingest(Document(text="some text", id="doc"), clean=True))
        await completion.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert embedding.calls == []
        assert await store.list_indexes() == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_vector_count_mismatch(self, store, pipeline_config, sample_text):
        pipeline = IngestPipeline(store, Embedder(MiscountingEmbedding(), DIMENSION), pipeline_config)

        with pytest.raises(IntegrationError) as exc_info:
            await pipeline.ingest(Document(text=sample_text, id="doc"))

        assert exc_info.value.step == "embed"
        assert exc_info.value.document_id == "doc"
        assert await store.list_indexes() == []

    @pytest.mark.asyncio
    async def test_existing_index_with_other_dimension(self, store, embedder, pipeline_config):
        await store.create_index("test", DIMENSION + 1)
        pipeline = IngestPipeline(store, embedder, pipeline_config)

        with pytest.raises(ValueError):
            await pipeline.ingest(Document(text="text", id="doc"))


class TestConcurrentIngest:
    @pytest.mark.asyncio
    async def test_ingest_many_preserves_order(self, store, embedder, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        docs = [Document(text=f"document number {i} " * 10, id=f"doc{i}") for i in range(5)]

        results = await pipeline.ingest_many(docs)

        assert [r.document_id for r in results] == [f"doc{i}" for i in range(5)]
        assert all(r.state == IngestState.DONE for r in results)
        total = sum(r.chunk_count for r in results)
        assert (await store.describe_index("test")).count == total


class TestFileIngest:
    @pytest.mark.asyncio
    async def test_markdown_file(self, tmp_path, store, embedder, pipeline_config):
        note = tmp_path / "weather.md"
        note.write_text(
            "---\ntitle: Weather\ntags: [rain, oslo]\n---\n"
            "# Forecast\nRain expected.\n## Tomorrow\nSnow later in the evening hours.\n",
            encoding="utf-8",
        )
        pipeline = IngestPipeline(store, embedder, pipeline_config)

        result = await pipeline.ingest_file(note)

        assert result.state == IngestState.DONE
        assert result.document_id == str(note)
        results = await store.query("test", [1.0] * DIMENSION, filter={"tags": "rain"}, top_k=100)
        assert results
        assert all(r.metadata["title"] == "Weather" for r in results)
        assert all(r.metadata["heading"].startswith("# Forecast") for r in results)

    @pytest.mark.asyncio
    async def test_text_file(self, tmp_path, store, embedder, pipeline_config):
        path = tmp_path / "plain.txt"
        path.write_text("plain text content", encoding="utf-8")
        pipeline = IngestPipeline(store, embedder, pipeline_config)

        await pipeline.ingest_file(path)

        results = await store.query("test", [1.0] * DIMENSION)
        assert results[0].metadata["file_name"] == "plain.txt"

    @pytest.mark.asyncio
    async def test_directory_counts_failures_and_continues(self, tmp_path, store, embedder, pipeline_config):
        (tmp_path / "a.md").write_text("# A\nfirst note", encoding="utf-8")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.md").write_text("# B\nsecond note", encoding="utf-8")
        (tmp_path / "bad.md").write_bytes(b"\xff\xfe\xfa broken")
        seen = []

        pipeline = IngestPipeline(store, embedder, pipeline_config)
        stats = await pipeline.ingest_directory(
            tmp_path, progress_callback=lambda current, total, path: seen.append((current, total))
        )

        assert stats["files_processed"] == 2
        assert stats["files_failed"] == 1
        assert stats["chunks_created"] == 2
        assert stats["embeddings_generated"] == 2
        assert seen == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path, store, embedder, pipeline_config):
        pipeline = IngestPipeline(store, embedder, pipeline_config)
        with pytest.raises(FileNotFoundError):
            await pipeline.ingest_directory(tmp_path / "absent")
