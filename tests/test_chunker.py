"""Tests for text chunking: size bound, reconstruction and strategies."""

import pytest

from metarag.config import ChunkConfig
from metarag.errors import ConfigurationError
from metarag.rag.chunker import TextChunker, chunk, join_chunks
from metarag.rag.document import Document


def _chunker(**kwargs) -> TextChunker:
    params = {"strategy": "recursive", "size": 64, "overlap": 8, "separator": "\n", "extract_keywords": False}
    params.update(kwargs)
    return TextChunker(ChunkConfig(**params))


class TestChunkConfig:
    def test_overlap_equal_to_size_rejected(self):
        with pytest.raises(ConfigurationError):
            ChunkConfig(size=100, overlap=100)

    def test_overlap_larger_than_size_rejected(self):
        with pytest.raises(ConfigurationError):
            ChunkConfig(size=10, overlap=50)

    def test_non_positive_size_rejected(self):
        with pytest.raises(ConfigurationError):
            ChunkConfig(size=0, overlap=0)
        with pytest.raises(ConfigurationError):
            ChunkConfig(size=-5, overlap=0)

    def test_negative_overlap_rejected(self):
        with pytest.raises(ConfigurationError):
            ChunkConfig(size=10, overlap=-1)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ConfigurationError, match="strategy"):
            ChunkConfig(strategy="semantic")

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            ChunkConfig(size=10, overlap=10)


class TestRecursiveChunking:
    def test_empty_document_yields_no_chunks(self):
        assert _chunker().chunk(Document(text="")) == []

    def test_short_text_is_single_chunk(self):
        chunks = _chunker().chunk_text("hello world")
        assert len(chunks) == 1
        assert chunks[0].text == "hello world"
        assert chunks[0].overlap == 0

    @pytest.mark.parametrize("size,overlap", [(16, 0), (32, 4), (64, 8), (100, 99), (7, 3)])
    def test_size_bound_and_reconstruction(self, sample_text, size, overlap):
        chunks = _chunker(size=size, overlap=overlap).chunk_text(sample_text)

        assert chunks
        assert all(len(c.text) <= size for c in chunks)
        assert join_chunks(chunks) == sample_text

    def test_overlap_repeats_preceding_text(self, sample_text):
        chunks = _chunker(size=40, overlap=10).chunk_text(sample_text)

        for previous, current in zip(chunks, chunks[1:]):
            assert current.overlap == 10
            assert previous.text.endswith(current.text[: current.overlap])

    def test_positions_index_into_source(self, sample_text):
        chunks = _chunker(size=40, overlap=10).chunk_text(sample_text)

        for i, c in enumerate(chunks):
            assert c.chunk_index == i
            assert sample_text[c.char_start:c.char_end] == c.text

    def test_deterministic(self, sample_text):
        chunker = _chunker(size=30, overlap=5)
        first = [(c.text, c.char_start, c.overlap) for c in chunker.chunk_text(sample_text)]
        second = [(c.text, c.char_start, c.overlap) for c in chunker.chunk_text(sample_text)]
        assert first == second

    def test_prefers_separator_boundaries(self):
        text = "first line\nsecond line\nthird line"
        chunks = _chunker(size=24, overlap=0).chunk_text(text)

        assert [c.text for c in chunks] == ["first line\nsecond line\n", "third line"]

    def test_document_metadata_copied_to_chunks(self):
        doc = Document(text="a" * 200, metadata={"source": "notes.md", "nested": {"id": 1}})
        chunks = _chunker().chunk(doc)

        assert len(chunks) > 1
        for c in chunks:
            assert c.metadata["source"] == "notes.md"
        chunks[0].metadata["source"] = "changed"
        assert chunks[1].metadata["source"] == "notes.md"

    def test_scenario_600_chars_without_separator(self):
        text = "x" * 600
        chunks = _chunker(size=256, overlap=50, separator="\n").chunk_text(text)

        assert [len(c.text) for c in chunks] == [256, 256, 188]
        assert [c.overlap for c in chunks] == [0, 50, 50]
        assert join_chunks(chunks) == text


class TestCharacterChunking:
    def test_oversized_piece_emitted_whole(self):
        text = "short\n" + "x" * 100
        chunks = _chunker(strategy="character", size=50, overlap=10).chunk_text(text)

        assert max(len(c.text) for c in chunks) > 50
        assert any("x" * 100 in c.text for c in chunks)
        assert join_chunks(chunks) == text

    def test_splits_on_separator_only(self):
        text = "alpha beta|gamma delta|epsilon"
        chunks = _chunker(strategy="character", size=12, overlap=0, separator="|").chunk_text(text)

        assert [c.text for c in chunks] == ["alpha beta|", "gamma delta|", "epsilon"]


class TestMarkdownChunking:
    def test_headings_start_new_chunks(self):
        text = "# Alpha\n" + "a" * 20 + "\n## Beta\n" + "b" * 20
        chunks = _chunker(strategy="markdown", size=40, overlap=5).chunk_text(text)

        assert len(chunks) == 2
        assert chunks[1].body.startswith("\n## Beta")
        assert join_chunks(chunks) == text


class TestChunkStats:
    def test_stats_for_chunks(self, sample_text):
        chunker = _chunker(size=40, overlap=10)
        chunks = chunker.chunk_text(sample_text)
        stats = chunker.get_chunk_stats(chunks)

        assert stats["chunk_count"] == len(chunks)
        assert stats["max_chunk_size"] <= 40
        assert stats["overlap"] == 10

    def test_stats_for_no_chunks(self):
        assert _chunker().get_chunk_stats([])["chunk_count"] == 0


def test_convenience_function_uses_config():
    chunks = chunk(Document(text="y" * 30), ChunkConfig(size=10, overlap=2, extract_keywords=False))
    assert all(len(c.text) <= 10 for c in chunks)
    assert join_chunks(chunks) == "y" * 30
