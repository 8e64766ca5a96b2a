"""Tests for the reindex CLI helpers."""

import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "reindex.py"


@pytest.fixture(scope="module")
def reindex():
    spec = importlib.util.spec_from_file_location("reindex", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _stats(processed=0, failed=0, chunks=0):
    return {
        "files_processed": processed,
        "files_failed": failed,
        "chunks_created": chunks,
        "embeddings_generated": chunks,
    }


class TestSummary:
    def test_includes_rate(self, reindex):
        summary = reindex.summarize(_stats(processed=3, failed=1, chunks=20), elapsed=4.0)
        assert summary == "3 file(s) indexed, 1 failed, 20 chunk(s) in 4.0s (5.0 chunks/sec)"

    def test_no_rate_without_chunks(self, reindex):
        assert reindex.summarize(_stats(), elapsed=0.0) == "0 file(s) indexed, 0 failed, 0 chunk(s) in 0.0s"


class TestProgress:
    def test_single_rewritten_line(self, reindex, capsys):
        reindex.show_progress(2, 5, Path("notes/weather.md"))

        out = capsys.readouterr().out
        assert out.startswith("\r  [2/5] notes/weather.md")
        assert "\n" not in out
