#!/usr/bin/env python
"""Index a directory of notes into the persisted vector store.

Usage:
    python scripts/reindex.py              # Incremental reindex (overwrites changed notes by id)
    python scripts/reindex.py --rebuild    # Drop the index and rebuild from scratch
    python scripts/reindex.py --clean      # Run the LLM cleaning pass first
    python scripts/reindex.py --verbose    # Show detailed progress
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from metarag import config
from metarag.config import PipelineConfig
from metarag.llm_client import OllamaClient
from metarag.log import configure_logging
from metarag.rag.embedder import Embedder
from metarag.rag.ingest import IngestPipeline
from metarag.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()


def show_progress(current: int, total: int, file_path: Path) -> None:
    """Rewrite a single status line: ``[12/40] notes/weather.md``."""
    print(f"\r  [{current}/{total}] {str(file_path)[-50:]:<50}", end="", flush=True)


def summarize(stats: dict, elapsed: float) -> str:
    """One-line summary of an ingest_directory run."""
    summary = (
        f"{stats['files_processed']} file(s) indexed, {stats['files_failed']} failed, "
        f"{stats['chunks_created']} chunk(s) in {elapsed:.1f}s"
    )
    if stats["chunks_created"] and elapsed > 0:
        summary += f" ({stats['chunks_created'] / elapsed:.1f} chunks/sec)"
    return summary


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index a directory of notes into the vector store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py                      # Incremental reindex
  python scripts/reindex.py --rebuild            # Full rebuild from scratch
  python scripts/reindex.py --pattern "*.txt"    # Index plain text files
        """,
    )

    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Delete the index before indexing",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Filter and de-duplicate each document with the LLM before chunking",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )
    parser.add_argument(
        "--notes-dir",
        type=Path,
        default=None,
        help=f"Notes directory (default: {config.NOTES_DIR})",
    )
    parser.add_argument(
        "--pattern",
        default="*.md",
        help="Glob pattern for files to index (default: *.md)",
    )
    parser.add_argument(
        "--index",
        default=None,
        help=f"Index name (default: {config.INDEX_NAME})",
    )

    args = parser.parse_args()

    configure_logging(level="DEBUG" if args.verbose else "WARNING", fmt="console")

    notes_dir = args.notes_dir or config.NOTES_DIR
    persist_dir = config.DATA_DIR / "vectors"

    try:
        pipeline_config = PipelineConfig(
            index_name=args.index or config.INDEX_NAME,
            clean=args.clean,
        )
        chunk = pipeline_config.chunk
        print(
            f"{notes_dir} -> index {pipeline_config.index_name!r} "
            f"({config.EMBEDDING_MODEL}, {pipeline_config.dimension} dims, "
            f"{chunk.strategy} chunks of {chunk.size}/{chunk.overlap}, cleaning {'on' if args.clean else 'off'})"
        )

        store = FAISSVectorStore(persist_dir=persist_dir)
        await store.load()

        if args.rebuild and pipeline_config.index_name in await store.list_indexes():
            print(f"Dropping index {pipeline_config.index_name!r} in 3 seconds, Ctrl+C to cancel")
            await asyncio.sleep(3)
            await store.delete_index(pipeline_config.index_name)

        started = time.monotonic()
        async with OllamaClient() as client:
            pipeline = IngestPipeline(
                store,
                Embedder(client, dimension=pipeline_config.dimension),
                pipeline_config,
                completion=client,
            )

            stats = await pipeline.ingest_directory(
                notes_dir,
                pattern=args.pattern,
                progress_callback=None if args.verbose else show_progress,
            )

        await store.save()
        print(f"\n{summarize(stats, time.monotonic() - started)}; saved under {persist_dir}")

        if stats["files_failed"] > 0:
            print("Some files failed to index, check the log for details")
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
