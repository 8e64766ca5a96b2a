"""Vector store gateway with a FAISS backend.

Handles:
- Named, dimension-typed indexes (create, list, describe, delete)
- Vector upsert with per-entry metadata
- Similarity search with metadata filter predicates
- Index and metadata persistence
"""
import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import faiss
import numpy as np
import structlog

from metarag import config
from metarag.errors import ConfigurationError, IndexNotFoundError, IntegrationError
from metarag.rag.filters import Predicate, evaluate, metadata_paths, parse_filter, validate_filter

logger = structlog.get_logger()

_INDEX_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

FilterSpec = Union[Predicate, Mapping[str, Any], None]

# Keys the ingest pipeline stores next to a chunk's own metadata
ENTRY_FIELDS = ("text", "doc_id", "chunk_index")


@dataclass
class QueryResult:
    """A single search hit, best first."""

    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.metadata.get("text", "")


@dataclass
class IndexStats:
    """Description of a named index."""

    name: str
    dimension: int
    metric: str
    count: int
    metadata_fields: List[str] = field(default_factory=list)


class VectorStore(ABC):
    """Abstract gateway over a vector database.

    ``upsert`` checks that vectors, metadata and ids line up before any
    backend call; subclasses implement ``_upsert``.
    """

    @abstractmethod
    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> bool:
        """Create an index; returns False if an identical one already exists."""

    async def upsert(
        self,
        index_name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
        ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Insert or overwrite entries, positionally aligned.

        Raises:
            IntegrationError: If vectors, metadata and ids differ in length
        """
        if len(vectors) != len(metadata):
            raise IntegrationError(
                f"upsert got {len(vectors)} vectors but {len(metadata)} metadata entries",
                step="upsert",
            )
        if ids is not None and len(ids) != len(vectors):
            raise IntegrationError(
                f"upsert got {len(vectors)} vectors but {len(ids)} ids",
                step="upsert",
            )
        if not vectors:
            return []
        return await self._upsert(index_name, vectors, metadata, ids)

    @abstractmethod
    async def _upsert(
        self,
        index_name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
        ids: Optional[Sequence[str]],
    ) -> List[str]:
        ...

    @abstractmethod
    async def query(
        self,
        index_name: str,
        query_vector: Sequence[float],
        filter: FilterSpec = None,
        top_k: int = None,
    ) -> List[QueryResult]:
        """Return up to top_k entries by descending score."""

    @abstractmethod
    async def list_ids(self, index_name: str, filter: FilterSpec = None) -> List[str]:
        """Ids of the entries whose metadata matches the filter, oldest first."""

    @abstractmethod
    async def delete(self, index_name: str, ids: Sequence[str]) -> int:
        """Remove entries by id, ignoring unknown ids; returns how many were removed."""

    @abstractmethod
    async def list_indexes(self) -> List[str]:
        ...

    @abstractmethod
    async def describe_index(self, name: str) -> IndexStats:
        ...

    @abstractmethod
    async def delete_index(self, name: str) -> None:
        ...

    async def close(self) -> None:
        """Release resources. Override if needed."""


@dataclass
class _Entry:
    id: str
    internal_id: int
    rank: int
    metadata: Dict[str, Any]


class _FaissIndex:
    """One named FAISS index plus the metadata for its entries."""

    def __init__(self, name: str, dimension: int, metric: str, index: faiss.Index = None):
        self.name = name
        self.dimension = dimension
        self.metric = metric
        if index is None:
            if metric == "euclidean":
                base = faiss.IndexFlatL2(dimension)
            else:
                base = faiss.IndexFlatIP(dimension)
            index = faiss.IndexIDMap2(base)
            self._base = base
        self.index = index
        self.entries: Dict[int, _Entry] = {}
        self.ids: Dict[str, int] = {}
        self.next_internal_id = 0
        self.next_rank = 0

    def prepare(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        for position, vector in enumerate(vectors):
            if len(vector) != self.dimension:
                raise ConfigurationError(
                    f"Vector at position {position} has dimension {len(vector)}, "
                    f"index {self.name!r} expects {self.dimension}"
                )
        array = np.asarray(vectors, dtype=np.float32).reshape(len(vectors), self.dimension)
        if self.metric == "cosine":
            norms = np.linalg.norm(array, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            array = array / norms
        return np.ascontiguousarray(array, dtype=np.float32)

    def score(self, distance: float) -> float:
        if self.metric == "euclidean":
            return 1.0 / (1.0 + float(distance))
        return float(distance)

    def metadata_fields(self) -> List[str]:
        fields = set()
        for entry in self.entries.values():
            fields |= metadata_paths(entry.metadata)
        return sorted(fields)

    def stats(self) -> IndexStats:
        return IndexStats(
            name=self.name,
            dimension=self.dimension,
            metric=self.metric,
            count=self.index.ntotal,
            metadata_fields=self.metadata_fields(),
        )


class FAISSVectorStore(VectorStore):
    """In-process vector store backed by exact FAISS indexes.

    Cosine and dot-product indexes use inner product (cosine on
    L2-normalised vectors); euclidean indexes score ``1 / (1 + d)`` from
    the squared L2 distance. Ties are broken by insertion order.
    """

    def __init__(self, persist_dir: Optional[Path] = None):
        """Initialize the FAISS vector store.

        Args:
            persist_dir: Directory used by save()/load() when none is given
        """
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self._indexes: Dict[str, _FaissIndex] = {}
        self._lock = asyncio.Lock()

        logger.info(
            "faiss_store_initialized",
            persist_dir=str(self.persist_dir) if self.persist_dir else None,
        )

    def _get(self, name: str) -> _FaissIndex:
        try:
            return self._indexes[name]
        except KeyError:
            raise IndexNotFoundError(name) from None

    async def create_index(self, name: str, dimension: int, metric: str = None) -> bool:
        """Create a named index.

        Returns:
            True if created, False if an index with the same dimension and
            metric already exists

        Raises:
            ConfigurationError: Bad name/dimension/metric, or an existing
                index with a different dimension or metric
        """
        metric = metric or config.VECTOR_METRIC
        if not isinstance(name, str) or not _INDEX_NAME_PATTERN.match(name):
            raise ConfigurationError(f"Invalid index name: {name!r}")
        if isinstance(dimension, bool) or not isinstance(dimension, int) or dimension <= 0:
            raise ConfigurationError(f"Index dimension must be a positive integer, got {dimension!r}")
        if metric not in config.METRICS:
            raise ConfigurationError(f"Unknown vector metric {metric!r}")

        async with self._lock:
            existing = self._indexes.get(name)
            if existing is not None:
                if existing.dimension != dimension or existing.metric != metric:
                    raise ConfigurationError(
                        f"Index {name!r} already exists with dimension {existing.dimension} "
                        f"and metric {existing.metric}; requested {dimension}/{metric}"
                    )
                logger.info("index_already_exists", index=name, dimension=dimension)
                return False

            self._indexes[name] = _FaissIndex(name, dimension, metric)

        logger.info("faiss_index_initialized", index=name, dimension=dimension, metric=metric)
        return True

    async def _upsert(
        self,
        index_name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
        ids: Optional[Sequence[str]],
    ) -> List[str]:
        async with self._lock:
            index = self._get(index_name)
            array = index.prepare(vectors)

            if ids is None:
                ids = [f"{index_name}-{index.next_rank + i}" for i in range(len(vectors))]
            if len(set(ids)) != len(ids):
                raise IntegrationError("upsert ids must be unique within a batch", step="upsert")

            internal_ids = []
            overwritten = []
            for entry_id, entry_metadata in zip(ids, metadata):
                internal_id = index.ids.get(entry_id)
                if internal_id is None:
                    internal_id = index.next_internal_id
                    index.next_internal_id += 1
                    rank = index.next_rank
                    index.next_rank += 1
                else:
                    overwritten.append(internal_id)
                    rank = index.entries[internal_id].rank
                index.ids[entry_id] = internal_id
                index.entries[internal_id] = _Entry(entry_id, internal_id, rank, dict(entry_metadata))
                internal_ids.append(internal_id)

            if overwritten:
                index.index.remove_ids(np.asarray(overwritten, dtype=np.int64))
            index.index.add_with_ids(array, np.asarray(internal_ids, dtype=np.int64))

        logger.info(
            "vectors_upserted",
            index=index_name,
            count=len(ids),
            overwritten=len(overwritten),
            total_vectors=index.index.ntotal,
        )
        return list(ids)

    async def query(
        self,
        index_name: str,
        query_vector: Sequence[float],
        filter: FilterSpec = None,
        top_k: int = None,
    ) -> List[QueryResult]:
        """Search an index, optionally restricted by a metadata filter.

        Args:
            index_name: Index to search
            query_vector: Query embedding
            filter: Predicate or MongoDB-style query object
            top_k: Number of results to return (default from config)

        Returns:
            Results by descending score; empty if nothing matches

        Raises:
            IndexNotFoundError: If the index does not exist
            ConfigurationError: On query dimension mismatch
            FilterError: If the filter is malformed
        """
        if top_k is None:
            top_k = config.RETRIEVAL_TOP_K
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k <= 0:
            raise ConfigurationError(f"top_k must be a positive integer, got {top_k!r}")

        predicate = filter if filter is None or not isinstance(filter, Mapping) else parse_filter(filter)
        validate_filter(predicate)

        index = self._get(index_name)
        query = index.prepare([query_vector])

        total = index.index.ntotal
        if total == 0:
            return []

        # Exact search over every entry, then filter and rank
        distances, internal_ids = index.index.search(query, total)

        hits = []
        for distance, internal_id in zip(distances[0].tolist(), internal_ids[0].tolist()):
            if internal_id < 0:
                continue
            entry = index.entries[internal_id]
            if evaluate(predicate, entry.metadata):
                hits.append((index.score(distance), entry))

        hits.sort(key=lambda hit: (-hit[0], hit[1].rank))
        results = [
            QueryResult(id=entry.id, score=score, metadata=dict(entry.metadata))
            for score, entry in hits[:top_k]
        ]

        logger.info(
            "vector_search_completed",
            index=index_name,
            top_k=top_k,
            filtered=predicate is not None,
            results_found=len(results),
        )
        return results

    async def list_ids(self, index_name: str, filter: FilterSpec = None) -> List[str]:
        predicate = filter if filter is None or not isinstance(filter, Mapping) else parse_filter(filter)
        validate_filter(predicate)

        index = self._get(index_name)
        matching = [entry for entry in index.entries.values() if evaluate(predicate, entry.metadata)]
        return [entry.id for entry in sorted(matching, key=lambda entry: entry.rank)]

    async def delete(self, index_name: str, ids: Sequence[str]) -> int:
        async with self._lock:
            index = self._get(index_name)
            internal_ids = [index.ids.pop(entry_id) for entry_id in dict.fromkeys(ids) if entry_id in index.ids]
            for internal_id in internal_ids:
                del index.entries[internal_id]
            if internal_ids:
                index.index.remove_ids(np.asarray(internal_ids, dtype=np.int64))

        logger.info("vectors_deleted", index=index_name, count=len(internal_ids))
        return len(internal_ids)

    async def list_indexes(self) -> List[str]:
        return sorted(self._indexes)

    async def describe_index(self, name: str) -> IndexStats:
        return self._get(name).stats()

    async def delete_index(self, name: str) -> None:
        async with self._lock:
            self._get(name)
            del self._indexes[name]
        logger.warning("index_deleted", index=name)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        return {
            "index_count": len(self._indexes),
            "vector_count": sum(i.index.ntotal for i in self._indexes.values()),
            "indexes": {name: asdict(i.stats()) for name, i in self._indexes.items()},
        }

    async def save(self, directory: Optional[Path] = None) -> None:
        """Save every index and its metadata to disk.

        Writes ``<name>.index`` (FAISS) and ``<name>.json`` per index.

        Raises:
            ConfigurationError: If no directory is known
        """
        directory = Path(directory) if directory else self.persist_dir
        if directory is None:
            raise ConfigurationError("No persist directory configured")
        directory.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            for name, index in self._indexes.items():
                faiss.write_index(index.index, str(directory / f"{name}.index"))
                payload = {
                    "name": name,
                    "dimension": index.dimension,
                    "metric": index.metric,
                    "next_internal_id": index.next_internal_id,
                    "next_rank": index.next_rank,
                    "vector_count": index.index.ntotal,
                    "entries": [
                        {
                            "id": e.id,
                            "internal_id": e.internal_id,
                            "rank": e.rank,
                            "metadata": e.metadata,
                        }
                        for e in index.entries.values()
                    ],
                }
                with open(directory / f"{name}.json", "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, default=str)

        logger.info("faiss_store_saved", directory=str(directory), index_count=len(self._indexes))

    async def load(self, directory: Optional[Path] = None) -> None:
        """Load every index found in a directory, replacing same-named ones.

        A missing directory is treated as an empty store.

        Raises:
            IntegrationError: If an index file disagrees with its metadata
        """
        directory = Path(directory) if directory else self.persist_dir
        if directory is None:
            raise ConfigurationError("No persist directory configured")
        if not directory.exists():
            logger.info("no_persisted_store_found", directory=str(directory))
            return

        loaded = {}
        for meta_path in sorted(directory.glob("*.json")):
            index_path = meta_path.with_suffix(".index")
            if not index_path.exists():
                raise IntegrationError(f"Index file missing for {meta_path.name}", step="load")

            with open(meta_path, "r", encoding="utf-8") as f:
                payload = json.load(f)

            faiss_index = faiss.read_index(str(index_path))
            if faiss_index.d != payload["dimension"]:
                raise IntegrationError(
                    f"Dimension mismatch in {index_path.name}: file has {faiss_index.d}, "
                    f"metadata says {payload['dimension']}",
                    step="load",
                )

            index = _FaissIndex(payload["name"], payload["dimension"], payload["metric"], faiss_index)
            index.next_internal_id = payload["next_internal_id"]
            index.next_rank = payload["next_rank"]
            for item in payload["entries"]:
                entry = _Entry(item["id"], item["internal_id"], item["rank"], item["metadata"])
                index.entries[entry.internal_id] = entry
                index.ids[entry.id] = entry.internal_id
            loaded[index.name] = index

        async with self._lock:
            self._indexes.update(loaded)

        logger.info("faiss_store_loaded", directory=str(directory), index_count=len(loaded))


def build_vector_store(backend: str = "faiss", **kwargs: Any) -> VectorStore:
    """Create a VectorStore of the requested type.

    Raises:
        ConfigurationError: Unknown backend
    """
    if backend == "faiss":
        return FAISSVectorStore(**kwargs)
    raise ConfigurationError(f"Unknown vector store backend: {backend!r}. Supported: 'faiss'")
