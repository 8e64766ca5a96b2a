"""Application configuration with sensible defaults."""
import codecs
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from metarag.errors import ConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
NOTES_DIR = Path(os.getenv("NOTES_DIR", str(BASE_DIR / "notes")))

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama3.1:8b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "768"))
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60.0"))

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_STRATEGY = os.getenv("CHUNK_STRATEGY", "recursive")
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "512"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "50"))
# Escapes are decoded so CHUNK_SEPARATOR='\n\n' works from a shell
CHUNK_SEPARATOR = codecs.decode(os.getenv("CHUNK_SEPARATOR", "\\n"), "unicode_escape")
EXTRACT_KEYWORDS = _env_bool("EXTRACT_KEYWORDS", "false")
CLEAN_DOCUMENTS = _env_bool("CLEAN_DOCUMENTS", "false")

# Retrieval
ENABLE_FILTER = _env_bool("ENABLE_FILTER", "true")
FILTER_MODE = os.getenv("FILTER_MODE", "rules")  # rules | llm
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "10"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Vector store
INDEX_NAME = os.getenv("INDEX_NAME", "embeddings")
VECTOR_METRIC = os.getenv("VECTOR_METRIC", "cosine")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console

CHUNK_STRATEGIES = ("recursive", "character", "markdown")
FILTER_MODES = ("rules", "llm")
METRICS = ("cosine", "euclidean", "dotproduct")


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class ChunkConfig:
    """Chunking parameters, validated on construction."""

    strategy: str = CHUNK_STRATEGY
    size: int = CHUNK_SIZE
    overlap: int = CHUNK_OVERLAP
    separator: str = CHUNK_SEPARATOR
    extract_keywords: bool = EXTRACT_KEYWORDS

    def __post_init__(self):
        if self.strategy not in CHUNK_STRATEGIES:
            raise ConfigurationError(
                f"Unknown chunking strategy {self.strategy!r}; "
                f"expected one of {', '.join(CHUNK_STRATEGIES)}"
            )
        _require_positive_int("size", self.size)
        if isinstance(self.overlap, bool) or not isinstance(self.overlap, int) or self.overlap < 0:
            raise ConfigurationError(f"overlap must be a non-negative integer, got {self.overlap!r}")
        if self.overlap >= self.size:
            raise ConfigurationError(
                f"Overlap ({self.overlap}) must be less than chunk size ({self.size})"
            )
        if not isinstance(self.separator, str):
            raise ConfigurationError(f"separator must be a string, got {self.separator!r}")


@dataclass(frozen=True)
class PipelineConfig:
    """Options shared by the ingest pipeline and the query planner."""

    chunk: ChunkConfig = field(default_factory=ChunkConfig)
    enable_filter: bool = ENABLE_FILTER
    filter_mode: str = FILTER_MODE
    top_k: int = RETRIEVAL_TOP_K
    index_name: str = INDEX_NAME
    dimension: int = EMBEDDING_DIMENSION
    metric: str = VECTOR_METRIC
    clean: bool = CLEAN_DOCUMENTS
    max_context_chars: int = MAX_CONTEXT_CHARS

    def __post_init__(self):
        _require_positive_int("top_k", self.top_k)
        _require_positive_int("dimension", self.dimension)
        _require_positive_int("max_context_chars", self.max_context_chars)
        if self.filter_mode not in FILTER_MODES:
            raise ConfigurationError(f"Unknown filter mode {self.filter_mode!r}")
        if self.metric not in METRICS:
            raise ConfigurationError(f"Unknown vector metric {self.metric!r}")
        if not self.index_name:
            raise ConfigurationError("index_name must not be empty")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from the module-level environment defaults."""
        return cls()

    @classmethod
    def from_options(
        cls, options: Optional[Mapping[str, Any]] = None, **overrides: Any
    ) -> "PipelineConfig":
        """Build a config from the recognized option mapping.

        Accepts ``strategy``, ``size``, ``overlap``, ``separator``,
        ``extract`` (``{"keywords": bool}``), ``enableFilter`` and ``topK``;
        anything missing falls back to the environment defaults.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        options = dict(options or {})
        known = {"strategy", "size", "overlap", "separator", "extract", "enableFilter", "topK"}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown pipeline options: {', '.join(sorted(unknown))}")

        extract = options.get("extract") or {}
        if not isinstance(extract, Mapping):
            raise ConfigurationError("extract must be a mapping, e.g. {'keywords': true}")

        chunk = ChunkConfig(
            strategy=options.get("strategy", CHUNK_STRATEGY),
            size=options.get("size", CHUNK_SIZE),
            overlap=options.get("overlap", CHUNK_OVERLAP),
            separator=options.get("separator", CHUNK_SEPARATOR),
            extract_keywords=bool(extract.get("keywords", EXTRACT_KEYWORDS)),
        )
        return cls(
            chunk=chunk,
            enable_filter=bool(options.get("enableFilter", ENABLE_FILTER)),
            top_k=options.get("topK", RETRIEVAL_TOP_K),
            **overrides,
        )
