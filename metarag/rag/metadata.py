"""Per-chunk metadata extraction (keywords and custom fields)."""
import re
from collections import Counter
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from metarag.errors import IntegrationError
from metarag.llm_client import TextCompletionProvider
from metarag.rag.chunker import Chunk

logger = structlog.get_logger()

KEYWORD_PROMPT = """{text}

Give {max_keywords} unique keywords for this document.
Format as comma separated. Keywords: """

_WORD_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_-]{2,}")
_LABEL_PATTERN = re.compile(r"^\s*keywords\s*:\s*", re.IGNORECASE)

STOPWORDS = frozenset(
    """
    about above after again against all also and any are because been before
    being below between both but can could did does doing down during each
    few for from further had has have having her here hers herself him
    himself his how into its itself just more most not now off once only
    other our ours ourselves out over own same she should some such than
    that the their theirs them themselves then there these they this those
    through too under until very was were what when where which while who
    whom why will with would you your yours yourself yourselves
    """.split()
)


def normalize_keywords(raw: str) -> List[str]:
    """Turn a comma-separated keyword string into a clean list.

    Strips a leading ``KEYWORDS:`` label, trims entries, drops empties and
    removes case-insensitive duplicates while keeping first occurrence.
    """
    raw = _LABEL_PATTERN.sub("", raw or "")
    seen = set()
    keywords = []
    for part in raw.replace("\n", ",").split(","):
        keyword = part.strip().strip(".").strip()
        if not keyword or keyword.lower() in seen:
            continue
        seen.add(keyword.lower())
        keywords.append(keyword)
    return keywords


def extract_keywords(text: str, max_keywords: int = 5) -> List[str]:
    """Most frequent non-stopword terms, ties broken by first occurrence."""
    words = [w.lower() for w in _WORD_PATTERN.findall(text)]
    counts = Counter(w for w in words if w not in STOPWORDS)
    first_seen = {}
    for position, word in enumerate(words):
        first_seen.setdefault(word, position)
    ranked = sorted(counts, key=lambda w: (-counts[w], first_seen[w]))
    return normalize_keywords(", ".join(ranked[:max_keywords]))


def _merge(target: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``extra`` into ``target`` (nested mappings merged)."""
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        elif isinstance(value, Mapping):
            target[key] = _merge({}, value)
        else:
            target[key] = value
    return target


class MetadataExtractor:
    """Derives structured attributes per chunk for filtered retrieval."""

    def __init__(
        self,
        keywords: bool = False,
        max_keywords: int = 5,
        fields: Optional[Mapping[str, Callable[[str], Any]]] = None,
        completion: Optional[TextCompletionProvider] = None,
    ):
        """Initialize the extractor.

        Args:
            keywords: Extract keywords under metadata["extract"]["keywords"]
            max_keywords: Upper bound on keywords per chunk
            fields: Custom field name -> function of chunk text
            completion: Delegate keyword extraction to this provider
        """
        self.keywords = keywords
        self.max_keywords = max_keywords
        self.fields = dict(fields or {})
        self.completion = completion

    @property
    def enabled(self) -> bool:
        return self.keywords or bool(self.fields)

    def extract(self, chunk: Chunk) -> Dict[str, Any]:
        """Derive metadata from chunk text without any external call."""
        derived: Dict[str, Any] = {}
        if self.keywords:
            derived["extract"] = {"keywords": extract_keywords(chunk.text, self.max_keywords)}
        for name, func in self.fields.items():
            derived[name] = func(chunk.text)
        return derived

    async def _llm_keywords(self, chunk: Chunk) -> List[str]:
        reply = await self.completion.complete(
            KEYWORD_PROMPT.format(text=chunk.text, max_keywords=self.max_keywords)
        )
        if not isinstance(reply, str):
            raise IntegrationError("Keyword extraction expected text", step="extract")
        return normalize_keywords(reply)[: self.max_keywords]

    async def apply(self, chunks: Sequence[Chunk]) -> List[Chunk]:
        """Merge derived metadata into each chunk's metadata in place."""
        for chunk in chunks:
            if self.keywords and self.completion is not None:
                derived = {"extract": {"keywords": await self._llm_keywords(chunk)}}
                derived.update((name, func(chunk.text)) for name, func in self.fields.items())
            else:
                derived = self.extract(chunk)
            _merge(chunk.metadata, derived)

        logger.debug(
            "metadata_extracted",
            chunk_count=len(chunks),
            keywords=self.keywords,
            custom_fields=sorted(self.fields),
        )
        return list(chunks)
