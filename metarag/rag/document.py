"""Source documents fed into the ingest pipeline."""
import hashlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class Document:
    """Raw text plus optional source metadata. Immutable once created."""

    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.text, str):
            raise TypeError(f"Document text must be a string, got {type(self.text).__name__}")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def doc_id(self) -> str:
        """Explicit id, or the first 16 hex chars of the text's SHA-256."""
        if self.id:
            return self.id
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()[:16]

    def revised(self, text: str) -> "Document":
        """Return a copy with new text, keeping identity and metadata."""
        return Document(text=text, metadata=dict(self.metadata), id=self.doc_id)
