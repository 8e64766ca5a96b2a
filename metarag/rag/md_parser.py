"""Markdown loading into pipeline Documents.

Handles:
- YAML frontmatter as source metadata
- Heading hierarchy for per-chunk heading context
"""
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog
import yaml

from metarag.rag.document import Document

logger = structlog.get_logger()

FRONTMATTER_FIELDS = ("title", "tags", "author", "category", "created", "updated")


@dataclass
class Heading:
    """A markdown heading and where it starts in the body text."""

    level: int
    text: str
    char_position: int


@dataclass
class MarkdownDocument:
    """Parsed markdown file."""

    path: Path
    frontmatter: Dict[str, Any]
    headings: List[Heading]
    body: str

    def to_document(self) -> Document:
        """Wrap the body as a Document carrying source metadata."""
        metadata: Dict[str, Any] = {"source": str(self.path), "file_name": self.path.name}
        for name in FRONTMATTER_FIELDS:
            if name in self.frontmatter:
                value = self.frontmatter[name]
                # Dates from YAML are not JSON-serialisable
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[name] = value
        return Document(text=self.body, metadata=metadata, id=str(self.path))


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # YAML frontmatter must be at the very start of the file
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*$", re.MULTILINE)

    def parse_file(self, file_path: Path) -> MarkdownDocument:
        """Parse a markdown file.

        Raises:
            FileNotFoundError: If file doesn't exist
            UnicodeDecodeError: If file encoding is invalid
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Markdown file not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            logger.error("markdown_encoding_error", path=str(file_path), error=str(e))
            raise

        doc = self.parse_text(content, file_path)

        logger.info(
            "markdown_parsed",
            path=str(file_path),
            has_frontmatter=bool(doc.frontmatter),
            heading_count=len(doc.headings),
            content_length=len(doc.body),
        )

        return doc

    def parse_text(self, content: str, path: Path = Path("<memory>")) -> MarkdownDocument:
        frontmatter, body = self._parse_frontmatter(content)
        return MarkdownDocument(
            path=Path(path),
            frontmatter=frontmatter,
            headings=self._extract_headings(body),
            body=body,
        )

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = {}

        if not isinstance(frontmatter, dict):
            logger.warning("frontmatter_not_a_mapping", type=type(frontmatter).__name__)
            frontmatter = {}

        return frontmatter, content[match.end():]

    def _extract_headings(self, content: str) -> List[Heading]:
        return [
            Heading(level=len(m.group(1)), text=m.group(2).strip(), char_position=m.start())
            for m in self.HEADING_PATTERN.finditer(content)
        ]

    def get_heading_context(self, headings: List[Heading], char_position: int) -> str:
        """Breadcrumb of the headings enclosing a position.

        Returns:
            Heading context string like "# Main > ## Sub > ### Detail"
        """
        stack: List[Heading] = []
        for heading in headings:
            if heading.char_position > char_position:
                break
            while stack and stack[-1].level >= heading.level:
                stack.pop()
            stack.append(heading)

        return " > ".join(f"{'#' * h.level} {h.text}" for h in stack)
