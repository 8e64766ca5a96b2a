"""Tests for markdown parsing into Documents."""

from pathlib import Path

import pytest

from metarag.rag.md_parser import MarkdownParser


@pytest.fixture
def parser() -> MarkdownParser:
    return MarkdownParser()


class TestFrontmatter:
    def test_frontmatter_becomes_metadata(self, parser):
        doc = parser.parse_text(
            "---\ntitle: Notes\ncreated: 2024-05-01\ntags: [a, b]\nignored: x\n---\nBody text\n",
            Path("notes/weekly.md"),
        ).to_document()

        assert doc.text == "Body text\n"
        assert doc.id == str(Path("notes/weekly.md"))
        assert doc.metadata["title"] == "Notes"
        assert doc.metadata["created"] == "2024-05-01"
        assert doc.metadata["tags"] == ["a", "b"]
        assert doc.metadata["file_name"] == "weekly.md"
        assert "ignored" not in doc.metadata

    def test_no_frontmatter(self, parser):
        parsed = parser.parse_text("# Title\ntext")
        assert parsed.frontmatter == {}
        assert parsed.body == "# Title\ntext"

    def test_invalid_yaml_ignored(self, parser):
        parsed = parser.parse_text("---\ntitle: [unclosed\n---\nBody\n")
        assert parsed.frontmatter == {}
        assert parsed.body == "Body\n"

    def test_non_mapping_frontmatter_ignored(self, parser):
        assert parser.parse_text("---\n- a\n- b\n---\nBody\n").frontmatter == {}


class TestHeadings:
    def test_heading_context(self, parser):
        body = "# Main\nintro\n## Sub\ndetail\n### Deep\nmore\n## Other\nend\n"
        parsed = parser.parse_text(body)

        assert [h.level for h in parsed.headings] == [1, 2, 3, 2]
        assert parser.get_heading_context(parsed.headings, 0) == "# Main"
        assert parser.get_heading_context(parsed.headings, body.index("more")) == "# Main > ## Sub > ### Deep"
        assert parser.get_heading_context(parsed.headings, body.index("end")) == "# Main > ## Other"

    def test_position_before_first_heading(self, parser):
        parsed = parser.parse_text("preface\n# Title\n")
        assert parser.get_heading_context(parsed.headings, 0) == ""


class TestParseFile:
    def test_parse_file(self, parser, tmp_path):
        path = tmp_path / "note.md"
        path.write_text("---\ntitle: T\n---\n# H\nbody", encoding="utf-8")

        parsed = parser.parse_file(path)

        assert parsed.frontmatter == {"title": "T"}
        assert parsed.headings[0].text == "H"

    def test_missing_file(self, parser, tmp_path):
        with pytest.raises(FileNotFoundError):
            parser.parse_file(tmp_path / "missing.md")
