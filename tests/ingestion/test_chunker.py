"""Tests for the documentation chunker."""

import pytest

from seshat.ingestion.chunker import (
    CHUNK_TYPE_DOCUMENTATION,
    CHUNK_TYPE_METHOD,
    CHUNK_TYPE_PROPERTIES,
    Chunk,
    DocumentChunker,
    Page,
    document_id_for,
    generate_id,
)

URL = "https://docs.example.com/components/button"


@pytest.fixture
def chunker():
    """Create a DocumentChunker instance."""
    return DocumentChunker()


@pytest.fixture
def page():
    """A crawled component page with structured API data."""
    return {
        "url": URL,
        "title": "Button",
        "component_type": "Button",
        "markdown": (
            "# Button\n\nA clickable control.\n\n"
            "## Usage\n\nDrop it in a form.\n\n"
            "### Styling\n\nUse the `variant` property.\n\n"
            "```js\nbutton.click()\n```\n"
        ),
        "properties": [
            {"property_name": "label", "type": "string", "description": "Text shown on the button"},
            {"property_name": "disabled", "type": "boolean", "description": "Blocks interaction"},
        ],
        "methods": [
            {
                "signature": "onClick(handler)",
                "description": "Registers a click handler.",
                "parameters": [{"param_name": "handler", "type": "function", "description": "Callback"}],
                "return_type": "void",
                "code_example": "$w('#button1').onClick(() => {});",
            },
            {"signature": "focus()"},
        ],
    }


def test_generate_id_is_stable():
    assert generate_id(URL, "section_0") == generate_id(URL, "section_0")
    assert generate_id(URL, "section_0") != generate_id(URL, "section_1")
    assert len(generate_id(URL, "properties")) == 16


def test_invalid_overlap():
    with pytest.raises(ValueError, match="Overlap"):
        DocumentChunker(chunk_size=100, overlap=100)


class TestProcessPage:
    """Tests for process_page."""

    def test_chunk_types_and_order(self, chunker, page):
        chunks = chunker.process_page(page)
        types = [c.chunk_type for c in chunks]
        assert types[0] == CHUNK_TYPE_PROPERTIES
        assert types[1:3] == [CHUNK_TYPE_METHOD, CHUNK_TYPE_METHOD]
        assert set(types[3:]) == {CHUNK_TYPE_DOCUMENTATION}
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert {c.document_id for c in chunks} == {document_id_for(URL)}

    def test_rechunking_gives_identical_ids(self, chunker, page):
        first = [c.id for c in chunker.process_page(page)]
        second = [c.id for c in DocumentChunker().process_page(page)]
        assert first == second
        assert len(set(first)) == len(first)

    def test_properties_grouped(self, chunker, page):
        chunk = chunker.process_page(page)[0]
        assert chunk.id == generate_id(URL, CHUNK_TYPE_PROPERTIES)
        assert "## Properties" in chunk.content
        assert "### label" in chunk.content
        assert "- **Type:** boolean" in chunk.content
        assert chunk.metadata["property_names"] == ["label", "disabled"]
        assert chunk.content.startswith("# Button\nComponent Type: Button\nURL: " + URL)

    def test_method_chunk(self, chunker, page):
        chunk = chunker.process_page(page)[1]
        assert chunk.id == generate_id(URL, "onClick(handler)")
        assert chunk.method_signature == "onClick(handler)"
        assert "## Method: onClick(handler)" in chunk.content
        assert "- **handler** (function): Callback" in chunk.content
        assert "### Returns:\nvoid" in chunk.content
        assert "```javascript\n$w('#button1').onClick(() => {});\n```" in chunk.content
        assert chunk.has_code
        assert chunk.has_example
        assert chunk.metadata["method_name"] == "onClick"

    def test_method_without_details(self, chunker, page):
        chunk = chunker.process_page(page)[2]
        assert "No description available" in chunk.content
        assert not chunk.has_example
        assert not chunk.metadata["has_parameters"]

    def test_markdown_sections(self, chunker, page):
        docs = [c for c in chunker.process_page(page) if c.chunk_type == CHUNK_TYPE_DOCUMENTATION]
        assert len(docs) == 3
        assert docs[0].content.startswith("# Button")
        assert docs[1].content.startswith("## Usage")
        assert docs[2].content.startswith("### Styling")
        assert docs[2].has_code
        assert docs[0].id == generate_id(URL, "section_0")

    def test_malformed_entries_skipped(self, chunker):
        chunks = chunker.process_page(
            {"url": URL, "title": "Broken", "properties": [{"type": "string"}], "methods": ["nope", {}]}
        )
        assert chunks == []

    def test_large_section_uses_sliding_window(self):
        chunker = DocumentChunker(chunk_size=10, overlap=2)
        words = " ".join(f"word{i}" for i in range(60))
        chunks = chunker.process_page({"url": URL, "title": "Big", "markdown": words})
        assert len(chunks) > 1
        assert chunks[0].id == generate_id(URL, "section_0_0")
        assert chunks[1].id == generate_id(URL, "section_0_1")
        assert chunks[-1].content.split()[-1] == "word59"
        assert all(len(c.content.split()) <= 10 for c in chunks)

    def test_token_estimate(self, chunker, page):
        for chunk in chunker.process_page(page):
            assert chunk.token_estimate == -(-len(chunk.content) // 4)


class TestSplitting:
    """Tests for the splitting helpers."""

    def test_split_into_sections(self):
        text = "intro\n# A\nalpha\n## B\nbeta\n#### D\ndelta\n"
        sections = DocumentChunker.split_into_sections(text)
        assert sections == ["intro\n", "# A\nalpha\n", "## B\nbeta\n#### D\ndelta\n"]

    def test_sliding_window(self):
        chunker = DocumentChunker(chunk_size=10, overlap=2)
        text = " ".join(f"w{i}" for i in range(26))
        windows = chunker.split_large_text(text)
        assert [w.split()[0] for w in windows] == ["w0", "w8", "w16"]
        assert windows[-1].split()[-1] == "w25"
        assert windows[0].split()[-2:] == windows[1].split()[:2]

    def test_short_text_single_window(self):
        chunker = DocumentChunker(chunk_size=10, overlap=2)
        assert chunker.split_large_text("a b c") == ["a b c"]


class TestProcessPages:
    """Tests for process_pages."""

    def test_stats(self, chunker, page):
        result = chunker.process_pages([page, {"title": "no url"}, Page(url="https://x", markdown="# X\ntext")])
        assert result.stats["total_pages"] == 3
        assert result.stats["skipped_pages"] == 1
        assert result.stats["total_chunks"] == len(result.chunks)
        assert result.stats["chunk_types"][CHUNK_TYPE_METHOD] == 2
        assert result.stats["average_chunks_per_page"] == round(len(result.chunks) / 3, 1)

    def test_chunk_round_trip_through_dict(self, chunker, page):
        chunk = chunker.process_page(page)[1]
        assert Chunk.from_dict(chunk.to_dict()) == chunk
