"""Chunking of crawled documentation pages into retrieval units.

A crawled page carries free-form markdown plus structured API data. Each
kind of content is chunked on its own terms:

- all structured properties of a page become one ``properties`` chunk
- each structured method becomes one ``method`` chunk with a synthesised
  heading, parameter list, return type and code example
- the remaining markdown is split at ``#``..``###`` headings; a section
  whose estimated size exceeds three times the chunk size is cut further with
  a sliding word window of ``chunk_size`` advancing ``chunk_size - overlap``

Chunk ids are derived from the page URL and a position identifier, so
re-chunking an unchanged page yields the same ids.
"""

from collections import Counter
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
import hashlib
import logging
import re
from typing import Any

from seshat.shared.records import estimate_tokens
from seshat.shared.utils.logger import setup_logger

DEFAULT_CHUNK_SIZE = 450  # tokens
DEFAULT_OVERLAP = 68  # ~15% of the chunk size
LARGE_SECTION_FACTOR = 3
ID_LENGTH = 16
PROGRESS_EVERY = 10

CHUNK_TYPE_PROPERTIES = "properties"
CHUNK_TYPE_METHOD = "method"
CHUNK_TYPE_DOCUMENTATION = "documentation"

SECTION_SPLIT = re.compile(r"(?=^#{1,3} )", re.MULTILINE)
CODE_FENCE = "```"

MSG_INVALID_OVERLAP = "Overlap ({overlap}) must be smaller than the chunk size ({chunk_size})"


def generate_id(url: str, identifier: str) -> str:
    """First 16 hex characters of md5(``"{url}_{identifier}"``)."""
    return hashlib.md5(f"{url}_{identifier}".encode(), usedforsecurity=False).hexdigest()[:ID_LENGTH]


def document_id_for(url: str) -> str:
    """Stable document id shared by every chunk of one page."""
    return hashlib.md5(url.encode(), usedforsecurity=False).hexdigest()[:ID_LENGTH]


@dataclass
class Page:
    """A crawled documentation page."""

    url: str
    title: str = ""
    markdown: str = ""
    component_type: str | None = None
    properties: list[Any] = field(default_factory=list)
    methods: list[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Page":
        url = data.get("url") or data.get("source_url") or ""
        if not url:
            msg = "Page has no url"
            raise ValueError(msg)
        return cls(
            url=url,
            title=data.get("title") or "",
            markdown=data.get("markdown") or data.get("content") or "",
            component_type=data.get("component_type"),
            properties=list(data.get("properties") or []),
            methods=list(data.get("methods") or []),
        )


@dataclass
class Chunk:
    """One retrieval unit cut from a page."""

    id: str
    content: str
    source_url: str
    chunk_type: str
    document_id: str
    chunk_index: int = 0
    component_type: str | None = None
    method_signature: str | None = None
    has_code: bool = False
    has_example: bool = False
    token_estimate: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chunk":
        return cls(
            id=data["id"],
            content=data["content"],
            source_url=data.get("source_url", ""),
            chunk_type=data.get("chunk_type", CHUNK_TYPE_DOCUMENTATION),
            document_id=data.get("document_id") or document_id_for(data.get("source_url", "")),
            chunk_index=data.get("chunk_index", 0),
            component_type=data.get("component_type"),
            method_signature=data.get("method_signature"),
            has_code=data.get("has_code", False),
            has_example=data.get("has_example", False),
            token_estimate=data.get("token_estimate") or estimate_tokens(data["content"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ChunkingResult:
    chunks: list[Chunk]
    stats: dict[str, Any]


class DocumentChunker:
    """Splits pages into chunks.

    Args:
        chunk_size: Window size in tokens (words for the sliding window).
        overlap: Tokens shared by consecutive windows.
        logger: Logger instance.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
            raise ValueError(MSG_INVALID_OVERLAP.format(overlap=overlap, chunk_size=chunk_size))
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.logger = logger or setup_logger(__name__)

    # ------------------------------------------------------------------
    # Page level
    # ------------------------------------------------------------------

    def process_page(self, page: Page | dict[str, Any]) -> list[Chunk]:
        """Chunk one page; chunk indexes follow emission order."""
        if isinstance(page, dict):
            page = Page.from_dict(page)
        context = self._page_context(page)
        doc_id = document_id_for(page.url)
        chunks: list[Chunk] = []

        if page.properties:
            chunk = self._property_chunk(page, context, doc_id)
            if chunk is not None:
                chunks.append(chunk)

        for position, method in enumerate(page.methods):
            chunk = self._method_chunk(page, method, position, context, doc_id)
            if chunk is not None:
                chunks.append(chunk)

        if page.markdown:
            chunks.extend(self._markdown_chunks(page, doc_id))

        for index, chunk in enumerate(chunks):
            chunk.chunk_index = index
        return chunks

    def process_pages(self, pages: Iterable[Page | dict[str, Any]]) -> ChunkingResult:
        """Chunk many pages; pages that cannot be parsed are skipped."""
        page_list = list(pages)
        all_chunks: list[Chunk] = []
        chunk_types: Counter[str] = Counter()
        skipped = 0

        for index, page in enumerate(page_list):
            if (index + 1) % PROGRESS_EVERY == 0:
                self.logger.info("Processing page %d/%d", index + 1, len(page_list))
            try:
                page_chunks = self.process_page(page)
            except (ValueError, TypeError, AttributeError) as e:
                skipped += 1
                self.logger.warning("Skipping page %d: %s", index, e)
                continue
            all_chunks.extend(page_chunks)
            chunk_types.update(chunk.chunk_type for chunk in page_chunks)

        total_pages = len(page_list)
        stats = {
            "total_pages": total_pages,
            "skipped_pages": skipped,
            "total_chunks": len(all_chunks),
            "average_chunks_per_page": round(len(all_chunks) / total_pages, 1) if total_pages else 0.0,
            "chunk_types": dict(chunk_types),
        }
        self.logger.info(
            "Chunked %d pages into %d chunks",
            total_pages,
            len(all_chunks),
            extra={"pages_processed": total_pages, "chunks_created": len(all_chunks)},
        )
        return ChunkingResult(chunks=all_chunks, stats=stats)

    # ------------------------------------------------------------------
    # Structured entries
    # ------------------------------------------------------------------

    @staticmethod
    def _page_context(page: Page) -> str:
        return f"# {page.title}\nComponent Type: {page.component_type or 'Documentation'}\nURL: {page.url}".strip()

    def _property_chunk(self, page: Page, context: str, doc_id: str) -> Chunk | None:
        lines = [context, "", "## Properties", ""]
        names: list[str] = []
        for prop in page.properties:
            if not isinstance(prop, dict) or not prop.get("property_name"):
                self.logger.warning("Skipping malformed property on %s: %r", page.url, prop)
                continue
            names.append(prop["property_name"])
            lines.append(f"### {prop['property_name']}")
            lines.append(f"- **Type:** {prop.get('type', 'unknown')}")
            lines.append(f"- **Description:** {prop.get('description', '')}")
            lines.append("")
        if not names:
            return None

        content = "\n".join(lines).strip()
        return Chunk(
            id=generate_id(page.url, CHUNK_TYPE_PROPERTIES),
            content=content,
            source_url=page.url,
            chunk_type=CHUNK_TYPE_PROPERTIES,
            document_id=doc_id,
            component_type=page.component_type,
            has_code=CODE_FENCE in content,
            token_estimate=estimate_tokens(content),
            metadata={"title": page.title, "property_count": len(names), "property_names": names},
        )

    def _method_chunk(
        self, page: Page, method: Any, position: int, context: str, doc_id: str
    ) -> Chunk | None:
        if not isinstance(method, dict) or not method.get("signature"):
            self.logger.warning("Skipping malformed method %d on %s", position, page.url)
            return None

        signature = method["signature"]
        parts = [context, "", f"## Method: {signature}", "", method.get("description") or "No description available", ""]

        parameters = [p for p in method.get("parameters") or [] if isinstance(p, dict)]
        if parameters:
            parts.append("### Parameters:")
            parts.extend(
                f"- **{p.get('param_name', '?')}** ({p.get('type', 'any')}): {p.get('description', '')}"
                for p in parameters
            )
            parts.append("")

        return_type = method.get("return_type")
        if return_type:
            parts.extend(["### Returns:", return_type, ""])

        code_example = method.get("code_example")
        if code_example:
            parts.extend(["### Example:", f"{CODE_FENCE}javascript", code_example, CODE_FENCE])

        content = "\n".join(parts).strip()
        return Chunk(
            id=generate_id(page.url, signature),
            content=content,
            source_url=page.url,
            chunk_type=CHUNK_TYPE_METHOD,
            document_id=doc_id,
            component_type=page.component_type,
            method_signature=signature,
            has_code=bool(code_example) or CODE_FENCE in content,
            has_example=bool(code_example),
            token_estimate=estimate_tokens(content),
            metadata={
                "title": page.title,
                "method_name": signature.split("(")[0],
                "has_parameters": bool(parameters),
                "return_type": return_type,
            },
        )

    # ------------------------------------------------------------------
    # Markdown
    # ------------------------------------------------------------------

    @staticmethod
    def split_into_sections(markdown: str) -> list[str]:
        """Split before each ``#``, ``##`` or ``###`` heading; drop blank sections."""
        return [s for s in SECTION_SPLIT.split(markdown) if s.strip()]

    def split_large_text(self, text: str) -> list[str]:
        """Sliding word window; the last window ends at the final word."""
        words = text.split()
        step = self.chunk_size - self.overlap
        windows: list[str] = []
        for start in range(0, len(words), step):
            windows.append(" ".join(words[start : start + self.chunk_size]))
            if start + self.chunk_size >= len(words):
                break
        return windows

    def _markdown_chunks(self, page: Page, doc_id: str) -> list[Chunk]:
        chunks: list[Chunk] = []
        for index, section in enumerate(self.split_into_sections(page.markdown)):
            if estimate_tokens(section) > self.chunk_size * LARGE_SECTION_FACTOR:
                pieces = [(f"section_{index}_{sub}", text, sub) for sub, text in enumerate(self.split_large_text(section))]
            else:
                pieces = [(f"section_{index}", section.strip(), None)]

            for identifier, text, sub_index in pieces:
                if not text.strip():
                    continue
                metadata: dict[str, Any] = {"title": page.title, "section_index": index}
                if sub_index is not None:
                    metadata["sub_index"] = sub_index
                chunks.append(
                    Chunk(
                        id=generate_id(page.url, identifier),
                        content=text,
                        source_url=page.url,
                        chunk_type=CHUNK_TYPE_DOCUMENTATION,
                        document_id=doc_id,
                        component_type=page.component_type,
                        has_code=CODE_FENCE in text,
                        token_estimate=estimate_tokens(text),
                        metadata=metadata,
                    )
                )
        return chunks
