"""Canonical chunk record stored in the ``document_chunks`` table.

Records arrive in several shapes: embedded chunks from the pipeline, rows read
back from the database and pre-embedded JSON files exported by other tools
(``content`` vs ``text`` vs ``chunk_content``, ``url`` vs ``source_url`` and
so on). :func:`normalize_record` maps all of them to :class:`ChunkRecord`
once, at the boundary, so the store client and migrator only see one type.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
import math
import time
from typing import Any

from seshat.shared.errors import ValidationError
from seshat.shared.similarity import EMBEDDING_DIMENSIONS, validate_embedding

TABLE_NAME = "document_chunks"
DEFAULT_EMBEDDING_MODEL = "gemini-embedding-001"
TITLE_MAX_CHARS = 100


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ChunkRecord:
    """One row of ``document_chunks``.

    ``(document_id, chunk_index)`` is the natural key used for upserts;
    ``id`` is the database row id, present only on rows read back from the
    store and required for updates.
    """

    document_id: str
    chunk_index: int
    chunk_content: str
    embedding: list[float]
    document_title: str = ""
    document_url: str = ""
    chunk_tokens: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    id: int | str | None = None

    def to_row(self) -> dict[str, Any]:
        """Column mapping sent to PostgREST; ``id`` is omitted when unset."""
        row = asdict(self)
        if row["id"] is None:
            del row["id"]
        return row

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkRecord":
        """Build from a row-shaped mapping without validation."""
        return cls(
            document_id=str(data.get("document_id") or ""),
            chunk_index=data.get("chunk_index", 0),
            chunk_content=data.get("chunk_content") or "",
            embedding=data.get("embedding") or [],
            document_title=data.get("document_title") or "",
            document_url=data.get("document_url") or "",
            chunk_tokens=data.get("chunk_tokens") or 0,
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or utc_now_iso(),
            id=data.get("id"),
        )


def coerce_record(value: "ChunkRecord | dict[str, Any]") -> ChunkRecord:
    if isinstance(value, ChunkRecord):
        return value
    if isinstance(value, dict):
        return ChunkRecord.from_dict(value)
    msg = f"Unsupported record type: {type(value).__name__}"
    raise ValidationError(msg)


def validate_for_write(
    record: ChunkRecord,
    index: int,
    dimensions: int = EMBEDDING_DIMENSIONS,
    require_id: bool = False,
) -> ChunkRecord:
    """Check a record before it is sent to the store.

    A blank ``document_id`` is replaced with ``doc_<epoch ms>_<index>``.

    Args:
        record: Record to check.
        index: Position of the record in the caller's batch, used in error
            messages and generated ids.
        dimensions: Required embedding length.
        require_id: Whether the row ``id`` must be present (updates).

    Returns:
        A copy of the record with a normalised embedding.

    Raises:
        ValidationError: If any field is invalid.
    """
    if not isinstance(record.chunk_content, str) or not record.chunk_content.strip():
        msg = f"Record {index}: chunk_content must be a non-empty string"
        raise ValidationError(msg, operation="validate")
    try:
        embedding = validate_embedding(record.embedding, dimensions)
    except ValidationError as e:
        msg = f"Record {index}: {e.message}"
        raise ValidationError(msg, operation="validate") from e
    if isinstance(record.chunk_index, bool) or not isinstance(record.chunk_index, int) or record.chunk_index < 0:
        msg = f"Record {index}: chunk_index must be a non-negative integer"
        raise ValidationError(msg, operation="validate")
    if require_id and record.id in (None, ""):
        msg = f"Record {index}: id is required for update"
        raise ValidationError(msg, operation="validate")

    document_id = record.document_id or f"doc_{int(time.time() * 1000)}_{index}"
    return ChunkRecord(
        document_id=document_id,
        chunk_index=record.chunk_index,
        chunk_content=record.chunk_content,
        embedding=embedding,
        document_title=record.document_title,
        document_url=record.document_url,
        chunk_tokens=record.chunk_tokens or estimate_tokens(record.chunk_content),
        metadata=dict(record.metadata),
        created_at=record.created_at,
        id=record.id,
    )


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def extract_title(content: str | None) -> str:
    """First line of the content, cut to 100 characters."""
    if content:
        return content.split("\n", 1)[0][:TITLE_MAX_CHARS]
    return "Untitled"


def build_metadata(raw: dict[str, Any]) -> dict[str, Any]:
    """Merge the source ``metadata`` object with chunk-level fields."""
    metadata = dict(raw.get("metadata") or {})
    merged = {
        **metadata,
        "original_id": raw.get("id"),
        "source": raw.get("source") or metadata.get("source") or "migration",
        "component_type": raw.get("component_type") or metadata.get("component_type"),
        "chunk_type": raw.get("chunk_type") or metadata.get("chunk_type"),
        "has_code": bool(raw.get("has_code") or metadata.get("has_code")),
        "has_example": bool(raw.get("has_example") or metadata.get("has_example")),
        "method_signature": raw.get("method_signature") or metadata.get("method_signature"),
        "embedding_model": raw.get("embedding_model") or metadata.get("embedding_model") or DEFAULT_EMBEDDING_MODEL,
        "embedding_dimensions": raw.get("embedding_dimensions") or EMBEDDING_DIMENSIONS,
        "vector_norm": raw.get("vector_norm"),
        "migrated_at": utc_now_iso(),
    }
    return merged


def parse_chunk_index(value: Any, position: int) -> int:
    """Coerce an integer-like ``chunk_index`` (``3``, ``3.0``, ``"3"``) to ``int``.

    Raises:
        ValidationError: If the value is negative or not a whole number.
    """
    parsed: int | None = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    if parsed is None or parsed < 0:
        msg = f"Record {position}: chunk_index must be a non-negative integer, got {value!r}"
        raise ValidationError(msg, operation="normalize")
    return parsed


def normalize_record(
    raw: dict[str, Any],
    position: int,
    default_chunk_index: int | None = None,
    dimensions: int = EMBEDDING_DIMENSIONS,
) -> ChunkRecord:
    """Map one externally produced record to a :class:`ChunkRecord`.

    Accepted field variants:

    - document id: ``document_id``, ``id``, ``chunk_id`` (falls back to ``doc_<position>``)
    - title: ``title``, ``document_title`` (falls back to the first content line)
    - url: ``url``, ``source_url``, ``source``
    - content: ``content``, ``text``, ``chunk_content``
    - tokens: ``tokens``, ``chunk_tokens`` (falls back to an estimate)

    Args:
        raw: Source record.
        position: Absolute position of the record in its input file.
        default_chunk_index: ``chunk_index`` used when the record has none.
            Defaults to ``position``.
        dimensions: Required embedding length.

    Raises:
        ValidationError: If the record is not a mapping, has no content,
            carries a ``chunk_index`` that is not a non-negative integer, or
            its embedding is missing, malformed or of the wrong length.
    """
    if not isinstance(raw, dict):
        msg = f"Record {position} is not an object"
        raise ValidationError(msg, operation="normalize")

    embedding = validate_embedding(raw.get("embedding"), dimensions)

    content = _first(raw, "content", "text", "chunk_content") or ""
    if not isinstance(content, str) or not content.strip():
        msg = f"Record {position} has no content"
        raise ValidationError(msg, operation="normalize")

    chunk_index = raw.get("chunk_index")
    if chunk_index is None:
        chunk_index = position if default_chunk_index is None else default_chunk_index
    chunk_index = parse_chunk_index(chunk_index, position)

    return ChunkRecord(
        document_id=str(_first(raw, "document_id", "id", "chunk_id") or f"doc_{position}"),
        chunk_index=chunk_index,
        chunk_content=content,
        embedding=embedding,
        document_title=_first(raw, "title", "document_title") or extract_title(content),
        document_url=_first(raw, "url", "source_url", "source") or "",
        chunk_tokens=_first(raw, "tokens", "chunk_tokens") or estimate_tokens(content),
        metadata=build_metadata(raw),
        created_at=raw.get("created_at") or utc_now_iso(),
    )


def record_from_embedded(embedded: Any, document_title: str = "") -> ChunkRecord:
    """Build a record from an embedded chunk produced by the embedding pipeline."""
    metadata = {
        **embedded.metadata,
        "chunk_id": embedded.id,
        "chunk_type": embedded.chunk_type,
        "component_type": embedded.component_type,
        "method_signature": embedded.method_signature,
        "has_code": embedded.has_code,
        "has_example": embedded.has_example,
        "embedding_model": embedded.embedding_model,
        "embedding_dimensions": len(embedded.embedding),
        "vector_norm": embedded.vector_norm,
    }
    return ChunkRecord(
        document_id=embedded.document_id,
        chunk_index=embedded.chunk_index,
        chunk_content=embedded.content,
        embedding=list(embedded.embedding),
        document_title=document_title or embedded.metadata.get("title") or extract_title(embedded.content),
        document_url=embedded.source_url,
        chunk_tokens=embedded.token_estimate,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )
