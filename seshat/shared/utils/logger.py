"""Structured logging for ingestion, migration and retrieval runs.

Two output modes share one redaction rule set:

- ``SimpleFormatter``: human-readable lines for local runs (default)
- ``StructuredFormatter``: one JSON object per record, built on python-json-logger,
  selected with ``LOG_FORMAT=json``

Run-scoped fields such as ``job_id`` and ``operation`` are attached with
:class:`JobLoggerAdapter`; numeric fields such as ``chunks_embedded`` or
``latency_ms`` are lifted from ``extra`` so log aggregators can chart them.

Example:
    >>> from seshat.shared.utils.logger import setup_logger, get_job_logger
    >>>
    >>> logger = setup_logger("seshat.migrate")
    >>> logger.info("Batch stored", extra={"batch_id": 3, "records_migrated": 50})
    >>>
    >>> job_logger = get_job_logger(logger, job_id="migrate_1700000000", source="embeddings.json")
    >>> job_logger.info("Resuming from checkpoint")
"""

from collections.abc import MutableMapping
from datetime import UTC, datetime
import logging
import os
import re
from typing import Any, ClassVar, cast

from pythonjsonlogger.json import JsonFormatter

SENSITIVE_KEYWORDS = [
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "authorization",
    "credential",
    "key",
    "bearer",
    "service_role",
]

_KEYWORDS = "|".join(SENSITIVE_KEYWORDS)

REDACTION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(rf"\b({_KEYWORDS})(\s+is\s+)(\S+)", re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(rf"\b({_KEYWORDS})(\s*:\s+)(\S+)", re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(rf"\b({_KEYWORDS})(\s*=\s*)([^\s&]+)", re.IGNORECASE), r"\1\2[REDACTED]"),
]

CONTEXT_FIELDS = ["job_id", "source", "operation", "batch_id", "document_id", "chunk_id"]

METRIC_FIELDS = [
    "pages_processed",
    "chunks_created",
    "chunks_embedded",
    "records_migrated",
    "records_skipped",
    "records_failed",
    "latency_ms",
    "duration_ms",
    "retry_attempt",
    "delay_seconds",
    "cache_hits",
    "cache_misses",
]

ERROR_FIELDS = ["error_type", "error_message", "status_code"]


def redact(message: str) -> str:
    """Replace values that follow sensitive keywords with ``[REDACTED]``."""
    for pattern, replacement in REDACTION_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class StructuredFormatter(JsonFormatter):
    """JSON formatter with a consistent field schema.

    Example output:
        {
            "timestamp": "2026-01-30T10:15:30.123456+00:00",
            "severity": "INFO",
            "message": "Batch 3/12 stored",
            "logger": "seshat.ingestion.migrator",
            "module": "migrator",
            "funcName": "_process_batch",
            "lineno": 212,
            "job_id": "migrate_1700000000",
            "batch_id": 3,
            "records_migrated": 50
        }
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Populate the JSON payload for one record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["severity"] = record.levelname
        log_record["logger"] = record.name
        if "message" in log_record:
            log_record["message"] = redact(str(log_record["message"]))

        log_record["module"] = record.module
        log_record["funcName"] = record.funcName
        log_record["lineno"] = record.lineno

        for field in CONTEXT_FIELDS + METRIC_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value

        for field in ERROR_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = redact(value) if isinstance(value, str) else value

        keys_to_remove = [k for k, v in log_record.items() if v is None]
        for key in keys_to_remove:
            del log_record[key]


class SimpleFormatter(logging.Formatter):
    """Plain text formatter with secret redaction."""

    DEFAULT_FORMAT: ClassVar[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self, fmt: str | None = None, **kwargs: Any) -> None:
        super().__init__(fmt or self.DEFAULT_FORMAT, **kwargs)

    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


class JobLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps every message with run context.

    Example:
        >>> base_logger = setup_logger("seshat.pipeline")
        >>> job_logger = JobLoggerAdapter(base_logger, job_id="ingest_42", source="pages.json")
        >>> job_logger.info("Chunking started")
    """

    def __init__(
        self,
        logger: logging.Logger,
        job_id: str,
        source: str | None = None,
        **extra_context: Any,
    ) -> None:
        context = {"job_id": job_id, "source": source, **extra_context}
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge the adapter context into the call's ``extra``; call-site keys win."""
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def with_operation(self, operation: str) -> "JobLoggerAdapter":
        """Return a child adapter carrying an ``operation`` field."""
        current = dict(self.extra or {})
        job_id = cast("str", current.pop("job_id", "unknown"))
        source = cast("str | None", current.pop("source", None))
        current["operation"] = operation
        return JobLoggerAdapter(self.logger, job_id=job_id, source=source, **current)


def _json_requested() -> bool:
    return os.getenv("LOG_FORMAT", "").lower() == "json"


def setup_logger(
    name: str,
    level: int | None = None,
    json_output: bool | None = None,
) -> logging.Logger:
    """Create or fetch a configured logger.

    Args:
        name: Logger name (typically ``__name__``).
        level: Logging level. Defaults to ``LOG_LEVEL`` or INFO.
        json_output: Force JSON (True) or text (False). If None, JSON is used
            when ``LOG_FORMAT=json``.

    Returns:
        The configured logger. Calling again with the same name returns the
        same instance without adding handlers.
    """
    if level is None:
        level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(name)
    if logger.handlers:
        if logger.level != level:
            logger.setLevel(level)
        return logger

    if json_output is None:
        json_output = _json_requested()

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_output else SimpleFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_job_logger(
    base_logger: logging.Logger,
    job_id: str,
    source: str | None = None,
    **extra_context: Any,
) -> JobLoggerAdapter:
    """Create a run-scoped logger adapter.

    Example:
        >>> logger = setup_logger("seshat.migrate")
        >>> job_logger = get_job_logger(logger, job_id="migrate_1", source="embeddings.json")
        >>> job_logger.info("Batch stored", extra={"batch_id": 1, "records_migrated": 50})
    """
    return JobLoggerAdapter(base_logger, job_id=job_id, source=source, **extra_context)
