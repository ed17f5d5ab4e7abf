"""Runtime settings loaded from environment variables.

API keys resolve through :class:`~seshat.shared.utils.secrets.SecretManagerClient`,
so a deployment can keep them in Google Secret Manager while a developer
machine uses plain environment variables.

Environment variables:
    SUPABASE_URL: Supabase project URL
    SUPABASE_KEY / SUPABASE_SERVICE_KEY / SUPABASE_ANON_KEY: API key (first set wins)
    GOOGLE_AI_KEY: Gemini API key
    EMBEDDING_MODEL: Embedding model name (default ``gemini-embedding-001``)
    EMBEDDING_DIMENSIONS: Vector length (default 768)
    CHUNK_SIZE / CHUNK_OVERLAP: Chunker window in tokens (default 450 / 68)
    EMBEDDING_BATCH_SIZE: Chunks per embedding batch (default 10)
    EMBEDDING_RPM: Embedding requests per minute budget (default 100)
    STORE_BATCH_SIZE: Rows per upsert request (default 50)
    MIGRATION_BATCH_SIZE: Records per migration batch (default 50)
    CHECKPOINT_FILE: Migration checkpoint path (default ``.migration_checkpoint.json``)
    REQUEST_TIMEOUT: HTTP timeout in seconds (default 30)
"""

from dataclasses import dataclass
import os

from seshat.shared.errors import ConfigurationError
from seshat.shared.similarity import EMBEDDING_DIMENSIONS
from seshat.shared.utils.secrets import SecretManagerClient, get_secret_manager

DEFAULT_EMBEDDING_MODEL = "gemini-embedding-001"
DEFAULT_CHECKPOINT_FILE = ".migration_checkpoint.json"

MSG_MISSING_SUPABASE = "Supabase credentials missing: set SUPABASE_URL and SUPABASE_KEY"
MSG_MISSING_GOOGLE_KEY = "Embedding API key missing: set GOOGLE_AI_KEY"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ConfigurationError(msg) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        msg = f"{name} must be a number, got {raw!r}"
        raise ConfigurationError(msg) from e


@dataclass
class Settings:
    """All tunable settings of a Seshat run."""

    supabase_url: str | None = None
    supabase_key: str | None = None
    google_ai_key: str | None = None
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = EMBEDDING_DIMENSIONS
    chunk_size: int = 450
    chunk_overlap: int = 68
    embedding_batch_size: int = 10
    embedding_rpm: int = 100
    store_batch_size: int = 50
    migration_batch_size: int = 50
    checkpoint_file: str = DEFAULT_CHECKPOINT_FILE
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls, secrets: SecretManagerClient | None = None) -> "Settings":
        """Build settings from the environment.

        Args:
            secrets: Secret lookup for API keys; defaults to the process-wide client.
        """
        secrets = secrets or get_secret_manager()
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=secrets.get_supabase_key(),
            google_ai_key=secrets.get_google_ai_key(),
            embedding_model=os.getenv("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", EMBEDDING_DIMENSIONS),
            chunk_size=_env_int("CHUNK_SIZE", 450),
            chunk_overlap=_env_int("CHUNK_OVERLAP", 68),
            embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", 10),
            embedding_rpm=_env_int("EMBEDDING_RPM", 100),
            store_batch_size=_env_int("STORE_BATCH_SIZE", 50),
            migration_batch_size=_env_int("MIGRATION_BATCH_SIZE", 50),
            checkpoint_file=os.getenv("CHECKPOINT_FILE", DEFAULT_CHECKPOINT_FILE),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
        )

    def require_supabase(self) -> tuple[str, str]:
        """Return ``(url, key)`` or raise :class:`ConfigurationError`."""
        if not self.supabase_url or not self.supabase_key:
            raise ConfigurationError(MSG_MISSING_SUPABASE)
        return self.supabase_url, self.supabase_key

    def require_google_ai_key(self) -> str:
        if not self.google_ai_key:
            raise ConfigurationError(MSG_MISSING_GOOGLE_KEY)
        return self.google_ai_key
