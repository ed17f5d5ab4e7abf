"""Google Cloud Secret Manager lookup for API keys, with environment fallback."""

from functools import lru_cache
import os
from typing import Any

from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)


class SecretManagerClient:
    """Reads secrets from Google Cloud Secret Manager.

    The API client is created on first use. When no project is configured or
    the client cannot be created (no credentials on a developer machine),
    secrets resolve from environment variables instead: ``supabase-key`` is
    read from ``SUPABASE_KEY``.
    """

    def __init__(self, project_id: str | None = None):
        """Initialize the client (the API is not called until first use).

        Args:
            project_id: GCP project ID. Defaults to ``GCP_PROJECT_ID``.
        """
        self.project_id = project_id or os.getenv("GCP_PROJECT_ID")
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.project_id:
                self._client = False
            else:
                try:
                    from google.cloud import secretmanager  # noqa: PLC0415

                    self._client = secretmanager.SecretManagerServiceClient()
                except Exception as e:  # noqa: BLE001
                    logger.warning("Failed to initialize Secret Manager client: %s", e)
                    self._client = False
        return self._client if self._client else None

    @staticmethod
    def _env_name(secret_id: str) -> str:
        return secret_id.upper().replace("-", "_")

    @lru_cache(maxsize=32)  # noqa: B019
    def get_secret(self, secret_id: str, version: str = "latest") -> str | None:
        """Return a secret value, or None when it is not set anywhere.

        Args:
            secret_id: Secret name, e.g. ``"google-ai-key"``.
            version: Secret version (default ``"latest"``).
        """
        client = self._get_client()
        if not client:
            return os.getenv(self._env_name(secret_id))

        name = f"projects/{self.project_id}/secrets/{secret_id}/versions/{version}"
        try:
            response = client.access_secret_version(request={"name": name})
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to retrieve secret %s from Secret Manager: %s", secret_id, e)
            return os.getenv(self._env_name(secret_id))
        payload: str = response.payload.data.decode("UTF-8")
        logger.debug("Retrieved secret %s from Secret Manager", secret_id)
        return payload

    def get_first(self, *secret_ids: str) -> str | None:
        """Return the first secret among ``secret_ids`` that has a value."""
        for secret_id in secret_ids:
            value = self.get_secret(secret_id)
            if value:
                return value
        return None

    def get_supabase_key(self) -> str | None:
        """Service key preferred over the anon key."""
        return self.get_first("supabase-key", "supabase-service-key", "supabase-anon-key")

    def get_google_ai_key(self) -> str | None:
        return self.get_secret("google-ai-key")


_secret_manager: SecretManagerClient | None = None


def get_secret_manager() -> SecretManagerClient:
    """Return the process-wide SecretManagerClient, creating it if needed."""
    global _secret_manager  # noqa: PLW0603
    if _secret_manager is None:
        _secret_manager = SecretManagerClient()
    return _secret_manager
