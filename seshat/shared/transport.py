"""HTTP transport for the Supabase (PostgREST) vector database.

:class:`VectorBackend` is the narrow interface the store client needs: RPC
calls, upserts, deletes, filtered selects and counts. :class:`SupabaseTransport`
implements it over a ``requests.Session`` and maps failures to the error
taxonomy in :mod:`seshat.shared.errors`; it never retries on its own.
"""

from abc import ABC, abstractmethod
from typing import Any

import requests

from seshat.shared.errors import RateLimitError, RemoteServiceError, RemoteTimeoutError
from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_TIMEOUT = 30
REST_PATH = "/rest/v1"

MSG_REQUEST_FAILED = "Supabase request failed ({status}): {error}"
MSG_TIMEOUT = "Supabase request timed out after {timeout}s: {method} {path}"
MSG_NETWORK = "Supabase connection failed: {error}"


class VectorBackend(ABC):
    """Operations the vector store client performs against the database."""

    @abstractmethod
    def rpc(self, function: str, params: dict[str, Any]) -> Any:
        """Call a stored procedure and return its decoded result."""

    @abstractmethod
    def upsert(self, table: str, rows: list[dict[str, Any]], on_conflict: str) -> list[dict[str, Any]]:
        """Insert rows, merging on ``on_conflict`` columns; returns stored rows."""

    @abstractmethod
    def delete(self, table: str, column: str, values: list[Any]) -> list[dict[str, Any]]:
        """Delete rows whose ``column`` is in ``values``; returns deleted rows."""

    @abstractmethod
    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        """Return rows matching equality ``filters``, optionally ordered."""

    @abstractmethod
    def count(self, table: str) -> int:
        """Exact row count of ``table``."""

    def close(self) -> None:  # noqa: B027
        """Release transport resources."""


def parse_content_range(header: str | None) -> int:
    """Total from a ``Content-Range`` header such as ``0-24/25`` or ``*/0``."""
    if not header or "/" not in header:
        return 0
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


def _in_filter(values: list[Any]) -> str:
    quoted = []
    for value in values:
        text = str(value)
        quoted.append(f'"{text}"' if any(c in text for c in ',()" ') else text)
    return f"in.({','.join(quoted)})"


class SupabaseTransport(VectorBackend):
    """PostgREST client for a Supabase project.

    Args:
        url: Project URL, e.g. ``https://abc.supabase.co``.
        key: Service-role or anon key, sent as ``apikey`` and bearer token.
        timeout: Per-request timeout in seconds.
        session: Optional pre-built session (tests inject a mock).
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.base_url = url.rstrip("/") + REST_PATH
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise RemoteTimeoutError(MSG_TIMEOUT.format(timeout=self.timeout, method=method, path=path)) from e
        except requests.ConnectionError as e:
            raise RemoteServiceError(MSG_NETWORK.format(error=e), code="network") from e

        if response.status_code >= 400:
            self._raise_for_response(response)
        return response

    @staticmethod
    def _raise_for_response(response: requests.Response) -> None:
        message = response.reason or "error"
        code = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or body.get("msg") or message
            code = body.get("code")
            if body.get("details"):
                message = f"{message} ({body['details']})"
        elif response.text:
            message = response.text[:500]

        status = response.status_code
        error_message = MSG_REQUEST_FAILED.format(status=status, error=message)
        if status == 429:
            raise RateLimitError(error_message, status_code=status, code=code)
        raise RemoteServiceError(error_message, status_code=status, code=code)

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if not response.content:
            return None
        return response.json()

    def rpc(self, function: str, params: dict[str, Any]) -> Any:
        response = self._request("POST", f"rpc/{function}", json_body=params)
        return self._json(response)

    def upsert(self, table: str, rows: list[dict[str, Any]], on_conflict: str) -> list[dict[str, Any]]:
        response = self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json_body=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return self._json(response) or []

    def delete(self, table: str, column: str, values: list[Any]) -> list[dict[str, Any]]:
        response = self._request(
            "DELETE",
            table,
            params={column: _in_filter(values)},
            headers={"Prefer": "return=representation"},
        )
        return self._json(response) or []

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order:
            params["order"] = order
        response = self._request("GET", table, params=params)
        return self._json(response) or []

    def count(self, table: str) -> int:
        response = self._request(
            "HEAD",
            table,
            params={"select": "id"},
            headers={"Prefer": "count=exact", "Range": "0-0"},
        )
        return parse_content_range(response.headers.get("Content-Range"))

    def close(self) -> None:
        self.session.close()
