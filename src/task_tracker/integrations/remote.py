"""HTTP client for the authoritative task store."""

import logging

import httpx

from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.db.models import PendingMutation

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """Raised when the remote store rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Raised when the remote store is unreachable, times out, or fails server-side."""


class RemoteStore:
    """Thin wrapper over an ``httpx.Client`` that classifies failures.

    Pass ``client`` to reuse an existing client (e.g. a Starlette
    ``TestClient``); otherwise one is built for ``base_url``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        if client is None:
            if not base_url:
                raise ValueError("RemoteStore needs a base_url or a client")
            client = httpx.Client(base_url=base_url, timeout=timeout)
        self.client = client

    def close(self):
        self.client.close()

    def ping(self) -> bool:
        """Whether the store answers its health check."""
        try:
            response = self.client.get("/api/health")
        except httpx.HTTPError as e:
            logger.debug("Remote store unreachable: %s", e)
            return False
        return response.status_code == 200

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        """Send one request; returns the decoded JSON body."""
        try:
            response = self.client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientRemoteError(
                f"{method} {path} returned {response.status_code}", response.status_code
            )
        if response.status_code >= 400:
            message = _error_message(response)
            if response.status_code == 404:
                raise NotFoundError(_task_id_from_path(path))
            if response.status_code in (400, 409, 422):
                raise ValidationError(message)
            raise RemoteError(message, response.status_code)
        return response.json()

    def replay(self, mutation: PendingMutation) -> dict:
        return self.request(mutation.method, mutation.path, mutation.payload)


def _task_id_from_path(path: str) -> str:
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[:2] == ["api", "tasks"]:
        return parts[2]
    return path


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return str(body)
