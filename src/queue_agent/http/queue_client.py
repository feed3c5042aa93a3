"""Typed HTTP client for the remote sale queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from queue_agent.orchestrator.models import Job

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_PAGE_LIMIT = 100
QUEUE_PREFIX = "/api/sale-queue"


class QueueClientError(RuntimeError):
    """Base error for queue backend calls."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueueNetworkError(QueueClientError):
    """Backend is unreachable, or the request timed out."""


class QueueApiError(QueueClientError):
    """Backend answered with a non-2xx status."""


class AuthenticationError(QueueApiError):
    """Backend rejected the API key (401)."""


class ForbiddenError(QueueApiError):
    """Backend refused access (403)."""


class NotFoundError(QueueApiError):
    """Requested queue resource does not exist (404)."""


@dataclass(slots=True)
class FailureReport:
    """Backend reply to a failure report."""

    will_retry: bool


@dataclass(slots=True)
class HealthStatus:
    """Backend health check reply."""

    status: str


@dataclass(slots=True)
class QueueItemsPage:
    """One page of queue items."""

    items: list[dict[str, Any]]
    total: int
    page: int
    limit: int


class QueueClient:
    """HTTP wrapper with bearer auth, explicit timeouts and no internal retries.

    Every call is a single attempt; retry policy belongs to the caller.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            transport=transport,
        )

    def fetch_next(self, client_id: str) -> Job | None:
        """Fetch the next job for this client, or ``None`` if the queue is empty."""

        payload = self._request("GET", f"{QUEUE_PREFIX}/next", params={"clientId": client_id})
        item = (payload or {}).get("item")
        if item is None:
            return None
        return Job.from_payload(item)

    def report_success(self, job_id: str) -> None:
        self._request("POST", f"{QUEUE_PREFIX}/{job_id}/complete")

    def report_failure(
        self,
        job_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> FailureReport:
        """Mark a job failed; the backend decides whether it will retry."""

        body: dict[str, Any] = {"errorMessage": message}
        if details is not None:
            body["errorDetails"] = details
        payload = self._request("POST", f"{QUEUE_PREFIX}/{job_id}/fail", json=body)
        return FailureReport(will_retry=bool((payload or {}).get("willRetry", False)))

    def health_check(self) -> HealthStatus:
        payload = self._request("GET", "/api/health")
        return HealthStatus(status=str((payload or {}).get("status", "unknown")))

    def cleanup_stale_jobs(self) -> tuple[int, str]:
        payload = self._request("POST", f"{QUEUE_PREFIX}/cleanup") or {}
        return int(payload.get("cleaned", 0)), str(payload.get("message", ""))

    def list_queue_items(
        self,
        *,
        status: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> QueueItemsPage:
        params: dict[str, Any] = {}
        if status:
            params["status"] = status
        if page:
            params["page"] = page
        if limit:
            params["limit"] = limit
        payload = self._request("GET", QUEUE_PREFIX, params=params or None) or {}
        items = list(payload.get("items") or [])
        return QueueItemsPage(
            items=items,
            total=int(payload.get("total", len(items))),
            page=int(payload.get("page", page or 1)),
            limit=int(payload.get("limit", limit or len(items))),
        )

    def delete_queue_item(self, item_id: str) -> None:
        self._request("DELETE", f"{QUEUE_PREFIX}/{item_id}")

    def update_queue_item_status(self, item_id: str, status: str) -> None:
        self._request("PATCH", f"{QUEUE_PREFIX}/{item_id}", json={"status": status})

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> QueueClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = self._client.request(method, endpoint, params=params, json=json)
        except httpx.TimeoutException as exc:
            logger.error("API request timed out: %s %s", method, endpoint)
            raise QueueNetworkError(
                f"Network error: request to {self.base_url} timed out.",
            ) from exc
        except httpx.TransportError as exc:
            logger.error("API request failed: %s %s: %s", method, endpoint, exc)
            raise QueueNetworkError(
                f"Network error: Failed to connect to {self.base_url}. "
                "Please check your API URL and internet connection.",
            ) from exc

        logger.debug("%s %s -> %s", method, endpoint, response.status_code)
        if not response.is_success:
            raise _api_error(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise QueueApiError(
                f"Malformed JSON response from {endpoint}",
                status_code=response.status_code,
            ) from exc


def _api_error(response: httpx.Response) -> QueueApiError:
    message = _error_message(response)
    status = response.status_code
    if status == 401:
        return AuthenticationError(
            f"Authentication failed: {message}. Please check your API key in settings.",
            status_code=status,
        )
    if status == 403:
        return ForbiddenError(f"Access forbidden: {message}", status_code=status)
    if status == 404:
        return NotFoundError(f"Not found: {message}", status_code=status)
    return QueueApiError(message, status_code=status)


def _error_message(response: httpx.Response) -> str:
    fallback = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or fallback
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or fallback)
    return str(body) if body else fallback
