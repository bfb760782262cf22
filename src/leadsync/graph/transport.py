"""Async Microsoft Graph transport.

Wraps httpx.AsyncClient with bearer-token auth, JSON handling and the
``$batch`` endpoint. Failures are mapped onto the leadsync error taxonomy:

- HTTP 410 Gone -> CursorExpiredError (never retried here)
- any other HTTP error or network failure -> TransientTransportError

Retry with exponential backoff (tenacity) is applied to network failures,
429 and 5xx responses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from src.leadsync.errors import CursorExpiredError, TransientTransportError

logger = structlog.get_logger(__name__)

GRAPH_BATCH_LIMIT = 20


# ── Token providers ─────────────────────────────────────────────────────────


class TokenProvider(ABC):
    """Opaque source of Graph access tokens.

    Implementations raise when the caller is unauthenticated. No retry
    logic is expected from callers.
    """

    @abstractmethod
    async def get_access_token(self) -> str:
        """Return a bearer token valid for Graph calls."""
        ...


class StaticTokenProvider(TokenProvider):
    """Token provider for a token acquired elsewhere (CLI login, tests)."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_access_token(self) -> str:
        return self._token


# ── Batch payloads ──────────────────────────────────────────────────────────


class BatchRequest(BaseModel):
    """One sub-request of a Graph ``$batch`` call."""

    id: str
    method: str = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "method": self.method, "url": self.url}
        if self.headers:
            payload["headers"] = self.headers
        if self.body is not None:
            payload["body"] = self.body
            payload.setdefault("headers", {})["Content-Type"] = "application/json"
        return payload


class BatchResponse(BaseModel):
    """One independently-statused sub-response of a ``$batch`` call."""

    id: str
    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


# ── Transport ───────────────────────────────────────────────────────────────


def _is_retryable(exc: BaseException) -> bool:
    """Retry network failures, throttling and server errors only."""
    if not isinstance(exc, TransientTransportError):
        return False
    code = exc.status_code
    return code is None or code == 429 or code >= 500


_graph_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


class GraphTransport:
    """Authenticated JSON client for Microsoft Graph.

    Args:
        token_provider: Source of bearer tokens.
        base_url: Graph API root, e.g. ``https://graph.microsoft.com/v1.0``.
        timeout: Default request timeout in seconds.
        max_attempts: Attempts per request for retryable failures.
        client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport-backed client here).
        retry_wait: Optional tenacity wait strategy overriding the default
            exponential backoff.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._tokens = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._max_attempts = max(1, max_attempts)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    async def __aenter__(self) -> GraphTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one Graph request and return the decoded JSON body.

        Args:
            method: HTTP method.
            url: Absolute URL (delta/next links) or path relative to base_url.
            json: Optional JSON body.
            headers: Extra headers (e.g. ``ConsistencyLevel``).
            timeout: Per-call timeout in seconds; client default if None.

        Returns:
            Decoded JSON object, or an empty dict for bodiless responses.

        Raises:
            CursorExpiredError: On HTTP 410.
            TransientTransportError: On any other failure, after retries.
        """
        send = self._send.retry_with(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
        )
        return await send(self, method, url, json=json, headers=headers, timeout=timeout)

    @_graph_retry
    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: Any,
        headers: dict[str, str] | None,
        timeout: float | None,
    ) -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if json is not None:
            request_headers["Content-Type"] = "application/json"
        if headers:
            request_headers.update(headers)

        try:
            response = await self._client.request(
                method,
                url,
                headers=request_headers,
                json=json,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as exc:
            logger.warning("graph.network_error", method=method, url=url, error=str(exc))
            raise TransientTransportError(f"[Graph] {method} {url} failed: {exc}") from exc

        if response.status_code == 410:
            logger.warning("graph.delta_expired", url=url)
            raise CursorExpiredError(f"[Graph] delta token expired for {url}")

        if response.is_error:
            logger.error(
                "graph.http_error",
                method=method,
                url=url,
                status_code=response.status_code,
            )
            raise TransientTransportError(
                f"[Graph] {response.status_code} {response.reason_phrase} :: {response.text}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()

    async def get(self, url: str, *, headers: dict[str, str] | None = None, timeout: float | None = None) -> dict[str, Any]:
        return await self.request("GET", url, headers=headers, timeout=timeout)

    async def post(self, url: str, body: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        return await self.request("POST", url, json=body, timeout=timeout)

    async def patch(self, url: str, body: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        return await self.request("PATCH", url, json=body, timeout=timeout)

    async def batch(
        self,
        requests: list[BatchRequest],
        *,
        timeout: float | None = None,
    ) -> list[BatchResponse]:
        """Submit up to GRAPH_BATCH_LIMIT sub-requests in one ``$batch`` call.

        Sub-responses are returned independently statused and keyed by the
        caller-supplied request id. A failure of the batch call itself raises.

        Args:
            requests: Sub-requests, at most GRAPH_BATCH_LIMIT.
            timeout: Per-call timeout in seconds.

        Returns:
            BatchResponse list in the order Graph returned them.
        """
        if not requests:
            return []
        if len(requests) > GRAPH_BATCH_LIMIT:
            raise ValueError(
                f"Graph $batch accepts at most {GRAPH_BATCH_LIMIT} requests, got {len(requests)}"
            )

        data = await self.request(
            "POST",
            "/$batch",
            json={"requests": [r.to_payload() for r in requests]},
            timeout=timeout,
        )
        responses = [BatchResponse.model_validate(r) for r in data.get("responses", [])]
        logger.debug(
            "graph.batch_complete",
            requested=len(requests),
            returned=len(responses),
            failed=sum(1 for r in responses if not r.ok),
        )
        return responses
