"""Async HTTP client for the Doma Poll API event feed."""

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from domadao_indexer.ingestor.models import FeedEvent, PollPage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api-testnet.doma.xyz"
DEFAULT_TIMEOUT_SECONDS = 30.0

POLL_PATH = "/v1/poll"
ACK_PATH = "/v1/poll/ack/{event_id}"
RESET_PATH = "/v1/poll/reset/{event_id}"

AUTH_STATUS_CODES = (401, 403)
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class FeedClientError(Exception):
    """Base exception for feed client errors."""


class TransportError(FeedClientError):
    """Raised for retryable failures (network, timeout, 429/5xx, bad response body)."""


class AuthError(FeedClientError):
    """Raised when the feed rejects the API key (401/403). Not retryable."""


class PollClient:
    """Client for polling, acknowledging and rewinding the Doma event feed.

    Example:
        >>> async with PollClient(base_url, api_key="...") as client:
        ...     page = await client.fetch_batch(after_id=0, batch_size=100)
        ...     await client.acknowledge(page.max_event_id)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        event_types: Sequence[str] | None = None,
        finalized_only: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the poll client.

        Args:
            base_url: Doma API base URL.
            api_key: API key sent in the ``Api-Key`` header.
            timeout: Per-request timeout in seconds.
            event_types: Optional event type filter passed to the feed.
            finalized_only: Only request events from finalized blocks.
            transport: Optional httpx transport (used by tests).
        """
        self._base_url = base_url.rstrip("/")
        self._event_types = tuple(event_types or ())
        self._finalized_only = finalized_only
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Api-Key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

        logger.info(
            "Initialized PollClient with base_url=%s, timeout=%.1fs, event_types=%s",
            self._base_url,
            timeout,
            ",".join(self._event_types) or "*",
        )

    async def __aenter__(self) -> "PollClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, *, params: list[tuple[str, Any]] | None = None
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, params=params)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status in AUTH_STATUS_CODES:
            raise AuthError(f"{method} {path} rejected with HTTP {status}")
        if status in RETRY_STATUS_CODES or status >= 500:
            raise TransportError(f"{method} {path} returned HTTP {status}")
        if status >= 400:
            raise FeedClientError(f"{method} {path} returned HTTP {status}: {response.text[:200]}")
        return response

    def _poll_params(self, after_id: int, batch_size: int) -> list[tuple[str, Any]]:
        params: list[tuple[str, Any]] = [
            ("limit", batch_size),
            ("finalizedOnly", "true" if self._finalized_only else "false"),
            ("since", after_id),
        ]
        params.extend(("eventTypes", event_type) for event_type in self._event_types)
        return params

    async def fetch_batch(self, after_id: int, batch_size: int) -> PollPage:
        """Fetch the next page of events strictly after ``after_id``.

        Args:
            after_id: Last acknowledged event id (the local cursor).
            batch_size: Maximum number of events to return.

        Returns:
            PollPage with events in feed order (ascending event id).

        Raises:
            TransportError: On network failure, timeout, 429/5xx or an
                undecodable response body.
            AuthError: If the API key is rejected.
        """
        response = await self._request("GET", POLL_PATH, params=self._poll_params(after_id, batch_size))
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"Poll response is not valid JSON: {e}") from e
        if not isinstance(body, dict) or not isinstance(body.get("events", []), list):
            raise TransportError("Unexpected poll response shape")

        events: list[FeedEvent] = []
        stale = 0
        for entry in body.get("events", []):
            if not isinstance(entry, dict):
                logger.error("Dropping malformed feed entry: %r", entry)
                continue
            try:
                event = FeedEvent.from_dict(entry)
            except (ValueError, TypeError) as e:
                logger.error("Dropping undecodable feed event: %s (entry=%r)", e, entry)
                continue
            if event.event_id <= after_id:
                stale += 1
                continue
            events.append(event)

        if stale:
            logger.debug("Dropped %d already-acknowledged events (after_id=%d)", stale, after_id)

        has_more = bool(body.get("hasMoreEvents", False))
        if len(events) > batch_size:
            events = events[:batch_size]
            has_more = True

        last_id = body.get("lastId")
        page = PollPage(
            events=tuple(events),
            last_id=int(last_id) if last_id is not None else None,
            has_more=has_more,
        )
        logger.debug(
            "Polled %d events (after_id=%d, last_id=%s, has_more=%s)",
            len(page.events),
            after_id,
            page.last_id,
            page.has_more,
        )
        return page

    async def acknowledge(self, event_id: int) -> bool:
        """Acknowledge all events up to and including ``event_id`` upstream.

        Best-effort: failures are logged and reported as False. The local
        cursor remains the source of truth for resumption.
        """
        try:
            await self._request("POST", ACK_PATH.format(event_id=event_id))
        except FeedClientError as e:
            logger.warning("Failed to acknowledge events upstream (event_id=%d): %s", event_id, e)
            return False
        logger.debug("Acknowledged events upstream (event_id=%d)", event_id)
        return True

    async def reset(self, event_id: int) -> None:
        """Rewind the upstream feed cursor to ``event_id``.

        Raises:
            FeedClientError: If the feed rejects or fails the request.
        """
        await self._request("POST", RESET_PATH.format(event_id=event_id))
        logger.info("Reset upstream poll cursor (event_id=%d)", event_id)
