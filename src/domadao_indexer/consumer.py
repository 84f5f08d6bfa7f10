"""Poll consumer service.

This module provides the ConsumerService that drives the
poll -> index -> acknowledge loop against the Doma event feed, owning the
poll interval, transport-error backoff, cursor advancement and lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from domadao_indexer.ingestor.feed_client import AuthError, FeedClientError
from domadao_indexer.lock import ConsumerLockLostError

if TYPE_CHECKING:
    from domadao_indexer.indexer.indexer import EventIndexer
    from domadao_indexer.ingestor.feed_client import PollClient
    from domadao_indexer.ingestor.models import FeedEvent
    from domadao_indexer.lock import ConsumerLock
    from domadao_indexer.storage.cursor import CursorStore
    from domadao_indexer.storage.repos import EventStatusDTO

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 100
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_RENEW_SECONDS = 20.0


class ConsumerState(str, Enum):
    """State of the poll consumer."""

    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"
    POLLING = "polling"
    INDEXING = "indexing"
    ACKNOWLEDGING = "acknowledging"
    BACKOFF = "backoff"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ConsumerStats:
    """Statistics for the poll consumer."""

    cycles: int = 0
    events_fetched: int = 0
    events_indexed: int = 0
    events_skipped: int = 0
    events_failed: int = 0
    consecutive_transport_errors: int = 0
    last_poll_time: datetime | None = None
    last_delay_seconds: float = 0.0
    last_error: str | None = None
    last_acknowledged_id: int | None = None


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff for consecutive transport errors.

    ``delay(n)`` is ``base * multiplier ** (n - 1)`` capped at ``max_seconds``.
    """

    base_seconds: float = 1.0
    max_seconds: float = 60.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.base_seconds <= 0 or self.max_seconds < self.base_seconds:
            raise ValueError("Backoff requires 0 < base_seconds <= max_seconds")
        if self.multiplier <= 1:
            raise ValueError("Backoff multiplier must be > 1")

    def delay(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` consecutive failures (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay = self.base_seconds
        for _ in range(attempt - 1):
            delay *= self.multiplier
            if delay >= self.max_seconds:
                return self.max_seconds
        return min(delay, self.max_seconds)


class ConsumerError(Exception):
    """Raised on consumer lifecycle misuse."""


def compute_ack_position(
    events: Iterable[FeedEvent],
    status_map: Mapping[str, EventStatusDTO],
    current: int,
    max_attempts: int,
) -> int:
    """Highest event id the cursor may advance to.

    Walks the events in ascending id order and stops at the first one that
    has not reached a terminal status (processed, or failed with no attempts
    left). The result is never below ``current``.
    """
    position = current
    for event in sorted(events, key=lambda e: e.event_id):
        if event.event_id <= position:
            continue
        status = status_map.get(event.unique_id)
        if status is None or not status.is_terminal(max_attempts):
            break
        position = event.event_id
    return position


StateCallback = Callable[[ConsumerState], None]


class ConsumerService:
    """Orchestrates the poll -> index -> acknowledge loop.

    The cursor is only advanced over a contiguous run of events that reached
    a terminal status, so restarts never skip unresolved work.

    Example:
        ```python
        consumer = ConsumerService(
            cursor_store=SqlCursorStore(db.session_factory),
            poll_client=PollClient(base_url, api_key=key),
            indexer=EventIndexer(db.session_factory),
        )
        await consumer.run()
        ```
    """

    def __init__(
        self,
        *,
        cursor_store: CursorStore,
        poll_client: PollClient,
        indexer: EventIndexer,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        backoff: BackoffPolicy | None = None,
        lock: ConsumerLock | None = None,
        lock_renew_seconds: float = DEFAULT_LOCK_RENEW_SECONDS,
        shutdown_timeout_seconds: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        stale_after_seconds: float | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            cursor_store: Durable cursor store (single writer).
            poll_client: Feed client.
            indexer: Event indexer.
            batch_size: Maximum events per poll.
            poll_interval_seconds: Sleep between cycles.
            backoff: Retry policy for transport errors.
            lock: Optional single-consumer lease, renewed every cycle and on a timer.
            lock_renew_seconds: Period of the background lease renewal; keep it
                well below the lease TTL.
            shutdown_timeout_seconds: How long stop() waits for the in-flight cycle.
            stale_after_seconds: Age of the last successful poll after which
                the consumer reports unhealthy.
            on_state_change: Callback for state changes.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if lock_renew_seconds <= 0:
            raise ValueError("lock_renew_seconds must be positive")
        self._cursor_store = cursor_store
        self._poll_client = poll_client
        self._indexer = indexer
        self._batch_size = batch_size
        self._poll_interval = poll_interval_seconds
        self._backoff = backoff or BackoffPolicy()
        self._lock = lock
        self._lock_renew_seconds = lock_renew_seconds
        self._shutdown_timeout = shutdown_timeout_seconds
        self._stale_after = (
            stale_after_seconds
            if stale_after_seconds is not None
            else max(3 * poll_interval_seconds, self._backoff.max_seconds + poll_interval_seconds)
        )
        self._on_state_change = on_state_change

        self._state = ConsumerState.STOPPED
        self._stats = ConsumerStats()
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._renew_task: asyncio.Task[None] | None = None
        self._fatal_error: BaseException | None = None

    @property
    def state(self) -> ConsumerState:
        """Current consumer state."""
        return self._state

    @property
    def stats(self) -> ConsumerStats:
        """Current consumer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, new_state: ConsumerState) -> None:
        """Update state and notify callback."""
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    def health(self) -> dict[str, Any]:
        """Health snapshot: state, healthy flag and stats."""
        last_poll = self._stats.last_poll_time
        recent = (
            last_poll is not None
            and (datetime.now(UTC) - last_poll).total_seconds() <= self._stale_after
        )
        healthy = (
            self._state
            not in (ConsumerState.ERROR, ConsumerState.STOPPED, ConsumerState.STOPPING)
            and recent
        )
        return {
            "state": self._state.value,
            "healthy": healthy,
            "stats": dataclasses.asdict(self._stats),
        }

    async def start(self) -> None:
        """Acquire the consumer lock (if any) and start the poll loop.

        Raises:
            ConsumerError: If the consumer is already running.
            ConsumerLockError: If another consumer holds the lock.
        """
        if self._state != ConsumerState.STOPPED:
            raise ConsumerError(f"Cannot start consumer: already in state {self._state.value}")

        self._set_state(ConsumerState.STARTING)
        self._stop_event.clear()
        self._fatal_error = None

        try:
            if self._lock is not None:
                await self._lock.acquire()
            cursor = await self._cursor_store.get_last_acknowledged_id()
        except Exception as e:
            self._stats.last_error = str(e)
            await self._release_lock()
            self._set_state(ConsumerState.STOPPED)
            raise

        self._stats.last_acknowledged_id = cursor
        self._task = asyncio.create_task(self._run_loop())
        if self._lock is not None:
            self._renew_task = asyncio.create_task(self._renew_loop())
        self._set_state(ConsumerState.IDLE)
        logger.info(
            "Poll consumer started (cursor=%d, batch_size=%d, interval=%.1fs)",
            cursor,
            self._batch_size,
            self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop the loop, letting the in-flight event transaction finish.

        Waits up to the shutdown timeout for the current cycle, then cancels.
        """
        if self._state == ConsumerState.STOPPED:
            return

        self._set_state(ConsumerState.STOPPING)
        self._stop_event.set()

        if self._task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self._shutdown_timeout)
            except TimeoutError:
                logger.warning(
                    "Poll cycle did not finish within %.1fs, cancelling", self._shutdown_timeout
                )
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        if self._renew_task is not None:
            self._renew_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._renew_task
            self._renew_task = None

        await self._release_lock()
        self._set_state(ConsumerState.STOPPED)
        logger.info("Poll consumer stopped")

    async def run(self) -> None:
        """Start the consumer and run until stopped.

        Raises:
            AuthError: If the feed rejected the API key.
            ConsumerLockLostError: If the consumer lease was lost.
        """
        await self.start()
        try:
            if self._task is not None:
                await self._until_stopped(asyncio.shield(self._task))
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

        if self._fatal_error is not None:
            raise self._fatal_error

    def request_stop(self) -> None:
        """Ask a running consumer to stop; safe to call from a signal handler."""
        self._stop_event.set()

    async def __aenter__(self) -> ConsumerService:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    async def reset_cursor(self, event_id: int) -> None:
        """Rewind the upstream feed and the local cursor to ``event_id``.

        Runs between cycles. Events after ``event_id`` are redelivered and
        skipped by the indexer if already processed.
        """
        async with self._cycle_lock:
            await self._poll_client.reset(event_id)
            await self._cursor_store.reset(event_id)
            self._stats.last_acknowledged_id = event_id
        logger.warning("Poll cursor reset to event_id=%d", event_id)

    async def _release_lock(self) -> None:
        if self._lock is None or not self._lock.held:
            return
        try:
            await self._lock.release()
        except Exception as e:
            logger.warning("Failed to release consumer lock: %s", e)

    async def _renew_loop(self) -> None:
        """Keep the lease alive across fetches, backoff sleeps and long batches."""
        if self._lock is None:
            return
        while not self._stop_event.is_set():
            await self._sleep(self._lock_renew_seconds)
            if self._stop_event.is_set():
                return
            try:
                await self._lock.renew()
            except ConsumerLockLostError as e:
                logger.error("Poll consumer halted: %s", e)
                self._fatal_error = e
                self._stats.last_error = str(e)
                self._set_state(ConsumerState.ERROR)
                self._stop_event.set()
                return
            except Exception as e:
                logger.warning("Consumer lock renewal failed, retrying: %s", e)

    async def _run_loop(self) -> None:
        """Background loop: cycle, then wait for the interval or backoff."""
        while not self._stop_event.is_set():
            try:
                delay = await self.run_cycle()
            except (AuthError, ConsumerLockLostError) as e:
                logger.error("Poll consumer halted: %s", e)
                self._fatal_error = e
                self._stats.last_error = str(e)
                self._set_state(ConsumerState.ERROR)
                return
            except FeedClientError as e:
                self._stats.consecutive_transport_errors += 1
                self._stats.last_error = str(e)
                delay = self._backoff.delay(self._stats.consecutive_transport_errors)
                self._set_state(ConsumerState.BACKOFF)
                logger.warning(
                    "Poll failed (attempt=%d), retrying in %.1fs: %s",
                    self._stats.consecutive_transport_errors,
                    delay,
                    e,
                )
            except Exception as e:
                logger.exception("Poll cycle failed: %s", e)
                self._stats.last_error = str(e)
                self._set_state(ConsumerState.ERROR)
                delay = self._poll_interval

            self._stats.last_delay_seconds = delay
            if delay > 0:
                await self._sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on stop."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def _until_stopped(self, awaitable: Awaitable[T]) -> T | None:
        """Await ``awaitable`` unless a stop is requested first (then None)."""
        task = asyncio.ensure_future(awaitable)
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if task in done:
            return task.result()
        return None

    async def run_cycle(self) -> float:
        """Run one poll -> index -> acknowledge cycle.

        Returns:
            Seconds to wait before the next cycle (0 to poll again at once).

        Raises:
            FeedClientError: If polling failed (AuthError is fatal).
            ConsumerLockLostError: If the consumer lease was lost.
        """
        async with self._cycle_lock:
            if self._lock is not None:
                await self._lock.renew()

            cursor = await self._cursor_store.get_last_acknowledged_id()

            self._set_state(ConsumerState.POLLING)
            page = await self._until_stopped(
                self._poll_client.fetch_batch(cursor, self._batch_size)
            )
            if page is None:
                return 0.0

            self._stats.cycles += 1
            self._stats.consecutive_transport_errors = 0
            self._stats.last_poll_time = datetime.now(UTC)
            self._stats.last_acknowledged_id = cursor

            if not page.events:
                logger.debug("No new events (cursor=%d)", cursor)
                self._set_state(ConsumerState.IDLE)
                return self._poll_interval

            self._stats.events_fetched += len(page.events)
            self._set_state(ConsumerState.INDEXING)
            summary = await self._indexer.index_events(
                page.events, should_continue=lambda: not self._stop_event.is_set()
            )
            self._stats.events_indexed += summary.indexed
            self._stats.events_skipped += summary.skipped
            self._stats.events_failed += summary.failed

            self._set_state(ConsumerState.ACKNOWLEDGING)
            status_map = await self._indexer.get_status_map([e.unique_id for e in page.events])
            position = compute_ack_position(
                page.events, status_map, cursor, self._indexer.max_attempts
            )

            if position > cursor:
                await self._cursor_store.set_last_acknowledged_id(position)
                self._stats.last_acknowledged_id = position
                await self._poll_client.acknowledge(position)
            else:
                logger.warning(
                    "Cursor stalled at %d: first event in batch is unresolved", cursor
                )

            logger.info(
                "Poll cycle done: fetched=%d indexed=%d skipped=%d failed=%d cursor=%d->%d",
                len(page.events),
                summary.indexed,
                summary.skipped,
                summary.failed,
                cursor,
                position,
            )
            self._set_state(ConsumerState.IDLE)

            if page.has_more and position > cursor and not summary.interrupted:
                return 0.0
            return self._poll_interval
