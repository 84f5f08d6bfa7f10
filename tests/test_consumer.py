"""Tests for the poll consumer service."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from domadao_indexer.consumer import (
    BackoffPolicy,
    ConsumerError,
    ConsumerService,
    ConsumerState,
    compute_ack_position,
)
from domadao_indexer.indexer.indexer import EventIndexer
from domadao_indexer.ingestor.feed_client import AuthError, PollClient, TransportError
from domadao_indexer.ingestor.models import PollPage
from domadao_indexer.lock import ConsumerLock, ConsumerLockError, ConsumerLockLostError
from domadao_indexer.storage.repos import EventStatusDTO, PollEventRepository
from tests.factories import ExpiringRedis, contribution_made, make_event, pool_created


class InMemoryCursorStore:
    """Cursor store kept in memory."""

    def __init__(self, value: int = 0) -> None:
        self.value = value

    async def get_last_acknowledged_id(self) -> int:
        return self.value

    async def set_last_acknowledged_id(self, event_id: int) -> bool:
        if event_id <= self.value:
            return False
        self.value = event_id
        return True

    async def reset(self, event_id: int) -> None:
        self.value = event_id


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cursor_store() -> InMemoryCursorStore:
    return InMemoryCursorStore()


@pytest.fixture
def mock_poll_client() -> AsyncMock:
    """Create a mock poll client returning empty pages."""
    client = AsyncMock(spec=PollClient)
    client.fetch_batch = AsyncMock(return_value=PollPage(events=()))
    client.acknowledge = AsyncMock(return_value=True)
    client.reset = AsyncMock()
    return client


@pytest.fixture
def indexer(session_factory) -> EventIndexer:
    return EventIndexer(session_factory, max_attempts=3)


@pytest.fixture
def consumer(cursor_store, mock_poll_client, indexer) -> ConsumerService:
    return ConsumerService(
        cursor_store=cursor_store,
        poll_client=mock_poll_client,
        indexer=indexer,
        batch_size=10,
        poll_interval_seconds=5.0,
        backoff=BackoffPolicy(base_seconds=0.01, max_seconds=0.04),
        shutdown_timeout_seconds=1.0,
    )


def _status(unique_id: str, event_id: int, status: str, retry_count: int = 0) -> EventStatusDTO:
    return EventStatusDTO(
        unique_id=unique_id, event_id=event_id, processing_status=status, retry_count=retry_count
    )


async def _until(predicate) -> None:
    while not predicate():
        await asyncio.sleep(0.01)


# ============================================================================
# Pure helpers
# ============================================================================


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_grows_until_cap(self) -> None:
        policy = BackoffPolicy(base_seconds=1.0, max_seconds=60.0, multiplier=2.0)

        delays = [policy.delay(n) for n in range(1, 10)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0, 60.0]

    def test_large_attempt_is_capped(self) -> None:
        assert BackoffPolicy().delay(10_000) == 60.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_seconds": 0},
            {"base_seconds": 10, "max_seconds": 5},
            {"multiplier": 1.0},
        ],
    )
    def test_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

    def test_invalid_attempt(self) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy().delay(0)


class TestComputeAckPosition:
    """Tests for the contiguous-terminal cursor rule."""

    def test_advances_over_terminal_run(self) -> None:
        events = [make_event(i, "POOL_CREATED") for i in (11, 12, 13)]
        statuses = {
            "evt-11": _status("evt-11", 11, "processed"),
            "evt-12": _status("evt-12", 12, "failed", retry_count=3),
            "evt-13": _status("evt-13", 13, "processed"),
        }

        assert compute_ack_position(events, statuses, 10, max_attempts=3) == 13

    def test_stops_at_first_unresolved(self) -> None:
        events = [make_event(i, "POOL_CREATED") for i in (10, 11, 12)]
        statuses = {
            "evt-10": _status("evt-10", 10, "processed"),
            "evt-11": _status("evt-11", 11, "failed", retry_count=1),
            "evt-12": _status("evt-12", 12, "processed"),
        }

        assert compute_ack_position(events, statuses, 9, max_attempts=3) == 10

    def test_missing_status_blocks(self) -> None:
        events = [make_event(5, "POOL_CREATED")]

        assert compute_ack_position(events, {}, 4, max_attempts=3) == 4

    def test_unordered_input(self) -> None:
        events = [make_event(i, "POOL_CREATED") for i in (3, 1, 2)]
        statuses = {f"evt-{i}": _status(f"evt-{i}", i, "processed") for i in (1, 2, 3)}

        assert compute_ack_position(events, statuses, 0, max_attempts=3) == 3

    def test_never_moves_backwards(self) -> None:
        events = [make_event(3, "POOL_CREATED")]
        statuses = {"evt-3": _status("evt-3", 3, "processed")}

        assert compute_ack_position(events, statuses, 7, max_attempts=3) == 7


# ============================================================================
# Single cycles
# ============================================================================


class TestRunCycle:
    """Tests for ConsumerService.run_cycle."""

    @pytest.mark.asyncio
    async def test_empty_page(self, consumer, mock_poll_client, cursor_store) -> None:
        delay = await consumer.run_cycle()

        assert delay == 5.0
        assert cursor_store.value == 0
        assert consumer.stats.cycles == 1
        assert consumer.stats.last_poll_time is not None
        mock_poll_client.fetch_batch.assert_awaited_once_with(0, 10)
        mock_poll_client.acknowledge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_indexes_and_acknowledges(self, consumer, mock_poll_client, cursor_store) -> None:
        mock_poll_client.fetch_batch.return_value = PollPage(
            events=(pool_created(1), contribution_made(2, "250"))
        )

        await consumer.run_cycle()

        assert cursor_store.value == 2
        assert consumer.stats.events_indexed == 2
        assert consumer.stats.last_acknowledged_id == 2
        mock_poll_client.acknowledge.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_hex_provenance_event_is_stored_before_ack(
        self, cursor_store, indexer, session_factory
    ) -> None:
        first = {**pool_created(1).event_data, "blockNumber": "0x1a"}
        second = make_event(2, "NAME_TOKEN_MINTED").event_data
        acked: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.startswith("/v1/poll/ack/"):
                acked.append(int(request.url.path.rsplit("/", 1)[1]))
                return httpx.Response(200, json={})
            return httpx.Response(200, json={"events": [first, second]})

        async with PollClient(
            "https://api.example.test", api_key="k", transport=httpx.MockTransport(handler)
        ) as client:
            consumer = ConsumerService(
                cursor_store=cursor_store, poll_client=client, indexer=indexer
            )
            await consumer.run_cycle()

        async with session_factory() as session:
            stored = await PollEventRepository(session).get_by_unique_id("evt-1")

        assert stored is not None
        assert stored.block_number == 26
        assert stored.processing_status == "processed"
        assert cursor_store.value == 2
        assert acked == [2]

    @pytest.mark.asyncio
    async def test_cursor_stalls_at_failed_event(
        self, consumer, mock_poll_client, cursor_store
    ) -> None:
        cursor_store.value = 9
        mock_poll_client.fetch_batch.return_value = PollPage(
            events=(
                pool_created(10),
                contribution_made(11, "1", pool_address="0x" + "9" * 40),
                pool_created(12, pool_address="0x" + "8" * 40),
            )
        )

        await consumer.run_cycle()

        assert cursor_store.value == 10
        assert consumer.stats.events_failed == 1
        mock_poll_client.acknowledge.assert_awaited_once_with(10)

    @pytest.mark.asyncio
    async def test_exhausted_event_unblocks_cursor(
        self, consumer, mock_poll_client, cursor_store
    ) -> None:
        cursor_store.value = 10
        mock_poll_client.fetch_batch.return_value = PollPage(
            events=(
                contribution_made(11, "1", pool_address="0x" + "9" * 40),
                pool_created(12, pool_address="0x" + "8" * 40),
            )
        )

        await consumer.run_cycle()
        await consumer.run_cycle()
        assert cursor_store.value == 10

        await consumer.run_cycle()

        assert cursor_store.value == 12
        assert consumer.stats.events_failed == 3

    @pytest.mark.asyncio
    async def test_has_more_polls_again_immediately(
        self, consumer, mock_poll_client
    ) -> None:
        mock_poll_client.fetch_batch.return_value = PollPage(
            events=(pool_created(1),), has_more=True
        )

        assert await consumer.run_cycle() == 0.0

    @pytest.mark.asyncio
    async def test_has_more_without_progress_waits(self, consumer, mock_poll_client) -> None:
        mock_poll_client.fetch_batch.return_value = PollPage(
            events=(contribution_made(1, "1"),), has_more=True
        )

        assert await consumer.run_cycle() == 5.0

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, consumer, mock_poll_client) -> None:
        mock_poll_client.fetch_batch.side_effect = TransportError("HTTP 503")

        with pytest.raises(TransportError):
            await consumer.run_cycle()

    @pytest.mark.asyncio
    async def test_renews_lock(self, cursor_store, mock_poll_client, indexer) -> None:
        lock = AsyncMock(spec=ConsumerLock)
        consumer = ConsumerService(
            cursor_store=cursor_store, poll_client=mock_poll_client, indexer=indexer, lock=lock
        )

        await consumer.run_cycle()

        lock.renew.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reset_cursor(self, consumer, mock_poll_client, cursor_store) -> None:
        cursor_store.value = 50

        await consumer.reset_cursor(20)

        mock_poll_client.reset.assert_awaited_once_with(20)
        assert cursor_store.value == 20
        assert consumer.stats.last_acknowledged_id == 20


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """Tests for start/stop/run and the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, consumer) -> None:
        states: list[ConsumerState] = []
        consumer._on_state_change = states.append

        await consumer.start()
        assert consumer.is_running
        await consumer.stop()

        assert consumer.state == ConsumerState.STOPPED
        assert not consumer.is_running
        assert states[0] == ConsumerState.STARTING
        assert states[-1] == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, consumer) -> None:
        await consumer.start()
        try:
            with pytest.raises(ConsumerError):
                await consumer.start()
        finally:
            await consumer.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, consumer) -> None:
        await consumer.stop()
        assert consumer.state == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_request_stop_ends_run(self, consumer, mock_poll_client) -> None:
        polled = asyncio.Event()

        async def fetch(after_id: int, batch_size: int) -> PollPage:
            polled.set()
            return PollPage(events=())

        mock_poll_client.fetch_batch.side_effect = fetch
        run_task = asyncio.create_task(consumer.run())
        await asyncio.wait_for(polled.wait(), timeout=1.0)

        consumer.request_stop()
        await asyncio.wait_for(run_task, timeout=1.0)

        assert consumer.state == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_interrupts_hanging_poll(self, consumer, mock_poll_client) -> None:
        polled = asyncio.Event()

        async def fetch(after_id: int, batch_size: int) -> PollPage:
            polled.set()
            await asyncio.sleep(3600)
            return PollPage(events=())

        mock_poll_client.fetch_batch.side_effect = fetch
        await consumer.start()
        await asyncio.wait_for(polled.wait(), timeout=1.0)

        await asyncio.wait_for(consumer.stop(), timeout=1.0)

        assert consumer.state == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_context_manager(self, consumer) -> None:
        async with consumer:
            assert consumer.is_running
        assert consumer.state == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_auth_error_is_fatal(self, consumer, mock_poll_client) -> None:
        mock_poll_client.fetch_batch.side_effect = AuthError("HTTP 401")

        with pytest.raises(AuthError):
            await asyncio.wait_for(consumer.run(), timeout=1.0)

        assert consumer.state == ConsumerState.STOPPED
        assert mock_poll_client.fetch_batch.await_count == 1
        assert consumer.stats.last_error == "HTTP 401"

    @pytest.mark.asyncio
    async def test_transport_errors_back_off_then_recover(
        self, consumer, mock_poll_client
    ) -> None:
        recovered = asyncio.Event()
        calls = 0

        async def fetch(after_id: int, batch_size: int) -> PollPage:
            nonlocal calls
            calls += 1
            if calls <= 3:
                raise TransportError(f"HTTP 503 ({calls})")
            recovered.set()
            return PollPage(events=())

        mock_poll_client.fetch_batch.side_effect = fetch
        delays: list[float] = []
        original_sleep = consumer._sleep

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)
            await original_sleep(seconds)

        consumer._sleep = record_sleep

        await consumer.start()
        await asyncio.wait_for(recovered.wait(), timeout=2.0)
        await consumer.stop()

        assert delays[:3] == [0.01, 0.02, 0.04]
        assert consumer.stats.consecutive_transport_errors == 0
        assert consumer.stats.last_error == "HTTP 503 (3)"

    @pytest.mark.asyncio
    async def test_storage_error_sets_error_state(self, mock_poll_client, indexer) -> None:
        failed = asyncio.Event()

        class FlakyStore(InMemoryCursorStore):
            calls = 0

            async def get_last_acknowledged_id(self) -> int:
                self.calls += 1
                if self.calls > 1:
                    failed.set()
                    raise RuntimeError("database unavailable")
                return self.value

        consumer = ConsumerService(
            cursor_store=FlakyStore(),
            poll_client=mock_poll_client,
            indexer=indexer,
            poll_interval_seconds=3600,
        )

        await consumer.start()
        await asyncio.wait_for(failed.wait(), timeout=1.0)

        assert consumer.state == ConsumerState.ERROR
        assert consumer.stats.last_error == "database unavailable"
        assert consumer.health()["healthy"] is False
        await consumer.stop()


class TestConsumerLock:
    """Tests for the consumer lease integration."""

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, cursor_store, mock_poll_client, indexer) -> None:
        lock = AsyncMock(spec=ConsumerLock)
        lock.acquire.side_effect = ConsumerLockError("held")
        lock.held = False
        consumer = ConsumerService(
            cursor_store=cursor_store, poll_client=mock_poll_client, indexer=indexer, lock=lock
        )

        with pytest.raises(ConsumerLockError):
            await consumer.start()

        assert consumer.state == ConsumerState.STOPPED
        mock_poll_client.fetch_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_lock_is_fatal(self, cursor_store, mock_poll_client, indexer) -> None:
        lock = AsyncMock(spec=ConsumerLock)
        lock.renew.side_effect = ConsumerLockLostError("lost")
        lock.held = False
        consumer = ConsumerService(
            cursor_store=cursor_store, poll_client=mock_poll_client, indexer=indexer, lock=lock
        )

        with pytest.raises(ConsumerLockLostError):
            await asyncio.wait_for(consumer.run(), timeout=1.0)

        mock_poll_client.fetch_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_released_on_stop(self, cursor_store, mock_poll_client, indexer) -> None:
        lock = AsyncMock(spec=ConsumerLock)
        lock.held = True
        consumer = ConsumerService(
            cursor_store=cursor_store, poll_client=mock_poll_client, indexer=indexer, lock=lock
        )

        await consumer.start()
        await consumer.stop()

        lock.acquire.assert_awaited_once()
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_feed_outage_outlives_lease_ttl(
        self, cursor_store, mock_poll_client, indexer
    ) -> None:
        redis = ExpiringRedis()
        lock = ConsumerLock(redis, key="test:lock", ttl_seconds=0.2)
        mock_poll_client.fetch_batch.side_effect = TransportError("HTTP 503")
        consumer = ConsumerService(
            cursor_store=cursor_store,
            poll_client=mock_poll_client,
            indexer=indexer,
            poll_interval_seconds=0.2,
            backoff=BackoffPolicy(base_seconds=0.05, max_seconds=0.2),
            lock=lock,
            lock_renew_seconds=0.2 / 3,
        )

        await consumer.start()
        await asyncio.wait_for(
            _until(lambda: consumer.stats.consecutive_transport_errors >= 5), timeout=3.0
        )

        assert consumer.is_running
        assert consumer.state != ConsumerState.ERROR
        assert lock.held
        assert await redis.get("test:lock") == lock._token
        await consumer.stop()
        assert await redis.get("test:lock") is None

    @pytest.mark.asyncio
    async def test_lease_renewed_during_long_sleep(
        self, cursor_store, mock_poll_client, indexer
    ) -> None:
        redis = ExpiringRedis()
        lock = ConsumerLock(redis, key="test:lock", ttl_seconds=0.1)
        consumer = ConsumerService(
            cursor_store=cursor_store,
            poll_client=mock_poll_client,
            indexer=indexer,
            poll_interval_seconds=3600,
            lock=lock,
            lock_renew_seconds=0.03,
        )

        await consumer.start()
        await asyncio.wait_for(_until(lambda: consumer.stats.cycles == 1), timeout=1.0)
        await asyncio.sleep(0.3)

        assert await redis.get("test:lock") == lock._token
        assert consumer.stats.cycles == 1
        await consumer.stop()

    @pytest.mark.asyncio
    async def test_takeover_between_cycles_is_fatal(
        self, cursor_store, mock_poll_client, indexer
    ) -> None:
        redis = ExpiringRedis()
        lock = ConsumerLock(redis, key="test:lock", ttl_seconds=5)
        consumer = ConsumerService(
            cursor_store=cursor_store,
            poll_client=mock_poll_client,
            indexer=indexer,
            poll_interval_seconds=3600,
            lock=lock,
            lock_renew_seconds=0.02,
        )

        run_task = asyncio.create_task(consumer.run())
        await asyncio.wait_for(_until(lambda: consumer.stats.cycles == 1), timeout=1.0)
        await redis.set("test:lock", "other-consumer", px=5000)

        with pytest.raises(ConsumerLockLostError):
            await asyncio.wait_for(run_task, timeout=2.0)

        assert consumer.state == ConsumerState.STOPPED
        assert await redis.get("test:lock") == "other-consumer"


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_unhealthy_before_start(self, consumer) -> None:
        health = consumer.health()

        assert health["state"] == "stopped"
        assert health["healthy"] is False

    @pytest.mark.asyncio
    async def test_healthy_after_poll(self, consumer, mock_poll_client) -> None:
        polled = asyncio.Event()

        async def fetch(after_id: int, batch_size: int) -> PollPage:
            polled.set()
            return PollPage(events=())

        mock_poll_client.fetch_batch.side_effect = fetch
        async with consumer:
            await asyncio.wait_for(polled.wait(), timeout=1.0)
            await asyncio.wait_for(_until(lambda: consumer.stats.cycles == 1), timeout=1.0)
            health = consumer.health()

        assert health["healthy"] is True
        assert health["stats"]["cycles"] == 1

    def test_stale_poll_is_unhealthy(self, cursor_store, mock_poll_client, indexer) -> None:
        consumer = ConsumerService(
            cursor_store=cursor_store,
            poll_client=mock_poll_client,
            indexer=indexer,
            stale_after_seconds=10,
        )
        consumer._state = ConsumerState.IDLE
        consumer.stats.last_poll_time = datetime.now(UTC) - timedelta(seconds=60)

        assert consumer.health()["healthy"] is False
