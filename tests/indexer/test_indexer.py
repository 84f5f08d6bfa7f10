"""Tests for the event indexer."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domadao_indexer.indexer.indexer import EventIndexer, IndexOutcome, IndexSummary
from domadao_indexer.storage.models import (
    ClaimModel,
    ContributionModel,
    PollEventModel,
    PoolStatus,
    ProcessingStatus,
)
from domadao_indexer.storage.repos import (
    ClaimRepository,
    ContributionRepository,
    EventTypeMetricRepository,
    PollEventRepository,
    PoolRepository,
    VoteRepository,
    VotingResultRepository,
)
from tests.factories import (
    ALICE,
    BOB,
    POOL_ADDRESS,
    contribution_made,
    make_event,
    pool_created,
    vote_cast,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def indexer(session_factory: async_sessionmaker[AsyncSession]) -> EventIndexer:
    return EventIndexer(session_factory, max_attempts=3)


async def _pool(session_factory):
    async with session_factory() as session:
        return await PoolRepository(session).get(POOL_ADDRESS)


async def _event(session_factory, unique_id: str):
    async with session_factory() as session:
        return await PollEventRepository(session).get_by_unique_id(unique_id)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


# ============================================================================
# Construction
# ============================================================================


class TestIndexSummary:
    def test_record(self) -> None:
        summary = IndexSummary()
        for outcome in (IndexOutcome.INDEXED, IndexOutcome.INDEXED, IndexOutcome.FAILED, IndexOutcome.SKIPPED):
            summary.record(outcome)

        assert (summary.indexed, summary.failed, summary.skipped) == (2, 1, 1)
        assert summary.total == 4

    def test_invalid_max_attempts(self, session_factory) -> None:
        with pytest.raises(ValueError):
            EventIndexer(session_factory, max_attempts=0)


# ============================================================================
# Pools and contributions
# ============================================================================


class TestContributions:
    """Tests for pool creation and contribution projection."""

    @pytest.mark.asyncio
    async def test_pool_created(self, indexer, session_factory) -> None:
        outcome = await indexer.index_event(pool_created(1))

        assert outcome == IndexOutcome.INDEXED
        pool = await _pool(session_factory)
        assert pool is not None
        assert pool.status == PoolStatus.ACTIVE.value
        assert pool.current_amount == Decimal(0)
        assert pool.target_amount == Decimal(1_000_000_000)

        stored = await _event(session_factory, "evt-1")
        assert stored.processing_status == ProcessingStatus.PROCESSED.value
        assert stored.processed_at is not None

    @pytest.mark.asyncio
    async def test_contribution_updates_pool_total(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(contribution_made(2, "250"))
        await indexer.index_event(contribution_made(3, "100", contributor=BOB))

        pool = await _pool(session_factory)
        assert pool.current_amount == Decimal(350)
        async with session_factory() as session:
            contributions = await ContributionRepository(session).list_for_pool(POOL_ADDRESS)
        assert [c.contributor for c in contributions] == [ALICE, BOB]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        event = contribution_made(2, "250")

        first = await indexer.index_event(event)
        second = await indexer.index_event(event)

        assert first == IndexOutcome.INDEXED
        assert second == IndexOutcome.SKIPPED
        assert await _count(session_factory, ContributionModel) == 1
        assert await _count(session_factory, PollEventModel) == 2
        pool = await _pool(session_factory)
        assert pool.current_amount == Decimal(250)

    @pytest.mark.asyncio
    async def test_same_tx_under_new_unique_id_counts_once(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(contribution_made(2, "250", tx_hash="0xfeed"))
        outcome = await indexer.index_event(
            contribution_made(3, "250", tx_hash="0xfeed")
        )

        assert outcome == IndexOutcome.INDEXED
        assert await _count(session_factory, ContributionModel) == 1
        pool = await _pool(session_factory)
        assert pool.current_amount == Decimal(250)

    @pytest.mark.asyncio
    async def test_duplicate_pool_created_keeps_first(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(contribution_made(2, "250"))
        outcome = await indexer.index_event(pool_created(3))

        assert outcome == IndexOutcome.INDEXED
        pool = await _pool(session_factory)
        assert pool.current_amount == Decimal(250)

    @pytest.mark.asyncio
    async def test_contribution_to_unknown_pool_fails(self, indexer, session_factory) -> None:
        outcome = await indexer.index_event(contribution_made(2, "250"))

        assert outcome == IndexOutcome.FAILED
        stored = await _event(session_factory, "evt-2")
        assert stored.processing_status == ProcessingStatus.FAILED.value
        assert stored.retry_count == 1
        assert stored.error_message.startswith("ProjectionError:")
        assert await _count(session_factory, ContributionModel) == 0


# ============================================================================
# Votes
# ============================================================================


class TestVotes:
    """Tests for vote accumulation."""

    @pytest.mark.asyncio
    async def test_votes_accumulate(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(vote_cast(2, "100"))
        await indexer.index_event(vote_cast(3, "50"))

        async with session_factory() as session:
            vote = await VoteRepository(session).get(POOL_ADDRESS, ALICE, "example.ape")
            results = await VotingResultRepository(session).list_for_pool(POOL_ADDRESS)

        assert vote.weight == Decimal(150)
        assert len(results) == 1
        assert results[0].total_votes == Decimal(150)
        assert results[0].vote_count == 2

    @pytest.mark.asyncio
    async def test_replayed_vote_does_not_double_count(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        vote = vote_cast(2, "100")
        await indexer.index_event(vote)
        await indexer.index_event(vote)

        async with session_factory() as session:
            stored = await VoteRepository(session).get(POOL_ADDRESS, ALICE, "example.ape")
        assert stored.weight == Decimal(100)

    @pytest.mark.asyncio
    async def test_results_per_domain(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(vote_cast(2, "100", domain_name="first.ape"))
        await indexer.index_event(vote_cast(3, "300", voter=BOB, domain_name="second.ape"))

        async with session_factory() as session:
            results = await VotingResultRepository(session).list_for_pool(POOL_ADDRESS)

        assert [r.domain_name for r in results] == ["second.ape", "first.ape"]


# ============================================================================
# Distributions, claims and pool lifecycle
# ============================================================================


def _distributed(event_id: int, distribution_id: int = 1):
    return make_event(
        event_id,
        "REVENUE_DISTRIBUTED",
        {
            "poolAddress": POOL_ADDRESS,
            "distributionId": distribution_id,
            "totalAmount": "1000",
            "snapshotTimestamp": 1_700_000_000,
        },
    )


def _claimed(event_id: int, distribution_id: int = 1):
    return make_event(
        event_id,
        "REVENUE_CLAIMED",
        {
            "poolAddress": POOL_ADDRESS,
            "distributionId": distribution_id,
            "user": ALICE,
            "amount": "40",
            "timestamp": 1_700_000_100,
        },
    )


class TestRevenue:
    """Tests for revenue distribution and claims."""

    @pytest.mark.asyncio
    async def test_claim(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(_distributed(2))
        outcome = await indexer.index_event(_claimed(3))

        assert outcome == IndexOutcome.INDEXED
        async with session_factory() as session:
            claims = await ClaimRepository(session).list_for_user(ALICE)
        assert len(claims) == 1
        assert claims[0].amount == Decimal(40)
        assert claims[0].claimed is True

    @pytest.mark.asyncio
    async def test_claim_without_distribution_fails(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        outcome = await indexer.index_event(_claimed(3, distribution_id=9))

        assert outcome == IndexOutcome.FAILED
        assert await _count(session_factory, ClaimModel) == 0

    @pytest.mark.asyncio
    async def test_duplicate_claim_ignored(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(_distributed(2))
        await indexer.index_event(_claimed(3))
        await indexer.index_event(make_event(4, "REVENUE_CLAIMED", _claimed(4).args))

        assert await _count(session_factory, ClaimModel) == 1


class TestPoolLifecycle:
    """Tests for purchase and buyout status transitions."""

    @pytest.mark.asyncio
    async def test_domain_purchased(self, indexer, session_factory) -> None:
        token = "0x" + "e" * 40
        await indexer.index_event(pool_created(1))
        await indexer.index_event(
            make_event(
                2,
                "DOMAIN_PURCHASED",
                {"poolAddress": POOL_ADDRESS, "domainName": "won.ape", "fractionTokenAddress": token},
            )
        )

        pool = await _pool(session_factory)
        assert pool.status == PoolStatus.PURCHASED.value
        assert pool.domain_purchased is True
        assert pool.domain_name == "won.ape"
        assert pool.fraction_token_address == token

    @pytest.mark.asyncio
    async def test_buyout(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))

        await indexer.index_event(make_event(2, "BUYOUT_INITIATED", {"poolAddress": POOL_ADDRESS}))
        assert (await _pool(session_factory)).status == PoolStatus.BUYOUT_PENDING.value

        await indexer.index_event(make_event(3, "BUYOUT_COMPLETED", {"poolAddress": POOL_ADDRESS}))
        assert (await _pool(session_factory)).status == PoolStatus.BOUGHT_OUT.value

    @pytest.mark.asyncio
    async def test_status_update_for_unknown_pool_fails(self, indexer) -> None:
        outcome = await indexer.index_event(
            make_event(2, "BUYOUT_INITIATED", {"poolAddress": POOL_ADDRESS})
        )
        assert outcome == IndexOutcome.FAILED


# ============================================================================
# Opaque events and metrics
# ============================================================================


class TestOpaqueEvents:
    @pytest.mark.asyncio
    async def test_marketplace_and_unknown_events_are_recorded(self, indexer, session_factory) -> None:
        minted = await indexer.index_event(make_event(1, "NAME_TOKEN_MINTED", name="new.ape"))
        unknown = await indexer.index_event(make_event(2, "SOMETHING_NEW"))

        assert minted == IndexOutcome.INDEXED
        assert unknown == IndexOutcome.INDEXED
        assert (await _event(session_factory, "evt-2")).processing_status == (
            ProcessingStatus.PROCESSED.value
        )

    @pytest.mark.asyncio
    async def test_metrics_count_processed_events(self, indexer, session_factory) -> None:
        await indexer.index_event(pool_created(1))
        await indexer.index_event(contribution_made(2))
        await indexer.index_event(contribution_made(3, tx_hash="0x03"))
        await indexer.index_event(contribution_made(3, tx_hash="0x03"))

        async with session_factory() as session:
            counts = await EventTypeMetricRepository(session).get_counts()

        assert counts == {"POOL_CREATED": 1, "CONTRIBUTION_MADE": 2}

    @pytest.mark.asyncio
    async def test_undecodable_event_fails(self, indexer, session_factory) -> None:
        outcome = await indexer.index_event(contribution_made(1, "-5"))

        assert outcome == IndexOutcome.FAILED
        stored = await _event(session_factory, "evt-1")
        assert stored.error_message.startswith("EventDecodeError:")
        assert stored.event_data["data"]["amount"] == "-5"


# ============================================================================
# Batches and retries
# ============================================================================


class TestBatches:
    """Tests for batch indexing and retry semantics."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, indexer, session_factory) -> None:
        events = [
            pool_created(1),
            contribution_made(2, "250", pool_address="0x" + "9" * 40),
            contribution_made(3, "100"),
        ]

        summary = await indexer.index_events(events)

        assert (summary.indexed, summary.failed, summary.skipped) == (2, 1, 0)
        statuses = await indexer.get_status_map([e.unique_id for e in events])
        assert statuses["evt-1"].processing_status == ProcessingStatus.PROCESSED.value
        assert statuses["evt-2"].processing_status == ProcessingStatus.FAILED.value
        assert statuses["evt-2"].retry_count == 1
        assert statuses["evt-3"].processing_status == ProcessingStatus.PROCESSED.value
        assert (await _pool(session_factory)).current_amount == Decimal(100)

    @pytest.mark.asyncio
    async def test_replayed_batch_leaves_state_unchanged(self, indexer, session_factory) -> None:
        events = [pool_created(1), contribution_made(2, "250"), vote_cast(3, "100")]
        await indexer.index_events(events)

        summary = await indexer.index_events(events)

        assert summary.skipped == 3
        assert (await _pool(session_factory)).current_amount == Decimal(250)
        async with session_factory() as session:
            vote = await VoteRepository(session).get(POOL_ADDRESS, ALICE, "example.ape")
        assert vote.weight == Decimal(100)

    @pytest.mark.asyncio
    async def test_should_continue_stops_batch(self, indexer) -> None:
        calls = iter([True, False])

        summary = await indexer.index_events(
            [pool_created(1), contribution_made(2)], should_continue=lambda: next(calls)
        )

        assert summary.indexed == 1
        assert summary.interrupted is True

    @pytest.mark.asyncio
    async def test_failed_event_retried_until_exhausted(self, indexer, session_factory) -> None:
        event = contribution_made(2, "250")

        outcomes = [await indexer.index_event(event) for _ in range(4)]

        assert outcomes == [IndexOutcome.FAILED] * 3 + [IndexOutcome.SKIPPED]
        stored = await _event(session_factory, "evt-2")
        assert stored.retry_count == 3
        assert stored.is_terminal(indexer.max_attempts)

    @pytest.mark.asyncio
    async def test_failed_event_succeeds_on_retry(self, indexer, session_factory) -> None:
        event = contribution_made(2, "250")
        assert await indexer.index_event(event) == IndexOutcome.FAILED

        await indexer.index_event(pool_created(1))
        assert await indexer.index_event(event) == IndexOutcome.INDEXED

        stored = await _event(session_factory, "evt-2")
        assert stored.processing_status == ProcessingStatus.PROCESSED.value
        assert stored.error_message is None
        assert (await _pool(session_factory)).current_amount == Decimal(250)


class TestReindexFailed:
    """Tests for re-projecting stored failed events."""

    @pytest.mark.asyncio
    async def test_reindex_from_stored_payload(self, indexer, session_factory) -> None:
        await indexer.index_event(contribution_made(2, "250"))
        await indexer.index_event(pool_created(1))

        summary = await indexer.reindex_failed()

        assert summary.indexed == 1
        assert (await _pool(session_factory)).current_amount == Decimal(250)

    @pytest.mark.asyncio
    async def test_exhausted_events_need_explicit_opt_in(self, indexer, session_factory) -> None:
        event = contribution_made(2, "250")
        for _ in range(3):
            await indexer.index_event(event)
        await indexer.index_event(pool_created(1))

        assert (await indexer.reindex_failed()).total == 0

        summary = await indexer.reindex_failed(include_exhausted=True)

        assert summary.indexed == 1
        stored = await _event(session_factory, "evt-2")
        assert stored.processing_status == ProcessingStatus.PROCESSED.value
