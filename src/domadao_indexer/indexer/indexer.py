"""Idempotent projection of feed events into derived pool state.

Every event is first persisted to the raw event log, then projected inside a
single transaction that also marks it processed and bumps the per-type
counter. A failed projection rolls back entirely and the event is marked
failed in a separate transaction, leaving the raw payload for re-indexing.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import assert_never

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domadao_indexer.indexer.events import (
    BuyoutCompleted,
    BuyoutInitiated,
    ContributionMade,
    DomainPurchased,
    IndexableEvent,
    MarketplaceEvent,
    PoolCreated,
    RevenueClaimed,
    RevenueDistributed,
    UnknownEvent,
    VoteCast,
    decode_event,
)
from domadao_indexer.ingestor.models import FeedEvent
from domadao_indexer.storage.models import PoolStatus, ProcessingStatus
from domadao_indexer.storage.repos import (
    ClaimDTO,
    ClaimRepository,
    ContributionDTO,
    ContributionRepository,
    DistributionDTO,
    DistributionRepository,
    EventStatusDTO,
    EventTypeMetricRepository,
    PollEventRepository,
    PoolDTO,
    PoolRepository,
    VoteDTO,
    VoteRepository,
    VotingResultRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ProjectionError(Exception):
    """Raised when an event refers to derived state that does not exist."""


class IndexOutcome(str, Enum):
    """Result of indexing a single event."""

    INDEXED = "indexed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class IndexSummary:
    """Counts of outcomes for a batch."""

    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    interrupted: bool = False

    @property
    def total(self) -> int:
        return self.indexed + self.skipped + self.failed

    def record(self, outcome: IndexOutcome) -> None:
        if outcome == IndexOutcome.INDEXED:
            self.indexed += 1
        elif outcome == IndexOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class EventIndexer:
    """Projects feed events into pools, contributions, votes and distributions.

    Example:
        >>> indexer = EventIndexer(db.session_factory, max_attempts=3)
        >>> summary = await indexer.index_events(page.events)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize the indexer.

        Args:
            session_factory: Factory for database sessions.
            max_attempts: Failed attempts after which an event is permanently failed.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    async def index_event(self, event: FeedEvent, *, force: bool = False) -> IndexOutcome:
        """Index a single event.

        Processed events are skipped, as are permanently failed events unless
        ``force`` is set. Projection failures are recorded on the event row
        and reported as ``IndexOutcome.FAILED``; storage errors while reading
        or writing the event row propagate.
        """
        async with self._session_factory() as session, session.begin():
            events = PollEventRepository(session)
            existing = await events.get_by_unique_id(event.unique_id)
            if existing is not None:
                if existing.processing_status == ProcessingStatus.PROCESSED.value:
                    logger.debug("Event already indexed, skipping unique_id=%s", event.unique_id)
                    return IndexOutcome.SKIPPED
                if not force and existing.is_terminal(self.max_attempts):
                    logger.debug(
                        "Event permanently failed, skipping unique_id=%s retry_count=%d",
                        event.unique_id,
                        existing.retry_count,
                    )
                    return IndexOutcome.SKIPPED
            else:
                await events.insert_raw(event)

        try:
            async with self._session_factory() as session, session.begin():
                variant = decode_event(event)
                await self._project(session, variant)
                await PollEventRepository(session).mark_processed(event.unique_id)
                await EventTypeMetricRepository(session).increment(event.event_type)
        except Exception as e:
            logger.error(
                "Failed to index event event_id=%d unique_id=%s type=%s: %s",
                event.event_id,
                event.unique_id,
                event.event_type,
                e,
            )
            async with self._session_factory() as session, session.begin():
                await PollEventRepository(session).mark_failed(
                    event.unique_id, f"{type(e).__name__}: {e}"
                )
            return IndexOutcome.FAILED

        logger.info(
            "Indexed event event_id=%d unique_id=%s type=%s",
            event.event_id,
            event.unique_id,
            event.event_type,
        )
        return IndexOutcome.INDEXED

    async def index_events(
        self,
        events: Iterable[FeedEvent],
        *,
        should_continue: Callable[[], bool] | None = None,
    ) -> IndexSummary:
        """Index events in order, isolating failures per event.

        Args:
            events: Events in feed order.
            should_continue: Checked before each event; returning False stops
                the batch between transactions.

        Returns:
            IndexSummary with outcome counts. Per-event status is queryable
            from the event store.
        """
        summary = IndexSummary()
        for event in events:
            if should_continue is not None and not should_continue():
                summary.interrupted = True
                break
            summary.record(await self.index_event(event))
        return summary

    async def reindex_failed(
        self, *, limit: int = 100, include_exhausted: bool = False
    ) -> IndexSummary:
        """Re-project stored failed events from their preserved payload.

        Args:
            limit: Maximum number of failed events to retry.
            include_exhausted: Also retry events that ran out of attempts.
        """
        async with self._session_factory() as session:
            failed = await PollEventRepository(session).list_failed(
                limit=limit,
                max_retry_count=None if include_exhausted else self.max_attempts,
            )

        summary = IndexSummary()
        for dto in failed:
            event = FeedEvent.from_dict(dto.event_data)
            summary.record(await self.index_event(event, force=include_exhausted))

        logger.info(
            "Re-indexed failed events: indexed=%d failed=%d skipped=%d",
            summary.indexed,
            summary.failed,
            summary.skipped,
        )
        return summary

    async def get_status_map(self, unique_ids: Sequence[str]) -> dict[str, EventStatusDTO]:
        """Get stored processing status for the given events."""
        async with self._session_factory() as session:
            return await PollEventRepository(session).get_status_map(unique_ids)

    async def _project(self, session: AsyncSession, event: IndexableEvent) -> None:
        if isinstance(event, PoolCreated):
            await self._on_pool_created(session, event)
        elif isinstance(event, ContributionMade):
            await self._on_contribution_made(session, event)
        elif isinstance(event, VoteCast):
            await self._on_vote_cast(session, event)
        elif isinstance(event, RevenueDistributed):
            await self._on_revenue_distributed(session, event)
        elif isinstance(event, RevenueClaimed):
            await self._on_revenue_claimed(session, event)
        elif isinstance(event, DomainPurchased):
            await self._update_pool(
                session,
                event.pool_address,
                status=PoolStatus.PURCHASED.value,
                domain_name=event.domain_name,
                domain_purchased=True,
                **(
                    {"fraction_token_address": event.fraction_token_address}
                    if event.fraction_token_address
                    else {}
                ),
            )
        elif isinstance(event, BuyoutInitiated):
            await self._update_pool(
                session, event.pool_address, status=PoolStatus.BUYOUT_PENDING.value
            )
        elif isinstance(event, BuyoutCompleted):
            await self._update_pool(session, event.pool_address, status=PoolStatus.BOUGHT_OUT.value)
        elif isinstance(event, MarketplaceEvent):
            logger.debug(
                "Marketplace event recorded type=%s name=%s token_id=%s",
                event.event_type.value,
                event.name,
                event.token_id,
            )
        elif isinstance(event, UnknownEvent):
            logger.warning("Unhandled event type=%s", event.event_type)
        else:
            assert_never(event)

    async def _require_pool(self, session: AsyncSession, pool_address: str) -> PoolDTO:
        pool = await PoolRepository(session).get(pool_address)
        if pool is None:
            raise ProjectionError(f"Pool {pool_address} is not indexed")
        return pool

    async def _on_pool_created(self, session: AsyncSession, event: PoolCreated) -> None:
        inserted = await PoolRepository(session).insert_if_absent(
            PoolDTO(
                pool_address=event.pool_address,
                owner_address=event.owner_address,
                target_amount=event.target_amount,
                contribution_window_end=event.contribution_window_end,
                voting_window_start=event.voting_window_start,
                voting_window_end=event.voting_window_end,
                purchase_window_start=event.purchase_window_start,
                usdc_address=event.usdc_address,
            )
        )
        if not inserted:
            logger.debug("Pool already exists pool=%s", event.pool_address)

    async def _on_contribution_made(self, session: AsyncSession, event: ContributionMade) -> None:
        await self._require_pool(session, event.pool_address)
        inserted = await ContributionRepository(session).insert_if_absent(
            ContributionDTO(
                pool_address=event.pool_address,
                contributor=event.contributor,
                amount=event.amount,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        )
        if inserted:
            await PoolRepository(session).add_to_current_amount(event.pool_address, event.amount)
        else:
            logger.debug("Contribution already recorded tx_hash=%s", event.tx_hash)

    async def _on_vote_cast(self, session: AsyncSession, event: VoteCast) -> None:
        await self._require_pool(session, event.pool_address)
        await VoteRepository(session).accumulate(
            VoteDTO(
                pool_address=event.pool_address,
                voter=event.voter,
                domain_name=event.domain_name,
                weight=event.weight,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        )
        await VotingResultRepository(session).accumulate(
            event.pool_address, event.domain_name, event.weight
        )

    async def _on_revenue_distributed(
        self, session: AsyncSession, event: RevenueDistributed
    ) -> None:
        await self._require_pool(session, event.pool_address)
        await DistributionRepository(session).insert_if_absent(
            DistributionDTO(
                pool_address=event.pool_address,
                distribution_id=event.distribution_id,
                total_amount=event.total_amount,
                snapshot_timestamp=event.snapshot_timestamp,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        )

    async def _on_revenue_claimed(self, session: AsyncSession, event: RevenueClaimed) -> None:
        distribution = await DistributionRepository(session).get(
            event.pool_address, event.distribution_id
        )
        if distribution is None or distribution.id is None:
            raise ProjectionError(
                f"Distribution {event.distribution_id} of pool {event.pool_address} is not indexed"
            )
        await ClaimRepository(session).insert_if_absent(
            ClaimDTO(
                distribution_pk=distribution.id,
                user_address=event.user_address,
                amount=event.amount,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                claimed_at=event.claimed_at,
            )
        )

    async def _update_pool(self, session: AsyncSession, pool_address: str, **values: object) -> None:
        if not await PoolRepository(session).update_fields(pool_address, **values):
            raise ProjectionError(f"Pool {pool_address} is not indexed")
