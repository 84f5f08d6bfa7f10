"""Repository pattern implementations for data access.

This module provides data access abstractions for the raw poll event log,
the poll cursor, and the derived pool state written by the event indexer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from domadao_indexer.storage.models import (
    CURSOR_ROW_ID,
    ClaimModel,
    ContributionModel,
    DistributionModel,
    EventTypeMetricModel,
    PollCursorModel,
    PollEventModel,
    PoolModel,
    PoolStatus,
    ProcessingStatus,
    VoteModel,
    VotingResultModel,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from domadao_indexer.ingestor.models import FeedEvent

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# ============================================================================
# Raw poll events
# ============================================================================


@dataclass
class PollEventDTO:
    """Data transfer object for raw poll events."""

    event_id: int
    unique_id: str
    event_type: str
    event_data: dict[str, Any]
    processing_status: str = ProcessingStatus.PENDING.value
    retry_count: int = 0
    error_message: str | None = None
    correlation_id: str | None = None
    relay_id: str | None = None
    name: str | None = None
    token_id: str | None = None
    network_id: str | None = None
    chain_id: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    log_index: int | None = None
    finalized: bool = False
    created_at: datetime | None = None
    processed_at: datetime | None = None
    acknowledged_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PollEventModel) -> PollEventDTO:
        return cls(
            event_id=model.event_id,
            unique_id=model.unique_id,
            event_type=model.event_type,
            event_data=model.event_data,
            processing_status=model.processing_status,
            retry_count=model.retry_count,
            error_message=model.error_message,
            correlation_id=model.correlation_id,
            relay_id=model.relay_id,
            name=model.name,
            token_id=model.token_id,
            network_id=model.network_id,
            chain_id=model.chain_id,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            log_index=model.log_index,
            finalized=model.finalized,
            created_at=model.created_at,
            processed_at=model.processed_at,
            acknowledged_at=model.acknowledged_at,
        )

    def is_terminal(self, max_attempts: int) -> bool:
        """Whether the event needs no further processing attempts."""
        return is_terminal_status(self.processing_status, self.retry_count, max_attempts)


def is_terminal_status(status: str, retry_count: int, max_attempts: int) -> bool:
    """Processed events, and failed events out of attempts, are terminal."""
    if status == ProcessingStatus.PROCESSED.value:
        return True
    return status == ProcessingStatus.FAILED.value and retry_count >= max_attempts


@dataclass(frozen=True)
class EventStatusDTO:
    """Processing status snapshot of one raw event."""

    unique_id: str
    event_id: int
    processing_status: str
    retry_count: int

    def is_terminal(self, max_attempts: int) -> bool:
        return is_terminal_status(self.processing_status, self.retry_count, max_attempts)


@dataclass
class PollEventFilters:
    """Filters for querying stored poll events."""

    event_type: str | None = None
    name: str | None = None
    token_id: str | None = None
    processing_status: str | None = None
    from_event_id: int | None = None
    to_event_id: int | None = None
    limit: int = 100
    offset: int = 0


@dataclass
class EventStats:
    """Aggregate counts over the raw event log."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)


class PollEventRepository:
    """Repository for the raw poll event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_unique_id(self, unique_id: str) -> PollEventDTO | None:
        stmt = select(PollEventModel).where(PollEventModel.unique_id == unique_id)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return PollEventDTO.from_model(model) if model else None

    async def insert_raw(self, event: FeedEvent) -> bool:
        """Insert a raw event unless its unique_id is already stored.

        Returns:
            True if the row was newly inserted, False on duplicate delivery.
        """
        values = {
            "event_id": event.event_id,
            "unique_id": event.unique_id,
            "correlation_id": event.correlation_id,
            "relay_id": event.relay_id,
            "event_type": event.event_type,
            "name": event.name,
            "token_id": event.token_id,
            "network_id": event.network_id,
            "chain_id": event.chain_id,
            "tx_hash": event.tx_hash,
            "block_number": event.block_number,
            "log_index": event.log_index,
            "finalized": event.finalized,
            "event_data": event.event_data,
            "processing_status": ProcessingStatus.PENDING.value,
            "retry_count": 0,
            "created_at": datetime.now(UTC),
        }
        stmt = (
            _insert(self.session, PollEventModel)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["unique_id"])
            .returning(PollEventModel.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await self.session.flush()
        return inserted

    async def mark_processed(self, unique_id: str) -> None:
        await self.session.execute(
            update(PollEventModel)
            .where(PollEventModel.unique_id == unique_id)
            .values(
                processing_status=ProcessingStatus.PROCESSED.value,
                processed_at=datetime.now(UTC),
                error_message=None,
            )
        )
        await self.session.flush()

    async def mark_failed(self, unique_id: str, error_message: str) -> None:
        await self.session.execute(
            update(PollEventModel)
            .where(PollEventModel.unique_id == unique_id)
            .values(
                processing_status=ProcessingStatus.FAILED.value,
                error_message=error_message[:MAX_ERROR_MESSAGE_LENGTH],
                retry_count=PollEventModel.retry_count + 1,
            )
        )
        await self.session.flush()

    async def get_status_map(self, unique_ids: Sequence[str]) -> dict[str, EventStatusDTO]:
        """Get processing status keyed by unique_id for the given events."""
        if not unique_ids:
            return {}
        result = await self.session.execute(
            select(
                PollEventModel.unique_id,
                PollEventModel.event_id,
                PollEventModel.processing_status,
                PollEventModel.retry_count,
            ).where(PollEventModel.unique_id.in_(list(unique_ids)))
        )
        return {
            row.unique_id: EventStatusDTO(
                unique_id=row.unique_id,
                event_id=row.event_id,
                processing_status=row.processing_status,
                retry_count=row.retry_count,
            )
            for row in result
        }

    async def find(self, filters: PollEventFilters) -> list[PollEventDTO]:
        """Find events matching the filters, newest first."""
        stmt = select(PollEventModel)
        if filters.event_type:
            stmt = stmt.where(PollEventModel.event_type == filters.event_type)
        if filters.name:
            stmt = stmt.where(PollEventModel.name == filters.name)
        if filters.token_id:
            stmt = stmt.where(PollEventModel.token_id == filters.token_id)
        if filters.processing_status:
            stmt = stmt.where(PollEventModel.processing_status == filters.processing_status)
        if filters.from_event_id is not None:
            stmt = stmt.where(PollEventModel.event_id >= filters.from_event_id)
        if filters.to_event_id is not None:
            stmt = stmt.where(PollEventModel.event_id <= filters.to_event_id)
        stmt = stmt.order_by(PollEventModel.event_id.desc()).limit(filters.limit).offset(filters.offset)
        result = await self.session.execute(stmt)
        return [PollEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_failed(
        self, *, limit: int = 100, max_retry_count: int | None = None
    ) -> list[PollEventDTO]:
        """List failed events in feed order, optionally only those with attempts left."""
        stmt = select(PollEventModel).where(
            PollEventModel.processing_status == ProcessingStatus.FAILED.value
        )
        if max_retry_count is not None:
            stmt = stmt.where(PollEventModel.retry_count < max_retry_count)
        stmt = stmt.order_by(PollEventModel.event_id.asc()).limit(limit)
        result = await self.session.execute(stmt)
        return [PollEventDTO.from_model(m) for m in result.scalars().all()]

    async def get_stats(self) -> EventStats:
        total = await self.session.scalar(select(func.count()).select_from(PollEventModel))
        by_type = await self.session.execute(
            select(PollEventModel.event_type, func.count())
            .group_by(PollEventModel.event_type)
            .order_by(func.count().desc())
        )
        by_status = await self.session.execute(
            select(PollEventModel.processing_status, func.count()).group_by(
                PollEventModel.processing_status
            )
        )
        return EventStats(
            total=int(total or 0),
            by_type={row[0]: int(row[1]) for row in by_type},
            by_status={row[0]: int(row[1]) for row in by_status},
        )


# ============================================================================
# Poll cursor
# ============================================================================


class CursorRepository:
    """Repository for the single-row poll cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_last_acknowledged_id(self) -> int:
        result = await self.session.execute(
            select(PollCursorModel.last_acknowledged_id).where(PollCursorModel.id == CURSOR_ROW_ID)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def set_last_acknowledged_id(self, event_id: int) -> None:
        """Persist the cursor and stamp acknowledged_at on events up to it.

        Callers must only pass an id whose preceding events all reached a
        terminal processing status.
        """
        now = datetime.now(UTC)
        stmt = _insert(self.session, PollCursorModel).values(
            id=CURSOR_ROW_ID, last_acknowledged_id=event_id, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"last_acknowledged_id": event_id, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.execute(
            update(PollEventModel)
            .where(PollEventModel.event_id <= event_id, PollEventModel.acknowledged_at.is_(None))
            .values(acknowledged_at=now)
        )
        await self.session.flush()


# ============================================================================
# Derived pool state
# ============================================================================


@dataclass
class PoolDTO:
    """Data transfer object for pools."""

    pool_address: str
    owner_address: str
    target_amount: Decimal
    contribution_window_end: int
    voting_window_start: int
    voting_window_end: int
    purchase_window_start: int
    usdc_address: str
    current_amount: Decimal = Decimal(0)
    status: str = PoolStatus.ACTIVE.value
    domain_name: str | None = None
    domain_purchased: bool = False
    fraction_token_address: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PoolModel) -> PoolDTO:
        return cls(
            pool_address=model.pool_address,
            owner_address=model.owner_address,
            target_amount=model.target_amount,
            contribution_window_end=model.contribution_window_end,
            voting_window_start=model.voting_window_start,
            voting_window_end=model.voting_window_end,
            purchase_window_start=model.purchase_window_start,
            usdc_address=model.usdc_address,
            current_amount=model.current_amount,
            status=model.status,
            domain_name=model.domain_name,
            domain_purchased=model.domain_purchased,
            fraction_token_address=model.fraction_token_address,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class PoolRepository:
    """Repository for pools."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, pool_address: str) -> PoolDTO | None:
        result = await self.session.execute(
            select(PoolModel).where(PoolModel.pool_address == pool_address.lower())
        )
        model = result.scalar_one_or_none()
        return PoolDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: PoolDTO) -> bool:
        """Insert a pool; a pool is defined once, later deliveries are ignored."""
        now = datetime.now(UTC)
        stmt = (
            _insert(self.session, PoolModel)
            .values(
                pool_address=dto.pool_address.lower(),
                owner_address=dto.owner_address.lower(),
                target_amount=dto.target_amount,
                current_amount=Decimal(0),
                contribution_window_end=dto.contribution_window_end,
                voting_window_start=dto.voting_window_start,
                voting_window_end=dto.voting_window_end,
                purchase_window_start=dto.purchase_window_start,
                usdc_address=dto.usdc_address.lower(),
                status=PoolStatus.ACTIVE.value,
                domain_purchased=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["pool_address"])
            .returning(PoolModel.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await self.session.flush()
        return inserted

    async def add_to_current_amount(self, pool_address: str, amount: Decimal) -> bool:
        result = await self.session.execute(
            update(PoolModel)
            .where(PoolModel.pool_address == pool_address.lower())
            .values(current_amount=PoolModel.current_amount + amount, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def update_fields(self, pool_address: str, **values: Any) -> bool:
        """Set pool columns; returns False if the pool does not exist."""
        result = await self.session.execute(
            update(PoolModel)
            .where(PoolModel.pool_address == pool_address.lower())
            .values(**values, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)


@dataclass
class ContributionDTO:
    """Data transfer object for contributions."""

    pool_address: str
    contributor: str
    amount: Decimal
    tx_hash: str
    block_number: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ContributionModel) -> ContributionDTO:
        return cls(
            pool_address=model.pool_address,
            contributor=model.contributor,
            amount=model.amount,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            created_at=model.created_at,
        )


class ContributionRepository:
    """Repository for contributions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: ContributionDTO) -> bool:
        stmt = (
            _insert(self.session, ContributionModel)
            .values(
                pool_address=dto.pool_address.lower(),
                contributor=dto.contributor.lower(),
                amount=dto.amount,
                tx_hash=dto.tx_hash.lower(),
                block_number=dto.block_number,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
            .returning(ContributionModel.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await self.session.flush()
        return inserted

    async def list_for_pool(self, pool_address: str) -> list[ContributionDTO]:
        result = await self.session.execute(
            select(ContributionModel)
            .where(ContributionModel.pool_address == pool_address.lower())
            .order_by(ContributionModel.id)
        )
        return [ContributionDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class VoteDTO:
    """Data transfer object for accumulated votes."""

    pool_address: str
    voter: str
    domain_name: str
    weight: Decimal
    tx_hash: str | None = None
    block_number: int | None = None

    @classmethod
    def from_model(cls, model: VoteModel) -> VoteDTO:
        return cls(
            pool_address=model.pool_address,
            voter=model.voter,
            domain_name=model.domain_name,
            weight=model.weight,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
        )


class VoteRepository:
    """Repository for votes (weight accumulates per pool/voter/domain)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def accumulate(self, dto: VoteDTO) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, VoteModel).values(
            pool_address=dto.pool_address.lower(),
            voter=dto.voter.lower(),
            domain_name=dto.domain_name,
            weight=dto.weight,
            tx_hash=dto.tx_hash,
            block_number=dto.block_number,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pool_address", "voter", "domain_name"],
            set_={
                "weight": VoteModel.weight + stmt.excluded.weight,
                "tx_hash": stmt.excluded.tx_hash,
                "block_number": stmt.excluded.block_number,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(self, pool_address: str, voter: str, domain_name: str) -> VoteDTO | None:
        result = await self.session.execute(
            select(VoteModel).where(
                VoteModel.pool_address == pool_address.lower(),
                VoteModel.voter == voter.lower(),
                VoteModel.domain_name == domain_name,
            )
        )
        model = result.scalar_one_or_none()
        return VoteDTO.from_model(model) if model else None

    async def list_for_pool(self, pool_address: str) -> list[VoteDTO]:
        result = await self.session.execute(
            select(VoteModel).where(VoteModel.pool_address == pool_address.lower()).order_by(VoteModel.id)
        )
        return [VoteDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class VotingResultDTO:
    pool_address: str
    domain_name: str
    total_votes: Decimal
    vote_count: int

    @classmethod
    def from_model(cls, model: VotingResultModel) -> VotingResultDTO:
        return cls(
            pool_address=model.pool_address,
            domain_name=model.domain_name,
            total_votes=model.total_votes,
            vote_count=model.vote_count,
        )


class VotingResultRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def accumulate(self, pool_address: str, domain_name: str, weight: Decimal) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, VotingResultModel).values(
            pool_address=pool_address.lower(),
            domain_name=domain_name,
            total_votes=weight,
            vote_count=1,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pool_address", "domain_name"],
            set_={
                "total_votes": VotingResultModel.total_votes + stmt.excluded.total_votes,
                "vote_count": VotingResultModel.vote_count + 1,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_for_pool(self, pool_address: str) -> list[VotingResultDTO]:
        result = await self.session.execute(
            select(VotingResultModel)
            .where(VotingResultModel.pool_address == pool_address.lower())
            .order_by(VotingResultModel.total_votes.desc())
        )
        return [VotingResultDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class DistributionDTO:
    """Data transfer object for revenue distributions."""

    pool_address: str
    distribution_id: int
    total_amount: Decimal
    snapshot_timestamp: int
    tx_hash: str | None = None
    block_number: int | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: DistributionModel) -> DistributionDTO:
        return cls(
            pool_address=model.pool_address,
            distribution_id=model.distribution_id,
            total_amount=model.total_amount,
            snapshot_timestamp=model.snapshot_timestamp,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            id=model.id,
        )


class DistributionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: DistributionDTO) -> bool:
        stmt = (
            _insert(self.session, DistributionModel)
            .values(
                pool_address=dto.pool_address.lower(),
                distribution_id=dto.distribution_id,
                total_amount=dto.total_amount,
                snapshot_timestamp=dto.snapshot_timestamp,
                tx_hash=dto.tx_hash,
                block_number=dto.block_number,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["pool_address", "distribution_id"])
            .returning(DistributionModel.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await self.session.flush()
        return inserted

    async def get(self, pool_address: str, distribution_id: int) -> DistributionDTO | None:
        result = await self.session.execute(
            select(DistributionModel).where(
                DistributionModel.pool_address == pool_address.lower(),
                DistributionModel.distribution_id == distribution_id,
            )
        )
        model = result.scalar_one_or_none()
        return DistributionDTO.from_model(model) if model else None


@dataclass
class ClaimDTO:
    """Data transfer object for revenue claims."""

    distribution_pk: int
    user_address: str
    amount: Decimal
    tx_hash: str | None = None
    block_number: int | None = None
    claimed_at: datetime | None = None
    claimed: bool = True

    @classmethod
    def from_model(cls, model: ClaimModel) -> ClaimDTO:
        return cls(
            distribution_pk=model.distribution_pk,
            user_address=model.user_address,
            amount=model.amount,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            claimed_at=model.claimed_at,
            claimed=model.claimed,
        )


class ClaimRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: ClaimDTO) -> bool:
        stmt = (
            _insert(self.session, ClaimModel)
            .values(
                distribution_pk=dto.distribution_pk,
                user_address=dto.user_address.lower(),
                amount=dto.amount,
                claimed=True,
                tx_hash=dto.tx_hash,
                block_number=dto.block_number,
                claimed_at=dto.claimed_at,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["distribution_pk", "user_address"])
            .returning(ClaimModel.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        await self.session.flush()
        return inserted

    async def list_for_user(self, user_address: str) -> list[ClaimDTO]:
        result = await self.session.execute(
            select(ClaimModel).where(ClaimModel.user_address == user_address.lower()).order_by(ClaimModel.id)
        )
        return [ClaimDTO.from_model(m) for m in result.scalars().all()]


class EventTypeMetricRepository:
    """Processed-event counters per event type."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def increment(self, event_type: str) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, EventTypeMetricModel).values(
            event_type=event_type, event_count=1, last_processed_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_type"],
            set_={
                "event_count": EventTypeMetricModel.event_count + 1,
                "last_processed_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get_counts(self) -> dict[str, int]:
        result = await self.session.execute(
            select(EventTypeMetricModel.event_type, EventTypeMetricModel.event_count)
        )
        return {row[0]: int(row[1]) for row in result}
