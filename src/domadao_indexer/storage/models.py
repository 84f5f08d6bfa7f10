"""SQLAlchemy models for persistent storage.

This module defines the database schema for the raw poll event log, the
single-row poll cursor, and the derived pool state projected from events
(pools, contributions, votes, voting results, distributions, claims).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 amounts (wei / token base units).
UINT256 = Numeric(78, 0)

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
JSONPayload = JSON().with_variant(JSONB(), "postgresql")

CURSOR_ROW_ID = 1


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProcessingStatus(str, Enum):
    """Processing status of a raw poll event."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PoolStatus(str, Enum):
    """Lifecycle status of a fractional ownership pool."""

    ACTIVE = "ACTIVE"
    PURCHASED = "PURCHASED"
    BUYOUT_PENDING = "BUYOUT_PENDING"
    BOUGHT_OUT = "BOUGHT_OUT"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class PollEventModel(Base):
    """Raw events received from the Doma Poll API (append-only)."""

    __tablename__ = "poll_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unique_id: Mapped[str] = mapped_column(String(255), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    relay_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    token_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    network_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    chain_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Full original payload, preserved verbatim for replay/debugging.
    event_data: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)

    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("unique_id", name="uq_poll_events_unique_id"),
        Index("idx_poll_events_event_id", "event_id"),
        Index("idx_poll_events_event_type", "event_type"),
        Index("idx_poll_events_name", "name"),
        Index("idx_poll_events_token_id", "token_id"),
        Index("idx_poll_events_tx_hash", "tx_hash"),
        Index("idx_poll_events_processing_status", "processing_status"),
        Index("idx_poll_events_type_status", "event_type", "processing_status"),
    )


class PollCursorModel(Base):
    """Last acknowledged poll event id (exactly one row)."""

    __tablename__ = "poll_cursor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=CURSOR_ROW_ID)
    last_acknowledged_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (CheckConstraint(f"id = {CURSOR_ROW_ID}", name="ck_poll_cursor_single_row"),)


class EventTypeMetricModel(Base):
    """Processed event counters per event type."""

    __tablename__ = "poll_event_metrics"

    event_type: Mapped[str] = mapped_column(String(100), primary_key=True)
    event_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PoolModel(Base):
    """Fractional ownership pool, created once by PoolCreated."""

    __tablename__ = "pools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_address: Mapped[str] = mapped_column(String(42), nullable=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)

    target_amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=Decimal(0))

    # Unix timestamps (seconds) as emitted by the contract.
    contribution_window_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    voting_window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    voting_window_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    purchase_window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)

    usdc_address: Mapped[str] = mapped_column(String(42), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PoolStatus.ACTIVE.value)
    domain_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain_purchased: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fraction_token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("pool_address", name="uq_pools_pool_address"),
        Index("idx_pools_owner", "owner_address"),
        Index("idx_pools_status", "status"),
    )


class ContributionModel(Base):
    """Contribution to a pool (immutable fact)."""

    __tablename__ = "contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("pools.pool_address", ondelete="CASCADE"), nullable=False
    )
    contributor: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_contributions_tx_hash"),
        Index("idx_contributions_pool", "pool_address"),
        Index("idx_contributions_contributor", "contributor"),
    )


class VoteModel(Base):
    """Accumulated vote weight per (pool, voter, domain)."""

    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("pools.pool_address", ondelete="CASCADE"), nullable=False
    )
    voter: Mapped[str] = mapped_column(String(42), nullable=False)
    domain_name: Mapped[str] = mapped_column(String(255), nullable=False)
    weight: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("pool_address", "voter", "domain_name", name="uq_votes_pool_voter_domain"),
        Index("idx_votes_pool", "pool_address"),
        Index("idx_votes_voter", "voter"),
    )


class VotingResultModel(Base):
    """Aggregate vote totals per (pool, domain)."""

    __tablename__ = "voting_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("pools.pool_address", ondelete="CASCADE"), nullable=False
    )
    domain_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_votes: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=Decimal(0))
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("pool_address", "domain_name", name="uq_voting_results_pool_domain"),
        Index("idx_voting_results_pool", "pool_address"),
    )


class DistributionModel(Base):
    """Revenue distribution round for a pool (immutable fact)."""

    __tablename__ = "distributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("pools.pool_address", ondelete="CASCADE"), nullable=False
    )
    distribution_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    snapshot_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("pool_address", "distribution_id", name="uq_distributions_pool_distribution"),
        Index("idx_distributions_pool", "pool_address"),
    )


class ClaimModel(Base):
    """Revenue claimed by a shareholder from a distribution."""

    __tablename__ = "claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    distribution_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("distributions.id", ondelete="CASCADE"), nullable=False
    )
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("distribution_pk", "user_address", name="uq_claims_distribution_user"),
        Index("idx_claims_user", "user_address"),
    )
