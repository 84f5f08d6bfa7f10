"""Typed event variants decoded from normalized feed events.

Each feed event decodes into exactly one frozen variant. Contract events carry
validated arguments; marketplace and unrecognized events are kept as opaque
variants so they can be logged and skipped.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from domadao_indexer.ingestor.models import MARKETPLACE_EVENT_TYPES, EventType, FeedEvent

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class EventDecodeError(Exception):
    """Raised when a contract event payload is missing or has invalid fields."""


@dataclass(frozen=True)
class PoolCreated:
    pool_address: str
    owner_address: str
    target_amount: Decimal
    contribution_window_end: int
    voting_window_start: int
    voting_window_end: int
    purchase_window_start: int
    usdc_address: str


@dataclass(frozen=True)
class ContributionMade:
    pool_address: str
    contributor: str
    amount: Decimal
    tx_hash: str
    block_number: int | None = None


@dataclass(frozen=True)
class VoteCast:
    pool_address: str
    voter: str
    domain_name: str
    weight: Decimal
    tx_hash: str | None = None
    block_number: int | None = None


@dataclass(frozen=True)
class RevenueDistributed:
    pool_address: str
    distribution_id: int
    total_amount: Decimal
    snapshot_timestamp: int
    tx_hash: str | None = None
    block_number: int | None = None


@dataclass(frozen=True)
class RevenueClaimed:
    pool_address: str
    distribution_id: int
    user_address: str
    amount: Decimal
    claimed_at: datetime | None = None
    tx_hash: str | None = None
    block_number: int | None = None


@dataclass(frozen=True)
class DomainPurchased:
    pool_address: str
    domain_name: str
    fraction_token_address: str | None = None


@dataclass(frozen=True)
class BuyoutInitiated:
    pool_address: str
    buyer: str | None = None
    price: Decimal | None = None


@dataclass(frozen=True)
class BuyoutCompleted:
    pool_address: str
    buyer: str | None = None
    price: Decimal | None = None


@dataclass(frozen=True)
class MarketplaceEvent:
    """Doma name token lifecycle event; recorded but not projected."""

    event_type: EventType
    name: str | None = None
    token_id: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str


IndexableEvent = Union[
    PoolCreated,
    ContributionMade,
    VoteCast,
    RevenueDistributed,
    RevenueClaimed,
    DomainPurchased,
    BuyoutInitiated,
    BuyoutCompleted,
    MarketplaceEvent,
    UnknownEvent,
]


def _get(args: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = args.get(key)
        if value is not None and value != "":
            return value
    return None


def _require(args: dict[str, Any], *keys: str) -> Any:
    value = _get(args, *keys)
    if value is None:
        raise EventDecodeError(f"Missing required field {keys[0]!r}")
    return value


def _address(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not ADDRESS_RE.match(value):
        raise EventDecodeError(f"Invalid address for {field_name!r}: {value!r}")
    return value.lower()


def _optional_address(value: Any, field_name: str) -> str | None:
    return _address(value, field_name) if value is not None else None


def _uint(value: Any, field_name: str) -> Decimal:
    """Parse a uint256 amount (decimal string or int) without precision loss."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise EventDecodeError(f"Invalid amount for {field_name!r}: {value!r}") from e
    if not amount.is_finite() or amount < 0 or amount != amount.to_integral_value():
        raise EventDecodeError(f"Invalid amount for {field_name!r}: {value!r}")
    return Decimal(int(amount))


def _int(value: Any, field_name: str) -> int:
    try:
        return int(str(value))
    except ValueError as e:
        raise EventDecodeError(f"Invalid integer for {field_name!r}: {value!r}") from e


def _require_tx_hash(event: FeedEvent) -> str:
    if not event.tx_hash:
        raise EventDecodeError("Missing required field 'txHash'")
    return event.tx_hash.lower()


def decode_event(event: FeedEvent) -> IndexableEvent:
    """Decode a normalized feed event into its typed variant.

    Raises:
        EventDecodeError: If a contract event has missing or invalid fields.
    """
    try:
        event_type = EventType(event.event_type)
    except ValueError:
        return UnknownEvent(event_type=event.event_type)

    if event_type in MARKETPLACE_EVENT_TYPES:
        return MarketplaceEvent(event_type=event_type, name=event.name, token_id=event.token_id)

    args = event.args
    tx_hash = event.tx_hash.lower() if event.tx_hash else None

    if event_type == EventType.POOL_CREATED:
        return PoolCreated(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            owner_address=_address(_require(args, "ownerAddress", "owner"), "ownerAddress"),
            target_amount=_uint(_require(args, "targetAmount"), "targetAmount"),
            contribution_window_end=_int(
                _require(args, "contributionWindowEnd"), "contributionWindowEnd"
            ),
            voting_window_start=_int(_require(args, "votingWindowStart"), "votingWindowStart"),
            voting_window_end=_int(_require(args, "votingWindowEnd"), "votingWindowEnd"),
            purchase_window_start=_int(
                _require(args, "purchaseWindowStart"), "purchaseWindowStart"
            ),
            usdc_address=_address(_require(args, "usdcAddress"), "usdcAddress"),
        )

    if event_type == EventType.CONTRIBUTION_MADE:
        return ContributionMade(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            contributor=_address(_require(args, "contributor"), "contributor"),
            amount=_uint(_require(args, "amount"), "amount"),
            tx_hash=_require_tx_hash(event),
            block_number=event.block_number,
        )

    if event_type == EventType.VOTE_CAST:
        domain_name = _get(args, "domainName") or event.name
        if not domain_name:
            raise EventDecodeError("Missing required field 'domainName'")
        return VoteCast(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            voter=_address(_require(args, "voter"), "voter"),
            domain_name=str(domain_name),
            weight=_uint(_require(args, "weight"), "weight"),
            tx_hash=tx_hash,
            block_number=event.block_number,
        )

    if event_type == EventType.REVENUE_DISTRIBUTED:
        return RevenueDistributed(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            distribution_id=_int(_require(args, "distributionId"), "distributionId"),
            total_amount=_uint(_require(args, "totalAmount", "amount"), "totalAmount"),
            snapshot_timestamp=_int(
                _require(args, "snapshotTimestamp", "timestamp"), "snapshotTimestamp"
            ),
            tx_hash=tx_hash,
            block_number=event.block_number,
        )

    if event_type == EventType.REVENUE_CLAIMED:
        timestamp = _get(args, "timestamp", "claimedAt")
        return RevenueClaimed(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            distribution_id=_int(_require(args, "distributionId"), "distributionId"),
            user_address=_address(_require(args, "user", "claimant"), "user"),
            amount=_uint(_require(args, "amount"), "amount"),
            claimed_at=(
                datetime.fromtimestamp(_int(timestamp, "timestamp"), tz=UTC)
                if timestamp is not None
                else None
            ),
            tx_hash=tx_hash,
            block_number=event.block_number,
        )

    if event_type == EventType.DOMAIN_PURCHASED:
        domain_name = _get(args, "domainName") or event.name
        if not domain_name:
            raise EventDecodeError("Missing required field 'domainName'")
        return DomainPurchased(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            domain_name=str(domain_name),
            fraction_token_address=_optional_address(
                _get(args, "fractionTokenAddress", "fractionToken"), "fractionTokenAddress"
            ),
        )

    if event_type in (EventType.BUYOUT_INITIATED, EventType.BUYOUT_COMPLETED):
        price = _get(args, "buyoutPrice", "finalPrice")
        variant = BuyoutInitiated if event_type == EventType.BUYOUT_INITIATED else BuyoutCompleted
        return variant(
            pool_address=_address(_require(args, "poolAddress"), "poolAddress"),
            buyer=_optional_address(_get(args, "buyer"), "buyer"),
            price=_uint(price, "price") if price is not None else None,
        )

    # New EventType members must be decoded above.
    return UnknownEvent(event_type=event.event_type)
