"""Data models for the Doma Poll API feed."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Event types delivered by the feed."""

    # Fractionalization contract events
    POOL_CREATED = "POOL_CREATED"
    CONTRIBUTION_MADE = "CONTRIBUTION_MADE"
    VOTE_CAST = "VOTE_CAST"
    REVENUE_DISTRIBUTED = "REVENUE_DISTRIBUTED"
    REVENUE_CLAIMED = "REVENUE_CLAIMED"
    DOMAIN_PURCHASED = "DOMAIN_PURCHASED"
    BUYOUT_INITIATED = "BUYOUT_INITIATED"
    BUYOUT_COMPLETED = "BUYOUT_COMPLETED"

    # Doma marketplace name token lifecycle
    NAME_TOKEN_MINTED = "NAME_TOKEN_MINTED"
    NAME_TOKEN_TRANSFERRED = "NAME_TOKEN_TRANSFERRED"
    NAME_TOKEN_RENEWED = "NAME_TOKEN_RENEWED"
    NAME_TOKEN_BURNED = "NAME_TOKEN_BURNED"
    LOCK_STATUS_CHANGED = "LOCK_STATUS_CHANGED"
    METADATA_UPDATED = "METADATA_UPDATED"


MARKETPLACE_EVENT_TYPES = frozenset(
    {
        EventType.NAME_TOKEN_MINTED,
        EventType.NAME_TOKEN_TRANSFERRED,
        EventType.NAME_TOKEN_RENEWED,
        EventType.NAME_TOKEN_BURNED,
        EventType.LOCK_STATUS_CHANGED,
        EventType.METADATA_UPDATED,
    }
)


def chain_id_from_network_id(network_id: str | None) -> str | None:
    """Extract the chain reference from a CAIP-2 network id ("eip155:1" -> "1")."""
    if not network_id:
        return None
    _, sep, reference = network_id.partition(":")
    return reference if sep else network_id


def _optional_int(value: Any) -> int | None:
    """Parse a decimal or 0x-hex provenance integer; None when unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text[:2].lower() == "0x" else int(text)
        except ValueError:
            return None
    return None


def _optional_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class FeedEvent:
    """A single event from the feed, normalized from either wire shape.

    The flat shape carries ``eventId``/``eventType`` and provenance at the top
    level. The native Poll API shape carries ``id``/``type`` and nests
    provenance inside ``eventData``. ``event_data`` always keeps the original
    payload verbatim.
    """

    event_id: int
    unique_id: str
    event_type: str
    event_data: dict[str, Any] = field(default_factory=dict, compare=False)
    name: str | None = None
    token_id: str | None = None
    network_id: str | None = None
    chain_id: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    log_index: int | None = None
    finalized: bool = False
    correlation_id: str | None = None
    relay_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedEvent":
        """Create a FeedEvent from a feed response entry.

        Raises:
            ValueError: If the entry lacks an event id, unique id or type. Unusable
                provenance fields are normalized to None instead.
        """
        raw_id = _first(data.get("eventId"), data.get("id"))
        unique_id = data.get("uniqueId")
        event_type = _first(data.get("eventType"), data.get("type"))
        if raw_id is None or not unique_id or not event_type:
            raise ValueError("Feed event requires eventId, uniqueId and eventType")

        payload = data.get("eventData")
        if not isinstance(payload, dict):
            payload = {}
        tx = data.get("tx")
        if not isinstance(tx, dict):
            tx = {}

        network_id = _optional_str(_first(data.get("networkId"), payload.get("networkId")))
        token_id = _first(data.get("tokenId"), payload.get("tokenId"))

        return cls(
            event_id=int(raw_id),
            unique_id=str(unique_id),
            event_type=str(event_type),
            event_data=data,
            name=_optional_str(_first(data.get("name"), payload.get("name"))),
            token_id=str(token_id) if token_id is not None else None,
            network_id=network_id,
            chain_id=_optional_str(
                _first(data.get("chainId"), chain_id_from_network_id(network_id))
            ),
            tx_hash=_optional_str(
                _first(data.get("txHash"), payload.get("txHash"), tx.get("hash"))
            ),
            block_number=_optional_int(
                _first(data.get("blockNumber"), payload.get("blockNumber"), tx.get("blockNumber"))
            ),
            log_index=_optional_int(
                _first(data.get("logIndex"), payload.get("logIndex"), tx.get("logIndex"))
            ),
            finalized=_parse_bool(_first(data.get("finalized"), payload.get("finalized"), False)),
            correlation_id=_optional_str(
                _first(data.get("correlationId"), payload.get("correlationId"))
            ),
            relay_id=_optional_str(data.get("relayId")),
        )

    @property
    def args(self) -> dict[str, Any]:
        """Event arguments (contract event ``data`` or the ``eventData`` object)."""
        nested = self.event_data.get("data")
        if isinstance(nested, dict):
            return nested
        payload = self.event_data.get("eventData")
        return payload if isinstance(payload, dict) else {}


@dataclass(frozen=True)
class PollPage:
    """One page of events returned by a poll."""

    events: tuple[FeedEvent, ...]
    last_id: int | None = None
    has_more: bool = False

    @property
    def max_event_id(self) -> int | None:
        return max((e.event_id for e in self.events), default=None)
