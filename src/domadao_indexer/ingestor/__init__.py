"""Data ingestion layer - Doma Poll API event feed."""

from domadao_indexer.ingestor.feed_client import (
    AuthError,
    FeedClientError,
    PollClient,
    TransportError,
)
from domadao_indexer.ingestor.models import (
    EventType,
    FeedEvent,
    PollPage,
)

__all__ = [
    "AuthError",
    "EventType",
    "FeedClientError",
    "FeedEvent",
    "PollClient",
    "PollPage",
    "TransportError",
]
