"""Event indexer - projects feed events into derived pool state."""

from domadao_indexer.indexer.events import EventDecodeError, IndexableEvent, decode_event
from domadao_indexer.indexer.indexer import (
    EventIndexer,
    IndexOutcome,
    IndexSummary,
    ProjectionError,
)

__all__ = [
    "EventDecodeError",
    "EventIndexer",
    "IndexOutcome",
    "IndexSummary",
    "IndexableEvent",
    "ProjectionError",
    "decode_event",
]
