"""DomaDAO indexer - Doma Poll API consumer and pool state indexer."""

__version__ = "0.1.0"
