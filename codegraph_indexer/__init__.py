"""CodeGraph indexer: keeps a property graph of a source tree in sync."""

__version__ = "0.3.0"
