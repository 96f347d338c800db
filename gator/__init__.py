"""RSS feed aggregator library: SQLite storage, RSS fetching, config and command handlers."""

__version__ = "0.1.0"