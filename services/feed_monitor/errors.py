"""Exception types raised by the feed monitor."""


class FeedMonitorError(Exception):
    """Base class for all feed monitor errors."""


class FeedSourceError(FeedMonitorError):
    """Raised when the feed list cannot be downloaded or parsed."""


class HistoryStoreError(FeedMonitorError):
    """Raised when historical listener averages cannot be read or written."""


class ConfigError(FeedMonitorError):
    """Raised when the configuration file is missing or invalid."""
