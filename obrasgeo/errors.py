"""Exception types raised at the package's I/O boundaries."""

from __future__ import annotations

__all__ = [
    "GeodataError",
    "SchemaError",
    "FetchError",
    "FetchTimeout",
    "ConfigError",
]


class GeodataError(RuntimeError):
    """Base class for recoverable geodata loading failures."""

    def __init__(self, message: str, *, key: str | None = None):
        super().__init__(message)
        self.key = key


class SchemaError(GeodataError, ValueError):
    """Fetched payload is not a valid feature collection."""


class FetchError(GeodataError):
    """Network, HTTP or filesystem failure while fetching a resource."""


class FetchTimeout(FetchError, TimeoutError):
    pass


class ConfigError(GeodataError, ValueError):
    pass
