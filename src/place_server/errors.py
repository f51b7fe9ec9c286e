"""Domain exception hierarchy shared by the indexer and the client replica.

The DB package keeps its own typed errors in ``place_server.db.errors``; the
classes here cover everything above the storage layer:

    PlaceError
    ├── InvalidCoordinateError   rejected before any network call
    ├── InvalidColorError        rejected before any network call
    ├── ShardLockedError         write attempted on a shard not known unlocked
    ├── TransientNetworkError    retry with backoff, never fatal to a stream
    ├── LedgerRPCError           non-transient JSON-RPC error response
    ├── MalformedEventError      skip the entry, log, continue
    └── LedgerWriteError
        ├── StaleDelegationError     one re-bind and retry
        └── InsufficientFundsError   surfaced, never retried

A duplicate entry is not an error: the ingestor reports it through
``ApplyResult.duplicate``.
"""

from __future__ import annotations


class PlaceError(Exception):
    """Base exception for all place_server domain failures."""


class InvalidCoordinateError(PlaceError, ValueError):
    """A pixel, shard or geographic coordinate is outside its valid range."""


class InvalidColorError(PlaceError, ValueError):
    """A color index does not fit the shard pixel encoding."""


class ShardLockedError(PlaceError):
    """A write targeted a shard that is not known to be unlocked.

    Attributes:
        shard_x: Shard column.
        shard_y: Shard row.
    """

    def __init__(self, shard_x: int, shard_y: int) -> None:
        super().__init__(f"shard ({shard_x}, {shard_y}) is locked")
        self.shard_x = shard_x
        self.shard_y = shard_y


class TransientNetworkError(PlaceError):
    """A ledger request failed in a way that is expected to succeed on retry."""


class LedgerRPCError(PlaceError):
    """The ledger answered a JSON-RPC request with an error object.

    Attributes:
        code: JSON-RPC error code (0 when the response carried none).
        data: Optional ``data`` member of the error object.
    """

    def __init__(self, message: str, *, code: int = 0, data: object | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class MalformedEventError(PlaceError):
    """A log payload carried a known discriminator but could not be decoded."""


class LedgerWriteError(PlaceError):
    """A ledger write (place, erase, initialize, delegate) failed."""


class StaleDelegationError(LedgerWriteError):
    """The shard's fast-path binding expired; a re-bind may fix the write."""


class InsufficientFundsError(LedgerWriteError):
    """The paying account cannot cover the write. Never retried."""
