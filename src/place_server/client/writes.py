"""
Ledger write gateway.

Wraps whatever actually signs and submits transactions (``LedgerWriter``)
and turns its raw failures into the typed ``LedgerWriteError`` family.
The one automatic recovery is a stale delegation: when the overlay rejects
a pixel write because it no longer holds the shard, the gateway re-delegates
the shard and retries the write exactly once. Everything else, including a
second stale rejection and any funding failure, is surfaced to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from place_server.canvas.addressing import check_pixel, check_shard, shard_for_pixel
from place_server.canvas.shard import check_color
from place_server.errors import (
    InsufficientFundsError,
    LedgerWriteError,
    PlaceError,
    StaleDelegationError,
)

logger = logging.getLogger(__name__)

# Substrings the overlay returns when it no longer holds a delegated account.
STALE_DELEGATION_MARKERS = (
    "InvalidWritableAccount",
    "AccountNotFound",
    "not delegated",
)

INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient lamports",
    "InsufficientFunds",
    "InsufficientFundsForRent",
)


class LedgerWriter(Protocol):
    """Signs and submits canvas transactions. Each call returns the entry id."""

    async def place_pixel(
        self, shard_x: int, shard_y: int, px: int, py: int, color: int
    ) -> str: ...

    async def erase_pixel(self, shard_x: int, shard_y: int, px: int, py: int) -> str: ...

    async def initialize_shard(self, shard_x: int, shard_y: int) -> str: ...

    async def delegate_shard(self, shard_x: int, shard_y: int) -> str: ...


def classify_write_error(exc: BaseException) -> PlaceError:
    """Map a raw submission failure onto the place error hierarchy."""
    if isinstance(exc, PlaceError):
        return exc
    message = str(exc)
    lowered = message.lower()
    if any(marker.lower() in lowered for marker in INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFundsError(message)
    if any(marker.lower() in lowered for marker in STALE_DELEGATION_MARKERS):
        return StaleDelegationError(message)
    return LedgerWriteError(message or type(exc).__name__)


class LedgerWriteGateway:
    """Typed, validated front for a ``LedgerWriter``."""

    def __init__(self, writer: LedgerWriter) -> None:
        self.writer = writer

    async def place_pixel(self, px: int, py: int, color: int) -> str:
        check_pixel(px, py)
        check_color(color)
        shard_x, shard_y = shard_for_pixel(px, py)
        return await self._with_redelegation(
            shard_x, shard_y, lambda: self.writer.place_pixel(shard_x, shard_y, px, py, color)
        )

    async def erase_pixel(self, px: int, py: int) -> str:
        check_pixel(px, py)
        shard_x, shard_y = shard_for_pixel(px, py)
        return await self._with_redelegation(
            shard_x, shard_y, lambda: self.writer.erase_pixel(shard_x, shard_y, px, py)
        )

    async def unlock_shard(self, shard_x: int, shard_y: int, *, initialize: bool = True) -> str:
        """Create (when ``initialize``) and delegate a shard. Never retried."""
        check_shard(shard_x, shard_y)
        if initialize:
            await self._submit(lambda: self.writer.initialize_shard(shard_x, shard_y))
        return await self._submit(lambda: self.writer.delegate_shard(shard_x, shard_y))

    async def _with_redelegation(
        self, shard_x: int, shard_y: int, operation: Callable[[], Awaitable[str]]
    ) -> str:
        try:
            return await self._submit(operation)
        except StaleDelegationError as exc:
            logger.info(
                "Shard (%d, %d) delegation is stale (%s); re-delegating and retrying once",
                shard_x,
                shard_y,
                exc,
            )
        await self._submit(lambda: self.writer.delegate_shard(shard_x, shard_y))
        return await self._submit(operation)

    @staticmethod
    async def _submit(operation: Callable[[], Awaitable[str]]) -> str:
        try:
            return await operation()
        except PlaceError:
            raise
        except Exception as exc:
            raise classify_write_error(exc) from exc
