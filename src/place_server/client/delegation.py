"""
Shard lock tracking for the client replica.

A shard is writable ("unlocked") once it is delegated to the ephemeral
overlay. ``DelegationStatusCache`` answers ``is_locked`` from memory and
only goes to the ledger for shards not already known unlocked. Concurrent
checks of the same shard share one round-trip: the first caller registers
the shard in ``_in_flight`` and later callers get ``CHECKING`` back
immediately instead of issuing a second request.

Per-shard states:

    UNKNOWN --check--> CHECKING --+--> UNLOCKED   (sticky)
                                  +--> LOCKED     (re-checked on demand)

UNLOCKED is left only through ``mark_undelegated`` (an explicit external
undelegate event) or ``restore`` (rolling back an optimistic unlock).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from enum import StrEnum
from typing import Protocol

from place_server.canvas.addressing import ShardKey, check_shard, shard_address
from place_server.errors import LedgerRPCError, TransientNetworkError
from place_server.ledger.client import AccountInfo

logger = logging.getLogger(__name__)


class ShardStatus(StrEnum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class DelegationState(StrEnum):
    """What the ledger says about a shard account."""

    DELEGATED = "delegated"
    UNDELEGATED = "undelegated"
    NOT_INITIALIZED = "not-initialized"


class DelegationProbe(Protocol):
    async def probe(self, shard_x: int, shard_y: int) -> DelegationState: ...


class AccountReader(Protocol):
    async def get_account_info(self, address: str) -> AccountInfo | None: ...


class LedgerDelegationProbe:
    """
    Authoritative delegation check against both ledger tiers.

    The overlay is asked first: if it holds the shard account with data,
    the shard is delegated. Otherwise the base layer decides: owned by the
    delegation program means delegated, any other owner means undelegated,
    and no account means the shard was never initialized.
    """

    def __init__(
        self,
        base: AccountReader,
        ephemeral: AccountReader,
        *,
        program_id: str,
        delegation_program_id: str,
    ) -> None:
        self.base = base
        self.ephemeral = ephemeral
        self.program_id = program_id
        self.delegation_program_id = delegation_program_id

    async def probe(self, shard_x: int, shard_y: int) -> DelegationState:
        address = shard_address(shard_x, shard_y, self.program_id)
        try:
            overlay = await self.ephemeral.get_account_info(address)
        except (TransientNetworkError, LedgerRPCError) as exc:
            # The overlay being unreachable says nothing; fall through to base.
            logger.debug("Overlay lookup for %s failed: %s", address, exc)
            overlay = None
        if overlay is not None and overlay.data:
            return DelegationState.DELEGATED

        account = await self.base.get_account_info(address)
        if account is None:
            return DelegationState.NOT_INITIALIZED
        if account.owner == self.delegation_program_id:
            return DelegationState.DELEGATED
        return DelegationState.UNDELEGATED


class DelegationStatusCache:
    """Known-unlocked set plus deduplicated authoritative checks."""

    def __init__(self, probe: DelegationProbe) -> None:
        self._probe = probe
        self._unlocked: set[ShardKey] = set()
        self._locked: set[ShardKey] = set()
        self._in_flight: dict[ShardKey, asyncio.Task[DelegationState]] = {}
        self._closed = False

    def is_locked(self, shard_x: int, shard_y: int) -> bool:
        """Return True unless the shard is known unlocked. Never does I/O."""
        return ShardKey(shard_x, shard_y) not in self._unlocked

    def status(self, shard_x: int, shard_y: int) -> ShardStatus:
        key = ShardKey(shard_x, shard_y)
        if key in self._unlocked:
            return ShardStatus.UNLOCKED
        if key in self._in_flight:
            return ShardStatus.CHECKING
        if key in self._locked:
            return ShardStatus.LOCKED
        return ShardStatus.UNKNOWN

    @property
    def unlocked(self) -> frozenset[ShardKey]:
        return frozenset(self._unlocked)

    def in_flight(self) -> frozenset[ShardKey]:
        return frozenset(self._in_flight)

    def mark_unlocked(self, shard_x: int, shard_y: int) -> bool:
        """Record a shard as unlocked. Returns True if that is news."""
        key = ShardKey(shard_x, shard_y)
        self._locked.discard(key)
        if key in self._unlocked:
            return False
        self._unlocked.add(key)
        return True

    def mark_undelegated(self, shard_x: int, shard_y: int) -> bool:
        """Apply an external undelegate event. Returns True if the shard was unlocked."""
        key = ShardKey(shard_x, shard_y)
        was_unlocked = key in self._unlocked
        self._unlocked.discard(key)
        self._locked.add(key)
        return was_unlocked

    def restore(self, shard_x: int, shard_y: int, status: ShardStatus) -> None:
        """Put a shard back into a previously observed state."""
        key = ShardKey(shard_x, shard_y)
        self._unlocked.discard(key)
        self._locked.discard(key)
        if status is ShardStatus.UNLOCKED:
            self._unlocked.add(key)
        elif status is ShardStatus.LOCKED:
            self._locked.add(key)

    async def check_delegation(self, shard_x: int, shard_y: int) -> ShardStatus:
        """Resolve a shard's lock state, asking the ledger only when needed.

        Returns:
            ``UNLOCKED`` straight from memory when known; ``CHECKING`` when
            another check of the same shard is already running; otherwise
            the probe's verdict. A failed or abandoned probe yields
            ``UNKNOWN`` and leaves the cache unchanged.

        Raises:
            InvalidCoordinateError: If the shard is off the grid.
        """
        check_shard(shard_x, shard_y)
        key = ShardKey(shard_x, shard_y)
        if key in self._unlocked:
            return ShardStatus.UNLOCKED
        if key in self._in_flight:
            return ShardStatus.CHECKING
        if self._closed:
            return ShardStatus.UNKNOWN

        task = asyncio.create_task(self._probe.probe(shard_x, shard_y))
        self._in_flight[key] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

        if task.cancelled() or self._closed:
            return ShardStatus.UNKNOWN
        exc = task.exception()
        if exc is not None:
            if isinstance(exc, (TransientNetworkError, LedgerRPCError)):
                logger.warning("Delegation check for shard %s failed: %s", key, exc)
                return ShardStatus.UNKNOWN
            raise exc

        if task.result() is DelegationState.DELEGATED:
            self.mark_unlocked(shard_x, shard_y)
            return ShardStatus.UNLOCKED
        self._locked.add(key)
        return ShardStatus.LOCKED

    async def check_many(self, keys: Iterable[tuple[int, int]]) -> dict[ShardKey, ShardStatus]:
        """Check a batch of shards concurrently (for example, all visible ones)."""
        unique = list(dict.fromkeys(ShardKey(x, y) for x, y in keys))
        results = await asyncio.gather(
            *(self.check_delegation(key.shard_x, key.shard_y) for key in unique),
            return_exceptions=True,
        )
        statuses: dict[ShardKey, ShardStatus] = {}
        for key, result in zip(unique, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, asyncio.CancelledError):
                    logger.warning("Delegation check for shard %s failed: %s", key, result)
                statuses[key] = ShardStatus.UNKNOWN
            else:
                statuses[key] = result
        return statuses

    def close(self) -> None:
        """Abandon in-flight checks. Their callers get ``UNKNOWN``; nothing raises."""
        self._closed = True
        for task in self._in_flight.values():
            task.cancel()
