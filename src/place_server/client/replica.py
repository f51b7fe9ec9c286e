"""
Client-side canvas replica.

``ReplicaSyncEngine`` mirrors pixel colors and shard lock state in memory.
It is seeded from a snapshot, kept current by the live event stream, and
shows local writes before the ledger confirms them.

Each pixel has a ``PixelEntry``: the authoritative color, optionally
shadowed by local writes still in flight. Writes to one pixel may overlap
and settle in any order; the pixel shows the newest unsettled one. A
confirmed write is promoted into the authoritative color unless a newer
local write was already confirmed there.

    Unknown --bulk_load / live event--> KNOWN(color)
    KNOWN --optimistic_apply--> PENDING(color)
    PENDING --confirm--> CONFIRMED(color)
    PENDING --rollback--> ROLLED_BACK(previous color)

A remote event always supersedes local state. If it lands while writes
are in flight, they are superseded: their later confirm or rollback is
ignored. Between ledger values the later timestamp wins, so a late
delivery of an older event does not undo a newer one; ties go to the
event applied last. A confirmed local write outranks undated snapshot
data until the ledger dates the pixel. Writes are matched through a
generation number drawn from one engine-wide counter.

Unlocking a shard goes through the same optimistic path. While the unlock
is in flight, a live ``ShardInitialized`` for that shard is held back. If
the local unlock succeeds, the held event only refreshes the owner. If it
fails, the held event is applied, because the ledger reports that someone
else initialized the shard.

Everything here runs on one event loop. The only awaits are the ledger
write and the delegation checks, and state is never read across them
without being checked again.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import NamedTuple

from place_server.canvas.addressing import ShardKey, check_pixel, check_shard, shard_for_pixel
from place_server.canvas.constants import TRANSPARENT
from place_server.canvas.shard import check_color
from place_server.client.delegation import DelegationStatusCache, ShardStatus
from place_server.client.writes import LedgerWriteGateway
from place_server.core.bus import CanvasBus
from place_server.core.events import Events
from place_server.errors import InvalidColorError, PlaceError, ShardLockedError
from place_server.ledger.events import CanvasEvent, PixelChanged, ShardInitialized

logger = logging.getLogger(__name__)

RECENT_LIMIT = 50


class PixelStatus(StrEnum):
    KNOWN = "known"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PixelEntry:
    """
    Replica state of one pixel.

    Attributes:
        color: Authoritative color (0 = unset).
        timestamp: Ledger timestamp of ``color``; 0 for snapshot data.
        status: Where the pixel is in its write lifecycle.
        in_flight: Unsettled local writes as ``(generation, color)``, oldest
            first. The newest one is what the pixel shows.
        confirmed_generation: Newest local write promoted into ``color``
            since the last ledger value; 0 when ``color`` came from the ledger.
    """

    color: int = TRANSPARENT
    timestamp: int = 0
    status: PixelStatus = PixelStatus.KNOWN
    in_flight: list[tuple[int, int]] = field(default_factory=list)
    confirmed_generation: int = 0

    @property
    def display_color(self) -> int:
        if self.in_flight:
            return self.in_flight[-1][1]
        return self.color

    def settle(self, generation: int) -> bool:
        """Drop a write from ``in_flight``. Returns False if it is not there."""
        for index, (in_flight_generation, _) in enumerate(self.in_flight):
            if in_flight_generation == generation:
                del self.in_flight[index]
                return True
        return False


@dataclass(frozen=True)
class PendingWrite:
    """Handle for one optimistic pixel write, used to confirm or roll it back."""

    px: int
    py: int
    color: int
    generation: int

    @property
    def shard(self) -> ShardKey:
        return shard_for_pixel(self.px, self.py)


@dataclass
class ShardInfo:
    owner: str | None = None
    pixel_count: int = 0


class SnapshotPixel(NamedTuple):
    px: int
    py: int
    color: int
    timestamp: int = 0


class RecentPixel(NamedTuple):
    px: int
    py: int
    color: int
    timestamp: int


class RecentShard(NamedTuple):
    shard_x: int
    shard_y: int
    owner: str | None
    timestamp: int


class ReplicaSyncEngine:
    """
    In-memory canvas mirror with optimistic writes.

    Args:
        delegation: Lock state cache; the engine's ``is_locked`` reads it.
        gateway: Ledger write gateway. Without one, the engine is read-only.
        wallet: Main wallet of the local user, recorded as owner of shards
            it unlocks.
        bus: Bus for rendering notifications. A private one is created when
            omitted.
    """

    def __init__(
        self,
        delegation: DelegationStatusCache,
        gateway: LedgerWriteGateway | None = None,
        *,
        wallet: str | None = None,
        bus: CanvasBus | None = None,
        recent_limit: int = RECENT_LIMIT,
    ) -> None:
        self.delegation = delegation
        self.gateway = gateway
        self.wallet = wallet
        self.bus = bus if bus is not None else CanvasBus()
        self.recent_pixels: deque[RecentPixel] = deque(maxlen=recent_limit)
        self.recent_shards: deque[RecentShard] = deque(maxlen=recent_limit)
        self._pixels: dict[tuple[int, int], PixelEntry] = {}
        self._shards: dict[ShardKey, ShardInfo] = {}
        self._unlocking: dict[ShardKey, list[ShardInitialized]] = {}
        self._generations: Iterator[int] = itertools.count(1)
        self._follow_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    # =========================================================================
    # READS
    # =========================================================================

    def color(self, px: int, py: int) -> int:
        """Color to display: the pending color if any, else the authoritative one."""
        entry = self._pixels.get((px, py))
        return entry.display_color if entry else TRANSPARENT

    def entry(self, px: int, py: int) -> PixelEntry | None:
        return self._pixels.get((px, py))

    def shard_info(self, shard_x: int, shard_y: int) -> ShardInfo | None:
        return self._shards.get(ShardKey(shard_x, shard_y))

    def is_locked(self, shard_x: int, shard_y: int) -> bool:
        return self.delegation.is_locked(shard_x, shard_y)

    def is_unlocking(self, shard_x: int, shard_y: int) -> bool:
        return ShardKey(shard_x, shard_y) in self._unlocking

    @property
    def pixel_count(self) -> int:
        return len(self._pixels)

    # =========================================================================
    # AUTHORITATIVE UPDATES
    # =========================================================================

    def bulk_load(self, pixels: Iterable[SnapshotPixel | tuple[int, ...]]) -> int:
        """
        Merge snapshot pixels into the replica.

        An item is applied when the pixel is unknown or the item's timestamp
        is at least the stored one. Timestamp 0 marks undated snapshot data,
        so it never replaces a dated value. A confirmed local write is only
        replaced by an item dated after the pixel's stored timestamp.
        Invalid items are skipped.

        Returns:
            Number of items applied.
        """
        total = applied = 0
        for item in pixels:
            total += 1
            px, py, color, timestamp = SnapshotPixel(*item)
            try:
                check_pixel(px, py)
                check_color(color)
            except PlaceError as exc:
                logger.warning("Skipping snapshot pixel (%s, %s): %s", px, py, exc)
                continue
            key = (px, py)
            entry = self._pixels.get(key)
            if entry is None:
                entry = self._pixels[key] = PixelEntry()
            elif timestamp < entry.timestamp or (
                entry.confirmed_generation and timestamp <= entry.timestamp
            ):
                continue
            self._set_authoritative(key, entry, color, timestamp)
            entry.confirmed_generation = 0
            applied += 1

        logger.debug("Snapshot merged: %d of %d pixels applied", applied, total)
        self.bus.emit(Events.SNAPSHOT_LOADED, {"pixels": total, "applied": applied})
        return applied

    def apply_remote_event(self, event: CanvasEvent) -> None:
        """Apply a ledger event over any local state for its key."""
        if isinstance(event, PixelChanged):
            self._apply_remote_pixel(event)
        elif isinstance(event, ShardInitialized):
            self._apply_remote_shard(event)
        else:
            raise TypeError(f"not a canvas event: {event!r}")

    def _apply_remote_pixel(self, event: PixelChanged) -> None:
        check_pixel(event.px, event.py)
        key = (event.px, event.py)
        entry = self._pixels.setdefault(key, PixelEntry())
        previous = entry.display_color
        if entry.in_flight:
            logger.debug("Remote event supersedes %d in-flight writes at %s", len(entry.in_flight), key)
            entry.in_flight.clear()
        entry.status = PixelStatus.KNOWN
        if event.timestamp >= entry.timestamp:
            self._set_authoritative(key, entry, event.color, event.timestamp)
            entry.confirmed_generation = 0
        else:
            logger.debug("Ignoring stale color for %s (ts %d < %d)", key, event.timestamp, entry.timestamp)
        self.recent_pixels.appendleft(RecentPixel(event.px, event.py, event.color, event.timestamp))
        self._emit_pixel(event.px, event.py, previous, entry)

    def _apply_remote_shard(self, event: ShardInitialized) -> None:
        check_shard(event.shard_x, event.shard_y)
        held = self._unlocking.get(event.shard)
        if held is not None:
            logger.debug("Holding ShardInitialized for %s until local unlock settles", event.shard)
            held.append(event)
            return
        self._record_unlocked_shard(event.shard, event.main_wallet, event.timestamp)

    def set_shard_owner(self, shard_x: int, shard_y: int, owner: str | None) -> None:
        self._shards.setdefault(ShardKey(shard_x, shard_y), ShardInfo()).owner = owner

    def mark_undelegated(self, shard_x: int, shard_y: int) -> None:
        """Apply an external undelegate/relock event for a shard."""
        if self.delegation.mark_undelegated(shard_x, shard_y):
            self.bus.emit(Events.SHARD_LOCKED, {"shard_x": shard_x, "shard_y": shard_y})

    def reset(self) -> None:
        """Drop pixel and shard state before reseeding after a reconnect."""
        self._pixels.clear()
        self._shards.clear()
        self.recent_pixels.clear()
        self.recent_shards.clear()

    def _set_authoritative(
        self, key: tuple[int, int], entry: PixelEntry, color: int, timestamp: int
    ) -> None:
        info = self._shards.setdefault(shard_for_pixel(*key), ShardInfo())
        if entry.color == TRANSPARENT and color != TRANSPARENT:
            info.pixel_count += 1
        elif entry.color != TRANSPARENT and color == TRANSPARENT:
            info.pixel_count -= 1
        entry.color = color
        entry.timestamp = timestamp

    def _record_unlocked_shard(self, key: ShardKey, owner: str | None, timestamp: int) -> None:
        self._shards.setdefault(key, ShardInfo()).owner = owner
        self._push_recent_shard(RecentShard(key.shard_x, key.shard_y, owner, timestamp))
        self.delegation.mark_unlocked(*key)
        self.bus.emit(
            Events.SHARD_UNLOCKED,
            {"shard_x": key.shard_x, "shard_y": key.shard_y, "owner": owner},
        )

    def _push_recent_shard(self, recent: RecentShard) -> None:
        # One row per shard: the live event usually trails our own unlock.
        for existing in list(self.recent_shards):
            if (existing.shard_x, existing.shard_y) == (recent.shard_x, recent.shard_y):
                self.recent_shards.remove(existing)
        self.recent_shards.appendleft(recent)

    def _emit_pixel(self, px: int, py: int, previous: int, entry: PixelEntry) -> None:
        self.bus.emit(
            Events.PIXEL_CHANGED,
            {
                "px": px,
                "py": py,
                "color": entry.display_color,
                "previous": previous,
                "status": entry.status.value,
            },
        )

    # =========================================================================
    # OPTIMISTIC WRITES
    # =========================================================================

    def optimistic_apply(self, px: int, py: int, color: int) -> PendingWrite:
        """
        Show ``color`` at the pixel right away.

        Raises:
            InvalidCoordinateError: If the pixel is off the canvas.
            InvalidColorError: If the color does not fit the pixel encoding.
        """
        check_pixel(px, py)
        check_color(color)
        entry = self._pixels.setdefault((px, py), PixelEntry())
        previous = entry.display_color
        pending = PendingWrite(px=px, py=py, color=color, generation=next(self._generations))
        entry.in_flight.append((pending.generation, color))
        entry.status = PixelStatus.PENDING
        self._emit_pixel(px, py, previous, entry)
        return pending

    def confirm(self, pending: PendingWrite) -> bool:
        """Promote a pending write. Returns False if something superseded it."""
        key = (pending.px, pending.py)
        entry = self._pixels.get(key)
        if entry is None or not entry.settle(pending.generation):
            return False
        if pending.generation > entry.confirmed_generation:
            # Stays at the prior timestamp until the ledger echo dates it.
            self._set_authoritative(key, entry, pending.color, entry.timestamp)
            entry.confirmed_generation = pending.generation
        entry.status = PixelStatus.PENDING if entry.in_flight else PixelStatus.CONFIRMED
        return True

    def rollback(self, pending: PendingWrite, error: BaseException | None = None) -> bool:
        """Undo a pending write. Returns False if something superseded it."""
        entry = self._pixels.get((pending.px, pending.py))
        if entry is None or not entry.settle(pending.generation):
            return False
        entry.status = PixelStatus.PENDING if entry.in_flight else PixelStatus.ROLLED_BACK
        self.bus.emit(
            Events.PIXEL_ROLLED_BACK,
            {
                "px": pending.px,
                "py": pending.py,
                "color": entry.display_color,
                "error": str(error) if error is not None else "",
            },
        )
        return True

    async def place_pixel(self, px: int, py: int, color: int, *, timeout: float | None = None) -> str:
        """
        Paint a pixel: validate, show it, write it, then confirm or roll back.

        Returns:
            The ledger entry id of the write.

        Raises:
            InvalidCoordinateError, InvalidColorError, ShardLockedError:
                Before any network call.
            LedgerWriteError: The write failed (after the single stale
                delegation retry). The pixel is already rolled back.
            TimeoutError: ``timeout`` elapsed. The pixel is already rolled
                back; the live stream corrects it if the write still lands.
        """
        if color == TRANSPARENT:
            raise InvalidColorError("color 0 clears a pixel; use erase_pixel")
        return await self._write_pixel(
            "place", px, py, color, timeout, lambda gateway: gateway.place_pixel(px, py, color)
        )

    async def erase_pixel(self, px: int, py: int, *, timeout: float | None = None) -> str:
        return await self._write_pixel(
            "erase", px, py, TRANSPARENT, timeout, lambda gateway: gateway.erase_pixel(px, py)
        )

    async def _write_pixel(
        self,
        action: str,
        px: int,
        py: int,
        color: int,
        timeout: float | None,
        submit: Callable[[LedgerWriteGateway], Awaitable[str]],
    ) -> str:
        check_pixel(px, py)
        check_color(color)
        shard = shard_for_pixel(px, py)
        if shard in self._unlocking or self.delegation.is_locked(*shard):
            raise ShardLockedError(*shard)
        gateway = self._require_gateway()

        pending = self.optimistic_apply(px, py, color)
        async with self._rollback_on_failure(pending, action):
            return await asyncio.wait_for(submit(gateway), timeout)

    @asynccontextmanager
    async def _rollback_on_failure(self, pending: PendingWrite, action: str):
        try:
            yield
        except BaseException as exc:
            self.rollback(pending, exc)
            if isinstance(exc, Exception):
                self._report_failure(action, pending.shard, exc, px=pending.px, py=pending.py)
            raise
        self.confirm(pending)

    async def unlock_shard(
        self,
        shard_x: int,
        shard_y: int,
        *,
        initialize: bool = True,
        timeout: float | None = None,
    ) -> str | None:
        """
        Initialize and delegate a shard, showing it unlocked right away.

        Returns:
            The delegation entry id, or None when the shard is already
            unlocked or an unlock for it is already running.

        Raises:
            InvalidCoordinateError: Before any network call.
            LedgerWriteError, TimeoutError: The unlock failed. The lock state
                is already restored, unless a live event meanwhile reported
                the shard initialized.
        """
        check_shard(shard_x, shard_y)
        key = ShardKey(shard_x, shard_y)
        if key in self._unlocking or not self.delegation.is_locked(shard_x, shard_y):
            return None
        gateway = self._require_gateway()

        previous_status = self.delegation.status(shard_x, shard_y)
        self._unlocking[key] = []
        self.delegation.mark_unlocked(shard_x, shard_y)
        self.bus.emit(
            Events.SHARD_UNLOCKED, {"shard_x": shard_x, "shard_y": shard_y, "owner": self.wallet}
        )

        try:
            entry_id = await asyncio.wait_for(
                gateway.unlock_shard(shard_x, shard_y, initialize=initialize), timeout
            )
        except BaseException as exc:
            held = self._unlocking.pop(key, [])
            if held:
                logger.info(
                    "Local unlock of %s failed but the ledger reports it initialized", key
                )
                latest = held[-1]
                self._record_unlocked_shard(key, latest.main_wallet, latest.timestamp)
            else:
                self.delegation.restore(shard_x, shard_y, previous_status)
                self.bus.emit(Events.SHARD_LOCKED, {"shard_x": shard_x, "shard_y": shard_y})
            if isinstance(exc, Exception):
                self._report_failure("unlock", key, exc)
            raise

        held = self._unlocking.pop(key, [])
        if held:
            owner, timestamp = held[-1].main_wallet, held[-1].timestamp
        else:
            owner, timestamp = self.wallet, int(time.time())
        self._shards.setdefault(key, ShardInfo()).owner = owner
        self._push_recent_shard(RecentShard(shard_x, shard_y, owner, timestamp))
        return entry_id

    def _require_gateway(self) -> LedgerWriteGateway:
        if self.gateway is None:
            raise RuntimeError("ReplicaSyncEngine has no ledger write gateway")
        return self.gateway

    def _report_failure(
        self,
        action: str,
        shard: ShardKey,
        exc: Exception,
        *,
        px: int | None = None,
        py: int | None = None,
    ) -> None:
        logger.warning("%s on shard %s failed: %s", action.capitalize(), shard, exc)
        self.bus.emit(
            Events.WRITE_FAILED,
            {
                "action": action,
                "shard_x": shard.shard_x,
                "shard_y": shard.shard_y,
                "px": px,
                "py": py,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )

    # =========================================================================
    # DELEGATION
    # =========================================================================

    async def check_delegation(self, shard_x: int, shard_y: int) -> ShardStatus:
        was_locked = self.delegation.is_locked(shard_x, shard_y)
        status = await self.delegation.check_delegation(shard_x, shard_y)
        if was_locked and status is ShardStatus.UNLOCKED:
            self.bus.emit(
                Events.SHARD_UNLOCKED, {"shard_x": shard_x, "shard_y": shard_y, "owner": None}
            )
        return status

    async def check_visible(self, keys: Iterable[tuple[int, int]]) -> dict[ShardKey, ShardStatus]:
        """Check every shard in view, announcing the ones found unlocked."""
        keys = list(keys)
        before = {ShardKey(*key) for key in keys if not self.delegation.is_locked(*key)}
        statuses = await self.delegation.check_many(keys)
        for key, status in statuses.items():
            if status is ShardStatus.UNLOCKED and key not in before:
                self.bus.emit(
                    Events.SHARD_UNLOCKED,
                    {"shard_x": key.shard_x, "shard_y": key.shard_y, "owner": None},
                )
        return statuses

    # =========================================================================
    # LIVE STREAM AND TEARDOWN
    # =========================================================================

    async def follow(self, events: AsyncIterable[CanvasEvent]) -> None:
        """Apply a live event stream until it ends or the engine closes."""
        async for event in events:
            if self._closed:
                break
            try:
                self.apply_remote_event(event)
            except PlaceError as exc:
                logger.warning("Dropping remote event %r: %s", event, exc)

    def start_following(self, events: AsyncIterable[CanvasEvent]) -> asyncio.Task[None]:
        task = asyncio.create_task(self.follow(events))
        self._follow_tasks.add(task)
        task.add_done_callback(self._follow_tasks.discard)
        return task

    async def close(self) -> None:
        """
        Stop following live events and abandon delegation checks.

        Never raises. Writes already submitted keep running in their callers'
        tasks; their confirm or rollback still lands on the replica.
        """
        self._closed = True
        tasks = list(self._follow_tasks)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Live stream ended with error during close: %s", result)
        self.delegation.close()
        self.bus.close()
