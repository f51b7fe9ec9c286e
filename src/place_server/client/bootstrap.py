"""
Seeding and live-feeding a ``ReplicaSyncEngine``.

A replica starts from two sources:

1. Every shard account currently delegated to the overlay. The account
   data is the full pixel buffer, so it covers all painted pixels, but it
   carries no timestamps and is loaded at timestamp 0.
2. The read API feed, whose recent pixels are dated and therefore win over
   the undated account data.

After seeding, ``live_events`` turns the overlay's log subscription into
decoded canvas events for ``ReplicaSyncEngine.follow``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from place_server.canvas.shard import SHARD_ACCOUNT_SIZE, ShardPixels, decode_shard_account
from place_server.client.replica import RecentPixel, RecentShard, ReplicaSyncEngine, SnapshotPixel
from place_server.errors import MalformedEventError
from place_server.ledger.client import AccountInfo, LogNotification
from place_server.ledger.events import CanvasEvent, decode_logs

logger = logging.getLogger(__name__)


class ProgramAccountReader(Protocol):
    async def get_program_accounts(self, *, data_size: int | None = None) -> list[AccountInfo]: ...


class LogSubscriber(Protocol):
    program_id: str

    def subscribe(self) -> AsyncIterator[LogNotification]: ...


class FeedReader(Protocol):
    async def get_feed(self) -> dict[str, list[dict]]: ...


@dataclass
class BootstrapReport:
    shards: int = 0
    snapshot_pixels: int = 0
    feed_pixels: int = 0
    skipped_accounts: int = 0


async def load_delegated_shards(ledger: ProgramAccountReader) -> tuple[list[ShardPixels], int]:
    """
    Decode every shard account the ledger tier holds.

    Returns:
        The decoded shards and the number of accounts that did not decode.
    """
    accounts = await ledger.get_program_accounts(data_size=SHARD_ACCOUNT_SIZE)
    shards: list[ShardPixels] = []
    skipped = 0
    for account in accounts:
        try:
            shards.append(decode_shard_account(account.data))
        except MalformedEventError as exc:
            skipped += 1
            logger.warning("Skipping account %s: %s", account.address, exc)
    return shards, skipped


async def bootstrap_replica(
    engine: ReplicaSyncEngine,
    *,
    ephemeral: ProgramAccountReader,
    feed: FeedReader | None = None,
) -> BootstrapReport:
    """Seed ``engine`` from delegated shard accounts, then the recent feed."""
    report = BootstrapReport()
    shards, report.skipped_accounts = await load_delegated_shards(ephemeral)
    report.shards = len(shards)

    snapshot: list[SnapshotPixel] = []
    for shard in shards:
        # Accounts living on the overlay are delegated by definition.
        engine.delegation.mark_unlocked(shard.shard_x, shard.shard_y)
        engine.set_shard_owner(shard.shard_x, shard.shard_y, shard.creator)
        snapshot.extend(SnapshotPixel(px, py, color) for px, py, color in shard.painted())
    report.snapshot_pixels = engine.bulk_load(snapshot)

    if feed is not None:
        recent = await feed.get_feed()
        pixels = recent.get("pixels", [])
        # The feed is newest first; replay oldest first so same-second ties resolve to the newest.
        report.feed_pixels = engine.bulk_load(
            SnapshotPixel(row["px"], row["py"], row["color"], row["timestamp"])
            for row in reversed(pixels)
        )
        engine.recent_pixels.extend(
            RecentPixel(row["px"], row["py"], row["color"], row["timestamp"]) for row in pixels
        )
        engine.recent_shards.extend(
            RecentShard(row["shard_x"], row["shard_y"], None, row["timestamp"])
            for row in recent.get("shards", [])
        )

    logger.info(
        "Replica seeded: %d shards, %d snapshot pixels, %d feed pixels",
        report.shards,
        report.snapshot_pixels,
        report.feed_pixels,
    )
    return report


async def live_events(ledger: LogSubscriber) -> AsyncIterator[CanvasEvent]:
    """Decoded canvas events from a log subscription. Failed and malformed entries are dropped."""
    async for notification in ledger.subscribe():
        if notification.failed:
            continue
        try:
            events = decode_logs(notification.logs, ledger.program_id, entry_id=notification.entry_id)
        except MalformedEventError as exc:
            logger.warning("Skipping malformed entry %s: %s", notification.entry_id, exc)
            continue
        for event in events:
            yield event
