"""
Per-source event ingestion: live log tail and historical backfill.

One ``EventIngestor`` serves one ledger source. Its two modes run
concurrently and never coordinate in memory; they meet only at
``index_repo.apply_entry``, whose processed-entry gate makes applying the
same entry twice a no-op. That is what lets the live tail, the backfill of
the same source, and the other source's ingestor interleave freely.

Backfill walk:

    1. Read the stored cursor (None on first run).
    2. Page history newest -> oldest, stopping at the cursor.
    3. Apply each page oldest -> newest, skipping processed entries before
       fetching their details.
    4. Only after the walk completes, move the cursor to the newest entry
       seen. An interrupted pass leaves the cursor untouched, so the next
       pass re-walks a bounded window and skips what is already applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from place_server.canvas.addressing import check_pixel, check_shard
from place_server.db import index_repo
from place_server.db.errors import DatabaseError
from place_server.db.index_repo import ApplyResult
from place_server.errors import (
    InvalidCoordinateError,
    LedgerRPCError,
    MalformedEventError,
    TransientNetworkError,
)
from place_server.ledger.client import EntryRef, LedgerEntry, LogNotification
from place_server.ledger.events import CanvasEvent, PixelChanged, decode_logs

logger = logging.getLogger(__name__)


class LedgerSource(Protocol):
    """The ledger read surface an ingestor consumes."""

    label: str
    program_id: str

    async def fetch_history(
        self, *, before: str | None = None, until: str | None = None, limit: int = 100
    ) -> list[EntryRef]: ...

    async def fetch_entry(self, entry_id: str) -> LedgerEntry | None: ...

    def subscribe(self) -> AsyncIterator[LogNotification]: ...


@dataclass
class BackfillReport:
    """Tally of one backfill pass."""

    source: str
    pages: int = 0
    seen: int = 0
    applied: int = 0
    already_processed: int = 0
    skipped_failed: int = 0
    malformed: int = 0
    interrupted: bool = False
    cursor: str | None = None


@dataclass
class IngestorStats:
    live_applied: int = 0
    live_duplicates: int = 0
    live_reconnects: int = 0
    malformed: int = 0
    last_backfill: BackfillReport | None = None


@dataclass
class EventIngestor:
    """
    Applies one ledger source's entries to the index.

    Attributes:
        ledger: Read client for the source.
        page_size: History page size for backfill.
        page_delay: Seconds to wait between history pages.
        reconnect_initial: First live reconnect delay in seconds.
        reconnect_max: Reconnect delay ceiling in seconds.
        sleep: Awaitable sleep, replaceable in tests.
    """

    ledger: LedgerSource
    page_size: int = 100
    page_delay: float = 2.0
    reconnect_initial: float = 1.0
    reconnect_max: float = 60.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    stats: IngestorStats = field(default_factory=IngestorStats)

    @property
    def source(self) -> str:
        return self.ledger.label

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def decode(self, entry_id: str, logs: Sequence[str]) -> list[CanvasEvent]:
        """Decode and range-check an entry's events.

        Raises:
            MalformedEventError: If any event cannot be decoded or lies off
                the canvas.
        """
        events = decode_logs(logs, self.ledger.program_id, entry_id=entry_id)
        try:
            for event in events:
                if isinstance(event, PixelChanged):
                    check_pixel(event.px, event.py)
                else:
                    check_shard(event.shard_x, event.shard_y)
        except InvalidCoordinateError as exc:
            raise MalformedEventError(f"{entry_id}: {exc}") from exc
        return events

    def ingest(self, entry_id: str, logs: Sequence[str], *, failed: bool = False) -> ApplyResult | None:
        """Decode and apply one entry.

        Failed transactions and malformed entries are skipped and not
        recorded as processed, so a later pass can pick up a malformed entry
        once the decoder handles it.

        Returns:
            The apply result, or None when the entry was skipped.
        """
        if failed:
            return None
        try:
            events = self.decode(entry_id, logs)
        except MalformedEventError as exc:
            self.stats.malformed += 1
            logger.warning("Skipping malformed %s entry %s: %s", self.source, entry_id, exc)
            return None
        return index_repo.apply_entry(self.source, entry_id, events)

    # -------------------------------------------------------------------------
    # Live tail
    # -------------------------------------------------------------------------

    async def handle_notification(self, notification: LogNotification) -> ApplyResult | None:
        result = await asyncio.to_thread(
            self.ingest, notification.entry_id, notification.logs, failed=notification.failed
        )
        if result is None:
            return None
        if result.duplicate:
            self.stats.live_duplicates += 1
        else:
            self.stats.live_applied += 1
            logger.debug(
                "%s live %s: %d pixel(s), %d shard(s)",
                self.source,
                notification.entry_id,
                result.pixels_inserted,
                result.shards_inserted,
            )
        return result

    async def run_live(self, *, on_reconnect: Callable[[str], None] | None = None) -> None:
        """Tail the source's logs forever, reconnecting with backoff.

        Every reconnect calls ``on_reconnect(source)`` so the owner can
        schedule an early backfill to heal whatever the gap dropped. Runs
        until cancelled.
        """
        delay = self.reconnect_initial
        while True:
            try:
                async for notification in self.ledger.subscribe():
                    delay = self.reconnect_initial
                    try:
                        await self.handle_notification(notification)
                    except DatabaseError as exc:
                        logger.error(
                            "Failed to apply %s live entry %s: %s",
                            self.source,
                            notification.entry_id,
                            exc,
                        )
            except TransientNetworkError as exc:
                logger.warning("%s live subscription lost: %s", self.source, exc)
            except LedgerRPCError as exc:
                logger.error("%s live subscription rejected: %s", self.source, exc)

            self.stats.live_reconnects += 1
            if on_reconnect is not None:
                on_reconnect(self.source)
            logger.info("Reconnecting %s live subscription in %.1fs", self.source, delay)
            await self.sleep(delay)
            delay = min(delay * 2, self.reconnect_max)

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    async def backfill(self, *, from_genesis: bool = False) -> BackfillReport:
        """Run one backfill pass from now back to the cursor (or genesis).

        Args:
            from_genesis: Ignore the stored cursor and walk the full history.
                Already-processed entries are still skipped.

        Returns:
            The pass report. ``interrupted`` is set when a transient failure
            stopped the walk early; the cursor is then left unchanged.
        """
        report = BackfillReport(source=self.source)
        stored = None if from_genesis else await asyncio.to_thread(index_repo.get_cursor, self.source)
        until = stored.last_entry_id if stored else None
        before: str | None = None
        newest: EntryRef | None = None

        logger.info(
            "Starting %s backfill %s",
            self.source,
            f"down to {until}" if until else "from genesis",
        )

        while True:
            try:
                page = await self.ledger.fetch_history(
                    before=before, until=until, limit=self.page_size
                )
            except (TransientNetworkError, LedgerRPCError) as exc:
                logger.warning("%s backfill interrupted fetching history: %s", self.source, exc)
                report.interrupted = True
                break
            if not page:
                break
            if newest is None:
                newest = page[0]

            if not await self._apply_page(page, report):
                report.interrupted = True
                break

            report.pages += 1
            before = page[-1].entry_id
            logger.info(
                "%s backfill page %d: %d entries (applied %d so far)",
                self.source,
                report.pages,
                len(page),
                report.applied,
            )
            if len(page) < self.page_size:
                break
            await self.sleep(self.page_delay)

        if not report.interrupted and newest is not None:
            await asyncio.to_thread(
                index_repo.advance_cursor, self.source, newest.entry_id, newest.slot
            )
            report.cursor = newest.entry_id
        elif stored is not None:
            report.cursor = stored.last_entry_id

        self.stats.last_backfill = report
        logger.info(
            "%s backfill %s: %d applied, %d already processed, %d malformed",
            self.source,
            "interrupted" if report.interrupted else "complete",
            report.applied,
            report.already_processed,
            report.malformed,
        )
        return report

    async def _apply_page(self, page: Sequence[EntryRef], report: BackfillReport) -> bool:
        """Apply one history page oldest first. Returns False on a transient stop."""
        for ref in reversed(page):
            report.seen += 1
            if ref.failed:
                report.skipped_failed += 1
                continue
            if await asyncio.to_thread(index_repo.is_processed, self.source, ref.entry_id):
                report.already_processed += 1
                continue
            try:
                entry = await self.ledger.fetch_entry(ref.entry_id)
            except (TransientNetworkError, LedgerRPCError) as exc:
                logger.warning("%s backfill failed to fetch %s: %s", self.source, ref.entry_id, exc)
                return False
            if entry is None:
                # Not yet visible at this commitment; retry on the next pass.
                logger.warning("%s entry %s not available yet", self.source, ref.entry_id)
                return False

            malformed_before = self.stats.malformed
            result = await asyncio.to_thread(
                self.ingest, entry.entry_id, entry.logs, failed=entry.failed
            )
            if result is None:
                if entry.failed:
                    report.skipped_failed += 1
                elif self.stats.malformed > malformed_before:
                    report.malformed += 1
            elif result.duplicate:
                report.already_processed += 1
            else:
                report.applied += 1
        return True
