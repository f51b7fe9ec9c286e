"""Write-side repository: idempotent event application and sync cursors.

Every ledger entry is applied in exactly one ``BEGIN IMMEDIATE`` transaction
that first inserts its ``(source, entry_id)`` into ``processed_entries``. The
insert is the gate: when it affects no row the entry was already applied (by
the live tail, a racing backfill, or an earlier run) and the transaction is
rolled back untouched. Counters are only ever bumped for rows that were
actually inserted, so replays cannot double count.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import NoReturn

from place_server.db.connection import connection_scope, get_connection
from place_server.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)
from place_server.ledger.events import CanvasEvent, PixelChanged, ShardInitialized

logger = logging.getLogger(__name__)


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseWriteError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one ledger entry.

    Attributes:
        entry_id: The applied entry.
        duplicate: True when the entry was already processed; nothing changed.
        pixels_inserted: PixelChanged history rows written.
        shards_inserted: Shard rows written.
        shards_already_indexed: ShardInitialized events for shards that were
            already in the registry (not an error).
    """

    entry_id: str
    duplicate: bool = False
    pixels_inserted: int = 0
    shards_inserted: int = 0
    shards_already_indexed: int = 0


@dataclass(frozen=True)
class SyncCursor:
    """Backfill resume point for one source."""

    label: str
    last_entry_id: str
    position: int


def _ensure_user(cursor: sqlite3.Cursor, wallet: str) -> None:
    cursor.execute("INSERT OR IGNORE INTO users (main_wallet) VALUES (?)", (wallet,))


def _apply_pixel(cursor: sqlite3.Cursor, event: PixelChanged, *, source: str, entry_id: str) -> None:
    cursor.execute(
        """
        INSERT INTO pixel_events (px, py, color, main_wallet, painter, timestamp, source, entry_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.px,
            event.py,
            event.color,
            event.main_wallet,
            event.painter,
            event.timestamp,
            source,
            entry_id,
        ),
    )
    event_row = cursor.lastrowid

    # Later timestamp wins; on a tie the event applied last wins.
    cursor.execute(
        """
        INSERT INTO pixel_state (px, py, color, timestamp, event_id)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(px, py) DO UPDATE SET
            color = excluded.color,
            timestamp = excluded.timestamp,
            event_id = excluded.event_id
        WHERE excluded.timestamp >= pixel_state.timestamp
        """,
        (event.px, event.py, event.color, event.timestamp, event_row),
    )

    _ensure_user(cursor, event.main_wallet)
    if not event.is_erase:
        cursor.execute(
            "UPDATE global_stats SET total_pixels_placed = total_pixels_placed + 1 WHERE id = 1"
        )
        cursor.execute(
            """
            UPDATE users SET pixels_placed_count = pixels_placed_count + 1
            WHERE main_wallet = ?
            """,
            (event.main_wallet,),
        )
    if event.painter != event.main_wallet:
        cursor.execute(
            "UPDATE users SET session_address = ? WHERE main_wallet = ?",
            (event.painter, event.main_wallet),
        )


def _apply_shard(
    cursor: sqlite3.Cursor, event: ShardInitialized, *, source: str, entry_id: str
) -> bool:
    cursor.execute(
        """
        INSERT OR IGNORE INTO shards
            (shard_x, shard_y, creator, main_wallet, timestamp, source, entry_id)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.shard_x,
            event.shard_y,
            event.creator,
            event.main_wallet,
            event.timestamp,
            source,
            entry_id,
        ),
    )
    if cursor.rowcount == 0:
        return False
    cursor.execute(
        "UPDATE global_stats SET total_shards_deployed = total_shards_deployed + 1 WHERE id = 1"
    )
    _ensure_user(cursor, event.main_wallet)
    cursor.execute(
        "UPDATE users SET shards_owned_count = shards_owned_count + 1 WHERE main_wallet = ?",
        (event.main_wallet,),
    )
    return True


def apply_entry(source: str, entry_id: str, events: Iterable[CanvasEvent]) -> ApplyResult:
    """Apply one ledger entry's events atomically and exactly once.

    Args:
        source: Ledger source label ("base", "ephemeral").
        entry_id: Transaction signature.
        events: Decoded events of the entry, in emission order. May be empty,
            in which case only the processed marker is recorded.

    Returns:
        What was written, or ``ApplyResult(duplicate=True)`` for a replay.

    Raises:
        DatabaseWriteError: If the transaction fails.
    """
    conn = get_connection()
    cursor = conn.cursor()
    try:
        cursor.execute("BEGIN IMMEDIATE")
        cursor.execute(
            """
            INSERT OR IGNORE INTO processed_entries (source, entry_id, processed_at)
            VALUES (?, ?, ?)
            """,
            (source, entry_id, int(time.time() * 1000)),
        )
        if cursor.rowcount == 0:
            conn.rollback()
            return ApplyResult(entry_id=entry_id, duplicate=True)

        pixels = shards = already = 0
        for event in events:
            if isinstance(event, PixelChanged):
                _apply_pixel(cursor, event, source=source, entry_id=entry_id)
                pixels += 1
            elif _apply_shard(cursor, event, source=source, entry_id=entry_id):
                shards += 1
            else:
                already += 1
                logger.debug(
                    "Shard (%d, %d) already indexed, skipping %s",
                    event.shard_x,
                    event.shard_y,
                    entry_id,
                )

        conn.commit()
        return ApplyResult(
            entry_id=entry_id,
            pixels_inserted=pixels,
            shards_inserted=shards,
            shards_already_indexed=already,
        )
    except Exception as exc:
        try:
            conn.rollback()
        except sqlite3.Error:
            pass
        _raise_write_error(
            "index.apply_entry", exc, details=f"source={source!r}, entry_id={entry_id!r}"
        )
    finally:
        conn.close()


def is_processed(source: str, entry_id: str) -> bool:
    """Return True if the entry was already applied for this source."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_entries WHERE source = ? AND entry_id = ?",
                (source, entry_id),
            ).fetchone()
        return row is not None
    except Exception as exc:
        _raise_read_error(
            "index.is_processed", exc, details=f"source={source!r}, entry_id={entry_id!r}"
        )


def get_cursor(label: str) -> SyncCursor | None:
    """Return the stored backfill cursor for a source, if any."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                "SELECT label, last_entry_id, position FROM sync_cursors WHERE label = ?",
                (label,),
            ).fetchone()
    except Exception as exc:
        _raise_read_error("index.get_cursor", exc, details=f"label={label!r}")
    if row is None:
        return None
    return SyncCursor(label=row[0], last_entry_id=row[1], position=int(row[2]))


def advance_cursor(label: str, entry_id: str, position: int) -> bool:
    """Move a source's cursor forward.

    The cursor never regresses: a position lower than the stored one is
    ignored.

    Returns:
        True if the cursor changed.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_cursors (label, last_entry_id, position, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(label) DO UPDATE SET
                    last_entry_id = excluded.last_entry_id,
                    position = excluded.position,
                    updated_at = excluded.updated_at
                WHERE excluded.position >= sync_cursors.position
                  AND excluded.last_entry_id != sync_cursors.last_entry_id
                """,
                (label, entry_id, position, int(time.time() * 1000)),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "index.advance_cursor", exc, details=f"label={label!r}, position={position}"
        )
