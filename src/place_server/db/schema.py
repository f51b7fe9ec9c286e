"""Schema creation for the canvas index.

Tables:
    global_stats       single row of aggregate counters
    users              per-wallet counters and the last seen session key
    pixel_events       append-only pixel history
    pixel_state        current color per pixel
    shards             one row per initialized shard
    processed_entries  (source, entry_id) pairs already applied
    sync_cursors       per-source backfill resume point
"""

from __future__ import annotations

import logging

from place_server.db.connection import get_connection

logger = logging.getLogger(__name__)

# Feed queries sort by timestamp; user lookups and per-pixel history filter by
# wallet and coordinate.
INDEX_STATEMENTS = (
    "CREATE INDEX IF NOT EXISTS idx_pixel_events_timestamp ON pixel_events(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_pixel_events_coords ON pixel_events(px, py)",
    "CREATE INDEX IF NOT EXISTS idx_pixel_events_wallet ON pixel_events(main_wallet)",
    "CREATE INDEX IF NOT EXISTS idx_shards_timestamp ON shards(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_shards_wallet ON shards(main_wallet)",
)

TABLE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS global_stats (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        total_pixels_placed INTEGER NOT NULL DEFAULT 0,
        total_shards_deployed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        main_wallet TEXT PRIMARY KEY,
        session_address TEXT,
        pixels_placed_count INTEGER NOT NULL DEFAULT 0,
        shards_owned_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pixel_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        px INTEGER NOT NULL,
        py INTEGER NOT NULL,
        color INTEGER NOT NULL CHECK (color BETWEEN 0 AND 255),
        main_wallet TEXT NOT NULL,
        painter TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        source TEXT NOT NULL,
        entry_id TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pixel_state (
        px INTEGER NOT NULL,
        py INTEGER NOT NULL,
        color INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        event_id INTEGER NOT NULL,
        PRIMARY KEY (px, py)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shards (
        shard_x INTEGER NOT NULL,
        shard_y INTEGER NOT NULL,
        creator TEXT NOT NULL,
        main_wallet TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        source TEXT NOT NULL,
        entry_id TEXT NOT NULL,
        PRIMARY KEY (shard_x, shard_y)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_entries (
        source TEXT NOT NULL,
        entry_id TEXT NOT NULL,
        processed_at INTEGER NOT NULL,
        PRIMARY KEY (source, entry_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        label TEXT PRIMARY KEY,
        last_entry_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
)


def init_database() -> None:
    """Create tables and indexes if missing, enable WAL, seed the stats row.

    Safe to call on every start.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        for statement in TABLE_STATEMENTS:
            cursor.execute(statement)
        for statement in INDEX_STATEMENTS:
            cursor.execute(statement)
        cursor.execute("INSERT OR IGNORE INTO global_stats (id) VALUES (1)")
        conn.commit()
    finally:
        conn.close()
    logger.info("Index database ready")
