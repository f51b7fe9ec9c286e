"""Read-side repository backing the feed API.

All list queries are fixed-limit and newest-first; there is no deep
pagination.
"""

from __future__ import annotations

from typing import Any, NoReturn

from place_server.canvas.addressing import check_shard, shard_origin
from place_server.canvas.constants import CANVAS_RES, SHARD_DIMENSION
from place_server.canvas.shard import ShardPixels
from place_server.db.connection import connection_scope
from place_server.db.errors import DatabaseError, DatabaseOperationContext, DatabaseReadError


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def get_global_stats() -> dict[str, int]:
    """Return the aggregate counters."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                "SELECT total_pixels_placed, total_shards_deployed FROM global_stats WHERE id = 1"
            ).fetchone()
    except Exception as exc:
        _raise_read_error("feed.get_global_stats", exc)
    if row is None:
        return {"total_pixels_placed": 0, "total_shards_deployed": 0}
    return {"total_pixels_placed": int(row[0]), "total_shards_deployed": int(row[1])}


def get_user_stats(address: str) -> dict[str, Any]:
    """Return counters for a main wallet; zeros when the wallet is unknown."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                """
                SELECT pixels_placed_count, shards_owned_count, session_address
                FROM users WHERE main_wallet = ?
                """,
                (address,),
            ).fetchone()
    except Exception as exc:
        _raise_read_error("feed.get_user_stats", exc, details=f"address={address!r}")
    if row is None:
        return {"pixels_placed_count": 0, "shards_owned_count": 0, "session_address": None}
    return {
        "pixels_placed_count": int(row[0]),
        "shards_owned_count": int(row[1]),
        "session_address": row[2],
    }


def get_recent_pixels(limit: int) -> list[dict[str, int]]:
    """Return the newest pixel events."""
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                """
                SELECT px, py, color, timestamp FROM pixel_events
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
    except Exception as exc:
        _raise_read_error("feed.get_recent_pixels", exc, details=f"limit={limit}")
    return [{"px": r[0], "py": r[1], "color": r[2], "timestamp": r[3]} for r in rows]


def get_recent_shards(limit: int) -> list[dict[str, Any]]:
    """Return the most recently initialized shards."""
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                """
                SELECT shard_x, shard_y, timestamp, main_wallet FROM shards
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
    except Exception as exc:
        _raise_read_error("feed.get_recent_shards", exc, details=f"limit={limit}")
    return [
        {"shard_x": r[0], "shard_y": r[1], "timestamp": r[2], "main_wallet": r[3]} for r in rows
    ]


def get_feed(limit: int) -> dict[str, list[dict[str, Any]]]:
    """Return the combined recent pixels and shards feed."""
    return {"pixels": get_recent_pixels(limit), "shards": get_recent_shards(limit)}


def get_pixel_color(px: int, py: int) -> int:
    """Return the current color of a pixel (0 when never painted)."""
    try:
        with connection_scope() as conn:
            row = conn.execute(
                "SELECT color FROM pixel_state WHERE px = ? AND py = ?", (px, py)
            ).fetchone()
    except Exception as exc:
        _raise_read_error("feed.get_pixel_color", exc, details=f"px={px}, py={py}")
    return int(row[0]) if row else 0


def get_shard_snapshot(shard_x: int, shard_y: int) -> ShardPixels | None:
    """Rebuild a shard's pixel buffer from the current pixel state.

    Returns:
        The buffer, or None when the shard was never initialized and has no
        painted pixels.

    Raises:
        InvalidCoordinateError: If the shard is off the grid.
    """
    check_shard(shard_x, shard_y)
    left, top = shard_origin(shard_x, shard_y)
    right = min(left + SHARD_DIMENSION, CANVAS_RES)
    bottom = min(top + SHARD_DIMENSION, CANVAS_RES)
    try:
        with connection_scope() as conn:
            shard_row = conn.execute(
                "SELECT creator FROM shards WHERE shard_x = ? AND shard_y = ?",
                (shard_x, shard_y),
            ).fetchone()
            pixel_rows = conn.execute(
                """
                SELECT px, py, color FROM pixel_state
                WHERE px >= ? AND px < ? AND py >= ? AND py < ?
                """,
                (left, right, top, bottom),
            ).fetchall()
    except Exception as exc:
        _raise_read_error(
            "feed.get_shard_snapshot", exc, details=f"shard_x={shard_x}, shard_y={shard_y}"
        )
    if shard_row is None and not pixel_rows:
        return None
    snapshot = ShardPixels(shard_x, shard_y, creator=shard_row[0] if shard_row else None)
    for px, py, color in pixel_rows:
        snapshot.set(px, py, color)
    return snapshot
