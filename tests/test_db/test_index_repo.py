"""
Tests for the idempotent apply path and sync cursors (place_server/db/index_repo.py).

Tests cover:
- Exactly-once application per (source, entry id)
- Latest-timestamp-wins pixel state, in both arrival orders
- Erase semantics: history row written, counters not decremented
- Shard registry races between live and backfill
- Cursor monotonicity
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from place_server.db import feed_repo, index_repo
from place_server.db.connection import connection_scope
from place_server.db.errors import DatabaseWriteError
from place_server.ledger.events import PixelChanged, ShardInitialized
from tests.constants import CREATOR, PAINTER, WALLET

RED = 3
BLUE = 5


def paint(px, py, color, timestamp, *, painter=PAINTER, wallet=WALLET):
    return PixelChanged(px, py, color, painter, wallet, timestamp)


def init_shard(shard_x, shard_y, timestamp=100, *, wallet=WALLET):
    return ShardInitialized(shard_x, shard_y, CREATOR, wallet, timestamp)


def count_rows(table):
    with connection_scope() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


# ============================================================================
# IDEMPOTENCE
# ============================================================================


@pytest.mark.db
def test_apply_records_entry_and_counters(test_db):
    result = index_repo.apply_entry("ephemeral", "sig1", [paint(95, 5, RED, 1)])

    assert result.duplicate is False
    assert result.pixels_inserted == 1
    assert index_repo.is_processed("ephemeral", "sig1")
    assert feed_repo.get_global_stats()["total_pixels_placed"] == 1
    assert feed_repo.get_pixel_color(95, 5) == RED


@pytest.mark.db
def test_reapplying_entry_changes_nothing(test_db):
    events = [paint(95, 5, RED, 1), init_shard(1, 0)]
    index_repo.apply_entry("ephemeral", "sig1", events)
    stats_before = feed_repo.get_global_stats()
    user_before = feed_repo.get_user_stats(WALLET)

    again = index_repo.apply_entry("ephemeral", "sig1", events)

    assert again.duplicate is True
    assert feed_repo.get_global_stats() == stats_before
    assert feed_repo.get_user_stats(WALLET) == user_before
    assert count_rows("pixel_events") == 1
    assert count_rows("shards") == 1


@pytest.mark.db
def test_same_entry_id_on_other_source_is_separate(test_db):
    index_repo.apply_entry("base", "sig1", [paint(1, 1, RED, 1)])
    result = index_repo.apply_entry("ephemeral", "sig1", [paint(1, 1, RED, 1)])
    assert result.duplicate is False


@pytest.mark.db
def test_entry_without_events_is_still_marked(test_db):
    result = index_repo.apply_entry("base", "sig-noop", [])
    assert result.pixels_inserted == 0
    assert index_repo.is_processed("base", "sig-noop")


@pytest.mark.db
def test_concurrent_apply_of_same_entry_counts_once(test_db):
    events = [paint(95, 5, RED, 1)]
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: index_repo.apply_entry("base", "sig1", events), range(4)))

    assert sum(1 for r in results if not r.duplicate) == 1
    assert feed_repo.get_global_stats()["total_pixels_placed"] == 1


@pytest.mark.db
def test_failed_apply_rolls_back_marker(test_db, monkeypatch):
    def explode(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(index_repo, "_apply_pixel", explode)
    with pytest.raises(DatabaseWriteError):
        index_repo.apply_entry("base", "sig1", [paint(1, 1, RED, 1)])

    assert not index_repo.is_processed("base", "sig1")
    assert feed_repo.get_global_stats()["total_pixels_placed"] == 0


# ============================================================================
# PIXEL ORDERING
# ============================================================================


@pytest.mark.db
@pytest.mark.parametrize("order", [("e1", "e2"), ("e2", "e1")])
def test_later_timestamp_wins_in_either_order(test_db, order):
    events = {"e1": paint(10, 10, RED, 1), "e2": paint(10, 10, BLUE, 2)}
    for entry_id in order:
        index_repo.apply_entry("ephemeral", entry_id, [events[entry_id]])

    assert feed_repo.get_pixel_color(10, 10) == BLUE
    assert count_rows("pixel_events") == 2


@pytest.mark.db
def test_equal_timestamps_last_applied_wins(test_db):
    index_repo.apply_entry("ephemeral", "a", [paint(10, 10, RED, 5)])
    index_repo.apply_entry("ephemeral", "b", [paint(10, 10, BLUE, 5)])
    assert feed_repo.get_pixel_color(10, 10) == BLUE


@pytest.mark.db
def test_place_then_erase_scenario(test_db):
    index_repo.apply_entry("ephemeral", "place", [paint(95, 5, RED, 1)])
    index_repo.apply_entry("ephemeral", "erase", [paint(95, 5, 0, 2)])

    assert count_rows("pixel_events") == 2
    assert feed_repo.get_global_stats()["total_pixels_placed"] == 1
    assert feed_repo.get_user_stats(WALLET)["pixels_placed_count"] == 1
    assert feed_repo.get_pixel_color(95, 5) == 0


@pytest.mark.db
def test_session_key_recorded_for_wallet(test_db):
    index_repo.apply_entry("ephemeral", "sig", [paint(1, 1, RED, 1, painter=PAINTER)])
    assert feed_repo.get_user_stats(WALLET)["session_address"] == PAINTER


# ============================================================================
# SHARD REGISTRY
# ============================================================================


@pytest.mark.db
def test_racing_shard_initializations_index_once(test_db):
    live = index_repo.apply_entry("base", "init-live", [init_shard(1, 0, 100)])
    backfill = index_repo.apply_entry("base", "init-backfill", [init_shard(1, 0, 101)])

    assert live.shards_inserted == 1
    assert backfill.duplicate is False
    assert backfill.shards_inserted == 0
    assert backfill.shards_already_indexed == 1
    assert count_rows("shards") == 1
    assert feed_repo.get_global_stats()["total_shards_deployed"] == 1
    assert feed_repo.get_user_stats(WALLET)["shards_owned_count"] == 1


@pytest.mark.db
def test_live_and_backfill_of_same_entry(test_db):
    index_repo.apply_entry("base", "init", [init_shard(1, 0)])
    replay = index_repo.apply_entry("base", "init", [init_shard(1, 0)])
    assert replay.duplicate is True
    assert count_rows("shards") == 1


# ============================================================================
# CURSORS
# ============================================================================


@pytest.mark.db
def test_cursor_starts_empty(test_db):
    assert index_repo.get_cursor("base") is None


@pytest.mark.db
def test_cursor_advances(test_db):
    assert index_repo.advance_cursor("base", "sig10", 10) is True
    assert index_repo.advance_cursor("base", "sig20", 20) is True
    cursor = index_repo.get_cursor("base")
    assert (cursor.last_entry_id, cursor.position) == ("sig20", 20)


@pytest.mark.db
def test_cursor_never_regresses(test_db):
    index_repo.advance_cursor("base", "sig20", 20)
    assert index_repo.advance_cursor("base", "sig10", 10) is False
    assert index_repo.get_cursor("base").last_entry_id == "sig20"


@pytest.mark.db
def test_cursors_are_per_source(test_db):
    index_repo.advance_cursor("base", "b", 5)
    index_repo.advance_cursor("ephemeral", "e", 900)
    assert index_repo.get_cursor("base").position == 5
    assert index_repo.get_cursor("ephemeral").position == 900
