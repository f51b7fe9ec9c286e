"""
Tests for the client replica (place_server/client/replica.py).

Tests cover:
- Snapshot merge precedence (dated data beats undated)
- Remote events as authoritative overwrites
- Optimistic pixel writes: confirm, rollback, timeout, supersession
- Optimistic unlocks and the held ShardInitialized on success and failure
- Bus notifications, live following and teardown
"""

import asyncio

import pytest

from place_server.canvas.addressing import ShardKey
from place_server.client.delegation import DelegationState, ShardStatus
from place_server.client.replica import PixelStatus, ReplicaSyncEngine
from place_server.core.events import Events
from place_server.errors import (
    InvalidColorError,
    InvalidCoordinateError,
    LedgerWriteError,
    ShardLockedError,
)
from place_server.ledger.events import PixelChanged, ShardInitialized
from tests.constants import CREATOR, OTHER_WALLET, PAINTER, WALLET


def events_of(engine, event_type):
    return [event for event in engine.bus.get_event_log() if event.type == event_type]


def remote_pixel(px, py, color, timestamp=500):
    return PixelChanged(px, py, color, PAINTER, OTHER_WALLET, timestamp)


# ============================================================================
# SNAPSHOT AND REMOTE EVENTS
# ============================================================================


class TestBulkLoad:
    @pytest.mark.client
    def test_loads_unknown_pixels(self, engine):
        assert engine.bulk_load([(95, 5, 3), (96, 5, 4)]) == 2
        assert engine.color(95, 5) == 3
        assert engine.shard_info(1, 0).pixel_count == 2

    @pytest.mark.client
    def test_undated_data_never_replaces_dated(self, engine):
        engine.bulk_load([(95, 5, 3, 100)])

        assert engine.bulk_load([(95, 5, 9)]) == 0
        assert engine.color(95, 5) == 3

        assert engine.bulk_load([(95, 5, 7, 100)]) == 1
        assert engine.color(95, 5) == 7

    @pytest.mark.client
    def test_invalid_items_are_skipped(self, engine):
        assert engine.bulk_load([(-1, 0, 3), (95, 5, 300), (95, 5, 2)]) == 1
        assert engine.pixel_count == 1

    @pytest.mark.client
    def test_emits_snapshot_loaded(self, engine):
        engine.bulk_load([(95, 5, 3), (-1, 0, 3)])
        [event] = events_of(engine, Events.SNAPSHOT_LOADED)
        assert event.detail == {"pixels": 2, "applied": 1}


class TestRemoteEvents:
    @pytest.mark.client
    def test_remote_pixel_overwrites(self, engine):
        engine.bulk_load([(95, 5, 3, 10)])

        engine.apply_remote_event(remote_pixel(95, 5, 8, timestamp=900))

        assert engine.color(95, 5) == 8
        assert engine.recent_pixels[0] == (95, 5, 8, 900)
        [event] = events_of(engine, Events.PIXEL_CHANGED)
        assert event.detail["previous"] == 3

    @pytest.mark.client
    @pytest.mark.parametrize("order", [(1, 2), (2, 1)])
    def test_later_timestamp_wins_in_either_order(self, engine, order):
        events = {1: remote_pixel(95, 5, 2, timestamp=1), 2: remote_pixel(95, 5, 5, timestamp=2)}

        for timestamp in order:
            engine.apply_remote_event(events[timestamp])

        assert engine.color(95, 5) == 5
        assert engine.entry(95, 5).timestamp == 2

    @pytest.mark.client
    def test_older_event_still_supersedes_pending(self, engine):
        engine.apply_remote_event(remote_pixel(95, 5, 5, timestamp=2))
        pending = engine.optimistic_apply(95, 5, 7)

        engine.apply_remote_event(remote_pixel(95, 5, 2, timestamp=1))

        assert engine.confirm(pending) is False
        assert engine.color(95, 5) == 5
        assert engine.entry(95, 5).status is PixelStatus.KNOWN

    @pytest.mark.client
    def test_remote_erase_updates_pixel_count(self, engine):
        engine.apply_remote_event(remote_pixel(95, 5, 8))
        engine.apply_remote_event(remote_pixel(95, 5, 0))
        assert engine.shard_info(1, 0).pixel_count == 0

    @pytest.mark.client
    def test_remote_shard_initialized_unlocks(self, engine):
        engine.apply_remote_event(ShardInitialized(1, 0, CREATOR, OTHER_WALLET, 42))

        assert not engine.is_locked(1, 0)
        assert engine.shard_info(1, 0).owner == OTHER_WALLET
        assert list(engine.recent_shards) == [(1, 0, OTHER_WALLET, 42)]
        [event] = events_of(engine, Events.SHARD_UNLOCKED)
        assert event.detail == {"shard_x": 1, "shard_y": 0, "owner": OTHER_WALLET}

    @pytest.mark.client
    def test_off_canvas_remote_event_rejected(self, engine):
        with pytest.raises(InvalidCoordinateError):
            engine.apply_remote_event(remote_pixel(-5, 0, 1))

    @pytest.mark.client
    def test_non_event_rejected(self, engine):
        with pytest.raises(TypeError):
            engine.apply_remote_event("pixel")

    @pytest.mark.client
    def test_mark_undelegated_emits_locked(self, engine, cache):
        cache.mark_unlocked(1, 0)
        engine.mark_undelegated(1, 0)

        assert engine.is_locked(1, 0)
        assert len(events_of(engine, Events.SHARD_LOCKED)) == 1

    @pytest.mark.client
    def test_reset_clears_state(self, engine):
        engine.apply_remote_event(remote_pixel(95, 5, 8))
        engine.reset()
        assert engine.pixel_count == 0
        assert not engine.recent_pixels


# ============================================================================
# OPTIMISTIC PIXEL WRITES
# ============================================================================


class TestPendingLifecycle:
    @pytest.mark.client
    def test_optimistic_apply_shows_pending_color(self, engine):
        engine.bulk_load([(95, 5, 3)])
        pending = engine.optimistic_apply(95, 5, 7)

        assert engine.color(95, 5) == 7
        assert engine.entry(95, 5).status is PixelStatus.PENDING
        assert pending.shard == ShardKey(1, 0)

    @pytest.mark.client
    def test_rollback_restores_authoritative_color(self, engine):
        engine.bulk_load([(95, 5, 3)])
        pending = engine.optimistic_apply(95, 5, 7)

        assert engine.rollback(pending, LedgerWriteError("nope")) is True
        assert engine.color(95, 5) == 3
        assert engine.entry(95, 5).status is PixelStatus.ROLLED_BACK
        [event] = events_of(engine, Events.PIXEL_ROLLED_BACK)
        assert event.detail["error"] == "nope"

    @pytest.mark.client
    def test_overlapping_writes_roll_back_to_earlier_pending(self, engine):
        first = engine.optimistic_apply(95, 5, 3)
        second = engine.optimistic_apply(95, 5, 5)

        engine.rollback(second)
        assert engine.color(95, 5) == 3
        assert engine.entry(95, 5).status is PixelStatus.PENDING

        assert engine.confirm(first) is True
        assert engine.entry(95, 5).status is PixelStatus.CONFIRMED

    @pytest.mark.client
    @pytest.mark.parametrize("order", ["oldest_first", "newest_first"])
    def test_overlapping_failures_restore_pre_write_color(self, engine, order):
        engine.bulk_load([(95, 5, 3)])
        first = engine.optimistic_apply(95, 5, 7)
        second = engine.optimistic_apply(95, 5, 9)
        writes = [first, second] if order == "oldest_first" else [second, first]

        assert [engine.rollback(write) for write in writes] == [True, True]
        assert engine.color(95, 5) == 3
        assert engine.entry(95, 5).status is PixelStatus.ROLLED_BACK
        assert engine.entry(95, 5).in_flight == []

    @pytest.mark.client
    def test_earlier_confirm_survives_later_failure(self, engine):
        engine.bulk_load([(95, 5, 3)])
        first = engine.optimistic_apply(95, 5, 7)
        second = engine.optimistic_apply(95, 5, 9)

        assert engine.confirm(first) is True
        assert engine.color(95, 5) == 9
        assert engine.entry(95, 5).status is PixelStatus.PENDING

        assert engine.rollback(second) is True
        assert engine.color(95, 5) == 7
        assert engine.entry(95, 5).color == 7
        assert engine.entry(95, 5).status is PixelStatus.ROLLED_BACK

    @pytest.mark.client
    def test_older_confirm_does_not_replace_newer_one(self, engine):
        first = engine.optimistic_apply(95, 5, 7)
        second = engine.optimistic_apply(95, 5, 9)

        engine.confirm(second)
        engine.confirm(first)

        assert engine.color(95, 5) == 9
        assert engine.entry(95, 5).status is PixelStatus.CONFIRMED

    @pytest.mark.client
    def test_undated_snapshot_keeps_confirmed_write(self, engine):
        engine.bulk_load([(95, 5, 3)])
        engine.confirm(engine.optimistic_apply(95, 5, 7))

        assert engine.bulk_load([(95, 5, 3)]) == 0
        assert engine.color(95, 5) == 7

        assert engine.bulk_load([(95, 5, 4, 100)]) == 1
        assert engine.color(95, 5) == 4

    @pytest.mark.client
    def test_remote_event_supersedes_pending(self, engine):
        pending = engine.optimistic_apply(95, 5, 7)
        engine.apply_remote_event(remote_pixel(95, 5, 9))

        assert engine.confirm(pending) is False
        assert engine.rollback(pending) is False
        assert engine.color(95, 5) == 9
        assert engine.entry(95, 5).status is PixelStatus.KNOWN


class TestPlacePixel:
    @pytest.mark.client
    async def test_confirmed_write(self, engine, cache, writer):
        cache.mark_unlocked(1, 0)

        entry_id = await engine.place_pixel(95, 5, 3)

        assert entry_id == "place_pixel-1"
        assert engine.color(95, 5) == 3
        assert engine.entry(95, 5).status is PixelStatus.CONFIRMED
        assert engine.shard_info(1, 0).pixel_count == 1

    @pytest.mark.client
    async def test_locked_shard_fails_before_network(self, engine, writer):
        with pytest.raises(ShardLockedError) as exc_info:
            await engine.place_pixel(95, 5, 3)

        assert (exc_info.value.shard_x, exc_info.value.shard_y) == (1, 0)
        assert writer.calls == []
        assert engine.entry(95, 5) is None

    @pytest.mark.client
    async def test_color_zero_is_not_a_placement(self, engine, cache, writer):
        cache.mark_unlocked(1, 0)
        with pytest.raises(InvalidColorError):
            await engine.place_pixel(95, 5, 0)
        assert writer.calls == []

    @pytest.mark.client
    async def test_failed_write_rolls_back_and_reports_once(self, engine, cache, writer):
        cache.mark_unlocked(1, 0)
        engine.bulk_load([(95, 5, 4)])
        writer.failures = [RuntimeError("blockhash expired")]

        with pytest.raises(LedgerWriteError):
            await engine.place_pixel(95, 5, 3)

        assert engine.color(95, 5) == 4
        assert not engine.is_locked(1, 0)
        [failure] = events_of(engine, Events.WRITE_FAILED)
        assert failure.detail["action"] == "place"
        assert failure.detail["error_type"] == "LedgerWriteError"
        assert (failure.detail["px"], failure.detail["py"]) == (95, 5)

    @pytest.mark.client
    async def test_timeout_rolls_back(self, engine, cache, writer, gate):
        cache.mark_unlocked(1, 0)
        writer.gate = gate

        with pytest.raises(TimeoutError):
            await engine.place_pixel(95, 5, 3, timeout=0.01)

        assert engine.color(95, 5) == 0
        assert engine.entry(95, 5).status is PixelStatus.ROLLED_BACK

    @pytest.mark.client
    async def test_remote_event_during_write_wins(self, engine, cache, writer, gate):
        cache.mark_unlocked(1, 0)
        writer.gate = gate
        writer.failures = [RuntimeError("dropped")]
        write = asyncio.create_task(engine.place_pixel(95, 5, 3))
        await asyncio.sleep(0)
        assert engine.color(95, 5) == 3

        engine.apply_remote_event(remote_pixel(95, 5, 9))
        gate.set()
        with pytest.raises(LedgerWriteError):
            await write

        assert engine.color(95, 5) == 9

    @pytest.mark.client
    async def test_erase(self, engine, cache, writer):
        cache.mark_unlocked(1, 0)
        engine.bulk_load([(95, 5, 4)])

        await engine.erase_pixel(95, 5)

        assert writer.names == ["erase_pixel"]
        assert engine.color(95, 5) == 0
        assert engine.shard_info(1, 0).pixel_count == 0

    @pytest.mark.client
    async def test_read_only_engine_cannot_write(self, cache):
        engine = ReplicaSyncEngine(cache)
        cache.mark_unlocked(1, 0)
        with pytest.raises(RuntimeError):
            await engine.place_pixel(95, 5, 3)


# ============================================================================
# OPTIMISTIC UNLOCK
# ============================================================================


class TestUnlockShard:
    @pytest.mark.client
    async def test_unlock_success(self, engine, writer):
        entry_id = await engine.unlock_shard(1, 0)

        assert entry_id == "delegate_shard-2"
        assert not engine.is_locked(1, 0)
        assert engine.shard_info(1, 0).owner == WALLET
        assert [r[:3] for r in engine.recent_shards] == [(1, 0, WALLET)]
        assert len(events_of(engine, Events.SHARD_UNLOCKED)) == 1

    @pytest.mark.client
    async def test_already_unlocked_is_noop(self, engine, cache, writer):
        cache.mark_unlocked(1, 0)
        assert await engine.unlock_shard(1, 0) is None
        assert writer.calls == []

    @pytest.mark.client
    async def test_unlock_shows_immediately_and_blocks_pixel_writes(self, engine, writer, gate):
        writer.gate = gate
        unlock = asyncio.create_task(engine.unlock_shard(1, 0))
        await asyncio.sleep(0)

        assert not engine.is_locked(1, 0)
        assert engine.is_unlocking(1, 0)
        assert await engine.unlock_shard(1, 0) is None
        with pytest.raises(ShardLockedError):
            await engine.place_pixel(95, 5, 3)

        gate.set()
        await unlock
        assert not engine.is_unlocking(1, 0)

    @pytest.mark.client
    async def test_failed_unlock_restores_lock(self, engine, writer):
        writer.failures = [RuntimeError("insufficient lamports")]

        with pytest.raises(LedgerWriteError):
            await engine.unlock_shard(1, 0)

        assert engine.is_locked(1, 0)
        assert engine.delegation.status(1, 0) is ShardStatus.UNKNOWN
        assert len(events_of(engine, Events.SHARD_LOCKED)) == 1
        [failure] = events_of(engine, Events.WRITE_FAILED)
        assert failure.detail["action"] == "unlock"
        assert failure.detail["px"] is None

    @pytest.mark.client
    async def test_remote_init_during_successful_unlock_only_sets_owner(self, engine, writer, gate):
        writer.gate = gate
        unlock = asyncio.create_task(engine.unlock_shard(1, 0))
        await asyncio.sleep(0)

        engine.apply_remote_event(ShardInitialized(1, 0, CREATOR, OTHER_WALLET, 77))
        gate.set()
        await unlock

        assert engine.shard_info(1, 0).owner == OTHER_WALLET
        assert list(engine.recent_shards) == [(1, 0, OTHER_WALLET, 77)]
        assert len(events_of(engine, Events.SHARD_UNLOCKED)) == 1

    @pytest.mark.client
    async def test_remote_init_during_failed_unlock_keeps_shard_unlocked(self, engine, writer, gate):
        writer.gate = gate
        writer.failures = [RuntimeError("already in use")]
        unlock = asyncio.create_task(engine.unlock_shard(1, 0))
        await asyncio.sleep(0)

        engine.apply_remote_event(ShardInitialized(1, 0, CREATOR, OTHER_WALLET, 77))
        gate.set()
        with pytest.raises(LedgerWriteError):
            await unlock

        assert not engine.is_locked(1, 0)
        assert engine.shard_info(1, 0).owner == OTHER_WALLET
        assert events_of(engine, Events.SHARD_LOCKED) == []


# ============================================================================
# DELEGATION, FOLLOWING, TEARDOWN
# ============================================================================


@pytest.mark.client
async def test_check_delegation_announces_unlock(engine, probe):
    assert await engine.check_delegation(1, 0) is ShardStatus.UNLOCKED
    assert len(events_of(engine, Events.SHARD_UNLOCKED)) == 1

    await engine.check_delegation(1, 0)
    assert len(events_of(engine, Events.SHARD_UNLOCKED)) == 1


@pytest.mark.client
async def test_check_visible_announces_new_unlocks_only(engine, cache, probe):
    cache.mark_unlocked(1, 0)
    probe.result = DelegationState.DELEGATED

    statuses = await engine.check_visible([(1, 0), (2, 0)])

    assert statuses[ShardKey(2, 0)] is ShardStatus.UNLOCKED
    [event] = events_of(engine, Events.SHARD_UNLOCKED)
    assert event.detail["shard_x"] == 2


@pytest.mark.client
async def test_follow_applies_and_drops_bad_events(engine):
    async def stream():
        yield remote_pixel(-1, 0, 3)
        yield remote_pixel(95, 5, 6)

    await engine.follow(stream())

    assert engine.color(95, 5) == 6


@pytest.mark.client
async def test_close_stops_following_without_raising(engine, gate):
    async def endless():
        yield remote_pixel(95, 5, 6)
        await gate.wait()
        yield remote_pixel(95, 5, 7)

    task = engine.start_following(endless())
    await asyncio.sleep(0)
    seen = []
    engine.bus.on(Events.PIXEL_CHANGED, seen.append)

    await engine.close()

    assert task.done()
    assert engine.color(95, 5) == 6
    assert engine.bus.get_handler_count(Events.PIXEL_CHANGED) == 0
