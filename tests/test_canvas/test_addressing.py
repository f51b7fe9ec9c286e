"""
Tests for shard keys and shard account addresses (place_server/canvas/addressing.py).
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from place_server.canvas.addressing import (
    ShardKey,
    check_shard,
    find_program_address,
    local_offset,
    shard_address,
    shard_for_pixel,
    shard_origin,
    shard_seeds,
)
from place_server.canvas.constants import CANVAS_RES, SHARD_DIMENSION, SHARDS_PER_DIM
from place_server.canvas.keys import decode_pubkey, is_on_curve
from place_server.errors import InvalidCoordinateError
from tests.constants import PROGRAM_ID

pixels = st.integers(min_value=0, max_value=CANVAS_RES - 1)


@pytest.mark.unit
def test_grid_size():
    assert SHARDS_PER_DIM == 5826


@pytest.mark.unit
def test_scenario_pixel_maps_to_second_shard():
    assert shard_for_pixel(95, 5) == ShardKey(1, 0)
    assert local_offset(95, 5) == (5, 5, 5 * SHARD_DIMENSION + 5)


@pytest.mark.unit
@given(px=pixels, py=pixels)
def test_pixels_in_same_cell_share_a_shard(px, py):
    sx, sy = px // SHARD_DIMENSION, py // SHARD_DIMENSION
    corner = shard_origin(sx, sy)
    assert shard_for_pixel(px, py) == (sx, sy)
    assert shard_for_pixel(*corner) == (sx, sy)


@pytest.mark.unit
@given(px=pixels, py=pixels)
def test_local_offset_rebuilds_global_pixel(px, py):
    shard = shard_for_pixel(px, py)
    offset = local_offset(px, py)
    ox, oy = shard_origin(*shard)
    assert (ox + offset.local_x, oy + offset.local_y) == (px, py)
    assert 0 <= offset.index < SHARD_DIMENSION * SHARD_DIMENSION


@pytest.mark.unit
@pytest.mark.parametrize("shard_x, shard_y", [(-1, 0), (0, -1), (SHARDS_PER_DIM, 0)])
def test_check_shard_rejects_off_grid(shard_x, shard_y):
    with pytest.raises(InvalidCoordinateError):
        check_shard(shard_x, shard_y)


@pytest.mark.unit
def test_shard_for_pixel_rejects_off_canvas():
    with pytest.raises(InvalidCoordinateError):
        shard_for_pixel(CANVAS_RES, 0)


@pytest.mark.unit
def test_shard_key_str():
    assert str(ShardKey(3, 4)) == "3,4"


@pytest.mark.unit
def test_shard_seeds_are_little_endian_u16():
    assert shard_seeds(258, 1) == [b"shard", b"\x02\x01", b"\x01\x00"]


class TestShardAddress:
    """Program-derived shard account addresses."""

    @pytest.mark.unit
    def test_address_is_deterministic(self):
        assert shard_address(1, 0, PROGRAM_ID) == shard_address(1, 0, PROGRAM_ID)

    @pytest.mark.unit
    def test_address_is_off_curve_pubkey(self):
        raw = decode_pubkey(shard_address(1, 0, PROGRAM_ID))
        assert len(raw) == 32
        assert not is_on_curve(raw)

    @pytest.mark.unit
    def test_neighbouring_shards_differ(self):
        assert shard_address(1, 0, PROGRAM_ID) != shard_address(0, 1, PROGRAM_ID)

    @pytest.mark.unit
    def test_bump_is_highest_off_curve_candidate(self):
        address, bump = find_program_address(shard_seeds(2, 3), PROGRAM_ID)
        assert 0 <= bump <= 255
        assert address == shard_address(2, 3, PROGRAM_ID)

    @pytest.mark.unit
    def test_rejects_bad_program_id(self):
        with pytest.raises(ValueError):
            find_program_address(shard_seeds(0, 0), "not-a-key")
