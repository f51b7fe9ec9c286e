"""Shard keys and shard account addresses.

A shard's on-ledger account lives at a program-derived address (PDA): the
first SHA-256 digest of ``seeds + [bump] + program_id + marker`` that is not
a valid ed25519 point, searching bump from 255 downward. Client and server
both derive addresses here, so they always agree where a shard's state lives.
"""

from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import NamedTuple

from place_server.canvas.constants import CANVAS_RES, SHARD_DIMENSION, SHARDS_PER_DIM
from place_server.canvas.keys import b58encode, decode_pubkey, is_on_curve
from place_server.errors import InvalidCoordinateError

SHARD_SEED = b"shard"
PDA_MARKER = b"ProgramDerivedAddress"


class ShardKey(NamedTuple):
    """Shard column and row on the shard grid."""

    shard_x: int
    shard_y: int

    def __str__(self) -> str:
        return f"{self.shard_x},{self.shard_y}"


class LocalOffset(NamedTuple):
    """A pixel's position inside its shard and its byte index in the buffer."""

    local_x: int
    local_y: int
    index: int


def check_shard(shard_x: int, shard_y: int) -> None:
    """Raise ``InvalidCoordinateError`` unless the shard is on the grid."""
    if not (0 <= shard_x < SHARDS_PER_DIM and 0 <= shard_y < SHARDS_PER_DIM):
        raise InvalidCoordinateError(f"shard ({shard_x}, {shard_y}) outside [0, {SHARDS_PER_DIM})")


def check_pixel(px: int, py: int) -> None:
    """Raise ``InvalidCoordinateError`` unless the pixel is on the canvas."""
    if not (0 <= px < CANVAS_RES and 0 <= py < CANVAS_RES):
        raise InvalidCoordinateError(f"pixel ({px}, {py}) outside canvas [0, {CANVAS_RES})")


def shard_for_pixel(px: int, py: int) -> ShardKey:
    """Return the shard containing a global pixel."""
    check_pixel(px, py)
    return ShardKey(px // SHARD_DIMENSION, py // SHARD_DIMENSION)


def local_offset(px: int, py: int) -> LocalOffset:
    """Return a pixel's shard-local coordinates and buffer index."""
    check_pixel(px, py)
    local_x = px % SHARD_DIMENSION
    local_y = py % SHARD_DIMENSION
    return LocalOffset(local_x, local_y, local_y * SHARD_DIMENSION + local_x)


def shard_origin(shard_x: int, shard_y: int) -> tuple[int, int]:
    """Return the global pixel at a shard's top-left corner."""
    check_shard(shard_x, shard_y)
    return shard_x * SHARD_DIMENSION, shard_y * SHARD_DIMENSION


def shard_seeds(shard_x: int, shard_y: int) -> list[bytes]:
    """Return the PDA seeds for a shard account."""
    check_shard(shard_x, shard_y)
    return [SHARD_SEED, shard_x.to_bytes(2, "little"), shard_y.to_bytes(2, "little")]


def find_program_address(seeds: list[bytes], program_id: str) -> tuple[str, int]:
    """Derive a program address and its bump seed.

    Raises:
        ValueError: If ``program_id`` is not a base58 public key, or no bump
            yields an off-curve digest.
    """
    program = decode_pubkey(program_id)
    prefix = b"".join(seeds)
    for bump in range(255, -1, -1):
        digest = hashlib.sha256(prefix + bytes([bump]) + program + PDA_MARKER).digest()
        if not is_on_curve(digest):
            return b58encode(digest), bump
    raise ValueError("unable to find a viable program address bump seed")


@lru_cache(maxsize=4096)
def shard_address(shard_x: int, shard_y: int, program_id: str) -> str:
    """Return the base58 account address holding a shard's state."""
    address, _ = find_program_address(shard_seeds(shard_x, shard_y), program_id)
    return address
