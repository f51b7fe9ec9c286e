"""Shard account decoding and the 8-bit pixel buffer.

Account layout (little-endian):

    8   discriminator  sha256("account:PixelShard")[:8]
    2   shard_x
    2   shard_y
    4   pixel buffer length (always SHARD_PIXEL_COUNT)
    N   pixel buffer, one color index per byte
    32  creator
    1   bump
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from place_server.canvas.addressing import check_shard, local_offset, shard_origin
from place_server.canvas.constants import MAX_COLOR_INDEX, SHARD_DIMENSION, SHARD_PIXEL_COUNT
from place_server.canvas.keys import PUBKEY_LENGTH, b58encode
from place_server.errors import InvalidColorError, MalformedEventError

SHARD_ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:PixelShard").digest()[:8]

_HEADER = struct.Struct("<HHI")

SHARD_ACCOUNT_SIZE = 8 + _HEADER.size + SHARD_PIXEL_COUNT + PUBKEY_LENGTH + 1


def check_color(color: int) -> None:
    """Raise ``InvalidColorError`` unless ``color`` fits one pixel byte."""
    if isinstance(color, bool) or not isinstance(color, int) or not 0 <= color <= MAX_COLOR_INDEX:
        raise InvalidColorError(f"color index {color!r} outside [0, {MAX_COLOR_INDEX}]")


@dataclass
class ShardPixels:
    """Mutable D x D color buffer of one shard."""

    shard_x: int
    shard_y: int
    pixels: bytearray = field(default_factory=lambda: bytearray(SHARD_PIXEL_COUNT))
    creator: str | None = None

    def __post_init__(self) -> None:
        check_shard(self.shard_x, self.shard_y)
        if len(self.pixels) != SHARD_PIXEL_COUNT:
            raise ValueError(
                f"shard buffer must hold {SHARD_PIXEL_COUNT} bytes, got {len(self.pixels)}"
            )

    def _index(self, px: int, py: int) -> int:
        ox, oy = shard_origin(self.shard_x, self.shard_y)
        if not (ox <= px < ox + SHARD_DIMENSION and oy <= py < oy + SHARD_DIMENSION):
            raise ValueError(f"pixel ({px}, {py}) is not in shard ({self.shard_x}, {self.shard_y})")
        return local_offset(px, py).index

    def get(self, px: int, py: int) -> int:
        return self.pixels[self._index(px, py)]

    def set(self, px: int, py: int, color: int) -> None:
        check_color(color)
        self.pixels[self._index(px, py)] = color

    def painted(self) -> list[tuple[int, int, int]]:
        """Return ``(px, py, color)`` for every non-zero pixel."""
        ox, oy = shard_origin(self.shard_x, self.shard_y)
        return [
            (ox + index % SHARD_DIMENSION, oy + index // SHARD_DIMENSION, color)
            for index, color in enumerate(self.pixels)
            if color
        ]

    @property
    def painted_count(self) -> int:
        return SHARD_PIXEL_COUNT - self.pixels.count(0)


def decode_shard_account(data: bytes) -> ShardPixels:
    """Decode raw shard account data.

    Raises:
        MalformedEventError: If the data is not a shard account.
    """
    if len(data) < 8 + _HEADER.size or data[:8] != SHARD_ACCOUNT_DISCRIMINATOR:
        raise MalformedEventError("not a shard account")
    shard_x, shard_y, length = _HEADER.unpack_from(data, 8)
    start = 8 + _HEADER.size
    end = start + length
    if length != SHARD_PIXEL_COUNT or len(data) < end + PUBKEY_LENGTH:
        raise MalformedEventError(
            f"shard ({shard_x}, {shard_y}) account has pixel buffer of {length} bytes"
        )
    try:
        return ShardPixels(
            shard_x=shard_x,
            shard_y=shard_y,
            pixels=bytearray(data[start:end]),
            creator=b58encode(data[end : end + PUBKEY_LENGTH]),
        )
    except ValueError as exc:
        raise MalformedEventError(str(exc)) from exc


def encode_shard_account(shard: ShardPixels, creator: bytes, bump: int = 255) -> bytes:
    """Serialize a shard in account layout."""
    return (
        SHARD_ACCOUNT_DISCRIMINATOR
        + _HEADER.pack(shard.shard_x, shard.shard_y, len(shard.pixels))
        + bytes(shard.pixels)
        + creator
        + bytes([bump])
    )
