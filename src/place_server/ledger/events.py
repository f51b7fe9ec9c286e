"""Decoding of canvas program events from ledger transaction logs.

The program emits events as ``Program data: <base64>`` log lines. Each
payload starts with an 8-byte discriminator, ``sha256("event:<Name>")[:8]``,
followed by the event's fields in little-endian order. Only two shapes are
known; anything else is skipped rather than guessed at.

Logs from other programs invoked in the same transaction can also contain
``Program data:`` lines, so decoding walks the invoke stack and only looks at
lines emitted while the canvas program is the one executing.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
import struct
from collections.abc import Iterable
from dataclasses import dataclass

from place_server.canvas.addressing import ShardKey, shard_for_pixel
from place_server.canvas.keys import b58encode, decode_pubkey
from place_server.errors import MalformedEventError

logger = logging.getLogger(__name__)


def event_discriminator(name: str) -> bytes:
    """Return the 8-byte discriminator for an event name."""
    return hashlib.sha256(f"event:{name}".encode()).digest()[:8]


PIXEL_CHANGED = "PixelChanged"
SHARD_INITIALIZED = "ShardInitialized"

_PIXEL_CHANGED_DISC = event_discriminator(PIXEL_CHANGED)
_SHARD_INITIALIZED_DISC = event_discriminator(SHARD_INITIALIZED)

# px u32, py u32, color u8, painter [32], main_wallet [32], timestamp u64
_PIXEL_CHANGED_LAYOUT = struct.Struct("<IIB32s32sQ")
# shard_x u16, shard_y u16, creator [32], main_wallet [32], timestamp u64
_SHARD_INITIALIZED_LAYOUT = struct.Struct("<HH32s32sQ")

_INVOKE_RE = re.compile(r"^Program (\w+) invoke \[(\d+)\]$")
_EXIT_RE = re.compile(r"^Program (\w+) (success|failed.*)$")
_DATA_PREFIX = "Program data: "


@dataclass(frozen=True)
class PixelChanged:
    """A pixel was painted (color > 0) or erased (color 0)."""

    px: int
    py: int
    color: int
    painter: str
    main_wallet: str
    timestamp: int
    entry_id: str = ""

    @property
    def shard(self) -> ShardKey:
        return shard_for_pixel(self.px, self.py)

    @property
    def is_erase(self) -> bool:
        return self.color == 0


@dataclass(frozen=True)
class ShardInitialized:
    """A shard account was created."""

    shard_x: int
    shard_y: int
    creator: str
    main_wallet: str
    timestamp: int
    entry_id: str = ""

    @property
    def shard(self) -> ShardKey:
        return ShardKey(self.shard_x, self.shard_y)


CanvasEvent = PixelChanged | ShardInitialized


def encode_event(event: CanvasEvent) -> bytes:
    """Serialize an event to its on-ledger payload.

    Public keys are expected in base58 and must decode to 32 bytes.
    """
    if isinstance(event, PixelChanged):
        return _PIXEL_CHANGED_DISC + _PIXEL_CHANGED_LAYOUT.pack(
            event.px,
            event.py,
            event.color,
            decode_pubkey(event.painter),
            decode_pubkey(event.main_wallet),
            event.timestamp,
        )
    return _SHARD_INITIALIZED_DISC + _SHARD_INITIALIZED_LAYOUT.pack(
        event.shard_x,
        event.shard_y,
        decode_pubkey(event.creator),
        decode_pubkey(event.main_wallet),
        event.timestamp,
    )


def decode_event(payload: bytes, *, entry_id: str = "") -> CanvasEvent | None:
    """Decode one event payload.

    Returns:
        The decoded event, or None when the discriminator is not a known
        event.

    Raises:
        MalformedEventError: If a known event's payload is truncated.
    """
    disc, body = payload[:8], payload[8:]
    try:
        if disc == _PIXEL_CHANGED_DISC:
            px, py, color, painter, wallet, ts = _PIXEL_CHANGED_LAYOUT.unpack_from(body)
            return PixelChanged(
                px=px,
                py=py,
                color=color,
                painter=b58encode(painter),
                main_wallet=b58encode(wallet),
                timestamp=ts,
                entry_id=entry_id,
            )
        if disc == _SHARD_INITIALIZED_DISC:
            shard_x, shard_y, creator, wallet, ts = _SHARD_INITIALIZED_LAYOUT.unpack_from(body)
            return ShardInitialized(
                shard_x=shard_x,
                shard_y=shard_y,
                creator=b58encode(creator),
                main_wallet=b58encode(wallet),
                timestamp=ts,
                entry_id=entry_id,
            )
    except struct.error as exc:
        raise MalformedEventError(f"truncated event payload in {entry_id or 'entry'}") from exc
    return None


def decode_logs(logs: Iterable[str], program_id: str, *, entry_id: str = "") -> list[CanvasEvent]:
    """Decode every canvas event in a transaction's log lines.

    Args:
        logs: Log messages in emission order.
        program_id: Base58 id of the canvas program.
        entry_id: Transaction signature, copied onto each event.

    Raises:
        MalformedEventError: If a canvas-program data line is not valid
            base64 or carries a truncated known event.
    """
    stack: list[str] = []
    events: list[CanvasEvent] = []
    for line in logs:
        if match := _INVOKE_RE.match(line):
            stack.append(match.group(1))
            continue
        if match := _EXIT_RE.match(line):
            if stack and stack[-1] == match.group(1):
                stack.pop()
            continue
        if not line.startswith(_DATA_PREFIX) or not stack or stack[-1] != program_id:
            continue
        encoded = line[len(_DATA_PREFIX) :].strip()
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedEventError(f"invalid base64 event payload in {entry_id}") from exc
        event = decode_event(payload, entry_id=entry_id)
        if event is None:
            logger.debug("Skipping unknown event discriminator %s in %s", payload[:8].hex(), entry_id)
            continue
        events.append(event)
    return events


def program_data_line(event: CanvasEvent) -> str:
    """Render an event as the log line the program would emit."""
    return _DATA_PREFIX + base64.b64encode(encode_event(event)).decode()
