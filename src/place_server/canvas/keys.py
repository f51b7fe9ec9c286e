"""Ledger public key helpers: base58 text form and ed25519 curve membership."""

from __future__ import annotations

import base58

PUBKEY_LENGTH = 32

# Curve25519 field prime and the twisted Edwards constant d = -121665/121666.
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def b58encode(data: bytes) -> str:
    """Encode bytes as base58 text (leading zero bytes become ``1``)."""
    return base58.b58encode(data).decode("ascii")


def b58decode(text: str) -> bytes:
    """Decode base58 text.

    Raises:
        ValueError: If ``text`` contains a character outside the alphabet.
    """
    return base58.b58decode(text)


def decode_pubkey(text: str) -> bytes:
    """Decode a base58 public key and check it is 32 bytes long."""
    raw = b58decode(text)
    if len(raw) != PUBKEY_LENGTH:
        raise ValueError(f"public key must be {PUBKEY_LENGTH} bytes, got {len(raw)}")
    return raw


def is_on_curve(point: bytes) -> bool:
    """Return True if 32 bytes decompress to a point on the ed25519 curve.

    Follows the usual decompression rule: the y coordinate (sign bit masked)
    is reduced mod p, and the point exists when (y^2 - 1) / (d*y^2 + 1) has a
    square root in the field.
    """
    if len(point) != PUBKEY_LENGTH:
        return False
    y = (int.from_bytes(point, "little") & ((1 << 255) - 1)) % _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    # Candidate root x = u * v^3 * (u * v^7)^((p - 5) / 8)
    v3 = v * v % _P * v % _P
    x = u * v3 % _P * pow(u * v3 % _P * v3 % _P * v % _P, (_P - 5) // 8, _P) % _P
    vx2 = v * x % _P * x % _P
    # Either x or x*sqrt(-1) is the root.
    return vx2 == u or vx2 == (-u) % _P
