"""Canvas geometry, pixel encoding and palette constants.

These values must match the ledger program; client and server import them
from here so the two never disagree about where a pixel lives.
"""

import math

# Pixels per canvas dimension (2^19).
CANVAS_RES = 524288

# Pixels per shard dimension.
SHARD_DIMENSION = 90

# Shards per canvas dimension, ceil(CANVAS_RES / SHARD_DIMENSION) = 5826.
SHARDS_PER_DIM = math.ceil(CANVAS_RES / SHARD_DIMENSION)

# Bytes in a shard pixel buffer, one per pixel.
SHARD_PIXEL_COUNT = SHARD_DIMENSION * SHARD_DIMENSION

# Web Mercator latitude bound accepted by the coordinate mapper.
MAX_LATITUDE = 85.05112878

# Shard pixel buffers store one color index per byte (8-bit direct indexing).
# The older 4-bit packed layout is not readable by this package.
PIXEL_ENCODING = "u8"
MAX_COLOR_INDEX = 255

# Color index 0 means unset; placing it erases a pixel.
TRANSPARENT = 0

# Client palette, color index i maps to PRESET_COLORS[i - 1]. Indexes past the
# palette are valid on the ledger but have no preset swatch.
PRESET_COLORS: tuple[str, ...] = (
    "#000000",
    "#FFFFFF",
    "#FF0000",
    "#00FF00",
    "#0000FF",
    "#FFFF00",
    "#FF00FF",
    "#00FFFF",
    "#FF8000",
    "#FF4500",
    "#FFD700",
    "#FFA500",
    "#FF6347",
    "#DC143C",
    "#B22222",
    "#8B0000",
    "#8000FF",
    "#4B0082",
    "#6A5ACD",
    "#00CED1",
    "#20B2AA",
    "#008B8B",
    "#006400",
    "#228B22",
    "#00FF80",
    "#FF0080",
    "#FF69B4",
    "#DDA0DD",
    "#808080",
    "#A9A9A9",
    "#804000",
    "#008080",
)


def palette_hex(color: int) -> str | None:
    """Return the preset hex swatch for a color index, or None if it has none."""
    if 1 <= color <= len(PRESET_COLORS):
        return PRESET_COLORS[color - 1]
    return None
