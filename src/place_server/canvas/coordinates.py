"""Geographic to canvas coordinate conversion.

The canvas is a Web Mercator square of ``CANVAS_RES`` pixels per side. All
functions here are pure and use ``math.floor`` so a click resolved on the
client and an event stored on the server land on the same pixel.

Input ranges are checked, never clamped: a latitude beyond ``MAX_LATITUDE``
or a longitude outside [-180, 180) raises ``InvalidCoordinateError``. The
only adjustment made is pulling a result that float rounding pushed one
step past the canvas edge back inside it.
"""

from __future__ import annotations

import math

from place_server.canvas.addressing import check_pixel, check_shard
from place_server.canvas.constants import CANVAS_RES, MAX_LATITUDE, SHARD_DIMENSION
from place_server.errors import InvalidCoordinateError


def _check_lat_lon(lat: float, lon: float) -> None:
    if not math.isfinite(lat) or not math.isfinite(lon):
        raise InvalidCoordinateError(f"non-finite coordinate ({lat}, {lon})")
    if abs(lat) > MAX_LATITUDE:
        raise InvalidCoordinateError(f"latitude {lat} outside +/-{MAX_LATITUDE}")
    if not -180.0 <= lon < 180.0:
        raise InvalidCoordinateError(f"longitude {lon} outside [-180, 180)")


def _edge(value: int) -> int:
    return min(max(value, 0), CANVAS_RES - 1)


def _unit_to_lat(y: float) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y))))


def to_pixel(lat: float, lon: float) -> tuple[int, int]:
    """Project a latitude/longitude onto the global pixel grid.

    Args:
        lat: Latitude in degrees, within +/- ``MAX_LATITUDE``.
        lon: Longitude in degrees, in [-180, 180).

    Returns:
        ``(px, py)`` with ``py`` growing southward.

    Raises:
        InvalidCoordinateError: If the input is out of range.
    """
    _check_lat_lon(lat, lon)
    x = (lon + 180.0) / 360.0
    lat_rad = math.radians(lat)
    y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0
    return _edge(math.floor(x * CANVAS_RES)), _edge(math.floor(y * CANVAS_RES))


def to_lat_lon(px: int, py: int) -> tuple[float, float]:
    """Return the latitude/longitude of a pixel cell's north-west corner."""
    check_pixel(px, py)
    lon = px / CANVAS_RES * 360.0 - 180.0
    return _unit_to_lat(py / CANVAS_RES), lon


def pixel_center(px: int, py: int) -> tuple[float, float]:
    """Return the latitude/longitude at the middle of a pixel cell."""
    check_pixel(px, py)
    lon = (px + 0.5) / CANVAS_RES * 360.0 - 180.0
    return _unit_to_lat((py + 0.5) / CANVAS_RES), lon


def shard_bounds(shard_x: int, shard_y: int) -> tuple[float, float, float, float]:
    """Return ``(south, west, north, east)`` degrees covered by a shard.

    The last shard row and column are partial, since ``CANVAS_RES`` is not a
    multiple of ``SHARD_DIMENSION``; their bounds stop at the canvas edge.
    """
    check_shard(shard_x, shard_y)
    left = shard_x * SHARD_DIMENSION
    top = shard_y * SHARD_DIMENSION
    right = min(left + SHARD_DIMENSION, CANVAS_RES)
    bottom = min(top + SHARD_DIMENSION, CANVAS_RES)
    west = left / CANVAS_RES * 360.0 - 180.0
    east = right / CANVAS_RES * 360.0 - 180.0
    north = _unit_to_lat(top / CANVAS_RES)
    south = _unit_to_lat(bottom / CANVAS_RES)
    return south, west, north, east
