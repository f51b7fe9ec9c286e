"""
Pydantic models for the read API.

The feed, stats and user shapes are fixed; clients built against them
parse these exact field names.
"""

from pydantic import BaseModel, Field


class FeedPixel(BaseModel):
    """One recent pixel event."""

    px: int
    py: int
    color: int
    timestamp: int


class FeedShard(BaseModel):
    """One recently initialized shard."""

    shard_x: int
    shard_y: int
    timestamp: int


class FeedResponse(BaseModel):
    """Recent pixels and shards, newest first."""

    pixels: list[FeedPixel]
    shards: list[FeedShard]


class StatsResponse(BaseModel):
    total_pixels_placed: int
    total_shards_deployed: int


class UserStatsResponse(BaseModel):
    """
    Counters for one main wallet.

    Attributes:
        pixels_placed_count: Placements (erases excluded) made by the wallet.
        shards_owned_count: Shards initialized with the wallet as owner.
    """

    pixels_placed_count: int
    shards_owned_count: int


class PixelsResponse(BaseModel):
    pixels: list[FeedPixel]


class ShardSummary(FeedShard):
    main_wallet: str


class ShardsResponse(BaseModel):
    shards: list[ShardSummary]


class ShardDetailResponse(BaseModel):
    """
    Current pixel buffer of one shard.

    Attributes:
        creator: Creator key, or None when only pixel events were indexed.
        encoding: Pixel buffer format, always ``"u8"`` (one byte per pixel).
        pixels: Base64 of the row-major buffer.
        painted: Number of non-zero pixels.
    """

    shard_x: int
    shard_y: int
    creator: str | None
    encoding: str = Field(default="u8")
    pixels: str
    painted: int
