"""Feed, stats and shard lookup endpoints.

All lists are bounded by ``[feed]`` limits and ordered newest first.
"""

import base64

from fastapi import APIRouter, HTTPException, Query

from place_server.api.models import (
    FeedResponse,
    PixelsResponse,
    ShardDetailResponse,
    ShardsResponse,
    StatsResponse,
    UserStatsResponse,
)
from place_server.config import config
from place_server.db import feed_repo
from place_server.errors import InvalidCoordinateError

router = APIRouter(prefix="/api")


@router.get("/feed", response_model=FeedResponse)
async def get_feed():
    """Recent pixel placements and shard unlocks."""
    return feed_repo.get_feed(config.feed.feed_limit)


@router.get("/stats", response_model=StatsResponse)
async def get_stats():
    return feed_repo.get_global_stats()


@router.get("/user", response_model=UserStatsResponse)
async def get_user(address: str = Query(..., min_length=1)):
    """Counters for a main wallet; zeros for wallets never seen."""
    return feed_repo.get_user_stats(address)


@router.get("/pixels", response_model=PixelsResponse)
async def get_pixels():
    return {"pixels": feed_repo.get_recent_pixels(config.feed.pixels_limit)}


@router.get("/shards", response_model=ShardsResponse)
async def get_shards():
    return {"shards": feed_repo.get_recent_shards(config.feed.shards_limit)}


@router.get("/shards/{shard_x}/{shard_y}", response_model=ShardDetailResponse)
async def get_shard(shard_x: int, shard_y: int):
    """
    Current pixel buffer of one shard.

    Returns 400 for coordinates off the shard grid and 404 for a shard the
    index has never seen.
    """
    try:
        snapshot = feed_repo.get_shard_snapshot(shard_x, shard_y)
    except InvalidCoordinateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Shard ({shard_x}, {shard_y}) not indexed")
    return ShardDetailResponse(
        shard_x=shard_x,
        shard_y=shard_y,
        creator=snapshot.creator,
        pixels=base64.b64encode(bytes(snapshot.pixels)).decode(),
        painted=snapshot.painted_count,
    )
