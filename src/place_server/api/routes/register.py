"""
Route registration entry point for the FastAPI application.
"""

from fastapi import FastAPI

from place_server.api.routes import feed, health
from place_server.indexer.service import IndexerService


def register_routes(app: FastAPI, indexer: IndexerService | None = None) -> None:
    """Register all API routes with the FastAPI app."""
    app.include_router(health.router(indexer))
    app.include_router(feed.router)
