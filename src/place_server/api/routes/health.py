"""Health and root endpoints.

``/`` reports API identity and version; ``/health`` reports liveness plus
indexer status when the indexer runs in this process.
"""

from fastapi import APIRouter

from place_server import __version__
from place_server.indexer.service import IndexerService


def router(indexer: IndexerService | None) -> APIRouter:
    """Build the health router, optionally reporting on an indexer."""
    api = APIRouter()

    @api.get("/")
    async def root():
        """Root endpoint showing API identity and current version."""
        return {"message": "Place Server API", "version": __version__}

    @api.get("/health")
    async def health_check():
        """Health check endpoint."""
        if indexer is None:
            return {"status": "ok", "indexer": None}
        return {
            "status": "ok",
            "indexer": {"running": indexer.running, "sources": indexer.status()},
        }

    return api
