"""
FastAPI read server for the canvas index.

This module builds the application that serves feed, stats and shard
lookups from the SQLite index. It sets up:
- CORS middleware so the canvas web client can call the API cross-origin
- A lifespan that initializes the schema and, when enabled, runs the
  indexer in-process
- All API routes
- A handler mapping DB-layer failures to 503 responses
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from place_server import __version__
from place_server.api.routes.register import register_routes
from place_server.config import config
from place_server.db.errors import DatabaseError
from place_server.db.schema import init_database
from place_server.indexer.service import IndexerService

logger = logging.getLogger(__name__)


def create_app(*, start_indexer: bool | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        start_indexer: Run the indexer in the app lifespan. Defaults to
            ``[indexer] enabled``.
    """
    run_indexer = config.indexer.enabled if start_indexer is None else start_indexer
    indexer = IndexerService.from_config(config) if run_indexer else None

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        init_database()
        if indexer is None:
            yield
            return
        async with indexer:
            indexer.start()
            yield

    docs = config.docs_should_be_enabled
    app = FastAPI(
        title="Place Server",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_origins,
        allow_credentials=config.security.cors_allow_credentials,
        allow_methods=config.security.cors_allow_methods,
        allow_headers=config.security.cors_allow_headers,
    )

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error("Database failure serving %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Index temporarily unavailable"})

    register_routes(app, indexer)
    return app


def start_server(host: str | None = None, port: int | None = None) -> None:
    """Run the API under uvicorn using configured defaults."""
    import uvicorn

    uvicorn.run(
        create_app(),
        host=host or config.server.host,
        port=port or config.server.port,
        # Logging is configured by the CLI, not by uvicorn.
        log_config=None,
    )


if __name__ == "__main__":
    start_server()
