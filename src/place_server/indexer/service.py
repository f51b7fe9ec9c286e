"""
Indexer service: runs ingestion for every configured ledger source.

Per source it starts the live tail, and one shared loop re-runs backfill for
all sources concurrently, on a fixed interval or right after any live
subscription reconnects (a reconnect may have dropped entries).

Usage:
    service = IndexerService.from_config(config)
    async with service:
        service.start()
        await service.wait()

``place-server index`` runs it standalone; the API server runs it in its
lifespan when ``[indexer] enabled`` is true.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

from place_server.config import ServerConfig
from place_server.indexer.ingestor import BackfillReport, EventIngestor
from place_server.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

BASE_SOURCE = "base"
EPHEMERAL_SOURCE = "ephemeral"


def build_ledger_clients(cfg: ServerConfig) -> list[LedgerClient]:
    """Create read clients for the base layer and the ephemeral overlay."""
    ledger = cfg.ledger
    return [
        LedgerClient(
            label=BASE_SOURCE,
            rpc_url=ledger.base_rpc_url,
            ws_url=ledger.base_ws_url,
            program_id=ledger.program_id,
            commitment=ledger.commitment,
            timeout=ledger.request_timeout,
        ),
        LedgerClient(
            label=EPHEMERAL_SOURCE,
            rpc_url=ledger.ephemeral_rpc_url,
            ws_url=ledger.ephemeral_ws_url,
            program_id=ledger.program_id,
            commitment=ledger.commitment,
            timeout=ledger.request_timeout,
        ),
    ]


class IndexerService:
    """Owns one ingestor per source and the tasks that drive them."""

    def __init__(
        self,
        ingestors: list[EventIngestor],
        *,
        backfill_interval: float = 300.0,
        clients: list[LedgerClient] | None = None,
    ) -> None:
        self.ingestors = ingestors
        self.backfill_interval = backfill_interval
        self._clients = clients or []
        self._exit_stack: AsyncExitStack | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._backfill_requested = asyncio.Event()
        self._reports: dict[str, BackfillReport] = {}

    @classmethod
    def from_config(cls, cfg: ServerConfig) -> IndexerService:
        clients = build_ledger_clients(cfg)
        settings = cfg.indexer
        ingestors = [
            EventIngestor(
                client,
                page_size=settings.page_size,
                page_delay=settings.page_delay_seconds,
                reconnect_initial=settings.reconnect_initial_seconds,
                reconnect_max=settings.reconnect_max_seconds,
            )
            for client in clients
        ]
        return cls(ingestors, backfill_interval=settings.backfill_interval_seconds, clients=clients)

    async def __aenter__(self) -> IndexerService:
        self._exit_stack = AsyncExitStack()
        for client in self._clients:
            await self._exit_stack.enter_async_context(client)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start live tails and the backfill loop. Must run inside a loop."""
        if self._tasks:
            return
        for ingestor in self.ingestors:
            self._tasks.append(
                asyncio.create_task(
                    ingestor.run_live(on_reconnect=self.request_backfill),
                    name=f"live-{ingestor.source}",
                )
            )
        self._tasks.append(asyncio.create_task(self._backfill_loop(), name="backfill"))
        logger.info(
            "Indexer started for sources: %s", ", ".join(i.source for i in self.ingestors)
        )

    async def stop(self) -> None:
        """Cancel all tasks and wait for them to finish."""
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Indexer stopped")

    async def wait(self) -> None:
        """Block until every task has finished (normally: until cancelled)."""
        await asyncio.gather(*self._tasks)

    def request_backfill(self, source: str) -> None:
        """Ask the backfill loop to run now instead of at the next interval."""
        logger.info("Early backfill requested after %s reconnect", source)
        self._backfill_requested.set()

    async def backfill_once(self, *, from_genesis: bool = False) -> list[BackfillReport]:
        """Run one backfill pass for every source concurrently."""
        reports = await asyncio.gather(
            *(ingestor.backfill(from_genesis=from_genesis) for ingestor in self.ingestors)
        )
        for report in reports:
            self._reports[report.source] = report
        return list(reports)

    async def _backfill_loop(self) -> None:
        while True:
            self._backfill_requested.clear()
            try:
                await self.backfill_once()
            except Exception:
                # A failing pass must not end the loop; the next pass retries.
                logger.exception("Backfill pass failed")
            try:
                await asyncio.wait_for(
                    self._backfill_requested.wait(), timeout=self.backfill_interval
                )
            except TimeoutError:
                pass

    def status(self) -> dict[str, Any]:
        """Per-source counters for diagnostics."""
        result: dict[str, Any] = {}
        for ingestor in self.ingestors:
            report = self._reports.get(ingestor.source) or ingestor.stats.last_backfill
            result[ingestor.source] = {
                "live_applied": ingestor.stats.live_applied,
                "live_duplicates": ingestor.stats.live_duplicates,
                "live_reconnects": ingestor.stats.live_reconnects,
                "malformed": ingestor.stats.malformed,
                "last_backfill_interrupted": report.interrupted if report else None,
                "cursor": report.cursor if report else None,
            }
        return result
