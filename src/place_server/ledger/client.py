"""
Ledger read client (JSON-RPC over HTTP plus a websocket log subscription).

One ``LedgerClient`` talks to one ledger tier (base layer or ephemeral
overlay). It must be used as an async context manager so the underlying
httpx connection pool is closed:

    async with LedgerClient(label="base", rpc_url=..., ws_url=..., program_id=...) as ledger:
        page = await ledger.fetch_history(limit=100)
        entry = await ledger.fetch_entry(page[0].entry_id)

Failure classification:
    - transport errors, timeouts, HTTP 429 and 5xx, and node-busy RPC codes
      raise ``TransientNetworkError`` (retry later)
    - any other JSON-RPC error object raises ``LedgerRPCError``
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import websockets
from websockets.exceptions import WebSocketException

from place_server.errors import LedgerRPCError, TransientNetworkError

logger = logging.getLogger(__name__)

# Node is behind, busy, or the slot is not yet available.
TRANSIENT_RPC_CODES = frozenset({-32004, -32005, -32007, -32014, -32016})


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class EntryRef:
    """One row of an entry history page (``getSignaturesForAddress``)."""

    entry_id: str
    slot: int
    failed: bool = False
    block_time: int | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """A fetched transaction: its identity, outcome and log lines."""

    entry_id: str
    slot: int
    failed: bool
    logs: tuple[str, ...] = ()


@dataclass(frozen=True)
class LogNotification:
    """A live ``logsNotification`` for one transaction."""

    entry_id: str
    slot: int
    failed: bool
    logs: tuple[str, ...] = ()


@dataclass(frozen=True)
class AccountInfo:
    """Account state as returned by ``getAccountInfo``."""

    address: str
    owner: str
    lamports: int
    data: bytes


def _account_from_value(address: str, value: dict[str, Any]) -> AccountInfo:
    raw = value.get("data") or ["", "base64"]
    encoded = raw[0] if isinstance(raw, list) else raw
    return AccountInfo(
        address=address,
        owner=value.get("owner", ""),
        lamports=int(value.get("lamports", 0)),
        data=base64.b64decode(encoded) if encoded else b"",
    )


# =============================================================================
# CLIENT
# =============================================================================


@dataclass
class LedgerClient:
    """
    Async JSON-RPC client for one ledger tier.

    Attributes:
        label: Source label used for cursors and logging ("base", "ephemeral").
        rpc_url: HTTP JSON-RPC endpoint.
        ws_url: Websocket endpoint for ``logsSubscribe``.
        program_id: Base58 id of the canvas program.
        commitment: Commitment level for reads and subscriptions.
        timeout: Per-request timeout in seconds.
    """

    label: str
    rpc_url: str
    ws_url: str
    program_id: str
    commitment: str = "confirmed"
    timeout: float = 30.0

    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)
    _request_id: int = field(default=0, repr=False)

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> LedgerClient:
        self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        Get the HTTP client, ensuring it's been initialized.

        Raises:
            RuntimeError: If accessed outside of async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                "LedgerClient must be used as an async context manager. "
                "Use 'async with LedgerClient(...) as ledger:'"
            )
        return self._http_client

    # -------------------------------------------------------------------------
    # JSON-RPC
    # -------------------------------------------------------------------------

    async def rpc(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request and return its ``result`` member."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self.http_client.post(self.rpc_url, json=payload)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{self.label} {method}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"{self.label} {method}: HTTP {response.status_code}")
        if response.status_code != 200:
            raise LedgerRPCError(
                f"{self.label} {method}: HTTP {response.status_code}", code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientNetworkError(f"{self.label} {method}: invalid JSON response") from exc

        error = body.get("error")
        if error:
            code = int(error.get("code", 0))
            message = f"{self.label} {method}: {error.get('message', 'RPC error')}"
            if code in TRANSIENT_RPC_CODES:
                raise TransientNetworkError(message)
            raise LedgerRPCError(message, code=code, data=error.get("data"))
        return body.get("result")

    async def fetch_history(
        self,
        *,
        before: str | None = None,
        until: str | None = None,
        limit: int = 100,
    ) -> list[EntryRef]:
        """Return a newest-first page of entries mentioning the program.

        Args:
            before: Start strictly older than this entry id.
            until: Stop at (and exclude) this entry id.
            limit: Page size.
        """
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        if until:
            options["until"] = until
        result = await self.rpc("getSignaturesForAddress", [self.program_id, options])
        return [
            EntryRef(
                entry_id=row["signature"],
                slot=int(row.get("slot", 0)),
                failed=row.get("err") is not None,
                block_time=row.get("blockTime"),
            )
            for row in result or []
        ]

    async def fetch_entry(self, entry_id: str) -> LedgerEntry | None:
        """Fetch one transaction's outcome and logs, or None if unknown."""
        result = await self.rpc(
            "getTransaction",
            [
                entry_id,
                {
                    "commitment": self.commitment,
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        meta = result.get("meta") or {}
        return LedgerEntry(
            entry_id=entry_id,
            slot=int(result.get("slot", 0)),
            failed=meta.get("err") is not None,
            logs=tuple(meta.get("logMessages") or ()),
        )

    async def get_account_info(self, address: str) -> AccountInfo | None:
        """Fetch an account, or None when it does not exist."""
        result = await self.rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return _account_from_value(address, value)

    async def get_program_accounts(self, *, data_size: int | None = None) -> list[AccountInfo]:
        """Fetch every account owned by the canvas program on this tier."""
        options: dict[str, Any] = {"encoding": "base64", "commitment": self.commitment}
        if data_size is not None:
            options["filters"] = [{"dataSize": data_size}]
        result = await self.rpc("getProgramAccounts", [self.program_id, options])
        return [_account_from_value(row["pubkey"], row["account"]) for row in result or []]

    # -------------------------------------------------------------------------
    # Live subscription
    # -------------------------------------------------------------------------

    def subscribe_request(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [{"mentions": [self.program_id]}, {"commitment": self.commitment}],
        }

    async def subscribe(self) -> AsyncIterator[LogNotification]:
        """Yield log notifications for the program until the socket drops.

        Raises:
            TransientNetworkError: When the connection fails or closes. The
                caller decides whether and when to reconnect.
        """
        try:
            async with websockets.connect(
                self.ws_url, open_timeout=self.timeout, close_timeout=5, max_size=None
            ) as ws:
                await ws.send(json.dumps(self.subscribe_request()))
                logger.info("Subscribed to %s program logs at %s", self.label, self.ws_url)
                async for notification in parse_notifications(ws):
                    yield notification
        except (OSError, WebSocketException) as exc:
            raise TransientNetworkError(f"{self.label} subscription dropped: {exc}") from exc
        raise TransientNetworkError(f"{self.label} subscription closed by server")


async def parse_notifications(messages: AsyncIterable[str | bytes]) -> AsyncIterator[LogNotification]:
    """Turn raw websocket frames into ``LogNotification`` objects.

    The subscription acknowledgement and anything that is not a
    ``logsNotification`` are ignored.
    """
    async for raw in messages:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON subscription frame")
            continue
        if message.get("method") != "logsNotification":
            if "error" in message:
                raise LedgerRPCError(
                    f"logsSubscribe rejected: {message['error'].get('message', '')}",
                    code=int(message["error"].get("code", 0)),
                )
            continue
        result = message.get("params", {}).get("result", {})
        value = result.get("value", {})
        signature = value.get("signature")
        if not signature:
            continue
        yield LogNotification(
            entry_id=signature,
            slot=int(result.get("context", {}).get("slot", 0)),
            failed=value.get("err") is not None,
            logs=tuple(value.get("logs") or ()),
        )
