"""
Fixtures for the client replica tests.

``FakeProbe`` and ``ScriptedWriter`` replace the ledger: both can be held
open on an ``asyncio.Event`` so a test can act while a call is in flight.
"""

import asyncio

import pytest

from place_server.client.delegation import DelegationState, DelegationStatusCache
from place_server.client.replica import ReplicaSyncEngine
from place_server.client.writes import LedgerWriteGateway
from tests.constants import WALLET


class FakeProbe:
    """Delegation probe returning a fixed verdict, optionally gated."""

    def __init__(self, result=DelegationState.DELEGATED):
        self.result = result
        self.error = None
        self.gate = None
        self.calls = []

    async def probe(self, shard_x, shard_y):
        self.calls.append((shard_x, shard_y))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class ScriptedWriter:
    """
    Ledger writer that fails according to a script.

    ``failures`` is consumed one item per call, in call order; ``None``
    means that call succeeds. Every call is recorded in ``calls``.
    """

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = []
        self.gate = None

    async def _call(self, name, *args):
        self.calls.append((name, *args))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        return f"{name}-{len(self.calls)}"

    async def place_pixel(self, shard_x, shard_y, px, py, color):
        return await self._call("place_pixel", shard_x, shard_y, px, py, color)

    async def erase_pixel(self, shard_x, shard_y, px, py):
        return await self._call("erase_pixel", shard_x, shard_y, px, py)

    async def initialize_shard(self, shard_x, shard_y):
        return await self._call("initialize_shard", shard_x, shard_y)

    async def delegate_shard(self, shard_x, shard_y):
        return await self._call("delegate_shard", shard_x, shard_y)

    @property
    def names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def cache(probe):
    return DelegationStatusCache(probe)


@pytest.fixture
def writer():
    return ScriptedWriter()


@pytest.fixture
def engine(cache, writer):
    return ReplicaSyncEngine(cache, LedgerWriteGateway(writer), wallet=WALLET)


@pytest.fixture
def gate():
    return asyncio.Event()
