"""Place Server: shared-canvas ledger indexer and client replica.

Indexes pixel and shard events emitted by the canvas ledger program on both
the base layer and the ephemeral overlay into a local SQLite store, serves a
small read API over it, and ships the client-side replica engine that keeps
an optimistic in-memory mirror of the canvas.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
``server.py`` and ``health.py`` import ``__version__`` from here.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# When the package is imported from a source checkout without being
# installed, fall back to the version declared in pyproject.toml.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("place-server")
except PackageNotFoundError:
    __version__ = "0.1.0"
