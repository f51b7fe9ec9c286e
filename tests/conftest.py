"""
Shared pytest fixtures for the place server test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary, schema-initialized SQLite index databases
- A FastAPI TestClient with the indexer disabled
- Canonical wallet keys and event builders for ledger payloads
"""

import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from place_server.config import use_test_database
from place_server.db.schema import init_database
from tests.constants import CREATOR, PAINTER, WALLET  # noqa: F401 - exported for other tests

# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """
    Point the config at a fresh database file for one test.

    Yields:
        Path to the temporary database file

    Cleanup:
        Removes the temporary directory after the test completes
    """
    temp_dir = tempfile.mkdtemp()
    temp_db = Path(temp_dir) / "test_place.db"

    with use_test_database(temp_db):
        yield temp_db

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def test_db(temp_db_path: Path) -> Generator[None, None, None]:
    """Initialize the index schema in the temporary database."""
    init_database()
    yield


# ============================================================================
# API FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def test_client(test_db) -> Generator[TestClient, None, None]:
    """
    FastAPI TestClient backed by the temporary index.

    The indexer is never started, so no test reaches a real ledger.
    """
    from place_server.api.server import create_app

    app = create_app(start_indexer=False)
    with TestClient(app) as client:
        yield client
