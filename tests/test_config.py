"""Tests for place_server.config: INI loading and environment overrides."""

import configparser
import textwrap

import pytest

from place_server.config import (
    ServerConfig,
    _load_from_ini,
    get_config_status,
    load_config,
    use_test_database,
)


@pytest.mark.unit
def test_defaults():
    cfg = ServerConfig()

    assert cfg.feed.feed_limit == 15
    assert cfg.indexer.page_size == 100
    assert cfg.indexer.page_delay_seconds == 2.0
    assert cfg.ledger.commitment == "confirmed"


@pytest.mark.unit
def test_ledger_env_overrides(monkeypatch):
    monkeypatch.setenv("PLACE_PROGRAM_ID", "Prog111")
    monkeypatch.setenv("PLACE_BASE_RPC_URL", "http://base.test")
    monkeypatch.setenv("PLACE_EPHEMERAL_WS_URL", "ws://overlay.test")

    cfg = load_config()

    assert cfg.ledger.program_id == "Prog111"
    assert cfg.ledger.base_rpc_url == "http://base.test"
    assert cfg.ledger.ephemeral_ws_url == "ws://overlay.test"


@pytest.mark.unit
def test_indexer_env_overrides(monkeypatch):
    monkeypatch.setenv("PLACE_INDEXER_ENABLED", "false")
    monkeypatch.setenv("PLACE_BACKFILL_PAGE_DELAY", "0.5")

    cfg = load_config()

    assert cfg.indexer.enabled is False
    assert cfg.indexer.page_delay_seconds == 0.5


@pytest.mark.unit
def test_log_env_overrides(monkeypatch):
    monkeypatch.setenv("PLACE_LOG_LEVEL", "debug")
    monkeypatch.setenv("PLACE_LOG_FORMAT", "JSON")

    cfg = load_config()

    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"


@pytest.mark.unit
def test_unknown_log_format_is_ignored(monkeypatch):
    monkeypatch.setenv("PLACE_LOG_FORMAT", "xml")
    assert load_config().logging.format in ("simple", "detailed", "json")


@pytest.mark.unit
def test_ini_sections_load():
    parser = configparser.ConfigParser()
    parser.read_string(
        textwrap.dedent(
            """
        [ledger]
        commitment = finalized
        request_timeout = 5

        [indexer]
        enabled = no
        page_size = 25
        reconnect_max_seconds = 30

        [feed]
        pixels_limit = 10

        [security]
        cors_origins = http://a.test, http://b.test
        """
        )
    )
    cfg = ServerConfig()

    _load_from_ini(parser, cfg)

    assert cfg.ledger.commitment == "finalized"
    assert cfg.ledger.request_timeout == 5.0
    assert cfg.indexer.enabled is False
    assert cfg.indexer.page_size == 25
    assert cfg.indexer.reconnect_max_seconds == 30.0
    assert cfg.feed.pixels_limit == 10
    assert cfg.security.cors_origins == ["http://a.test", "http://b.test"]


@pytest.mark.unit
def test_invalid_commitment_is_ignored():
    parser = configparser.ConfigParser()
    parser.read_string("[ledger]\ncommitment = eventually\n")
    cfg = ServerConfig()

    _load_from_ini(parser, cfg)

    assert cfg.ledger.commitment == "confirmed"


@pytest.mark.unit
def test_docs_follow_production():
    cfg = ServerConfig()
    assert cfg.docs_should_be_enabled is True
    cfg.security.production = True
    assert cfg.docs_should_be_enabled is False
    cfg.security.docs_enabled = "enabled"
    assert cfg.docs_should_be_enabled is True


@pytest.mark.unit
def test_use_test_database_restores_path(tmp_path):
    from place_server.config import config

    original = config.database.path
    with use_test_database(tmp_path / "x.db") as path:
        assert config.database.path == str(path)
    assert config.database.path == original


@pytest.mark.unit
def test_config_status_reports_sources(monkeypatch):
    from place_server.config import config

    monkeypatch.setattr(config.indexer, "enabled", False)
    status = get_config_status()

    assert status["indexer_enabled"] is False
    assert status["config_file_path"].endswith("server.ini")
    assert status["cors_origins_count"] == len(config.security.cors_origins)
