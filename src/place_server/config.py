"""
Server configuration management.

This module handles loading and accessing configuration from multiple sources
with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/server.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Configuration is loaded once at module import time and cached. The ServerConfig
dataclass provides typed access to all settings.

Usage:
    from place_server.config import config

    print(config.server.port)
    print(config.ledger.program_id)
    print(config.indexer.page_size)

Environment Variable Mapping:
    PLACE_HOST                 -> server.host
    PLACE_PORT                 -> server.port
    PLACE_PRODUCTION           -> security.production
    PLACE_CORS_ORIGINS         -> security.cors_origins
    PLACE_DB_PATH              -> database.path
    PLACE_LOG_LEVEL            -> logging.level
    PLACE_LOG_FORMAT           -> logging.format
    PLACE_PROGRAM_ID           -> ledger.program_id
    PLACE_BASE_RPC_URL         -> ledger.base_rpc_url
    PLACE_BASE_WS_URL          -> ledger.base_ws_url
    PLACE_EPHEMERAL_RPC_URL    -> ledger.ephemeral_rpc_url
    PLACE_EPHEMERAL_WS_URL     -> ledger.ephemeral_ws_url
    PLACE_INDEXER_ENABLED      -> indexer.enabled
    PLACE_BACKFILL_PAGE_DELAY  -> indexer.page_delay_seconds
"""

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "server.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "server.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class ServerSettings:
    """Network server configuration."""

    host: str = "0.0.0.0"  # nosec B104 - intentional for server binding
    port: int = 8000


@dataclass
class SecuritySettings:
    """CORS and docs exposure."""

    production: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = field(default_factory=lambda: ["GET"])
    cors_allow_headers: list[str] = field(default_factory=lambda: ["*"])
    docs_enabled: Literal["auto", "enabled", "disabled"] = "auto"


@dataclass
class DatabaseSettings:
    """Database configuration."""

    path: str = "data/place.db"
    busy_timeout_ms: int = 5000

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class LedgerSettings:
    """Ledger endpoints and program identity.

    The base layer is the durable tier; the ephemeral overlay is the fast tier
    shards are delegated to.
    """

    program_id: str = "4j29Do6VWdMhfLBdi4n3AeWdVXNEzJNG72sFVUe9cUSe"
    delegation_program_id: str = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"
    base_rpc_url: str = "https://api.devnet.solana.com"
    base_ws_url: str = "wss://api.devnet.solana.com"
    ephemeral_rpc_url: str = "https://devnet.magicblock.app"
    ephemeral_ws_url: str = "wss://devnet.magicblock.app"
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    request_timeout: float = 30.0


@dataclass
class IndexerSettings:
    """Backfill pagination and live-subscription reconnect tuning."""

    enabled: bool = True
    page_size: int = 100
    page_delay_seconds: float = 2.0
    backfill_interval_seconds: float = 300.0
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


@dataclass
class FeedSettings:
    """Fixed limits for the read API feeds."""

    feed_limit: int = 15
    pixels_limit: int = 100
    shards_limit: int = 50


@dataclass
class ServerConfig:
    """
    Complete server configuration.

    This is the main configuration object that aggregates all settings sections.
    Access via the module-level `config` singleton.
    """

    server: ServerSettings = field(default_factory=ServerSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    indexer: IndexerSettings = field(default_factory=IndexerSettings)
    feed: FeedSettings = field(default_factory=FeedSettings)

    @property
    def is_production(self) -> bool:
        """Convenience property for production mode check."""
        return self.security.production

    @property
    def docs_should_be_enabled(self) -> bool:
        """Determine if API docs should be enabled based on settings."""
        if self.security.docs_enabled == "enabled":
            return True
        if self.security.docs_enabled == "disabled":
            return False
        # "auto" - follow production setting
        return not self.is_production


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _parse_list(value: str) -> list[str]:
    """Parse a comma-separated string to list, stripping whitespace."""
    if not value or value.strip() == "":
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _load_from_ini(parser: configparser.ConfigParser, cfg: ServerConfig) -> None:
    """Load configuration from parsed INI file into ServerConfig."""
    if parser.has_section("server"):
        if parser.has_option("server", "host"):
            cfg.server.host = parser.get("server", "host")
        if parser.has_option("server", "port"):
            cfg.server.port = parser.getint("server", "port")

    if parser.has_section("security"):
        if parser.has_option("security", "production"):
            cfg.security.production = _parse_bool(parser.get("security", "production"))
        if parser.has_option("security", "cors_origins"):
            cfg.security.cors_origins = _parse_list(parser.get("security", "cors_origins"))
        if parser.has_option("security", "cors_allow_credentials"):
            cfg.security.cors_allow_credentials = _parse_bool(
                parser.get("security", "cors_allow_credentials")
            )
        if parser.has_option("security", "cors_allow_methods"):
            cfg.security.cors_allow_methods = _parse_list(
                parser.get("security", "cors_allow_methods")
            )
        if parser.has_option("security", "cors_allow_headers"):
            cfg.security.cors_allow_headers = _parse_list(
                parser.get("security", "cors_allow_headers")
            )
        if parser.has_option("security", "docs_enabled"):
            val = parser.get("security", "docs_enabled").lower()
            if val in ("auto", "enabled", "disabled"):
                cfg.security.docs_enabled = val  # type: ignore[assignment]

    if parser.has_section("database"):
        if parser.has_option("database", "path"):
            cfg.database.path = parser.get("database", "path")
        if parser.has_option("database", "busy_timeout_ms"):
            cfg.database.busy_timeout_ms = parser.getint("database", "busy_timeout_ms")

    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]

    if parser.has_section("ledger"):
        for key in (
            "program_id",
            "delegation_program_id",
            "base_rpc_url",
            "base_ws_url",
            "ephemeral_rpc_url",
            "ephemeral_ws_url",
        ):
            if parser.has_option("ledger", key):
                setattr(cfg.ledger, key, parser.get("ledger", key))
        if parser.has_option("ledger", "commitment"):
            val = parser.get("ledger", "commitment").lower()
            if val in ("processed", "confirmed", "finalized"):
                cfg.ledger.commitment = val  # type: ignore[assignment]
        if parser.has_option("ledger", "request_timeout"):
            cfg.ledger.request_timeout = parser.getfloat("ledger", "request_timeout")

    if parser.has_section("indexer"):
        if parser.has_option("indexer", "enabled"):
            cfg.indexer.enabled = _parse_bool(parser.get("indexer", "enabled"))
        if parser.has_option("indexer", "page_size"):
            cfg.indexer.page_size = parser.getint("indexer", "page_size")
        for key in (
            "page_delay_seconds",
            "backfill_interval_seconds",
            "reconnect_initial_seconds",
            "reconnect_max_seconds",
        ):
            if parser.has_option("indexer", key):
                setattr(cfg.indexer, key, parser.getfloat("indexer", key))

    if parser.has_section("feed"):
        for key in ("feed_limit", "pixels_limit", "shards_limit"):
            if parser.has_option("feed", key):
                setattr(cfg.feed, key, parser.getint("feed", key))


def _apply_env_overrides(cfg: ServerConfig) -> None:
    """Apply environment variable overrides to configuration."""
    if env_host := os.getenv("PLACE_HOST"):
        cfg.server.host = env_host
    if env_port := os.getenv("PLACE_PORT"):
        cfg.server.port = int(env_port)

    if env_production := os.getenv("PLACE_PRODUCTION"):
        cfg.security.production = _parse_bool(env_production)
    if env_cors := os.getenv("PLACE_CORS_ORIGINS"):
        cfg.security.cors_origins = _parse_list(env_cors)

    if env_db := os.getenv("PLACE_DB_PATH"):
        cfg.database.path = env_db

    if env_log := os.getenv("PLACE_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()
    if env_log_format := os.getenv("PLACE_LOG_FORMAT"):
        if env_log_format.lower() in ("simple", "detailed", "json"):
            cfg.logging.format = env_log_format.lower()  # type: ignore[assignment]

    if env_program := os.getenv("PLACE_PROGRAM_ID"):
        cfg.ledger.program_id = env_program
    if env_base_rpc := os.getenv("PLACE_BASE_RPC_URL"):
        cfg.ledger.base_rpc_url = env_base_rpc
    if env_base_ws := os.getenv("PLACE_BASE_WS_URL"):
        cfg.ledger.base_ws_url = env_base_ws
    if env_er_rpc := os.getenv("PLACE_EPHEMERAL_RPC_URL"):
        cfg.ledger.ephemeral_rpc_url = env_er_rpc
    if env_er_ws := os.getenv("PLACE_EPHEMERAL_WS_URL"):
        cfg.ledger.ephemeral_ws_url = env_er_ws

    if env_indexer := os.getenv("PLACE_INDEXER_ENABLED"):
        cfg.indexer.enabled = _parse_bool(env_indexer)
    if env_delay := os.getenv("PLACE_BACKFILL_PAGE_DELAY"):
        cfg.indexer.page_delay_seconds = float(env_delay)


def load_config() -> ServerConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. config/server.ini
        3. config/server.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        ServerConfig: Fully populated configuration object.
    """
    cfg = ServerConfig()

    config_file = None
    if CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        config_file = CONFIG_EXAMPLE

    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    _apply_env_overrides(cfg)

    return cfg


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

config = load_config()


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    Returns a dictionary with configuration source information,
    printed by ``place-server run`` at startup.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "production_mode": config.is_production,
        "cors_origins_count": len(config.security.cors_origins),
        "docs_enabled": config.docs_should_be_enabled,
        "indexer_enabled": config.indexer.enabled,
    }


def print_config_summary() -> None:
    """Print a summary of current configuration to stdout."""
    status = get_config_status()
    print("\n" + "=" * 60)
    print("SERVER CONFIGURATION")
    print("=" * 60)
    print(f"Config file: {status['config_file_path']}")
    print(f"File exists: {status['config_file_exists']}")
    if status["using_example"]:
        print("WARNING: Using example config (copy to server.ini for production)")
    print("-" * 60)
    print(f"Server:      {config.server.host}:{config.server.port}")
    print(f"Production:  {config.is_production}")
    print(f"Database:    {config.database.absolute_path}")
    print(f"Program:     {config.ledger.program_id}")
    print(f"Base RPC:    {config.ledger.base_rpc_url}")
    print(f"Overlay RPC: {config.ledger.ephemeral_rpc_url}")
    print(f"Indexer:     {'enabled' if config.indexer.enabled else 'disabled'}")
    print(f"Log level:   {config.logging.level}")
    print("=" * 60 + "\n")


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_database:
    """
    Context manager for using a temporary test database.

    Usage:
        from place_server.config import use_test_database

        def test_something(tmp_path):
            with use_test_database(tmp_path / "test.db"):
                schema.init_database()

    Args:
        db_path: Path to the test database file
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.original_path: str | None = None

    def __enter__(self) -> Path:
        """Set up test database path."""
        self.original_path = config.database.path
        config.database.path = str(self.db_path)
        return self.db_path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original database path."""
        if self.original_path is not None:
            config.database.path = self.original_path
        return None
