"""
Centralised query cache settings loaded from environment variables.
Uses pydantic-settings so every value can be overridden via env vars
(``QUERY_CACHE_`` prefix) or a .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Query cache configuration."""

    # ── Cache lifetime ──────────────────────────────────────
    cache_time_ms: int = 5 * 60 * 1000
    stale_time_ms: int = 0

    # ── JSON-RPC producers ──────────────────────────────────
    rpc_endpoint: str = "https://api.mainnet-beta.solana.com"

    # ── HTTP client ─────────────────────────────────────────
    http_connect_timeout: float = 5.0
    http_read_timeout: float = 10.0
    http_max_retries: int = 3
    http_backoff_base: float = 0.5

    # ── Logging ─────────────────────────────────────────────
    log_level: str = "info"

    model_config = {
        "env_prefix": "QUERY_CACHE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton used across the package
settings = Settings()
