from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


# Get the directory where this config.py file is located
_config_dir = Path(__file__).parent
_env_file = _config_dir.parent / ".env"  # services/core/.env


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Storage
    sqlite_path: str = "data/market.db"
    sqlite_busy_timeout_ms: int = 5000

    # Live price source (best bid/ask endpoint)
    price_source_url: str = "https://trading.robinhood.com/api/v1/crypto"
    price_source_token: str | None = None
    history_source_url: str = "https://api.robinhood.com"

    # Symbols polled at startup (comma-separated, e.g. "BTC-USD,ETH-USD")
    default_symbols: str = "BTC-USD,ETH-USD"

    # Poller
    poller_enabled: bool = True
    poll_interval_seconds: float = 1.5
    max_backoff: float = 8.0
    backoff_factor: float = 2.0
    max_symbols_per_request: int = 50
    flush_threshold: int = 100

    # Token bucket for live polling (100 req/min sustained, 300 burst)
    rate_limit_capacity: int = 300
    rate_limit_refill_seconds: float = 1.0
    rate_limit_refill_amount: int = 1

    # Independent token bucket for historical backfill
    history_rate_limit_capacity: int = 100
    history_rate_limit_refill_seconds: float = 1.0

    # Tick ingestion sink
    ingestion_enabled: bool = False

    # Stream broadcaster
    stream_history_window_seconds: int = 3600
    stream_history_limit: int = 100
    relay_enabled: bool = True
    relay_interval_seconds: float = 5.0
    relay_max_symbols: int = 50

    def get_default_symbols(self) -> list[str]:
        """Parse default symbols (uppercase, de-duplicated, order kept)."""
        out: list[str] = []
        for s in self.default_symbols.split(","):
            value = s.strip().upper()
            if value and value not in out:
                out.append(value)
        return out


def get_settings() -> Settings:
    return Settings()
