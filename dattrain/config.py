"""Application settings and environment configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WALRUS_PUBLISHERS = (
    "https://publisher.walrus-testnet.walrus.space,"
    "https://walrus-testnet-publisher.nodes.guru,"
    "https://wal-publisher-testnet.staketab.org"
)
DEFAULT_WALRUS_AGGREGATORS = (
    "https://aggregator.walrus-testnet.walrus.space,"
    "https://walrus-testnet-aggregator.nodes.guru"
)


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    env: str = "development"
    app_name: str = "dattrain"
    log_level: str = "info"
    log_json: bool = True

    database_url: str = "sqlite:///./data/dattrain.db"

    # Simulated trainer
    simulated_sample_count: int = Field(default=1000, ge=1, le=10_000_000)
    batch_delay_ms: int = Field(default=30, ge=0, le=60000)
    validation_delay_ms: int = Field(default=50, ge=0, le=60000)
    lr_decay_rate: float = 0.95
    lr_decay_steps: int = Field(default=1, ge=1, le=10000)

    # Blob store (USE_WALRUS_STORAGE=true for the public Walrus network)
    use_walrus_storage: bool = False
    walrus_publisher_urls: str = DEFAULT_WALRUS_PUBLISHERS
    walrus_aggregator_urls: str = DEFAULT_WALRUS_AGGREGATORS
    walrus_timeout_ms: int = Field(default=30000, ge=100, le=300000)
    blob_dir: str = "./data/blobs"
    blob_retention_epochs: int = Field(default=5, ge=1, le=1000)
    blob_simulated_latency_ms: int = Field(default=0, ge=0, le=60000)

    # Remote training backend
    backend_url: str = "http://localhost:8000"
    backend_timeout_ms: int = Field(default=5000, ge=100, le=120000)
    backend_poll_interval_ms: int = Field(default=500, ge=0, le=60000)
    backend_max_not_found: int = Field(default=8, ge=0, le=1000)
    backend_error_backoff_ms: int = Field(default=800, ge=0, le=60000)
    backend_max_consecutive_errors: int = Field(default=10, ge=1, le=1000)

    @model_validator(mode="after")
    def validate_schedule_settings(self) -> "Settings":
        """Reject learning-rate decay values that would grow or zero the rate."""
        if not 0.0 < self.lr_decay_rate <= 1.0:
            raise ValueError("LR_DECAY_RATE must be in the interval (0, 1].")
        return self

    @staticmethod
    def _split_urls(raw: str) -> list[str]:
        return [url.strip().rstrip("/") for url in raw.split(",") if url.strip()]

    @property
    def walrus_publisher_list(self) -> list[str]:
        """Parse comma-separated Walrus publisher endpoints."""
        return self._split_urls(self.walrus_publisher_urls)

    @property
    def walrus_aggregator_list(self) -> list[str]:
        """Parse comma-separated Walrus aggregator endpoints."""
        return self._split_urls(self.walrus_aggregator_urls)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
