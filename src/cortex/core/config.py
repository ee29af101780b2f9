"""Configuration management.

Uses pydantic-settings for type-safe configuration from environment variables.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_config_dir() -> Path:
    """Find the config directory by walking up from the package location.

    Looks for a 'config/' directory next to the project root.
    Falls back to relative Path("config") if not found.
    """
    # Start from this file: src/cortex/core/config.py
    # Project root is 4 levels up: config.py -> core/ -> cortex/ -> src/ -> root/
    package_dir = Path(__file__).resolve().parent.parent.parent.parent
    candidate = package_dir / "config"
    if candidate.is_dir():
        return candidate

    # Fallback: relative path (works when CWD is project root)
    return Path("config")


class Settings(BaseSettings):
    """Application settings.

    All settings can be overridden via environment variables.
    Prefix: CORTEX_
    """

    model_config = SettingsConfigDict(
        env_prefix="CORTEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Archive storage
    storage_path: Path = Field(
        default=Path("./data/archives"),
        description="Directory where columnar archives are written",
    )

    # Configuration paths
    config_path: Path = Field(
        default_factory=_find_config_dir,
        description="Path to configuration files (metric catalog)",
    )

    # DuckDB
    duckdb_memory_limit: str = Field(
        default="2GB",
        description="Memory limit for DuckDB",
    )
    duckdb_threads: int = Field(
        default=4,
        description="Number of threads for DuckDB",
    )

    # Hot/cold split
    hot_window_hours: float = Field(
        default=24.0,
        description="Events newer than now - hot_window_hours are treated as hot",
    )
    hot_event_limit: int = Field(
        default=1000,
        description="Maximum number of hot events folded into one call",
    )
    cold_row_limit: int = Field(
        default=10_000,
        description="Maximum rows read per archive for row-level views",
    )

    # Query shaping
    max_series: int = Field(default=3, description="Maximum metrics in a multi-series aggregate")
    query_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for one compiled query; on timeout the query degrades to a sample",
    )

    # Cache
    cache_enabled: bool = Field(default=True)
    cache_ttl_seconds: int = Field(default=3600)
    cache_max_entries: int = Field(default=1000)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")  # 'json' or 'console'

    @property
    def metrics_file(self) -> Path:
        """Default metric catalog file."""
        return self.config_path / "metrics.yaml"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
