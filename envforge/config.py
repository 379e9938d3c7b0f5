"""Runtime configuration — env-driven.

Centralized config using pydantic-settings for environment variable
support. Reads from a .env file and ENVFORGE_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvforgeConfig(BaseSettings):
    """Runtime configuration with environment variable overrides.

    All settings can be overridden via ENVFORGE_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export ENVFORGE_STORE_PATH=/var/lib/envforge/store
        export ENVFORGE_LOG_LEVEL=DEBUG
        export ENVFORGE_RESERVED_VARIABLES='["PS1", "PATH", "PROMPT_COMMAND"]'

    Or via .env file::

        ENVFORGE_CATALOG_PATH=catalog.toml
        ENVFORGE_MAX_WORKERS=8
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENVFORGE_",
        env_file_encoding="utf-8",
    )

    log_level: str = "WARNING"

    # Storage paths
    store_path: Path = Path(".envforge/store")
    store_db_path: Path | None = None  # defaults to {store_path}/db.sqlite
    fetch_cache_path: Path = Path(".envforge/downloads")
    catalog_path: Path = Path("catalog.toml")

    # Resolution
    max_workers: int = 4
    stale_build_seconds: float = 3600.0

    # Fetching
    fetch_timeout_seconds: float = 60.0
    fetch_max_retries: int = 3
    fetch_backoff_seconds: float = 1.0

    # Activation
    hook_shell: str = "bash"
    reserved_variables: list[str] = ["PS1", "PATH"]

    @property
    def resolved_store_db_path(self) -> Path:
        """SQLite index location, next to the store unless overridden."""
        return self.store_db_path or self.store_path / "db.sqlite"


# Module-level singleton; import as `from envforge.config import config`
config = EnvforgeConfig()
