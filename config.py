# config.py
"""Process configuration loaded from the environment / .env file."""
from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Keys that may be overridden at runtime through the store's config table.
RUNTIME_KEYS = ("poll_interval", "rescan_interval", "page_size")


class Settings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    db_path: str = "buildq.db"
    host: str = "127.0.0.1"
    port: int = 5678
    work_dir: Path = Path.cwd()
    output_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    runner_command: str = "just"
    poll_interval: float = 1.0
    rescan_interval: Optional[float] = None
    lease_seconds: float = 30.0
    page_size: int = 10
    subscriber_capacity: int = 64
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="BUILDQ_", env_file=".env", extra="ignore")

    @property
    def output_root(self) -> Path:
        return self.output_dir if self.output_dir is not None else self.work_dir

    @property
    def log_root(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.work_dir / "logs"

    @property
    def runner_argv(self) -> List[str]:
        return shlex.split(self.runner_command)

    def with_runtime_overrides(self, storage) -> "Settings":
        """Return a copy with values from the store's config table applied."""
        updates = {}
        for key in RUNTIME_KEYS:
            value = storage.get_config(key)
            if value is not None:
                updates[key] = value
        if not updates:
            return self
        # Re-validate so string values from the table are coerced.
        return Settings.model_validate({**self.model_dump(), **updates})


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
