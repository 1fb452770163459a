"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_dir() -> Path:
    return Path.home() / ".task_tracker"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: _default_dir() / "tt.db")
    server_db_path: Path = field(default_factory=lambda: _default_dir() / "server.db")
    remote_url: str = "http://127.0.0.1:8787"
    remote_timeout: float = 10.0
    sync_interval: float = 60.0
    offline: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TT_DB_PATH"):
            config.db_path = Path(db)

        if server_db := os.environ.get("TT_SERVER_DB_PATH"):
            config.server_db_path = Path(server_db)

        if url := os.environ.get("TT_REMOTE_URL"):
            config.remote_url = url.rstrip("/")

        if timeout := os.environ.get("TT_REMOTE_TIMEOUT"):
            config.remote_timeout = float(timeout)

        if interval := os.environ.get("TT_SYNC_INTERVAL"):
            config.sync_interval = float(interval)

        if offline := os.environ.get("TT_OFFLINE"):
            config.offline = offline.strip().lower() in ("1", "true", "yes", "on")

        return config


def get_config() -> Config:
    return Config.from_env()
