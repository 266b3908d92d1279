"""
Configuration for the miao service.

Loads process-level settings from environment variables with sensible defaults.
Runtime data (database, logs) is stored in ~/.miao/ unless MIAO_DATA_DIR is set.
The user-edited subscription/node document lives in miao.yaml (see settings.py).
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class Config:
    """miao process configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("MIAO_DATA_DIR", str(Path.home() / ".miao")))
    settings_path: Path = Path(os.environ.get("MIAO_SETTINGS", "miao.yaml"))
    db_path: Path = None
    logs_dir: Path = None
    miao_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    log_retention_days: int = int(os.environ.get("LOG_RETENTION_DAYS", "7"))

    # Server
    host: str = os.environ.get("MIAO_HOST", "0.0.0.0")
    port: int = int(os.environ.get("MIAO_PORT", "6161"))

    # Engine lifecycle
    autostart: bool = _env_bool("MIAO_AUTOSTART", "true")
    start_grace_seconds: float = float(os.environ.get("START_GRACE_SECONDS", "3"))
    probe_url: str = os.environ.get("PROBE_URL", "https://gstatic.com/generate_204")
    probe_timeout: float = float(os.environ.get("PROBE_TIMEOUT", "5"))

    # Subscriptions and rule-sets
    user_agent: str = os.environ.get("SUB_USER_AGENT", "clash-meta")
    fetch_timeout: float = float(os.environ.get("FETCH_TIMEOUT", "30"))
    compile_timeout: float = float(os.environ.get("COMPILE_TIMEOUT", "60"))

    # Background loops (seconds, 0 disables)
    health_interval: int = int(os.environ.get("HEALTH_INTERVAL", "60"))
    refresh_interval: int = int(os.environ.get("REFRESH_INTERVAL", "0"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.db_path = self.data_dir / "miao.db"
        self.logs_dir = self.data_dir / "logs"
        self.miao_log = self.data_dir / "miao.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
