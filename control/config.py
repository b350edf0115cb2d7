"""Configuration management for the fleetdeck service."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_DIR = Path.home() / ".fleetdeck"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STORE_FILE = DEFAULT_CONFIG_DIR / "store.json"
DEFAULT_STORAGE_DIR = DEFAULT_CONFIG_DIR / "transfers"


@dataclass
class Config:
    """Service configuration."""

    # Storage
    store_path: str = str(DEFAULT_STORE_FILE)
    storage_dir: str = str(DEFAULT_STORAGE_DIR)  # Local side of downloads/uploads

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Transport
    connect_timeout: float = 10
    transfer_timeout: float = 7200
    max_attempts: int = 3
    retry_delay: float = 2
    keepalive_interval: int = 10

    # Background tasks
    task_max_tries: int = 3
    task_retry_delay: float = 5
    task_concurrency: int = 10

    # Retention
    snapshot_retention_days: int = 30
    transfer_retention_days: int = 7

    # Events
    webhook_url: str = ""

    # HTTP surface
    http_host: str = "127.0.0.1"
    http_port: int = 8780
    api_key: Optional[str] = None

    # Credential encryption key (falls back to FLEETDECK_SECRET_KEY)
    secret_key: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load configuration from file; missing keys keep their defaults."""
        path = path or DEFAULT_CONFIG_FILE

        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        defaults = cls()
        return cls(
            store_path=data.get("store_path", defaults.store_path),
            storage_dir=data.get("storage_dir", defaults.storage_dir),
            log_level=data.get("log_level", defaults.log_level),
            log_file=data.get("log_file"),
            connect_timeout=data.get("connect_timeout", defaults.connect_timeout),
            transfer_timeout=data.get("transfer_timeout", defaults.transfer_timeout),
            max_attempts=data.get("max_attempts", defaults.max_attempts),
            retry_delay=data.get("retry_delay", defaults.retry_delay),
            keepalive_interval=data.get("keepalive_interval", defaults.keepalive_interval),
            task_max_tries=data.get("task_max_tries", defaults.task_max_tries),
            task_retry_delay=data.get("task_retry_delay", defaults.task_retry_delay),
            task_concurrency=data.get("task_concurrency", defaults.task_concurrency),
            snapshot_retention_days=data.get(
                "snapshot_retention_days", defaults.snapshot_retention_days
            ),
            transfer_retention_days=data.get(
                "transfer_retention_days", defaults.transfer_retention_days
            ),
            webhook_url=data.get("webhook_url", defaults.webhook_url),
            http_host=data.get("http_host", defaults.http_host),
            http_port=data.get("http_port", defaults.http_port),
            api_key=data.get("api_key"),
            secret_key=data.get("secret_key"),
        )

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        path = path or DEFAULT_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "store_path": self.store_path,
            "storage_dir": self.storage_dir,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "connect_timeout": self.connect_timeout,
            "transfer_timeout": self.transfer_timeout,
            "max_attempts": self.max_attempts,
            "retry_delay": self.retry_delay,
            "keepalive_interval": self.keepalive_interval,
            "task_max_tries": self.task_max_tries,
            "task_retry_delay": self.task_retry_delay,
            "task_concurrency": self.task_concurrency,
            "snapshot_retention_days": self.snapshot_retention_days,
            "transfer_retention_days": self.transfer_retention_days,
            "webhook_url": self.webhook_url,
            "http_host": self.http_host,
            "http_port": self.http_port,
            "api_key": self.api_key,
            "secret_key": self.secret_key,
        }

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)
        # May hold the API key and the credential key
        path.chmod(0o600)


def ensure_config_dir() -> Path:
    """Ensure the config directory exists and return its path."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR
