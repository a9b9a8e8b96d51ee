# Task board configuration
# Override defaults via a YAML file; secrets come from the environment.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import List, Optional

from .errors import ConfigError

CONFIG_PATH = Path("taskboard.yaml")

BACKENDS = ("sqlite", "local")


@dataclass
class Config:
    """Runtime configuration for the task board server."""

    # Store
    backend: str = "sqlite"                  # "sqlite" | "local" (degraded fallback)
    db_path: str = "~/.local/share/taskboard/board.db"
    local_store_dir: str = "~/.local/share/taskboard/local"
    poll_interval: float = 1.0               # subscription poll, seconds

    # Sync behaviour
    max_attempts: int = 3
    base_delay: float = 0.5                  # seconds; backoff is base_delay * (n + 1)
    activity_limit: int = 50
    seed_on_first_run: bool = False

    # Webhooks and API (prefer env vars for these)
    github_webhook_secret: str = ""
    deploy_webhook_secret: str = ""
    api_secret: str = ""

    # Alerts
    telegram_token_env: str = "TASKBOARD_TELEGRAM_TOKEN"
    alert_chat_ids: List[str] = field(default_factory=list)

    def resolve(self):
        """Expand ~, apply environment overrides and validate."""
        self.db_path = str(Path(os.environ.get("TASKBOARD_DB", self.db_path)).expanduser())
        self.local_store_dir = str(Path(self.local_store_dir).expanduser())

        self.github_webhook_secret = os.environ.get("GITHUB_WEBHOOK_SECRET", self.github_webhook_secret)
        self.deploy_webhook_secret = os.environ.get("DEPLOY_WEBHOOK_SECRET", self.deploy_webhook_secret)
        self.api_secret = os.environ.get("TASKBOARD_API_SECRET", self.api_secret)
        self.alert_chat_ids = [str(c) for c in self.alert_chat_ids]

        if self.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend '{self.backend}'. Available: {list(BACKENDS)}")
        if int(self.max_attempts) < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if float(self.base_delay) < 0:
            raise ConfigError(f"base_delay must be >= 0, got {self.base_delay}")
        return self

    @property
    def telegram_token(self) -> str:
        return os.environ.get(self.telegram_token_env, "") if self.telegram_token_env else ""

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")
        else:
            cfg = cls()
        return cfg.resolve()
