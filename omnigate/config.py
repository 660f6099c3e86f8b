"""Gateway configuration read from environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict

from omnigate.channels.meta import DEFAULT_GRAPH_API_BASE
from omnigate.channels.telegram import DEFAULT_TELEGRAM_API_BASE


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str = ""
    db_path: str = "data/omnigate.db"
    evolution_api_url: str = ""
    evolution_api_key: str = ""
    graph_api_base: str = DEFAULT_GRAPH_API_BASE
    telegram_api_base: str = DEFAULT_TELEGRAM_API_BASE
    meta_app_secret: str = ""
    meta_verify_token: str = ""
    adapter_timeout: float = 15.0
    webhook_timeout: float = 30.0
    audit_log_path: str | None = None

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Build the configuration from the process environment."""
        env = os.environ
        return cls(
            token=env.get("OMNIGATE_TOKEN", ""),
            db_path=env.get("OMNIGATE_DB_PATH", "data/omnigate.db"),
            evolution_api_url=env.get("EVOLUTION_API_URL", ""),
            evolution_api_key=env.get("EVOLUTION_API_KEY", ""),
            graph_api_base=env.get("GRAPH_API_BASE", DEFAULT_GRAPH_API_BASE),
            telegram_api_base=env.get("TELEGRAM_API_BASE", DEFAULT_TELEGRAM_API_BASE),
            meta_app_secret=env.get("META_APP_SECRET", ""),
            meta_verify_token=env.get("META_VERIFY_TOKEN", ""),
            adapter_timeout=float(env.get("ADAPTER_TIMEOUT_SECONDS", "15")),
            webhook_timeout=float(env.get("WEBHOOK_TIMEOUT_SECONDS", "30")),
            audit_log_path=env.get("AUDIT_LOG_PATH") or None,
        )
