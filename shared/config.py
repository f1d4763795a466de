"""
Shared configuration management for the GitLab Bridge access gate.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Observability
    enable_metrics: bool = Field(default=True)


class BridgeConfig(BaseConfig):
    """Access gate configuration consumed by the bridge service."""

    service_name: str = "bridge"
    host: str = "0.0.0.0"
    port: int = 8000

    # Upstream GitLab instance, used for token introspection
    gitlab_url: str = Field(default="https://gitlab.com")
    introspection_enabled: bool = Field(default=True)
    introspection_timeout_seconds: float = Field(default=3.0, gt=0)

    # Token policy
    token_expiry_warning_days: int = Field(default=7, ge=0)
    dangerous_scopes: List[str] = Field(default_factory=lambda: ["sudo", "admin_mode"])
    require_bridge_scopes: bool = Field(default=False)

    # Rate limiting
    rate_limit_preset: Optional[str] = Field(default="standard")
    rate_limit_limit: Optional[int] = Field(default=None, gt=0)
    rate_limit_window_seconds: Optional[float] = Field(default=None, gt=0)
    rate_limit_headers: bool = Field(default=True)
    rate_limit_key_strategy: str = Field(default="ip")
    rate_limit_sweep_seconds: float = Field(default=60.0, gt=0)
    rate_limit_skip_paths: List[str] = Field(default_factory=lambda: ["/health", "/metrics"])
    # route name -> {"preset": ...} or {"limit": ..., "window_seconds": ...}
    route_rate_limits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    # Webhooks
    webhook_secret: Optional[str] = Field(default=None)
    webhook_signing_secret: Optional[str] = Field(default=None)
    webhook_require_token: bool = Field(default=True)
    webhook_require_signature: bool = Field(default=False)


_config: Optional[BridgeConfig] = None


def get_config(**overrides: Any) -> BridgeConfig:
    """Get the bridge configuration, building it once from the environment."""
    global _config
    if overrides:
        return BridgeConfig(**overrides)
    if _config is None:
        _config = BridgeConfig()
    return _config
