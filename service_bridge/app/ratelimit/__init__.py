"""
Rate limiting package for the bridge gate.

Holds the in-memory sliding-window limiter, its presets and sweep schedulers,
and the request key generators used to pick the limited identity.
"""

from .sliding_window import (
    RateLimiter,
    RateLimitConfig,
    RateLimitInfo,
    ThreadScheduler,
    ManualScheduler,
    RATE_LIMIT_PRESETS,
    DEFAULT_RATE_LIMIT_CONFIG,
    resolve_rate_limit_config,
    create_rate_limiter_from_preset,
    require_rate_limit,
)
from .keys import client_ip_key, forwarded_ip_key, token_key, get_key_generator

__all__ = [
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitInfo",
    "ThreadScheduler",
    "ManualScheduler",
    "RATE_LIMIT_PRESETS",
    "DEFAULT_RATE_LIMIT_CONFIG",
    "resolve_rate_limit_config",
    "create_rate_limiter_from_preset",
    "require_rate_limit",
    "client_ip_key",
    "forwarded_ip_key",
    "token_key",
    "get_key_generator",
]
