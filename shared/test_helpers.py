"""
Test helper functions and fakes for the GitLab Bridge access gate.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from shared.config import BridgeConfig
from service_bridge.app.auth.types import TokenIntrospection

# 20-character body, the shortest a well-formed token can have.
TEST_TOKEN_BODY = "xY3kP9mQ2rT7vW1zB5nC"
TEST_WEBHOOK_SECRET = "wh-secret-4f9Q2xL7pZ8kR3mN6tV1bY5cJ0dH"
TEST_SIGNING_SECRET = "sig-secret-9Ks2Lq7Wm4Xn8Rv3Tb6Yc1Zd5Fh0Gj"

DEFAULT_SCOPES = ("api", "read_api", "read_user")


def make_token(prefix: str = "glpat-", body: str = TEST_TOKEN_BODY) -> str:
    """Build a syntactically valid GitLab token."""
    return f"{prefix}{body}"


def auth_headers(token: Optional[str] = None) -> dict:
    return {"Authorization": f"Bearer {token or make_token()}"}


class FakeClock:
    """Manually advanced unix-seconds clock for the rate limiter."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeDateClock:
    """Manually advanced UTC datetime clock for token expiry checks."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeIntrospector:
    """Stands in for the GitLab introspection endpoint."""

    def __init__(
        self,
        scopes: Iterable[str] = DEFAULT_SCOPES,
        *,
        revoked: bool = False,
        active: bool = True,
        expires_at: Optional[datetime] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.scopes = frozenset(scopes)
        self.revoked = revoked
        self.active = active
        self.expires_at = expires_at
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def introspect(self, token: str):
        self.calls.append(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TokenIntrospection(
            revoked=self.revoked,
            active=self.active,
            scopes=self.scopes,
            expires_at=self.expires_at,
            name="test-token",
        )


class RecordingAuditSink:
    """Audit sink that keeps every entry it receives."""

    def __init__(self):
        self.entries: List[Any] = []

    def __call__(self, entry: Any) -> None:
        self.entries.append(entry)

    @property
    def last(self):
        return self.entries[-1] if self.entries else None

    def actions(self) -> List[str]:
        return [entry.action for entry in self.entries]


def create_test_config(**overrides: Any) -> BridgeConfig:
    """Bridge configuration suitable for tests: no network, webhooks enabled."""
    values = {
        "env": "test",
        "log_level": "warning",
        "introspection_enabled": False,
        "webhook_secret": TEST_WEBHOOK_SECRET,
        "rate_limit_preset": "standard",
    }
    values.update(overrides)
    return BridgeConfig(**values)
