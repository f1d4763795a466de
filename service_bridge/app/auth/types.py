"""
Value types shared by the token, permission and webhook validators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional


class TokenKind(str, Enum):
    """Classification of a GitLab credential."""

    PERSONAL_ACCESS = "personal_access"
    PROJECT = "project"
    UNKNOWN = "unknown"


class ExpirationState(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class RevocationStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class TokenInfo:
    """Facts derived from a bearer credential for the lifetime of one request."""

    kind: TokenKind
    prefix: str
    fingerprint: str
    masked: str
    scopes: FrozenSet[str] = frozenset()
    expires_at: Optional[datetime] = None
    revoked: Optional[bool] = None
    lookup_failed: bool = False
    name: Optional[str] = None


@dataclass(frozen=True)
class ExpirationCheck:
    state: ExpirationState
    days_remaining: Optional[int] = None

    @property
    def expired(self) -> bool:
        return self.state == ExpirationState.EXPIRED


@dataclass(frozen=True)
class TokenIntrospection:
    """Result of asking GitLab about a token. Produced by the revocation collaborator."""

    revoked: bool
    active: bool = True
    scopes: FrozenSet[str] = frozenset()
    expires_at: Optional[datetime] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PermissionResult:
    """Outcome of evaluating one operation against a token."""

    allowed: bool
    operation: Optional[str] = None
    missing_scopes: FrozenSet[str] = frozenset()
    dangerous_scopes: FrozenSet[str] = frozenset()
    reason: Optional[str] = None


@dataclass(frozen=True)
class WebhookMetadata:
    """Routing and audit facts taken from webhook headers. Not a trust signal."""

    event: Optional[str]
    instance: Optional[str]
    token: Optional[str]
    delivery_id: Optional[str] = None


@dataclass(frozen=True)
class SecretStrength:
    strong: bool
    length: int
    entropy_bits: float
    issues: tuple = field(default_factory=tuple)
