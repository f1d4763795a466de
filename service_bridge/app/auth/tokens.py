"""
Bearer token validation for the bridge gate.

GitLab tokens are opaque: the prefix is the only self-describing part. Scopes,
expiry and revocation state come from the introspection collaborator, which
``TokenValidator`` calls under a bounded timeout. A failed or slow lookup is
reported as revoked (fail-closed) but logged separately from a real revocation.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Iterable, Mapping, Optional, Protocol

from shared.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    MalformedTokenError,
    RevokedTokenError,
)
from shared.logging import get_logger

from .types import (
    ExpirationCheck,
    ExpirationState,
    RevocationStatus,
    TokenInfo,
    TokenIntrospection,
    TokenKind,
)

logger = get_logger("bridge.auth.tokens")

TOKEN_PREFIXES = {
    "glpat-": TokenKind.PERSONAL_ACCESS,
    "gldt-": TokenKind.PROJECT,
    "glptt-": TokenKind.PROJECT,
}

MIN_TOKEN_BODY_LENGTH = 20
MAX_TOKEN_BODY_LENGTH = 255
DEFAULT_EXPIRY_WARNING_DAYS = 7
DEFAULT_DANGEROUS_SCOPES: FrozenSet[str] = frozenset({"sudo", "admin_mode"})

MASK_CHAR = "*"
MASK_VISIBLE_SUFFIX = 4
# Bodies shorter than this are masked completely.
MASK_MIN_BODY_LENGTH = 12

_BODY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class TokenIntrospector(Protocol):
    """Collaborator that reports scopes, expiry and revocation for a token."""

    async def introspect(self, token: str) -> TokenIntrospection:
        ...


def _split_prefix(token: str) -> tuple:
    for prefix in TOKEN_PREFIXES:
        if token.startswith(prefix):
            return prefix, token[len(prefix):]
    return "", token


def get_token_type(token: str) -> TokenKind:
    """Classify a token by its prefix without validating the rest."""
    if not isinstance(token, str):
        return TokenKind.UNKNOWN
    prefix, _ = _split_prefix(token)
    return TOKEN_PREFIXES.get(prefix, TokenKind.UNKNOWN)


def validate_token_format(token: str) -> bool:
    """Structural check: recognized prefix, body length and character set."""
    if not isinstance(token, str) or not token:
        return False
    prefix, body = _split_prefix(token)
    if not prefix:
        return False
    if not MIN_TOKEN_BODY_LENGTH <= len(body) <= MAX_TOKEN_BODY_LENGTH:
        return False
    return bool(_BODY_RE.match(body))


def mask_token(token: Optional[str]) -> str:
    """
    Render a token safe for logs.

    Keeps a recognized prefix and the last few characters; every other
    character becomes ``*``. Unrecognized or short tokens are masked entirely.
    """
    if not token:
        return ""
    prefix, body = _split_prefix(token)
    if not prefix or len(body) < MASK_MIN_BODY_LENGTH:
        return prefix + MASK_CHAR * len(body)
    hidden = len(body) - MASK_VISIBLE_SUFFIX
    return prefix + MASK_CHAR * hidden + body[hidden:]


def extract_token(headers: Mapping[str, str]) -> Optional[str]:
    """
    Read the credential from ``Authorization: Bearer <token>`` or GitLab's
    ``PRIVATE-TOKEN`` header.

    Returns:
        The token, or None if neither header carries one
    """
    auth_header = headers.get("Authorization") or headers.get("authorization")
    if auth_header:
        parts = auth_header.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1].strip()
            return token or None
        return None

    private_token = headers.get("PRIVATE-TOKEN") or headers.get("private-token")
    if private_token and private_token.strip():
        return private_token.strip()
    return None


def token_fingerprint(token: str) -> str:
    """Stable, non-reversible identifier used to correlate audit entries."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def parse_token_info(token: str) -> TokenInfo:
    """
    Parse a bearer token into ``TokenInfo``.

    Raises:
        MalformedTokenError: if the token does not have a recognized structure
    """
    if not isinstance(token, str) or not token.strip():
        raise MalformedTokenError("Token is empty")
    if not validate_token_format(token):
        raise MalformedTokenError(details={"token": mask_token(token)})

    prefix, _ = _split_prefix(token)
    return TokenInfo(
        kind=TOKEN_PREFIXES[prefix],
        prefix=prefix,
        fingerprint=token_fingerprint(token),
        masked=mask_token(token),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_token_expiration(
    info: TokenInfo,
    now: Optional[datetime] = None,
    warning_days: int = DEFAULT_EXPIRY_WARNING_DAYS,
) -> ExpirationCheck:
    """
    Classify the token's expiry relative to ``now``.

    A token whose ``expires_at`` equals ``now`` is already expired.
    """
    if info.expires_at is None:
        return ExpirationCheck(ExpirationState.VALID)

    now = now or _utcnow()
    remaining = info.expires_at - now
    if remaining <= timedelta(0):
        return ExpirationCheck(ExpirationState.EXPIRED, 0)

    days = math.ceil(remaining.total_seconds() / 86400)
    if remaining <= timedelta(days=warning_days):
        return ExpirationCheck(ExpirationState.EXPIRING_SOON, days)
    return ExpirationCheck(ExpirationState.VALID, days)


def check_expiration_warning(
    info: TokenInfo,
    now: Optional[datetime] = None,
    warning_days: int = DEFAULT_EXPIRY_WARNING_DAYS,
) -> Optional[str]:
    """Return a warning message when the token expires within ``warning_days``."""
    result = check_token_expiration(info, now, warning_days)
    if result.state != ExpirationState.EXPIRING_SOON:
        return None
    unit = "day" if result.days_remaining == 1 else "days"
    return f"Token {info.masked} expires in {result.days_remaining} {unit}"


def check_token_revocation(info: TokenInfo) -> RevocationStatus:
    if info.revoked or info.lookup_failed:
        return RevocationStatus.REVOKED
    return RevocationStatus.ACTIVE


def check_dangerous_scopes(
    scopes: Iterable[str],
    denylist: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
) -> FrozenSet[str]:
    """Return the granted scopes that appear in the denylist."""
    return frozenset(scopes) & frozenset(denylist)


class TokenValidator:
    """Runs format, parse, lookup, expiration and revocation checks in order."""

    def __init__(
        self,
        introspector: Optional[TokenIntrospector] = None,
        *,
        lookup_timeout: float = 3.0,
        expiry_warning_days: int = DEFAULT_EXPIRY_WARNING_DAYS,
        dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.introspector = introspector
        self.lookup_timeout = lookup_timeout
        self.expiry_warning_days = expiry_warning_days
        self.dangerous_scopes = frozenset(dangerous_scopes)
        self._clock = clock

    async def validate_token(self, token: str) -> TokenInfo:
        """
        Validate a bearer token and return its ``TokenInfo``.

        Raises:
            InvalidTokenError: bad structure (``MalformedTokenError`` included)
            ExpiredTokenError: ``expires_at`` is at or before now
            RevokedTokenError: revoked, or the lookup failed or timed out
        """
        if not validate_token_format(token):
            raise InvalidTokenError(details={"token": mask_token(token)})

        info = parse_token_info(token)
        info = await self._lookup(token, info)

        expiration = check_token_expiration(info, self._clock(), self.expiry_warning_days)
        if expiration.expired:
            raise ExpiredTokenError(details={
                "token": info.masked,
                "expires_at": info.expires_at.isoformat(),
            })
        if expiration.state == ExpirationState.EXPIRING_SOON:
            logger.warning(
                "Token expiring soon",
                token=info.masked,
                days_remaining=expiration.days_remaining,
            )

        if check_token_revocation(info) == RevocationStatus.REVOKED:
            if info.lookup_failed:
                raise RevokedTokenError(
                    "Token revocation status could not be verified",
                    details={"token": info.masked, "reason": "lookup_failed"},
                )
            logger.warning("Revoked token presented", token=info.masked)
            raise RevokedTokenError(details={"token": info.masked, "reason": "revoked"})

        flagged = check_dangerous_scopes(info.scopes, self.dangerous_scopes)
        if flagged:
            logger.warning("Token carries dangerous scopes", token=info.masked, scopes=sorted(flagged))

        return info

    async def _lookup(self, token: str, info: TokenInfo) -> TokenInfo:
        if self.introspector is None:
            return info

        try:
            result = await asyncio.wait_for(
                self.introspector.introspect(token),
                timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Token lookup timed out", token=info.masked, timeout=self.lookup_timeout)
            return replace(info, lookup_failed=True)
        except Exception as e:
            logger.error("Token lookup failed", token=info.masked, error=str(e), error_type=type(e).__name__)
            return replace(info, lookup_failed=True)

        return replace(
            info,
            scopes=frozenset(result.scopes),
            expires_at=result.expires_at,
            revoked=result.revoked or not result.active,
            name=result.name,
        )
