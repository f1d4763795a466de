"""
GitLab webhook verification.

GitLab sends the shared secret back in ``X-Gitlab-Token``. Deployments that
sign deliveries put ``sha256=<hex hmac>`` of the raw body in
``X-Gitlab-Signature``. Both comparisons go through ``hmac.compare_digest``.
"""

from __future__ import annotations

import hashlib
import hmac
import math
from collections import Counter
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from shared.errors import (
    InvalidWebhookSignatureError,
    InvalidWebhookTokenError,
    MissingWebhookTokenError,
    UnknownWebhookEventError,
)
from shared.logging import get_logger

from .types import SecretStrength, WebhookMetadata

logger = get_logger("bridge.auth.webhooks")

WEBHOOK_TOKEN_HEADER = "X-Gitlab-Token"
WEBHOOK_EVENT_HEADER = "X-Gitlab-Event"
WEBHOOK_INSTANCE_HEADER = "X-Gitlab-Instance"
WEBHOOK_SIGNATURE_HEADER = "X-Gitlab-Signature"
WEBHOOK_UUID_HEADER = "X-Gitlab-Webhook-UUID"

SIGNATURE_SCHEME = "sha256"

WEBHOOK_EVENTS = frozenset({
    "Push Hook",
    "Tag Push Hook",
    "Issue Hook",
    "Confidential Issue Hook",
    "Note Hook",
    "Confidential Note Hook",
    "Merge Request Hook",
    "Wiki Page Hook",
    "Pipeline Hook",
    "Job Hook",
    "Deployment Hook",
    "Feature Flag Hook",
    "Release Hook",
    "Emoji Hook",
    "Member Hook",
    "Subgroup Hook",
    "Project Hook",
    "Resource Access Token Hook",
    "System Hook",
})

MIN_SECRET_LENGTH = 32
MIN_SECRET_ENTROPY_BITS = 128.0

# Compared against when a value is missing so both paths run compare_digest.
_EMPTY_DIGEST_INPUT = b"\x00" * 32


@dataclass(frozen=True)
class WebhookConfig:
    """Which checks a webhook route enforces. At least one must be required."""

    token_secret: Optional[str] = None
    signing_secret: Optional[str] = None
    require_token: bool = True
    require_signature: bool = False

    def __post_init__(self):
        if not (self.require_token or self.require_signature):
            raise ValueError("Webhook config must require a token, a signature, or both")
        if self.require_token and not self.token_secret:
            raise ValueError("Webhook token check is required but no token secret is configured")
        if self.require_signature and not self.signing_secret:
            raise ValueError("Webhook signature check is required but no signing secret is configured")


def _to_bytes(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette headers are not.
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def validate_webhook_token(header_value: Optional[str], expected_secret: Optional[str]) -> bool:
    """Constant-time comparison of the delivered token with the shared secret."""
    provided = _to_bytes(header_value)
    expected = _to_bytes(expected_secret)
    usable = bool(provided) and bool(expected)
    if not usable:
        provided, expected = _EMPTY_DIGEST_INPUT, _EMPTY_DIGEST_INPUT + b"\x01"
    matches = hmac.compare_digest(provided, expected)
    return usable and matches


def compute_webhook_signature(body: Union[bytes, str], secret: str) -> str:
    """HMAC-SHA256 of the raw body keyed by ``secret``, as ``sha256=<hex>``."""
    digest = hmac.new(_to_bytes(secret), _to_bytes(body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_SCHEME}={digest}"


def validate_webhook_signature(body: Union[bytes, str], secret: str, provided_signature: Optional[str]) -> bool:
    """Recompute the signature and compare it in constant time."""
    expected = _to_bytes(compute_webhook_signature(body, secret))
    provided = _to_bytes(provided_signature)
    usable = bool(provided)
    if not usable:
        provided = b"\x00" * len(expected)
    matches = hmac.compare_digest(provided, expected)
    return usable and matches


def extract_webhook_metadata(headers: Mapping[str, str]) -> WebhookMetadata:
    """Pull routing facts out of the headers. Performs no validation."""
    return WebhookMetadata(
        event=_header(headers, WEBHOOK_EVENT_HEADER),
        instance=_header(headers, WEBHOOK_INSTANCE_HEADER),
        token=_header(headers, WEBHOOK_TOKEN_HEADER),
        delivery_id=_header(headers, WEBHOOK_UUID_HEADER),
    )


def validate_webhook_request(
    headers: Mapping[str, str],
    body: Union[bytes, str],
    config: WebhookConfig,
) -> WebhookMetadata:
    """
    Verify a webhook delivery and return its metadata.

    Token is checked first, then the signature, then the event type.

    Raises:
        MissingWebhookTokenError: token required but header absent
        InvalidWebhookTokenError: token does not match
        InvalidWebhookSignatureError: signature required and missing or wrong
        UnknownWebhookEventError: event header not in ``WEBHOOK_EVENTS``
    """
    metadata = extract_webhook_metadata(headers)
    audit_details = {"event": metadata.event, "instance": metadata.instance}

    if config.require_token:
        if not metadata.token:
            raise MissingWebhookTokenError(details=audit_details)
        if not validate_webhook_token(metadata.token, config.token_secret):
            raise InvalidWebhookTokenError(details=audit_details)

    if config.require_signature:
        signature = _header(headers, WEBHOOK_SIGNATURE_HEADER)
        if not validate_webhook_signature(body, config.signing_secret, signature):
            logger.warning("Webhook signature mismatch", signed=bool(signature), **audit_details)
            raise InvalidWebhookSignatureError(details=audit_details)

    if metadata.event not in WEBHOOK_EVENTS:
        logger.warning("Unrecognized webhook event", **audit_details)
        raise UnknownWebhookEventError(metadata.event, details={"instance": metadata.instance})

    return metadata


# Enforcement wrapper name used at route boundaries.
require_valid_webhook = validate_webhook_request


def _shannon_entropy_bits(secret: str) -> float:
    if not secret:
        return 0.0
    counts = Counter(secret)
    length = len(secret)
    per_char = -sum((n / length) * math.log2(n / length) for n in counts.values())
    return per_char * length


def validate_secret_strength(secret: Optional[str]) -> SecretStrength:
    """Configuration-time policy: minimum length and estimated entropy."""
    secret = secret or ""
    entropy = _shannon_entropy_bits(secret)
    issues = []
    if len(secret) < MIN_SECRET_LENGTH:
        issues.append(f"secret must be at least {MIN_SECRET_LENGTH} characters")
    if entropy < MIN_SECRET_ENTROPY_BITS:
        issues.append(f"secret entropy {entropy:.1f} bits is below {MIN_SECRET_ENTROPY_BITS:.0f}")
    return SecretStrength(
        strong=not issues,
        length=len(secret),
        entropy_bits=round(entropy, 2),
        issues=tuple(issues),
    )
