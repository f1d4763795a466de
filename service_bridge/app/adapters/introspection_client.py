"""
GitLab token introspection client.

Looks a token up through ``GET /api/v4/personal_access_tokens/self``. Used by
``TokenValidator`` as its revocation collaborator; the validator bounds each
call with its own timeout.

GitLab only answers this endpoint for personal access tokens. Deploy
(``gldt-``) and pipeline trigger (``glptt-``) tokens get a 401, so with this
client enabled they are rejected as revoked.
"""

from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_bridge.app.auth.types import TokenIntrospection


INTROSPECTION_PATH = "/api/v4/personal_access_tokens/self"


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """GitLab reports a date; the token stops working at 00:00 UTC that day."""
    if not value:
        return None
    try:
        if "T" in value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return datetime.combine(date.fromisoformat(value), dt_time.min, tzinfo=timezone.utc)
    except ValueError:
        raise ExternalServiceError("gitlab", f"Unparseable expires_at: {value!r}")


class IntrospectionClient:
    """Client for GitLab's token self-inspection endpoint."""

    def __init__(
        self,
        gitlab_url: str,
        *,
        http_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.gitlab_url = gitlab_url.rstrip("/")
        self.logger = get_logger("bridge.introspection_client")
        self._client = client or httpx.AsyncClient(timeout=http_timeout)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "gitlab_introspection",
            failure_threshold=3,
            recovery_timeout=30.0,
        )
        self.metrics = metrics

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def introspect(self, token: str) -> TokenIntrospection:
        """
        Ask GitLab about ``token``.

        A 401 from GitLab means the token is revoked, expired or unknown and is
        reported as revoked. Any other failure raises.

        Raises:
            ExternalServiceError: unexpected status or payload
            httpx.HTTPError: transport failure
            CircuitBreakerOpenException: too many recent failures
        """
        return await self.circuit_breaker.call(self._introspect, token)

    async def _introspect(self, token: str) -> TokenIntrospection:
        if self.metrics is None:
            response = await self._fetch(token)
        else:
            with self.metrics.time_operation("token_lookup_duration_seconds"):
                response = await self._fetch(token)

        if response.status_code == 401:
            return TokenIntrospection(revoked=True, active=False)

        if response.status_code != 200:
            self.logger.error("GitLab introspection error", status_code=response.status_code)
            raise ExternalServiceError(
                "gitlab",
                f"Introspection returned {response.status_code}",
                details={"status_code": response.status_code},
            )

        return self._to_introspection(response.json())

    async def _fetch(self, token: str) -> httpx.Response:
        return await self._client.get(
            f"{self.gitlab_url}{INTROSPECTION_PATH}",
            headers={"PRIVATE-TOKEN": token},
        )

    def _to_introspection(self, payload: Dict[str, Any]) -> TokenIntrospection:
        if not isinstance(payload, dict):
            raise ExternalServiceError("gitlab", "Introspection payload is not an object")

        scopes = payload.get("scopes") or []
        return TokenIntrospection(
            revoked=bool(payload.get("revoked", False)),
            active=bool(payload.get("active", True)),
            scopes=frozenset(str(scope) for scope in scopes),
            expires_at=_parse_expiry(payload.get("expires_at")),
            name=payload.get("name"),
        )
