"""
GitLab Bridge gateway service.

Hosts the bridge routes behind the access gate. Handlers are thin: the
upstream GitLab REST client lives outside this service, so each handler
answers with what the gate resolved for the request.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Request

from shared.base_service import BaseService
from shared.config import BridgeConfig, get_config
from shared.errors import BridgeException
from service_bridge.app.adapters.introspection_client import IntrospectionClient
from service_bridge.app.auth.audit import AuditSink, log_audit_sink
from service_bridge.app.auth.tokens import TokenIntrospector, TokenValidator
from service_bridge.app.auth.webhooks import WebhookConfig, validate_secret_strength
from service_bridge.app.domain.gate import GateContext, RouteGate, auth_error_handler
from service_bridge.app.ratelimit.keys import get_key_generator
from service_bridge.app.ratelimit.sliding_window import (
    RateLimiter,
    SweepScheduler,
    resolve_rate_limit_config,
)

WEBHOOK_ROUTE = "webhooks"
WEBHOOK_DEFAULT_PRESET = "webhook"


class BridgeGatewayService(BaseService):
    """Bridge gateway service implementation."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        introspector: Optional[TokenIntrospector] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], float]] = None,
        scheduler_factory: Optional[Callable[[], SweepScheduler]] = None,
    ):
        config = config or get_config()
        super().__init__(config.service_name, config)
        self.audit_sink = audit_sink or log_audit_sink
        self._clock = clock
        self._scheduler_factory = scheduler_factory

        self.introspection_client: Optional[IntrospectionClient] = None
        if introspector is None and self.config.introspection_enabled:
            self.introspection_client = IntrospectionClient(self.config.gitlab_url, metrics=self.metrics)
            introspector = self.introspection_client

        self.token_validator = TokenValidator(
            introspector,
            lookup_timeout=self.config.introspection_timeout_seconds,
            expiry_warning_days=self.config.token_expiry_warning_days,
            dangerous_scopes=self.config.dangerous_scopes,
        )
        self.webhook_config = self._build_webhook_config()
        self.limiters: Dict[str, RateLimiter] = {}

        self.on_startup(self._start_limiters)
        self.on_shutdown(self._stop_limiters)
        if self.introspection_client is not None:
            self.on_shutdown(self.introspection_client.close)

        self.app.add_exception_handler(BridgeException, auth_error_handler)
        self._setup_bridge_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.bridge_service = self

    def _build_webhook_config(self) -> Optional[WebhookConfig]:
        """Webhook route is only mounted when at least one secret is configured."""
        token_secret = self.config.webhook_secret
        signing_secret = self.config.webhook_signing_secret
        if not token_secret and not signing_secret:
            self.logger.warning("No webhook secret configured, webhook route disabled")
            return None

        for label, secret in (("token", token_secret), ("signing", signing_secret)):
            if not secret:
                continue
            strength = validate_secret_strength(secret)
            if not strength.strong:
                self.logger.warning(
                    "Weak webhook secret",
                    secret=label,
                    length=strength.length,
                    issues=list(strength.issues),
                )

        return WebhookConfig(
            token_secret=token_secret,
            signing_secret=signing_secret,
            require_token=self.config.webhook_require_token,
            require_signature=self.config.webhook_require_signature,
        )

    def _skip_rate_limit(self, request: Request) -> bool:
        return request.url.path in self.config.rate_limit_skip_paths

    def _limiter_for(self, route: str, default_preset: Optional[str] = None) -> RateLimiter:
        """
        Limiter for a route name, created on first use.

        A ``route_rate_limits`` entry for the route replaces the global
        settings; otherwise the route's default preset or the global
        preset, limit and window apply.
        """
        if route in self.limiters:
            return self.limiters[route]

        override = self.config.route_rate_limits.get(route)
        if override:
            preset = override.get("preset")
            limit = override.get("limit")
            window_seconds = override.get("window_seconds")
            if preset is None and limit is None:
                preset = default_preset or self.config.rate_limit_preset
        else:
            preset = default_preset or self.config.rate_limit_preset
            limit = None if default_preset else self.config.rate_limit_limit
            window_seconds = None if default_preset else self.config.rate_limit_window_seconds

        rate_config = resolve_rate_limit_config(
            preset,
            limit=limit,
            window_seconds=window_seconds,
            headers=self.config.rate_limit_headers,
            key_generator=get_key_generator(self.config.rate_limit_key_strategy),
            skip=self._skip_rate_limit,
        )

        limiter_kwargs: Dict[str, Any] = {
            "sweep_interval": self.config.rate_limit_sweep_seconds,
            "name": route,
        }
        if self._clock is not None:
            limiter_kwargs["clock"] = self._clock
        if self._scheduler_factory is not None:
            limiter_kwargs["scheduler"] = self._scheduler_factory()

        limiter = RateLimiter(rate_config, **limiter_kwargs)
        self.limiters[route] = limiter
        return limiter

    def _gate(self, route: str, operation: str) -> RouteGate:
        return RouteGate(
            route,
            operation=operation,
            token_validator=self.token_validator,
            limiter=self._limiter_for(route),
            dangerous_scopes=self.config.dangerous_scopes,
            require_bridge_scopes=self.config.require_bridge_scopes,
            audit_sink=self.audit_sink,
            metrics=self.metrics,
        )

    async def _start_limiters(self) -> None:
        for limiter in self.limiters.values():
            limiter.start()

    async def _stop_limiters(self) -> None:
        for limiter in self.limiters.values():
            limiter.stop()

    def _describe(self, context: GateContext) -> Dict[str, Any]:
        """Summary of what the gate resolved for the request."""
        info = context.token_info
        result: Dict[str, Any] = {
            "operation": context.operation,
            "actor": context.actor,
        }
        if info is not None:
            result["token_type"] = info.kind.value
            result["scopes"] = sorted(info.scopes)
        if context.rate_limit is not None:
            result["rate_limit_remaining"] = context.rate_limit.remaining
        return result

    def _setup_bridge_routes(self):
        """Set up gated bridge routes."""
        issues_read = self._gate("issues", "issues.read")
        issues_create = self._gate("issues", "issues.create")
        pipeline_trigger = self._gate("pipelines", "pipeline.trigger")
        merge_requests_read = self._gate("merge_requests", "merge_requests.read")

        @self.app.get("/api/v1/issues")
        async def list_issues(context: GateContext = Depends(issues_read.dependency())):
            """List issues for the caller."""
            return self._describe(context)

        @self.app.post("/api/v1/issues", status_code=201)
        async def create_issue(context: GateContext = Depends(issues_create.dependency())):
            """Create an issue on behalf of the caller."""
            return self._describe(context)

        @self.app.post("/api/v1/pipelines/{project_id}/trigger", status_code=202)
        async def trigger_pipeline(
            project_id: int,
            context: GateContext = Depends(pipeline_trigger.dependency()),
        ):
            """Trigger a pipeline for a project."""
            result = self._describe(context)
            result["project_id"] = project_id
            return result

        @self.app.get("/api/v1/merge_requests")
        async def list_merge_requests(context: GateContext = Depends(merge_requests_read.dependency())):
            """List merge requests for the caller."""
            return self._describe(context)

        if self.webhook_config is None:
            return

        webhook_gate = RouteGate(
            WEBHOOK_ROUTE,
            webhook_config=self.webhook_config,
            limiter=self._limiter_for(WEBHOOK_ROUTE, WEBHOOK_DEFAULT_PRESET),
            audit_sink=self.audit_sink,
            metrics=self.metrics,
        )

        @self.app.post("/webhooks/gitlab", status_code=202)
        async def receive_gitlab_webhook(context: GateContext = Depends(webhook_gate.dependency())):
            """Accept a verified GitLab webhook delivery."""
            webhook = context.webhook
            self.logger.info(
                "Webhook accepted",
                event=webhook.event,
                instance=webhook.instance,
                delivery_id=webhook.delivery_id,
            )
            return {
                "accepted": True,
                "event": webhook.event,
                "delivery_id": webhook.delivery_id,
            }

    def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        dependencies = {
            "webhooks": "configured" if self.webhook_config is not None else "disabled",
        }
        if self.introspection_client is not None:
            dependencies["introspection"] = self.introspection_client.circuit_breaker.state.value
        else:
            dependencies["introspection"] = "disabled" if self.token_validator.introspector is None else "injected"
        return dependencies


def create_app(config: Optional[BridgeConfig] = None, **kwargs: Any):
    """Create FastAPI application."""
    service = BridgeGatewayService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = BridgeGatewayService()
    service.run()
