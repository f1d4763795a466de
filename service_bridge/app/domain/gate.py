"""
Access gate for bridge routes.

A route's gate is an ordered list of stages executed by a single driver loop
(``GatePipeline.run``). A stage either returns, letting the next one run, or
raises ``BridgeException``, which ends the request. The driver writes exactly
one audit entry per request before any response is produced, and converts
unexpected exceptions into ``InternalGateError``.

Stage order for token routes: authenticate, permission, rate limit.
Webhook routes verify the delivery instead of authenticating and have no
permission stage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.errors import (
    BridgeException,
    InsufficientScopeError,
    InternalGateError,
    MissingCredentialsError,
    RateLimitExceededError,
)
from shared.logging import get_logger, set_actor_context
from shared.metrics import MetricsCollector
from service_bridge.app.auth.audit import AuditEntry, AuditSink, emit_audit, log_audit_sink
from service_bridge.app.auth.permissions import check_bridge_scopes, get_required_scopes, require_permission
from service_bridge.app.auth.tokens import DEFAULT_DANGEROUS_SCOPES, TokenValidator, extract_token, mask_token
from service_bridge.app.auth.types import PermissionResult, TokenInfo, WebhookMetadata
from service_bridge.app.auth.webhooks import (
    WEBHOOK_EVENTS,
    WebhookConfig,
    extract_webhook_metadata,
    validate_webhook_request,
)
from service_bridge.app.ratelimit.keys import KeyGenerator, client_ip_key
from service_bridge.app.ratelimit.sliding_window import RateLimitInfo, RateLimiter, require_rate_limit

logger = get_logger("bridge.gate")

STAGE_AUTHENTICATE = "authenticate"
STAGE_WEBHOOK = "webhook"
STAGE_PERMISSION = "permission"
STAGE_RATE_LIMIT = "rate_limit"

FAILURE_ACTIONS = {
    STAGE_AUTHENTICATE: "auth.failure",
    STAGE_WEBHOOK: "webhook.rejected",
    STAGE_PERMISSION: "permission.denied",
    STAGE_RATE_LIMIT: "rate_limit.exceeded",
}
INTERNAL_ERROR_ACTION = "gate.error"
ALLOWED_ACTION = "gate.allowed"
WEBHOOK_ACCEPTED_ACTION = "webhook.accepted"


@dataclass
class GateContext:
    """Per-request state filled in by the stages as they pass."""

    request: Request
    route: str
    operation: Optional[str] = None
    ip_address: Optional[str] = None
    credential: Optional[str] = None
    token_info: Optional[TokenInfo] = None
    webhook: Optional[WebhookMetadata] = None
    permission: Optional[PermissionResult] = None
    rate_limit: Optional[RateLimitInfo] = None

    @property
    def actor(self) -> str:
        if self.token_info is not None:
            return self.token_info.masked
        if self.webhook is not None:
            return f"webhook:{self.webhook.instance or 'unknown'}"
        # Masked form of a credential that failed validation.
        if self.credential:
            return self.credential
        return "anonymous"

    @property
    def resource(self) -> str:
        return self.operation or self.route


Stage = Callable[[GateContext], Awaitable[None]]


@dataclass(frozen=True)
class GateOutcome:
    context: GateContext
    error: Optional[BridgeException] = None
    failed_stage: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.error is None


class GatePipeline:
    """Ordered stages plus the driver loop that runs them."""

    def __init__(
        self,
        stages: Sequence[Tuple[str, Stage]],
        *,
        audit_sink: Optional[AuditSink] = log_audit_sink,
        metrics: Optional[MetricsCollector] = None,
        success_action: str = ALLOWED_ACTION,
    ):
        self.stages: List[Tuple[str, Stage]] = list(stages)
        self.audit_sink = audit_sink
        self.metrics = metrics
        self.success_action = success_action

    @property
    def stage_names(self) -> List[str]:
        return [name for name, _ in self.stages]

    def _record(self, stage: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_gate_decision(stage, outcome)

    async def run(self, context: GateContext) -> GateOutcome:
        """Run every stage in order, stopping at the first failure."""
        for name, stage in self.stages:
            try:
                await stage(context)
            except BridgeException as e:
                await self._reject(context, name, e, FAILURE_ACTIONS.get(name, INTERNAL_ERROR_ACTION))
                return GateOutcome(context, e, name)
            except Exception as e:
                logger.error(
                    "Gate stage failed unexpectedly",
                    stage=name,
                    route=context.route,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                error = InternalGateError(details={"stage": name})
                await self._reject(context, name, error, INTERNAL_ERROR_ACTION)
                return GateOutcome(context, error, name)
            self._record(name, "pass")

        metadata: Dict[str, Any] = {"route": context.route}
        if context.rate_limit is not None:
            metadata["remaining"] = context.rate_limit.remaining
        if context.webhook is not None:
            metadata["event"] = context.webhook.event
            metadata["delivery_id"] = context.webhook.delivery_id
        await emit_audit(self.audit_sink, AuditEntry(
            action=self.success_action,
            actor=context.actor,
            resource=context.resource,
            success=True,
            metadata=metadata,
            ip_address=context.ip_address,
        ))
        return GateOutcome(context)

    async def _reject(self, context: GateContext, stage: str, error: BridgeException, action: str) -> None:
        self._record(stage, "fail")
        if self.metrics is not None:
            self.metrics.record_error(error.code)

        metadata: Dict[str, Any] = {
            "route": context.route,
            "stage": stage,
            "error": error.code,
            "details": dict(error.details),
        }
        if isinstance(error, RateLimitExceededError):
            metadata["retry_after"] = error.retry_after

        await emit_audit(self.audit_sink, AuditEntry(
            action=action,
            actor=context.actor,
            resource=context.resource,
            success=False,
            metadata=metadata,
            ip_address=context.ip_address,
        ))


class RouteGate:
    """
    Builds and runs the gate pipeline for one route.

    Token routes need ``token_validator`` and an ``operation``; webhook routes
    need ``webhook_config`` and declare no operation. Every route may carry a
    ``limiter``; without one the rate-limit stage is left out.
    """

    def __init__(
        self,
        route: str,
        *,
        operation: Optional[str] = None,
        token_validator: Optional[TokenValidator] = None,
        webhook_config: Optional[WebhookConfig] = None,
        limiter: Optional[RateLimiter] = None,
        key_generator: Optional[KeyGenerator] = None,
        skip: Optional[Callable[[Request], bool]] = None,
        dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
        require_bridge_scopes: bool = False,
        audit_sink: Optional[AuditSink] = log_audit_sink,
        metrics: Optional[MetricsCollector] = None,
    ):
        if webhook_config is not None:
            if operation is not None:
                raise ValueError(f"Webhook route {route} cannot declare an operation")
        else:
            if token_validator is None:
                raise ValueError(f"Route {route} needs a token validator or a webhook config")
            if operation is None:
                raise ValueError(f"Token route {route} must declare an operation")
            # Unknown operations are configuration defects; surface them at startup.
            get_required_scopes(operation)

        self.route = route
        self.operation = operation
        self.token_validator = token_validator
        self.webhook_config = webhook_config
        self.limiter = limiter
        self.dangerous_scopes = frozenset(dangerous_scopes)
        self.require_bridge_scopes = require_bridge_scopes
        self.metrics = metrics

        limiter_config = limiter.config if limiter is not None else None
        self.key_generator: KeyGenerator = (
            key_generator
            or (limiter_config.key_generator if limiter_config else None)
            or client_ip_key
        )
        self.skip = skip or (limiter_config.skip if limiter_config else None)

        self.pipeline = GatePipeline(
            self._build_stages(),
            audit_sink=audit_sink,
            metrics=metrics,
            success_action=WEBHOOK_ACCEPTED_ACTION if webhook_config is not None else ALLOWED_ACTION,
        )

    def _build_stages(self) -> List[Tuple[str, Stage]]:
        stages: List[Tuple[str, Stage]] = []
        if self.webhook_config is not None:
            stages.append((STAGE_WEBHOOK, self._verify_webhook))
        else:
            stages.append((STAGE_AUTHENTICATE, self._authenticate))
            stages.append((STAGE_PERMISSION, self._authorize))
        if self.limiter is not None:
            stages.append((STAGE_RATE_LIMIT, self._rate_limit))
        return stages

    async def _authenticate(self, context: GateContext) -> None:
        token = extract_token(context.request.headers)
        if token is None:
            raise MissingCredentialsError()
        context.credential = mask_token(token)
        context.token_info = await self.token_validator.validate_token(token)
        set_actor_context(context.token_info.masked)

    async def _authorize(self, context: GateContext) -> None:
        info = context.token_info
        if self.require_bridge_scopes:
            baseline = check_bridge_scopes(info)
            if not baseline.allowed:
                raise InsufficientScopeError(
                    baseline.missing_scopes,
                    message="Token lacks the scopes the bridge requires",
                    details={"token": info.masked},
                )
        context.permission = require_permission(info, self.operation, self.dangerous_scopes)

    async def _verify_webhook(self, context: GateContext) -> None:
        request = context.request
        body = await request.body()
        try:
            context.webhook = validate_webhook_request(request.headers, body, self.webhook_config)
        except BridgeException:
            if self.metrics is not None:
                # The header is caller-controlled; only known events become label values.
                event = extract_webhook_metadata(request.headers).event
                if event not in WEBHOOK_EVENTS:
                    event = "unknown"
                self.metrics.record_webhook_delivery(event, "rejected")
            raise
        if self.metrics is not None:
            self.metrics.record_webhook_delivery(context.webhook.event, "accepted")

    async def _rate_limit(self, context: GateContext) -> None:
        if self.skip is not None and self.skip(context.request):
            return
        key = self.key_generator(context.request)
        try:
            context.rate_limit = require_rate_limit(self.limiter, key)
        except RateLimitExceededError:
            logger.warning("Rate limit exceeded", route=self.route, actor=context.actor)
            if self.metrics is not None:
                self.metrics.record_rate_limit_rejection(self.route)
            handler = self.limiter.config.on_limit_reached
            if handler is not None:
                handler(context.request, self.limiter.get_info(key))
            raise

    async def run(self, request: Request) -> GateOutcome:
        context = GateContext(
            request=request,
            route=self.route,
            operation=self.operation,
            ip_address=request.client.host if request.client else None,
        )
        return await self.pipeline.run(context)

    def dependency(self) -> Callable[[Request, Response], Awaitable[GateContext]]:
        """
        FastAPI dependency running this gate.

        On success the resolved ``GateContext`` is handed to the route handler
        and rate-limit headers are set on its response. On failure the error is
        raised for ``auth_error_handler`` to render.
        """

        async def gate(request: Request, response: Response) -> GateContext:
            outcome = await self.run(request)
            if outcome.error is not None:
                raise outcome.error
            info = outcome.context.rate_limit
            if info is not None and self.limiter.config.headers:
                response.headers.update(info.headers())
            return outcome.context

        return gate


async def auth_error_handler(request: Request, exc: BridgeException) -> JSONResponse:
    """Render any ``BridgeException`` with its status, code and headers."""
    if isinstance(exc, RateLimitExceededError):
        content = exc.to_body()
    else:
        content = exc.to_response().model_dump()

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)
