"""
Request gating for bridge routes.
"""

from .gate import (
    GateContext,
    GateOutcome,
    GatePipeline,
    RouteGate,
    auth_error_handler,
    STAGE_AUTHENTICATE,
    STAGE_WEBHOOK,
    STAGE_PERMISSION,
    STAGE_RATE_LIMIT,
)

__all__ = [
    "GateContext",
    "GateOutcome",
    "GatePipeline",
    "RouteGate",
    "auth_error_handler",
    "STAGE_AUTHENTICATE",
    "STAGE_WEBHOOK",
    "STAGE_PERMISSION",
    "STAGE_RATE_LIMIT",
]
