"""
Audit entries for security decisions made by the gate.

The host supplies the sink. This module builds the entry, hands it over and
never reads it back.
"""

from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from shared.logging import get_logger

logger = get_logger("bridge.audit")


@dataclass(frozen=True)
class AuditEntry:
    """Write-once record of a gate decision."""

    action: str
    actor: str
    resource: str
    success: bool
    metadata: Mapping[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "actor": self.actor,
            "resource": self.resource,
            "success": self.success,
            "metadata": dict(self.metadata),
            "ip_address": self.ip_address,
        }


AuditSink = Callable[[AuditEntry], Union[None, Awaitable[None]]]


def log_audit_sink(entry: AuditEntry) -> None:
    """Default sink: one structured log line per entry."""
    log = logger.info if entry.success else logger.warning
    log("Audit event", **entry.to_dict())


async def emit_audit(sink: Optional[AuditSink], entry: AuditEntry) -> None:
    """
    Deliver ``entry`` to ``sink``.

    Sink failures are logged and swallowed so they never change the
    outcome of the request being audited.
    """
    if sink is None:
        return
    try:
        result = sink(entry)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(
            "Audit sink failed",
            action=entry.action,
            entry_id=entry.id,
            error=str(e),
            error_type=type(e).__name__,
        )
