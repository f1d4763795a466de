"""
Scope-based permission checks for bridge operations.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping

from shared.errors import DangerousScopeError, InsufficientScopeError, UnknownOperationError
from shared.logging import get_logger

from .tokens import DEFAULT_DANGEROUS_SCOPES
from .types import PermissionResult, TokenInfo

logger = get_logger("bridge.auth.permissions")

# Operation -> scopes the token must hold. Every exposed operation needs an entry.
OPERATION_SCOPES: Mapping[str, FrozenSet[str]] = MappingProxyType({
    "issues.read": frozenset({"read_api"}),
    "issues.create": frozenset({"api"}),
    "issues.update": frozenset({"api"}),
    "issues.comment": frozenset({"api"}),
    "merge_requests.read": frozenset({"read_api"}),
    "merge_requests.create": frozenset({"api"}),
    "merge_requests.comment": frozenset({"api"}),
    "pipeline.read": frozenset({"read_api"}),
    "pipeline.trigger": frozenset({"api"}),
    "repository.read": frozenset({"read_repository"}),
    "repository.write": frozenset({"write_repository"}),
    "project.read": frozenset({"read_api"}),
    "user.read": frozenset({"read_user"}),
})

MUTATING_OPERATIONS: FrozenSet[str] = frozenset({
    "issues.create",
    "issues.update",
    "issues.comment",
    "merge_requests.create",
    "merge_requests.comment",
    "pipeline.trigger",
    "repository.write",
})

# Baseline every token must carry to use the bridge at all.
BRIDGE_REQUIRED_SCOPES: FrozenSet[str] = frozenset({"read_api", "read_user"})

# A broader scope grants the narrower ones listed here.
SCOPE_IMPLICATIONS: Mapping[str, FrozenSet[str]] = MappingProxyType({
    "api": frozenset({"read_api"}),
    "write_repository": frozenset({"read_repository"}),
})


def expand_scopes(scopes: Iterable[str]) -> FrozenSet[str]:
    granted = set(scopes)
    for scope in list(granted):
        granted |= SCOPE_IMPLICATIONS.get(scope, frozenset())
    return frozenset(granted)


def check_scope_satisfaction(granted: Iterable[str], required: Iterable[str]) -> bool:
    """True iff every required scope is granted. Empty ``required`` is always satisfied."""
    return frozenset(required) <= expand_scopes(granted)


def _missing_scopes(granted: Iterable[str], required: Iterable[str]) -> FrozenSet[str]:
    return frozenset(required) - expand_scopes(granted)


def get_required_scopes(operation: str) -> FrozenSet[str]:
    try:
        return OPERATION_SCOPES[operation]
    except KeyError:
        logger.critical("Operation missing from scope table", operation=operation)
        raise UnknownOperationError(operation) from None


def get_required_scopes_for_operations(operations: Iterable[str]) -> FrozenSet[str]:
    """
    Union of required scopes for ``operations``.

    Raises:
        UnknownOperationError: if any operation is not in ``OPERATION_SCOPES``
    """
    required: FrozenSet[str] = frozenset()
    for operation in operations:
        required |= get_required_scopes(operation)
    return required


def check_operation_permission(
    info: TokenInfo,
    operation: str,
    dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
) -> PermissionResult:
    """Evaluate one operation. Mutating operations also reject dangerous scopes."""
    required = get_required_scopes(operation)
    missing = _missing_scopes(info.scopes, required)

    flagged: FrozenSet[str] = frozenset()
    if operation in MUTATING_OPERATIONS:
        flagged = frozenset(info.scopes) & frozenset(dangerous_scopes)

    if missing:
        return PermissionResult(
            allowed=False,
            operation=operation,
            missing_scopes=missing,
            dangerous_scopes=flagged,
            reason="insufficient_scope",
        )
    if flagged:
        return PermissionResult(
            allowed=False,
            operation=operation,
            dangerous_scopes=flagged,
            reason="dangerous_scope",
        )
    return PermissionResult(allowed=True, operation=operation)


def validate_required_scopes(info: TokenInfo, required: Iterable[str]) -> None:
    """Raise ``InsufficientScopeError`` unless ``required`` is satisfied."""
    missing = _missing_scopes(info.scopes, required)
    if missing:
        raise InsufficientScopeError(missing, details={"token": info.masked})


def validate_no_dangerous_scopes(
    info: TokenInfo,
    dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
) -> None:
    """Raise ``DangerousScopeError`` if the token holds any listed scope."""
    flagged = frozenset(info.scopes) & frozenset(dangerous_scopes)
    if flagged:
        raise DangerousScopeError(flagged, details={"token": info.masked})


def require_permission(
    info: TokenInfo,
    operation: str,
    dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
) -> PermissionResult:
    """Enforcement form of ``check_operation_permission``: raises on denial."""
    result = check_operation_permission(info, operation, dangerous_scopes)
    if result.allowed:
        return result
    if result.missing_scopes:
        raise InsufficientScopeError(
            result.missing_scopes,
            details={"operation": operation, "token": info.masked},
        )
    raise DangerousScopeError(
        result.dangerous_scopes,
        message="Token carries scopes not allowed for mutating operations",
        details={"operation": operation, "token": info.masked},
    )


def check_bridge_scopes(info: TokenInfo) -> PermissionResult:
    """Check the baseline scopes the bridge needs regardless of operation."""
    missing = _missing_scopes(info.scopes, BRIDGE_REQUIRED_SCOPES)
    if missing:
        return PermissionResult(allowed=False, missing_scopes=missing, reason="insufficient_scope")
    return PermissionResult(allowed=True)


def check_multiple_operations(
    info: TokenInfo,
    operations: Iterable[str],
    dangerous_scopes: Iterable[str] = DEFAULT_DANGEROUS_SCOPES,
) -> Dict[str, PermissionResult]:
    """Evaluate each operation independently; callers aggregate as they need."""
    return {
        operation: check_operation_permission(info, operation, dangerous_scopes)
        for operation in operations
    }
