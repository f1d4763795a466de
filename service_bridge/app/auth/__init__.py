"""
Authentication and authorization for the bridge gate.

- tokens: bearer token format, parsing, expiry and revocation checks
- permissions: operation -> scope table and scope arithmetic
- webhooks: GitLab webhook token and signature verification
- audit: audit entries and sink dispatch
"""

from .types import (
    TokenKind,
    TokenInfo,
    TokenIntrospection,
    ExpirationState,
    ExpirationCheck,
    RevocationStatus,
    PermissionResult,
    WebhookMetadata,
    SecretStrength,
)
from .tokens import (
    TokenValidator,
    validate_token_format,
    parse_token_info,
    get_token_type,
    mask_token,
    check_token_expiration,
    check_token_revocation,
    check_dangerous_scopes,
    check_expiration_warning,
    extract_token,
)
from .permissions import (
    OPERATION_SCOPES,
    BRIDGE_REQUIRED_SCOPES,
    check_scope_satisfaction,
    check_operation_permission,
    validate_required_scopes,
    validate_no_dangerous_scopes,
    require_permission,
    check_bridge_scopes,
    get_required_scopes_for_operations,
    check_multiple_operations,
)
from .webhooks import (
    WebhookConfig,
    validate_webhook_token,
    validate_webhook_signature,
    compute_webhook_signature,
    validate_webhook_request,
    require_valid_webhook,
    extract_webhook_metadata,
    validate_secret_strength,
    WEBHOOK_TOKEN_HEADER,
    WEBHOOK_EVENT_HEADER,
    WEBHOOK_INSTANCE_HEADER,
    WEBHOOK_SIGNATURE_HEADER,
    WEBHOOK_EVENTS,
)
from .audit import AuditEntry, AuditSink, emit_audit, log_audit_sink

__all__ = [
    "TokenKind",
    "TokenInfo",
    "TokenIntrospection",
    "ExpirationState",
    "ExpirationCheck",
    "RevocationStatus",
    "PermissionResult",
    "WebhookMetadata",
    "SecretStrength",
    "TokenValidator",
    "validate_token_format",
    "parse_token_info",
    "get_token_type",
    "mask_token",
    "check_token_expiration",
    "check_token_revocation",
    "check_dangerous_scopes",
    "check_expiration_warning",
    "extract_token",
    "OPERATION_SCOPES",
    "BRIDGE_REQUIRED_SCOPES",
    "check_scope_satisfaction",
    "check_operation_permission",
    "validate_required_scopes",
    "validate_no_dangerous_scopes",
    "require_permission",
    "check_bridge_scopes",
    "get_required_scopes_for_operations",
    "check_multiple_operations",
    "WebhookConfig",
    "validate_webhook_token",
    "validate_webhook_signature",
    "compute_webhook_signature",
    "validate_webhook_request",
    "require_valid_webhook",
    "extract_webhook_metadata",
    "validate_secret_strength",
    "WEBHOOK_TOKEN_HEADER",
    "WEBHOOK_EVENT_HEADER",
    "WEBHOOK_INSTANCE_HEADER",
    "WEBHOOK_SIGNATURE_HEADER",
    "WEBHOOK_EVENTS",
    "AuditEntry",
    "AuditSink",
    "emit_audit",
    "log_audit_sink",
]
