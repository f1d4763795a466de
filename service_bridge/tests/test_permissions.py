"""
Unit tests for scope-based permission checks.
"""

from unittest.mock import patch

import pytest

from service_bridge.app.auth import (
    BRIDGE_REQUIRED_SCOPES,
    OPERATION_SCOPES,
    TokenInfo,
    TokenKind,
    check_bridge_scopes,
    check_multiple_operations,
    check_operation_permission,
    check_scope_satisfaction,
    get_required_scopes_for_operations,
    require_permission,
    validate_no_dangerous_scopes,
    validate_required_scopes,
)
from service_bridge.app.auth.permissions import MUTATING_OPERATIONS, expand_scopes
from shared.errors import DangerousScopeError, InsufficientScopeError, UnknownOperationError


def make_info(*scopes):
    return TokenInfo(
        kind=TokenKind.PERSONAL_ACCESS,
        prefix="glpat-",
        fingerprint="a" * 16,
        masked="glpat-****wxyz",
        scopes=frozenset(scopes),
    )


class TestScopeSatisfaction:
    """Test cases for scope arithmetic."""

    def test_subset_is_satisfied(self):
        assert check_scope_satisfaction({"api", "read_repository"}, {"api"}) is True

    def test_missing_scope(self):
        assert check_scope_satisfaction({"read_repository"}, {"api"}) is False

    def test_empty_required_always_satisfied(self):
        assert check_scope_satisfaction(set(), set()) is True
        assert check_scope_satisfaction({"read_user"}, []) is True

    def test_implied_scopes(self):
        """Test broader scopes grant the narrower ones they imply."""
        assert check_scope_satisfaction({"api"}, {"read_api"}) is True
        assert check_scope_satisfaction({"write_repository"}, {"read_repository"}) is True
        assert check_scope_satisfaction({"read_api"}, {"api"}) is False

    def test_expand_scopes(self):
        assert expand_scopes({"api", "read_user"}) == frozenset({"api", "read_api", "read_user"})


class TestOperationTable:
    """Test cases for the operation table."""

    def test_every_operation_has_scopes(self):
        for operation, scopes in OPERATION_SCOPES.items():
            assert scopes, operation

    def test_mutating_operations_are_known(self):
        assert MUTATING_OPERATIONS <= set(OPERATION_SCOPES)

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            OPERATION_SCOPES["admin.nuke"] = frozenset({"sudo"})

    def test_union_of_required_scopes(self):
        required = get_required_scopes_for_operations(["issues.read", "repository.write", "user.read"])
        assert required == frozenset({"read_api", "write_repository", "read_user"})

    def test_unknown_operation(self):
        """Test unknown operations are configuration errors logged as critical."""
        with patch("service_bridge.app.auth.permissions.logger") as mock_logger:
            with pytest.raises(UnknownOperationError) as exc_info:
                get_required_scopes_for_operations(["issues.read", "issues.delete"])

        assert exc_info.value.code == "UNKNOWN_OPERATION"
        assert exc_info.value.status_code == 500
        assert exc_info.value.operation == "issues.delete"
        mock_logger.critical.assert_called_once()


class TestOperationPermission:
    """Test cases for operation permission checks."""

    def test_allowed(self):
        result = check_operation_permission(make_info("read_api"), "issues.read")
        assert result.allowed is True
        assert result.operation == "issues.read"

    def test_denied_with_missing_scopes(self):
        result = check_operation_permission(make_info("read_api"), "pipeline.trigger")
        assert result.allowed is False
        assert result.missing_scopes == frozenset({"api"})
        assert result.reason == "insufficient_scope"

    def test_dangerous_scope_blocks_mutation(self):
        """Test mutating operations reject tokens with dangerous scopes."""
        result = check_operation_permission(make_info("api", "sudo"), "issues.create")
        assert result.allowed is False
        assert result.dangerous_scopes == frozenset({"sudo"})
        assert result.reason == "dangerous_scope"

    def test_dangerous_scope_allowed_for_reads(self):
        result = check_operation_permission(make_info("api", "sudo"), "issues.read")
        assert result.allowed is True

    def test_injected_denylist(self):
        info = make_info("api", "sudo")
        assert check_operation_permission(info, "issues.create", dangerous_scopes=set()).allowed is True
        assert check_operation_permission(info, "issues.create", dangerous_scopes={"api"}).allowed is False

    def test_unknown_operation(self):
        with pytest.raises(UnknownOperationError):
            check_operation_permission(make_info("api"), "admin.nuke")


class TestEnforcement:
    """Test cases for raising permission wrappers."""

    def test_validate_required_scopes(self):
        validate_required_scopes(make_info("api"), {"read_api"})
        with pytest.raises(InsufficientScopeError) as exc_info:
            validate_required_scopes(make_info("read_api"), {"api", "read_user"})
        assert exc_info.value.missing_scopes == frozenset({"api", "read_user"})
        assert exc_info.value.details["missing_scopes"] == ["api", "read_user"]

    def test_validate_no_dangerous_scopes(self):
        validate_no_dangerous_scopes(make_info("api"))
        with pytest.raises(DangerousScopeError) as exc_info:
            validate_no_dangerous_scopes(make_info("api", "admin_mode"))
        assert exc_info.value.scopes == frozenset({"admin_mode"})
        assert exc_info.value.status_code == 403

    def test_require_permission_allowed(self):
        assert require_permission(make_info("api"), "issues.create").allowed is True

    def test_require_permission_insufficient(self):
        with pytest.raises(InsufficientScopeError) as exc_info:
            require_permission(make_info("read_api"), "issues.create")
        assert exc_info.value.code == "INSUFFICIENT_SCOPE"
        assert exc_info.value.details["operation"] == "issues.create"

    def test_require_permission_dangerous(self):
        with pytest.raises(DangerousScopeError) as exc_info:
            require_permission(make_info("api", "sudo"), "pipeline.trigger")
        assert exc_info.value.code == "DANGEROUS_SCOPE"


class TestBridgeScopes:
    """Test cases for baseline and multi-operation checks."""

    def test_bridge_scopes(self):
        assert BRIDGE_REQUIRED_SCOPES == frozenset({"read_api", "read_user"})
        assert check_bridge_scopes(make_info("api", "read_user")).allowed is True

        result = check_bridge_scopes(make_info("read_api"))
        assert result.allowed is False
        assert result.missing_scopes == frozenset({"read_user"})

    def test_multiple_operations_do_not_short_circuit(self):
        """Test each operation gets its own result."""
        results = check_multiple_operations(
            make_info("read_api"),
            ["issues.read", "issues.create", "repository.read"],
        )
        assert set(results) == {"issues.read", "issues.create", "repository.read"}
        assert results["issues.read"].allowed is True
        assert results["issues.create"].missing_scopes == frozenset({"api"})
        assert results["repository.read"].missing_scopes == frozenset({"read_repository"})
