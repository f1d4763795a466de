"""
Unit tests for GitLab webhook verification.
"""

from unittest.mock import patch

import pytest

from service_bridge.app.auth import (
    WEBHOOK_EVENTS,
    WebhookConfig,
    compute_webhook_signature,
    extract_webhook_metadata,
    require_valid_webhook,
    validate_secret_strength,
    validate_webhook_request,
    validate_webhook_signature,
    validate_webhook_token,
)
from shared.errors import (
    InvalidWebhookSignatureError,
    InvalidWebhookTokenError,
    MissingWebhookTokenError,
    UnknownWebhookEventError,
)
from shared.test_helpers import TEST_SIGNING_SECRET, TEST_WEBHOOK_SECRET

BODY = b'{"object_kind":"push","ref":"refs/heads/main"}'


def delivery_headers(**overrides):
    headers = {
        "X-Gitlab-Token": TEST_WEBHOOK_SECRET,
        "X-Gitlab-Event": "Push Hook",
        "X-Gitlab-Instance": "https://gitlab.example.com",
        "X-Gitlab-Webhook-UUID": "6f1c1d1e-6c3a-4c2f-9d35-0d2b8f3e4a11",
    }
    headers.update(overrides)
    return {name: value for name, value in headers.items() if value is not None}


class TestWebhookToken:
    """Test cases for shared-secret token checks."""

    def test_matching_token(self):
        assert validate_webhook_token(TEST_WEBHOOK_SECRET, TEST_WEBHOOK_SECRET) is True

    def test_wrong_token(self):
        assert validate_webhook_token("wrong", TEST_WEBHOOK_SECRET) is False
        assert validate_webhook_token(TEST_WEBHOOK_SECRET[:-1], TEST_WEBHOOK_SECRET) is False

    @pytest.mark.parametrize("provided,expected", [(None, "secret"), ("", "secret"), ("secret", None), (None, None)])
    def test_missing_values(self, provided, expected):
        assert validate_webhook_token(provided, expected) is False

    def test_missing_value_still_runs_comparison(self):
        """Test the constant-time comparison runs even when a value is missing."""
        with patch("service_bridge.app.auth.webhooks.hmac.compare_digest", return_value=True) as mock_compare:
            assert validate_webhook_token(None, TEST_WEBHOOK_SECRET) is False
        mock_compare.assert_called_once()


class TestWebhookSignature:
    """Test cases for HMAC body signatures."""

    def test_signature_format(self):
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    def test_signature_is_deterministic(self):
        assert compute_webhook_signature(BODY, TEST_SIGNING_SECRET) == compute_webhook_signature(
            BODY.decode(), TEST_SIGNING_SECRET
        )

    def test_exact_recomputation_validates(self):
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        assert validate_webhook_signature(BODY, TEST_SIGNING_SECRET, signature) is True

    def test_single_bit_mutation_fails(self):
        """Test flipping any single bit of the body invalidates the signature."""
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        for index in range(len(BODY)):
            for bit in range(8):
                mutated = bytearray(BODY)
                mutated[index] ^= 1 << bit
                assert validate_webhook_signature(bytes(mutated), TEST_SIGNING_SECRET, signature) is False

    def test_wrong_secret_fails(self):
        signature = compute_webhook_signature(BODY, "another-secret")
        assert validate_webhook_signature(BODY, TEST_SIGNING_SECRET, signature) is False

    def test_correct_prefix_and_wrong_signature_take_same_path(self):
        """Test both a near-miss and a wholly wrong signature go through compare_digest."""
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        near_miss = signature[:-1] + ("0" if signature[-1] != "0" else "1")
        wholly_wrong = "sha256=" + "f" * 64

        with patch("service_bridge.app.auth.webhooks.hmac.compare_digest", return_value=False) as mock_compare:
            assert validate_webhook_signature(BODY, TEST_SIGNING_SECRET, near_miss) is False
            assert validate_webhook_signature(BODY, TEST_SIGNING_SECRET, wholly_wrong) is False
            assert validate_webhook_signature(BODY, TEST_SIGNING_SECRET, None) is False

        assert mock_compare.call_count == 3


class TestWebhookConfig:
    """Test cases for WebhookConfig construction."""

    def test_default_requires_token(self):
        config = WebhookConfig(token_secret=TEST_WEBHOOK_SECRET)
        assert config.require_token is True
        assert config.require_signature is False

    def test_must_require_something(self):
        with pytest.raises(ValueError, match="must require"):
            WebhookConfig(token_secret="x", require_token=False, require_signature=False)

    def test_required_token_needs_secret(self):
        with pytest.raises(ValueError, match="token secret"):
            WebhookConfig()

    def test_required_signature_needs_secret(self):
        with pytest.raises(ValueError, match="signing secret"):
            WebhookConfig(require_token=False, require_signature=True)


class TestWebhookRequest:
    """Test cases for validate_webhook_request."""

    @pytest.fixture
    def token_config(self):
        return WebhookConfig(token_secret=TEST_WEBHOOK_SECRET)

    @pytest.fixture
    def both_config(self):
        return WebhookConfig(
            token_secret=TEST_WEBHOOK_SECRET,
            signing_secret=TEST_SIGNING_SECRET,
            require_signature=True,
        )

    def test_accepts_valid_delivery(self, token_config):
        metadata = validate_webhook_request(delivery_headers(), BODY, token_config)
        assert metadata.event == "Push Hook"
        assert metadata.instance == "https://gitlab.example.com"
        assert metadata.delivery_id == "6f1c1d1e-6c3a-4c2f-9d35-0d2b8f3e4a11"

    def test_header_lookup_is_case_insensitive(self, token_config):
        headers = {name.lower(): value for name, value in delivery_headers().items()}
        assert validate_webhook_request(headers, BODY, token_config).event == "Push Hook"

    def test_missing_token(self, token_config):
        with pytest.raises(MissingWebhookTokenError) as exc_info:
            validate_webhook_request(delivery_headers(**{"X-Gitlab-Token": None}), BODY, token_config)
        assert exc_info.value.status_code == 401

    def test_invalid_token(self, token_config):
        with pytest.raises(InvalidWebhookTokenError):
            validate_webhook_request(delivery_headers(**{"X-Gitlab-Token": "nope"}), BODY, token_config)

    def test_token_checked_before_event(self, token_config):
        """Test a bad token is reported even when the event is also unknown."""
        headers = delivery_headers(**{"X-Gitlab-Token": "nope", "X-Gitlab-Event": "Bogus Hook"})
        with pytest.raises(InvalidWebhookTokenError):
            validate_webhook_request(headers, BODY, token_config)

    def test_signature_required(self, both_config):
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        headers = delivery_headers(**{"X-Gitlab-Signature": signature})
        assert validate_webhook_request(headers, BODY, both_config).event == "Push Hook"

        with pytest.raises(InvalidWebhookSignatureError):
            validate_webhook_request(delivery_headers(), BODY, both_config)

        with pytest.raises(InvalidWebhookSignatureError):
            validate_webhook_request(headers, BODY + b" ", both_config)

    def test_signature_only(self):
        config = WebhookConfig(signing_secret=TEST_SIGNING_SECRET, require_token=False, require_signature=True)
        signature = compute_webhook_signature(BODY, TEST_SIGNING_SECRET)
        headers = delivery_headers(**{"X-Gitlab-Token": None, "X-Gitlab-Signature": signature})
        assert validate_webhook_request(headers, BODY, config).token is None

    def test_unknown_event_rejected(self, token_config):
        with pytest.raises(UnknownWebhookEventError) as exc_info:
            validate_webhook_request(delivery_headers(**{"X-Gitlab-Event": "Bogus Hook"}), BODY, token_config)
        assert exc_info.value.status_code == 400
        assert exc_info.value.event == "Bogus Hook"

    def test_missing_event_rejected(self, token_config):
        with pytest.raises(UnknownWebhookEventError):
            validate_webhook_request(delivery_headers(**{"X-Gitlab-Event": None}), BODY, token_config)

    def test_require_valid_webhook_alias(self, token_config):
        assert require_valid_webhook(delivery_headers(), BODY, token_config).event == "Push Hook"

    def test_known_events(self):
        assert {"Push Hook", "Merge Request Hook", "Pipeline Hook", "Note Hook"} <= WEBHOOK_EVENTS


class TestWebhookMetadata:
    """Test cases for extract_webhook_metadata."""

    def test_extracts_without_validating(self):
        metadata = extract_webhook_metadata({"X-Gitlab-Event": "Bogus Hook", "X-Gitlab-Token": "anything"})
        assert metadata.event == "Bogus Hook"
        assert metadata.token == "anything"
        assert metadata.instance is None
        assert metadata.delivery_id is None


class TestSecretStrength:
    """Test cases for validate_secret_strength."""

    def test_strong_secret(self):
        result = validate_secret_strength(TEST_WEBHOOK_SECRET)
        assert result.strong is True
        assert result.issues == ()

    def test_short_secret(self):
        result = validate_secret_strength("short")
        assert result.strong is False
        assert any("at least 32" in issue for issue in result.issues)

    def test_low_entropy_secret(self):
        result = validate_secret_strength("a" * 64)
        assert result.strong is False
        assert result.entropy_bits == 0.0

    def test_empty_secret(self):
        result = validate_secret_strength(None)
        assert result.strong is False
        assert result.length == 0
