"""
Tests for webhook signature validation.
"""

import hashlib
import hmac

from whatsapp_sessions.providers.waha.webhook import compute_signature, validate_signature


class TestSignatureValidation:
    """Tests for WAHA HMAC-SHA256 signatures."""

    def test_valid_signature(self):
        """Test a hex HMAC-SHA256 digest of the raw body is accepted."""
        secret = "c2VjcmV0LXNlY3JldC1zZWNyZXQ="
        payload = b'{"event": "message"}'

        signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

        assert validate_signature(payload, signature, secret) is True

    def test_prefixed_and_uppercase_signature(self):
        """Test the optional sha256= prefix and uppercase hex are accepted."""
        secret = "secret"
        payload = b"{}"
        signature = compute_signature(payload, secret)

        assert validate_signature(payload, f"sha256={signature}", secret) is True
        assert validate_signature(payload, signature.upper(), secret) is True

    def test_tampered_body_rejected(self):
        """Test a signature over a different body is rejected."""
        secret = "secret"
        signature = compute_signature(b'{"body": "Hello"}', secret)

        assert validate_signature(b'{"body": "Hellp"}', signature, secret) is False

    def test_wrong_secret_rejected(self):
        """Test a signature made with another session's secret is rejected."""
        payload = b'{"event": "message"}'
        signature = compute_signature(payload, "other-secret")

        assert validate_signature(payload, signature, "secret") is False

    def test_empty_signature(self):
        """Test empty signature is rejected."""
        assert validate_signature(b"payload", "", "secret") is False
        assert validate_signature(b"payload", None, "secret") is False

    def test_empty_secret(self):
        """Test nothing validates against an empty secret."""
        signature = compute_signature(b"payload", "")
        assert validate_signature(b"payload", signature, "") is False
