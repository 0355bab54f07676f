"""
WhatsApp Session Errors

Error taxonomy shared by the provisioner, the gateway, the normalizer and the read API.
Each error carries a stable code and the HTTP status the web layer answers with.
"""

from typing import Any


class WhatsAppSessionError(Exception):
    """Base error for the WhatsApp session integration."""

    code = "whatsapp_session_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an HTTP error body."""
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(WhatsAppSessionError):
    """Webhook signature missing or invalid."""

    code = "authentication_failed"
    http_status = 401


class NotFoundError(WhatsAppSessionError):
    """Unknown webhook token, session or conversation."""

    code = "not_found"
    http_status = 404


class ValidationError(WhatsAppSessionError):
    """Malformed payload, unknown event type or un-normalizable phone."""

    code = "validation_error"
    http_status = 400


class ConflictError(WhatsAppSessionError):
    """Session-name collision, double terminate or a lost compare-and-set."""

    code = "conflict"
    http_status = 409


class ProviderError(WhatsAppSessionError):
    """Error answered by the WAHA provider."""

    code = "provider_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, code, details)
        self.retryable = retryable


class ProviderUnavailable(ProviderError):
    """Provider timed out, refused the connection or answered 5xx."""

    code = "provider_unavailable"
    http_status = 503

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details, retryable=True)


class ProvisioningFailed(WhatsAppSessionError):
    """Session provisioning gave up after bounded retries."""

    code = "provisioning_failed"
    http_status = 502


class PersistenceError(WhatsAppSessionError):
    """Storage failure while applying an accepted webhook event."""

    code = "persistence_error"
    http_status = 500


class IngestionUnavailable(WhatsAppSessionError):
    """Accepted webhook could not be handed to the ingest queue."""

    code = "ingestion_unavailable"
    http_status = 503
