"""
Webhook Credential Store

Issues and resolves the per-session webhook token and HMAC secret.

The token is the only path segment of the webhook URL and the only lookup key
for inbound deliveries. It is stored as a SHA-256 digest; the HMAC secret is
stored Fernet-encrypted when an encryption key is configured.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from whatsapp_sessions.errors import NotFoundError, WhatsAppSessionError
from whatsapp_sessions.persistence.models import WhatsAppSession
from whatsapp_sessions.persistence.repo import WhatsAppRepository

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits, 64 hex chars
SECRET_BYTES = 24


@dataclass(frozen=True)
class IssuedCredential:
    """A freshly issued credential. The plain token exists only here."""

    token: str
    session_id: UUID
    hmac_secret: str
    session_name: str


@dataclass(frozen=True)
class ResolvedCredential:
    """Credential resolved from an inbound webhook token."""

    tenant_id: str
    session_id: UUID
    provider_session_name: str
    hmac_secret: str


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a webhook token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def new_hmac_secret() -> str:
    return base64.b64encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii")


class SecretCipher:
    """Encrypts HMAC secrets at rest. Without a key, secrets are stored as-is."""

    def __init__(self, encryption_key: str | None = None):
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    def encrypt(self, secret: str) -> str:
        if not self._fernet:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, stored: str) -> str:
        if not self._fernet:
            return stored
        try:
            return self._fernet.decrypt(stored.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt webhook secret, check WHATSAPP_ENCRYPTION_KEY")
            raise WhatsAppSessionError(
                "Stored webhook secret cannot be decrypted",
                code="secret_decryption_failed",
            ) from e


class WebhookCredentialStore:
    """
    Generates, resolves and rotates webhook credentials.

    Methods flush but never commit; the caller owns the transaction so a
    credential and its session are written together.
    """

    def __init__(
        self,
        db: Session,
        public_base_url: str,
        encryption_key: str | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.public_base_url = public_base_url.rstrip("/")
        self.cipher = SecretCipher(encryption_key)

    def generate(
        self,
        tenant_id: str,
        display_name: str | None,
        session_name: str,
    ) -> IssuedCredential:
        """
        Create a session record and its webhook credential.

        Args:
            tenant_id: Owning tenant
            display_name: Human label for the session
            session_name: Provider session name (globally unique)

        Returns:
            The issued credential, carrying the only copy of the plain token
        """
        session = self.repo.create_session(tenant_id, session_name, display_name)
        self.db.flush()
        return self._issue(session)

    def resolve(self, token: str) -> ResolvedCredential:
        """
        Resolve an inbound webhook token.

        Raises:
            NotFoundError: Unknown or revoked token, or session gone
        """
        if not token:
            raise NotFoundError("Unknown webhook token")

        credential = self.repo.get_active_credential_by_token_hash(hash_token(token))
        if not credential:
            raise NotFoundError("Unknown webhook token")

        session = self.repo.get_session(credential.session_id)
        if not session:
            raise NotFoundError("Unknown webhook token")

        return ResolvedCredential(
            tenant_id=credential.tenant_id,
            session_id=credential.session_id,
            provider_session_name=session.provider_session_name,
            hmac_secret=self.cipher.decrypt(credential.hmac_secret),
        )

    def get_secret(self, session_id: UUID) -> str:
        """Get the active HMAC secret of a session."""
        credential = self.repo.get_active_credential(session_id)
        if not credential:
            raise NotFoundError(f"No active webhook credential for session {session_id}")
        return self.cipher.decrypt(credential.hmac_secret)

    def regenerate(self, session_id: UUID) -> IssuedCredential:
        """
        Replace the session's credential.

        The old credential is revoked in the same transaction the new one is
        inserted in, so there is no moment where both are valid.
        """
        session = self.repo.get_session(session_id)
        if not session:
            raise NotFoundError(f"Session {session_id} not found")

        revoked = self.repo.revoke_credentials(session_id)
        issued = self._issue(session)

        logger.info(
            "Webhook credential regenerated",
            extra={
                "tenant_id": session.tenant_id,
                "session_id": str(session_id),
                "revoked": revoked,
            },
        )
        return issued

    def revoke(self, session_id: UUID) -> int:
        """Revoke the session's credential. The token digest stays reserved."""
        return self.repo.revoke_credentials(session_id)

    def build_webhook_url(self, token: str) -> str:
        """Public webhook URL for a token."""
        return f"{self.public_base_url}/webhook/{token}"

    def _issue(self, session: WhatsAppSession) -> IssuedCredential:
        token = new_token()
        secret = new_hmac_secret()

        self.repo.create_credential(
            tenant_id=session.tenant_id,
            session_id=session.id,
            token_hash=hash_token(token),
            hmac_secret=self.cipher.encrypt(secret),
        )
        self.db.flush()

        return IssuedCredential(
            token=token,
            session_id=session.id,
            hmac_secret=secret,
            session_name=session.provider_session_name,
        )
