"""
Session Provisioner

Creates and manages tenant sessions on the WAHA provider.

Provisioning flow:
1. Derive a tenant-prefixed session name
2. Create the session row and its webhook credential (not committed)
3. Create the provider session with the webhook URL and HMAC key
4. Commit, or roll back everything if the provider call failed

Provider calls that fail with ProviderUnavailable are retried with exponential
backoff. A provider-side name collision rolls back and retries once with a
suffixed name.
"""

import asyncio
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from basecore.settings import Settings, get_settings
from whatsapp_sessions.credentials.store import (
    IssuedCredential,
    WebhookCredentialStore,
    hash_token,
)
from whatsapp_sessions.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    ProviderUnavailable,
    ProvisioningFailed,
    ValidationError,
)
from whatsapp_sessions.persistence.models import SessionStatus, WhatsAppSession
from whatsapp_sessions.persistence.repo import WhatsAppRepository
from whatsapp_sessions.providers.waha.client import WahaSessionClient, webhook_urls
from whatsapp_sessions.service.state_machine import SessionStateMachine, map_provider_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")

# WAHA statuses that need a start before a QR can be fetched
_STOPPED_PROVIDER_STATUSES = {"STOPPED", "FAILED"}


def session_name_for(tenant_id: str) -> str:
    """Tenant-prefixed provider session name: <tenant>_own_<epoch ms>."""
    prefix = _NAME_UNSAFE.sub("-", tenant_id)
    return f"{prefix}_own_{int(time.time() * 1000)}"


@dataclass
class ProvisionedWebhook:
    """Result of generating a webhook for a new session."""

    session_id: UUID
    session_name: str
    webhook_url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": str(self.session_id),
            "session_name": self.session_name,
            "webhook_url": self.webhook_url,
        }


@dataclass
class QRChallenge:
    """QR code issued by connect()."""

    qr_code_image: str
    expires_in_seconds: int
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "qr_code_image": self.qr_code_image,
            "expires_in_seconds": self.expires_in_seconds,
        }


class SessionProvisioner:
    """
    Session lifecycle operations against WAHA and the local store.

    Every public method is one unit of work and commits on success.
    """

    def __init__(
        self,
        db: Session,
        client: WahaSessionClient,
        credential_store: WebhookCredentialStore,
        state_machine: SessionStateMachine,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.client = client
        self.credentials = credential_store
        self.state_machine = state_machine
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        db: Session,
        client: WahaSessionClient | None = None,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "SessionProvisioner":
        """Build a provisioner wired from settings."""
        settings = settings or get_settings()
        client = client or WahaSessionClient(
            api_url=settings.WAHA_BASE_URL,
            api_key=settings.WAHA_API_KEY,
            timeout=settings.WAHA_TIMEOUT_SECONDS,
        )
        return cls(
            db=db,
            client=client,
            credential_store=WebhookCredentialStore(
                db,
                public_base_url=settings.PUBLIC_BASE_URL,
                encryption_key=settings.WHATSAPP_ENCRYPTION_KEY,
            ),
            state_machine=SessionStateMachine(
                db,
                qr_ttl_seconds=settings.QR_TTL_SECONDS,
                default_region=settings.DEFAULT_PHONE_REGION,
            ),
            max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            backoff_seconds=settings.PROVIDER_BACKOFF_SECONDS,
            max_backoff_seconds=settings.PROVIDER_MAX_BACKOFF_SECONDS,
            **kwargs,
        )

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def generate_webhook(self, tenant_id: str, display_name: str | None) -> ProvisionedWebhook:
        """
        Provision a session and return its webhook URL.

        The URL embeds the only copy of the plain token; it is not retrievable later.
        """
        session, _issued, url = await self._provision(tenant_id, display_name)
        return ProvisionedWebhook(
            session_id=session.id,
            session_name=session.provider_session_name,
            webhook_url=url,
        )

    async def provision(self, tenant_id: str, display_name: str | None) -> WhatsAppSession:
        """Provision a session; it starts disconnected."""
        session, _issued, _url = await self._provision(tenant_id, display_name)
        return session

    async def _provision(
        self, tenant_id: str, display_name: str | None
    ) -> tuple[WhatsAppSession, IssuedCredential, str]:
        if not tenant_id:
            raise ValidationError("tenant_id is required")

        base_name = session_name_for(tenant_id)
        names = [base_name, f"{base_name}_{secrets.token_hex(3)}"]

        for index, name in enumerate(names):
            last = index == len(names) - 1
            try:
                issued = self.credentials.generate(tenant_id, display_name, name)
            except IntegrityError as e:
                self.db.rollback()
                if last:
                    raise ConflictError(
                        f"Session name {name} already exists", code="session_name_conflict"
                    ) from e
                continue

            url = self.credentials.build_webhook_url(issued.token)
            metadata = {
                "tenant_id": tenant_id,
                "session_id": str(issued.session_id),
                "display_name": display_name or "",
            }

            try:
                await self._create_on_provider(name, url, issued.hmac_secret, metadata)
            except ConflictError:
                self.db.rollback()
                if last:
                    raise
                logger.warning(
                    f"Provider session name {name} taken, retrying with a suffix",
                    extra={"tenant_id": tenant_id},
                )
                continue
            except ProviderError as e:
                self.db.rollback()
                raise ProvisioningFailed(
                    f"Provider could not create session {name}: {e.message}",
                    details={"session_name": name, "provider_code": e.code},
                ) from e
            except Exception:
                self.db.rollback()
                raise

            self.db.commit()
            session = self.repo.get_session(issued.session_id)

            logger.info(
                f"Provisioned session {name}",
                extra={"tenant_id": tenant_id, "session_id": str(issued.session_id)},
            )
            return session, issued, url

        raise ConflictError("Could not allocate a session name", code="session_name_conflict")

    async def _create_on_provider(
        self,
        name: str,
        webhook_url: str,
        hmac_key: str,
        metadata: dict[str, str],
        start: bool = False,
    ) -> dict[str, Any]:
        attempts = 0

        async def create() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            try:
                return await self.client.create_session(
                    name, webhook_url, hmac_key, metadata=metadata, start=start
                )
            except ConflictError:
                # A timed-out earlier attempt may have created it after all
                if attempts > 1:
                    info = await self.client.get_session(name)
                    if webhook_url in webhook_urls(info):
                        return info or {}
                raise

        return await self._with_retry("create_session", create)

    async def _with_retry(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run a provider call, retrying ProviderUnavailable with exponential backoff."""
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except ProviderUnavailable as e:
                if attempt == self.max_attempts:
                    logger.error(f"WAHA {operation} failed after {attempt} attempts: {e}")
                    raise
                wait = min(delay, self.max_backoff_seconds)
                logger.warning(
                    f"WAHA {operation} unavailable, retrying in {wait}s",
                    extra={"attempt": attempt, "error_code": e.code},
                )
                await self.sleep(wait)
                delay *= 2
        raise ProviderUnavailable(f"WAHA {operation} was not attempted")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, tenant_id: str, session_id: UUID) -> QRChallenge:
        """
        Start pairing and return a QR challenge.

        If the provider lost the session or its webhook no longer points at
        the active credential, the credential is rotated and the provider
        session recreated first.

        Raises:
            NotFoundError: Unknown session
            ConflictError: Already connected
            ProviderUnavailable: Provider unreachable after retries
        """
        session = self._get_owned(tenant_id, session_id)
        self.state_machine.refresh(session)
        if session.status == SessionStatus.CONNECTED.value:
            raise ConflictError("Session is already connected", code="already_connected")

        name = session.provider_session_name
        try:
            info = await self._ensure_provider_session(session)
            provider_status = str((info or {}).get("status") or "STOPPED").upper()
            if provider_status == "WORKING":
                # Paired while the local row missed the event
                self._adopt_provider_status(session, info or {})
                self.db.commit()
                raise ConflictError("Session is already connected", code="already_connected")
            if provider_status in _STOPPED_PROVIDER_STATUSES:
                await self._with_retry("start_session", lambda: self.client.start_session(name))

            qr = await self._with_retry("get_qr_code", lambda: self.client.get_qr_code(name))
            expires_at = self.state_machine.begin_connect(session)
        except Exception:
            self.db.rollback()
            raise

        self.db.commit()
        logger.info(
            f"Issued QR challenge for {name}",
            extra={"tenant_id": tenant_id, "session_id": str(session_id)},
        )
        return QRChallenge(
            qr_code_image=qr,
            expires_in_seconds=self.state_machine.qr_ttl_seconds,
            expires_at=expires_at,
        )

    async def _ensure_provider_session(self, session: WhatsAppSession) -> dict[str, Any] | None:
        """Make sure the provider has the session, wired to the active credential."""
        name = session.provider_session_name
        info = await self._with_retry("get_session", lambda: self.client.get_session(name))
        if info is not None and self._webhook_matches(session, info):
            return info

        logger.warning(
            f"WAHA session {name} missing or not wired to its webhook, recreating",
            extra={"tenant_id": session.tenant_id, "session_id": str(session.id)},
        )
        issued = self.credentials.regenerate(session.id)
        url = self.credentials.build_webhook_url(issued.token)
        if info is not None:
            await self._with_retry("delete_session", lambda: self.client.delete_session(name))
        return await self._create_on_provider(
            name,
            url,
            issued.hmac_secret,
            metadata={"tenant_id": session.tenant_id, "session_id": str(session.id)},
            start=True,
        )

    def _webhook_matches(self, session: WhatsAppSession, info: dict[str, Any]) -> bool:
        credential = self.repo.get_active_credential(session.id)
        if not credential:
            return False
        prefix = self.credentials.build_webhook_url("")
        for url in webhook_urls(info):
            if url.startswith(prefix) and hash_token(url[len(prefix):]) == credential.token_hash:
                return True
        return False

    async def disconnect(self, tenant_id: str, session_id: UUID) -> WhatsAppSession:
        """Stop the provider session and mark it disconnected."""
        session = self._get_owned(tenant_id, session_id)
        name = session.provider_session_name
        try:
            await self._with_retry("stop_session", lambda: self.client.stop_session(name))
        except NotFoundError:
            logger.info(f"WAHA session {name} not found on stop, marking disconnected")
        except Exception:
            self.db.rollback()
            raise

        self.state_machine.mark_disconnected(session)
        self.db.commit()
        return session

    async def restart(self, tenant_id: str, session_id: UUID) -> WhatsAppSession:
        """Restart the provider session; status follows from provider events."""
        session = self._get_owned(tenant_id, session_id)
        name = session.provider_session_name
        await self._with_retry("restart_session", lambda: self.client.restart_session(name))
        self.state_machine.refresh(session)
        self.db.commit()
        return session

    async def terminate(self, tenant_id: str, session_id: UUID, confirm: str | None) -> None:
        """
        Delete a session everywhere.

        The caller must echo the provider session name as confirmation.
        Afterwards the webhook token resolves to nothing and the session's
        conversations and messages are gone.

        Raises:
            NotFoundError: Unknown session
            ConflictError: Session already terminated
            ValidationError: Missing or wrong confirmation
        """
        session = self.repo.get_session_for_tenant(tenant_id, session_id)
        if not session:
            if self.repo.has_revoked_credentials(session_id, tenant_id):
                raise ConflictError(
                    f"Session {session_id} was already terminated", code="already_terminated"
                )
            raise NotFoundError(f"Session {session_id} not found")

        name = session.provider_session_name
        if confirm != name:
            raise ValidationError(
                "Termination must be confirmed with the session name",
                code="confirmation_required",
            )

        await self._with_retry("delete_session", lambda: self.client.delete_session(name))

        try:
            self.credentials.revoke(session.id)
            messages = self.repo.delete_messages_for_session(session.id)
            conversations = self.repo.delete_conversations_for_session(session.id)
            self.repo.delete_pending_acks_for_session(session.id)
            self.repo.delete_session(session)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Terminated session {name}",
            extra={
                "tenant_id": tenant_id,
                "session_id": str(session_id),
                "deleted_messages": messages,
                "deleted_conversations": conversations,
            },
        )

    async def rotate_webhook(self, tenant_id: str, session_id: UUID) -> ProvisionedWebhook:
        """
        Replace the webhook credential.

        WAHA cannot change a session's webhook in place, so the provider
        session is recreated and the phone has to pair again.
        """
        session = self._get_owned(tenant_id, session_id)
        name = session.provider_session_name
        try:
            issued = self.credentials.regenerate(session.id)
            url = self.credentials.build_webhook_url(issued.token)
            await self._with_retry("delete_session", lambda: self.client.delete_session(name))
            await self._create_on_provider(
                name,
                url,
                issued.hmac_secret,
                metadata={"tenant_id": tenant_id, "session_id": str(session.id)},
            )
            self.state_machine.mark_disconnected(session)
        except Exception:
            self.db.rollback()
            raise

        self.db.commit()
        logger.info(
            f"Rotated webhook for {name}",
            extra={"tenant_id": tenant_id, "session_id": str(session_id)},
        )
        return ProvisionedWebhook(session_id=session.id, session_name=name, webhook_url=url)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, tenant_id: str, session_id: UUID) -> WhatsAppSession:
        """Get a session with QR expiry applied."""
        session = self._get_owned(tenant_id, session_id)
        self.state_machine.refresh(session)
        self.db.commit()
        return session

    def list_sessions(self, tenant_id: str) -> list[WhatsAppSession]:
        """List a tenant's sessions with QR expiry applied."""
        sessions = self.repo.list_sessions(tenant_id)
        for session in sessions:
            self.state_machine.refresh(session)
        self.db.commit()
        return sessions

    # =========================================================================
    # Provider sync
    # =========================================================================

    async def sync_sessions(self, tenant_id: str | None = None) -> dict[str, int]:
        """
        Reconcile local session status with what WAHA reports.

        Covers status changes whose webhooks never arrived. Sessions the
        provider does not know and statuses it reports that have no mapping
        are left alone.

        Args:
            tenant_id: Only sync this tenant's sessions (all tenants if None)

        Returns:
            Counts: synced, changed, missing
        """
        provider_sessions = await self._with_retry("list_sessions", self.client.list_sessions)
        by_name = {info.get("name"): info for info in provider_sessions}

        sessions = self.repo.list_sessions(tenant_id) if tenant_id else self.repo.list_all_sessions()
        counts = {"synced": 0, "changed": 0, "missing": 0}
        try:
            for session in sessions:
                info = by_name.get(session.provider_session_name)
                if info is None:
                    counts["missing"] += 1
                    continue
                before = session.status
                if not self._adopt_provider_status(session, info):
                    continue
                counts["synced"] += 1
                if session.status != before:
                    counts["changed"] += 1
        except Exception:
            self.db.rollback()
            raise

        self.db.commit()
        logger.info("Synced session status with WAHA", extra={"tenant_id": tenant_id, **counts})
        return counts

    def _adopt_provider_status(self, session: WhatsAppSession, info: dict[str, Any]) -> bool:
        """Apply a provider-reported session status as of now."""
        value = str(info.get("status") or "")
        try:
            status = map_provider_status(value)
        except ValidationError:
            logger.warning(
                f"Unknown WAHA status {value!r} for {session.provider_session_name}",
                extra={"session_id": str(session.id)},
            )
            return False
        me = info.get("me") or {}
        return self.state_machine.apply_provider_status(
            session,
            status,
            event_at=self.state_machine.clock(),
            me_id=me.get("id"),
            push_name=me.get("pushName"),
            detail=value,
        )

    async def check_provider(self) -> bool:
        return await self.client.ping()

    def _get_owned(self, tenant_id: str, session_id: UUID) -> WhatsAppSession:
        session = self.repo.get_session_for_tenant(tenant_id, session_id)
        if not session:
            raise NotFoundError(f"Session {session_id} not found")
        return session
