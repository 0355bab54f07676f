"""
WAHA Session Client

Manages sessions on the WAHA provider (create, start, stop, restart, delete, QR)
and sends text messages from them.

All calls authenticate with the platform-level API key. Transport failures and
5xx answers surface as ProviderUnavailable so callers can retry them.
"""

import base64
import logging
from typing import Any

import httpx

from whatsapp_sessions.contracts.event_types import SUBSCRIBED_EVENTS
from whatsapp_sessions.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)


class WahaSessionClient:
    """
    Async client for the WAHA sessions API.

    One client serves every tenant; sessions are addressed by provider session name.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_url: Base URL of the WAHA API
            api_key: Platform API key sent as X-Api-Key
            timeout: HTTP request timeout
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json", "Accept": "application/json"}
            if self.api_key:
                headers["X-Api-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                headers=headers,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make an authenticated API request and map failures to the error taxonomy."""
        client = await self._get_client()

        try:
            response = await client.request(method, endpoint, json=json_data, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"WAHA request timed out: {method} {endpoint}")
            raise ProviderUnavailable(f"Provider timeout: {e}", code="provider_timeout") from e
        except httpx.RequestError as e:
            logger.warning(f"WAHA request failed: {method} {endpoint}: {e}")
            raise ProviderUnavailable(f"Provider unreachable: {e}") from e

        if response.status_code < 400:
            return response

        detail = _error_text(response)
        if response.status_code >= 500:
            raise ProviderUnavailable(
                f"Provider error {response.status_code}: {detail}",
                details={"status_code": response.status_code},
            )
        if response.status_code == 409 or "already exists" in detail.lower():
            raise ConflictError(
                f"Provider conflict: {detail}",
                code="session_name_conflict",
                details={"status_code": response.status_code},
            )
        if response.status_code == 404:
            raise NotFoundError(f"Provider resource not found: {endpoint}", code="provider_not_found")
        raise ProviderError(
            f"Provider rejected request {response.status_code}: {detail}",
            details={"status_code": response.status_code},
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        session_name: str,
        webhook_url: str,
        hmac_key: str,
        metadata: dict[str, str] | None = None,
        start: bool = False,
    ) -> dict[str, Any]:
        """
        Create a session with its webhook configuration.

        WAHA cannot attach a webhook to an existing session, so the URL, the
        event subscription and the HMAC key are all sent here.

        Args:
            session_name: Globally unique provider session name
            webhook_url: Public URL events are posted to
            hmac_key: Shared secret WAHA signs bodies with
            metadata: Free-form labels stored on the session (tenant id, ...)
            start: Start the session immediately

        Returns:
            Session information as returned by WAHA

        Raises:
            ConflictError: The name is already taken
            ProviderUnavailable: Provider unreachable or failing
        """
        payload = {
            "name": session_name,
            "start": start,
            "config": {
                "metadata": metadata or {},
                "webhooks": [
                    {
                        "url": webhook_url,
                        "events": list(SUBSCRIBED_EVENTS),
                        "hmac": {"key": hmac_key},
                        "retries": {"policy": "exponential", "delaySeconds": 2, "attempts": 10},
                    }
                ],
            },
        }

        response = await self._make_request("POST", "/api/sessions", payload)
        logger.info(f"Created WAHA session {session_name}")
        return _json(response)

    async def get_session(self, session_name: str) -> dict[str, Any] | None:
        """
        Get session information.

        Returns:
            Session information, or None if the provider does not know the session
        """
        try:
            response = await self._make_request("GET", f"/api/sessions/{session_name}")
        except NotFoundError:
            return None
        return _json(response)

    async def list_sessions(self) -> list[dict[str, Any]]:
        """List every session on the provider, including stopped ones."""
        response = await self._make_request("GET", "/api/sessions", params={"all": "true"})
        data = _json(response)
        return data if isinstance(data, list) else []

    async def start_session(self, session_name: str) -> dict[str, Any]:
        """Start a session."""
        response = await self._make_request("POST", f"/api/sessions/{session_name}/start")
        return _json(response)

    async def stop_session(self, session_name: str) -> dict[str, Any]:
        """Stop a session, keeping its provider-side data."""
        response = await self._make_request("POST", f"/api/sessions/{session_name}/stop")
        return _json(response)

    async def restart_session(self, session_name: str) -> dict[str, Any]:
        """Restart a session."""
        response = await self._make_request("POST", f"/api/sessions/{session_name}/restart")
        return _json(response)

    async def delete_session(self, session_name: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted, False if the provider did not know it
        """
        try:
            await self._make_request("DELETE", f"/api/sessions/{session_name}")
        except NotFoundError:
            logger.info(f"WAHA session {session_name} already absent")
            return False
        logger.info(f"Deleted WAHA session {session_name}")
        return True

    async def get_qr_code(self, session_name: str) -> str:
        """
        Fetch a fresh QR challenge.

        Returns:
            QR code as a data URL (data:image/png;base64,...)
        """
        response = await self._make_request(
            "GET",
            f"/api/{session_name}/auth/qr",
            params={"format": "image"},
        )

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("image/"):
            mimetype = content_type.split(";")[0]
            data = base64.b64encode(response.content).decode("ascii")
        else:
            body = _json(response)
            mimetype = body.get("mimetype") or "image/png"
            data = body.get("data") or ""

        if not data:
            raise ProviderError("Provider returned an empty QR code", code="qr_unavailable")

        return f"data:{mimetype};base64,{data}"

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_text(self, session_name: str, chat_id: str, text: str) -> dict[str, Any]:
        """
        Send a text message.

        Not idempotent on the provider side; callers should not blindly retry.

        Args:
            session_name: Provider session to send from
            chat_id: Recipient chat id (<digits>@c.us)
            text: Message body

        Returns:
            The sent message as returned by WAHA
        """
        payload = {"session": session_name, "chatId": chat_id, "text": text}
        response = await self._make_request("POST", "/api/sendText", payload)
        return _json(response)

    async def ping(self) -> bool:
        """Return True if the provider answers the sessions endpoint."""
        try:
            await self._make_request("GET", "/api/sessions")
            return True
        except ProviderError as e:
            logger.warning(f"WAHA health check failed: {e}")
            return False


def webhook_urls(session_info: dict[str, Any] | None) -> list[str]:
    """Webhook URLs configured on a WAHA session."""
    if not session_info:
        return []
    config = session_info.get("config") or {}
    return [hook.get("url", "") for hook in config.get("webhooks") or []]


def _json(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {}


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def sent_message_id(message: dict[str, Any]) -> str | None:
    """Provider message id of a sent message; WEBJS nests it under _serialized."""
    message_id = message.get("id")
    if isinstance(message_id, dict):
        message_id = message_id.get("_serialized") or message_id.get("id")
    return str(message_id) if message_id else None
