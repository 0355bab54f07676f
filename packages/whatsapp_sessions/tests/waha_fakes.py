"""
Test doubles for the WAHA provider and webhook bodies.
"""

import json
import re
from datetime import datetime

import httpx

from whatsapp_sessions.providers.waha import compute_signature

PUBLIC_BASE_URL = "https://hooks.example.com"


class FakeWaha:
    """In-memory WAHA sessions API served through httpx.MockTransport."""

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.unavailable = 0  # answer this many requests with 503
        self.taken_names: set[str] = set()  # names some other platform already owns
        self.sent: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if self.unavailable:
            self.unavailable -= 1
            return httpx.Response(503, json={"message": "Service Unavailable"})

        if path == "/api/sessions":
            if request.method == "GET":
                return httpx.Response(200, json=list(self.sessions.values()))
            body = json.loads(request.content)
            name = body["name"]
            if name in self.sessions or name in self.taken_names:
                return httpx.Response(422, json={"message": f"Session '{name}' already exists"})
            self.sessions[name] = {
                "name": name,
                "status": "STARTING" if body.get("start") else "STOPPED",
                "config": body["config"],
            }
            return httpx.Response(201, json=self.sessions[name])

        if path == "/api/sendText":
            body = json.loads(request.content)
            if body["session"] not in self.sessions:
                return httpx.Response(404, json={"message": "Session not found"})
            self.sent.append(body)
            message_id = f"true_{body['chatId']}_SENT{len(self.sent)}"
            return httpx.Response(201, json={"id": message_id, "body": body["text"], "fromMe": True})

        match = re.fullmatch(r"/api/sessions/([^/]+)(?:/(start|stop|restart))?", path)
        if match:
            name, action = match.groups()
            if name not in self.sessions:
                return httpx.Response(404, json={"message": "Session not found"})
            if request.method == "DELETE":
                del self.sessions[name]
                return httpx.Response(200, json={})
            if action == "start":
                self.sessions[name]["status"] = "SCAN_QR_CODE"
            elif action == "stop":
                self.sessions[name]["status"] = "STOPPED"
            elif action == "restart":
                self.sessions[name]["status"] = "STARTING"
            return httpx.Response(200, json=self.sessions[name])

        match = re.fullmatch(r"/api/([^/]+)/auth/qr", path)
        if match:
            if match.group(1) not in self.sessions:
                return httpx.Response(404, json={"message": "Session not found"})
            return httpx.Response(200, content=b"\x89PNG-qr", headers={"content-type": "image/png"})

        return httpx.Response(404, json={"message": "Not found"})

    def webhook_url(self, name: str) -> str:
        return self.sessions[name]["config"]["webhooks"][0]["url"]

    def hmac_key(self, name: str) -> str:
        return self.sessions[name]["config"]["webhooks"][0]["hmac"]["key"]

    def pair(self, name: str, phone_jid: str = "5511888887777@c.us") -> None:
        """Mark a session paired, as if the QR was scanned."""
        self.sessions[name]["status"] = "WORKING"
        self.sessions[name]["me"] = {"id": phone_jid, "pushName": "Store"}


class Clock:
    """Settable clock for TTL tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def no_sleep(_seconds: float) -> None:
    return None


def make_message_event(
    session_name: str,
    message_id: str = "false_5511999998888@c.us_3EB0A1",
    sender: str = "5511999998888@c.us",
    body: str = "Hello",
    timestamp: int = 1704110400,
    from_me: bool = False,
    event: str = "message",
    **payload_extra,
) -> dict:
    """WAHA message webhook body."""
    payload = {
        "id": message_id,
        "timestamp": timestamp,
        "from": sender,
        "to": "5511888887777@c.us",
        "fromMe": from_me,
        "body": body,
        "hasMedia": False,
        **payload_extra,
    }
    if from_me:
        payload["from"], payload["to"] = payload["to"], sender
    return {
        "id": f"evt_{message_id}_{event}",
        "timestamp": timestamp * 1000,
        "event": event,
        "session": session_name,
        "payload": payload,
    }


def sign(body: bytes, secret: str) -> str:
    return compute_signature(body, secret)
