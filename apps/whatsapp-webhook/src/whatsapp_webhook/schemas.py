"""
API Schemas

Request and response models for the session management and conversation read API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProvisionRequest(BaseModel):
    display_name: str | None = Field(None, max_length=255, description="Human label for the session")


class ProvisionResponse(BaseModel):
    session_id: UUID
    session_name: str = Field(..., description="Provider session name")
    webhook_url: str = Field(..., description="Webhook URL; shown only once")


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_session_name: str
    display_name: str | None = None
    status: str
    phone_number: str | None = Field(None, description="E.164 number bound on pairing")
    push_name: str | None = None
    qr_expires_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime


class QRResponse(BaseModel):
    qr_code_image: str = Field(..., description="QR code as a data URL")
    expires_in_seconds: int


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: UUID
    contact_phone: str
    last_message_at: datetime | None = None
    unread_count: int
    is_archived: bool
    version: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    provider_message_id: str
    from_phone: str
    to_phone: str | None = None
    content: str | None = None
    message_type: str
    is_inbound: bool
    status: str
    timestamp: datetime
    media_url: str | None = None
    media_mime_type: str | None = None
    revision: int


class MessagePageResponse(BaseModel):
    messages: list[MessageResponse]
    cursor: int = Field(..., description="Pass as `since` to get later changes")


class ReadRequest(BaseModel):
    expected_unread: int | None = Field(
        None, ge=0, description="Only reset if the unread count still equals this"
    )


class ReadResponse(BaseModel):
    conversation_id: UUID
    unread_count: int
    version: int


class SyncResponse(BaseModel):
    synced: int = Field(..., description="Sessions updated from the provider status")
    changed: int = Field(..., description="Sessions whose status changed")
    missing: int = Field(..., description="Sessions the provider does not know")


class SendTextRequest(BaseModel):
    to: str = Field(..., min_length=1, description="Recipient phone in any format")
    text: str = Field(..., min_length=1, max_length=4096)


class SentMessageResponse(BaseModel):
    message_id: UUID
    conversation_id: UUID
    provider_message_id: str
    status: str
