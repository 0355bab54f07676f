"""
WhatsApp Session Service Layer

Provisioning, webhook ingestion, event dispatch and conversation reads.
"""

from whatsapp_sessions.service.dispatcher import EventDispatcher, IngestionProcessor
from whatsapp_sessions.service.gateway import AcceptResult, IngestionGateway
from whatsapp_sessions.service.normalizer import (
    ConversationUpsert,
    MessageNormalizer,
    NormalizedMessage,
)
from whatsapp_sessions.service.outbound import OutboundSender
from whatsapp_sessions.service.provisioner import (
    ProvisionedWebhook,
    QRChallenge,
    SessionProvisioner,
)
from whatsapp_sessions.service.read_api import ConversationReader, MessagePage
from whatsapp_sessions.service.state_machine import SessionStateMachine

__all__ = [
    "AcceptResult",
    "ConversationReader",
    "ConversationUpsert",
    "EventDispatcher",
    "IngestionGateway",
    "IngestionProcessor",
    "MessageNormalizer",
    "MessagePage",
    "NormalizedMessage",
    "OutboundSender",
    "ProvisionedWebhook",
    "QRChallenge",
    "SessionProvisioner",
    "SessionStateMachine",
]
