"""
Evolution WhatsApp Schemas

Pydantic models for API request/response validation.
"""

from .evolution_schemas import (
    # Request schemas
    StartSessionRequest,
    CreateInstanceRequest,
    RegisterInstanceRequest,
    SendMessageRequest,
    # Response schemas
    QrCodeInfo,
    SessionResponse,
    CurrentSessionResponse,
    SessionsListResponse,
    WebhookSyncResponse,
    SendMessageResponse,
    ConversationMessage,
    ConversationResponse,
    UpdatesCursor,
    UpdatesResponse,
    ChatLastMessage,
    ChatItem,
    ChatsResponse,
    WebhookReceivedResponse,
)

__all__ = [
    "StartSessionRequest",
    "CreateInstanceRequest",
    "RegisterInstanceRequest",
    "SendMessageRequest",
    "QrCodeInfo",
    "SessionResponse",
    "CurrentSessionResponse",
    "SessionsListResponse",
    "WebhookSyncResponse",
    "SendMessageResponse",
    "ConversationMessage",
    "ConversationResponse",
    "UpdatesCursor",
    "UpdatesResponse",
    "ChatLastMessage",
    "ChatItem",
    "ChatsResponse",
    "WebhookReceivedResponse",
]
