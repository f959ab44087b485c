"""
Evolution WhatsApp - Pydantic Schemas
Request and Response models for API endpoints.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from datetime import datetime


# ============================================
# REQUEST MODELS
# ============================================

class StartSessionRequest(BaseModel):
    """Request to start a session / refresh a QR (optional pairing number)"""
    phone_number: Optional[str] = Field(
        default=None,
        description="Number to pair by code instead of QR scan"
    )


class CreateInstanceRequest(BaseModel):
    """Request to create a managed instance"""
    instance_name: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Display name; generated when omitted"
    )


class RegisterInstanceRequest(BaseModel):
    """Request to adopt an instance that already exists on the provider"""
    instance_name: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1, description="Instance token proving ownership")


class SendMessageRequest(BaseModel):
    """Request to send a WhatsApp message"""
    phone: str = Field(..., description="Recipient number, any formatting")
    text: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None
    client_message_id: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Idempotency token; the same value resolves to the same message"
    )
    instance_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "phone": "+55 11 99999-9999",
                "text": "Sua consulta está confirmada para amanhã às 10h.",
                "client_message_id": "appt-123-confirmation"
            }
        }

    @field_validator("text", "caption", "media_url", "client_message_id", "instance_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v


# ============================================
# RESPONSE MODELS
# ============================================

class QrCodeInfo(BaseModel):
    """QR / pairing artifacts"""
    base64: Optional[str] = None
    svg: Optional[str] = None
    code: Optional[str] = None
    status: Optional[str] = None
    pairingCode: Optional[str] = None
    count: Optional[int] = None


class SessionResponse(BaseModel):
    """State of one instance"""
    instance_id: str
    provider_instance_id: Optional[str] = None
    status: str  # disconnected | pending | connected
    qr_code: Optional[QrCodeInfo] = None
    number: Optional[str] = None
    name: Optional[str] = None
    profile_pic_url: Optional[str] = None
    provider_status: Optional[str] = None
    message: Optional[str] = None
    pairing_code: Optional[str] = None
    slot_id: Optional[str] = None


class CurrentSessionResponse(BaseModel):
    """Current session; session is None for a tenant without instances"""
    session: Optional[SessionResponse] = None


class SessionsListResponse(BaseModel):
    instances: List[SessionResponse]
    total: int


class WebhookSyncResponse(BaseModel):
    instance_id: str
    provider_instance_id: Optional[str] = None
    webhook_url: str


class SendMessageResponse(BaseModel):
    """Outcome of a send; failed sends are reported, not raised"""
    id: str
    status: str  # sent | failed


class ConversationMessage(BaseModel):
    """Single message in a conversation"""
    id: str
    wamid: Optional[str] = None
    from_me: bool
    direction: str
    conversation: Optional[str] = None
    caption: Optional[str] = None
    media_url: Optional[str] = None
    message_type: Optional[str] = None
    delivery_status: Optional[str] = None
    timestamp: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    push_name: Optional[str] = None
    phone_raw: Optional[str] = None


class ConversationResponse(BaseModel):
    data: List[ConversationMessage]
    total: int
    page: int
    limit: int


class UpdatesCursor(BaseModel):
    last_timestamp: datetime
    last_updated_at: datetime


class UpdatesResponse(BaseModel):
    data: List[ConversationMessage]
    cursor: UpdatesCursor


class ChatLastMessage(BaseModel):
    text: str
    timestamp: datetime
    from_me: bool = False


class ChatItem(BaseModel):
    """One contact in the chat list"""
    id: str
    name: Optional[str] = None
    contact: str
    remote_jid: str
    avatar_url: Optional[str] = None
    last_message: Optional[ChatLastMessage] = None


class ChatsResponse(BaseModel):
    data: List[ChatItem]
    total: int


class WebhookReceivedResponse(BaseModel):
    """Immediate answer to the provider"""
    status: str = "received"


class ErrorDetail(BaseModel):
    detail: str
    extra: Optional[Dict[str, Any]] = None
