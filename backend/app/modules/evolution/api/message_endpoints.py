"""
Evolution Message API Endpoints
Send messages, read conversations and chats, and stream live updates.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.db.session import get_db
from app.shared.utils.phone_utils import mask_phone
from app.modules.evolution.api.dependencies import get_current_user_id, to_http_exception
from app.modules.evolution.services.message_events import message_event_bus
from app.modules.evolution.services.message_service import EvolutionMessageService
from app.modules.evolution.schemas.evolution_schemas import (
    SendMessageRequest,
    SendMessageResponse,
    ConversationMessage,
    ConversationResponse,
    UpdatesResponse,
    ChatItem,
    ChatsResponse,
)

router = APIRouter()
logger = logging.getLogger("evolution_message_api")


# ============================================
# OUTBOUND
# ============================================

@router.post("/send", response_model=SendMessageResponse, summary="Send a WhatsApp message")
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Send a text or media message.

    - 429 after 30 sends per minute (nothing stored)
    - 400 for an invalid phone or rejected media
    - A provider failure is not an HTTP error: the answer is {"status": "failed"}
    - Repeating a client_message_id returns the same message id
    """
    service = EvolutionMessageService(db)
    try:
        result = await service.send_message(
            user_id,
            request.phone,
            text=request.text,
            media_url=request.media_url,
            caption=request.caption,
            client_message_id=request.client_message_id,
            instance_id=request.instance_id
        )
    except Exception as e:
        raise to_http_exception(e)

    logger.info(f"Send to {mask_phone(request.phone)} finished with status={result['status']}")
    return SendMessageResponse(**result)


# ============================================
# READS
# ============================================

@router.get("/conversation", response_model=ConversationResponse, summary="Messages with one contact")
async def get_conversation(
    phone: str = Query(..., description="Contact number, any formatting"),
    direction: Optional[str] = Query(default=None, description="inbound or outbound"),
    limit: Optional[int] = Query(default=None, ge=1),
    instance_id: Optional[str] = Query(default=None),
    remote_jid: Optional[str] = Query(default=None),
    source: Optional[str] = Query(default=None, description="local or provider"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionMessageService(db)
    try:
        result = await service.list_conversation(
            user_id, phone,
            direction=direction,
            limit=limit,
            instance_id=instance_id,
            remote_jid=remote_jid,
            source=source
        )
    except Exception as e:
        raise to_http_exception(e)

    return ConversationResponse(
        data=[ConversationMessage(**m) for m in result["data"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"]
    )


@router.get("/updates", response_model=UpdatesResponse, summary="Messages changed after a cursor")
async def get_updates(
    phone: str = Query(...),
    after_timestamp: Optional[str] = Query(default=None, description="Epoch seconds/ms or ISO-8601"),
    after_updated_at: Optional[str] = Query(default=None, description="Epoch seconds/ms or ISO-8601"),
    limit: Optional[int] = Query(default=None, ge=1),
    source: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Incremental feed for polling clients; feed the returned cursor back on the next call."""
    service = EvolutionMessageService(db)
    try:
        result = await service.list_updates(
            user_id, phone,
            after_timestamp=after_timestamp,
            after_updated_at=after_updated_at,
            limit=limit,
            source=source
        )
    except Exception as e:
        raise to_http_exception(e)
    return UpdatesResponse(**result)


@router.get("/chats", response_model=ChatsResponse, summary="Chat list")
async def get_chats(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    instance_id: Optional[str] = Query(default=None),
    source: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """One row per contact, most recent first."""
    service = EvolutionMessageService(db)
    try:
        chats = await service.list_chats(user_id, limit=limit, instance_id=instance_id, source=source)
    except Exception as e:
        raise to_http_exception(e)
    return ChatsResponse(data=[ChatItem(**c) for c in chats], total=len(chats))


# ============================================
# LIVE UPDATES (SSE)
# ============================================

async def _event_stream(user_id: str):
    async for event in message_event_bus.stream(user_id):
        yield f"event: {event.event}\ndata: {json.dumps(event.to_dict())}\n\n"


@router.get("/stream", summary="Live message events (Server-Sent Events)")
async def stream_events(user_id: str = Depends(get_current_user_id)):
    """
    Push a notification whenever one of the tenant's messages changes.

    Events carry only identifiers; clients fetch content through /updates.
    """
    return StreamingResponse(
        _event_stream(user_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
