"""
Evolution Instance API Endpoints
Connect, inspect and manage the tenant's WhatsApp instances.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.db.session import get_db
from app.modules.evolution.api.dependencies import get_current_user_id, to_http_exception
from app.modules.evolution.services.session_service import EvolutionSessionService
from app.modules.evolution.schemas.evolution_schemas import (
    # Request schemas
    StartSessionRequest,
    CreateInstanceRequest,
    RegisterInstanceRequest,
    # Response schemas
    SessionResponse,
    CurrentSessionResponse,
    SessionsListResponse,
    WebhookSyncResponse,
)

router = APIRouter()
logger = logging.getLogger("evolution_session_api")


# ============================================
# MANAGED INSTANCES
# ============================================

@router.get("", response_model=SessionsListResponse, summary="List the tenant's instances")
async def list_instances(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Live status of every instance; unreachable ones are reported as disconnected/unknown."""
    service = EvolutionSessionService(db)
    try:
        sessions = await service.list_managed_instances(user_id)
    except Exception as e:
        raise to_http_exception(e)
    return SessionsListResponse(instances=[SessionResponse(**s) for s in sessions], total=len(sessions))


@router.post("", response_model=SessionResponse, summary="Create a managed instance")
async def create_instance(
    request: CreateInstanceRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Create an instance on the provider with the webhook subscription embedded.

    The first free slot webhook is used, falling back to BACKEND_PUBLIC_URL.
    """
    service = EvolutionSessionService(db)
    try:
        result = await service.create_managed_instance(user_id, request.instance_name)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.post("/register", response_model=SessionResponse, summary="Adopt an existing provider instance")
async def register_instance(
    request: RegisterInstanceRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    try:
        result = await service.register_existing_instance(user_id, request.instance_name, request.token)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


# ============================================
# SESSION LIFECYCLE
# ============================================

@router.get("/current", response_model=CurrentSessionResponse, summary="Current session")
async def get_current_session(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """The tenant's most recent instance reconciled with the provider; session is null when none exists."""
    service = EvolutionSessionService(db)
    try:
        session = await service.get_current_session(user_id)
    except Exception as e:
        raise to_http_exception(e)
    return CurrentSessionResponse(session=SessionResponse(**session) if session else None)


@router.post("/start", response_model=SessionResponse, summary="Start a session (QR or pairing code)")
async def start_session(
    request: Optional[StartSessionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    phone_number = request.phone_number if request else None
    try:
        result = await service.start_session(user_id, phone_number)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.post("/{instance_id}/qr", response_model=SessionResponse, summary="Refresh the QR code")
async def refresh_qr(
    instance_id: str,
    request: Optional[StartSessionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    phone_number = request.phone_number if request else None
    try:
        result = await service.refresh_qr(user_id, instance_id, phone_number)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.get("/{instance_id}/status", response_model=SessionResponse, summary="Instance status")
async def get_status(
    instance_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    try:
        result = await service.get_status(user_id, instance_id)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.post("/{instance_id}/disconnect", response_model=SessionResponse, summary="Logout the instance")
async def disconnect(
    instance_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    try:
        result = await service.disconnect(user_id, instance_id)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.delete("/{instance_id}", response_model=SessionResponse, summary="Remove the instance")
async def remove_instance(
    instance_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Logout and delete on the provider (best-effort), then delete the local record."""
    service = EvolutionSessionService(db)
    try:
        result = await service.remove_instance(user_id, instance_id)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.post("/{instance_id}/detach", response_model=SessionResponse, summary="Forget the instance locally")
async def detach_instance(
    instance_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    try:
        result = await service.detach_instance(user_id, instance_id)
    except Exception as e:
        raise to_http_exception(e)
    return SessionResponse(**result)


@router.post("/{instance_id}/sync-webhook", response_model=WebhookSyncResponse, summary="Push the webhook subscription")
async def sync_webhook(
    instance_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    service = EvolutionSessionService(db)
    try:
        result = await service.sync_webhook(user_id, instance_id)
    except Exception as e:
        raise to_http_exception(e)
    logger.info(f"✅ Webhook synced for {instance_id} -> {result['webhook_url']}")
    return WebhookSyncResponse(**result)
