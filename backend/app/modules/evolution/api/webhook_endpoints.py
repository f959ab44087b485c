"""
Evolution Webhook API Endpoints
Receives provider events and hands them to the background processor.

The provider retries aggressively on slow answers, so the endpoint only
authenticates, rate-limits and schedules; all persistence happens in
process_webhook_event with its own database session.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from app.shared.core.config import settings
from app.shared.core.constants import WEBHOOK_RATE_LIMIT, WEBHOOK_RATE_WINDOW_SECONDS
from app.shared.utils.exceptions import RateLimitExceededError
from app.shared.utils.rate_limiter import RateLimiter
from app.modules.evolution.constants import WebhookEventType
from app.modules.evolution.schemas.evolution_schemas import WebhookReceivedResponse
from app.modules.evolution.services.webhook_service import process_webhook_event

router = APIRouter()
logger = logging.getLogger("evolution_webhook_api")

webhook_rate_limiter = RateLimiter(limit=WEBHOOK_RATE_LIMIT, window_seconds=WEBHOOK_RATE_WINDOW_SECONDS)


# ============================================
# WEBHOOK SECURITY
# ============================================

def _get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else ""


def _provided_token(request: Request) -> Optional[str]:
    """Secret from x-evolution-webhook-token, else from Authorization (Bearer optional)."""
    token = request.headers.get("x-evolution-webhook-token")
    if token:
        return token.strip()

    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    if authorization.startswith("Bearer "):
        authorization = authorization[7:]
    return authorization.strip()


def verify_evolution_webhook(request: Request) -> Optional[str]:
    """
    Check the shared secret in constant time.

    Returns the token used as the ingress rate-limit key, or None when the
    request must be rejected.
    """
    secret = settings.EVOLUTION_WEBHOOK_TOKEN
    if not secret:
        logger.warning("EVOLUTION_WEBHOOK_TOKEN not configured - webhook authentication disabled")
        return _get_client_ip(request) or "anonymous"

    provided = _provided_token(request)
    if not provided:
        logger.warning(f"Webhook rejected: missing token from {_get_client_ip(request)}")
        return None

    if not secrets.compare_digest(provided, secret):
        logger.warning(f"Webhook rejected: invalid token from {_get_client_ip(request)}")
        return None

    return provided


async def _receive(request: Request, background_tasks: BackgroundTasks, forced_event: Optional[str] = None) -> WebhookReceivedResponse:
    rate_key = verify_evolution_webhook(request)
    if rate_key is None:
        raise HTTPException(status_code=401, detail="Unauthorized webhook request")

    try:
        webhook_rate_limiter.hit(rate_key)
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=e.message)

    try:
        payload = await request.json()
    except Exception as e:
        logger.error(f"Invalid webhook JSON payload: {str(e)}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if not isinstance(payload, dict):
        payload = {"body": {"data": payload}}

    logger.info(f"📬 Evolution webhook received: forced_event={forced_event or '-'}")
    background_tasks.add_task(process_webhook_event, payload, forced_event)
    return WebhookReceivedResponse()


# ============================================
# ROUTES
# ============================================

@router.post("", response_model=WebhookReceivedResponse, summary="Evolution webhook handler")
async def evolution_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Handle any Evolution event; the kind is read from the envelope.

    Always answers {"status": "received"} once authenticated; processing
    errors are logged, never returned to the provider.
    """
    return await _receive(request, background_tasks)


@router.post("/connection-update", response_model=WebhookReceivedResponse, summary="Connection state events")
async def connection_update_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.CONNECTION_UPDATE.value)


@router.post("/messages-upsert", response_model=WebhookReceivedResponse, summary="Inbound message events")
async def messages_upsert_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.MESSAGES_UPSERT.value)


@router.post("/messages-update", response_model=WebhookReceivedResponse, summary="Delivery status events")
async def messages_update_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.MESSAGES_UPDATE.value)


@router.post("/contacts-update", response_model=WebhookReceivedResponse, summary="Contact events")
async def contacts_update_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.CONTACTS_UPDATE.value)


@router.post("/chats-update", response_model=WebhookReceivedResponse, summary="Chat update events")
async def chats_update_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.CHATS_UPDATE.value)


@router.post("/chats-upsert", response_model=WebhookReceivedResponse, summary="Chat upsert events")
async def chats_upsert_webhook(request: Request, background_tasks: BackgroundTasks):
    return await _receive(request, background_tasks, WebhookEventType.CHATS_UPSERT.value)


@router.post("/{event}", response_model=WebhookReceivedResponse, summary="Per-event webhook handler")
async def generic_event_webhook(event: str, request: Request, background_tasks: BackgroundTasks):
    """Providers configured with byEvents=true post to /<event-name>."""
    return await _receive(request, background_tasks, WebhookEventType.normalize(event))
