"""
Evolution WhatsApp Module - API Routers
Combines all routes from this module for easy registration in main.py
"""
from fastapi import APIRouter
from app.modules.evolution.api import session_endpoints, message_endpoints, webhook_endpoints

# Tenant-facing routes (mounted under /evolution)
router = APIRouter()

router.include_router(
    session_endpoints.router,
    prefix="/instances",
    tags=["Evolution Instances"]
)

router.include_router(
    message_endpoints.router,
    prefix="/messages",
    tags=["Evolution Messages"]
)

# Provider-facing webhook ingress (mounted under /webhooks/evolution)
webhook_router = webhook_endpoints.router
