"""
Evolution WhatsApp Module

This module connects clinics to WhatsApp through the Evolution API.
Key features:
- Instance lifecycle (QR / pairing code, status reconciliation, webhook slots)
- Inbound webhook processing with audit trail and automation relay
- Rate-limited, idempotent outbound dispatch
- Conversation, chat list and live update feeds
"""

from .models.evolution_instance import EvolutionInstance
from .models.whatsapp_message import WhatsAppMessage
from .models.webhook_record import WebhookRecord

__all__ = [
    "EvolutionInstance",
    "WhatsAppMessage",
    "WebhookRecord",
]
