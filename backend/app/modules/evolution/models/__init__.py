"""
Evolution Models

Exports all ORM models for the Evolution WhatsApp module.
"""

from .evolution_instance import EvolutionInstance
from .whatsapp_message import WhatsAppMessage
from .webhook_record import WebhookRecord

__all__ = [
    "EvolutionInstance",
    "WhatsAppMessage",
    "WebhookRecord",
]
