"""
Evolution Repositories

Exports all repository classes for the Evolution WhatsApp module.
"""

from .instance_repository import EvolutionInstanceRepository
from .message_repository import WhatsAppMessageRepository
from .webhook_repository import WebhookRecordRepository

__all__ = [
    "EvolutionInstanceRepository",
    "WhatsAppMessageRepository",
    "WebhookRecordRepository",
]
