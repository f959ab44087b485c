"""
Evolution WhatsApp Services

Business logic layer for the Evolution module.
"""

from .evolution_client import EvolutionClient, evolution_client
from .message_events import MessageEvent, MessageEventBus, message_event_bus
from .relay_client import AutomationRelayClient, automation_relay_client
from .session_service import EvolutionSessionService
from .webhook_service import EvolutionWebhookService, process_webhook_event
from .message_service import EvolutionMessageService

__all__ = [
    "EvolutionClient",
    "evolution_client",
    "MessageEvent",
    "MessageEventBus",
    "message_event_bus",
    "AutomationRelayClient",
    "automation_relay_client",
    "EvolutionSessionService",
    "EvolutionWebhookService",
    "process_webhook_event",
    "EvolutionMessageService",
]
