"""
Evolution WhatsApp Constants
Centralized enums and constants for the Evolution module.

Enums inherit from str so they serialize directly into JSON and SQL.
"""
from enum import Enum
from typing import Dict, Optional


class InstanceStatus(str, Enum):
    """
    Lifecycle of a tenant's WhatsApp connection.

    Flow:
    DISCONNECTED → PENDING (QR issued) → CONNECTED
         ↑______________|___________________|   (disconnect / provider gone)
    CONNECTED → PENDING when a new session is started (forced logout first)
    """
    DISCONNECTED = "disconnected"
    PENDING = "pending"
    CONNECTED = "connected"

    @classmethod
    def from_provider_state(cls, state: Optional[str]) -> "InstanceStatus":
        """
        Classify a free-form provider state by substring.

        "disconnected" and "close" are checked first because "disconnected"
        contains "connected". "connecting" never reads as connected.
        """
        normalized = (state or "").lower()
        if any(token in normalized for token in DISCONNECTED_TOKENS):
            return cls.DISCONNECTED
        if any(token in normalized for token in CONNECTING_TOKENS):
            return cls.PENDING
        if any(token in normalized for token in CONNECTED_TOKENS):
            return cls.CONNECTED
        return cls.DISCONNECTED


CONNECTED_TOKENS = ("connected", "open", "online", "ready")
CONNECTING_TOKENS = ("connecting", "pairing", "initializing", "pending")
DISCONNECTED_TOKENS = ("disconnect", "close", "logout")


class DeliveryStatus(str, Enum):
    """
    Delivery status of a WhatsApp message.

    Outbound flow:  QUEUED → SENT → DELIVERED → READ
                          ↘ FAILED
    Inbound rows carry whatever the provider last reported (often None).
    """
    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


# Provider status string -> closed delivery status set.
# SERVER_ACK is the provider's ack from its own servers; it is folded into
# DELIVERED here and can be remapped via EVOLUTION_STATUS_OVERRIDES.
DEFAULT_STATUS_ALIASES: Dict[str, DeliveryStatus] = {
    "READ": DeliveryStatus.READ,
    "READ_ACK": DeliveryStatus.READ,
    "PLAYED": DeliveryStatus.READ,
    "DELIVERED": DeliveryStatus.DELIVERED,
    "DELIVERY_ACK": DeliveryStatus.DELIVERED,
    "SERVER_ACK": DeliveryStatus.DELIVERED,
    "SENT": DeliveryStatus.SENT,
    "PENDING": DeliveryStatus.SENT,
    "FAILED": DeliveryStatus.FAILED,
    "ERROR": DeliveryStatus.FAILED,
}


def build_status_map(overrides: str = "") -> Dict[str, DeliveryStatus]:
    """
    Default aliases plus "PROVIDER=STATUS" pairs from configuration.

    Example: build_status_map("SERVER_ACK=SENT, PLAYED=READ")
    Unknown target statuses are ignored.
    """
    mapping = dict(DEFAULT_STATUS_ALIASES)
    for pair in (overrides or "").split(","):
        if "=" not in pair:
            continue
        source, target = (part.strip().upper() for part in pair.split("=", 1))
        if source and target in DeliveryStatus.__members__:
            mapping[source] = DeliveryStatus(target)
    return mapping


# Numeric ack levels some provider builds send instead of names
ACK_LEVEL_NAMES: Dict[int, str] = {
    0: "ERROR",
    1: "PENDING",
    2: "SERVER_ACK",
    3: "DELIVERY_ACK",
    4: "READ",
    5: "PLAYED",
}


def map_provider_status(raw: object, status_map: Dict[str, DeliveryStatus]) -> Optional[DeliveryStatus]:
    """
    Map a provider status (string or numeric ack) to the closed set, None when unknown.

    Numeric acks go through their names, so overrides on e.g. SERVER_ACK apply to 2 too.
    """
    if raw is None or isinstance(raw, bool):
        return None
    key = str(raw).strip().upper().replace(" ", "_").replace("-", "_")
    if key.isdigit():
        key = ACK_LEVEL_NAMES.get(int(key), key)
    return status_map.get(key)


class MessageDirection(str, Enum):
    """Direction of a WhatsApp message, derived from key.fromMe."""
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class WebhookEventType(str, Enum):
    """Normalized provider event names (lower-case, dotted)."""
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_SEND = "messages.send"  # Internal: outbound dispatch
    CONNECTION_UPDATE = "connection.update"
    CONTACTS_UPDATE = "contacts.update"
    CONTACTS_UPSERT = "contacts.upsert"
    CONTACTS_SET = "contacts.set"
    CHATS_UPDATE = "chats.update"
    CHATS_UPSERT = "chats.upsert"
    CHATS_SET = "chats.set"
    CHATS_DELETE = "chats.delete"

    @staticmethod
    def normalize(raw: object) -> str:
        """'MESSAGES_UPSERT' / 'messages-upsert' / 'Messages.Upsert' -> 'messages.upsert'"""
        text = str(raw or "").strip().lower()
        return text.replace("_", ".").replace("-", ".")


class WebhookRecordStatus(str, Enum):
    """Relay state of a webhook audit row."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # No automation endpoint configured / nothing to relay


# Provider-side webhook subscription defaults (EVOLUTION_WEBHOOK_EVENTS overrides)
DEFAULT_WEBHOOK_EVENTS = [
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONNECTION_UPDATE",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
]

MANAGED_INSTANCE_INTEGRATION = "WHATSAPP-BAILEYS"
WEBHOOK_INGRESS_PATH = "/api/webhooks/evolution"
SLOT_IDS = ("slot1", "slot2", "slot3", "slot4")

# Lead defaults for first-contact creation
LEAD_SOURCE_WHATSAPP = "WhatsApp"
LEAD_INITIAL_STAGE = "Novo"

# Ad-click attribution marker set by Meta on Click-to-WhatsApp ads
AD_CONVERSION_SOURCE = "FB_Ads"
