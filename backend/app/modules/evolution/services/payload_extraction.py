"""
Evolution Payload Extraction
Pure functions that turn provider webhook envelopes into typed values.

Provider message bodies are a union keyed by sub-type
(conversation, extendedTextMessage, imageMessage, ...). Each known tag has
one extractor returning a MessageContent; everything downstream reads
MessageContent instead of probing the raw tree.

Also builds:
- AdContext: Click-to-WhatsApp attribution (externalAdReply)
- HashedIdentity: SHA-256 of phone and name tokens for ad-platform export
- the flat "jsonrow" projection relayed to the automation endpoint
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.modules.evolution.constants import AD_CONVERSION_SOURCE, LEAD_INITIAL_STAGE, LEAD_SOURCE_WHATSAPP
from app.shared.utils.json_utils import dig, non_empty_str, sha256_normalized, split_name
from app.shared.utils.phone_utils import digits_only, jid_local_part, normalize_jid, WHATSAPP_USER_SUFFIX


# ============================================
# MESSAGE CONTENT (tagged union)
# ============================================

@dataclass(frozen=True)
class MessageContent:
    """What one message sub-type contributes."""
    kind: Optional[str] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    media_url: Optional[str] = None
    context_info: Optional[Dict[str, Any]] = None


def _context(body: Any) -> Optional[Dict[str, Any]]:
    ctx = dig(body, "contextInfo")
    return ctx if isinstance(ctx, dict) else None


def _conversation(body: Any) -> MessageContent:
    return MessageContent(kind="conversation", text=non_empty_str(body) if isinstance(body, str) else None)


def _extended_text(body: Any) -> MessageContent:
    return MessageContent(kind="extendedTextMessage", text=non_empty_str(dig(body, "text")), context_info=_context(body))


def _media(kind: str) -> Callable[[Any], MessageContent]:
    def extract(body: Any) -> MessageContent:
        return MessageContent(
            kind=kind,
            caption=non_empty_str(dig(body, "caption")),
            media_url=non_empty_str(dig(body, "url")),
            context_info=_context(body),
        )
    return extract


def _context_only(kind: str) -> Callable[[Any], MessageContent]:
    def extract(body: Any) -> MessageContent:
        return MessageContent(kind=kind, context_info=_context(body))
    return extract


def _buttons_response(body: Any) -> MessageContent:
    return MessageContent(
        kind="buttonsResponseMessage",
        text=non_empty_str(dig(body, "selectedDisplayText")),
        context_info=_context(body),
    )


def _list_response(body: Any) -> MessageContent:
    return MessageContent(
        kind="listResponseMessage",
        text=non_empty_str(dig(body, "title")),
        context_info=_context(body),
    )


# Priority order: also the order used to infer the message type when the
# envelope carries no explicit messageType.
MESSAGE_EXTRACTORS: Tuple[Tuple[str, Callable[[Any], MessageContent]], ...] = (
    ("conversation", _conversation),
    ("extendedTextMessage", _extended_text),
    ("imageMessage", _media("imageMessage")),
    ("videoMessage", _media("videoMessage")),
    ("documentMessage", _media("documentMessage")),
    ("stickerMessage", _context_only("stickerMessage")),
    ("audioMessage", _context_only("audioMessage")),
    ("buttonsResponseMessage", _buttons_response),
    ("listResponseMessage", _list_response),
)

MEDIA_KINDS = ("imageMessage", "videoMessage", "documentMessage")


def extract_parts(message: Any) -> List[MessageContent]:
    """One MessageContent per known sub-type present, in priority order."""
    if not isinstance(message, dict):
        return []
    return [extract(message[tag]) for tag, extract in MESSAGE_EXTRACTORS if tag in message and message[tag] is not None]


def resolve_text(message: Any) -> Optional[str]:
    """
    conversation -> extendedTextMessage.text -> imageMessage.caption

    Examples:
        >>> resolve_text({"extendedTextMessage": {"text": "Oi"}})
        'Oi'
        >>> resolve_text({"imageMessage": {"caption": "foto"}})
        'foto'
    """
    parts = {part.kind: part for part in extract_parts(message)}
    for kind in ("conversation", "extendedTextMessage"):
        if kind in parts and parts[kind].text:
            return parts[kind].text
    image = parts.get("imageMessage")
    return image.caption if image else None


def resolve_media(message: Any) -> Tuple[Optional[str], Optional[str]]:
    """(caption, media_url) from the first media sub-type carrying each."""
    parts = {part.kind: part for part in extract_parts(message)}
    caption = next((parts[k].caption for k in MEDIA_KINDS if k in parts and parts[k].caption), None)
    media_url = next((parts[k].media_url for k in MEDIA_KINDS if k in parts and parts[k].media_url), None)
    return caption, media_url


def resolve_message_type(data: Any) -> Optional[str]:
    """Explicit data.messageType, else the first known sub-type key present."""
    explicit = non_empty_str(dig(data, "messageType"))
    if explicit:
        return explicit
    parts = extract_parts(dig(data, "message"))
    return parts[0].kind if parts else None


def resolve_context_info(data: Any) -> Dict[str, Any]:
    """
    Context info carrying ad attribution, probed in order:
    data.contextInfo, message.contextInfo, then each sub-type's contextInfo.
    """
    direct = dig(data, "contextInfo")
    if isinstance(direct, dict):
        return direct
    message = dig(data, "message")
    top = dig(message, "contextInfo")
    if isinstance(top, dict):
        return top
    for part in extract_parts(message):
        if part.context_info:
            return part.context_info
    return {}


# ============================================
# AD ATTRIBUTION
# ============================================

@dataclass(frozen=True)
class AdContext:
    """Click-to-WhatsApp attribution read from contextInfo.externalAdReply."""
    is_ad: bool = False
    conversion_source: Optional[str] = None
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    source_url: Optional[str] = None
    ctwa_clid: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    thumbnail_url: Optional[str] = None


def resolve_ad_context(data: Any) -> AdContext:
    ctx = resolve_context_info(data)
    reply = ctx.get("externalAdReply")
    reply = reply if isinstance(reply, dict) else {}
    conversion_source = non_empty_str(ctx.get("conversionSource"))
    source_id = non_empty_str(reply.get("sourceId"))

    return AdContext(
        is_ad=conversion_source == AD_CONVERSION_SOURCE or bool(source_id),
        conversion_source=conversion_source,
        source_type=non_empty_str(reply.get("sourceType")),
        source_id=source_id,
        source_url=non_empty_str(reply.get("sourceUrl")),
        ctwa_clid=non_empty_str(reply.get("ctwaClid")),
        title=non_empty_str(reply.get("title")),
        body=non_empty_str(reply.get("body")),
        thumbnail_url=non_empty_str(reply.get("thumbnailUrl")),
    )


# ============================================
# HASHED IDENTITY
# ============================================

@dataclass(frozen=True)
class HashedIdentity:
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def hash_identity(phone: Optional[str], push_name: Optional[str]) -> HashedIdentity:
    """SHA-256 of lowercased, trimmed phone and first/last push-name tokens."""
    first, last = split_name(push_name)
    return HashedIdentity(
        phone=sha256_normalized(phone),
        first_name=sha256_normalized(first),
        last_name=sha256_normalized(last),
    )


# ============================================
# INBOUND MESSAGE (messages.upsert)
# ============================================

@dataclass
class InboundMessage:
    """Everything the upsert pipeline needs from one messages.upsert item."""
    wamid: Optional[str]
    remote_jid: Optional[str]
    remote_jid_alt: Optional[str]
    addressing_mode: Optional[str]
    participant: Optional[str]
    from_me: bool
    phone: Optional[str]
    push_name: Optional[str]
    timestamp: datetime
    message_timestamp: Any
    message_type: Optional[str]
    text: Optional[str]
    caption: Optional[str]
    media_url: Optional[str]
    status: Optional[str]
    ad: AdContext = field(default_factory=AdContext)
    hashed: HashedIdentity = field(default_factory=HashedIdentity)


def parse_timestamp(value: Any, now: Optional[datetime] = None) -> datetime:
    """
    Provider timestamp to an aware datetime.

    Numbers above 1e10 are milliseconds, others seconds. Anything unparseable
    becomes `now`.
    """
    now = now or datetime.now(timezone.utc)
    if isinstance(value, dict):
        # Protobuf Long: {"low": ..., "high": ...}
        value = value.get("low")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return now
    if number <= 0:
        return now
    if number > 10_000_000_000:
        number = number / 1000
    return datetime.fromtimestamp(number, tz=timezone.utc)


def synthetic_wamid(phone: Optional[str], from_me: bool, message_timestamp: Any) -> Optional[str]:
    """
    Stable stand-in id for items that arrive without key.id, so redeliveries
    still collapse onto one row. None when there is nothing stable to key on.
    """
    if isinstance(message_timestamp, dict):
        message_timestamp = message_timestamp.get("low")
    try:
        seconds = int(float(message_timestamp))
    except (TypeError, ValueError):
        return None
    if not phone or seconds <= 0:
        return None
    return f"evo-{phone}-{'out' if from_me else 'in'}-{seconds}"


def parse_inbound_message(data: Any, now: Optional[datetime] = None) -> InboundMessage:
    key = dig(data, "key", default={})
    message = dig(data, "message", default={})
    remote_jid = non_empty_str(dig(key, "remoteJid"))
    remote_jid_alt = non_empty_str(dig(key, "remoteJidAlt"))
    addressing_mode = non_empty_str(dig(key, "addressingMode"))
    push_name = non_empty_str(dig(data, "pushName"))
    phone = normalize_jid(remote_jid, remote_jid_alt, addressing_mode)
    caption, media_url = resolve_media(message)
    message_timestamp = dig(data, "messageTimestamp")
    from_me = bool(dig(key, "fromMe", default=False))

    return InboundMessage(
        wamid=non_empty_str(dig(key, "id")) or synthetic_wamid(phone, from_me, message_timestamp),
        remote_jid=remote_jid,
        remote_jid_alt=remote_jid_alt or remote_jid,
        addressing_mode=addressing_mode,
        participant=non_empty_str(dig(key, "participant")),
        from_me=from_me,
        phone=phone,
        push_name=push_name,
        timestamp=parse_timestamp(message_timestamp, now),
        message_timestamp=message_timestamp,
        message_type=resolve_message_type(data),
        text=resolve_text(message),
        caption=caption,
        media_url=media_url,
        status=non_empty_str(dig(data, "status")),
        ad=resolve_ad_context(data),
        hashed=hash_identity(phone, push_name),
    )


# ============================================
# ENVELOPE HELPERS
# ============================================

def unwrap_envelope(payload: Any) -> Dict[str, Any]:
    """
    The event body. Some relays forward the provider call as
    {"body": {...}, "headers": ...}; direct provider calls are the body itself.
    """
    body = dig(payload, "body")
    if isinstance(body, dict) and ("data" in body or "event" in body):
        return body
    return payload if isinstance(payload, dict) else {}


def event_items(data: Any) -> List[Any]:
    """Event data as a list (arrays as-is, a singleton wrapped, None empty)."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


def item_phone(item: Any) -> Optional[str]:
    """Phone digits for a contacts.* / chats.* item (id, remoteJid or jid)."""
    for key in ("remoteJid", "id", "jid"):
        value = non_empty_str(dig(item, key))
        if value and ("@" not in value or value.endswith(WHATSAPP_USER_SUFFIX)):
            digits = digits_only(value.split("@")[0])
            if digits:
                return digits
    return None


# ============================================
# AUTOMATION ROW
# ============================================

def build_json_row(payload: Any) -> Dict[str, Any]:
    """
    Flat projection of a messages.upsert envelope for the automation endpoint.
    Empty dict when the event carries no message key.
    """
    body = unwrap_envelope(payload)
    data = dig(body, "data", default={})
    if isinstance(data, list):
        data = data[0] if data else {}
    if not dig(data, "key"):
        return {}

    key = data["key"]
    message = dig(data, "message", default={})
    device_meta = dig(message, "messageContextInfo", "deviceListMetadata", default={})
    context_info = dig(data, "contextInfo", default={})
    ad = dig(context_info, "externalAdReply", default={})
    remote_jid = dig(key, "remoteJid")

    def ad_field(name: str) -> Any:
        return dig(ad, name)

    def ctx_field(name: str) -> Any:
        return dig(context_info, name)

    return {
        "name": dig(data, "pushName"),
        "contact": digits_only(jid_local_part(remote_jid)) or None,
        "source": LEAD_SOURCE_WHATSAPP,
        "stage": LEAD_INITIAL_STAGE,
        "wamid": dig(key, "id"),
        "remoteJid": remote_jid,
        "remoteJidAlt": dig(key, "remoteJidAlt") or remote_jid,
        "fromMe": dig(key, "fromMe"),
        "addressingMode": dig(key, "addressingMode"),
        "participant": dig(key, "participant") or None,
        "status": dig(data, "status"),
        "messageType": dig(data, "messageType"),
        "messageTimestamp": dig(data, "messageTimestamp"),
        "messageText": resolve_text(message),
        "senderTimestamp": dig(device_meta, "senderTimestamp", "low"),
        "recipientTimestamp": dig(device_meta, "recipientTimestamp", "low"),
        "deviceSource": dig(data, "source"),
        "instance": dig(body, "instance"),
        "instanceId": dig(data, "instanceId"),
        "sender": dig(body, "sender"),
        "adSourceType": ad_field("sourceType"),
        "adSourceId": ad_field("sourceId"),
        "adSourceUrl": ad_field("sourceUrl"),
        "sourceApp": ad_field("sourceApp"),
        "ctwaClid": ad_field("ctwaClid"),
        "containsAutoReply": ad_field("containsAutoReply"),
        "renderLargerThumbnail": ad_field("renderLargerThumbnail"),
        "showAdAttribution": ad_field("showAdAttribution"),
        "automatedGreetingMessageShown": ad_field("automatedGreetingMessageShown"),
        "greetingMessageBody": ad_field("greetingMessageBody"),
        "wtwaAdFormat": ad_field("wtwaAdFormat"),
        "adTitle": ad_field("title"),
        "adBody": ad_field("body"),
        "adThumbnailUrl": ad_field("thumbnailUrl"),
        "adMediaType": ad_field("mediaType"),
        "entryPointConversionSource": ctx_field("entryPointConversionSource"),
        "entryPointConversionApp": ctx_field("entryPointConversionApp"),
        "entryPointConversionExternalSource": ctx_field("entryPointConversionExternalSource"),
        "entryPointConversionExternalMedium": ctx_field("entryPointConversionExternalMedium"),
        "ctwaSignals": ctx_field("ctwaSignals"),
        "destination": dig(body, "destination"),
        "serverUrl": dig(body, "server_url"),
        "apikey": dig(body, "apikey"),
        "executionMode": dig(payload, "executionMode"),
        "receivedAt": dig(body, "date_time"),
        "eventType": dig(body, "event"),
        "adOriginalImageUrl": ad_field("originalImageUrl"),
        "adRef": ad_field("ref"),
    }
