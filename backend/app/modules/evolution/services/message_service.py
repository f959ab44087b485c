"""
Evolution Message Service
Outbound dispatch and conversation reads for the tenant's WhatsApp numbers.

Outbound (send_message):
1. Per-tenant rate limit (30 sends / 60s), refused before any side effect
2. Phone normalization (digits, leading zeros trimmed, >= 7 digits)
3. Client-correlatable id: "client-<clientMessageId | uuid>" (idempotent)
4. QUEUED row persisted before delivery
5. Media HEAD validation (type image/ application/ video/, <= 10 MiB)
6. Provider send across instance candidates -> SENT, else FAILED with a
   soft {"id", "status": "failed"} result

Reads:
- list_conversation: local store or provider (with local fallback)
- list_updates: incremental local feed with a (timestamp, updated_at) cursor
- list_chats: one entry per contact, lead names overlaid, 3s local cache
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.crm.repositories.lead_repository import LeadRepository
from app.modules.evolution.constants import DeliveryStatus, MessageDirection, WebhookEventType
from app.modules.evolution.repositories.instance_repository import EvolutionInstanceRepository
from app.modules.evolution.repositories.message_repository import WhatsAppMessageRepository
from app.modules.evolution.services.evolution_client import EvolutionClient, evolution_client, extract_items
from app.modules.evolution.services.message_events import MessageEvent, MessageEventBus, message_event_bus
from app.modules.evolution.services.payload_extraction import parse_timestamp, resolve_media, resolve_text
from app.shared.core.config import settings
from app.shared.core.constants import (
    SEND_RATE_LIMIT,
    SEND_RATE_WINDOW_SECONDS,
    MIN_PHONE_DIGITS,
    MAX_MEDIA_SIZE_BYTES,
    ALLOWED_MEDIA_PREFIXES,
    CLIENT_MESSAGE_PREFIX,
    TIMEOUT_MEDIA_HEAD,
    CONVERSATION_MAX_LIMIT,
    CONVERSATION_DEFAULT_LIMIT,
    CHATS_DEFAULT_LIMIT,
    CHATS_CACHE_TTL_SECONDS,
    CHATS_LOCAL_MIN_SCAN,
    CHATS_LOCAL_MAX_SCAN,
    MIN_CHAT_CONTACT_DIGITS,
    MAX_CHAT_CONTACT_DIGITS,
)
from app.shared.utils.cache import SimpleCache
from app.shared.utils.exceptions import ProviderHTTPError, ValidationError
from app.shared.utils.http_client import http_client_manager
from app.shared.utils.json_utils import dig, non_empty_str
from app.shared.utils.phone_utils import (
    WHATSAPP_USER_SUFFIX,
    digits_only,
    mask_phone,
    normalize_phone_digits,
    to_jid,
)
from app.shared.utils.rate_limiter import RateLimiter

logger = logging.getLogger("evolution_message_service")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

# Process-local state shared by every service instance (reset on restart)
send_rate_limiter = RateLimiter(limit=SEND_RATE_LIMIT, window_seconds=SEND_RATE_WINDOW_SECONDS)
local_chats_cache = SimpleCache(max_size=500)


@dataclass(frozen=True)
class MediaCheck:
    ok: bool
    media_type: str = "document"  # image | video | document
    reason: Optional[str] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def require_phone(phone: Any) -> str:
    """Outbound digits, or ValidationError when fewer than 7 remain."""
    digits = normalize_phone_digits(phone if isinstance(phone, str) else str(phone or ""))
    if len(digits) < MIN_PHONE_DIGITS:
        raise ValidationError("Invalid phone number.", field="phone")
    return digits


def clamp_limit(limit: Optional[int], default: int = CONVERSATION_DEFAULT_LIMIT) -> int:
    return max(1, min(CONVERSATION_MAX_LIMIT, limit or default))


def build_client_wamid(client_message_id: Optional[str] = None) -> str:
    """'client-<id>' for a caller token, 'client-<uuid4>' otherwise."""
    token = (client_message_id or "").strip() or str(uuid.uuid4())
    return f"{CLIENT_MESSAGE_PREFIX}{token}"


def parse_cursor(value: Any) -> Optional[datetime]:
    """
    Cursor value to a datetime.

    Numbers above 1e10 are milliseconds, other positive numbers seconds;
    anything else is parsed as ISO-8601. Blank or invalid input is None.
    """
    if isinstance(value, datetime):
        return value
    raw = str(value if value is not None else "").strip()
    if not raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        number = None
    if number is not None:
        if number <= 0:
            return None
        return datetime.fromtimestamp(number / 1000 if number > 10_000_000_000 else number, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def use_provider_source(source: Optional[str]) -> bool:
    if source == "provider":
        return True
    if source == "local":
        return False
    return settings.EVOLUTION_PROVIDER_READ


def unique_strings(values: List[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        text = (value or "").strip() if isinstance(value, str) else ""
        if text and text not in seen:
            seen.append(text)
    return seen


def local_message_as_provider_item(row: dict, phone: str) -> Dict[str, Any]:
    """Stored row reshaped like a provider history item, so both sources map the same way."""
    timestamp = row.get("timestamp") or utc_now()
    return {
        "id": row.get("wamid") or f"{phone}-{int(timestamp.timestamp())}",
        "key": {"id": row.get("wamid"), "fromMe": bool(row.get("from_me"))},
        "message": (
            {"imageMessage": {"url": row["media_url"], "caption": row.get("caption")}}
            if row.get("media_url")
            else {"conversation": row.get("conversation")}
        ),
        "messageType": row.get("message_type") or ("media" if row.get("media_url") else ("text" if row.get("conversation") else None)),
        "deliveryStatus": row.get("delivery_status"),
        "messageTimestamp": int(timestamp.timestamp()),
        "pushName": row.get("push_name"),
    }


def conversation_entry(item: Any, phone: str, now: datetime) -> Dict[str, Any]:
    key = dig(item, "key", default={})
    message = dig(item, "message", default={})
    from_me = bool(dig(key, "fromMe", default=False))
    text = resolve_text(message)
    caption, media_url = resolve_media(message)
    raw_ts = dig(item, "messageTimestamp") or dig(item, "timestamp")
    timestamp = parse_timestamp(raw_ts, now)
    wamid = dig(key, "id") or dig(item, "wamid")

    return {
        "id": dig(item, "id") or wamid or f"{phone}-{int(timestamp.timestamp())}",
        "wamid": wamid,
        "from_me": from_me,
        "direction": (MessageDirection.OUTBOUND if from_me else MessageDirection.INBOUND).value,
        "conversation": text,
        "caption": caption,
        "media_url": media_url,
        "message_type": dig(item, "messageType") or ("media" if media_url else ("text" if text else None)),
        "delivery_status": dig(item, "deliveryStatus"),
        "timestamp": timestamp,
        "push_name": dig(item, "pushName") or dig(item, "name"),
        "phone_raw": phone,
    }


def has_content(entry: Dict[str, Any]) -> bool:
    return bool(entry.get("conversation") or entry.get("caption") or entry.get("media_url") or entry.get("message_type"))


def chat_entry(item: Any, now: datetime) -> Optional[Dict[str, Any]]:
    """One chat-list row, or None for groups, broadcasts and malformed contacts."""
    jid_raw = str(dig(item, "remoteJid") or dig(item, "jid") or dig(item, "phoneRaw") or "")
    if "@" in jid_raw and not jid_raw.endswith(WHATSAPP_USER_SUFFIX):
        return None
    contact = digits_only(jid_raw.split("@")[0])
    if not (MIN_CHAT_CONTACT_DIGITS <= len(contact) <= MAX_CHAT_CONTACT_DIGITS):
        return None

    last = dig(item, "lastMessage") or dig(item, "message") or {}
    last_text = (
        non_empty_str(dig(last, "conversation"))
        or resolve_text(dig(last, "message"))
        or resolve_text(last)
    )
    raw_ts = dig(last, "messageTimestamp") or dig(last, "timestamp") or dig(item, "timestamp")
    last_at = parse_timestamp(raw_ts, now) if raw_ts else None

    avatar = None
    for field in ("profilePicUrl", "profilePictureUrl", "picUrl"):
        avatar = non_empty_str(dig(item, field))
        if avatar:
            avatar = avatar.strip()
            break

    return {
        "id": dig(item, "id") or contact,
        "name": dig(item, "pushName") or dig(item, "name"),
        "contact": contact,
        "remote_jid": (str(dig(item, "remoteJid") or dig(item, "jid") or "").strip() or to_jid(contact)),
        "avatar_url": avatar,
        "last_message": (
            {"text": last_text, "timestamp": last_at or now, "from_me": bool(dig(last, "key", "fromMe"))}
            if last_text else None
        ),
    }


def chat_sort_key(entry: Dict[str, Any]) -> datetime:
    return dig(entry, "last_message", "timestamp") or EPOCH


class EvolutionMessageService:
    """
    High-level service for WhatsApp messages.

    Provides:
    - send_message: rate-limited, idempotent outbound dispatch
    - list_conversation / list_updates / list_chats
    - resolve_token / resolve_instance_candidates
    """

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[EvolutionClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        chats_cache: Optional[SimpleCache] = None,
        event_bus: Optional[MessageEventBus] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.db = db
        self.client = client or evolution_client
        self.rate_limiter = rate_limiter or send_rate_limiter
        self.chats_cache = chats_cache or local_chats_cache
        self.event_bus = event_bus or message_event_bus
        self._http_client = http_client
        self.message_repo = WhatsAppMessageRepository(db)
        self.instance_repo = EvolutionInstanceRepository(db)
        self.lead_repo = LeadRepository(db)

    def _emit(self, user_id: str, phone: str, wamid: str) -> None:
        self.event_bus.publish(MessageEvent(
            user_id=user_id,
            phone_raw=phone,
            event=WebhookEventType.MESSAGES_SEND.value,
            wamid=wamid
        ))

    # ============================================
    # OUTBOUND
    # ============================================

    async def send_message(
        self,
        user_id: str,
        phone: str,
        text: Optional[str] = None,
        media_url: Optional[str] = None,
        caption: Optional[str] = None,
        client_message_id: Optional[str] = None,
        instance_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a text or media message.

        Returns:
            {"id": wamid, "status": "sent" | "failed"}

        Raises:
            RateLimitExceededError: 31st send inside the window (nothing persisted)
            ValidationError: bad phone, or media rejected (row ends FAILED)
        """
        self.rate_limiter.hit(user_id)
        digits = require_phone(phone)
        wamid = build_client_wamid(client_message_id)

        existing = await self.message_repo.get_by_wamid(wamid)
        if existing and existing["user_id"] != user_id:
            raise ValidationError("clientMessageId is already in use.", field="client_message_id")

        raw_json = {"clientMessageId": client_message_id, "instanceId": instance_id}
        values = {
            "user_id": user_id,
            "wamid": wamid,
            "remote_jid": to_jid(digits),
            "remote_jid_alt": to_jid(digits),
            "phone_raw": digits,
            "from_me": True,
            "direction": MessageDirection.OUTBOUND.value,
            "message_type": "media" if media_url else "text",
            "conversation": text,
            "media_url": media_url,
            "caption": caption,
            "delivery_status": DeliveryStatus.QUEUED.value,
            "timestamp": utc_now(),
            "raw_json": raw_json,
        }
        await self.message_repo.upsert_message(values, [f for f in values if f not in ("user_id", "wamid")])
        await self.db.commit()
        self._emit(user_id, digits, wamid)

        media_type = None
        if media_url:
            check = await self.validate_media(media_url)
            if not check.ok:
                await self.message_repo.update_by_wamid(wamid, {"delivery_status": DeliveryStatus.FAILED.value})
                await self.db.commit()
                self._emit(user_id, digits, wamid)
                logger.warning(f"Media rejected for wamid={wamid}: {check.reason}")
                raise ValidationError("Invalid or oversized media.", field="media_url")
            media_type = check.media_type

        candidates = await self.resolve_instance_candidates(user_id, instance_id) or [instance_id]
        last_error: Optional[Exception] = None

        for candidate in candidates:
            token = await self.resolve_token(user_id, candidate)
            try:
                provider_resp = await self.client.send_message(
                    number=f"+{digits}",
                    text=text,
                    media_url=media_url,
                    media_type=media_type,
                    caption=caption,
                    instance_id=candidate,
                    token=token
                )
            except Exception as e:
                last_error = e
                logger.warning(f"Send via instance={candidate or 'default'} failed for wamid={wamid}: {e}")
                continue

            await self.message_repo.update_by_wamid(wamid, {
                "delivery_status": DeliveryStatus.SENT.value,
                "raw_json": {**raw_json, "providerResp": provider_resp, "instanceId": candidate},
            })
            await self.db.commit()
            self._emit(user_id, digits, wamid)
            logger.info(
                f"✅ sendMessage ok user={user_id} instance={candidate or 'auto'} "
                f"phone={mask_phone(digits)} wamid={wamid} status=SENT"
            )
            return {"id": wamid, "status": "sent"}

        await self.message_repo.update_by_wamid(wamid, {
            "delivery_status": DeliveryStatus.FAILED.value,
            "raw_json": {**raw_json, "providerError": str(last_error or "")},
        })
        await self.db.commit()
        self._emit(user_id, digits, wamid)
        logger.warning(
            f"❌ sendMessage failed user={user_id} instance={instance_id or 'auto'} "
            f"phone={mask_phone(digits)} wamid={wamid} status=FAILED"
        )
        return {"id": wamid, "status": "failed"}

    async def validate_media(self, url: str) -> MediaCheck:
        """HEAD the media URL: 2xx, an allowed content type and at most 10 MiB when a length is reported."""
        client = self._http_client or http_client_manager.get_client()
        try:
            response = await client.head(url, timeout=TIMEOUT_MEDIA_HEAD, follow_redirects=True)
        except httpx.HTTPError as e:
            return MediaCheck(ok=False, reason=f"HEAD failed: {e}")

        if not response.is_success:
            return MediaCheck(ok=False, reason=f"HEAD returned {response.status_code}")

        content_type = (response.headers.get("content-type") or "").lower()
        media_type = "image" if content_type.startswith("image/") else "video" if content_type.startswith("video/") else "document"
        if not content_type.startswith(ALLOWED_MEDIA_PREFIXES):
            return MediaCheck(ok=False, media_type=media_type, reason=f"content-type {content_type or 'missing'}")

        try:
            length = int(response.headers.get("content-length") or 0)
        except ValueError:
            length = 0
        if length > MAX_MEDIA_SIZE_BYTES:
            return MediaCheck(ok=False, media_type=media_type, reason=f"content-length {length}")

        return MediaCheck(ok=True, media_type=media_type)

    # ============================================
    # INSTANCE RESOLUTION
    # ============================================

    async def resolve_instance_candidates(self, user_id: str, requested: Optional[str] = None) -> List[str]:
        """
        Instance ids to try, in order: the requested id plus its record's ids,
        else every tenant record by most recent update.
        """
        requested = (requested or "").strip()
        if requested:
            record = await self.instance_repo.get_for_user(user_id, requested)
            return unique_strings([
                requested,
                (record or {}).get("instance_id"),
                (record or {}).get("provider_instance_id"),
            ])

        values: List[Optional[str]] = []
        for record in await self.instance_repo.list_for_user(user_id):
            values.append(record.get("instance_id"))
            values.append(record.get("provider_instance_id"))
        return unique_strings(values)

    async def resolve_token(self, user_id: str, instance_id: Optional[str] = None) -> Optional[str]:
        """metadata.token of the instance (or the tenant's latest), else EVOLUTION_DEFAULT_TOKEN."""
        if instance_id:
            record = await self.instance_repo.get_for_user(user_id, instance_id)
        else:
            records = await self.instance_repo.list_for_user(user_id)
            record = records[0] if records else None

        token = non_empty_str(dig(record, "instance_metadata", "token"))
        return token or non_empty_str(settings.EVOLUTION_DEFAULT_TOKEN)

    # ============================================
    # CONVERSATION
    # ============================================

    async def _read_local_conversation(self, user_id: str, digits: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self.message_repo.list_conversation(user_id, digits, to_jid(digits), limit=limit)
        return [local_message_as_provider_item(row, digits) for row in rows]

    async def _read_provider_conversation(
        self,
        user_id: str,
        digits: str,
        remote_jid: str,
        limit: int,
        instance_id: Optional[str]
    ) -> List[Any]:
        """
        Provider items across instance candidates.

        Raises the last provider error when an explicitly requested instance
        failed, or when every candidate failed and nothing was read.
        """
        items: List[Any] = []
        last_error: Optional[Exception] = None

        for candidate in await self.resolve_instance_candidates(user_id, instance_id):
            try:
                token = await self.resolve_token(user_id, candidate)
                name = await self.client.resolve_instance_name(candidate)
                try:
                    response = await self.client.find_messages(name, remote_jid, limit=limit, token=token)
                except (ProviderHTTPError, httpx.HTTPError):
                    response = await self.client.get_conversation(f"+{digits}", name, limit=limit, token=token)
                items.extend(extract_items(response) or [])
                last_error = None
                if instance_id:
                    break
            except (ProviderHTTPError, httpx.HTTPError) as e:
                last_error = e

        if last_error and (instance_id or not items):
            raise last_error
        return items

    async def list_conversation(
        self,
        user_id: str,
        phone: str,
        direction: Optional[str] = None,
        limit: Optional[int] = None,
        instance_id: Optional[str] = None,
        remote_jid: Optional[str] = None,
        source: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Messages with one contact, oldest first.

        Provider reads are merged with local rows; a provider failure falls
        back to local rows only. Entries are deduplicated by (wamid, timestamp).
        """
        digits = require_phone(phone)
        limit = clamp_limit(limit)
        now = utc_now()

        if use_provider_source(source):
            jid = (remote_jid or to_jid(digits)).strip()
            try:
                items = await self._read_provider_conversation(user_id, digits, jid, limit, instance_id)
                items += await self._read_local_conversation(user_id, digits, limit)
            except (ProviderHTTPError, httpx.HTTPError) as e:
                status = getattr(e, "status_code", "unknown")
                logger.warning(
                    f"Provider conversation read failed, using local rows. user={user_id} "
                    f"phone={mask_phone(digits)} instance={instance_id or 'auto'} status={status}"
                )
                items = await self._read_local_conversation(user_id, digits, limit)
        else:
            items = await self._read_local_conversation(user_id, digits, limit)

        seen = set()
        data = []
        for item in items:
            entry = conversation_entry(item, digits, now)
            dedupe_key = (entry["wamid"] or "", entry["timestamp"].isoformat())
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)
            if not has_content(entry):
                continue
            if direction == "inbound" and entry["from_me"]:
                continue
            if direction == "outbound" and not entry["from_me"]:
                continue
            data.append(entry)

        data.sort(key=lambda entry: entry["timestamp"])
        return {"data": data, "total": len(data), "page": 1, "limit": limit}

    async def list_updates(
        self,
        user_id: str,
        phone: str,
        after_timestamp: Any = None,
        after_updated_at: Any = None,
        limit: Optional[int] = None,
        source: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Local messages created or changed after the cursor.

        Returns:
            {"data": [...], "cursor": {"last_timestamp", "last_updated_at"}}
        """
        digits = require_phone(phone)
        if source == "provider":
            raise ValidationError("Updates are only available from the local store.", field="source")

        limit = clamp_limit(limit)
        after_ts = parse_cursor(after_timestamp)
        after_upd = parse_cursor(after_updated_at)

        rows = await self.message_repo.list_updates(
            user_id, digits, to_jid(digits),
            after_timestamp=after_ts,
            after_updated_at=after_upd,
            limit=limit
        )

        data = []
        for row in rows:
            entry = {
                "id": str(row.get("wamid") or row.get("id")),
                "wamid": row.get("wamid"),
                "from_me": bool(row.get("from_me")),
                "direction": row.get("direction") or (
                    MessageDirection.OUTBOUND.value if row.get("from_me") else MessageDirection.INBOUND.value
                ),
                "conversation": row.get("conversation"),
                "caption": row.get("caption"),
                "media_url": row.get("media_url"),
                "message_type": row.get("message_type"),
                "delivery_status": row.get("delivery_status"),
                "timestamp": row.get("timestamp"),
                "updated_at": row.get("updated_at"),
                "push_name": row.get("push_name"),
                "phone_raw": digits,
            }
            if has_content(entry):
                data.append(entry)

        last_timestamp = (data[-1]["timestamp"] if data else None) or after_ts or EPOCH
        last_updated_at = after_upd or EPOCH
        for entry in data:
            if entry["updated_at"] and entry["updated_at"] > last_updated_at:
                last_updated_at = entry["updated_at"]

        return {
            "data": data,
            "cursor": {
                "last_timestamp": last_timestamp,
                "last_updated_at": last_updated_at,
            },
        }

    # ============================================
    # CHATS
    # ============================================

    async def _read_local_chats(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
        """Latest message per phone, reshaped like provider chat items (cached 3s)."""
        scan = max(CHATS_LOCAL_MIN_SCAN, min(CHATS_LOCAL_MAX_SCAN, limit))
        cache_key = f"{user_id}:{scan}"
        cached = self.chats_cache.get(cache_key)
        if cached is not None:
            return cached

        items = []
        seen = set()
        for row in await self.message_repo.list_recent(user_id, scan):
            phone = digits_only(row.get("phone_raw") or "")
            if not phone or phone in seen:
                continue
            seen.add(phone)
            timestamp = row.get("timestamp") or utc_now()
            items.append({
                "id": row.get("wamid") or phone,
                "remoteJid": to_jid(phone),
                "pushName": row.get("push_name"),
                "lastMessage": {
                    "message": (
                        {"imageMessage": {"caption": row.get("caption")}}
                        if row.get("media_url")
                        else {"conversation": row.get("conversation")}
                    ),
                    "messageTimestamp": int(timestamp.timestamp()),
                    "key": {"fromMe": bool(row.get("from_me"))},
                },
            })

        self.chats_cache.set(cache_key, items, ttl_seconds=CHATS_CACHE_TTL_SECONDS)
        return items

    async def _read_provider_chats(self, user_id: str, limit: int, instance_id: Optional[str]) -> List[Any]:
        items: List[Any] = []
        last_error: Optional[Exception] = None

        for candidate in await self.resolve_instance_candidates(user_id, instance_id):
            try:
                token = await self.resolve_token(user_id, candidate)
                name = await self.client.resolve_instance_name(candidate)
                try:
                    response = await self.client.find_chats(name, limit=limit, token=token)
                except (ProviderHTTPError, httpx.HTTPError):
                    response = await self.client.list_chats(name, limit=limit, token=token)
                items.extend(extract_items(response) or [])
                last_error = None
                if instance_id:
                    break
            except (ProviderHTTPError, httpx.HTTPError) as e:
                last_error = e

        if last_error and (instance_id or not items):
            raise last_error
        return items

    async def list_chats(
        self,
        user_id: str,
        limit: Optional[int] = None,
        instance_id: Optional[str] = None,
        source: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """One row per 1:1 contact, most recent first, lead names preferred over push names."""
        limit = limit or CHATS_DEFAULT_LIMIT
        now = utc_now()

        if use_provider_source(source):
            try:
                items = await self._read_provider_chats(user_id, limit, instance_id)
            except (ProviderHTTPError, httpx.HTTPError) as e:
                logger.warning(
                    f"Provider chat list failed, using local rows. user={user_id} "
                    f"instance={instance_id or 'auto'} status={getattr(e, 'status_code', 'unknown')}"
                )
                items = await self._read_local_chats(user_id, limit)
        else:
            items = await self._read_local_chats(user_id, limit)

        by_contact: Dict[str, Dict[str, Any]] = {}
        for item in items:
            entry = chat_entry(item, now)
            if not entry:
                continue
            previous = by_contact.get(entry["contact"])
            if previous is None or chat_sort_key(entry) >= chat_sort_key(previous):
                by_contact[entry["contact"]] = entry

        data = sorted(by_contact.values(), key=chat_sort_key, reverse=True)

        names = await self.lead_repo.get_names_by_contacts(user_id, [entry["contact"] for entry in data])
        for entry in data:
            entry["name"] = names.get(entry["contact"]) or entry["name"]
        return data
