"""
Evolution Webhook Service
Processes provider webhook envelopes in the background.

Supported events (normalized: lower-case, '_'/'-' -> '.'):
- messages.upsert   -> audit row, message upsert, live event, automation relay, lead
- messages.update   -> delivery status update by wamid (zero matches is a no-op)
- connection.update -> audit row + single best-effort relay
- contacts.* / chats.* -> one audit row per item
- anything else     -> generic audit row

Tenant resolution:
The provider echoes either its own instance id or the name we registered, so
the event's instanceId and instance name are matched against stored instance
records. messages.upsert alone falls back to the tenant api key embedded in
the payload. Unresolved events are logged and dropped, never persisted.

Nothing here raises back to the HTTP layer: the endpoint has already answered
{"status": "received"} by the time these handlers run.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.crm.repositories.lead_repository import LeadRepository
from app.modules.crm.repositories.user_repository import UserRepository
from app.modules.evolution.constants import (
    WebhookEventType,
    MessageDirection,
    WebhookRecordStatus,
    build_status_map,
    map_provider_status,
    LEAD_SOURCE_WHATSAPP,
    LEAD_INITIAL_STAGE,
)
from app.modules.evolution.repositories.instance_repository import EvolutionInstanceRepository
from app.modules.evolution.repositories.message_repository import WhatsAppMessageRepository
from app.modules.evolution.repositories.webhook_repository import WebhookRecordRepository
from app.modules.evolution.services.message_events import MessageEvent, MessageEventBus, message_event_bus
from app.modules.evolution.services.payload_extraction import (
    InboundMessage,
    build_json_row,
    event_items,
    item_phone,
    parse_inbound_message,
    unwrap_envelope,
)
from app.modules.evolution.services.relay_client import AutomationRelayClient, RelayResult, automation_relay_client
from app.shared.core.config import settings
from app.shared.core.logging import set_tenant_id
from app.shared.db.session import AsyncSessionLocal
from app.shared.utils.json_utils import dig, non_empty_str, redact_secrets, sha256_normalized, to_jsonable
from app.shared.utils.phone_utils import digits_only, jid_local_part, mask_phone, normalize_message_key

logger = logging.getLogger("evolution_webhook_service")

# Columns overwritten when the same wamid is delivered again
UPSERT_UPDATE_FIELDS = (
    "from_me",
    "direction",
    "message_type",
    "conversation",
    "caption",
    "media_url",
    "push_name",
    "delivery_status",
    "is_ad",
    "ad_source_type",
    "ad_source_id",
    "ad_source_url",
    "ctwa_clid",
    "ad_title",
    "ad_body",
    "ad_thumbnail_url",
    "conversion_source",
    "hashed_phone",
    "hashed_first_name",
    "hashed_last_name",
    "raw_json",
)


@dataclass
class TenantContext:
    """Who owns an event and which stored instance (if any) it came through."""
    user_id: str
    instance_name: Optional[str]
    event_instance_id: Optional[str]
    record: Optional[dict] = None

    @property
    def instance_id(self) -> Optional[str]:
        return (self.record or {}).get("instance_id") or self.instance_name

    @property
    def provider_instance_id(self) -> Optional[str]:
        return (self.record or {}).get("provider_instance_id") or self.event_instance_id

    @property
    def slot_id(self) -> Optional[str]:
        return non_empty_str(dig(self.record, "instance_metadata", "slotId"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def event_name_of(payload: Any, body: Dict[str, Any], forced_event: Optional[str] = None) -> str:
    raw = (
        body.get("event")
        or body.get("eventType")
        or dig(payload, "event")
        or dig(payload, "eventType")
        or forced_event
    )
    return WebhookEventType.normalize(raw)


def instance_name_of(body: Dict[str, Any]) -> Optional[str]:
    instance = body.get("instance")
    if isinstance(instance, dict):
        return non_empty_str(instance.get("instanceName")) or non_empty_str(instance.get("name"))
    return non_empty_str(instance)


def event_instance_id_of(body: Dict[str, Any]) -> Optional[str]:
    data = body.get("data")
    first = data[0] if isinstance(data, list) and data else data
    return (
        non_empty_str(dig(first, "instanceId"))
        or non_empty_str(body.get("instanceId"))
        or non_empty_str(dig(body, "instance", "instanceId"))
    )


def item_payload(payload: Any, body: Dict[str, Any], item: Any) -> Any:
    """The envelope narrowed to one data item (for list-shaped events)."""
    if body.get("data") is item:
        return payload
    return {"executionMode": dig(payload, "executionMode"), "body": {**body, "data": item}}


class EvolutionWebhookService:
    """
    High-level service for inbound Evolution webhooks.

    Provides:
    - handle_event: dictionary dispatch over normalized event names
    - one private handler per event family
    """

    def __init__(
        self,
        db: AsyncSession,
        relay: Optional[AutomationRelayClient] = None,
        event_bus: Optional[MessageEventBus] = None,
        status_overrides: Optional[str] = None
    ):
        self.db = db
        self.instance_repo = EvolutionInstanceRepository(db)
        self.message_repo = WhatsAppMessageRepository(db)
        self.webhook_repo = WebhookRecordRepository(db)
        self.lead_repo = LeadRepository(db)
        self.user_repo = UserRepository(db)
        self.relay = relay or automation_relay_client
        self.event_bus = event_bus or message_event_bus
        overrides = settings.EVOLUTION_STATUS_OVERRIDES if status_overrides is None else status_overrides
        self.status_map = build_status_map(overrides)

    # ============================================
    # WEBHOOK HANDLING (Dictionary Dispatch Pattern)
    # ============================================

    async def handle_event(self, payload: Dict[str, Any], forced_event: Optional[str] = None) -> Dict[str, Any]:
        """
        Process one provider envelope.

        Args:
            payload: {event, instance, data, body?} as received
            forced_event: Event implied by a dedicated route, used when the
                envelope omits its event name

        Returns:
            {"success": bool, "event": str, ...}; errors are logged, not raised
        """
        body = unwrap_envelope(payload)
        event = event_name_of(payload, body, forced_event)

        event_handlers = {
            WebhookEventType.MESSAGES_UPSERT.value: self._handle_messages_upsert,
            WebhookEventType.MESSAGES_UPDATE.value: self._handle_messages_update,
            WebhookEventType.CONNECTION_UPDATE.value: self._handle_connection_update,
            WebhookEventType.CONTACTS_UPDATE.value: self._handle_contacts,
            WebhookEventType.CONTACTS_UPSERT.value: self._handle_contacts,
            WebhookEventType.CONTACTS_SET.value: self._handle_contacts,
            WebhookEventType.CHATS_UPDATE.value: self._handle_chats,
            WebhookEventType.CHATS_UPSERT.value: self._handle_chats,
            WebhookEventType.CHATS_SET.value: self._handle_chats,
            WebhookEventType.CHATS_DELETE.value: self._handle_chats,
        }
        handler = event_handlers.get(event, self._handle_generic)

        logger.info(f"📬 Evolution webhook received: {event or 'unknown'} instance={instance_name_of(body)}")

        try:
            result = await handler(payload, body, event)
            await self.db.commit()
            return {"success": True, "event": event, **result}
        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ Webhook handler error ({event}): {str(e)}", exc_info=True)
            return {"success": False, "event": event, "error": str(e)}

    # ============================================
    # TENANT RESOLUTION
    # ============================================

    async def resolve_tenant(self, payload: Any, body: Dict[str, Any], allow_api_key: bool = False) -> Optional[TenantContext]:
        """
        Instance record by the event's instanceId, then by instance name.
        With allow_api_key, an unmapped event falls back to the tenant owning
        the api key found in the payload.
        """
        instance_name = instance_name_of(body)
        event_instance_id = event_instance_id_of(body)

        for key in dict.fromkeys(k for k in (event_instance_id, instance_name) if k):
            record = await self.instance_repo.find_by_event_instance(key)
            if record:
                set_tenant_id(record["user_id"])
                return TenantContext(record["user_id"], instance_name, event_instance_id, record)

        if allow_api_key:
            api_key = non_empty_str(dig(payload, "body", "apikey")) or non_empty_str(dig(payload, "apikey"))
            user_id = await self.user_repo.get_id_by_api_key(api_key) if api_key else None
            if user_id:
                logger.warning(
                    f"Webhook without a mapped instance, tenant resolved by api key. "
                    f"instance={instance_name} providerInstanceId={event_instance_id}"
                )
                set_tenant_id(user_id)
                return TenantContext(user_id, instance_name, event_instance_id)

        logger.warning(
            f"⚠️ Webhook for unknown instance dropped: instance={instance_name} providerInstanceId={event_instance_id}"
        )
        return None

    async def _create_audit(
        self,
        tenant: TenantContext,
        event: str,
        raw_json: Any,
        jsonrow: Optional[Dict[str, Any]] = None,
        wamid: Optional[str] = None,
        phone_raw: Optional[str] = None,
        status: Optional[str] = None
    ) -> dict:
        kwargs = {"status": status} if status else {}
        return await self.webhook_repo.create_record(
            user_id=tenant.user_id,
            event=event,
            raw_json=to_jsonable(redact_secrets(raw_json)),
            jsonrow=to_jsonable(redact_secrets(jsonrow)) if jsonrow is not None else None,
            instance_id=tenant.instance_id,
            provider_instance_id=tenant.provider_instance_id,
            slot_id=tenant.slot_id,
            wamid=wamid,
            phone_raw=phone_raw,
            received_at=utc_now(),
            **kwargs
        )

    async def _record_relay(self, record_id: int, result: RelayResult) -> None:
        if result.delivered:
            await self.webhook_repo.mark_sent(record_id, result.attempts)
        else:
            await self.webhook_repo.mark_failed(record_id, result.attempts, result.error)

    # ============================================
    # messages.upsert
    # ============================================

    async def _handle_messages_upsert(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        tenant = await self.resolve_tenant(payload, body, allow_api_key=True)
        if not tenant:
            return {"processed": 0, "dropped": True}

        processed = 0
        for item in event_items(body.get("data")):
            if not isinstance(item, dict):
                continue
            await self._process_upsert_item(tenant, item_payload(payload, body, item), body, item, event)
            processed += 1
        return {"processed": processed}

    async def _process_upsert_item(
        self,
        tenant: TenantContext,
        payload: Any,
        body: Dict[str, Any],
        data: Dict[str, Any],
        event: str
    ) -> None:
        message = parse_inbound_message(data)
        jsonrow = build_json_row(payload)

        # Audit row first: it must survive anything that fails below
        record = await self._create_audit(
            tenant, event, payload, jsonrow=jsonrow, wamid=message.wamid, phone_raw=message.phone
        )
        await self.db.commit()

        if not message.wamid:
            logger.warning(f"messages.upsert without a usable message id, audit only (webhook={record['id']})")
            await self.webhook_repo.mark_skipped(record["id"])
            return

        await self.message_repo.upsert_message(
            self._message_values(tenant.user_id, message, body, payload),
            UPSERT_UPDATE_FIELDS
        )
        await self.db.commit()

        self.event_bus.publish(MessageEvent(
            user_id=tenant.user_id,
            phone_raw=message.phone,
            event=WebhookEventType.MESSAGES_UPSERT.value,
            wamid=message.wamid
        ))

        if self.relay.is_configured():
            outbound = await self._build_relay_payload(tenant, message, body, jsonrow)
            await self.webhook_repo.set_outbound(record["id"], self.relay.url, to_jsonable(redact_secrets(outbound)))
            await self.db.commit()

            result = await self.relay.relay(to_jsonable(outbound))
            await self._record_relay(record["id"], result)
        else:
            await self.webhook_repo.mark_skipped(record["id"])
        await self.db.commit()

        if message.phone:
            await self._ensure_lead(tenant.user_id, message)

        logger.info(
            f"💬 messages.upsert stored wamid={message.wamid} phone={mask_phone(message.phone)} "
            f"direction={'OUTBOUND' if message.from_me else 'INBOUND'} ad={message.ad.is_ad}"
        )

    def _message_values(
        self,
        user_id: str,
        message: InboundMessage,
        body: Dict[str, Any],
        payload: Any
    ) -> Dict[str, Any]:
        values = {
            "user_id": user_id,
            "wamid": message.wamid,
            "remote_jid": message.remote_jid,
            "remote_jid_alt": message.remote_jid_alt,
            "phone_raw": message.phone,
            "addressing_mode": message.addressing_mode,
            "participant": message.participant,
            "sender": non_empty_str(body.get("sender")),
            "from_me": message.from_me,
            "direction": (MessageDirection.OUTBOUND if message.from_me else MessageDirection.INBOUND).value,
            "message_type": message.message_type,
            "conversation": message.text,
            "caption": message.caption,
            "media_url": message.media_url,
            "push_name": message.push_name,
            "timestamp": message.timestamp,
            "is_ad": message.ad.is_ad,
            "ad_source_type": message.ad.source_type,
            "ad_source_id": message.ad.source_id,
            "ad_source_url": message.ad.source_url,
            "ctwa_clid": message.ad.ctwa_clid,
            "ad_title": message.ad.title,
            "ad_body": message.ad.body,
            "ad_thumbnail_url": message.ad.thumbnail_url,
            "conversion_source": message.ad.conversion_source,
            "hashed_phone": message.hashed.phone,
            "hashed_first_name": message.hashed.first_name,
            "hashed_last_name": message.hashed.last_name,
            "raw_json": to_jsonable(redact_secrets(payload)),
        }
        # A redelivery without status must not erase one set by messages.update
        status = map_provider_status(message.status, self.status_map)
        if status:
            values["delivery_status"] = status.value
        return values

    async def _build_relay_payload(
        self,
        tenant: TenantContext,
        message: InboundMessage,
        body: Dict[str, Any],
        jsonrow: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Enriched body for the automation endpoint (api key included, unredacted)."""
        user = await self.user_repo.get_by_id(tenant.user_id)
        company = (user or {}).get("company")
        sender = non_empty_str(body.get("sender"))

        return {
            "jsonrow": jsonrow,
            "user_id": tenant.user_id,
            "company_id": dig(company, "id") or dig(user, "company_id"),
            "company_name": dig(company, "name") or dig(user, "company_name"),
            "instance_id": tenant.instance_id,
            "from_number": message.phone,
            "to_number": digits_only(jid_local_part(sender)) or None,
            "instance": {
                "userId": tenant.user_id,
                "instanceId": tenant.instance_id,
                "providerInstanceId": tenant.provider_instance_id,
                "apiKey": dig(user, "api_key"),
            },
            "webhooks": [
                {
                    "instance": tenant.instance_name or tenant.instance_id,
                    "instanceId": tenant.event_instance_id or tenant.provider_instance_id,
                    "number": message.phone,
                    "id": message.wamid,
                    "fromMe": message.from_me,
                    "conversation": message.text,
                    "messageType": message.message_type,
                    "name": message.push_name,
                    "timestamp": str(message.message_timestamp) if message.message_timestamp is not None else None,
                }
            ],
        }

    async def _ensure_lead(self, user_id: str, message: InboundMessage) -> None:
        """Create the contact's lead on first contact and link the message to it."""
        lead = await self.lead_repo.get_by_contact(user_id, message.phone)
        if not lead:
            lead = await self.lead_repo.create_lead(
                user_id=user_id,
                contact=message.phone,
                name=message.push_name,
                source=LEAD_SOURCE_WHATSAPP,
                stage=LEAD_INITIAL_STAGE,
                score=0
            )
            logger.info(f"🆕 Lead {lead['id']} created for {mask_phone(message.phone)}")

        await self.message_repo.link_lead(
            message.wamid, str(lead["id"]), hashed_email=sha256_normalized(lead.get("email"))
        )
        await self.db.commit()

    # ============================================
    # messages.update
    # ============================================

    async def _handle_messages_update(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        tenant = await self.resolve_tenant(payload, body)
        if not tenant:
            return {"processed": 0, "dropped": True}

        items = [item for item in event_items(body.get("data")) if isinstance(item, dict)]
        updated = 0
        first_wamid = None
        first_phone = None

        for item in items:
            wamid = (
                non_empty_str(item.get("keyId"))
                or non_empty_str(dig(item, "key", "id"))
                or non_empty_str(item.get("messageId"))
            )
            # Flat items carry the key fields at the top level
            phone = normalize_message_key(item if item.get("remoteJid") else item.get("key"))
            first_wamid = first_wamid or wamid
            first_phone = first_phone or phone

            raw_status = dig(item, "status")
            if raw_status is None:
                raw_status = dig(item, "update", "status")
            status = map_provider_status(raw_status, self.status_map)
            if not wamid or not status:
                logger.debug(f"messages.update item without wamid/known status skipped (wamid={wamid})")
                continue

            rows = await self.message_repo.update_by_wamid(
                wamid, {"delivery_status": status.value}, user_id=tenant.user_id
            )
            if rows == 0:
                # Provider may deliver the status before the upsert
                logger.warning(f"messages.update matched no message: wamid={wamid} status={status.value}")
                continue

            updated += rows
            self.event_bus.publish(MessageEvent(
                user_id=tenant.user_id,
                phone_raw=phone,
                event=WebhookEventType.MESSAGES_UPDATE.value,
                wamid=wamid
            ))

        await self._create_audit(
            tenant,
            event,
            payload,
            wamid=first_wamid if len(items) == 1 else None,
            phone_raw=first_phone if len(items) == 1 else None,
            status=WebhookRecordStatus.SKIPPED.value
        )
        return {"processed": len(items), "updated": updated}

    # ============================================
    # connection.update
    # ============================================

    async def _handle_connection_update(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        tenant = await self.resolve_tenant(payload, body)
        if not tenant:
            return {"processed": 0, "dropped": True}

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        phone = digits_only(jid_local_part(data.get("wuid") or body.get("sender"))) or None
        record = await self._create_audit(tenant, event, payload, phone_raw=phone)
        await self.db.commit()

        if not self.relay.is_configured():
            await self.webhook_repo.mark_skipped(record["id"])
            return {"processed": 1}

        outbound = {
            "event": event,
            "user_id": tenant.user_id,
            "instance_id": tenant.instance_id,
            "provider_instance_id": tenant.provider_instance_id,
            "state": data.get("state"),
            "status_reason": data.get("statusReason"),
            "number": phone,
            "received_at": utc_now().isoformat(),
        }
        await self.webhook_repo.set_outbound(record["id"], self.relay.url, outbound)
        result = await self.relay.relay_once(outbound)
        await self._record_relay(record["id"], result)

        logger.info(f"🔌 connection.update instance={tenant.instance_id} state={data.get('state')}")
        return {"processed": 1, "relayed": result.delivered}

    # ============================================
    # contacts.* / chats.*
    # ============================================

    async def _handle_contacts(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        def project(item: Dict[str, Any], phone: Optional[str]) -> Dict[str, Any]:
            return {
                "phone": phone,
                "pushName": item.get("pushName") or item.get("name"),
                "profilePicUrl": item.get("profilePicUrl") or item.get("profilePictureUrl"),
            }
        return await self._audit_items(payload, body, event, project)

    async def _handle_chats(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        def project(item: Dict[str, Any], phone: Optional[str]) -> Dict[str, Any]:
            unread = item.get("unreadCount")
            return {
                "phone": phone,
                "unreadCount": unread if unread is not None else item.get("unreadMessages"),
            }
        return await self._audit_items(payload, body, event, project)

    async def _audit_items(self, payload: Dict[str, Any], body: Dict[str, Any], event: str, project) -> Dict[str, Any]:
        """One audit row per data item; no message or lead changes."""
        tenant = await self.resolve_tenant(payload, body)
        if not tenant:
            return {"processed": 0, "dropped": True}

        items: List[Dict[str, Any]] = [item for item in event_items(body.get("data")) if isinstance(item, dict)]
        for item in items:
            phone = item_phone(item)
            await self._create_audit(
                tenant,
                event,
                {"event": event, "instance": instance_name_of(body), "data": item},
                jsonrow=project(item, phone),
                phone_raw=phone,
                status=WebhookRecordStatus.SKIPPED.value
            )
        return {"processed": len(items)}

    # ============================================
    # Unknown events
    # ============================================

    async def _handle_generic(self, payload: Dict[str, Any], body: Dict[str, Any], event: str) -> Dict[str, Any]:
        tenant = await self.resolve_tenant(payload, body)
        if not tenant:
            return {"processed": 0, "dropped": True}

        await self._create_audit(tenant, event or "unknown", payload, status=WebhookRecordStatus.SKIPPED.value)
        return {"processed": 1}


async def process_webhook_event(payload: Dict[str, Any], forced_event: Optional[str] = None) -> Dict[str, Any]:
    """
    Background entry point: own session per event.
    Never raises; failures are logged.
    """
    try:
        async with AsyncSessionLocal() as db:
            service = EvolutionWebhookService(db)
            return await service.handle_event(payload, forced_event)
    except Exception as e:
        logger.error(f"❌ Background webhook processing failed: {str(e)}", exc_info=True)
        return {"success": False, "error": str(e)}
    finally:
        set_tenant_id(None)
