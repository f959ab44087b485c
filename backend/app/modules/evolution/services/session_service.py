"""
Evolution Session Service
Lifecycle of a tenant's WhatsApp connection on the Evolution provider.

Orchestrates:
- Session start / QR refresh / status polling
- Disconnect, remove (provider + local) and detach (local only)
- Managed instance creation with webhook slot resolution
- Adopting an instance that already exists on the provider
- Provider-side webhook subscription sync

State machine (per instance): disconnected -> pending -> connected
- Status always follows what the provider reports, except for explicit
  disconnect / remove calls.
- Starting a session while connected forces a logout to get a fresh QR.
- If the provider no longer knows the instance, the local record is reset
  to disconnected and a fresh instance is created.

Every status change merges a metadata patch into the stored record; the
merged metadata is the cache for QR artifacts and the requested number.
"""
import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.evolution.constants import (
    InstanceStatus,
    DEFAULT_WEBHOOK_EVENTS,
    MANAGED_INSTANCE_INTEGRATION,
    WEBHOOK_INGRESS_PATH,
    SLOT_IDS,
)
from app.modules.evolution.repositories.instance_repository import EvolutionInstanceRepository
from app.modules.evolution.services.evolution_client import evolution_client, EvolutionClient
from app.shared.core.config import settings
from app.shared.utils.exceptions import EntityNotFoundError, ProviderHTTPError, ValidationError
from app.shared.utils.json_utils import dig, non_empty_str
from app.shared.utils.phone_utils import WHATSAPP_USER_SUFFIX, normalize_phone_digits, validate_phone

logger = logging.getLogger("evolution_session_service")

ENTITY_NAME = "EvolutionInstance"
UNKNOWN_STATE = "unknown"


# ============================================
# METADATA HELPERS
# ============================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def provider_state_of(state: Optional[dict], summary: Optional[dict]) -> str:
    """state.instance.state -> state.status -> summary.connectionStatus -> 'unknown'"""
    return (
        non_empty_str(dig(state, "instance", "state"))
        or non_empty_str(dig(state, "status"))
        or non_empty_str(dig(summary, "connectionStatus"))
        or UNKNOWN_STATE
    )


def extract_phone_from_summary(summary: Optional[dict]) -> Optional[str]:
    if not summary:
        return None
    number = non_empty_str(summary.get("number"))
    if number:
        return number
    owner = non_empty_str(summary.get("ownerJid"))
    return owner.replace(WHATSAPP_USER_SUFFIX, "") if owner else None


def extract_phone_from_metadata(metadata: Any) -> Optional[str]:
    number = non_empty_str(dig(metadata, "number"))
    if number:
        return number
    owner = non_empty_str(dig(metadata, "ownerJid"))
    return owner.replace(WHATSAPP_USER_SUFFIX, "") if owner else None


def extract_requested_number(metadata: Any) -> Optional[str]:
    return non_empty_str(dig(metadata, "requestedNumber")) or non_empty_str(dig(metadata, "number"))


def pairing_number(phone_number: Optional[str]) -> Optional[str]:
    """
    International digits for a pairing-code request, None when not given.

    The provider derives the pairing code from the full number, so it must
    carry a country code libphonenumber accepts.
    """
    if not phone_number:
        return None
    result = validate_phone(normalize_phone_digits(phone_number))
    if not result.is_valid:
        raise ValidationError(f"Invalid phone number for pairing: {result.error}", field="phone_number")
    return result.e164.lstrip("+")


def extract_name_from_metadata(metadata: Any) -> Optional[str]:
    return (
        non_empty_str(dig(metadata, "profileName"))
        or non_empty_str(dig(metadata, "name"))
        or non_empty_str(dig(metadata, "displayName"))
    )


def extract_pairing_code(metadata: Any) -> Optional[str]:
    return non_empty_str(dig(metadata, "lastPairingCode"))


def extract_profile_pic(metadata: Any) -> Optional[str]:
    return non_empty_str(dig(metadata, "profilePicUrl"))


def extract_slot_id(metadata: Any) -> Optional[str]:
    return non_empty_str(dig(metadata, "slotId"))


def resolve_provider_instance_id(record: dict) -> Optional[str]:
    metadata = record.get("instance_metadata")
    return (
        non_empty_str(record.get("provider_instance_id"))
        or non_empty_str(dig(metadata, "providerId"))
        or non_empty_str(dig(metadata, "providerInstanceId"))
    )


def qr_from_payload(payload: Any) -> Dict[str, Any]:
    """Provider connect answer -> {svg, base64, code, status, pairingCode, count}"""
    count = dig(payload, "count")
    return {
        "svg": non_empty_str(dig(payload, "qrCode")),
        "base64": non_empty_str(dig(payload, "base64")),
        "code": non_empty_str(dig(payload, "code")),
        "status": non_empty_str(dig(payload, "status")),
        "pairingCode": non_empty_str(dig(payload, "pairingCode")),
        "count": count if isinstance(count, int) and not isinstance(count, bool) else None,
    }


def qr_metadata(qr: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "lastQrSvg": qr.get("svg"),
        "lastQrBase64": qr.get("base64"),
        "lastQrCode": qr.get("code"),
        "lastQrStatus": qr.get("status"),
        "lastPairingCode": qr.get("pairingCode"),
        "lastQrCount": qr.get("count"),
        "lastQrAt": now_iso(),
    }


def read_qr_from_metadata(metadata: Any) -> Optional[Dict[str, Any]]:
    """Cached QR from metadata, or None when no base64/svg/code is stored."""
    base64 = non_empty_str(dig(metadata, "lastQrBase64"))
    svg = non_empty_str(dig(metadata, "lastQrSvg"))
    code = non_empty_str(dig(metadata, "lastQrCode"))
    if not (base64 or svg or code):
        return None

    count = dig(metadata, "lastQrCount")
    if isinstance(count, str):
        try:
            count = int(float(count))
        except ValueError:
            count = None
    elif not isinstance(count, int) or isinstance(count, bool):
        count = None

    return {
        "base64": base64,
        "svg": svg,
        "code": code,
        "status": non_empty_str(dig(metadata, "lastQrStatus")) or InstanceStatus.PENDING.value,
        "pairingCode": extract_pairing_code(metadata),
        "count": count,
    }


def normalize_webhook_url(value: Any) -> str:
    """Trim whitespace and stray quotes/backticks pasted into env files."""
    if not isinstance(value, str):
        return ""
    return value.strip().strip("`'\"").strip()


def read_webhook_events() -> List[str]:
    """EVOLUTION_WEBHOOK_EVENTS as upper-case provider names, deduplicated."""
    raw = (settings.EVOLUTION_WEBHOOK_EVENTS or "").replace(",", " ").split()
    parsed = [item.strip().upper().replace(".", "_").replace("-", "_") for item in raw if item.strip()]
    return list(dict.fromkeys(parsed)) or list(DEFAULT_WEBHOOK_EVENTS)


def build_webhook_headers() -> Dict[str, str]:
    """Headers the provider sends back to our ingress endpoint."""
    headers: Dict[str, str] = {}
    if settings.EVOLUTION_WEBHOOK_AUTHORIZATION:
        headers["authorization"] = settings.EVOLUTION_WEBHOOK_AUTHORIZATION
    if settings.EVOLUTION_WEBHOOK_TOKEN:
        headers["x-evolution-webhook-token"] = settings.EVOLUTION_WEBHOOK_TOKEN
    headers["Content-Type"] = settings.EVOLUTION_WEBHOOK_CONTENT_TYPE or "application/json"
    return headers


def build_managed_instance_payload(webhook_url: str) -> Dict[str, Any]:
    return {
        "integration": MANAGED_INSTANCE_INTEGRATION,
        "groupsIgnore": True,
        "webhook": {
            "url": webhook_url,
            "byEvents": settings.EVOLUTION_WEBHOOK_BY_EVENTS,
            "base64": settings.EVOLUTION_WEBHOOK_BASE64,
            "headers": build_webhook_headers(),
            "events": read_webhook_events(),
        },
    }


def build_instance_name(user_id: str) -> str:
    """'<user>-<8 random hex chars>'"""
    return f"{user_id}-{secrets.token_hex(4)}"


def slot_webhook_urls() -> Dict[str, str]:
    return {
        "slot1": settings.EVOLUTION_SLOT1_WEBHOOK_URL,
        "slot2": settings.EVOLUTION_SLOT2_WEBHOOK_URL,
        "slot3": settings.EVOLUTION_SLOT3_WEBHOOK_URL,
        "slot4": settings.EVOLUTION_SLOT4_WEBHOOK_URL,
    }


def session_response(instance_id: str, status: str, **fields: Any) -> Dict[str, Any]:
    """Uniform session payload; unspecified fields are None."""
    response = {
        "instance_id": instance_id,
        "provider_instance_id": None,
        "status": status.value if isinstance(status, InstanceStatus) else status,
        "qr_code": None,
        "number": None,
        "name": None,
        "profile_pic_url": None,
        "provider_status": None,
        "message": None,
        "pairing_code": None,
        "slot_id": None,
    }
    response.update(fields)
    return response


class EvolutionSessionService:
    """
    High-level service for Evolution instance sessions.

    Provides:
    - start_session / refresh_qr / get_status / get_current_session
    - disconnect / remove_instance / detach_instance
    - create_managed_instance / register_existing_instance / sync_webhook
    - list_managed_instances / find_instance_owner
    """

    def __init__(self, db: AsyncSession, client: Optional[EvolutionClient] = None):
        self.db = db
        self.client = client or evolution_client
        self.instance_repo = EvolutionInstanceRepository(db)

    # ============================================
    # PROVIDER HELPERS (404 = already gone)
    # ============================================

    async def safe_get_state(self, instance_id: str) -> Optional[dict]:
        try:
            return await self.client.get_state(instance_id)
        except ProviderHTTPError as e:
            if e.is_not_found:
                logger.warning(f"Evolution instance {instance_id} was not found on provider.")
                return None
            raise

    async def safe_fetch_instance(self, instance_name: str, provider_id: Optional[str]) -> Optional[dict]:
        try:
            return await self.client.fetch_instance(instance_name, provider_id)
        except (ProviderHTTPError, httpx.HTTPError) as e:
            logger.debug(f"fetchInstances failed for {instance_name}: {e}")
            return None

    async def safe_logout(self, instance_id: str) -> None:
        try:
            await self.client.logout(instance_id)
        except ProviderHTTPError as e:
            if e.is_not_found:
                return
            logger.warning(f"Failed to logout Evolution instance {instance_id}: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to logout Evolution instance {instance_id}: {e}")

    async def _probe_provider(self, record: dict, safe_state: bool = True) -> Tuple[Optional[dict], Optional[dict]]:
        """(state, summary) fetched concurrently."""
        instance_id = record["instance_id"]
        state_call = self.safe_get_state(instance_id) if safe_state else self.client.get_state(instance_id)
        state, summary = await asyncio.gather(
            state_call,
            self.safe_fetch_instance(instance_id, resolve_provider_instance_id(record))
        )
        return state, summary

    # ============================================
    # RECORD HELPERS
    # ============================================

    async def get_owned_instance(self, user_id: str, instance_id: str) -> dict:
        """The instance if it exists and belongs to the tenant, else EntityNotFoundError."""
        record = await self.instance_repo.get_by_instance_id(instance_id)
        if not record or record["user_id"] != user_id:
            raise EntityNotFoundError(ENTITY_NAME, instance_id, "Evolution instance not found.")
        return record

    async def _update(
        self,
        record: dict,
        values: Optional[Dict[str, Any]] = None,
        metadata_patch: Optional[Dict[str, Any]] = None
    ) -> dict:
        updated = await self.instance_repo.update_instance(record["id"], values, metadata_patch)
        return updated or record

    async def _fetch_qr(self, record: dict, provider_id: Optional[str], phone_number: Optional[str] = None) -> Dict[str, Any]:
        """Fetch a QR from the provider and cache it on the record (status -> pending)."""
        payload = await self.client.get_qr_code(record["instance_id"], phone_number)
        qr = qr_from_payload(payload)

        metadata = record.get("instance_metadata")
        await self._update(
            record,
            {
                "status": InstanceStatus.PENDING.value,
                "provider_instance_id": provider_id or resolve_provider_instance_id(record),
            },
            {
                **qr_metadata(qr),
                "requestedNumber": phone_number or extract_requested_number(metadata),
            }
        )
        return qr

    # ============================================
    # SESSION OPERATIONS
    # ============================================

    async def start_session(self, user_id: str, phone_number: Optional[str] = None) -> Dict[str, Any]:
        """
        Start (or restart) the tenant's WhatsApp session and return a QR.

        - Latest instance still known by the provider: reuse it (logout first
          if it is connected) and fetch a fresh QR.
        - Provider no longer knows it: reset the record to disconnected and
          create a fresh instance.
        - No instance yet: create one.
        """
        phone_number = pairing_number(phone_number)
        current = await self.instance_repo.get_latest_for_user(user_id)

        if current:
            provider_id = resolve_provider_instance_id(current)
            state, summary = await self._probe_provider(current)

            if state or summary:
                metadata = current.get("instance_metadata")
                provider_state = provider_state_of(state, summary)
                status = InstanceStatus.from_provider_state(provider_state)
                requested_number = (
                    phone_number
                    or extract_phone_from_summary(summary)
                    or extract_requested_number(metadata)
                    or extract_phone_from_metadata(metadata)
                )
                resolved_provider_id = dig(summary, "id") or provider_id

                if status == InstanceStatus.CONNECTED:
                    logger.info(f"Instance {current['instance_id']} connected, logging out to issue a new QR")
                    await self.safe_logout(current["instance_id"])

                qr = await self._fetch_qr(current, resolved_provider_id, requested_number)

                await self._update(
                    current,
                    {
                        "status": InstanceStatus.PENDING.value,
                        "connected_at": None,
                        "provider_instance_id": resolved_provider_id,
                    },
                    {
                        "lastState": provider_state,
                        "connectionStatus": dig(summary, "connectionStatus"),
                        "ownerJid": dig(summary, "ownerJid"),
                        "profileName": dig(summary, "profileName"),
                        "profilePicUrl": dig(summary, "profilePicUrl"),
                        "number": requested_number,
                        "requestedNumber": requested_number,
                        "providerId": resolved_provider_id,
                        "lastStatusAt": now_iso(),
                        "lastPairingCode": qr["pairingCode"],
                        "lastQrCode": qr["code"],
                        "lastQrCount": qr["count"],
                    }
                )
                await self.db.commit()

                return session_response(
                    current["instance_id"],
                    InstanceStatus.PENDING,
                    provider_instance_id=resolved_provider_id,
                    qr_code=qr,
                    number=requested_number,
                    name=dig(summary, "profileName") or extract_name_from_metadata(metadata),
                    provider_status=provider_state,
                    message=dig(state, "message"),
                    pairing_code=qr["pairingCode"] or extract_pairing_code(metadata),
                )

            logger.warning(
                f"Instance {current['instance_id']} no longer exists on provider, resetting and creating a new one"
            )
            await self._update(
                current,
                {"status": InstanceStatus.DISCONNECTED.value, "connected_at": None},
                {"lastState": UNKNOWN_STATE, "lastStatusAt": now_iso()}
            )
            await self.db.flush()

        return await self.create_fresh_session(user_id, phone_number)

    async def create_fresh_session(self, user_id: str, phone_number: Optional[str] = None) -> Dict[str, Any]:
        """Create a brand-new provider instance for the tenant and return its first QR."""
        alias = build_instance_name(user_id)
        created = await self.client.create_instance(alias)
        qr = qr_from_payload(await self.client.get_qr_code(created["id"], phone_number))
        summary = await self.safe_fetch_instance(created["id"], created.get("providerId"))

        summary_number = extract_phone_from_summary(summary) or phone_number
        provider_instance_id = dig(summary, "id") or created.get("providerId")

        metadata = {
            "displayName": created.get("name") or alias,
            **qr_metadata(qr),
            "providerId": provider_instance_id,
            "token": created.get("token"),
            "rawInstance": created.get("raw"),
            "connectionStatus": dig(summary, "connectionStatus"),
            "ownerJid": dig(summary, "ownerJid"),
            "profileName": dig(summary, "profileName"),
            "profilePicUrl": dig(summary, "profilePicUrl"),
            "number": summary_number,
            "requestedNumber": phone_number or summary_number,
        }

        await self.instance_repo.create_instance(
            user_id=user_id,
            instance_id=created["id"],
            provider_instance_id=provider_instance_id,
            status=InstanceStatus.PENDING.value,
            metadata=metadata
        )
        await self.db.commit()

        logger.info(f"Created Evolution instance {created['id']} for user {user_id}")
        return session_response(
            created["id"],
            InstanceStatus.PENDING,
            provider_instance_id=provider_instance_id,
            qr_code=qr,
            number=summary_number,
            name=dig(summary, "profileName") or created.get("name"),
            pairing_code=qr["pairingCode"],
        )

    async def refresh_qr(self, user_id: str, instance_id: str, phone_number: Optional[str] = None) -> Dict[str, Any]:
        """New QR for an owned instance; logs out first if it is connected or pairing."""
        phone_number = pairing_number(phone_number)
        instance = await self.get_owned_instance(user_id, instance_id)
        metadata = instance.get("instance_metadata")
        provider_id = resolve_provider_instance_id(instance)
        state, summary = await self._probe_provider(instance)
        provider_state = provider_state_of(state, summary)
        summary_number = extract_phone_from_summary(summary)

        if provider_state in ("connected", "open", "pending"):
            await self.safe_logout(instance_id)

        resolved_provider_id = dig(summary, "id") or provider_id
        patch: Dict[str, Any] = {
            "lastState": provider_state,
            "providerId": resolved_provider_id,
            "lastStatusAt": now_iso(),
        }
        if summary_number:
            patch["number"] = summary_number
        for key in ("connectionStatus", "ownerJid", "profileName", "profilePicUrl"):
            if dig(summary, key):
                patch[key] = summary[key]

        qr = await self._fetch_qr(instance, resolved_provider_id, phone_number or summary_number)

        await self._update(
            instance,
            {
                "status": InstanceStatus.PENDING.value,
                "connected_at": None,
                "provider_instance_id": resolved_provider_id,
            },
            patch
        )
        await self.db.commit()

        return session_response(
            instance_id,
            InstanceStatus.PENDING,
            provider_instance_id=resolved_provider_id,
            qr_code=qr,
            number=summary_number or extract_phone_from_metadata(metadata),
            name=dig(summary, "profileName") or extract_name_from_metadata(metadata),
            profile_pic_url=dig(summary, "profilePicUrl") or extract_profile_pic(metadata),
            provider_status=provider_state,
            pairing_code=qr["pairingCode"],
        )

    async def get_status(self, user_id: str, instance_id: str) -> Dict[str, Any]:
        """
        Current status of an owned instance.

        Unlike start/current, a provider error on the state call propagates.
        """
        instance = await self.get_owned_instance(user_id, instance_id)
        metadata = instance.get("instance_metadata")
        provider_id = resolve_provider_instance_id(instance)
        state, summary = await self._probe_provider(instance, safe_state=False)

        provider_state = provider_state_of(state, summary)
        status = InstanceStatus.from_provider_state(provider_state)
        summary_number = extract_phone_from_summary(summary)
        resolved_provider_id = dig(summary, "id") or provider_id

        if status == InstanceStatus.CONNECTED:
            connected_at = instance.get("connected_at") or utc_now()
        elif status == InstanceStatus.DISCONNECTED:
            connected_at = None
        else:
            connected_at = instance.get("connected_at")

        qr_code = None
        if status == InstanceStatus.PENDING:
            qr_code = read_qr_from_metadata(metadata) or await self._fetch_qr(instance, resolved_provider_id)

        patch: Dict[str, Any] = {"lastState": provider_state}
        for key in ("connectionStatus", "ownerJid", "profileName", "profilePicUrl"):
            if dig(summary, key):
                patch[key] = summary[key]
        if summary_number:
            patch["number"] = summary_number
        patch["providerId"] = resolved_provider_id
        patch["lastStatusAt"] = now_iso()

        await self._update(instance, {"status": status.value, "connected_at": connected_at}, patch)
        await self.db.commit()

        return session_response(
            instance_id,
            status,
            provider_instance_id=resolved_provider_id,
            qr_code=qr_code,
            number=summary_number or extract_phone_from_metadata(metadata),
            name=dig(summary, "profileName") or extract_name_from_metadata(metadata),
            profile_pic_url=dig(summary, "profilePicUrl") or extract_profile_pic(metadata),
            provider_status=provider_state,
            message=dig(state, "message"),
            pairing_code=extract_pairing_code(metadata),
        )

    async def get_current_session(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        The tenant's latest instance with refreshed status.

        Returns None for a tenant that never created an instance.
        """
        current = await self.instance_repo.get_latest_for_user(user_id)
        if not current:
            return None

        metadata = current.get("instance_metadata")
        provider_id = resolve_provider_instance_id(current)
        state, summary = await self._probe_provider(current)
        stored_qr = read_qr_from_metadata(metadata)

        if not state and not summary:
            await self._update(
                current,
                {
                    "status": InstanceStatus.DISCONNECTED.value,
                    "connected_at": None,
                    "provider_instance_id": None,
                },
                {"lastState": UNKNOWN_STATE, "lastStatusAt": now_iso()}
            )
            await self.db.commit()
            return session_response(current["instance_id"], InstanceStatus.DISCONNECTED, qr_code=stored_qr)

        provider_state = provider_state_of(state, summary)
        status = InstanceStatus.from_provider_state(provider_state)
        summary_number = extract_phone_from_summary(summary)
        requested_number = extract_requested_number(metadata) or summary_number
        resolved_provider_id = dig(summary, "id") or provider_id
        name = dig(summary, "profileName") or extract_name_from_metadata(metadata)

        patch: Dict[str, Any] = {
            "lastState": provider_state,
            "connectionStatus": dig(summary, "connectionStatus"),
            "ownerJid": dig(summary, "ownerJid"),
            "profileName": dig(summary, "profileName"),
            "profilePicUrl": dig(summary, "profilePicUrl"),
            "number": summary_number or requested_number,
            "requestedNumber": requested_number,
            "providerId": resolved_provider_id,
            "lastStatusAt": now_iso(),
        }

        if status == InstanceStatus.CONNECTED:
            await self._update(
                current,
                {
                    "status": status.value,
                    "connected_at": current.get("connected_at") or utc_now(),
                    "provider_instance_id": resolved_provider_id,
                },
                patch
            )
            await self.db.commit()
            return session_response(
                current["instance_id"],
                status,
                provider_instance_id=resolved_provider_id,
                qr_code=stored_qr,
                number=summary_number or extract_phone_from_metadata(metadata) or requested_number,
                name=name,
                provider_status=provider_state,
                pairing_code=extract_pairing_code(metadata),
            )

        if status == InstanceStatus.PENDING:
            qr = stored_qr or await self._fetch_qr(current, resolved_provider_id, requested_number)
            patch.update({
                "lastPairingCode": qr.get("pairingCode"),
                "lastQrCode": qr.get("code"),
                "lastQrCount": qr.get("count"),
            })
            await self._update(
                current,
                {
                    "status": status.value,
                    "connected_at": None,
                    "provider_instance_id": resolved_provider_id,
                },
                patch
            )
            await self.db.commit()
            return session_response(
                current["instance_id"],
                status,
                provider_instance_id=resolved_provider_id,
                qr_code=qr,
                number=requested_number or extract_phone_from_metadata(metadata),
                name=name,
                provider_status=provider_state,
                message=dig(state, "message"),
                pairing_code=qr.get("pairingCode") or extract_pairing_code(metadata),
            )

        await self._update(
            current,
            {
                "status": status.value,
                "connected_at": None,
                "provider_instance_id": resolved_provider_id,
            },
            patch
        )
        await self.db.commit()
        return session_response(
            current["instance_id"],
            status,
            provider_instance_id=resolved_provider_id,
            qr_code=stored_qr,
            number=summary_number or extract_phone_from_metadata(metadata) or requested_number,
            name=name,
            provider_status=provider_state,
            message=dig(state, "message"),
            pairing_code=extract_pairing_code(metadata),
        )

    async def disconnect(self, user_id: str, instance_id: str) -> Dict[str, Any]:
        """Best-effort provider logout, then mark the record disconnected."""
        instance = await self.get_owned_instance(user_id, instance_id)
        await self.safe_logout(instance_id)

        await self._update(
            instance,
            {"status": InstanceStatus.DISCONNECTED.value, "connected_at": None},
            {"lastState": InstanceStatus.DISCONNECTED.value, "lastStatusAt": now_iso()}
        )
        await self.db.commit()
        return session_response(instance_id, InstanceStatus.DISCONNECTED)

    async def remove_instance(self, user_id: str, instance_id: str) -> Dict[str, Any]:
        """
        Logout and delete on the provider (both best-effort), then delete the
        local record regardless of what the provider answered.
        """
        instance = await self.get_owned_instance(user_id, instance_id)
        await self.safe_logout(instance_id)

        try:
            await self.client.delete_instance(instance_id)
        except ProviderHTTPError as e:
            if not e.is_not_found:
                logger.warning(f"Provider delete failed for {instance_id}, removing local record anyway: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Provider delete failed for {instance_id}, removing local record anyway: {e}")

        await self.instance_repo.delete_instance(instance["id"])
        await self.db.commit()

        logger.info(f"Removed Evolution instance {instance_id} for user {user_id}")
        return session_response(instance_id, InstanceStatus.DISCONNECTED)

    async def detach_instance(self, user_id: str, instance_id: str) -> Dict[str, Any]:
        """Forget the instance locally; the provider side is left untouched."""
        instance = await self.get_owned_instance(user_id, instance_id)
        await self.instance_repo.delete_instance(instance["id"])
        await self.db.commit()
        return session_response(instance_id, InstanceStatus.DISCONNECTED)

    async def list_managed_instances(self, user_id: str) -> List[Dict[str, Any]]:
        """Status of every tenant instance; a failing one degrades to disconnected/unknown."""
        records = await self.instance_repo.list_for_user(user_id, oldest_first=True)

        sessions = []
        for record in records:
            try:
                sessions.append(await self.get_status(user_id, record["instance_id"]))
            except (ProviderHTTPError, httpx.HTTPError, EntityNotFoundError) as e:
                logger.warning(f"Failed to refresh status of Evolution instance {record['instance_id']}: {e}")
                metadata = record.get("instance_metadata")
                sessions.append(session_response(
                    record["instance_id"],
                    InstanceStatus.DISCONNECTED,
                    provider_instance_id=resolve_provider_instance_id(record),
                    number=extract_phone_from_metadata(metadata),
                    name=extract_name_from_metadata(metadata),
                    profile_pic_url=extract_profile_pic(metadata),
                    provider_status=UNKNOWN_STATE,
                    pairing_code=extract_pairing_code(metadata),
                    qr_code=read_qr_from_metadata(metadata),
                    slot_id=extract_slot_id(metadata),
                ))
        return sessions

    # ============================================
    # MANAGED INSTANCES & WEBHOOKS
    # ============================================

    async def resolve_auto_slot_configuration(self, user_id: str) -> Tuple[str, Optional[str]]:
        """
        (webhook_url, slot_id) for a new instance.

        First slot1..slot4 not yet used by the tenant that has a configured
        URL; else BACKEND_PUBLIC_URL + ingress path with no slot.
        """
        used = set(await self.instance_repo.get_used_slot_ids(user_id))
        urls = slot_webhook_urls()
        for slot_id in SLOT_IDS:
            url = normalize_webhook_url(urls.get(slot_id))
            if slot_id not in used and url:
                return url, slot_id

        backend = normalize_webhook_url(settings.BACKEND_PUBLIC_URL)
        if backend:
            return f"{backend.rstrip('/')}{WEBHOOK_INGRESS_PATH}", None

        raise ValidationError(
            "No Evolution slot available and BACKEND_PUBLIC_URL is not configured.",
            field="webhook_url"
        )

    async def create_managed_instance(self, user_id: str, instance_name: Optional[str] = None) -> Dict[str, Any]:
        """Create a provider instance with our webhook embedded; stored disconnected until paired."""
        webhook_url, slot_id = await self.resolve_auto_slot_configuration(user_id)
        name = (instance_name or "").strip() or build_instance_name(user_id)

        if await self.instance_repo.find_by_display_name(user_id, name):
            raise ValidationError("An Evolution instance with this name already exists.", field="instance_name")

        created = await self.client.create_instance(name, build_managed_instance_payload(webhook_url))
        summary = await self.safe_fetch_instance(created["id"], created.get("providerId"))

        provider_instance_id = dig(summary, "id") or created.get("providerId")
        number = extract_phone_from_summary(summary)
        provider_status = dig(summary, "connectionStatus") or "created"

        await self.instance_repo.create_instance(
            user_id=user_id,
            instance_id=created["id"],
            provider_instance_id=provider_instance_id,
            status=InstanceStatus.DISCONNECTED.value,
            metadata={
                "displayName": name,
                "slotId": slot_id,
                "lastState": provider_status,
                "lastStatusAt": now_iso(),
                "providerId": provider_instance_id,
                "webhookUrl": webhook_url,
                "number": number,
                "token": created.get("token"),
            }
        )
        await self.db.commit()

        logger.info(f"Created managed Evolution instance {created['id']} (slot={slot_id}) for user {user_id}")
        return session_response(
            created["id"],
            InstanceStatus.DISCONNECTED,
            provider_instance_id=provider_instance_id,
            number=number,
            name=dig(summary, "profileName") or name,
            provider_status=provider_status,
            slot_id=slot_id,
        )

    async def register_existing_instance(self, user_id: str, instance_name: str, token: str) -> Dict[str, Any]:
        """
        Adopt an instance that already exists on the provider.

        The token proves ownership: an existing local record with the same
        instance id is reassigned to the caller.
        """
        summary = await self.safe_fetch_instance(instance_name, token)
        if not summary:
            raise EntityNotFoundError(ENTITY_NAME, instance_name, "Evolution instance not found on provider.")

        provider_state = non_empty_str(summary.get("connectionStatus")) or UNKNOWN_STATE
        status = InstanceStatus.from_provider_state(provider_state)
        number = extract_phone_from_summary(summary)
        provider_instance_id = summary.get("id")
        resolved_instance_id = summary.get("instanceName") or summary.get("name") or instance_name
        webhook_url, _ = await self.resolve_auto_slot_configuration(user_id)

        patch = {
            "displayName": instance_name,
            "lastState": provider_state,
            "lastStatusAt": now_iso(),
            "providerId": provider_instance_id,
            "number": number,
            "token": token,
            "profileName": summary.get("profileName"),
            "profilePicUrl": summary.get("profilePicUrl"),
            "ownerJid": summary.get("ownerJid"),
            "webhookUrl": webhook_url,
        }

        existing = await self.instance_repo.get_by_instance_id(resolved_instance_id)
        if existing:
            if existing["user_id"] != user_id:
                logger.warning(f"Reassigning Evolution instance {resolved_instance_id} to user {user_id}")
            connected_at = (existing.get("connected_at") or utc_now()) if status == InstanceStatus.CONNECTED else None
            await self._update(
                existing,
                {
                    "user_id": user_id,
                    "status": status.value,
                    "connected_at": connected_at,
                    "provider_instance_id": provider_instance_id,
                },
                patch
            )
        else:
            await self.instance_repo.create_instance(
                user_id=user_id,
                instance_id=resolved_instance_id,
                provider_instance_id=provider_instance_id,
                status=status.value,
                metadata=patch,
                connected_at=utc_now() if status == InstanceStatus.CONNECTED else None
            )

        await self._sync_webhook_for_instance(user_id, resolved_instance_id, webhook_url)
        await self.db.commit()

        return session_response(
            resolved_instance_id,
            status,
            provider_instance_id=provider_instance_id,
            number=number,
            name=summary.get("profileName") or instance_name,
            provider_status=provider_state,
        )

    async def sync_webhook(self, user_id: str, instance_key: str) -> Dict[str, Any]:
        """Push the webhook subscription for one of the tenant's instances."""
        key = (instance_key or "").strip()
        if not key:
            raise ValidationError("Invalid instance.", field="instance_id")

        record = await self.instance_repo.get_for_user(user_id, key)
        if not record:
            raise EntityNotFoundError(ENTITY_NAME, key, "Evolution instance not found.")

        webhook_url = normalize_webhook_url(dig(record.get("instance_metadata"), "webhookUrl"))
        if not webhook_url:
            webhook_url, _ = await self.resolve_auto_slot_configuration(user_id)

        await self._sync_webhook_for_instance(user_id, record["instance_id"], webhook_url)
        await self.db.commit()

        return {
            "instance_id": record["instance_id"],
            "provider_instance_id": record.get("provider_instance_id"),
            "webhook_url": webhook_url,
        }

    async def _sync_webhook_for_instance(self, user_id: str, instance_id: str, webhook_url: str) -> None:
        """
        Subscribe the webhook, degrading the request until the provider accepts it:
        full event list -> messages + connection -> MESSAGES_UPSERT only,
        each with byEvents as configured and then false.
        """
        headers = build_webhook_headers()
        desired = read_webhook_events()
        event_attempts = [
            desired,
            [e for e in desired if e.startswith("MESSAGES_") or e == "CONNECTION_UPDATE"],
            ["MESSAGES_UPSERT"],
        ]
        by_events_attempts = list(dict.fromkeys([settings.EVOLUTION_WEBHOOK_BY_EVENTS, False]))

        last_error: Optional[Exception] = None
        synced = False
        for events in (attempt for attempt in event_attempts if attempt):
            for by_events in by_events_attempts:
                try:
                    await self.client.set_webhook(
                        instance_id,
                        webhook_url,
                        events,
                        headers=headers,
                        by_events=by_events,
                        base64=settings.EVOLUTION_WEBHOOK_BASE64,
                        enabled=True
                    )
                    synced = True
                    break
                except (ProviderHTTPError, httpx.HTTPError) as e:
                    last_error = e
                    logger.warning(
                        f"Webhook sync rejected for {instance_id} (events={len(events)}, byEvents={by_events}): {e}"
                    )
            if synced:
                break

        if not synced and last_error is not None:
            raise last_error

        record = await self.instance_repo.get_for_user(user_id, instance_id)
        if not record:
            raise EntityNotFoundError(ENTITY_NAME, instance_id, "Evolution instance not found for webhook sync.")

        await self._update(record, metadata_patch={"webhookUrl": webhook_url, "lastWebhookSyncAt": now_iso()})

    async def find_instance_owner(
        self,
        instance_id: Optional[str] = None,
        provider_instance_id: Optional[str] = None,
        phone_number: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        record = await self.instance_repo.find_owner(instance_id, provider_instance_id, phone_number)
        if not record:
            return None
        return {
            "user_id": record["user_id"],
            "instance_id": record["instance_id"],
            "provider_instance_id": record.get("provider_instance_id"),
        }
