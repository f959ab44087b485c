import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.modules.evolution.services.session_service import (
    EvolutionSessionService,
    pairing_number,
    qr_from_payload,
    read_qr_from_metadata,
    read_webhook_events,
)
from app.shared.core.config import settings
from app.shared.utils.exceptions import EntityNotFoundError, ProviderHTTPError, ValidationError

NOT_FOUND = ProviderHTTPError(404, "Not Found", "/instance/connectionState/x")


def build_service(mock_db, record=None):
    client = MagicMock()
    client.get_state = AsyncMock(return_value={"instance": {"state": "connecting"}})
    client.fetch_instance = AsyncMock(return_value=None)
    client.get_qr_code = AsyncMock(return_value={"base64": "data:image/png;base64,NEW", "code": "2@new", "count": 1})
    client.logout = AsyncMock()
    client.delete_instance = AsyncMock()
    client.create_instance = AsyncMock(return_value={"id": "user-1-new", "name": "user-1-new", "providerId": "p-new"})
    client.set_webhook = AsyncMock(return_value={})

    repo = MagicMock()
    repo.get_latest_for_user = AsyncMock(return_value=record)
    repo.get_by_instance_id = AsyncMock(return_value=record)
    repo.get_for_user = AsyncMock(return_value=record)
    repo.update_instance = AsyncMock(return_value=record)
    repo.delete_instance = AsyncMock(return_value=1)
    repo.create_instance = AsyncMock(return_value={})
    repo.get_used_slot_ids = AsyncMock(return_value=[])
    repo.find_by_display_name = AsyncMock(return_value=None)
    repo.list_for_user = AsyncMock(return_value=[record] if record else [])

    service = EvolutionSessionService(mock_db, client=client)
    service.instance_repo = repo
    return service


# --- helpers ---

def test_qr_from_payload_ignores_non_integer_count():
    qr = qr_from_payload({"base64": "b64", "code": "c", "count": "2", "pairingCode": ""})
    assert qr["base64"] == "b64"
    assert qr["count"] is None
    assert qr["pairingCode"] is None


def test_read_qr_from_metadata():
    assert read_qr_from_metadata({"lastPairingCode": "X"}) is None
    qr = read_qr_from_metadata({"lastQrCode": "2@abc", "lastQrCount": "3"})
    assert qr["code"] == "2@abc"
    assert qr["count"] == 3
    assert qr["status"] == "pending"


def test_read_webhook_events_normalizes_names():
    with patch.object(settings, "EVOLUTION_WEBHOOK_EVENTS", "messages.upsert, connection-update MESSAGES_UPSERT"):
        assert read_webhook_events() == ["MESSAGES_UPSERT", "CONNECTION_UPDATE"]


# --- current session ---

def test_current_session_is_none_without_instance(mock_db):
    async def test_logic():
        service = build_service(mock_db, record=None)
        assert await service.get_current_session("user-1") is None
        service.client.get_state.assert_not_called()

    asyncio.run(test_logic())


def test_current_session_pending_returns_stored_qr(mock_db, clinic_instance):
    async def test_logic():
        record = dict(clinic_instance, instance_metadata={
            **clinic_instance["instance_metadata"],
            "lastQrBase64": "data:image/png;base64,OLD",
            "lastPairingCode": "ABCD1234",
        })
        service = build_service(mock_db, record)

        session = await service.get_current_session("user-1")

        assert session["status"] == "pending"
        assert session["qr_code"]["base64"] == "data:image/png;base64,OLD"
        assert session["pairing_code"] == "ABCD1234"
        service.client.get_qr_code.assert_not_called()
        values = service.instance_repo.update_instance.call_args.args[1]
        assert values["status"] == "pending"

    asyncio.run(test_logic())


def test_current_session_pending_fetches_qr_when_none_stored(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)

        session = await service.get_current_session("user-1")

        assert session["status"] == "pending"
        assert session["qr_code"]["code"] == "2@new"
        service.client.get_qr_code.assert_awaited_once()

    asyncio.run(test_logic())


def test_current_session_resets_when_provider_forgot_instance(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.get_state = AsyncMock(side_effect=NOT_FOUND)
        service.client.fetch_instance = AsyncMock(side_effect=NOT_FOUND)

        session = await service.get_current_session("user-1")

        assert session["status"] == "disconnected"
        values = service.instance_repo.update_instance.call_args.args[1]
        assert values == {"status": "disconnected", "connected_at": None, "provider_instance_id": None}

    asyncio.run(test_logic())


def test_current_session_connected(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.get_state = AsyncMock(return_value={"instance": {"state": "open"}})
        service.client.fetch_instance = AsyncMock(return_value={
            "id": "p-1", "ownerJid": "5511911112222@s.whatsapp.net", "profileName": "Clínica",
        })

        session = await service.get_current_session("user-1")

        assert session["status"] == "connected"
        assert session["number"] == "5511911112222"
        assert session["provider_instance_id"] == "p-1"
        values = service.instance_repo.update_instance.call_args.args[1]
        assert values["connected_at"] is not None

    asyncio.run(test_logic())


# --- start / status ---

def test_start_session_logs_out_connected_instance(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.get_state = AsyncMock(return_value={"instance": {"state": "open"}})

        session = await service.start_session("user-1", "5511988887777")

        service.client.logout.assert_awaited_once_with("user-1-a1b2c3d4")
        service.client.get_qr_code.assert_awaited_once_with("user-1-a1b2c3d4", "5511988887777")
        assert session["status"] == "pending"
        assert session["number"] == "5511988887777"

    asyncio.run(test_logic())


def test_start_session_recreates_when_provider_forgot_instance(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.get_state = AsyncMock(side_effect=NOT_FOUND)

        session = await service.start_session("user-1")

        service.client.create_instance.assert_awaited_once()
        assert session["instance_id"] == "user-1-new"
        assert session["status"] == "pending"
        created = service.instance_repo.create_instance.call_args.kwargs
        assert created["provider_instance_id"] == "p-new"

    asyncio.run(test_logic())


def test_get_status_propagates_provider_errors(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.get_state = AsyncMock(side_effect=ProviderHTTPError(500, "boom"))

        with pytest.raises(ProviderHTTPError):
            await service.get_status("user-1", "user-1-a1b2c3d4")

    asyncio.run(test_logic())


# --- ownership ---

def test_foreign_instance_is_not_found(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)

        with pytest.raises(EntityNotFoundError):
            await service.disconnect("user-2", "user-1-a1b2c3d4")
        service.client.logout.assert_not_called()

    asyncio.run(test_logic())


# --- disconnect / remove / detach ---

def test_disconnect_tolerates_missing_provider_instance(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.logout = AsyncMock(side_effect=NOT_FOUND)

        session = await service.disconnect("user-1", "user-1-a1b2c3d4")

        assert session["status"] == "disconnected"
        mock_db.commit.assert_awaited()

    asyncio.run(test_logic())


def test_remove_deletes_locally_even_when_provider_fails(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.delete_instance = AsyncMock(side_effect=ProviderHTTPError(500, "boom"))

        await service.remove_instance("user-1", "user-1-a1b2c3d4")

        service.instance_repo.delete_instance.assert_awaited_once_with(1)

    asyncio.run(test_logic())


def test_remove_tolerates_transport_errors(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)
        service.client.logout = AsyncMock(side_effect=httpx.ConnectError("refused"))
        service.client.delete_instance = AsyncMock(side_effect=httpx.ConnectError("refused"))

        await service.remove_instance("user-1", "user-1-a1b2c3d4")

        service.instance_repo.delete_instance.assert_awaited_once_with(1)

    asyncio.run(test_logic())


def test_detach_never_calls_provider(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)

        await service.detach_instance("user-1", "user-1-a1b2c3d4")

        service.instance_repo.delete_instance.assert_awaited_once_with(1)
        service.client.logout.assert_not_called()
        service.client.delete_instance.assert_not_called()

    asyncio.run(test_logic())


# --- managed instances ---

def test_create_managed_instance_takes_first_free_slot(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        service.instance_repo.get_used_slot_ids = AsyncMock(return_value=["slot1"])

        with patch.object(settings, "EVOLUTION_SLOT1_WEBHOOK_URL", "https://n8n.test/slot1"), \
             patch.object(settings, "EVOLUTION_SLOT2_WEBHOOK_URL", " `https://n8n.test/slot2` "):
            session = await service.create_managed_instance("user-1", "clinic-02")

        assert session["slot_id"] == "slot2"
        assert session["status"] == "disconnected"
        name, config = service.client.create_instance.call_args.args
        assert name == "clinic-02"
        assert config["webhook"]["url"] == "https://n8n.test/slot2"
        metadata = service.instance_repo.create_instance.call_args.kwargs["metadata"]
        assert metadata["slotId"] == "slot2"
        assert metadata["displayName"] == "clinic-02"

    asyncio.run(test_logic())


def test_create_managed_instance_without_any_webhook_target(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        with patch.object(settings, "BACKEND_PUBLIC_URL", ""), \
             patch.object(settings, "EVOLUTION_SLOT1_WEBHOOK_URL", ""), \
             patch.object(settings, "EVOLUTION_SLOT2_WEBHOOK_URL", ""), \
             patch.object(settings, "EVOLUTION_SLOT3_WEBHOOK_URL", ""), \
             patch.object(settings, "EVOLUTION_SLOT4_WEBHOOK_URL", ""):
            with pytest.raises(ValidationError):
                await service.create_managed_instance("user-1")
        service.client.create_instance.assert_not_called()

    asyncio.run(test_logic())


def test_create_managed_instance_rejects_duplicate_name(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db)
        service.instance_repo.find_by_display_name = AsyncMock(return_value=clinic_instance)
        with patch.object(settings, "BACKEND_PUBLIC_URL", "https://crm.test"):
            with pytest.raises(ValidationError):
                await service.create_managed_instance("user-1", "clinic-01")

    asyncio.run(test_logic())


def test_sync_webhook_falls_back_to_byevents_false(mock_db, clinic_instance):
    async def test_logic():
        record = dict(clinic_instance, instance_metadata={"webhookUrl": "https://crm.test/api/webhooks/evolution"})
        service = build_service(mock_db, record)
        service.client.set_webhook = AsyncMock(side_effect=[ProviderHTTPError(400, "byEvents"), {}])

        with patch.object(settings, "EVOLUTION_WEBHOOK_BY_EVENTS", True):
            result = await service.sync_webhook("user-1", "user-1-a1b2c3d4")

        assert result["webhook_url"] == "https://crm.test/api/webhooks/evolution"
        calls = service.client.set_webhook.call_args_list
        assert [c.kwargs["by_events"] for c in calls] == [True, False]
        patch_values = service.instance_repo.update_instance.call_args.args[2]
        assert patch_values["webhookUrl"] == "https://crm.test/api/webhooks/evolution"

    asyncio.run(test_logic())


def test_find_instance_owner(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db)
        service.instance_repo.find_owner = AsyncMock(side_effect=[clinic_instance, None])

        owner = await service.find_instance_owner(instance_id="user-1-a1b2c3d4")
        missing = await service.find_instance_owner(phone_number="5511000000000")

        assert owner == {"user_id": "user-1", "instance_id": "user-1-a1b2c3d4", "provider_instance_id": None}
        assert missing is None

    asyncio.run(test_logic())


# --- pairing number ---

def test_pairing_number_normalizes_to_international_digits():
    assert pairing_number("+55 (11) 98888-7777") == "5511988887777"
    assert pairing_number(None) is None
    assert pairing_number("") is None


def test_pairing_number_rejects_numbers_without_valid_region():
    with pytest.raises(ValidationError) as exc_info:
        pairing_number("12345")
    assert exc_info.value.field == "phone_number"


def test_start_session_rejects_invalid_pairing_number(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)

        with pytest.raises(ValidationError):
            await service.start_session("user-1", "0000")

        service.instance_repo.get_latest_for_user.assert_not_called()
        service.client.get_qr_code.assert_not_called()
        service.client.create_instance.assert_not_called()

    asyncio.run(test_logic())


def test_refresh_qr_requests_code_for_normalized_number(mock_db, clinic_instance):
    async def test_logic():
        service = build_service(mock_db, clinic_instance)

        session = await service.refresh_qr("user-1", "user-1-a1b2c3d4", "+55 11 98888-7777")

        assert service.client.get_qr_code.call_args.args[1] == "5511988887777"
        assert session["status"] == "pending"

    asyncio.run(test_logic())
