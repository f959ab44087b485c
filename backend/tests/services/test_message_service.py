import asyncio
from datetime import datetime, timezone

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.modules.evolution.services.message_events import MessageEventBus
from app.modules.evolution.services.message_service import (
    EvolutionMessageService,
    build_client_wamid,
    chat_entry,
    parse_cursor,
    require_phone,
)
from app.shared.core.config import settings
from app.shared.utils.cache import SimpleCache
from app.shared.utils.exceptions import ProviderHTTPError, RateLimitExceededError, ValidationError
from app.shared.utils.rate_limiter import RateLimiter


def build_service(mock_db, http_client=None, limit=30):
    client = MagicMock()
    client.send_message = AsyncMock(return_value={"key": {"id": "PROVIDER-1"}})

    service = EvolutionMessageService(
        mock_db,
        client=client,
        rate_limiter=RateLimiter(limit=limit, window_seconds=60),
        chats_cache=SimpleCache(),
        event_bus=MessageEventBus(),
        http_client=http_client
    )

    message_repo = MagicMock()
    message_repo.get_by_wamid = AsyncMock(return_value=None)
    message_repo.upsert_message = AsyncMock(return_value={})
    message_repo.update_by_wamid = AsyncMock(return_value=1)
    message_repo.list_updates = AsyncMock(return_value=[])

    instance_repo = MagicMock()
    instance_repo.list_for_user = AsyncMock(return_value=[
        {"instance_id": "user-1-a1b2c3d4", "provider_instance_id": "prov-1"},
    ])
    instance_repo.get_for_user = AsyncMock(return_value=None)

    service.message_repo = message_repo
    service.instance_repo = instance_repo
    return service


def media_client(status_code=200, headers=None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, headers=headers or {})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


# --- helpers ---

def test_require_phone():
    assert require_phone("+55 11 99999-9999") == "5511999999999"
    with pytest.raises(ValidationError):
        require_phone("12-34")


def test_build_client_wamid():
    assert build_client_wamid("abc") == "client-abc"
    generated = build_client_wamid()
    assert generated.startswith("client-")
    assert generated != build_client_wamid()


def test_parse_cursor_units():
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert parse_cursor("1700000000") == expected
    assert parse_cursor(1700000000000) == expected
    assert parse_cursor("2023-11-14T22:13:20Z") == expected
    assert parse_cursor("") is None
    assert parse_cursor("not a date") is None


def test_chat_entry_skips_groups():
    now = datetime.now(timezone.utc)
    assert chat_entry({"remoteJid": "120363000000@g.us"}, now) is None
    entry = chat_entry({"remoteJid": "5511999999999@s.whatsapp.net", "pushName": "Maria"}, now)
    assert entry["contact"] == "5511999999999"
    assert entry["name"] == "Maria"


# --- send_message ---

def test_send_text_message_marks_sent(mock_db):
    async def test_logic():
        service = build_service(mock_db)

        result = await service.send_message("user-1", "+55 (11) 99999-9999", text="Olá", client_message_id="abc")

        assert result == {"id": "client-abc", "status": "sent"}
        values = service.message_repo.upsert_message.call_args.args[0]
        assert values["wamid"] == "client-abc"
        assert values["delivery_status"] == "QUEUED"
        assert values["direction"] == "OUTBOUND"
        assert values["phone_raw"] == "5511999999999"

        service.client.send_message.assert_awaited_once()
        assert service.client.send_message.call_args.kwargs["number"] == "+5511999999999"
        assert service.client.send_message.call_args.kwargs["instance_id"] == "user-1-a1b2c3d4"

        wamid, update = service.message_repo.update_by_wamid.call_args.args
        assert wamid == "client-abc"
        assert update["delivery_status"] == "SENT"
        assert update["raw_json"]["providerResp"] == {"key": {"id": "PROVIDER-1"}}

    asyncio.run(test_logic())


def test_send_is_rate_limited_before_side_effects(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        for i in range(30):
            await service.send_message("user-1", "5511999999999", text=f"msg {i}")
        service.message_repo.upsert_message.reset_mock()
        service.client.send_message.reset_mock()

        with pytest.raises(RateLimitExceededError):
            await service.send_message("user-1", "5511999999999", text="one too many")

        service.message_repo.upsert_message.assert_not_called()
        service.client.send_message.assert_not_called()

    asyncio.run(test_logic())


def test_send_rejects_short_phone(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        with pytest.raises(ValidationError):
            await service.send_message("user-1", "12345", text="hi")
        service.message_repo.upsert_message.assert_not_called()

    asyncio.run(test_logic())


def test_oversized_media_is_rejected_without_provider_call(mock_db):
    async def test_logic():
        http, calls = media_client(headers={"content-type": "image/jpeg", "content-length": str(11 * 1024 * 1024)})
        async with http:
            service = build_service(mock_db, http_client=http)
            with pytest.raises(ValidationError):
                await service.send_message(
                    "user-1", "5511999999999",
                    media_url="https://cdn.test/big.jpg",
                    client_message_id="media-1"
                )

        assert calls[0].method == "HEAD"
        service.client.send_message.assert_not_called()
        service.message_repo.update_by_wamid.assert_awaited_once_with(
            "client-media-1", {"delivery_status": "FAILED"}
        )

    asyncio.run(test_logic())


def test_media_with_disallowed_content_type_is_rejected(mock_db):
    async def test_logic():
        http, _ = media_client(headers={"content-type": "text/html"})
        async with http:
            service = build_service(mock_db, http_client=http)
            check = await service.validate_media("https://cdn.test/page")
        assert check.ok is False

    asyncio.run(test_logic())


def test_valid_media_is_sent_with_detected_type(mock_db):
    async def test_logic():
        http, _ = media_client(headers={"content-type": "video/mp4", "content-length": "1024"})
        async with http:
            service = build_service(mock_db, http_client=http)
            result = await service.send_message(
                "user-1", "5511999999999", media_url="https://cdn.test/clip.mp4", caption="veja"
            )

        assert result["status"] == "sent"
        assert service.client.send_message.call_args.kwargs["media_type"] == "video"

    asyncio.run(test_logic())


def test_provider_failure_returns_soft_failure(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        service.client.send_message = AsyncMock(side_effect=ProviderHTTPError(500, "boom", "/message/sendText"))

        result = await service.send_message("user-1", "5511999999999", text="hi", client_message_id="f1")

        assert result == {"id": "client-f1", "status": "failed"}
        # Both instance ids were tried before giving up
        assert service.client.send_message.await_count == 2
        update = service.message_repo.update_by_wamid.call_args.args[1]
        assert update["delivery_status"] == "FAILED"

    asyncio.run(test_logic())


def test_same_client_message_id_reuses_row(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        first = await service.send_message("user-1", "5511999999999", text="hi", client_message_id="dup")
        service.message_repo.get_by_wamid = AsyncMock(return_value={"user_id": "user-1", "wamid": "client-dup"})
        second = await service.send_message("user-1", "5511999999999", text="hi", client_message_id="dup")

        assert first["id"] == second["id"] == "client-dup"
        wamids = [c.args[0]["wamid"] for c in service.message_repo.upsert_message.call_args_list]
        assert wamids == ["client-dup", "client-dup"]

    asyncio.run(test_logic())


def test_client_message_id_of_another_tenant_is_refused(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        service.message_repo.get_by_wamid = AsyncMock(return_value={"user_id": "user-2", "wamid": "client-dup"})

        with pytest.raises(ValidationError):
            await service.send_message("user-1", "5511999999999", text="hi", client_message_id="dup")
        service.message_repo.upsert_message.assert_not_called()

    asyncio.run(test_logic())


# --- reads ---

def test_updates_refuse_provider_source(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        with pytest.raises(ValidationError):
            await service.list_updates("user-1", "5511999999999", source="provider")

    asyncio.run(test_logic())


def test_updates_cursor_advances(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        ts = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        updated = datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)
        service.message_repo.list_updates = AsyncMock(return_value=[{
            "id": 7, "wamid": "W1", "from_me": False, "direction": "INBOUND",
            "conversation": "Oi", "message_type": "conversation",
            "timestamp": ts, "updated_at": updated,
        }])

        result = await service.list_updates("user-1", "5511999999999", after_timestamp="0")

        assert [m["id"] for m in result["data"]] == ["W1"]
        assert result["cursor"]["last_timestamp"] == ts
        assert result["cursor"]["last_updated_at"] == updated

    asyncio.run(test_logic())


def test_send_uses_the_instance_token(mock_db):
    async def test_logic():
        service = build_service(mock_db)
        service.instance_repo.get_for_user = AsyncMock(return_value={
            "instance_id": "user-1-a1b2c3d4",
            "provider_instance_id": "prov-1",
            "instance_metadata": {"token": "instance-token"},
        })

        await service.send_message("user-1", "5511999999999", text="hi", instance_id="user-1-a1b2c3d4")

        kwargs = service.client.send_message.call_args.kwargs
        assert kwargs["instance_id"] == "user-1-a1b2c3d4"
        assert kwargs["token"] == "instance-token"

    asyncio.run(test_logic())


def test_send_falls_back_to_default_token(mock_db):
    async def test_logic():
        service = build_service(mock_db)

        with patch.object(settings, "EVOLUTION_DEFAULT_TOKEN", "default-token"):
            await service.send_message("user-1", "5511999999999", text="hi")

        assert service.client.send_message.call_args.kwargs["token"] == "default-token"

    asyncio.run(test_logic())
