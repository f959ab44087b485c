import asyncio
import json

import httpx
import pytest

from app.modules.evolution.services.evolution_client import (
    CHAT_ROUTES,
    CONVERSATION_ROUTES,
    EvolutionClient,
    FixedRouteStrategy,
    ProbingRouteStrategy,
    extract_items,
)
from app.shared.utils.exceptions import ProviderHTTPError

BASE_URL = "https://evo.test"


def client_with(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EvolutionClient(base_url=BASE_URL, api_key="global-key", http_client=http, **kwargs), http


# --- mock mode ---

def test_mock_mode_without_configuration():
    async def test_logic():
        client = EvolutionClient(base_url="", api_key="")
        assert client.is_mock is True
        assert client.is_configured() is False

        created = await client.create_instance("user-1-abc")
        assert created["id"] == "user-1-abc"
        assert created["providerId"] == "mock-user-1-abc"

        qr = await client.get_qr_code("user-1-abc")
        assert qr["base64"].startswith("data:image/png;base64,")

        sent = await client.send_message("+5511999999999", text="oi", instance_id="user-1-abc")
        assert sent["status"] == "PENDING"

        chats = await client.list_chats("user-1-abc")
        assert len(chats) == 2

    asyncio.run(test_logic())


# --- requests ---

def test_requests_carry_apikey_header():
    async def test_logic():
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"instance": {"instanceName": "i1", "state": "open"}})

        client, http = client_with(handler)
        async with http:
            state = await client.get_state("i1")

        assert state["instance"]["state"] == "open"
        assert seen[0].headers["apikey"] == "global-key"
        assert seen[0].url.path == "/instance/connectionState/i1"

    asyncio.run(test_logic())


def test_get_state_falls_back_to_legacy_path_on_404():
    async def test_logic():
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.startswith("/instance/connectionState/"):
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"instance": {"state": "close"}})

        client, http = client_with(handler)
        async with http:
            state = await client.get_state("i1")

        assert paths == ["/instance/connectionState/i1", "/instance/state/i1"]
        assert state["instance"]["state"] == "close"

    asyncio.run(test_logic())


def test_provider_error_keeps_status_code():
    async def test_logic():
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"response": {"message": ["Forbidden", "bad key"]}})

        client, http = client_with(handler)
        async with http:
            with pytest.raises(ProviderHTTPError) as exc_info:
                await client.logout("i1")

        assert exc_info.value.status_code == 403
        assert "bad key" in exc_info.value.message

    asyncio.run(test_logic())


def test_delete_instance_falls_back_on_404():
    async def test_logic():
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/instance/i1/delete":
                return httpx.Response(404)
            return httpx.Response(200, json={})

        client, http = client_with(handler)
        async with http:
            await client.delete_instance("i1")

        assert paths == ["/instance/i1/delete", "/instance/delete/i1"]

    asyncio.run(test_logic())


def test_fetch_instance_matches_wrapped_entries():
    async def test_logic():
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[
                {"instance": {"instanceName": "other", "id": "p-0"}},
                {"instance": {"instanceName": "clinic-01", "id": "p-1", "connectionStatus": "open"}},
            ])

        client, http = client_with(handler)
        async with http:
            summary = await client.fetch_instance("clinic-01")

        assert summary["id"] == "p-1"
        assert summary["connectionStatus"] == "open"

    asyncio.run(test_logic())


def test_send_message_payload():
    async def test_logic():
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"key": {"id": "3EB0ABC"}, "status": "PENDING"})

        client, http = client_with(handler)
        async with http:
            result = await client.send_message(
                "+5511999999999", media_url="https://cdn.test/a.jpg", media_type="image",
                caption="foto", instance_id="i1"
            )

        assert bodies[0] == {
            "number": "+5511999999999",
            "instanceId": "i1",
            "mediaUrl": "https://cdn.test/a.jpg",
            "mediaType": "image",
            "caption": "foto",
        }
        assert result["id"] == "3EB0ABC"

    asyncio.run(test_logic())


# --- route discovery ---

def test_probing_memoizes_first_working_route():
    async def test_logic():
        probed = []

        async def probe(route):
            probed.append(route.name)
            return route.name == "chat_fetch_chats"

        strategy = ProbingRouteStrategy()
        first = await strategy.resolve("chats", CHAT_ROUTES, probe)
        second = await strategy.resolve("chats", CHAT_ROUTES, probe)

        assert first.name == second.name == "chat_fetch_chats"
        assert probed == ["chat_find_chats", "chat_fetch_chats"]

    asyncio.run(test_logic())


def test_probing_failure_is_not_memoized():
    async def test_logic():
        calls = []

        async def probe(route):
            calls.append(route.name)
            return False

        strategy = ProbingRouteStrategy()
        route = await strategy.resolve("conversation", CONVERSATION_ROUTES, probe)
        await strategy.resolve("conversation", CONVERSATION_ROUTES, probe)

        assert route == CONVERSATION_ROUTES[0]
        assert "conversation" not in strategy.resolved
        assert len(calls) == 2 * len(CONVERSATION_ROUTES)

    asyncio.run(test_logic())


def test_get_conversation_uses_discovered_route():
    async def test_logic():
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.startswith("/chat/fetchMessages/"):
                return httpx.Response(200, json={"messages": {"records": [{"key": {"id": "M1"}}]}})
            return httpx.Response(404, json={"message": "Cannot GET"})

        client, http = client_with(handler)
        async with http:
            first = await client.get_conversation("+55 11 99999-9999", "clinic-01", limit=20)
            probes = len(requests)
            await client.get_conversation("+55 11 99999-9999", "clinic-01", limit=20)

        assert extract_items(first) == [{"key": {"id": "M1"}}]
        # findMessages probe (404), fetchMessages probe, then the real call
        assert probes == 3
        assert requests[-1].url.params["number"] == "5511999999999"
        assert requests[-1].url.params["limit"] == "20"
        # Second call goes straight to the memoized route
        assert len(requests) == probes + 1

    asyncio.run(test_logic())


def test_extract_items_shapes():
    assert extract_items([1, 2]) == [1, 2]
    assert extract_items({"messages": {"records": [{"id": 1}]}}) == [{"id": 1}]
    assert extract_items({"data": []}) == []
    assert extract_items({"message": "not found"}) is None
    assert extract_items(None) is None


def test_fixed_route_strategy_skips_probing():
    async def test_logic():
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json=[{"id": "chat-1"}])

        strategy = FixedRouteStrategy({"chats": CHAT_ROUTES[2]})
        client, http = client_with(handler, route_strategy=strategy)
        async with http:
            chats = await client.list_chats("clinic-01", limit=5)

        assert chats == [{"id": "chat-1"}]
        assert paths == ["/chat/list/clinic-01"]

    asyncio.run(test_logic())
