# tests/test_main.py
"""
API tests: webhook ingress, tenant header and error mapping.
Services are patched, so no database or provider is needed.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.main import app
from app.shared.core.config import settings
from app.shared.db.session import get_db
from app.shared.utils.exceptions import (
    EntityNotFoundError,
    ProviderHTTPError,
    RateLimitExceededError,
    ValidationError,
)

WEBHOOK_URL = "/api/webhooks/evolution"
SEND_URL = "/api/evolution/messages/send"
TENANT = {"X-User-ID": "user-1"}


async def fake_db():
    yield MagicMock()


@pytest.fixture(autouse=True)
def override_db():
    app.dependency_overrides[get_db] = fake_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def process_mock():
    with patch("app.modules.evolution.api.webhook_endpoints.process_webhook_event", new=AsyncMock()) as mock:
        yield mock


def service_mock(path: str, **methods):
    """Patch a service class so every instance exposes the given AsyncMocks."""
    instance = MagicMock()
    for name, value in methods.items():
        setattr(instance, name, value)
    return patch(path, return_value=instance)


# --- 1. BASICS ---

def test_root(test_client):
    response = test_client.get("/")
    assert response.status_code == 200
    assert "running" in response.json()["message"]


def test_request_id_is_echoed(test_client):
    response = test_client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_is_generated(test_client):
    response = test_client.get("/")
    assert response.headers.get("X-Request-ID")


# --- 2. WEBHOOK INGRESS ---

def test_webhook_rejects_wrong_token(test_client, process_mock, inbound_upsert_payload):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", "secret"):
        response = test_client.post(
            WEBHOOK_URL, json=inbound_upsert_payload, headers={"Authorization": "Bearer nope"}
        )
    assert response.status_code == 401
    process_mock.assert_not_called()


def test_webhook_rejects_missing_token(test_client, process_mock, inbound_upsert_payload):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", "secret"):
        response = test_client.post(WEBHOOK_URL, json=inbound_upsert_payload)
    assert response.status_code == 401


def test_webhook_accepts_bearer_token(test_client, process_mock, inbound_upsert_payload):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", "secret"):
        response = test_client.post(
            WEBHOOK_URL, json=inbound_upsert_payload, headers={"Authorization": "Bearer secret"}
        )
    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    process_mock.assert_called_once_with(inbound_upsert_payload, None)


def test_webhook_accepts_token_header(test_client, process_mock, status_update_payload):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", "secret"):
        response = test_client.post(
            WEBHOOK_URL, json=status_update_payload, headers={"x-evolution-webhook-token": "secret"}
        )
    assert response.status_code == 200


def test_webhook_without_configured_secret_is_open(test_client, process_mock, inbound_upsert_payload):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", ""):
        response = test_client.post(WEBHOOK_URL, json=inbound_upsert_payload)
    assert response.status_code == 200


def test_per_event_route_forces_event_name(test_client, process_mock):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", ""):
        response = test_client.post(f"{WEBHOOK_URL}/messages-upsert", json={"instance": "clinic-01", "data": {}})
        assert response.status_code == 200
        assert process_mock.call_args.args[1] == "messages.upsert"

        test_client.post(f"{WEBHOOK_URL}/CONTACTS_UPSERT", json={"instance": "clinic-01", "data": []})
        assert process_mock.call_args.args[1] == "contacts.upsert"


def test_webhook_invalid_json(test_client, process_mock):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", ""):
        response = test_client.post(
            WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )
    assert response.status_code == 400
    process_mock.assert_not_called()


def test_webhook_rate_limited(test_client, process_mock):
    with patch.object(settings, "EVOLUTION_WEBHOOK_TOKEN", ""), \
         patch("app.modules.evolution.api.webhook_endpoints.webhook_rate_limiter.hit",
               side_effect=RateLimitExceededError("127.0.0.1", 1, 60)):
        response = test_client.post(WEBHOOK_URL, json={"event": "messages.upsert"})
    assert response.status_code == 429


# --- 3. TENANT HEADER & ERROR MAPPING ---

def test_missing_tenant_header(test_client):
    response = test_client.post(SEND_URL, json={"phone": "5511999999999", "text": "Oi"})
    assert response.status_code == 401


def test_send_message_ok(test_client):
    send = AsyncMock(return_value={"id": "client-abc", "status": "sent"})
    with service_mock("app.modules.evolution.api.message_endpoints.EvolutionMessageService", send_message=send):
        response = test_client.post(
            SEND_URL,
            json={"phone": "5511999999999", "text": "Oi", "client_message_id": "abc"},
            headers=TENANT
        )
    assert response.status_code == 200
    assert response.json() == {"id": "client-abc", "status": "sent"}
    assert send.call_args.args == ("user-1", "5511999999999")
    assert send.call_args.kwargs["client_message_id"] == "abc"


def test_send_message_soft_failure_is_200(test_client):
    send = AsyncMock(return_value={"id": "client-x", "status": "failed"})
    with service_mock("app.modules.evolution.api.message_endpoints.EvolutionMessageService", send_message=send):
        response = test_client.post(SEND_URL, json={"phone": "5511999999999", "text": "Oi"}, headers=TENANT)
    assert response.status_code == 200
    assert response.json()["status"] == "failed"


@pytest.mark.parametrize("error, status_code", [
    (RateLimitExceededError("user-1", 30, 60), 429),
    (ValidationError("Invalid phone number.", field="phone"), 400),
    (ProviderHTTPError(500, "boom", "/messages/send"), 502),
    (RuntimeError("unexpected"), 500),
])
def test_send_message_error_mapping(test_client, error, status_code):
    send = AsyncMock(side_effect=error)
    with service_mock("app.modules.evolution.api.message_endpoints.EvolutionMessageService", send_message=send):
        response = test_client.post(SEND_URL, json={"phone": "5511999999999", "text": "Oi"}, headers=TENANT)
    assert response.status_code == status_code


def test_current_session_null(test_client):
    current = AsyncMock(return_value=None)
    with service_mock("app.modules.evolution.api.session_endpoints.EvolutionSessionService", get_current_session=current):
        response = test_client.get("/api/evolution/instances/current", headers=TENANT)
    assert response.status_code == 200
    assert response.json() == {"session": None}


def test_foreign_instance_is_404(test_client):
    status = AsyncMock(side_effect=EntityNotFoundError("EvolutionInstance", "other", "Evolution instance not found."))
    with service_mock("app.modules.evolution.api.session_endpoints.EvolutionSessionService", get_status=status):
        response = test_client.get("/api/evolution/instances/other/status", headers=TENANT)
    assert response.status_code == 404
    assert response.json()["detail"] == "Evolution instance not found."
