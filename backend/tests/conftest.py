# tests/conftest.py
"""
Shared fixtures for all test modules.
Simplified version - avoids async fixtures to prevent event loop issues.
Async code is driven with asyncio.run() inside plain test functions.
"""

import pytest
from unittest.mock import MagicMock, AsyncMock
from fastapi.testclient import TestClient

# Import app
from app.main import app


# --- TEST CLIENT FIXTURE ---
@pytest.fixture(scope="module")
def test_client():
    """Create a FastAPI test client."""
    return TestClient(app)


# --- DATABASE SESSION FIXTURE ---
@pytest.fixture
def mock_db():
    """AsyncSession stand-in: services only commit/rollback/flush on it directly."""
    db = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    return db


# --- SAMPLE RECORD FIXTURES ---
@pytest.fixture
def clinic_instance():
    """Stored instance known only by its display name (provider id not learned yet)."""
    return {
        "id": 1,
        "user_id": "user-1",
        "instance_id": "user-1-a1b2c3d4",
        "provider_instance_id": None,
        "status": "connected",
        "connected_at": None,
        "instance_metadata": {"displayName": "clinic-01", "slotId": "slot1"},
    }


@pytest.fixture
def clinic_user():
    return {
        "id": "user-1",
        "api_key": "user-api-key",
        "company_id": "company-1",
        "company_name": "Clínica Sorriso",
        "company": {"id": "company-1", "name": "Clínica Sorriso"},
    }


# --- SAMPLE WEBHOOK PAYLOADS ---
@pytest.fixture
def inbound_upsert_payload():
    """messages.upsert for a first-contact text message."""
    return {
        "event": "messages.upsert",
        "instance": "clinic-01",
        "data": {
            "key": {"remoteJid": "5511999999999@s.whatsapp.net", "fromMe": False},
            "message": {"conversation": "Oi"},
            "pushName": "Maria",
            "messageTimestamp": 1700000000,
        },
    }


@pytest.fixture
def status_update_payload():
    return {
        "event": "messages.update",
        "instance": "clinic-01",
        "data": {
            "keyId": "3EB0C767D71A2B",
            "remoteJid": "5511999999999@s.whatsapp.net",
            "status": "READ",
        },
    }
