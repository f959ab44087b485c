# tests/test_evolution_constants.py
"""
Provider state and delivery status classification.
"""
import pytest

from app.modules.evolution.constants import (
    DeliveryStatus,
    InstanceStatus,
    build_status_map,
    map_provider_status,
)


# --- 1. INSTANCE STATE ---

@pytest.mark.parametrize("state, expected", [
    ("connecting", InstanceStatus.PENDING),
    ("open", InstanceStatus.CONNECTED),
    ("connected", InstanceStatus.CONNECTED),
    ("disconnected", InstanceStatus.DISCONNECTED),
    ("close", InstanceStatus.DISCONNECTED),
    ("CLOSE", InstanceStatus.DISCONNECTED),
    ("garbage", InstanceStatus.DISCONNECTED),
    ("", InstanceStatus.DISCONNECTED),
    (None, InstanceStatus.DISCONNECTED),
])
def test_from_provider_state(state, expected):
    assert InstanceStatus.from_provider_state(state) == expected


# --- 2. DELIVERY STATUS ---

@pytest.mark.parametrize("raw, expected", [
    ("READ", DeliveryStatus.READ),
    ("delivery-ack", DeliveryStatus.DELIVERED),
    ("SERVER_ACK", DeliveryStatus.DELIVERED),
    ("PENDING", DeliveryStatus.SENT),
    (0, DeliveryStatus.FAILED),
    (1, DeliveryStatus.SENT),
    (2, DeliveryStatus.DELIVERED),
    ("3", DeliveryStatus.DELIVERED),
    (4, DeliveryStatus.READ),
    (5, DeliveryStatus.READ),
])
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw, build_status_map()) == expected


@pytest.mark.parametrize("raw", [None, True, 9, "NOPE"])
def test_map_provider_status_unknown(raw):
    assert map_provider_status(raw, build_status_map()) is None


def test_override_applies_to_numeric_ack():
    status_map = build_status_map("SERVER_ACK=SENT")
    assert map_provider_status("SERVER_ACK", status_map) == DeliveryStatus.SENT
    assert map_provider_status(2, status_map) == DeliveryStatus.SENT
