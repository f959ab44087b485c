from datetime import datetime, timezone

from app.modules.evolution.services.payload_extraction import (
    build_json_row,
    event_items,
    item_phone,
    parse_inbound_message,
    parse_timestamp,
    resolve_ad_context,
    resolve_message_type,
    resolve_text,
    synthetic_wamid,
    unwrap_envelope,
)
from app.shared.utils.json_utils import sha256_normalized


AD_REPLY = {
    "sourceType": "ad",
    "sourceId": "120210000000",
    "sourceUrl": "https://fb.me/ad",
    "ctwaClid": "clid-1",
    "title": "Clareamento",
}


# --- text / type resolution ---

def test_text_fallback_chain():
    assert resolve_text({"conversation": "Oi", "extendedTextMessage": {"text": "ignored"}}) == "Oi"
    assert resolve_text({"extendedTextMessage": {"text": "Olá"}}) == "Olá"
    assert resolve_text({"imageMessage": {"caption": "raio-x"}}) == "raio-x"
    assert resolve_text({"audioMessage": {}}) is None
    assert resolve_text(None) is None


def test_message_type_explicit_then_inferred():
    assert resolve_message_type({"messageType": "reactionMessage", "message": {"conversation": "x"}}) == "reactionMessage"
    assert resolve_message_type({"message": {"imageMessage": {}, "extendedTextMessage": {}}}) == "extendedTextMessage"
    assert resolve_message_type({"message": {}}) is None


# --- ad attribution ---

def test_ad_context_from_media_sub_object():
    data = {"message": {"videoMessage": {"contextInfo": {"externalAdReply": AD_REPLY}}}}
    ad = resolve_ad_context(data)

    assert ad.is_ad is True
    assert ad.source_id == "120210000000"
    assert ad.ctwa_clid == "clid-1"


def test_ad_context_from_conversion_source_only():
    ad = resolve_ad_context({"contextInfo": {"conversionSource": "FB_Ads"}})
    assert ad.is_ad is True
    assert ad.source_id is None


def test_direct_context_wins_over_nested():
    data = {
        "contextInfo": {"conversionSource": "organic"},
        "message": {"imageMessage": {"contextInfo": {"externalAdReply": AD_REPLY}}},
    }
    assert resolve_ad_context(data).is_ad is False


def test_no_context_is_not_an_ad():
    assert resolve_ad_context({"message": {"conversation": "Oi"}}).is_ad is False


# --- inbound message ---

def test_parse_inbound_message_lid_addressing():
    data = {
        "key": {
            "id": "3EB0C767D71A2B",
            "remoteJid": "123456789@lid",
            "remoteJidAlt": "5511988887777@s.whatsapp.net",
            "addressingMode": "lid",
            "fromMe": False,
        },
        "pushName": "Maria Souza",
        "message": {"imageMessage": {"caption": "foto", "url": "https://mmg.test/x.enc"}},
        "messageTimestamp": 1700000000,
    }
    message = parse_inbound_message(data)

    assert message.wamid == "3EB0C767D71A2B"
    assert message.phone == "5511988887777"
    assert message.text == "foto"
    assert message.caption == "foto"
    assert message.media_url == "https://mmg.test/x.enc"
    assert message.message_type == "imageMessage"
    assert message.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert message.hashed.phone == sha256_normalized("5511988887777")
    assert message.hashed.first_name == sha256_normalized("maria")
    assert message.hashed.last_name == sha256_normalized("souza")


def test_missing_key_id_gets_stable_synthetic_wamid(inbound_upsert_payload):
    first = parse_inbound_message(inbound_upsert_payload["data"])
    again = parse_inbound_message(inbound_upsert_payload["data"])

    assert first.wamid == "evo-5511999999999-in-1700000000"
    assert first.wamid == again.wamid


def test_synthetic_wamid_needs_phone_and_timestamp():
    assert synthetic_wamid(None, False, 1700000000) is None
    assert synthetic_wamid("5511999999999", True, None) is None
    assert synthetic_wamid("5511999999999", True, {"low": 1700000000}) == "evo-5511999999999-out-1700000000"


def test_parse_timestamp_units():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1700000000000, now) == parse_timestamp(1700000000, now)
    assert parse_timestamp("garbage", now) == now
    assert parse_timestamp(0, now) == now


# --- envelope helpers ---

def test_unwrap_envelope_relay_shape():
    inner = {"event": "messages.upsert", "data": {}}
    assert unwrap_envelope({"body": inner, "headers": {}}) is inner
    assert unwrap_envelope(inner) is inner
    assert unwrap_envelope(["not", "a", "dict"]) == {}


def test_event_items():
    assert event_items(None) == []
    assert event_items({"a": 1}) == [{"a": 1}]
    assert event_items([1, 2]) == [1, 2]


def test_item_phone_skips_groups():
    assert item_phone({"remoteJid": "5511999999999@s.whatsapp.net"}) == "5511999999999"
    assert item_phone({"id": "120363000000@g.us"}) is None


def test_build_json_row(inbound_upsert_payload):
    row = build_json_row(inbound_upsert_payload)

    assert row["name"] == "Maria"
    assert row["contact"] == "5511999999999"
    assert row["source"] == "WhatsApp"
    assert row["fromMe"] is False
    assert build_json_row({"event": "messages.upsert", "data": {}}) == {}
