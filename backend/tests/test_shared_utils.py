# tests/test_shared_utils.py
"""
Unit tests for the pure helpers in app.shared.utils:
phone/JID normalization, secret redaction and the windowed rate limiter.
"""
import pytest

from app.shared.utils.exceptions import RateLimitExceededError
from app.shared.utils.json_utils import REDACTED, dig, merge_json, redact_secrets, sha256_normalized
from app.shared.utils.phone_utils import (
    mask_phone,
    normalize_jid,
    normalize_message_key,
    normalize_phone_digits,
    validate_phone,
)
from app.shared.utils.rate_limiter import RateLimiter


# --- 1. PHONE / JID NORMALIZATION ---
def test_normalize_jid_plain_user_jid():
    assert normalize_jid("5511999999999@s.whatsapp.net") == "5511999999999"


def test_normalize_jid_prefers_alt_for_lid_addressing():
    assert normalize_jid("123456789@lid", "5511988887777@s.whatsapp.net", "lid") == "5511988887777"


def test_normalize_jid_lid_marker_without_explicit_mode():
    assert normalize_jid("123456789@lid", "5511988887777@s.whatsapp.net") == "5511988887777"


def test_normalize_jid_lid_without_alt_keeps_lid_digits():
    assert normalize_jid("123456789@lid", None, "lid") == "123456789"


def test_normalize_jid_ignores_alt_when_not_lid():
    assert normalize_jid("5511999999999@s.whatsapp.net", "5511000000000@s.whatsapp.net", "pn") == "5511999999999"


def test_normalize_jid_never_raises_on_garbage():
    assert normalize_jid(None) is None
    assert normalize_jid(12345) is None
    assert normalize_jid("@s.whatsapp.net") is None
    assert normalize_jid({"not": "a jid"}) is None


def test_normalize_message_key():
    key = {"remoteJid": "999@lid", "remoteJidAlt": "5511977776666@s.whatsapp.net", "addressingMode": "lid"}
    assert normalize_message_key(key) == "5511977776666"
    assert normalize_message_key("not-a-dict") is None


def test_normalize_phone_digits_for_sends():
    assert normalize_phone_digits("+55 (11) 99999-9999") == "5511999999999"
    assert normalize_phone_digits("0055 11 9999") == "55119999"
    assert normalize_phone_digits(None) == ""


def test_mask_phone():
    assert mask_phone("5511999999999") == "55*****99"
    assert mask_phone("12") == "invalid"


def test_validate_phone_brazilian_mobile():
    result = validate_phone("5511999999999")
    assert result.is_valid is True
    assert result.e164 == "+5511999999999"
    assert result.country == "BR"


def test_validate_phone_empty():
    result = validate_phone("")
    assert result.is_valid is False
    assert result.error


# --- 2. SECRET REDACTION ---
def test_redact_secrets_nested_and_case_insensitive():
    payload = {
        "apikey": "k1",
        "body": {"Authorization": "Bearer x", "data": [{"token": "t", "text": "hello"}]},
        "client_secret": "s",
        "keep": 1,
    }
    redacted = redact_secrets(payload)

    assert redacted["apikey"] == REDACTED
    assert redacted["body"]["Authorization"] == REDACTED
    assert redacted["body"]["data"][0]["token"] == REDACTED
    assert redacted["body"]["data"][0]["text"] == "hello"
    assert redacted["client_secret"] == REDACTED
    assert redacted["keep"] == 1


def test_redact_secrets_does_not_mutate_input():
    payload = {"apiKey": "k", "nested": {"access_token": "a"}}
    redact_secrets(payload)
    assert payload == {"apiKey": "k", "nested": {"access_token": "a"}}


def test_redact_secrets_scalars_pass_through():
    assert redact_secrets("text") == "text"
    assert redact_secrets(None) is None


def test_dig_and_merge_json():
    assert dig({"a": {"b": [1, {"c": 2}]}}, "a", "b", 1, "c") == 2
    assert dig({"a": None}, "a", "b", default="x") == "x"
    assert merge_json({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}
    assert merge_json(None, {"a": 1}) == {"a": 1}


def test_sha256_normalized_lowercases_and_trims():
    assert sha256_normalized("  Maria ") == sha256_normalized("maria")
    assert sha256_normalized("") is None


# --- 3. RATE LIMITER ---
class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_rate_limiter_refuses_31st_hit_in_window():
    limiter = RateLimiter(limit=30, window_seconds=60, clock=FakeClock())
    for _ in range(30):
        limiter.hit("user-1")

    with pytest.raises(RateLimitExceededError) as exc_info:
        limiter.hit("user-1")
    assert exc_info.value.limit == 30


def test_rate_limiter_keys_are_independent():
    limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeClock())
    limiter.hit("user-1")
    limiter.hit("user-2")
    with pytest.raises(RateLimitExceededError):
        limiter.hit("user-1")


def test_rate_limiter_window_resets():
    clock = FakeClock()
    limiter = RateLimiter(limit=2, window_seconds=60, clock=clock)
    limiter.hit("user-1")
    limiter.hit("user-1")
    assert limiter.remaining("user-1") == 0

    clock.now = 61.0
    assert limiter.hit("user-1") == 1
    assert limiter.remaining("user-1") == 1
