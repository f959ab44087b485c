"""
Phone Number and WhatsApp JID Utilities

Provides:
- Canonical contact keys from WhatsApp JIDs (digits only, "lid"-aware)
- Digit normalization for outbound sends
- Log-safe masking
- E.164 validation via Google's libphonenumber (phonenumbers package)

Everything here is pure; the JID helpers never raise because they run on
every webhook event.
"""
import re
import logging
from typing import Optional, Any
from dataclasses import dataclass

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat
from phonenumbers import is_valid_number, format_number

logger = logging.getLogger(__name__)

WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"
LID_MARKER = "@lid"
DEFAULT_COUNTRY = "BR"

_NON_DIGITS = re.compile(r"\D+")


# ============================================
# JID NORMALIZATION
# ============================================

def digits_only(value: Any) -> str:
    """Strip every non-digit character. Non-strings yield ''."""
    if not isinstance(value, str):
        return ""
    return _NON_DIGITS.sub("", value)


def jid_local_part(jid: Any) -> str:
    """'5511999999999@s.whatsapp.net' -> '5511999999999' (device suffix ':12' kept for digits_only)."""
    if not isinstance(jid, str):
        return ""
    return jid.split("@", 1)[0]


def normalize_jid(
    remote_jid: Any,
    remote_jid_alt: Any = None,
    addressing_mode: Any = None
) -> Optional[str]:
    """
    Canonical contact key for a WhatsApp message key.

    When the chat is "lid"-addressed (explicit addressingMode or an '@lid' JID)
    the alternate JID carries the real phone number, so it wins when present.

    Examples:
        >>> normalize_jid("5511999999999@s.whatsapp.net")
        '5511999999999'
        >>> normalize_jid("12345@lid", "5511988887777@s.whatsapp.net", "lid")
        '5511988887777'
        >>> normalize_jid(None) is None
        True
    """
    is_lid = (
        (isinstance(addressing_mode, str) and addressing_mode.lower() == "lid")
        or (isinstance(remote_jid, str) and LID_MARKER in remote_jid)
    )
    chosen = remote_jid
    if is_lid and isinstance(remote_jid_alt, str) and remote_jid_alt.strip():
        chosen = remote_jid_alt
    digits = digits_only(jid_local_part(chosen))
    return digits or None


def normalize_message_key(key: Any) -> Optional[str]:
    """normalize_jid() applied to a provider message `key` object."""
    if not isinstance(key, dict):
        return None
    return normalize_jid(
        key.get("remoteJid"),
        key.get("remoteJidAlt"),
        key.get("addressingMode")
    )


def to_jid(digits: str) -> str:
    return f"{digits}{WHATSAPP_USER_SUFFIX}"


# ============================================
# OUTBOUND NORMALIZATION
# ============================================

def normalize_phone_digits(phone: Any) -> str:
    """
    Digits-only form used for outbound sends: non-digits removed, leading
    zeros (trunk/international prefixes typed by users) trimmed.

    Examples:
        >>> normalize_phone_digits("+55 (11) 99999-9999")
        '5511999999999'
        >>> normalize_phone_digits("0055 11 9999")
        '55119999'
    """
    return digits_only(phone).lstrip("0")


def mask_phone(phone: Any) -> str:
    """Log-safe phone: first two and last two digits only ('55*****99')."""
    digits = digits_only(phone if isinstance(phone, str) else str(phone or ""))
    if len(digits) < 4:
        return "invalid"
    return f"{digits[:2]}*****{digits[-2:]}"


# ============================================
# LIBPHONENUMBER VALIDATION
# ============================================

@dataclass
class PhoneValidationResult:
    """Result of phone number validation."""
    is_valid: bool
    e164: str  # "+5511999999999" (best effort when invalid)
    country: str  # ISO region, e.g. "BR"
    error: Optional[str] = None


def validate_phone(digits: str, default_country: str = DEFAULT_COUNTRY) -> PhoneValidationResult:
    """
    Validate a digits-only international number with libphonenumber.

    The number is parsed as international first ("+<digits>"); numbers that do
    not carry a country code fall back to `default_country`.
    """
    fallback = f"+{digits}" if digits else ""
    if not digits:
        return PhoneValidationResult(False, fallback, "", "Phone number is empty")

    for candidate, region in ((f"+{digits}", None), (digits, default_country)):
        try:
            parsed = phonenumbers.parse(candidate, region)
        except NumberParseException:
            continue
        if is_valid_number(parsed):
            return PhoneValidationResult(
                is_valid=True,
                e164=format_number(parsed, PhoneNumberFormat.E164),
                country=phonenumbers.region_code_for_number(parsed) or ""
            )

    return PhoneValidationResult(False, fallback, "", "Number not valid for any region")
