"""
Shared Utility Functions
"""
from app.shared.utils.json_utils import (
    redact_secrets,
    is_secret_key,
    dig,
    as_json_object,
    merge_json,
    sha256_normalized,
    to_jsonable,
    REDACTED,
)
from app.shared.utils.cache import SimpleCache
from app.shared.utils.rate_limiter import RateLimiter, RateLimitBucket
from app.shared.utils.exceptions import (
    EntityNotFoundError,
    ValidationError,
    RateLimitExceededError,
    ProviderHTTPError,
    RelayDeliveryError,
)
from app.shared.utils.phone_utils import (
    normalize_jid,
    normalize_message_key,
    normalize_phone_digits,
    mask_phone,
    validate_phone,
    PhoneValidationResult,
)

__all__ = [
    "redact_secrets",
    "is_secret_key",
    "dig",
    "as_json_object",
    "merge_json",
    "sha256_normalized",
    "to_jsonable",
    "REDACTED",
    "SimpleCache",
    "RateLimiter",
    "RateLimitBucket",
    "EntityNotFoundError",
    "ValidationError",
    "RateLimitExceededError",
    "ProviderHTTPError",
    "RelayDeliveryError",
    # Phone utilities
    "normalize_jid",
    "normalize_message_key",
    "normalize_phone_digits",
    "mask_phone",
    "validate_phone",
    "PhoneValidationResult",
]
