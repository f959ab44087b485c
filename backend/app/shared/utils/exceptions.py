"""
Custom Exceptions for the Clinic CRM backend.

These exceptions carry enough context for the API layer to map them to HTTP
responses, and for background processors to log them without re-raising.
"""
from typing import Optional


class EntityNotFoundError(Exception):
    """
    Raised when a requested entity does not exist, or exists but belongs to
    another tenant. Both cases surface identically to the caller.
    """
    def __init__(self, entity_type: str, entity_id: str, message: str = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.message = message or f"{entity_type} '{entity_id}' not found."
        super().__init__(self.message)


class ValidationError(Exception):
    """
    Raised when caller input is rejected before any side effect is applied
    (bad phone number, invalid media, missing webhook configuration, ...).
    """
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(self.message)


class RateLimitExceededError(ValidationError):
    """
    Raised when a tenant exceeds its sliding-window quota.

    Validation-class: the call is refused synchronously with no persisted row
    and no provider call.
    """
    def __init__(self, key: str, limit: int, window_seconds: int):
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds
        super().__init__(
            f"Rate limit exceeded: max {limit} requests per {window_seconds}s",
            field="rate_limit"
        )


class ProviderHTTPError(Exception):
    """
    Raised when the WhatsApp provider answers with a non-2xx status.

    The provider's status code is preserved so callers can treat 404 on
    state/logout/delete as "already gone".
    """
    def __init__(self, status_code: int, message: str = None, path: str = None):
        self.status_code = status_code
        self.path = path
        self.message = message or "Error communicating with the Evolution API."
        super().__init__(f"[{status_code}] {self.message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class RelayDeliveryError(Exception):
    """Raised when the automation endpoint answers with a non-2xx status (retryable)."""
    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        self.message = f"Automation relay returned {status_code}"
        super().__init__(self.message)
