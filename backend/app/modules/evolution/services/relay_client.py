"""
Automation Relay Client
POSTs enriched webhook payloads to the external automation endpoint
(AUTOMATION_WEBHOOK_URL, typically a workflow engine).

Retry Strategy (messages.upsert):
- Max 3 attempts, linear backoff 0.3s then 0.6s
- Retries on non-2xx answers and on transport errors
- Never raises: the outcome is returned for the audit row

connection.update uses a single best-effort attempt.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    stop_after_attempt,
    wait_incrementing,
    retry_if_exception_type,
    before_sleep_log,
)

from app.shared.core.config import settings
from app.shared.core.constants import (
    TIMEOUT_AUTOMATION_RELAY,
    RELAY_MAX_ATTEMPTS,
    RELAY_BACKOFF_SECONDS,
)
from app.shared.utils.exceptions import RelayDeliveryError
from app.shared.utils.http_client import http_client_manager

logger = logging.getLogger("relay_client")


@dataclass
class RelayResult:
    """Outcome of one relay, stored on the webhook audit row."""
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class AutomationRelayClient:
    """
    Relay to the automation endpoint.

    Args:
        url: Endpoint; defaults to AUTOMATION_WEBHOOK_URL. Empty disables relaying.
        http_client: Injected client (tests); defaults to the shared pooled client
        sleep: Backoff sleep; injectable so tests can record the delays
    """

    def __init__(
        self,
        url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_attempts: int = RELAY_MAX_ATTEMPTS,
        backoff_seconds: float = RELAY_BACKOFF_SECONDS
    ):
        self.url = ((settings.AUTOMATION_WEBHOOK_URL if url is None else url) or "").strip()
        self._http_client = http_client
        self._sleep = sleep
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def is_configured(self) -> bool:
        return bool(self.url)

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or http_client_manager.get_client()

    async def _post_once(self, payload: Dict[str, Any]) -> int:
        response = await self._client().post(
            self.url,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=TIMEOUT_AUTOMATION_RELAY
        )
        if not response.is_success:
            raise RelayDeliveryError(response.status_code, self.url)
        return response.status_code

    async def relay(self, payload: Dict[str, Any]) -> RelayResult:
        """POST with bounded retries and linear backoff (0.3s x attempt)."""
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type((RelayDeliveryError, httpx.HTTPError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    status_code = await self._post_once(payload)
        except RelayDeliveryError as e:
            logger.warning(f"Automation relay failed after {attempts} attempts: {e.message}")
            return RelayResult(delivered=False, attempts=attempts, status_code=e.status_code, error=e.message)
        except (httpx.HTTPError, RetryError) as e:
            logger.warning(f"Automation relay failed after {attempts} attempts: {e}")
            return RelayResult(delivered=False, attempts=attempts, error=str(e) or e.__class__.__name__)

        return RelayResult(delivered=True, attempts=attempts, status_code=status_code)

    async def relay_once(self, payload: Dict[str, Any]) -> RelayResult:
        """Single best-effort POST."""
        try:
            status_code = await self._post_once(payload)
        except RelayDeliveryError as e:
            logger.warning(f"Automation relay (single attempt) failed: {e.message}")
            return RelayResult(delivered=False, attempts=1, status_code=e.status_code, error=e.message)
        except httpx.HTTPError as e:
            logger.warning(f"Automation relay (single attempt) failed: {e}")
            return RelayResult(delivered=False, attempts=1, error=str(e) or e.__class__.__name__)
        return RelayResult(delivered=True, attempts=1, status_code=status_code)


# Singleton instance
automation_relay_client = AutomationRelayClient()
