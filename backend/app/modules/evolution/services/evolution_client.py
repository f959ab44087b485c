"""
Evolution Client Service
Low-level API wrapper for the Evolution WhatsApp provider.

Handles:
- Authentication via the `apikey` header (global key or per-instance token)
- Instance lifecycle: create, connect (QR), state, logout, delete, fetch
- Webhook subscription (/webhook/set)
- Sending messages
- Conversation / chat history with endpoint discovery

Endpoint discovery:
The provider's history endpoints differ between releases. Candidate GET
routes are probed once per operation and the first one answering 2xx with a
list-shaped body is memoized by the route strategy. If none answers, the
first candidate is used.

Mock mode:
When EVOLUTION_API_URL or EVOLUTION_API_KEY is empty, every operation
returns deterministic sample data and no request leaves the process.

Retry Strategy:
- Idempotent reads (state, fetchInstances, connect) retry transport errors
  3 times with exponential backoff
- Non-2xx answers are never retried here; they raise ProviderHTTPError
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from app.shared.core.config import settings
from app.shared.core.constants import (
    TIMEOUT_EVOLUTION_API,
    TIMEOUT_EVOLUTION_PROBE,
    NOT_FOUND_LOG_INTERVAL_SECONDS,
)
from app.shared.utils.exceptions import ProviderHTTPError
from app.shared.utils.http_client import http_client_manager
from app.shared.utils.json_utils import dig, non_empty_str

logger = logging.getLogger("evolution_client")

# Retry settings (transport errors on idempotent reads only)
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT_SECONDS = 0.5
RETRY_MAX_WAIT_SECONDS = 4

JID_SUFFIX = "@s.whatsapp.net"


# ============================================
# RETRY DECORATOR
# ============================================

def evolution_retry():
    """
    Retry decorator for idempotent Evolution reads.

    Retries on:
    - httpx.TimeoutException
    - httpx.ConnectError

    Does NOT retry on:
    - ProviderHTTPError (the provider answered, callers decide)
    """
    return retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=0.5,
            min=RETRY_MIN_WAIT_SECONDS,
            max=RETRY_MAX_WAIT_SECONDS
        ),
        retry=retry_if_exception_type((
            httpx.TimeoutException,
            httpx.ConnectError,
        )),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


# ============================================
# HISTORY ROUTES & DISCOVERY
# ============================================

class EvolutionRoute(NamedTuple):
    """A GET route shape: path template with {instance} and the query param carrying the contact."""
    name: str
    path: str
    param: Optional[str] = None


CONVERSATION_OPERATION = "conversation"
CHATS_OPERATION = "chats"

CONVERSATION_ROUTES: Tuple[EvolutionRoute, ...] = (
    EvolutionRoute("chat_find_messages", "/chat/findMessages/{instance}", "remoteJid"),
    EvolutionRoute("chat_fetch_messages", "/chat/fetchMessages/{instance}", "number"),
    EvolutionRoute("message_find_messages", "/message/findMessages/{instance}", "remoteJid"),
    EvolutionRoute("chat_messages", "/chat/messages/{instance}", "phone"),
)

CHAT_ROUTES: Tuple[EvolutionRoute, ...] = (
    EvolutionRoute("chat_find_chats", "/chat/findChats/{instance}"),
    EvolutionRoute("chat_fetch_chats", "/chat/fetchChats/{instance}"),
    EvolutionRoute("chat_list", "/chat/list/{instance}"),
)

ITEM_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("messages", "records"),
    ("messages",),
    ("records",),
    ("data",),
    ("items",),
    ("chats",),
)


def extract_items(payload: Any) -> Optional[List[Any]]:
    """
    The list inside a provider history response, or None when the body
    is not list-shaped.

    Examples:
        >>> extract_items([{"id": 1}])
        [{'id': 1}]
        >>> extract_items({"messages": {"records": []}})
        []
        >>> extract_items({"message": "not found"}) is None
        True
    """
    if isinstance(payload, list):
        return payload
    for path in ITEM_PATHS:
        candidate = dig(payload, *path)
        if isinstance(candidate, list):
            return candidate
    return None


ProbeFn = Callable[[EvolutionRoute], Awaitable[bool]]


class FixedRouteStrategy:
    """Always answers with a preconfigured route (tests, pinned deployments)."""

    def __init__(self, routes: Optional[Dict[str, EvolutionRoute]] = None):
        self.routes = dict(routes or {})

    async def resolve(self, operation: str, candidates: Sequence[EvolutionRoute], probe: ProbeFn) -> EvolutionRoute:
        return self.routes.get(operation, candidates[0])


class ProbingRouteStrategy:
    """
    Probes candidates in order and memoizes the first that works, per operation.

    Concurrent first calls for the same operation share one probe run.
    A run where nothing answers is not memoized, so the next call probes again.
    """

    def __init__(self, resolved: Optional[Dict[str, EvolutionRoute]] = None):
        self.resolved: Dict[str, EvolutionRoute] = resolved if resolved is not None else {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def resolve(self, operation: str, candidates: Sequence[EvolutionRoute], probe: ProbeFn) -> EvolutionRoute:
        cached = self.resolved.get(operation)
        if cached:
            return cached

        lock = self._locks.setdefault(operation, asyncio.Lock())
        async with lock:
            cached = self.resolved.get(operation)
            if cached:
                return cached

            for route in candidates:
                if await probe(route):
                    logger.info(f"Evolution route resolved: {operation} -> {route.name}")
                    self.resolved[operation] = route
                    return route

        logger.warning(f"No Evolution {operation} route answered the probe, using default {candidates[0].name}")
        return candidates[0]


# ============================================
# MOCK DATA
# ============================================

MOCK_QR = {
    "base64": "data:image/png;base64,MOCK",
    "code": "MOCK-QR",
    "pairingCode": "MOCK1234",
    "status": "pending",
    "count": 1,
}

MOCK_CHATS = [
    {
        "id": "mock-chat-1",
        "remoteJid": "5511999990001@s.whatsapp.net",
        "pushName": "Paciente Exemplo",
        "lastMessage": {
            "key": {"id": "MOCK-MSG-2", "fromMe": True},
            "message": {"conversation": "Sua consulta está confirmada."},
            "messageTimestamp": 1700000060,
        },
    },
    {
        "id": "mock-chat-2",
        "remoteJid": "5511999990002@s.whatsapp.net",
        "pushName": "Contato Teste",
        "lastMessage": {
            "key": {"id": "MOCK-MSG-3", "fromMe": False},
            "message": {"conversation": "Bom dia!"},
            "messageTimestamp": 1700000120,
        },
    },
]


def mock_conversation(number: str) -> List[Dict[str, Any]]:
    """Two-message exchange with the given contact."""
    digits = "".join(ch for ch in str(number or "") if ch.isdigit()) or "5511999990001"
    remote_jid = f"{digits}{JID_SUFFIX}"
    return [
        {
            "key": {"id": "MOCK-MSG-1", "fromMe": False, "remoteJid": remote_jid},
            "message": {"conversation": "Olá, gostaria de agendar uma consulta."},
            "messageType": "conversation",
            "messageTimestamp": 1700000000,
            "pushName": "Paciente Exemplo",
        },
        {
            "key": {"id": "MOCK-MSG-2", "fromMe": True, "remoteJid": remote_jid},
            "message": {"conversation": "Sua consulta está confirmada."},
            "messageType": "conversation",
            "messageTimestamp": 1700000060,
        },
    ]


class EvolutionClient:
    """
    Evolution API client.

    Provides low-level methods for:
    - Managing instances and their QR pairing
    - Subscribing webhooks
    - Sending messages
    - Reading conversations and chats
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        route_strategy=None,
        clock: Callable[[], float] = time.monotonic
    ):
        url = settings.EVOLUTION_API_URL if base_url is None else base_url
        self.base_url = (url or "").strip().rstrip("/")
        self.api_key = ((settings.EVOLUTION_API_KEY if api_key is None else api_key) or "").strip()
        self.default_integration = non_empty_str(settings.EVOLUTION_DEFAULT_INTEGRATION)
        self.default_template = non_empty_str(settings.EVOLUTION_DEFAULT_TEMPLATE)
        self.default_channel = non_empty_str(settings.EVOLUTION_DEFAULT_CHANNEL)
        self.default_token = non_empty_str(settings.EVOLUTION_DEFAULT_TOKEN)

        self._http_client = http_client
        self.route_strategy = route_strategy or ProbingRouteStrategy()
        self._clock = clock
        self._not_found_logged_at: Dict[Tuple[str, str], float] = {}

        if self.is_mock:
            logger.warning("⚠️ EVOLUTION_API_URL/EVOLUTION_API_KEY not configured, Evolution client running in mock mode")

    @property
    def is_mock(self) -> bool:
        return not (self.base_url and self.api_key)

    def is_configured(self) -> bool:
        """Check if a real provider is configured."""
        return not self.is_mock

    def _get_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": token or self.api_key,
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or http_client_manager.get_client()

    def _should_log_not_found(self, path: str, key: str) -> bool:
        """At most one 404 log line per (path, key) per interval."""
        now = self._clock()
        last = self._not_found_logged_at.get((path, key))
        if last is not None and now - last < NOT_FOUND_LOG_INTERVAL_SECONDS:
            return False
        self._not_found_logged_at[(path, key)] = now
        return True

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        timeout: float = TIMEOUT_EVOLUTION_API,
        log_key: str = "-"
    ) -> Any:
        """
        Perform a provider call and return the decoded JSON body ({} if none).

        Raises:
            ProviderHTTPError: on any non-2xx answer, with the provider's status code
        """
        response = await self._client().request(
            method,
            f"{self.base_url}{path}",
            json=json,
            params=params,
            headers=self._get_headers(token),
            timeout=timeout
        )

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.is_success:
            message = dig(payload, "message") or dig(payload, "response", "message") or "Evolution API request failed"
            if isinstance(message, list):
                message = "; ".join(str(m) for m in message)
            if response.status_code == 404:
                if self._should_log_not_found(path, log_key):
                    logger.warning(f"Evolution API 404 {method} {path} key={log_key}: {message}")
            else:
                logger.error(f"Evolution API error [{response.status_code}] {method} {path}: {message}")
            raise ProviderHTTPError(response.status_code, str(message), path=path)

        return payload

    # ============================================
    # INSTANCE LIFECYCLE
    # ============================================

    async def create_instance(self, instance_name: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create an instance with QR pairing enabled.

        Args:
            instance_name: Name to register on the provider
            config: Extra create payload (integration, webhook block, groupsIgnore...)

        Returns:
            Dict with id (provider instance name), name, providerId, token, raw
        """
        if self.is_mock:
            return {
                "id": instance_name,
                "name": instance_name,
                "providerId": f"mock-{instance_name}",
                "token": None,
                "raw": None,
            }

        payload: Dict[str, Any] = {"instanceName": instance_name, "qrcode": True, **(config or {})}
        defaults = {
            "integration": self.default_integration,
            "channel": self.default_channel,
            "template": self.default_template,
            "token": self.default_token,
        }
        for key, value in defaults.items():
            if key not in payload and value:
                payload[key] = value

        response = await self._request("POST", "/instance/create", json=payload, log_key=instance_name)

        instance = dig(response, "instance")
        instance = instance if isinstance(instance, dict) else {}

        return {
            "id": instance.get("instance") or instance.get("instanceName") or instance.get("name") or instance_name,
            "name": instance.get("name") or instance.get("instanceName") or instance_name,
            "providerId": instance.get("id") or instance.get("instanceId") or instance.get("uuid"),
            "token": instance.get("token") or instance.get("sessionKey") or dig(response, "hash", "apikey"),
            "raw": instance or None,
        }

    @evolution_retry()
    async def get_qr_code(self, instance_id: str, number: Optional[str] = None) -> Dict[str, Any]:
        """QR / pairing payload: {base64?, code?, pairingCode?, status?, count?, qrCode?}"""
        if self.is_mock:
            return dict(MOCK_QR)

        params = {"number": number} if number else None
        response = await self._request("GET", f"/instance/connect/{instance_id}", params=params, log_key=instance_id)
        return response if isinstance(response, dict) else {}

    @evolution_retry()
    async def get_state(self, instance_id: str) -> Dict[str, Any]:
        """
        Connection state: {"instance": {"instanceName", "state"}, "status"?, "message"?}

        Falls back to the legacy /instance/state path on 404.
        """
        if self.is_mock:
            return {"instance": {"instanceName": instance_id, "state": "connecting"}}

        try:
            response = await self._request("GET", f"/instance/connectionState/{instance_id}", log_key=instance_id)
        except ProviderHTTPError as e:
            if not e.is_not_found:
                raise
            response = await self._request("GET", f"/instance/state/{instance_id}", log_key=instance_id)
        return response if isinstance(response, dict) else {}

    async def logout(self, instance_id: str) -> None:
        if self.is_mock:
            return

        try:
            await self._request("DELETE", f"/instance/logout/{instance_id}", log_key=instance_id)
        except ProviderHTTPError as e:
            if not e.is_not_found:
                raise
            await self._request("DELETE", f"/instance/{instance_id}/logout", log_key=instance_id)

    async def delete_instance(self, instance_id: str) -> None:
        if self.is_mock:
            return

        try:
            await self._request("DELETE", f"/instance/{instance_id}/delete", log_key=instance_id)
        except ProviderHTTPError as e:
            if not e.is_not_found:
                raise
            await self._request("DELETE", f"/instance/delete/{instance_id}", log_key=instance_id)

    @evolution_retry()
    async def fetch_instance(self, instance_name: str, provider_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Find one instance summary in the provider's instance list.

        The provider has no direct lookup, so the list is matched by name,
        instanceName, id or token.

        Returns:
            Summary dict (id, name, connectionStatus, ownerJid, profileName,
            profilePicUrl, number, token...) or None
        """
        if self.is_mock:
            return {
                "id": provider_id or f"mock-{instance_name}",
                "name": instance_name,
                "instanceName": instance_name,
                "connectionStatus": "connecting",
                "ownerJid": None,
                "profileName": None,
                "profilePicUrl": None,
                "number": None,
            }

        params = {"instanceId": provider_id} if provider_id else None
        instances = await self._request("GET", "/instance/fetchInstances", params=params, log_key=instance_name)
        if not isinstance(instances, list):
            return None

        for item in instances:
            if not isinstance(item, dict):
                continue
            # Older releases wrap each entry as {"instance": {...}}
            summary = item.get("instance") if isinstance(item.get("instance"), dict) else item
            if (
                summary.get("name") == instance_name
                or summary.get("instanceName") == instance_name
                or (provider_id and summary.get("id") == provider_id)
                or (provider_id and summary.get("token") == provider_id)
            ):
                return summary
        return None

    async def resolve_instance_name(self, instance_id: str) -> str:
        """
        Provider-facing name for an id we hold (ours or the provider's).
        Falls back to the input when the provider does not know it.
        """
        if self.is_mock or not instance_id:
            return instance_id

        try:
            summary = await self.fetch_instance(instance_id, instance_id)
        except (ProviderHTTPError, httpx.HTTPError) as e:
            logger.debug(f"Could not resolve Evolution instance name for {instance_id}: {e}")
            return instance_id

        if summary:
            return summary.get("name") or summary.get("instanceName") or instance_id
        return instance_id

    # ============================================
    # WEBHOOK SUBSCRIPTION
    # ============================================

    async def set_webhook(
        self,
        instance_id: str,
        url: str,
        events: List[str],
        headers: Optional[Dict[str, str]] = None,
        by_events: bool = True,
        base64: bool = True,
        enabled: bool = True
    ) -> Dict[str, Any]:
        """Point the instance's webhook at `url` for the given event list."""
        if self.is_mock:
            return {"webhook": {"instanceName": instance_id, "url": url, "events": list(events), "enabled": enabled}}

        payload = {
            "webhook": {
                "enabled": enabled,
                "url": url,
                "headers": headers or {},
                "byEvents": by_events,
                "base64": base64,
                "events": list(events),
            }
        }
        response = await self._request("POST", f"/webhook/set/{instance_id}", json=payload, log_key=instance_id)
        return response if isinstance(response, dict) else {}

    # ============================================
    # MESSAGING
    # ============================================

    async def send_message(
        self,
        number: str,
        text: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        caption: Optional[str] = None,
        instance_id: Optional[str] = None,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a text or media message.

        Returns:
            Provider answer; at least {"id"?, "status"?}
        """
        if self.is_mock:
            digits = "".join(ch for ch in number if ch.isdigit())
            return {"id": f"MOCK-{instance_id or 'default'}-{digits}", "status": "PENDING"}

        payload: Dict[str, Any] = {"number": number}
        if instance_id:
            payload["instanceId"] = instance_id
        if text is not None:
            payload["text"] = text
        if media_url:
            payload["mediaUrl"] = media_url
            payload["mediaType"] = media_type or "document"
        if caption is not None:
            payload["caption"] = caption

        response = await self._request("POST", "/messages/send", json=payload, token=token, log_key=instance_id or "-")
        if not isinstance(response, dict):
            return {"raw": response}

        return {
            **response,
            "id": response.get("id") or dig(response, "key", "id"),
            "status": response.get("status"),
        }

    # ============================================
    # HISTORY (explicit POST search endpoints)
    # ============================================

    async def find_messages(
        self,
        instance_id: str,
        remote_jid: str,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Any:
        """POST /chat/findMessages with a remoteJid filter."""
        if self.is_mock:
            return {"messages": {"records": mock_conversation(remote_jid.split("@")[0])[:limit]}}

        payload = {"where": {"key": {"remoteJid": remote_jid}}, "limit": limit}
        return await self._request(
            "POST", f"/chat/findMessages/{instance_id}", json=payload, token=token, log_key=instance_id
        )

    async def find_chats(self, instance_id: str, limit: int = 100, token: Optional[str] = None) -> Any:
        """POST /chat/findChats."""
        if self.is_mock:
            return [dict(chat) for chat in MOCK_CHATS[:limit]]

        payload = {"where": {}, "limit": limit}
        return await self._request(
            "POST", f"/chat/findChats/{instance_id}", json=payload, token=token, log_key=instance_id
        )

    # ============================================
    # HISTORY (probed GET routes)
    # ============================================

    async def _route_works(self, route: EvolutionRoute, instance_id: str, params: Dict[str, Any], token: Optional[str]) -> bool:
        try:
            payload = await self._request(
                "GET",
                route.path.format(instance=instance_id),
                params=params,
                token=token,
                timeout=TIMEOUT_EVOLUTION_PROBE,
                log_key=instance_id
            )
        except (ProviderHTTPError, httpx.HTTPError) as e:
            logger.debug(f"Evolution probe {route.name} failed: {e}")
            return False
        return extract_items(payload) is not None

    def _conversation_params(self, route: EvolutionRoute, number: str, limit: int) -> Dict[str, Any]:
        digits = "".join(ch for ch in number if ch.isdigit())
        value = f"{digits}{JID_SUFFIX}" if route.param == "remoteJid" else digits
        return {route.param: value, "limit": limit}

    async def get_conversation(
        self,
        number: str,
        instance_id: str,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Any:
        """Message history with a contact through the discovered route."""
        if self.is_mock:
            return mock_conversation(number)[:limit]

        async def probe(route: EvolutionRoute) -> bool:
            return await self._route_works(route, instance_id, self._conversation_params(route, number, 1), token)

        route = await self.route_strategy.resolve(CONVERSATION_OPERATION, CONVERSATION_ROUTES, probe)
        return await self._request(
            "GET",
            route.path.format(instance=instance_id),
            params=self._conversation_params(route, number, limit),
            token=token,
            log_key=instance_id
        )

    async def list_chats(self, instance_id: str, limit: int = 100, token: Optional[str] = None) -> Any:
        """Chat list through the discovered route."""
        if self.is_mock:
            return [dict(chat) for chat in MOCK_CHATS[:limit]]

        async def probe(route: EvolutionRoute) -> bool:
            return await self._route_works(route, instance_id, {"limit": 1}, token)

        route = await self.route_strategy.resolve(CHATS_OPERATION, CHAT_ROUTES, probe)
        return await self._request(
            "GET",
            route.path.format(instance=instance_id),
            params={"limit": limit},
            token=token,
            log_key=instance_id
        )


# Singleton instance
evolution_client = EvolutionClient()
