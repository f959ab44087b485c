"""
HTTP Client Manager with Connection Pooling

One pooled httpx.AsyncClient shared by the provider gateway, the automation
relay and media HEAD checks:
- Connection reuse across webhook bursts
- Per-call timeouts passed at request time
- Proper cleanup on shutdown

Usage:
    from app.shared.utils.http_client import http_client_manager

    client = http_client_manager.get_client()
    response = await client.post(url, json=data, timeout=15.0)
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 20
DEFAULT_KEEPALIVE_EXPIRY = 30.0  # seconds


class HTTPClientManager:
    """
    Singleton HTTP client manager.

    The client is created lazily on first use and closed by the FastAPI
    shutdown hook. Components that need a different client (tests) accept one
    in their constructor instead of going through the manager.
    """

    _instance: Optional['HTTPClientManager'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if getattr(self, "_initialized", False):
            return

        self._initialized = True
        self._client: Optional[httpx.AsyncClient] = None
        self._config = {
            "timeout": DEFAULT_TIMEOUT,
            "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
            "max_connections": DEFAULT_MAX_CONNECTIONS,
            "max_keepalive_connections": DEFAULT_MAX_KEEPALIVE_CONNECTIONS,
            "keepalive_expiry": DEFAULT_KEEPALIVE_EXPIRY,
        }

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            timeout=self._config["timeout"],
            connect=self._config["connect_timeout"]
        )
        limits = httpx.Limits(
            max_connections=self._config["max_connections"],
            max_keepalive_connections=self._config["max_keepalive_connections"],
            keepalive_expiry=self._config["keepalive_expiry"]
        )
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            follow_redirects=True
        )

    def get_client(self) -> httpx.AsyncClient:
        """Shared client, created on first access."""
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
            logger.info("HTTP client created with connection pooling")
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release all connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client closed, connections released")


# Singleton instance
http_client_manager = HTTPClientManager()


# ============================================
# FastAPI LIFECYCLE HOOKS
# ============================================

async def startup_http_client():
    """Pre-warm the connection pool during FastAPI startup."""
    http_client_manager.get_client()
    logger.info("HTTP client pre-warmed during startup")


async def shutdown_http_client():
    """Close pooled connections during FastAPI shutdown."""
    await http_client_manager.close()
