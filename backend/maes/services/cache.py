"""Shared cache helpers (Redis) with organization-namespaced keys."""

import logging
import uuid
from typing import Optional

import redis.asyncio as redis

from maes.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_REDIS_MAX_CONNECTIONS = 20
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 5.0
SCAN_BATCH_SIZE = 500


def org_namespace(organization_id: uuid.UUID) -> str:
    return f"{settings.CACHE_KEY_PREFIX}:org:{organization_id}"


def org_key(organization_id: uuid.UUID, *parts: str) -> str:
    """Every cached value owned by an organization lives under its namespace."""
    return ":".join([org_namespace(organization_id), *parts])


class OrganizationCache:
    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            pool = redis.ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=DEFAULT_REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
                socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
                retry_on_timeout=True,
            )
            self._client = redis.Redis(connection_pool=pool)
        return self._client

    async def purge(self, organization_id: uuid.UUID) -> int:
        """Delete every key in the organization's namespace. Returns keys removed."""
        deleted = 0
        batch: list = []
        async for key in self.client.scan_iter(match=f"{org_namespace(organization_id)}:*", count=SCAN_BATCH_SIZE):
            batch.append(key)
            if len(batch) >= SCAN_BATCH_SIZE:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)

        logger.info(f"Removed {deleted} cache keys for organization {organization_id}")
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


organization_cache = OrganizationCache()
