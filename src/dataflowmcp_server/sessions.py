from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict

from cachetools import TTLCache
from fastmcp import Context

from .fabric_api_client import FabricApiClient, FabricApiException, FabricAuthException

logger = logging.getLogger(__name__)

# Long-running operation status URLs, keyed by job_id. Entries expire after
# OPERATION_STATUS_TTL seconds so abandoned jobs do not accumulate.
job_status_store: TTLCache = TTLCache(
    maxsize=1024, ttl=int(os.getenv("OPERATION_STATUS_TTL", "3600"))
)

# Cache for active Fabric API clients, keyed by session object ID
_active_clients: Dict[str, FabricApiClient] = {}
_client_creation_locks: Dict[str, asyncio.Lock] = {}
_global_lock = asyncio.Lock()

async def _get_lock(session_id: str) -> asyncio.Lock:
    async with _global_lock:
        return _client_creation_locks.setdefault(session_id, asyncio.Lock())

async def get_session_fabric_client(ctx: Context) -> FabricApiClient:
    session_id = str(id(ctx.session))

    if client := _active_clients.get(session_id):
        return client

    creation_lock = await _get_lock(session_id)
    async with creation_lock:
        if client := _active_clients.get(session_id):
            return client

        logger.info(f"Creating new FabricApiClient for session {session_id}.")
        base_url = os.getenv("FABRIC_API_BASE_URL", "https://api.fabric.microsoft.com")
        timeout = float(os.getenv("FABRIC_API_TIMEOUT", "300"))
        try:
            client = await FabricApiClient.create(base_url, timeout)
            _active_clients[session_id] = client
            return client
        except (FabricAuthException, FabricApiException) as e:
            logger.error(f"Failed to create FabricApiClient for session {session_id}: {e}")
            raise

async def close_all_clients() -> int:
    count = len(_active_clients)
    await asyncio.gather(*(client.close() for client in _active_clients.values()), return_exceptions=True)
    _active_clients.clear()
    _client_creation_locks.clear()
    return count
