"""
Pooled HTTP client for embedding endpoints.

The HuggingFace and local embedding providers post through one shared
``httpx.AsyncClient``. Its pool is sized from the bulk-embedding
concurrency so a bulk job never queues on connections.

Lifecycle (see ``retrieval_service.main``):

    await http_client_manager.startup()    # lifespan start
    client = await get_http_client()        # in providers
    await http_client_manager.shutdown()   # lifespan end
"""

import logging
from typing import Optional

import httpx

from retrieval_service.core.config import settings

logger = logging.getLogger("Retrieval.HTTP.Client")

# Idle connections kept per concurrent embedding worker
KEEPALIVE_PER_WORKER = 2


class HTTPClientManager:
    """Owns the shared client; created at startup, or lazily on first use."""

    def __init__(self, concurrency: int, timeout: float):
        self.concurrency = max(1, concurrency)
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    def _build(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=self.concurrency * KEEPALIVE_PER_WORKER * 2,
                max_keepalive_connections=self.concurrency * KEEPALIVE_PER_WORKER,
            ),
            timeout=httpx.Timeout(self.timeout),
        )

    async def startup(self) -> None:
        if self._client is not None:
            return
        self._client = self._build()
        logger.info(
            "Embedding HTTP pool ready",
            extra={"concurrency": self.concurrency, "timeout": self.timeout},
        )

    async def shutdown(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Embedding HTTP pool closed")

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Scripts and background jobs run without the app lifespan
            logger.debug("Embedding HTTP pool used before startup, creating it now")
            await self.startup()
        return self._client


http_client_manager = HTTPClientManager(
    concurrency=settings.EMBEDDING_CONCURRENCY,
    timeout=settings.EMBEDDING_TIMEOUT,
)


async def get_http_client() -> httpx.AsyncClient:
    return await http_client_manager.get_client()
