"""
Shared OpenAI client for the retrieval service.

One AsyncOpenAI instance per API key, reused by every OpenAI embedding
provider.
"""

import logging
from functools import lru_cache

from openai import AsyncOpenAI

logger = logging.getLogger("Retrieval.Services.OpenAI")


@lru_cache(maxsize=4)
def get_openai_client(api_key: str) -> AsyncOpenAI:
    """
    Get the cached OpenAI async client for ``api_key``.

    Raises:
        ValueError: If no API key is given
    """
    if not api_key:
        raise ValueError("OPENAI_API_KEY environment variable not set")

    client = AsyncOpenAI(api_key=api_key, max_retries=0)
    logger.info("OpenAI client initialized")
    return client
