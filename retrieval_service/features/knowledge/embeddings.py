"""
Embedding providers and the degradation chain.

A knowledge base's ``embedding_model`` resolves once to an ``EmbeddingChain``:

    primary (OpenAI / HuggingFace / local)
      -> local endpoint (when configured and the primary is remote)
      -> deterministic fallback

Providers never raise to callers. ``try_embed`` returns None on missing
credentials, timeouts, HTTP errors or malformed responses and the chain moves
on to its next link. The fallback always produces a vector, so every entry
ends up indexed; ``EmbeddingResult.used_fallback`` records when that
happened.
"""

import asyncio
import logging
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import numpy as np
from openai import OpenAIError

from retrieval_service.core.config import EmbeddingConfig
from retrieval_service.features.knowledge.chunker import strip_tags
from retrieval_service.services.http_client import get_http_client
from retrieval_service.services.openai_client import get_openai_client
from retrieval_service.shared.correlation import correlation_headers
from retrieval_service.shared.errors import ProviderRequestFailed, ProviderUnavailable

logger = logging.getLogger("Retrieval.Knowledge.Embeddings")

DEFAULT_OPENAI_MODEL = "text-embedding-ada-002"
DEFAULT_HUGGINGFACE_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"

OPENAI_DIMENSION = 1536
OPENAI_DIMENSIONS = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}
OPENAI_MAX_CHARS = 8000
HUGGINGFACE_MAX_CHARS = 2000


class ProviderKind(str, Enum):
    OPENAI = "openai"
    HUGGINGFACE = "huggingface"
    LOCAL = "local"
    FALLBACK = "fallback"

    @property
    def is_remote(self) -> bool:
        return self in (ProviderKind.OPENAI, ProviderKind.HUGGINGFACE)


# Model id prefixes that pin a provider
MODEL_PREFIXES: Tuple[Tuple[str, ProviderKind], ...] = (
    ("text-embedding-", ProviderKind.OPENAI),
    ("openai/", ProviderKind.OPENAI),
    ("sentence-transformers/", ProviderKind.HUGGINGFACE),
    ("huggingface/", ProviderKind.HUGGINGFACE),
    ("local/", ProviderKind.LOCAL),
)


@dataclass
class EmbeddingResult:
    vector: List[float]
    provider: ProviderKind
    used_fallback: bool = False
    error: Optional[str] = None


def embedding_text(title: str, content: str) -> str:
    """Text embedded for an entry: title line plus tag-stripped content."""
    return f"{title}\n{strip_tags(content or '')}"


def resolve_provider_kind(model: Optional[str], config: EmbeddingConfig) -> ProviderKind:
    """Map a model id to a provider by prefix, else by configured credentials."""
    if model:
        for prefix, kind in MODEL_PREFIXES:
            if model.startswith(prefix):
                return kind

    if config.openai_api_key:
        return ProviderKind.OPENAI
    if config.huggingface_api_key:
        return ProviderKind.HUGGINGFACE
    return ProviderKind.FALLBACK


def openai_dimension(model: str) -> int:
    return OPENAI_DIMENSIONS.get(model, OPENAI_DIMENSION)


def _strip_prefix(model: str, prefix: str) -> str:
    return model[len(prefix):] if model.startswith(prefix) else model


# =============================================================================
# PROVIDERS
# =============================================================================


class EmbeddingProvider(ABC):
    """One way of turning text into a vector."""

    kind: ProviderKind

    def __init__(self, config: EmbeddingConfig, model: str, dimension: int):
        self.config = config
        self.model = model
        self.dimension = dimension

    @abstractmethod
    async def _request(self, text: str) -> List[float]:
        """
        Fetch a vector for ``text``.

        Raises ProviderUnavailable or ProviderRequestFailed (or the
        underlying client's errors) on failure.
        """

    async def attempt(self, text: str) -> Tuple[Optional[List[float]], Optional[str]]:
        """Run one bounded request; returns (vector, None) or (None, reason)."""
        try:
            vector = await asyncio.wait_for(
                self._request(text), timeout=self.config.embedding_timeout
            )
        except ProviderUnavailable as e:
            return None, f"unavailable: {e.message}"
        except ProviderRequestFailed as e:
            return None, f"request failed: {e.message}"
        except asyncio.TimeoutError:
            return None, f"timeout after {self.config.embedding_timeout}s"
        except (httpx.HTTPError, OpenAIError) as e:
            return None, f"request failed: {type(e).__name__}: {e}"
        except (ValueError, KeyError, TypeError, IndexError) as e:
            return None, f"malformed response: {e}"

        if not vector:
            return None, "empty embedding"
        return vector, None

    async def try_embed(self, text: str) -> Optional[List[float]]:
        vector, _ = await self.attempt(text)
        return vector

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r}, dimension={self.dimension})"


class OpenAIEmbeddingProvider(EmbeddingProvider):
    kind = ProviderKind.OPENAI

    def __init__(self, config: EmbeddingConfig, model: str, client_factory: Callable = get_openai_client):
        model = _strip_prefix(model, "openai/")
        super().__init__(config, model, openai_dimension(model))
        self._client_factory = client_factory

    async def _request(self, text: str) -> List[float]:
        if not self.config.openai_api_key:
            raise ProviderUnavailable(self.kind.value)

        client = self._client_factory(self.config.openai_api_key)
        response = await client.embeddings.create(
            model=self.model,
            input=text[:OPENAI_MAX_CHARS],
        )
        return list(response.data[0].embedding)


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    kind = ProviderKind.HUGGINGFACE

    def __init__(self, config: EmbeddingConfig, model: str, http_client: Callable = get_http_client):
        super().__init__(config, _strip_prefix(model, "huggingface/"), config.dimension)
        self._http_client = http_client

    @property
    def url(self) -> str:
        if self.model.startswith("http"):
            return self.model
        return f"{self.config.huggingface_base_url.rstrip('/')}/{self.model}"

    async def _request(self, text: str) -> List[float]:
        if not self.config.huggingface_api_key:
            raise ProviderUnavailable(self.kind.value)

        client = await self._http_client()
        response = await client.post(
            self.url,
            headers=correlation_headers({"Authorization": f"Bearer {self.config.huggingface_api_key}"}),
            json={"inputs": text[:HUGGINGFACE_MAX_CHARS], "options": {"wait_for_model": True}},
            timeout=self.config.embedding_timeout,
        )
        if response.status_code != 200:
            raise ProviderRequestFailed(self.kind.value, f"HTTP {response.status_code}")

        result = response.json()
        if not isinstance(result, list) or not result:
            raise ProviderRequestFailed(self.kind.value, "Invalid HuggingFace embedding response format")
        # Some models return a nested array, some a flat one
        vector = result[0] if isinstance(result[0], list) else result
        return [float(x) for x in vector]


class LocalEmbeddingProvider(EmbeddingProvider):
    kind = ProviderKind.LOCAL

    def __init__(self, config: EmbeddingConfig, model: str, http_client: Callable = get_http_client):
        super().__init__(config, _strip_prefix(model, "local/"), config.local_dimension)
        self._http_client = http_client

    async def _request(self, text: str) -> List[float]:
        if not self.config.local_embedding_url:
            raise ProviderUnavailable(self.kind.value)

        client = await self._http_client()
        response = await client.post(
            self.config.local_embedding_url,
            headers=correlation_headers(),
            json={"model": self.model, "input": text[:self.config.local_max_chars]},
            timeout=self.config.embedding_timeout,
        )
        if response.status_code != 200:
            raise ProviderRequestFailed(self.kind.value, f"HTTP {response.status_code}")
        return self._parse(response.json())

    def _parse(self, result: Any) -> List[float]:
        if isinstance(result, dict):
            if isinstance(result.get("embedding"), list):
                return [float(x) for x in result["embedding"]]
            data = result.get("data")
            if isinstance(data, list) and data and isinstance(data[0], dict):
                return [float(x) for x in data[0]["embedding"]]
        elif isinstance(result, list) and result:
            return [float(x) for x in result]
        raise ProviderRequestFailed(self.kind.value, "Invalid local embedding response format")


class DeterministicFallback(EmbeddingProvider):
    """
    Hash-seeded pseudo-vector.

    Identical text always yields the identical unit vector. It keeps entries
    searchable (exact and near-duplicate text still match) but carries no
    semantic meaning.
    """

    kind = ProviderKind.FALLBACK

    def __init__(self, config: EmbeddingConfig, dimension: int):
        super().__init__(config, "deterministic", dimension)

    def embed(self, text: str) -> List[float]:
        seed = zlib.crc32(text.encode("utf-8"))
        rng = np.random.default_rng(seed)
        vector = rng.integers(-1000, 1001, size=self.dimension) / 1000.0
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    async def _request(self, text: str) -> List[float]:
        return self.embed(text)


ProviderBuilder = Callable[[EmbeddingConfig, str], EmbeddingProvider]

DEFAULT_BUILDERS: Dict[ProviderKind, ProviderBuilder] = {
    ProviderKind.OPENAI: OpenAIEmbeddingProvider,
    ProviderKind.HUGGINGFACE: HuggingFaceEmbeddingProvider,
    ProviderKind.LOCAL: LocalEmbeddingProvider,
}

DEFAULT_MODELS = {
    ProviderKind.OPENAI: DEFAULT_OPENAI_MODEL,
    ProviderKind.HUGGINGFACE: DEFAULT_HUGGINGFACE_MODEL,
    ProviderKind.LOCAL: DEFAULT_LOCAL_MODEL,
}


# =============================================================================
# CHAIN + FACTORY
# =============================================================================


class EmbeddingChain:
    """The resolved provider sequence for one embedding model."""

    def __init__(
        self,
        primary: Optional[EmbeddingProvider],
        fallback: DeterministicFallback,
        local: Optional[EmbeddingProvider] = None,
    ):
        self.primary = primary
        self.local = local
        self.fallback = fallback

    @property
    def kind(self) -> ProviderKind:
        return self.primary.kind if self.primary else ProviderKind.FALLBACK

    @property
    def key(self) -> Tuple[str, str]:
        """Identity used to embed a query once per distinct provider."""
        if self.primary is None:
            return (ProviderKind.FALLBACK.value, str(self.fallback.dimension))
        return (self.primary.kind.value, self.primary.model)

    @property
    def dimension(self) -> int:
        return self.fallback.dimension

    async def embed(self, text: str) -> EmbeddingResult:
        errors = []
        for provider in (self.primary, self.local):
            if provider is None:
                continue
            vector, error = await provider.attempt(text)
            if vector is not None:
                self._learn_dimension(provider, len(vector))
                return EmbeddingResult(vector=vector, provider=provider.kind)
            errors.append(f"{provider.kind.value}: {error}")
            logger.warning(
                "Embedding provider failed",
                extra={"provider": provider.kind.value, "model": provider.model, "reason": error},
            )

        error = "; ".join(errors) if errors else None
        return EmbeddingResult(
            vector=self.fallback.embed(text),
            provider=ProviderKind.FALLBACK,
            used_fallback=True,
            error=error,
        )

    def _learn_dimension(self, provider: EmbeddingProvider, dimension: int) -> None:
        """Keep fallback vectors the same length as what the primary really returns."""
        if provider is not self.primary or dimension == self.fallback.dimension:
            return
        logger.info(
            "Embedding dimension differs from the expected one",
            extra={"model": provider.model, "expected": self.fallback.dimension, "actual": dimension},
        )
        provider.dimension = dimension
        self.fallback.dimension = dimension


class EmbeddingProviderFactory:
    """
    Builds and caches ``EmbeddingChain``s keyed by model id.

    ``builders`` overrides how a provider kind is constructed; tests use it to
    substitute in-process providers for the remote ones.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        builders: Optional[Dict[ProviderKind, ProviderBuilder]] = None,
    ):
        self.config = config
        self._builders = {**DEFAULT_BUILDERS, **(builders or {})}
        self._chains: Dict[Optional[str], EmbeddingChain] = {}

    def for_model(self, model: Optional[str] = None) -> EmbeddingChain:
        model = model or self.config.default_model
        chain = self._chains.get(model)
        if chain is None:
            chain = self._build(model)
            self._chains[model] = chain
            logger.info(
                "Resolved embedding provider",
                extra={"model": model, "provider": chain.kind.value, "dimension": chain.dimension},
            )
        return chain

    def _build(self, model: Optional[str]) -> EmbeddingChain:
        kind = resolve_provider_kind(model, self.config)
        if kind == ProviderKind.FALLBACK:
            return EmbeddingChain(None, DeterministicFallback(self.config, self.config.dimension))

        primary_model = model or DEFAULT_MODELS[kind]
        primary = self._builders[kind](self.config, primary_model)

        local = None
        if kind.is_remote and self.config.local_embedding_url:
            local = self._builders[ProviderKind.LOCAL](self.config, DEFAULT_LOCAL_MODEL)

        return EmbeddingChain(primary, DeterministicFallback(self.config, primary.dimension), local)

    def configured_providers(self) -> List[str]:
        return self.config.configured_providers()
