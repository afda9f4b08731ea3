import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

_SUPABASE_URL = os.getenv('SUPABASE_URL')
_SUPABASE_KEY = os.getenv('SUPABASE_KEY')

_STORE_BACKEND = os.getenv('STORE_BACKEND', 'memory').lower()

_OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
_HUGGINGFACE_API_KEY = os.getenv('HUGGINGFACE_API_KEY') or os.getenv('HF_API_KEY')
_HUGGINGFACE_BASE_URL = os.getenv(
    'HUGGINGFACE_BASE_URL', 'https://api-inference.huggingface.co/models'
)
_LOCAL_EMBEDDING_URL = os.getenv('LOCAL_EMBEDDING_URL')

_DEFAULT_EMBEDDING_MODEL = os.getenv('DEFAULT_EMBEDDING_MODEL')

_ENVIRONMENT = os.getenv('ENVIRONMENT', 'production').lower()
_LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Config:
    """Central configuration for the retrieval service."""

    SUPABASE_URL = _SUPABASE_URL
    SUPABASE_KEY = _SUPABASE_KEY
    STORE_BACKEND = _STORE_BACKEND

    OPENAI_API_KEY = _OPENAI_API_KEY
    HUGGINGFACE_API_KEY = _HUGGINGFACE_API_KEY
    HUGGINGFACE_BASE_URL = _HUGGINGFACE_BASE_URL
    LOCAL_EMBEDDING_URL = _LOCAL_EMBEDDING_URL
    LOCAL_EMBEDDING_DIMENSION = _int_env('LOCAL_EMBEDDING_DIMENSION', 384)

    DEFAULT_EMBEDDING_MODEL = _DEFAULT_EMBEDDING_MODEL
    EMBEDDING_DIMENSION = _int_env('EMBEDDING_DIMENSION', 384)
    EMBEDDING_TIMEOUT = _float_env('EMBEDDING_TIMEOUT', 30.0)
    EMBEDDING_CONCURRENCY = _int_env('EMBEDDING_CONCURRENCY', 4)

    ENVIRONMENT = _ENVIRONMENT
    LOG_LEVEL = _LOG_LEVEL


settings = Config()


@dataclass(frozen=True)
class EmbeddingConfig:
    """
    Provider credentials and limits handed to the embedding factory.

    Built once at startup with ``from_env()``; tests construct it directly.
    """

    openai_api_key: Optional[str] = None
    huggingface_api_key: Optional[str] = None
    huggingface_base_url: str = 'https://api-inference.huggingface.co/models'
    local_embedding_url: Optional[str] = None
    local_dimension: int = 384
    local_max_chars: int = 4000
    default_model: Optional[str] = None
    dimension: int = 384
    embedding_timeout: float = 30.0
    embedding_concurrency: int = 4

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            openai_api_key=settings.OPENAI_API_KEY,
            huggingface_api_key=settings.HUGGINGFACE_API_KEY,
            huggingface_base_url=settings.HUGGINGFACE_BASE_URL,
            local_embedding_url=settings.LOCAL_EMBEDDING_URL,
            local_dimension=settings.LOCAL_EMBEDDING_DIMENSION,
            default_model=settings.DEFAULT_EMBEDDING_MODEL,
            dimension=settings.EMBEDDING_DIMENSION,
            embedding_timeout=settings.EMBEDDING_TIMEOUT,
            embedding_concurrency=max(1, settings.EMBEDDING_CONCURRENCY),
        )

    def configured_providers(self) -> list[str]:
        """Names of the providers that have credentials or an endpoint."""
        providers = []
        if self.openai_api_key:
            providers.append('openai')
        if self.huggingface_api_key:
            providers.append('huggingface')
        if self.local_embedding_url:
            providers.append('local')
        providers.append('fallback')
        return providers
