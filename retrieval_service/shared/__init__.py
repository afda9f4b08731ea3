# Shared errors, logging and correlation helpers
from .errors import (
    ErrorCode,
    KnowledgeError,
    ProviderUnavailable,
    ProviderRequestFailed,
    AccessDenied,
    NotFound,
    InvalidInput,
)

__all__ = [
    "ErrorCode",
    "KnowledgeError",
    "ProviderUnavailable",
    "ProviderRequestFailed",
    "AccessDenied",
    "NotFound",
    "InvalidInput",
]
