"""
Redaction helpers for log ``extra`` payloads.

Provider configuration and settings changes are logged as dicts; API keys
must never reach the log stream and long entry text is cut short.
"""
import re
from dataclasses import asdict, is_dataclass
from typing import Any


# Key fragments whose values are replaced before logging
SECRET_KEY_FRAGMENTS = ("api_key", "token", "secret", "password", "authorization")

REDACTED = "***REDACTED***"

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


def _is_secret(key: Any) -> bool:
    name = str(key).lower()
    return any(fragment in name for fragment in SECRET_KEY_FRAGMENTS)


def sanitize_for_logging(data: Any, max_len: int = 100) -> Any:
    """
    Copy ``data`` with secrets redacted and strings shortened to ``max_len``.

    Dataclasses (``EmbeddingConfig``) are converted to dicts first. A secret
    that is unset stays None so logs still show which providers are missing.
    """
    if is_dataclass(data) and not isinstance(data, type):
        data = asdict(data)

    if isinstance(data, dict):
        return {
            k: (REDACTED if v else None) if _is_secret(k) else sanitize_for_logging(v, max_len)
            for k, v in data.items()
        }

    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item, max_len) for item in data]

    if data is None or isinstance(data, (bool, int, float)):
        return data

    text = _CONTROL_CHARS.sub("", str(data))
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text
