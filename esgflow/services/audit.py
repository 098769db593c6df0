from __future__ import annotations

from typing import Any


_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "sas"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def scrub_secret_values(message: str, secrets: list[str]) -> str:
    # Remove resolved secret values from free-text error messages before they are persisted.
    for secret in secrets:
        if secret and len(secret) >= 4:
            message = message.replace(secret, _REDACTED_VALUE)
    return message
