"""Secret redaction for safe logging and persisted failure records.

Two entry points:
- ``redact_sensitive`` scrubs structured payloads (API request/response
  bodies, event details) before they are written to the sync event log.
- ``sanitize_error_message`` scrubs free-text exception messages before
  they are stored on queue entries.
"""

import re

# Substring patterns matched case-insensitively against dict keys
_SENSITIVE_KEY_PATTERNS = frozenset({
    "secret", "token", "authorization", "api_key", "password",
    "credential", "public_key", "secret_key", "signature",
    # Customer PII carried on imported orders
    "email", "phone", "address", "postal_code", "zip",
})

# Keys whose entire value is redacted (regardless of content type)
_CONTAINER_KEYS = frozenset({"credentials", "headers", "billing", "shipping"})

REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(pattern in key_lower for pattern in _SENSITIVE_KEY_PATTERNS)


def redact_sensitive(data: object, _depth: int = 0) -> object:
    """Recursively redact sensitive fields from a data structure.

    Args:
        data: Dict, list, or scalar to redact (not mutated).
        _depth: Internal recursion depth counter.

    Returns:
        A copy with sensitive values replaced by '***REDACTED***'.

    Example:
        >>> redact_sensitive({"secret_key": "abc", "sku": "X-1"})
        {'secret_key': '***REDACTED***', 'sku': 'X-1'}
    """
    if _depth > 10:
        return REDACTED
    if isinstance(data, list):
        return [redact_sensitive(item, _depth + 1) for item in data]
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_str = str(key)
            if key_str.lower() in _CONTAINER_KEYS or _is_sensitive_key(key_str):
                result[key] = REDACTED
            else:
                result[key] = redact_sensitive(value, _depth + 1)
        return result
    return data


# Patterns for detecting sensitive values in free-text error messages.
# Handles: key=value, Authorization: Bearer <token>, "key": "value",
# and the marketplace's KEY / SIGNATURE request headers.
_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|public_key|secret_key|"
    r"authorization|credential|signature"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\"[^\"]*\""
    r"|"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize an error message for safe DB persistence.

    Redacts sensitive-looking key=value pairs and truncates to max_length.

    Args:
        msg: Error message to sanitize (None passes through).
        max_length: Maximum length of the sanitized message.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
