from settlebot.security.redaction import (
    REDACTED,
    is_sensitive_key,
    mask_secret,
    redact_data,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "is_sensitive_key",
    "mask_secret",
    "redact_data",
    "sanitize_text",
]
