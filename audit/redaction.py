"""
audit/redaction.py -- Scrub secrets and personal data from audit change values.

Audit rows are long-lived and readable by anyone holding audit.read, so route
handlers pass request bodies and entity snapshots through
redact_sensitive_data() before recording them. Matching is by dict key: any
key containing one of SENSITIVE_KEYS (case-insensitive) has its value replaced
with "[REDACTED]", at any nesting depth. "hashed_password" and
"confirm_password" are caught by the "password" entry.
"""

from typing import Any

REDACTED = "[REDACTED]"

SENSITIVE_KEYS: tuple[str, ...] = (
    "password",
    "access_token",
    "refresh_token",
    "email",
    "public_key",
)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(s in lowered for s in SENSITIVE_KEYS)


def redact_sensitive_data(value: Any) -> Any:
    """Return a copy of value with sensitive keys redacted. Input is not mutated."""
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(str(k)) else redact_sensitive_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_sensitive_data(v) for v in value]
    return value
