"""PII scrubbing for captured payloads and exception data.

Network metrics may carry request and response bodies and error metrics
carry stack frames. Both are scrubbed before they are buffered:
- Path sanitization (usernames removed from file paths)
- Field redaction (values of sensitive-looking keys)
- Pattern redaction (emails, card numbers, tokens inside strings)
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Set

REDACTED = "[REDACTED]"

# Sensitive field names that should have their values redacted
PII_DENYLIST: Set[str] = {
    # Authentication
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "authorization",
    "bearer",
    "credential",
    # Session/cookies
    "cookie",
    "csrf",
    # Personal information
    "email",
    "phone",
    "mobile",
    "address",
    "ssn",
    "tax_id",
    # Financial
    "credit_card",
    "card_number",
    "cvv",
    "cvc",
    "bank_account",
    # Keys
    "private_key",
    "signing_key",
}

# Patterns for detecting sensitive data in string values
SENSITIVE_PATTERNS = [
    # Email addresses
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    # Credit card numbers
    re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
    # Phone numbers
    re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
    # SSN
    re.compile(r"\b\d{3}[-\s]\d{2}[-\s]\d{4}\b"),
    # Bearer tokens
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/-]+=*"),
    # Long opaque keys
    re.compile(r"\b[A-Za-z0-9]{32,}\b"),
]


def sanitize_path(path: str) -> str:
    """Remove the username from a file path.

    Examples:
        >>> sanitize_path("/Users/john/code/file.py")
        '/Users/<user>/code/file.py'
        >>> sanitize_path("/home/alice/app/main.py")
        '/home/<user>/app/main.py'
    """
    path = re.sub(r"/Users/[^/]+/", "/Users/<user>/", path)
    path = re.sub(r"/home/[^/]+/", "/home/<user>/", path)
    path = re.sub(r"C:\\Users\\[^\\]+\\", r"C:\\Users\\<user>\\", path)
    path = re.sub(r"C:/Users/[^/]+/", "C:/Users/<user>/", path)
    return path


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return any(denied in key_lower for denied in PII_DENYLIST)


def scrub_string(value: str) -> str:
    """Replace sensitive patterns inside a string."""
    for pattern in SENSITIVE_PATTERNS:
        value = pattern.sub(REDACTED, value)
    return value


def scrub_dict(data: Mapping[str, Any], scrub_values: bool = True) -> Dict[str, Any]:
    """Return a copy of ``data`` with sensitive keys and values redacted.

    Args:
        data: The mapping to scrub. Nested mappings and lists are scrubbed
            recursively.
        scrub_values: Whether to also scan string values for sensitive
            patterns.
    """
    result: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(key, str) and is_sensitive_key(key):
            result[key] = REDACTED
        else:
            result[key] = scrub_value(value, scrub_values=scrub_values)
    return result


def scrub_list(data: List[Any], scrub_values: bool = True) -> List[Any]:
    """Return a copy of ``data`` with sensitive values redacted."""
    return [scrub_value(item, scrub_values=scrub_values) for item in data]


def scrub_value(value: Any, scrub_values: bool = True) -> Any:
    """Scrub any captured payload: mappings, lists or strings."""
    if isinstance(value, Mapping):
        return scrub_dict(value, scrub_values=scrub_values)
    if isinstance(value, list):
        return scrub_list(value, scrub_values=scrub_values)
    if isinstance(value, str) and scrub_values:
        return scrub_string(value)
    return value


def scrub_exception_data(exception_data: Dict[str, Any]) -> None:
    """Scrub a serialized exception in place.

    Expects the ``{"values": [...]}`` shape produced by
    ``sentry_sdk.utils.event_from_exception``. Local variables are dropped,
    file paths sanitized and exception messages pattern-scrubbed.
    """
    for value in exception_data.get("values", []):
        frames = (value.get("stacktrace") or {}).get("frames", [])
        for frame in frames:
            frame.pop("vars", None)
            for key in ("filename", "abs_path"):
                if isinstance(frame.get(key), str):
                    frame[key] = sanitize_path(frame[key])

        if isinstance(value.get("value"), str):
            value["value"] = scrub_string(value["value"])
