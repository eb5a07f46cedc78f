"""Safety helpers.

Implements deterministic secret detection/redaction rules, size limit helpers,
and content neutralization for agent-authored text.

Key rule: if an agent-provided input appears to be a credential, reject the request
and do not echo the suspected secret value.
"""

from __future__ import annotations

import re
from typing import Any

from .errors import ValidationError

_CRED_FIELD_NAMES = {
    "token",
    "access_token",
    "authorization",
    "password",
    "private_key",
    "pem",
    "jwt",
    "github_token",
}

_TOKEN_PREFIXES = (
    "ghp_",
    "gho_",
    "ghu_",
    "ghs_",
    "ghr_",
    "github_pat_",
)

_JWT_LIKE_RE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")
_EMBEDDED_TOKEN_RE = re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})")

# @user or @org/team at a word boundary, not already inside backticks.
_MENTION_RE = re.compile(r"(^|[^\w`])@([A-Za-z0-9][A-Za-z0-9-]{0,38}(?:/[A-Za-z0-9][A-Za-z0-9._-]*)?)")


def looks_like_secret_value(value: str) -> bool:
    """Return True if the value looks like a credential.

    Matching rules (minimum):
    - prefix-at-start after trimming leading whitespace
    - bearer prefix treated case-insensitively
    - JWT-looking value treated as secret-like (conservative)
    """
    if not isinstance(value, str):
        return False
    trimmed = value.lstrip()
    lowered = trimmed.lower()
    if lowered.startswith("bearer "):
        return True
    if lowered.startswith(_TOKEN_PREFIXES):
        return True
    if len(trimmed) >= 40 and _JWT_LIKE_RE.match(trimmed):
        return True
    return False


def looks_like_credential_field_name(field_name: str) -> bool:
    """Return True if a key name looks like a credential field."""
    if not isinstance(field_name, str):
        return False
    return field_name.strip().lower() in _CRED_FIELD_NAMES


def validate_no_secrets(obj: Any) -> None:
    """Reject any agent-provided input that appears to contain credentials.

    Raises ValidationError without echoing any suspected secret values.
    """
    if isinstance(obj, dict):
        for k, v in obj.items():
            if looks_like_credential_field_name(str(k)):
                raise ValidationError("Credential-like fields are not allowed")
            validate_no_secrets(v)
        return
    if isinstance(obj, list):
        for item in obj:
            validate_no_secrets(item)
        return
    if isinstance(obj, str):
        if looks_like_secret_value(obj) or _EMBEDDED_TOKEN_RE.search(obj):
            raise ValidationError("Credential-like values are not allowed")
        return


def enforce_max_bytes(*, text: str, max_bytes: int, what: str) -> None:
    """Enforce an upper bound on the UTF-8 size of a text field."""
    if len(text.encode("utf-8")) > max_bytes:
        raise ValidationError(f"{what} exceeds size limit of {max_bytes} bytes")


def redact_text(text: str) -> str:
    """Return a redacted representation safe for logs."""
    if not isinstance(text, str):
        return "<non-string>"
    if looks_like_secret_value(text):
        return "<redacted>"
    return _EMBEDDED_TOKEN_RE.sub("<redacted>", text)


def redact_value(obj: Any) -> Any:
    """Recursively redact credential-like strings and fields in a JSON-like value."""
    if isinstance(obj, dict):
        out: dict[str, Any] = {}
        for k, v in obj.items():
            out[k] = "<redacted>" if looks_like_credential_field_name(str(k)) else redact_value(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact_value(item) for item in obj]
    if isinstance(obj, str):
        return redact_text(obj)
    return obj


def neutralize_mentions(text: str) -> str:
    """Wrap @mentions in backticks so agent text cannot ping users or teams."""
    return _MENTION_RE.sub(lambda m: f"{m.group(1)}`@{m.group(2)}`", text)
