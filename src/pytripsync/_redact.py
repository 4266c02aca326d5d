"""Helpers for safe debug logging.

Card numbers and tokens end up in trip payloads and log lines. This module
masks them before anything is emitted.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "token",
        "accesstoken",
        "refreshtoken",
        "authorization",
        "otp",
        "mobile",
        "mobilenumber",
        "emailaddress",
    }
)

_CARD_KEYS: frozenset[str] = frozenset({"cardnumber", "cardid", "card_identifier", "cardidentifier"})


def mask_card(card_identifier: str | None, *, visible: int = 4) -> str:
    """Mask all but the last *visible* characters of a card identifier."""
    if not card_identifier:
        return "<none>"
    if len(card_identifier) <= visible:
        return "*" * len(card_identifier)
    return f"{'*' * (len(card_identifier) - visible)}{card_identifier[-visible:]}"


def redact_for_log(value: Any) -> Any:
    """Return a copy of a decoded JSON payload with secrets and card numbers masked."""
    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            lowered = key.lower()
            if lowered in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            elif lowered in _CARD_KEYS and v is not None:
                redacted[key] = mask_card(str(v))
            else:
                redacted[key] = redact_for_log(v)
        return redacted
    if isinstance(value, list):
        return [redact_for_log(v) for v in value]
    return value
