from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from .proto import E_INVALID_FIELD, E_INVALID_PAYLOAD, RelayError, parse_timestamp

SAFE_ID_RE = re.compile(r"[A-Za-z0-9_-]+")
MAX_ID_LENGTH = 128
STRENGTHS = ("strong", "weak")
UPDATE_KEYS = frozenset({"remId", "strength", "userId", "sourceClientId", "sentAt"})


@dataclass(frozen=True, slots=True)
class UpdateRequest:
    """Normalized /update payload; only recognized fields survive."""

    rem_id: str
    strength: str
    source_client_id: str
    user_id: Optional[str] = None
    sent_at: Optional[str] = None


def is_safe_id(value: Any) -> bool:
    return (
        isinstance(value, str)
        and 0 < len(value) <= MAX_ID_LENGTH
        and SAFE_ID_RE.fullmatch(value) is not None
    )


def validate_update(payload: Any, *, require_user_id: bool = True) -> UpdateRequest:
    """Check an /update body, raising RelayError on the first failed rule.

    Rules run in a fixed order: shape, unknown keys, remId, strength, userId,
    sourceClientId, sentAt. When ``require_user_id`` is False (single-tenant
    relay) userId may be omitted but is still checked if sent.
    """
    if not isinstance(payload, dict):
        raise RelayError(E_INVALID_PAYLOAD, "Payload must be a plain object")

    for key in payload:
        if key not in UPDATE_KEYS:
            raise RelayError(E_INVALID_PAYLOAD, f"Unknown payload field: {key}")

    rem_id = payload.get("remId")
    if not is_safe_id(rem_id):
        raise RelayError(E_INVALID_FIELD, "Invalid remId")

    strength = payload.get("strength")
    if not isinstance(strength, str) or strength not in STRENGTHS:
        raise RelayError(E_INVALID_FIELD, "Invalid strength")

    user_id = payload.get("userId")
    if (require_user_id or "userId" in payload) and not is_safe_id(user_id):
        raise RelayError(E_INVALID_FIELD, "Invalid userId")

    source_client_id = payload.get("sourceClientId")
    if not is_safe_id(source_client_id):
        raise RelayError(E_INVALID_FIELD, "Invalid sourceClientId")

    sent_at = payload.get("sentAt")
    if "sentAt" in payload:
        if not isinstance(sent_at, str) or parse_timestamp(sent_at) is None:
            raise RelayError(E_INVALID_FIELD, "Invalid sentAt")

    return UpdateRequest(
        rem_id=rem_id,
        strength=strength,
        source_client_id=source_client_id,
        user_id=user_id,
        sent_at=sent_at,
    )


__all__ = ["UpdateRequest", "is_safe_id", "validate_update", "MAX_ID_LENGTH", "UPDATE_KEYS"]
