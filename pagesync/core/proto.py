from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

E_INVALID_JSON = "E_INVALID_JSON"
E_INVALID_PAYLOAD = "E_INVALID_PAYLOAD"
E_INVALID_FIELD = "E_INVALID_FIELD"
E_INVALID_QUERY = "E_INVALID_QUERY"
E_BODY_TOO_LARGE = "E_BODY_TOO_LARGE"
E_NOT_FOUND = "E_NOT_FOUND"
E_INTERNAL = "E_INTERNAL"

ERROR_STATUS = {
    E_INVALID_JSON: 400,
    E_INVALID_PAYLOAD: 400,
    E_INVALID_FIELD: 400,
    E_INVALID_QUERY: 400,
    E_BODY_TOO_LARGE: 413,
    E_NOT_FOUND: 404,
    E_INTERNAL: 500,
}


class RelayError(Exception):
    """A failure that is reported to the caller as ``{ok:false, error, code}``."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status(self) -> int:
        return ERROR_STATUS.get(self.code, 500)

    def to_body(self) -> Dict[str, Any]:
        return error_body(self.code, self.message)


def error_body(code: str, message: str) -> Dict[str, Any]:
    return {"ok": False, "error": message, "code": code}


# ---------------------------------------------------------------------------
# Clock helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    """Render epoch milliseconds as ``2024-01-31T12:00:00.000Z``."""

    stamp = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


_FRACTION_RE = re.compile(r"\.(\d+)(?=[+-]\d\d:\d\d$|$)")


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None when it is not one.

    Fractional seconds of any length are accepted; they are padded or cut to
    microseconds before handing off to ``datetime.fromisoformat``.
    """

    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Server -> follower frames
# ---------------------------------------------------------------------------

def welcome_frame(now: int) -> Dict[str, Any]:
    return {"type": "welcome", "now": iso_from_ms(now)}


def page_update_frame(
    *,
    rem_id: str,
    strength: str,
    updated_at: str,
    source_client_id: str,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    frame = {
        "type": "page_update",
        "remId": rem_id,
        "strength": strength,
        "updatedAt": updated_at,
        "sourceClientId": source_client_id,
    }
    if user_id is not None:
        frame["userId"] = user_id
    return frame


__all__ = [
    "E_INVALID_JSON",
    "E_INVALID_PAYLOAD",
    "E_INVALID_FIELD",
    "E_INVALID_QUERY",
    "E_BODY_TOO_LARGE",
    "E_NOT_FOUND",
    "E_INTERNAL",
    "ERROR_STATUS",
    "RelayError",
    "error_body",
    "now_ms",
    "iso_from_ms",
    "parse_timestamp",
    "welcome_frame",
    "page_update_frame",
]
