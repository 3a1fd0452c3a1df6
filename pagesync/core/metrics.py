from __future__ import annotations

from typing import Callable, Dict

from .proto import iso_from_ms, now_ms

NowFn = Callable[[], int]

COUNTERS = (
    "httpRequestsTotal",
    "httpOptionsRequestsTotal",
    "httpHealthRequestsTotal",
    "httpStateRequestsTotal",
    "httpUpdateRequestsTotal",
    "httpUpdateAcceptedTotal",
    "httpUpdateRejectedTotal",
    "httpNotFoundTotal",
    "wsConnectionsTotal",
    "wsRejectedInvalidUserTotal",
    "wsErrorsTotal",
    "wsTerminatedStaleTotal",
    "wsBroadcastMessagesTotal",
    "wsBroadcastRecipientsTotal",
    "memoryClientsPrunedTotal",
    "memoryLatestStateClearedTotal",
)


class Metrics:
    """Process-lifetime counters shared by every relay component."""

    def __init__(self, now: NowFn = now_ms) -> None:
        self.now = now
        self.started_at_ms = now()
        self._counters: Dict[str, int] = dict.fromkeys(COUNTERS, 0)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self._counters:
            raise KeyError(f"unknown counter: {name}")
        self._counters[name] += amount

    def get(self, name: str) -> int:
        return self._counters[name]

    def counters(self) -> Dict[str, int]:
        return dict(self._counters)

    def snapshot(self, gauges: Dict[str, int]) -> dict:
        now = self.now()
        return {
            "ok": True,
            "now": iso_from_ms(now),
            "uptimeMs": now - self.started_at_ms,
            "counters": self.counters(),
            "gauges": dict(gauges),
        }


__all__ = ["Metrics", "COUNTERS"]
