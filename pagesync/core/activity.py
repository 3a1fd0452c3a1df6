from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(slots=True)
class ClientActivity:
    user_id: str
    last_seen_at: int
    last_rem_id: str
    last_strength: str


class ActivityTracker:
    """Last update seen from each publishing device, keyed by sourceClientId."""

    def __init__(self) -> None:
        self._clients: Dict[str, ClientActivity] = {}

    def touch(self, client_id: str, tenant: str, rem_id: str, strength: str, now: int) -> None:
        self._clients[client_id] = ClientActivity(
            user_id=tenant,
            last_seen_at=now,
            last_rem_id=rem_id,
            last_strength=strength,
        )

    def sweep_expired(self, now: int, ttl_ms: int) -> int:
        expired = [cid for cid, act in self._clients.items() if now - act.last_seen_at > ttl_ms]
        for cid in expired:
            del self._clients[cid]
        return len(expired)

    def get(self, client_id: str) -> Optional[ClientActivity]:
        activity = self._clients.get(client_id)
        return dataclasses.replace(activity) if activity else None

    def __len__(self) -> int:
        return len(self._clients)


__all__ = ["ActivityTracker", "ClientActivity"]
