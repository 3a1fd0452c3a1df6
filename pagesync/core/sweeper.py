from __future__ import annotations

import logging
from dataclasses import dataclass

from .activity import ActivityTracker
from .metrics import Metrics
from .state import StateStore

log = logging.getLogger("pagesync.core.sweeper")


@dataclass(frozen=True, slots=True)
class SweepResult:
    pruned_clients: int
    expired_tenants: int


class Sweeper:
    """Expires tenants and device records idle for longer than the TTL.

    Expiry is silent: followers see the empty state on their next /state read.
    """

    def __init__(
        self,
        store: StateStore,
        activity: ActivityTracker,
        metrics: Metrics,
        *,
        ttl_ms: int,
    ) -> None:
        self.store = store
        self.activity = activity
        self.metrics = metrics
        self.ttl_ms = ttl_ms

    def sweep(self, now: int) -> SweepResult:
        pruned = self.activity.sweep_expired(now, self.ttl_ms)
        if pruned:
            self.metrics.incr("memoryClientsPrunedTotal", pruned)
            log.info("memory.clients.pruned removed=%d remaining=%d", pruned, len(self.activity))

        stale = self.store.stale_tenants(now, self.ttl_ms)
        for tenant in stale:
            self.store.expire(tenant, "ttl_expired")
        if stale:
            log.info("memory.tenants.expired removed=%d remaining=%d", len(stale), len(self.store))

        return SweepResult(pruned_clients=pruned, expired_tenants=len(stale))


__all__ = ["Sweeper", "SweepResult"]
