from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from pagesync.core.activity import ActivityTracker
from pagesync.core.config import RelayConfig
from pagesync.core.hub import BroadcastHub
from pagesync.core.metrics import Metrics
from pagesync.core.proto import now_ms
from pagesync.core.state import StateStore, TenantState
from pagesync.core.sweeper import Sweeper
from pagesync.core.validate import UpdateRequest

log = logging.getLogger("pagesync.server.runtime")

DEFAULT_TENANT = "default"

NowFn = Callable[[], int]


class RelayRuntime:
    """Owns every piece of relay state for one process.

    Built once at startup and handed to the gateway; all mutation goes through
    its methods, which run to completion on the event loop without awaiting.
    """

    def __init__(self, config: RelayConfig, *, now: NowFn = now_ms) -> None:
        self.cfg = config
        self.now = now
        self.multi_tenant = config.multi_tenant

        self.metrics = Metrics(now=now)
        self.store = StateStore(self.metrics)
        self.activity = ActivityTracker()
        self.hub = BroadcastHub(self.metrics, include_user_id=self.multi_tenant)
        self.sweeper = Sweeper(self.store, self.activity, self.metrics, ttl_ms=config.inactivity_ttl_ms)

        self.update_seq = 0
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="ws-heartbeat"))
        self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="memory-cleanup"))
        log.info(
            "runtime.started ttl_ms=%d cleanup_ms=%d heartbeat_ms=%d multi_tenant=%s",
            self.cfg.inactivity_ttl_ms,
            self.cfg.cleanup_interval_ms,
            self.cfg.heartbeat_interval_ms,
            self.multi_tenant,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def tenant_for(self, user_id: Optional[str]) -> str:
        if not self.multi_tenant:
            return DEFAULT_TENANT
        if user_id is None:
            raise ValueError("userId is required in multi-tenant mode")
        return user_id

    def read_state(self, tenant: str) -> TenantState:
        self.sweeper.sweep(self.now())
        return self.store.get(tenant)

    def submit_update(self, update: UpdateRequest) -> TenantState:
        tenant = self.tenant_for(update.user_id)
        now = self.now()

        state = self.store.apply_update(
            tenant, update.rem_id, update.strength, update.source_client_id, now
        )
        self.activity.touch(update.source_client_id, tenant, update.rem_id, update.strength, now)
        self.update_seq += 1
        self.metrics.incr("httpUpdateAcceptedTotal")
        log.info(
            "http.update.accepted seq=%d user=%s rem=%s strength=%s source=%s",
            self.update_seq,
            tenant,
            state.rem_id,
            state.strength,
            state.source_client_id,
        )

        self.hub.broadcast(tenant, state)
        return state

    def gauges(self) -> Dict[str, int]:
        return {
            "wsClientsConnected": len(self.hub),
            "trackedActiveClients": len(self.activity),
            "trackedUsers": len(self.store),
        }

    def metrics_snapshot(self) -> dict:
        return self.metrics.snapshot(self.gauges())

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.heartbeat_interval_ms / 1000)
            try:
                await self.hub.sweep_heartbeat()
            except Exception:
                log.exception("ws heartbeat sweep failed")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.cleanup_interval_ms / 1000)
            try:
                self.sweeper.sweep(self.now())
            except Exception:
                log.exception("memory cleanup sweep failed")


__all__ = ["RelayRuntime", "DEFAULT_TENANT"]
