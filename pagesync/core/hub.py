from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..utils import canonical
from .metrics import Metrics
from .proto import page_update_frame
from .state import TenantState

log = logging.getLogger("pagesync.core.hub")

OUTBOX_LIMIT = 64


@dataclass(eq=False)
class Connection:
    """One live follower socket.

    The hub never writes to the socket itself: it drops frames into the
    mailbox and ``pump()`` (one task per connection) does the sending.
    """

    user_id: str
    websocket: Any
    transport: Optional[asyncio.BaseTransport] = None
    is_alive: bool = True
    outbox: "asyncio.Queue[str]" = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_LIMIT))

    @property
    def open(self) -> bool:
        return not self.websocket.closed

    def offer(self, text: str) -> bool:
        try:
            self.outbox.put_nowait(text)
        except asyncio.QueueFull:
            return False
        return True

    async def pump(self) -> None:
        while True:
            text = await self.outbox.get()
            await self.websocket.send_str(text)

    async def ping(self) -> None:
        await self.websocket.ping()

    def terminate(self) -> None:
        """Drop the socket without a close handshake."""
        if self.transport is not None:
            self.transport.abort()
        else:
            asyncio.ensure_future(self.websocket.close())


class BroadcastHub:
    """Registry of follower connections grouped by tenant."""

    def __init__(self, metrics: Metrics, *, include_user_id: bool = True) -> None:
        self.metrics = metrics
        self.include_user_id = include_user_id
        self._by_tenant: Dict[str, Set[Connection]] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, conn: Connection) -> None:
        self._by_tenant.setdefault(conn.user_id, set()).add(conn)

    def unregister(self, conn: Connection) -> bool:
        members = self._by_tenant.get(conn.user_id)
        if not members or conn not in members:
            return False
        members.discard(conn)
        if not members:
            del self._by_tenant[conn.user_id]
        return True

    def connections(self, tenant: Optional[str] = None) -> List[Connection]:
        if tenant is not None:
            return list(self._by_tenant.get(tenant, ()))
        return [conn for members in self._by_tenant.values() for conn in members]

    def __len__(self) -> int:
        return sum(len(members) for members in self._by_tenant.values())

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def broadcast(self, tenant: str, state: TenantState) -> int:
        if not state.is_populated:
            log.info("broadcast.skipped reason=state_incomplete user=%s", tenant)
            return 0

        text = canonical.dumps(
            page_update_frame(
                rem_id=state.rem_id,
                strength=state.strength,
                updated_at=state.updated_at,
                source_client_id=state.source_client_id,
                user_id=tenant if self.include_user_id else None,
            )
        )

        sent = 0
        for conn in list(self._by_tenant.get(tenant, ())):
            if not conn.open:
                continue
            if conn.offer(text):
                sent += 1
            else:
                log.warning("ws.broadcast.dropped reason=outbox_full user=%s", tenant)

        log.info(
            "ws.broadcast.page_update user=%s rem=%s strength=%s source=%s recipients=%d",
            tenant,
            state.rem_id,
            state.strength,
            state.source_client_id,
            sent,
        )
        self.metrics.incr("wsBroadcastMessagesTotal")
        self.metrics.incr("wsBroadcastRecipientsTotal", sent)
        return sent

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def sweep_heartbeat(self) -> int:
        """Terminate sockets that missed the last ping, ping the rest."""
        terminated = 0
        for conn in self.connections():
            if not conn.is_alive:
                conn.terminate()
                self.unregister(conn)
                terminated += 1
                self.metrics.incr("wsTerminatedStaleTotal")
                log.info("ws.terminated_stale clients=%d user=%s", len(self), conn.user_id)
                continue
            conn.is_alive = False
            try:
                await conn.ping()
            except (ConnectionError, RuntimeError) as exc:
                # next sweep reaps it since is_alive stays False
                log.debug("ws.ping.failed user=%s error=%s", conn.user_id, exc)
        return terminated


__all__ = ["BroadcastHub", "Connection", "OUTBOX_LIMIT"]
