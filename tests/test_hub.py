import asyncio
import json

import pytest

from pagesync.core.hub import OUTBOX_LIMIT, BroadcastHub, Connection
from pagesync.core.metrics import Metrics
from pagesync.core.state import EMPTY_STATE, TenantState


# ---- helpers ----

class FakeSocket:
    def __init__(self, closed=False):
        self.closed = closed
        self.sent = []
        self.pings = 0

    async def send_str(self, text):
        self.sent.append(text)

    async def ping(self):
        self.pings += 1

    async def close(self, **kwargs):
        self.closed = True


class FakeTransport:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


def mk_conn(user_id, closed=False):
    return Connection(user_id=user_id, websocket=FakeSocket(closed=closed), transport=FakeTransport())


def drain(conn):
    frames = []
    while not conn.outbox.empty():
        frames.append(json.loads(conn.outbox.get_nowait()))
    return frames


POPULATED = TenantState(
    rem_id="abc123",
    strength="strong",
    updated_at="2024-05-01T10:00:00.000Z",
    source_client_id="dev1",
)


@pytest.fixture
def metrics():
    return Metrics(now=lambda: 0)


@pytest.fixture
def hub(metrics):
    return BroadcastHub(metrics)


# ---- registry ----

def test_register_and_unregister(hub):
    a, b = mk_conn("u1"), mk_conn("u2")
    hub.register(a)
    hub.register(b)
    assert len(hub) == 2
    assert hub.connections("u1") == [a]

    assert hub.unregister(a) is True
    assert hub.unregister(a) is False
    assert hub.connections("u1") == []
    assert len(hub) == 1


# ---- broadcast ----

def test_broadcast_reaches_only_matching_tenant(hub, metrics):
    u1a, u1b, u2 = mk_conn("u1"), mk_conn("u1"), mk_conn("u2")
    for conn in (u1a, u1b, u2):
        hub.register(conn)

    recipients = hub.broadcast("u1", POPULATED)

    expected = {
        "type": "page_update",
        "remId": "abc123",
        "strength": "strong",
        "updatedAt": "2024-05-01T10:00:00.000Z",
        "sourceClientId": "dev1",
        "userId": "u1",
    }
    assert recipients == 2
    assert drain(u1a) == [expected]
    assert drain(u1b) == [expected]
    assert drain(u2) == []
    assert metrics.get("wsBroadcastMessagesTotal") == 1
    assert metrics.get("wsBroadcastRecipientsTotal") == 2


def test_incomplete_state_is_never_broadcast(hub, metrics):
    conn = mk_conn("u1")
    hub.register(conn)
    partial = TenantState(rem_id="abc123", strength="strong", updated_at=None, source_client_id="dev1")

    assert hub.broadcast("u1", EMPTY_STATE) == 0
    assert hub.broadcast("u1", partial) == 0
    assert drain(conn) == []
    assert metrics.get("wsBroadcastMessagesTotal") == 0


def test_closed_sockets_are_skipped(hub):
    open_conn, closed_conn = mk_conn("u1"), mk_conn("u1", closed=True)
    hub.register(open_conn)
    hub.register(closed_conn)
    assert hub.broadcast("u1", POPULATED) == 1
    assert drain(closed_conn) == []


def test_full_outbox_does_not_block_others(hub):
    slow, fast = mk_conn("u1"), mk_conn("u1")
    hub.register(slow)
    hub.register(fast)
    for _ in range(OUTBOX_LIMIT):
        slow.offer("{}")

    assert hub.broadcast("u1", POPULATED) == 1
    assert len(drain(fast)) == 1


def test_single_tenant_frames_omit_user_id(metrics):
    hub = BroadcastHub(metrics, include_user_id=False)
    conn = mk_conn("default")
    hub.register(conn)
    hub.broadcast("default", POPULATED)
    assert "userId" not in drain(conn)[0]


@pytest.mark.asyncio
async def test_pump_sends_in_order():
    conn = mk_conn("u1")
    conn.offer("one")
    conn.offer("two")
    task = asyncio.create_task(conn.pump())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert conn.websocket.sent == ["one", "two"]


# ---- heartbeat ----

@pytest.mark.asyncio
async def test_heartbeat_pings_live_connections(hub):
    conn = mk_conn("u1")
    hub.register(conn)

    assert await hub.sweep_heartbeat() == 0
    assert conn.websocket.pings == 1
    assert conn.is_alive is False


@pytest.mark.asyncio
async def test_pong_keeps_connection_alive(hub):
    conn = mk_conn("u1")
    hub.register(conn)

    for _ in range(3):
        await hub.sweep_heartbeat()
        conn.is_alive = True  # what the gateway does on PONG

    assert conn in hub.connections("u1")
    assert not conn.transport.aborted


@pytest.mark.asyncio
async def test_silent_connection_terminated_on_second_sweep(hub, metrics):
    silent, chatty = mk_conn("u1"), mk_conn("u1")
    hub.register(silent)
    hub.register(chatty)

    await hub.sweep_heartbeat()
    chatty.is_alive = True
    terminated = await hub.sweep_heartbeat()

    assert terminated == 1
    assert silent.transport.aborted
    assert hub.connections("u1") == [chatty]
    assert metrics.get("wsTerminatedStaleTotal") == 1
