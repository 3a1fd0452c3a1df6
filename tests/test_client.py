import argparse
import asyncio
import contextlib
import json

import pytest

from pagesync.cmd import client as cli
from pagesync.server.gateway import RUNTIME_KEY


@pytest.mark.parametrize(
    "attempt, delay",
    [(0, 500), (1, 1000), (2, 2000), (3, 4000), (4, 8000), (10, 8000)],
)
def test_reconnect_backoff_is_capped(attempt, delay):
    assert cli.reconnect_delay_ms(attempt) == delay


@pytest.mark.parametrize(
    "server, user, expected",
    [
        ("http://127.0.0.1:9091", "u1", "ws://127.0.0.1:9091/ws?userId=u1"),
        ("https://relay.example/pagesync/", "u1", "wss://relay.example/pagesync/ws?userId=u1"),
        ("http://relay.example", None, "ws://relay.example/ws"),
    ],
)
def test_ws_url_for(server, user, expected):
    assert cli.ws_url_for(server, user) == expected


def test_invalid_window_slides():
    window = cli.InvalidPayloadWindow(window_ms=30_000, threshold=3)
    assert window.record(0) == 1
    assert window.record(10_000) == 2
    assert not window.degraded
    assert window.record(20_000) == 3
    assert window.degraded
    # the first hit has aged out
    assert window.record(35_000) == 3
    assert window.record(70_000) == 1
    assert not window.degraded


def test_follower_dispatches_page_updates_only():
    t = {"now": 0}
    seen = []
    follower = cli.FollowerClient("http://relay", "u1", on_update=seen.append, now=lambda: t["now"])

    update = {"type": "page_update", "remId": "abc123", "strength": "strong", "updatedAt": "x", "sourceClientId": "d1"}
    assert follower.handle_message(json.dumps(update)) == update
    assert follower.handle_message(json.dumps({"type": "welcome", "now": "x"})) is None
    assert seen == [update]
    assert follower.invalid.hits == []

    for raw in ("not json", json.dumps({"type": "page_update", "remId": "r", "strength": "loud"}), "[]"):
        assert follower.handle_message(raw) is None
    assert seen == [update]
    assert follower.invalid.degraded


def test_build_update_includes_optional_fields():
    args = argparse.Namespace(rem_id="r1", strength="weak", client_id="d1", user="u1", sent_at="2024-01-01T00:00:00Z")
    assert cli.build_update(args) == {
        "remId": "r1",
        "strength": "weak",
        "sourceClientId": "d1",
        "userId": "u1",
        "sentAt": "2024-01-01T00:00:00Z",
    }
    args = argparse.Namespace(rem_id="r1", strength="weak", client_id="d1", user=None, sent_at=None)
    assert cli.build_update(args) == {"remId": "r1", "strength": "weak", "sourceClientId": "d1"}



# -----------------------------
# Against a running relay
# -----------------------------

@pytest.mark.asyncio
async def test_publish_fetch_and_follow(client):
    base = str(client.make_url("/"))
    received = asyncio.Queue()
    follower = cli.FollowerClient(base, "u1", on_update=received.put_nowait)

    assert await follower.fetch_state() == {
        "remId": None,
        "strength": None,
        "updatedAt": None,
        "sourceClientId": None,
    }

    listener = asyncio.create_task(follower._listen())
    try:
        for _ in range(100):
            if client.server.app[RUNTIME_KEY].hub.connections("u1"):
                break
            await asyncio.sleep(0.01)

        result = await cli.publish(base, {"remId": "abc123", "strength": "strong", "sourceClientId": "dev1", "userId": "u1"})
        assert result["ok"] is True

        msg = await asyncio.wait_for(received.get(), timeout=2)
        assert msg["remId"] == "abc123"
        assert msg["userId"] == "u1"
    finally:
        listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener


@pytest.mark.asyncio
async def test_publish_reports_validation_errors(client):
    result = await cli.publish(str(client.make_url("/")), {"remId": "bad id"})
    assert result == {"ok": False, "error": "Invalid remId", "code": "E_INVALID_FIELD"}
