from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp
import websockets

log = logging.getLogger("pagesync.cmd.client")

RECONNECT_BASE_DELAY_MS = 500
RECONNECT_MAX_DELAY_MS = 8000
INVALID_PAYLOAD_THRESHOLD = 3
INVALID_PAYLOAD_WINDOW_MS = 30_000


def reconnect_delay_ms(attempt: int) -> int:
    return min(RECONNECT_MAX_DELAY_MS, RECONNECT_BASE_DELAY_MS * 2 ** attempt)


def http_url(server_url: str, path: str) -> str:
    return server_url.rstrip("/") + path


def ws_url_for(server_url: str, user_id: Optional[str] = None) -> str:
    """http(s)://host/prefix -> ws(s)://host/prefix/ws[?userId=...]"""
    parts = urlsplit(server_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/") + "/ws"
    query = urlencode({"userId": user_id}) if user_id else ""
    return urlunsplit((scheme, parts.netloc, path, query, ""))


def is_page_update(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("type") == "page_update"
        and isinstance(value.get("remId"), str)
        and value.get("strength") in ("strong", "weak")
    )


@dataclass
class InvalidPayloadWindow:
    """Sliding window of bad inbound frames; trips at ``threshold`` hits."""

    window_ms: int = INVALID_PAYLOAD_WINDOW_MS
    threshold: int = INVALID_PAYLOAD_THRESHOLD
    hits: List[int] = field(default_factory=list)

    def record(self, now_ms: int) -> int:
        self.hits = [t for t in self.hits if now_ms - t <= self.window_ms]
        self.hits.append(now_ms)
        return len(self.hits)

    @property
    def degraded(self) -> bool:
        return len(self.hits) >= self.threshold

    def reset(self) -> None:
        self.hits.clear()


class FollowerClient:
    def __init__(
        self,
        server_url: str,
        user_id: Optional[str],
        *,
        on_update: Callable[[Dict[str, Any]], None] = lambda msg: print(json.dumps(msg), flush=True),
        now: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.server_url = server_url
        self.user_id = user_id
        self.on_update = on_update
        self.now = now
        self.attempt = 0
        self.invalid = InvalidPayloadWindow()
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        state = await self.fetch_state()
        print(json.dumps({"type": "state", **state}), flush=True)
        while not self.stop_event.is_set():
            try:
                await self._listen()
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
                log.warning("connection lost: %s", exc)
            if self.stop_event.is_set():
                break
            delay = reconnect_delay_ms(self.attempt)
            self.attempt += 1
            log.info("reconnecting in %d ms (attempt %d)", delay, self.attempt)
            await asyncio.sleep(delay / 1000)

    async def fetch_state(self) -> Dict[str, Any]:
        params = {"userId": self.user_id} if self.user_id else None
        async with aiohttp.ClientSession() as session:
            async with session.get(http_url(self.server_url, "/state"), params=params) as resp:
                body = await resp.json()
                if resp.status != 200:
                    raise RuntimeError(f"/state failed: {resp.status} {body}")
                return body

    async def _listen(self) -> None:
        url = ws_url_for(self.server_url, self.user_id)
        async with websockets.connect(url) as ws:
            log.info("connected to %s", url)
            self.attempt = 0
            self.invalid.reset()
            async for raw in ws:
                self.handle_message(raw)

    def handle_message(self, raw: Any) -> Optional[Dict[str, Any]]:
        """Dispatch one inbound frame; returns it when it was a page_update."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            msg = None
        if is_page_update(msg):
            self.on_update(msg)
            return msg
        if isinstance(msg, dict) and msg.get("type") == "welcome":
            log.debug("welcome at %s", msg.get("now"))
            return None

        count = self.invalid.record(self.now())
        log.warning("E_INVALID_WS_PAYLOAD payload=%r", raw)
        if self.invalid.degraded:
            log.warning("connection degraded: %d invalid payloads in %d ms", count, self.invalid.window_ms)
        return None


async def publish(server_url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        async with session.post(http_url(server_url, "/update"), json=payload) as resp:
            return await resp.json()


def build_update(args: argparse.Namespace) -> Dict[str, Any]:
    payload = {
        "remId": args.rem_id,
        "strength": args.strength,
        "sourceClientId": args.client_id,
    }
    if args.user:
        payload["userId"] = args.user
    if args.sent_at:
        payload["sentAt"] = args.sent_at
    return payload


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="PageSync follower / publisher")
    parser.add_argument("--server", default="http://127.0.0.1:9091", help="Relay base URL")
    parser.add_argument("--user", help="Tenant id (userId)")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("follow", help="Print the tenant's page updates as they arrive")

    pub = sub.add_parser("publish", help="Send one navigation update")
    pub.add_argument("--rem-id", required=True)
    pub.add_argument("--strength", choices=("strong", "weak"), default="strong")
    pub.add_argument("--client-id", required=True)
    pub.add_argument("--sent-at")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "publish":
        result = asyncio.run(publish(args.server, build_update(args)))
        print(json.dumps(result), flush=True)
        if not result.get("ok"):
            sys.exit(1)
        return

    try:
        asyncio.run(FollowerClient(args.server, args.user).run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
