from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from aiohttp import web

from pagesync.core.config import RelayConfig, load_config
from pagesync.server.gateway import make_app
from pagesync.server.runtime import RelayRuntime

log = logging.getLogger("pagesync.cmd.server")


async def _run(config: RelayConfig) -> None:
    runtime = RelayRuntime(config)
    runner = web.AppRunner(make_app(runtime), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    log.info(
        "server.listen url=http://%s:%d ttl_ms=%d cleanup_ms=%d",
        config.host,
        config.port,
        config.inactivity_ttl_ms,
        config.cleanup_interval_ms,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="PageSync navigation relay")
    parser.add_argument("--config", help="Optional YAML config file")
    parser.add_argument("--host", help="Bind address (default 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Listen port (default 9091)")
    parser.add_argument(
        "--single-tenant",
        action="store_true",
        help="Serve one implicit tenant; userId becomes optional",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"host": args.host, "port": args.port}
    if args.single_tenant:
        overrides["multi_tenant"] = False
    config = load_config(Path(args.config) if args.config else None, **overrides)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
