"""
HTTP/WS gateway for the PageSync relay.

Routes
------
GET  /health    liveness probe
GET  /metrics   counters and gauges
GET  /state     latest navigation of a tenant (``?userId=`` in multi-tenant mode)
POST /update    publish a navigation, fanned out to the tenant's followers
GET  /ws        follower WebSocket (``?userId=`` in multi-tenant mode)

Every failure is answered as ``{"ok": false, "error": ..., "code": ...}``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict

from aiohttp import WSCloseCode, WSMsgType, web
from aiohttp.http_exceptions import HttpProcessingError

from pagesync.core.hub import Connection
from pagesync.core.proto import (
    E_BODY_TOO_LARGE,
    E_INTERNAL,
    E_INVALID_JSON,
    E_INVALID_PAYLOAD,
    E_INVALID_QUERY,
    E_NOT_FOUND,
    RelayError,
    error_body,
    iso_from_ms,
    welcome_frame,
)
from pagesync.core.validate import is_safe_id, validate_update
from pagesync.server.runtime import RelayRuntime
from pagesync.utils import canonical

log = logging.getLogger("pagesync.server.gateway")

RUNTIME_KEY = web.AppKey("runtime", RelayRuntime)

ALLOW_METHODS = "GET,POST,OPTIONS"
ALLOW_HEADERS = "Content-Type"


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def _json(payload: Dict[str, Any], status: int = 200) -> web.Response:
    return web.Response(
        status=status,
        content_type="application/json",
        body=canonical.dumps_bytes(payload),
    )


def _error(exc: RelayError) -> web.Response:
    return _json(exc.to_body(), status=exc.status)


def _code_for_status(status: int) -> str:
    if status == 413:
        return E_BODY_TOO_LARGE
    if status == 404:
        return E_NOT_FOUND
    if status < 500:
        return E_INVALID_PAYLOAD
    return E_INTERNAL


def _runtime(request: web.Request) -> RelayRuntime:
    return request.app[RUNTIME_KEY]


def _apply_cors(request: web.Request, response: web.StreamResponse) -> None:
    cfg = _runtime(request).cfg
    origin = request.headers.get("Origin")
    if cfg.allows_any_origin:
        response.headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in cfg.cors_allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
    response.headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS


@web.middleware
async def relay_middleware(request: web.Request, handler):  # type: ignore[no-untyped-def]
    runtime = _runtime(request)
    runtime.metrics.incr("httpRequestsTotal")
    log.info("http.request method=%s url=%s", request.method, request.path_qs)

    if request.method == "OPTIONS":
        runtime.metrics.incr("httpOptionsRequestsTotal")
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
            runtime.metrics.incr("httpNotFoundTotal")
            log.info("http.not_found method=%s url=%s", request.method, request.path_qs)
            response = _error(RelayError(E_NOT_FOUND, "Not found"))
        except web.HTTPException as exc:
            if exc.status < 400:
                raise
            log.info("http.rejected status=%d method=%s url=%s", exc.status, request.method, request.path_qs)
            response = _json(error_body(_code_for_status(exc.status), exc.reason), status=exc.status)
        except Exception:
            log.exception("http.internal_error method=%s url=%s", request.method, request.path_qs)
            response = _error(RelayError(E_INTERNAL, "Internal server error"))

    # a prepared WebSocketResponse has already sent its headers
    if not isinstance(response, web.WebSocketResponse):
        _apply_cors(request, response)
    return response


# ---------------------------------------------------------------------------
# Body parsing
# ---------------------------------------------------------------------------

async def read_json_body(request: web.Request, limit: int) -> Any:
    """Read at most ``limit`` bytes and decode them as JSON (empty body -> {})."""

    declared = request.content_length
    if declared is not None and declared > limit:
        raise RelayError(E_BODY_TOO_LARGE, "Body too large")

    chunks: list[bytes] = []
    size = 0
    try:
        async for chunk in request.content.iter_any():
            size += len(chunk)
            if size > limit:
                raise RelayError(E_BODY_TOO_LARGE, "Body too large")
            chunks.append(chunk)
    except (OSError, HttpProcessingError) as exc:
        raise RelayError(E_INTERNAL, "Request stream error") from exc

    body = b"".join(chunks)
    if not body:
        return {}
    try:
        return canonical.loads(body)
    except canonical.JSONDecodeError as exc:
        raise RelayError(E_INVALID_JSON, "Invalid JSON body") from exc


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

async def route_health(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    runtime.metrics.incr("httpHealthRequestsTotal")
    log.debug("http.health.ok")
    return _json({"ok": True, "now": iso_from_ms(runtime.now())})


async def route_metrics(request: web.Request) -> web.Response:
    return _json(_runtime(request).metrics_snapshot())


async def route_state(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    runtime.metrics.incr("httpStateRequestsTotal")

    user_id = request.query.get("userId")
    if runtime.multi_tenant and not is_safe_id(user_id):
        return _error(RelayError(E_INVALID_QUERY, "Missing or invalid userId query parameter"))

    tenant = runtime.tenant_for(user_id)
    state = runtime.read_state(tenant)
    log.info("http.state.read user=%s rem=%s", tenant, state.rem_id)
    return _json(state.to_wire())


async def route_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    runtime.metrics.incr("httpUpdateRequestsTotal")
    try:
        payload = await read_json_body(request, runtime.cfg.max_body_bytes)
        update = validate_update(payload, require_user_id=runtime.multi_tenant)
    except RelayError as exc:
        runtime.metrics.incr("httpUpdateRejectedTotal")
        log.info("http.update.rejected code=%s message=%s", exc.code, exc.message)
        return _error(exc)

    state = runtime.submit_update(update)
    return _json({"ok": True, "state": state.to_wire()})


async def route_ws(request: web.Request) -> web.StreamResponse:
    runtime = _runtime(request)
    ws = web.WebSocketResponse(autoping=False)
    if not ws.can_prepare(request).ok:
        # plain GET without the upgrade handshake
        runtime.metrics.incr("httpNotFoundTotal")
        log.info("http.not_found method=%s url=%s", request.method, request.path_qs)
        return _error(RelayError(E_NOT_FOUND, "Not found"))
    await ws.prepare(request)

    user_id = request.query.get("userId")
    if runtime.multi_tenant and not is_safe_id(user_id):
        runtime.metrics.incr("wsRejectedInvalidUserTotal")
        log.info("ws.connect.rejected_invalid_user url=%s", request.path_qs)
        await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"invalid userId")
        return ws

    conn = Connection(user_id=runtime.tenant_for(user_id), websocket=ws, transport=request.transport)
    conn.offer(canonical.dumps(welcome_frame(runtime.now())))
    runtime.hub.register(conn)
    runtime.metrics.incr("wsConnectionsTotal")
    log.info("ws.connect clients=%d user=%s", len(runtime.hub), conn.user_id)

    sender = asyncio.create_task(_pump(runtime, conn), name=f"ws-sender-{conn.user_id}")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.PONG:
                conn.is_alive = True
            elif msg.type == WSMsgType.PING:
                await ws.pong(msg.data)
            elif msg.type == WSMsgType.ERROR:
                runtime.metrics.incr("wsErrorsTotal")
                log.warning("ws.error user=%s error=%s clients=%d", conn.user_id, ws.exception(), len(runtime.hub))
                break
            else:
                log.debug("ws.inbound.ignored user=%s type=%s", conn.user_id, msg.type)
    finally:
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
        runtime.hub.unregister(conn)
        log.info("ws.close clients=%d user=%s", len(runtime.hub), conn.user_id)
    return ws


async def _pump(runtime: RelayRuntime, conn: Connection) -> None:
    try:
        await conn.pump()
    except (ConnectionError, RuntimeError) as exc:
        runtime.metrics.incr("wsErrorsTotal")
        log.warning("ws.error user=%s error=%s", conn.user_id, exc)
        # stop fanning out to a socket that can no longer be written
        runtime.hub.unregister(conn)
        conn.terminate()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def make_app(runtime: RelayRuntime) -> web.Application:
    app = web.Application(middlewares=[relay_middleware])
    app[RUNTIME_KEY] = runtime

    async def on_startup(app: web.Application) -> None:
        await app[RUNTIME_KEY].start()

    async def on_shutdown(app: web.Application) -> None:
        for conn in app[RUNTIME_KEY].hub.connections():
            with contextlib.suppress(ConnectionError, RuntimeError):
                await conn.websocket.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    async def on_cleanup(app: web.Application) -> None:
        await app[RUNTIME_KEY].stop()

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/health", route_health, allow_head=False)
    app.router.add_get("/metrics", route_metrics, allow_head=False)
    app.router.add_get("/state", route_state, allow_head=False)
    app.router.add_post("/update", route_update)
    app.router.add_get("/ws", route_ws, allow_head=False)
    return app


__all__ = ["make_app", "read_json_body", "RUNTIME_KEY"]
