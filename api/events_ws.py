"""
Real-time ledger/invoice stream (WebSocket).

Authentication happens BEFORE accept using the caller's existing session
(cookie or X-Session-Token header); no unauthenticated upgrade is allowed.

Inbound messages (JSON ``{"type": ..., "data": {...}}``):
- ``ping``                 -> ``pong``
- ``pong``                 heartbeat answer (any inbound message counts)
- ``subscribe:client``     staff only, ``{"clientId": n}``
- ``unsubscribe:client``   staff only, ``{"clientId": n}``
- ``timer:start|stop``     relayed as ``timer:started|stopped`` to the same
                           staff member's other connections

Outbound traffic is written by a single sender task draining the
connection's queue, so the receive loop never writes to the socket directly.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from api.auth import SESSION_HEADER, session_token_from
from api.db import get_sessionmaker
from api.metrics import WS_REJECTED
from services.connection_registry import (
    Connection,
    ConnectionRegistry,
    MaxConnectionsExceededError,
    SubscriptionNotAllowedError,
    encode_message,
)
from services.credentials import resolve_session
from services.principals import Principal

log = logging.getLogger("timeledger.ws")

router = APIRouter(tags=["events"])

# seconds the sender waits before re-checking whether the connection closed
_SENDER_POLL_SECONDS = 1.0

_TIMER_RELAY = {
    "timer:start": "timer:started",
    "timer:stop": "timer:stopped",
}


def _resolve(token: str) -> Optional[Principal]:
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        principal = resolve_session(db, token)
        db.commit()
        return principal
    finally:
        db.close()


def _client_id_from(data: Any) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    raw = data.get("clientId", data.get("client_id"))
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def handle_message(registry: ConnectionRegistry, conn: Connection, raw: str) -> None:
    """Apply one inbound message. Replies go through the connection's queue."""
    conn.mark_alive()
    try:
        message = json.loads(raw)
    except ValueError:
        log.info("ws_bad_message conn=%s reason=invalid_json", conn.connection_id)
        return
    if not isinstance(message, dict):
        log.info("ws_bad_message conn=%s reason=not_an_object", conn.connection_id)
        return

    mtype = message.get("type")
    data = message.get("data") or {}

    if mtype == "ping":
        conn.offer(encode_message("pong", {}))
        return
    if mtype == "pong":
        return

    if mtype in ("subscribe:client", "unsubscribe:client"):
        client_id = _client_id_from(data)
        if client_id is None:
            conn.offer(encode_message("error", {"message": "clientId is required"}))
            return
        try:
            if mtype == "subscribe:client":
                registry.subscribe(conn.connection_id, client_id)
                conn.offer(encode_message("subscribed", {"client_id": client_id}))
            else:
                registry.unsubscribe(conn.connection_id, client_id)
                conn.offer(encode_message("unsubscribed", {"client_id": client_id}))
        except SubscriptionNotAllowedError as exc:
            conn.offer(encode_message("error", {"message": str(exc)}))
        return

    relayed = _TIMER_RELAY.get(mtype or "")
    if relayed is not None:
        if not conn.principal.is_staff:
            log.info("ws_timer_ignored conn=%s principal=%s", conn.connection_id, conn.principal.key)
            return
        payload: Dict[str, Any] = data if isinstance(data, dict) else {}
        out = encode_message(relayed, payload)
        for other in registry.connections_for(conn.principal):
            if other.connection_id != conn.connection_id:
                other.offer(out)
        return

    log.debug("ws_unknown_message conn=%s type=%s", conn.connection_id, mtype)


async def _receive_loop(websocket: WebSocket, registry: ConnectionRegistry, conn: Connection) -> None:
    while True:
        raw = await websocket.receive_text()
        handle_message(registry, conn, raw)


async def _send_loop(websocket: WebSocket, conn: Connection) -> None:
    while True:
        if conn.is_closed():
            if conn.slow_consumer:
                try:
                    await websocket.send_text(
                        encode_message("disconnect", {"reason": "slow_consumer"})
                    )
                except (WebSocketDisconnect, OSError, RuntimeError) as send_err:
                    log.debug("ws_disconnect_notify_failed conn=%s err=%s", conn.connection_id, send_err)
            return
        message = await conn.get(timeout=_SENDER_POLL_SECONDS)
        if message is None:
            continue
        await websocket.send_text(message)


@router.websocket("/ws")
async def events_ws(websocket: WebSocket) -> None:
    registry: ConnectionRegistry = websocket.app.state.registry

    # --- Authenticate BEFORE accept ---
    token = session_token_from(websocket.cookies, websocket.headers.get(SESSION_HEADER))
    if not token:
        WS_REJECTED.labels(reason="auth_missing").inc()
        await websocket.close(code=4001, reason="authentication required")
        log.warning("ws_auth_failed: no session provided")
        return

    principal = await run_in_threadpool(_resolve, token)
    if principal is None:
        WS_REJECTED.labels(reason="auth_invalid").inc()
        await websocket.close(code=4001, reason="invalid session")
        log.warning("ws_auth_failed: unknown or expired session")
        return

    try:
        conn = registry.register(principal, loop=asyncio.get_running_loop())
    except MaxConnectionsExceededError:
        WS_REJECTED.labels(reason="max_connections").inc()
        await websocket.close(code=4029, reason="max connections exceeded for principal")
        return

    try:
        await websocket.accept()
        log.info("ws_connected conn=%s principal=%s", conn.connection_id, principal.key)
        await websocket.send_text(
            encode_message(
                "connected",
                {
                    "principal": principal.to_dict(),
                    "connection_id": conn.connection_id,
                    "connected_at": conn.connected_at,
                },
            )
        )

        receiver = asyncio.ensure_future(_receive_loop(websocket, registry, conn))
        sender = asyncio.ensure_future(_send_loop(websocket, conn))
        done, pending = await asyncio.wait(
            {receiver, sender}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except (asyncio.CancelledError, WebSocketDisconnect):
                pass
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                log.warning("ws_error conn=%s error=%s", conn.connection_id, exc)

        if sender in done:
            # evicted (heartbeat or slow consumer): close our side
            try:
                await websocket.close(code=1001)
            except (RuntimeError, OSError):
                pass
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    finally:
        registry.unregister(conn.connection_id)
        log.info("ws_disconnected conn=%s principal=%s", conn.connection_id, principal.key)
