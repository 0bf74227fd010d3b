"""
Connection Registry

Tracks live subscriber connections and who they belong to:

- connection id -> Connection
- principal key (``staff:3`` / ``client:12``) -> connection ids
- client id -> connection ids interested in that client's records
  (client principals are subscribed to themselves on register; staff
  subscribe and unsubscribe explicitly)

Every read and write goes through one RLock. Broadcast callers get snapshots,
so fan-out never iterates a live set while a disconnect mutates it.

A Connection owns a bounded asyncio.Queue of serialized messages. Offers are
non-blocking and safe from any thread; a connection whose queue stays full
for ``drop_threshold`` consecutive offers closes itself (slow consumer).
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from api.config.env import (
    ws_max_connections_per_principal,
    ws_queue_size,
    ws_slow_consumer_drop_threshold,
)
from api.metrics import (
    WS_HEARTBEAT_EVICTIONS,
    WS_QUEUE_FULL_DROPS,
    WS_SLOW_CONSUMER_EVICTIONS,
    set_connection_count,
)
from services.principals import Principal, PrincipalKind

log = logging.getLogger("timeledger.connection_registry")


class MaxConnectionsExceededError(Exception):
    """Raised by register() when a principal already holds its cap of connections."""


class SubscriptionNotAllowedError(Exception):
    """Raised when a client principal tries to manage client subscriptions."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def encode_message(message_type: str, data: Dict[str, Any]) -> str:
    return json.dumps({"type": message_type, "data": data}, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class Connection:
    """
    One live transport connection.

    ``loop`` is the event loop that drains the queue. When set, offers from
    other threads are marshalled onto it; when None (unit tests) offers
    enqueue directly.
    """

    def __init__(
        self,
        connection_id: str,
        principal: Principal,
        *,
        queue_size: int = 256,
        drop_threshold: int = 5,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.connection_id = connection_id
        self.principal = principal
        self.connected_at = _utc_now_iso()
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._drop_threshold = drop_threshold
        self._consecutive_drops = 0
        self._alive = True
        self.slow_consumer = False

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # wake a sender blocked in get()
        self._schedule(self._wake)

    def _wake(self) -> None:
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def _schedule(self, fn, *args) -> bool:
        loop = self._loop
        if loop is None:
            fn(*args)
            return True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
            return True
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # loop already closed: the connection is gone
            self._closed.set()
            return False
        return True

    def offer(self, message: str) -> bool:
        """Queue `message` without blocking. False if the connection is closed."""
        if self.is_closed():
            return False
        return self._schedule(self._enqueue, message)

    def _enqueue(self, message: str) -> None:
        if self.is_closed():
            return
        try:
            self._queue.put_nowait(message)
            self._consecutive_drops = 0
        except asyncio.QueueFull:
            WS_QUEUE_FULL_DROPS.inc()
            self._consecutive_drops += 1
            if self._consecutive_drops >= self._drop_threshold:
                log.warning(
                    "slow_consumer_disconnect conn=%s principal=%s "
                    "consecutive_drops=%d >= threshold=%d",
                    self.connection_id,
                    self.principal.key,
                    self._consecutive_drops,
                    self._drop_threshold,
                )
                self.slow_consumer = True
                WS_SLOW_CONSUMER_EVICTIONS.inc()
                self._closed.set()
            else:
                log.warning(
                    "connection_queue_full conn=%s principal=%s drop=%d/%d",
                    self.connection_id,
                    self.principal.key,
                    self._consecutive_drops,
                    self._drop_threshold,
                )

    async def get(self, timeout: float = 30.0) -> Optional[str]:
        """Next queued message, or None on timeout or close."""
        if self.is_closed():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain_nowait(self) -> List[str]:
        """Everything currently queued; used by tests and shutdown."""
        out: List[str] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return out
            if item is not None:
                out.append(item)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def mark_alive(self) -> None:
        self._alive = True

    def probe(self) -> bool:
        """
        Start a new heartbeat window. Returns False if nothing was heard
        from the peer since the previous probe.
        """
        if not self._alive:
            return False
        self._alive = False
        return True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ConnectionRegistry:
    """Owner of every live connection; the only place the maps are touched."""

    def __init__(
        self,
        *,
        max_connections_per_principal: Optional[int] = None,
        queue_size: Optional[int] = None,
        drop_threshold: Optional[int] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._connections: Dict[str, Connection] = {}
        self._by_principal: Dict[str, Set[str]] = {}
        self._client_subscriptions: Dict[int, Set[str]] = {}
        self._subscribed_to: Dict[str, Set[int]] = {}
        self._max_per_principal = (
            max_connections_per_principal
            if max_connections_per_principal is not None
            else ws_max_connections_per_principal()
        )
        self._queue_size = queue_size if queue_size is not None else ws_queue_size()
        self._drop_threshold = (
            drop_threshold if drop_threshold is not None else ws_slow_consumer_drop_threshold()
        )

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def register(
        self,
        principal: Principal,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Connection:
        with self._lock:
            existing = self._by_principal.get(principal.key, set())
            if len(existing) >= self._max_per_principal:
                log.warning(
                    "max_connections_exceeded principal=%s count=%d limit=%d",
                    principal.key,
                    len(existing),
                    self._max_per_principal,
                )
                raise MaxConnectionsExceededError(
                    f"principal {principal.key!r} has reached the max of "
                    f"{self._max_per_principal} concurrent connections"
                )

            conn = Connection(
                connection_id=str(uuid.uuid4()),
                principal=principal,
                queue_size=self._queue_size,
                drop_threshold=self._drop_threshold,
                loop=loop,
            )
            self._connections[conn.connection_id] = conn
            self._by_principal.setdefault(principal.key, set()).add(conn.connection_id)
            self._subscribed_to[conn.connection_id] = set()
            if principal.is_client:
                self._add_subscription(conn.connection_id, principal.id)
            self._publish_gauges()

        log.info("connection_registered conn=%s principal=%s", conn.connection_id, principal.key)
        return conn

    def unregister(self, connection_id: str) -> bool:
        """Remove a connection from every map it appears in. Idempotent."""
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return False
            ids = self._by_principal.get(conn.principal.key)
            if ids is not None:
                ids.discard(connection_id)
                if not ids:
                    del self._by_principal[conn.principal.key]
            for client_id in self._subscribed_to.pop(connection_id, set()):
                subs = self._client_subscriptions.get(client_id)
                if subs is not None:
                    subs.discard(connection_id)
                    if not subs:
                        del self._client_subscriptions[client_id]
            self._publish_gauges()
        conn.close()
        log.info("connection_unregistered conn=%s principal=%s", connection_id, conn.principal.key)
        return True

    # ------------------------------------------------------------------
    # Client subscriptions
    # ------------------------------------------------------------------

    def _add_subscription(self, connection_id: str, client_id: int) -> None:
        self._client_subscriptions.setdefault(client_id, set()).add(connection_id)
        self._subscribed_to.setdefault(connection_id, set()).add(client_id)

    def subscribe(self, connection_id: str, client_id: int) -> bool:
        """Staff only. False if the connection is no longer registered."""
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return False
            if not conn.principal.is_staff:
                raise SubscriptionNotAllowedError("only staff connections manage subscriptions")
            self._add_subscription(connection_id, int(client_id))
        log.debug("client_subscribed conn=%s client=%s", connection_id, client_id)
        return True

    def unsubscribe(self, connection_id: str, client_id: int) -> bool:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return False
            if not conn.principal.is_staff:
                raise SubscriptionNotAllowedError("only staff connections manage subscriptions")
            client_id = int(client_id)
            subs = self._client_subscriptions.get(client_id)
            if subs is not None:
                subs.discard(connection_id)
                if not subs:
                    del self._client_subscriptions[client_id]
            self._subscribed_to.get(connection_id, set()).discard(client_id)
        log.debug("client_unsubscribed conn=%s client=%s", connection_id, client_id)
        return True

    # ------------------------------------------------------------------
    # Snapshots for fan-out
    # ------------------------------------------------------------------

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def staff_connections(self) -> List[Connection]:
        with self._lock:
            return [c for c in self._connections.values() if c.principal.is_staff]

    def client_subscribers(self, client_id: int) -> List[Connection]:
        with self._lock:
            ids = self._client_subscriptions.get(int(client_id), set())
            return [self._connections[i] for i in ids if i in self._connections]

    def connections_for(self, principal: Principal) -> List[Connection]:
        with self._lock:
            ids = self._by_principal.get(principal.key, set())
            return [self._connections[i] for i in ids if i in self._connections]

    def subscriptions_of(self, connection_id: str) -> Set[int]:
        with self._lock:
            return set(self._subscribed_to.get(connection_id, set()))

    def connection_count(self, principal: Optional[Principal] = None) -> int:
        with self._lock:
            if principal is None:
                return len(self._connections)
            return len(self._by_principal.get(principal.key, set()))

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def sweep_heartbeats(self) -> List[str]:
        """
        Remove connections silent for a whole window; ping the rest.
        Returns the ids removed.
        """
        dead: List[str] = []
        ping = encode_message("ping", {})
        for conn in self._snapshot():
            if conn.is_closed():
                self.unregister(conn.connection_id)
                dead.append(conn.connection_id)
            elif not conn.probe():
                if self.unregister(conn.connection_id):
                    WS_HEARTBEAT_EVICTIONS.inc()
                    log.warning("heartbeat_missed conn=%s", conn.connection_id)
                dead.append(conn.connection_id)
            elif not conn.offer(ping):
                self.unregister(conn.connection_id)
                dead.append(conn.connection_id)
        return dead

    def _snapshot(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def _publish_gauges(self) -> None:
        staff = sum(1 for c in self._connections.values() if c.principal.is_staff)
        set_connection_count(PrincipalKind.STAFF.value, staff)
        set_connection_count(PrincipalKind.CLIENT.value, len(self._connections) - staff)

    def _reset(self) -> None:
        """For testing only."""
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
            self._by_principal.clear()
            self._client_subscriptions.clear()
            self._subscribed_to.clear()
            self._publish_gauges()
        for conn in conns:
            conn.close()
