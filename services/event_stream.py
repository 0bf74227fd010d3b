"""
Event Broadcaster

Publishes ledger and invoice mutations to live connections.

Provides:
- Typed event catalog (entry:*, invoice:*)
- Recipient classes as a tagged variant: StaffAudience | ClientAudience(id)
- One pure view function per (event type, audience); ``render`` picks it
- Two-step fan-out: full copy to every staff connection, client view to the
  connections subscribed to the record's owning client
- Best-effort delivery: offers never block, a failed offer only drops that
  connection, and nothing raised here reaches the mutation that emitted it

Envelope on the wire: ``{"type": "<event type>", "data": {...}}``.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from api.metrics import (
    BROADCAST_FAILURES,
    EVENTS_OFFERED,
    EVENTS_DROPPED,
    EVENTS_PUBLISHED,
)
from services.connection_registry import Connection, ConnectionRegistry

log = logging.getLogger("timeledger.event_stream")

# Fields never delivered to a client-scoped subscriber
INTERNAL_ENTRY_FIELDS = ("internal_notes",)


class EventType(str, Enum):
    ENTRY_CREATED = "entry:created"
    ENTRY_UPDATED = "entry:updated"
    ENTRY_DELETED = "entry:deleted"
    INVOICE_CREATED = "invoice:created"
    INVOICE_UPDATED = "invoice:updated"
    INVOICE_SENT = "invoice:sent"


# ---------------------------------------------------------------------------
# Instance ids
# ---------------------------------------------------------------------------

_seq_lock = threading.Lock()
_seq_counter: int = 0


def _next_seq() -> int:
    global _seq_counter
    with _seq_lock:
        _seq_counter += 1
        return _seq_counter


def _generate_instance_id() -> str:
    """evti-{ts_ms_hex}-{seq_hex}; unique per publish within the process."""
    return f"evti-{int(time.time() * 1000):013x}-{_next_seq():06x}"


@dataclass(frozen=True)
class BillingEvent:
    """An immutable mutation notice. `data` is the full (staff) record."""

    event_type: EventType
    client_id: int
    data: Dict[str, Any]

    event_instance_id: str = field(default="")

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_instance_id", _generate_instance_id())


# ---------------------------------------------------------------------------
# Audiences
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StaffAudience:
    label = "staff"


@dataclass(frozen=True)
class ClientAudience:
    client_id: int
    label = "client"


Audience = Union[StaffAudience, ClientAudience]

STAFF = StaffAudience()


# ---------------------------------------------------------------------------
# Views (pure)
# ---------------------------------------------------------------------------

View = Callable[[BillingEvent], Optional[Dict[str, Any]]]


def _full(event: BillingEvent) -> Dict[str, Any]:
    return dict(event.data)


def _redacted_entry(event: BillingEvent) -> Dict[str, Any]:
    # keys are removed, not nulled
    return {k: v for k, v in event.data.items() if k not in INTERNAL_ENTRY_FIELDS}


def _entry_id_only(event: BillingEvent) -> Dict[str, Any]:
    return {"id": event.data["id"]}


def _nothing(event: BillingEvent) -> None:
    return None


def _client_invoice_update(event: BillingEvent) -> Optional[Dict[str, Any]]:
    # drafts are never shown to clients; the send itself arrives as invoice:sent
    if event.data.get("status") in ("draft", "sent"):
        return None
    return dict(event.data)


def _invoice_sent_notice(event: BillingEvent) -> Dict[str, Any]:
    return {"id": event.data["id"], "invoice_number": event.data["invoice_number"]}


_STAFF_VIEWS: Dict[EventType, View] = {
    EventType.ENTRY_CREATED: _full,
    EventType.ENTRY_UPDATED: _full,
    EventType.ENTRY_DELETED: _entry_id_only,
    EventType.INVOICE_CREATED: _full,
    EventType.INVOICE_UPDATED: _full,
    EventType.INVOICE_SENT: _nothing,
}

_CLIENT_VIEWS: Dict[EventType, View] = {
    EventType.ENTRY_CREATED: _redacted_entry,
    EventType.ENTRY_UPDATED: _redacted_entry,
    EventType.ENTRY_DELETED: _entry_id_only,
    EventType.INVOICE_CREATED: _nothing,
    EventType.INVOICE_UPDATED: _client_invoice_update,
    EventType.INVOICE_SENT: _invoice_sent_notice,
}


def render(event: BillingEvent, audience: Audience) -> Optional[Dict[str, Any]]:
    """
    Envelope for `audience`, or None when that audience gets nothing.

    A ClientAudience for a different client than the event's owner always
    gets nothing.
    """
    if isinstance(audience, StaffAudience):
        data = _STAFF_VIEWS[event.event_type](event)
    elif isinstance(audience, ClientAudience):
        if audience.client_id != event.client_id:
            return None
        data = _CLIENT_VIEWS[event.event_type](event)
    else:
        raise TypeError(f"unknown audience {audience!r}")
    if data is None:
        return None
    return {"type": event.event_type.value, "data": data}


def _encode(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fan-out over a ConnectionRegistry. Safe to call from any thread."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def publish(self, event: BillingEvent) -> None:
        """Never raises; failures are logged and counted."""
        EVENTS_PUBLISHED.labels(event_type=event.event_type.value).inc()
        try:
            staff_envelope = render(event, STAFF)
            if staff_envelope is not None:
                self._deliver(
                    self.registry.staff_connections(), _encode(staff_envelope), STAFF
                )

            audience = ClientAudience(event.client_id)
            client_envelope = render(event, audience)
            if client_envelope is not None:
                self._deliver(
                    self.registry.client_subscribers(event.client_id),
                    _encode(client_envelope),
                    audience,
                )
        except Exception:
            BROADCAST_FAILURES.labels(event_type=event.event_type.value).inc()
            log.exception(
                "broadcast_failed type=%s client=%s instance=%s",
                event.event_type.value,
                event.client_id,
                event.event_instance_id,
            )
            return

        log.debug(
            "event_published type=%s client=%s instance=%s",
            event.event_type.value,
            event.client_id,
            event.event_instance_id,
        )

    def _deliver(self, connections: List[Connection], message: str, audience: Audience) -> None:
        for conn in connections:
            try:
                ok = conn.offer(message)
            except Exception:
                log.exception("connection_offer_failed conn=%s", conn.connection_id)
                ok = False
            if ok:
                EVENTS_OFFERED.labels(audience=audience.label).inc()
                continue
            EVENTS_DROPPED.labels(audience=audience.label).inc()
            log.warning(
                "connection_dropped conn=%s principal=%s audience=%s",
                conn.connection_id,
                conn.principal.key,
                audience.label,
            )
            self.registry.unregister(conn.connection_id)

    # ------------------------------------------------------------------
    # Semantic events
    # ------------------------------------------------------------------

    def entry_created(self, entry: Dict[str, Any]) -> None:
        self.publish(BillingEvent(EventType.ENTRY_CREATED, entry["client_id"], entry))

    def entry_updated(self, entry: Dict[str, Any]) -> None:
        self.publish(BillingEvent(EventType.ENTRY_UPDATED, entry["client_id"], entry))

    def entry_deleted(self, entry_id: int, client_id: int) -> None:
        self.publish(BillingEvent(EventType.ENTRY_DELETED, client_id, {"id": entry_id}))

    def invoice_created(self, invoice: Dict[str, Any]) -> None:
        self.publish(BillingEvent(EventType.INVOICE_CREATED, invoice["client_id"], invoice))

    def invoice_updated(self, invoice: Dict[str, Any]) -> None:
        self.publish(BillingEvent(EventType.INVOICE_UPDATED, invoice["client_id"], invoice))

    def invoice_sent(self, invoice: Dict[str, Any]) -> None:
        """Staff see the update; the owning client gets the narrower notice."""
        self.invoice_updated(invoice)
        self.publish(BillingEvent(EventType.INVOICE_SENT, invoice["client_id"], invoice))


class NullBroadcaster(EventBroadcaster):
    """Used by services constructed without a live registry (scripts, some tests)."""

    def __init__(self) -> None:
        super().__init__(ConnectionRegistry(max_connections_per_principal=0))

    def publish(self, event: BillingEvent) -> None:
        log.debug("event_discarded type=%s client=%s", event.event_type.value, event.client_id)
