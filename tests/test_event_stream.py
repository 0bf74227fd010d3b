from __future__ import annotations

import json

import pytest

from services.connection_registry import ConnectionRegistry
from services.event_stream import (
    STAFF,
    BillingEvent,
    ClientAudience,
    EventBroadcaster,
    EventType,
    render,
)
from services.principals import Principal

ENTRY = {
    "id": 11,
    "client_id": 7,
    "title": "Kickoff",
    "duration": 1.5,
    "internal_notes": "charge less next time",
    "invoiced": False,
}

INVOICE = {
    "id": 3,
    "client_id": 7,
    "invoice_number": "2026-0003",
    "status": "draft",
    "total": 440.0,
}


class TestRender:
    @pytest.mark.parametrize("etype", [EventType.ENTRY_CREATED, EventType.ENTRY_UPDATED])
    def test_staff_sees_internal_notes_unchanged(self, etype):
        out = render(BillingEvent(etype, 7, ENTRY), STAFF)
        assert out == {"type": etype.value, "data": ENTRY}

    @pytest.mark.parametrize("etype", [EventType.ENTRY_CREATED, EventType.ENTRY_UPDATED])
    def test_client_copy_omits_internal_notes_key(self, etype):
        out = render(BillingEvent(etype, 7, ENTRY), ClientAudience(7))
        assert "internal_notes" not in out["data"]
        assert out["data"] == {k: v for k, v in ENTRY.items() if k != "internal_notes"}

    def test_redaction_does_not_mutate_event(self):
        event = BillingEvent(EventType.ENTRY_CREATED, 7, dict(ENTRY))
        render(event, ClientAudience(7))
        assert event.data["internal_notes"] == "charge less next time"

    def test_other_client_gets_nothing(self):
        assert render(BillingEvent(EventType.ENTRY_CREATED, 7, ENTRY), ClientAudience(8)) is None

    def test_entry_deleted_is_id_only(self):
        event = BillingEvent(EventType.ENTRY_DELETED, 7, {"id": 11})
        assert render(event, STAFF) == {"type": "entry:deleted", "data": {"id": 11}}
        assert render(event, ClientAudience(7)) == {"type": "entry:deleted", "data": {"id": 11}}

    def test_drafts_are_staff_only(self):
        created = BillingEvent(EventType.INVOICE_CREATED, 7, INVOICE)
        updated = BillingEvent(EventType.INVOICE_UPDATED, 7, INVOICE)
        assert render(created, STAFF)["data"] == INVOICE
        assert render(created, ClientAudience(7)) is None
        assert render(updated, ClientAudience(7)) is None

    def test_invoice_sent_notice(self):
        sent = BillingEvent(EventType.INVOICE_SENT, 7, {**INVOICE, "status": "sent"})
        assert render(sent, STAFF) is None
        assert render(sent, ClientAudience(7)) == {
            "type": "invoice:sent",
            "data": {"id": 3, "invoice_number": "2026-0003"},
        }

    def test_instance_ids_are_unique(self):
        a = BillingEvent(EventType.ENTRY_CREATED, 7, ENTRY)
        b = BillingEvent(EventType.ENTRY_CREATED, 7, ENTRY)
        assert a.event_instance_id != b.event_instance_id
        assert a.event_instance_id.startswith("evti-")


class TestBroadcaster:
    def setup_method(self):
        self.registry = ConnectionRegistry(max_connections_per_principal=5)
        self.broadcaster = EventBroadcaster(self.registry)

    def test_staff_full_client_redacted(self):
        staff = self.registry.register(Principal.staff(1))
        client = self.registry.register(Principal.client(7))
        other = self.registry.register(Principal.client(8))

        self.broadcaster.entry_created(ENTRY)

        staff_msg = json.loads(staff.drain_nowait()[0])
        client_msg = json.loads(client.drain_nowait()[0])
        assert staff_msg["data"]["internal_notes"] == "charge less next time"
        assert "internal_notes" not in client_msg["data"]
        assert other.drain_nowait() == []

    def test_subscribed_staff_also_gets_client_view(self):
        staff = self.registry.register(Principal.staff(1))
        self.registry.subscribe(staff.connection_id, 7)

        self.broadcaster.entry_updated(ENTRY)

        messages = [json.loads(m) for m in staff.drain_nowait()]
        assert len(messages) == 2
        assert "internal_notes" in messages[0]["data"]
        assert "internal_notes" not in messages[1]["data"]

    def test_closed_connection_is_dropped_and_others_still_receive(self):
        gone = self.registry.register(Principal.staff(1))
        alive = self.registry.register(Principal.staff(2))
        gone.close()

        self.broadcaster.entry_created(ENTRY)

        assert self.registry.get(gone.connection_id) is None
        assert len(alive.drain_nowait()) == 1

    def test_disconnect_mid_broadcast(self, monkeypatch):
        first = self.registry.register(Principal.staff(1))
        second = self.registry.register(Principal.staff(2))
        third = self.registry.register(Principal.staff(3))

        original_offer = first.offer

        def offer_then_disconnect(message):
            ok = original_offer(message)
            self.registry.unregister(second.connection_id)
            return ok

        monkeypatch.setattr(first, "offer", offer_then_disconnect)
        # delivery order follows the registry snapshot; make it deterministic
        monkeypatch.setattr(self.registry, "staff_connections", lambda: [first, second, third])

        self.broadcaster.entry_created(ENTRY)

        assert self.registry.get(second.connection_id) is None
        assert len(first.drain_nowait()) == 1
        assert len(third.drain_nowait()) == 1

    def test_offer_exception_only_drops_that_connection(self, monkeypatch):
        bad = self.registry.register(Principal.staff(1))
        good = self.registry.register(Principal.staff(2))

        def _raise(message):
            raise RuntimeError("socket exploded")

        monkeypatch.setattr(bad, "offer", _raise)
        self.broadcaster.entry_created(ENTRY)

        assert self.registry.get(bad.connection_id) is None
        assert len(good.drain_nowait()) == 1

    def test_invoice_sent_sequence(self):
        staff = self.registry.register(Principal.staff(1))
        client = self.registry.register(Principal.client(7))

        self.broadcaster.invoice_sent({**INVOICE, "status": "sent"})

        assert [json.loads(m)["type"] for m in staff.drain_nowait()] == ["invoice:updated"]
        assert [json.loads(m)["type"] for m in client.drain_nowait()] == ["invoice:sent"]
