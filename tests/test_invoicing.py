from __future__ import annotations

import json
import re
from datetime import date
from decimal import Decimal

import pytest

from api.db_models import Client, Invoice, InvoiceItem, InvoiceSequence, TimeEntry
from services.connection_registry import ConnectionRegistry
from services.directory import DirectoryService
from services.errors import (
    ERR_CLIENT_NOT_FOUND,
    ERR_EMPTY_PATCH,
    ERR_ENTRIES_UNAVAILABLE,
    ERR_INVOICE_NOT_DRAFT,
    ERR_INVOICE_NUMBER_EXHAUSTED,
    ERR_ITEM_NOT_FOUND,
    Conflict,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from services.event_stream import EventBroadcaster
from services.invoice_state import InvoiceStateMachine
from services.invoicing import InvoiceAggregator
from services.ledger import TimeEntryLedger
from services.principals import Principal
from tests.helpers import fixed_clock

ISSUED = date(2026, 3, 15)


def _entries(db, client_id, *durations, project_id=None):
    ledger = TimeEntryLedger(db)
    return [
        ledger.create(
            client_id=client_id,
            project_id=project_id,
            date=date(2026, 3, 1),
            duration=d,
            title=f"work {i}",
            internal_notes="internal",
        )["id"]
        for i, d in enumerate(durations)
    ]


def _assert_totals_reconcile(invoice):
    subtotal = Decimal(str(invoice["subtotal"]))
    tax_rate = Decimal(str(invoice["tax_rate"]))
    tax = Decimal(str(invoice["tax_amount"]))
    total = Decimal(str(invoice["total"]))
    assert total == subtotal + tax
    assert tax == (subtotal * tax_rate / 100).quantize(Decimal("0.01"))


def _assert_lock_flags_consistent(db):
    db.expire_all()
    for row in db.query(TimeEntry).all():
        assert row.invoiced == (row.invoice_id is not None)
    db.commit()


class TestCreateInvoice:
    def test_reference_scenario(self, db, seed):
        ids = _entries(db, seed.client_id, "2.0", "1.5", "0.5")
        agg = InvoiceAggregator(db, clock=fixed_clock(2026))

        inv = agg.create_invoice(
            client_id=seed.client_id, date_issued=ISSUED, tax_rate=10, entry_ids=ids
        )

        assert inv["subtotal"] == 400.0
        assert inv["tax_amount"] == 40.0
        assert inv["total"] == 440.0
        assert inv["invoice_number"] == "2026-0001"
        assert inv["status"] == "draft"
        assert sorted(e["id"] for e in inv["entries"]) == sorted(ids)
        assert all(e["invoiced"] and e["invoice_id"] == inv["id"] for e in inv["entries"])
        _assert_lock_flags_consistent(db)

    def test_manual_items_are_added_to_subtotal(self, db, seed):
        ids = _entries(db, seed.client_id, "1.0")
        inv = InvoiceAggregator(db, clock=fixed_clock()).create_invoice(
            client_id=seed.client_id,
            date_issued=ISSUED,
            tax_rate="7.5",
            entry_ids=ids,
            items=[{"description": "Hosting", "quantity": 3, "rate": "19.99"}],
        )
        # 100.00 + 59.97
        assert inv["subtotal"] == 159.97
        assert inv["tax_amount"] == 12.0
        assert inv["total"] == 171.97
        assert inv["items"][0]["amount"] == 59.97
        _assert_totals_reconcile(inv)

    def test_project_rate_is_used_per_entry(self, db, seed):
        ids = _entries(db, seed.client_id, "1.0", project_id=seed.project_id)
        ids += _entries(db, seed.client_id, "1.0")
        inv = InvoiceAggregator(db, clock=fixed_clock()).create_invoice(
            client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids
        )
        assert inv["subtotal"] == 250.0

    def test_numbers_increase_within_year_and_reset_next_year(self, db, seed):
        ids = _entries(db, seed.client_id, "1", "1", "1")
        numbers = [
            InvoiceAggregator(db, clock=fixed_clock(2026)).create_invoice(
                client_id=seed.client_id, date_issued=ISSUED, entry_ids=[i]
            )["invoice_number"]
            for i in ids[:2]
        ]
        next_year = InvoiceAggregator(db, clock=fixed_clock(2027)).create_invoice(
            client_id=seed.client_id, date_issued=ISSUED, entry_ids=[ids[2]]
        )["invoice_number"]

        assert numbers == ["2026-0001", "2026-0002"]
        assert next_year == "2027-0001"
        for n in numbers + [next_year]:
            assert re.match(r"^[0-9]{4}-[0-9]{4}$", n)

    def test_numbers_come_from_year_counter_and_are_not_reused(self, db, seed):
        agg = InvoiceAggregator(db, clock=fixed_clock(2026))
        first = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED)
        agg.delete_invoice(first["id"])
        second = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED)

        assert first["invoice_number"] == "2026-0001"
        assert second["invoice_number"] == "2026-0002"
        counter = db.get(InvoiceSequence, 2026)
        assert counter.last_value == 2
        db.commit()

    def test_year_sequence_exhaustion_is_conflict(self, db, seed):
        db.add(
            Invoice(
                client_id=seed.client_id,
                invoice_number="2026-9999",
                date_issued=ISSUED,
                tax_rate=Decimal("0"),
                status="paid",
            )
        )
        db.commit()
        with pytest.raises(Conflict) as exc:
            InvoiceAggregator(db, clock=fixed_clock(2026)).create_invoice(
                client_id=seed.client_id, date_issued=ISSUED
            )
        assert exc.value.code == ERR_INVOICE_NUMBER_EXHAUSTED

    def test_unknown_client_is_not_found(self, db, seed):
        with pytest.raises(NotFound) as exc:
            InvoiceAggregator(db).create_invoice(client_id=424242, date_issued=ISSUED)
        assert exc.value.code == ERR_CLIENT_NOT_FOUND

    @pytest.mark.parametrize("tax_rate", [-1, "100.01", "nan"])
    def test_tax_rate_out_of_range(self, db, seed, tax_rate):
        with pytest.raises(ValidationError):
            InvoiceAggregator(db).create_invoice(
                client_id=seed.client_id, date_issued=ISSUED, tax_rate=tax_rate
            )


class TestConflicts:
    def test_already_invoiced_entry_fails_whole_operation(self, db, seed):
        ids = _entries(db, seed.client_id, "1", "2")
        agg = InvoiceAggregator(db, clock=fixed_clock())
        first = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=[ids[0]])

        with pytest.raises(Conflict) as exc:
            agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids)
        assert exc.value.code == ERR_ENTRIES_UNAVAILABLE
        assert exc.value.context["entry_ids"] == [ids[0]]

        # nothing partial: second entry still free, only one invoice exists
        assert db.query(Invoice).count() == 1
        free = db.query(TimeEntry).filter(TimeEntry.id == ids[1]).one()
        assert free.invoiced is False and free.invoice_id is None
        assert db.query(TimeEntry).filter(TimeEntry.invoice_id == first["id"]).count() == 1
        db.commit()

    def test_entry_of_other_client_is_conflict(self, db, seed):
        theirs = _entries(db, seed.other_client_id, "1")
        with pytest.raises(Conflict) as exc:
            InvoiceAggregator(db).create_invoice(
                client_id=seed.client_id, date_issued=ISSUED, entry_ids=theirs
            )
        assert exc.value.context["entry_ids"] == theirs

    def test_missing_entry_is_conflict(self, db, seed):
        with pytest.raises(Conflict):
            InvoiceAggregator(db).create_invoice(
                client_id=seed.client_id, date_issued=ISSUED, entry_ids=[31337]
            )
        assert db.query(Invoice).count() == 0

    def test_no_entry_appears_on_two_invoices(self, db, seed):
        ids = _entries(db, seed.client_id, "1", "1", "1")
        agg = InvoiceAggregator(db, clock=fixed_clock())
        agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids[:2])
        for attempt in ([ids[1]], [ids[1], ids[2]], ids):
            with pytest.raises(Conflict):
                agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=attempt)
        _assert_lock_flags_consistent(db)


class TestDraftEdits:
    def _draft(self, db, seed, *durations, tax_rate=10):
        ids = _entries(db, seed.client_id, *durations)
        agg = InvoiceAggregator(db, clock=fixed_clock())
        inv = agg.create_invoice(
            client_id=seed.client_id, date_issued=ISSUED, tax_rate=tax_rate, entry_ids=ids
        )
        return agg, inv, ids

    def test_add_and_remove_line_item_recompute_totals(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "1.0")

        with_item = agg.add_line_item(inv["id"], description="Domain", quantity="1", rate="12.345")
        assert with_item["subtotal"] == 112.35
        _assert_totals_reconcile(with_item)

        item_id = with_item["items"][0]["id"]
        without = agg.remove_line_item(inv["id"], item_id)
        assert without["subtotal"] == 100.0
        assert without["total"] == 110.0
        _assert_totals_reconcile(without)
        assert db.query(InvoiceItem).count() == 0
        db.commit()

    def test_repeated_edits_do_not_drift(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "0.3", tax_rate="8.25")
        for _ in range(5):
            inv = agg.add_line_item(inv["id"], description="x", quantity="0.33", rate="3.33")
            _assert_totals_reconcile(inv)
        for item in list(inv["items"]):
            inv = agg.remove_line_item(inv["id"], item["id"])
            _assert_totals_reconcile(inv)
        assert inv["subtotal"] == 30.0

    def test_remove_unknown_item_is_not_found(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "1")
        with pytest.raises(NotFound) as exc:
            agg.remove_line_item(inv["id"], 999)
        assert exc.value.code == ERR_ITEM_NOT_FOUND

    def test_rate_change_after_lock_does_not_rederive_entry_amounts(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "2.0")
        directory = DirectoryService(db)
        db.query(Client).filter(Client.id == seed.client_id).update({Client.hourly_rate: Decimal("500")})
        db.commit()
        assert directory.effective_rate(seed.client_id) == Decimal("500.00")
        db.commit()

        inv = agg.update_invoice(inv["id"], {"tax_rate": 20})
        assert inv["subtotal"] == 200.0
        assert inv["tax_amount"] == 40.0
        assert inv["total"] == 240.0

    def test_update_invoice(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "1")
        out = agg.update_invoice(inv["id"], {"notes": "Net 30", "date_due": date(2026, 4, 14)})
        assert out["notes"] == "Net 30"
        assert out["date_due"] == "2026-04-14"
        with pytest.raises(ValidationError) as exc:
            agg.update_invoice(inv["id"], {})
        assert exc.value.code == ERR_EMPTY_PATCH

    def test_edits_rejected_once_sent(self, db, seed):
        agg, inv, _ = self._draft(db, seed, "1")
        sent = InvoiceStateMachine(db, clock=fixed_clock()).send(inv["id"])
        for attempt in (
            lambda: agg.add_line_item(inv["id"], description="x", quantity=1, rate=1),
            lambda: agg.update_invoice(inv["id"], {"tax_rate": 0}),
            lambda: agg.delete_invoice(inv["id"]),
        ):
            with pytest.raises(InvalidTransition) as exc:
                attempt()
            assert exc.value.code == ERR_INVOICE_NOT_DRAFT
        after = agg.get_invoice(inv["id"])
        assert after["total"] == sent["total"]


class TestDeleteInvoice:
    def test_delete_draft_unlocks_entries(self, db, seed):
        ids = _entries(db, seed.client_id, "1", "2")
        agg = InvoiceAggregator(db, clock=fixed_clock())
        inv = agg.create_invoice(
            client_id=seed.client_id,
            date_issued=ISSUED,
            entry_ids=ids,
            items=[{"description": "Setup", "quantity": 1, "rate": 50}],
        )

        out = agg.delete_invoice(inv["id"])
        assert sorted(out["unlocked_entry_ids"]) == sorted(ids)

        db.expire_all()
        for row in db.query(TimeEntry).filter(TimeEntry.id.in_(ids)).all():
            assert row.invoiced is False
            assert row.invoice_id is None
            assert row.billed_rate is None
        assert db.query(Invoice).count() == 0
        assert db.query(InvoiceItem).count() == 0
        db.commit()

        # freed entries can be billed again
        again = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids)
        assert again["subtotal"] == 300.0

    @pytest.mark.parametrize("transitions", [("send",), ("send", "mark_paid")])
    def test_delete_non_draft_is_rejected(self, db, seed, transitions):
        ids = _entries(db, seed.client_id, "1")
        agg = InvoiceAggregator(db, clock=fixed_clock())
        inv = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids)
        machine = InvoiceStateMachine(db, clock=fixed_clock())
        for name in transitions:
            getattr(machine, name)(inv["id"])

        with pytest.raises(InvalidTransition):
            agg.delete_invoice(inv["id"])
        row = db.query(TimeEntry).filter(TimeEntry.id == ids[0]).one()
        assert row.invoiced is True and row.invoice_id == inv["id"]
        db.commit()

    def test_delete_emits_entry_updates_for_unlocked_entries(self, db, seed):
        registry = ConnectionRegistry(max_connections_per_principal=5)
        staff = registry.register(Principal.staff(seed.staff_id))
        ids = _entries(db, seed.client_id, "1")
        agg = InvoiceAggregator(db, broadcaster=EventBroadcaster(registry), clock=fixed_clock())
        inv = agg.create_invoice(client_id=seed.client_id, date_issued=ISSUED, entry_ids=ids)
        agg.delete_invoice(inv["id"])

        types = [json.loads(m)["type"] for m in staff.drain_nowait()]
        assert types == ["invoice:created", "entry:updated"]
