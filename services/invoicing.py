"""
Invoice Aggregator

Turns a selected set of unbilled ledger entries, plus optional manual line
items, into one draft invoice inside a single transaction:

1. the client must exist
2. every selected entry is read under a row lock and must belong to the
   client and be unbilled, otherwise the whole call fails with Conflict
3. the next ``YYYY-NNNN`` number is taken from the year's locked counter row
4. totals are computed in Decimal
5. invoice and items are written and the entries flipped to invoiced with a
   compare-and-set UPDATE whose row count must match the selection
6. commit, then ``invoice:created`` is broadcast

On SQLite every transaction starts with BEGIN IMMEDIATE (see api.db), so a
second concurrent aggregation waits for the first and then sees its flags.
On servers with row locks, ``SELECT ... FOR UPDATE`` gives the same result.
Either way the compare-and-set step refuses to double-bill.

Draft invoices can still be edited (line items, tax rate, due date, notes) or
deleted; each edit recomputes the totals from the invoice's entries (at the
rate frozen when they were locked) and items.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.db_models import Invoice, InvoiceItem, InvoiceSequence, TimeEntry
from api.metrics import AGGREGATION_CONFLICTS, INVOICES_CREATED
from services.directory import DirectoryService
from services.errors import (
    ERR_CLIENT_NOT_FOUND,
    ERR_EMPTY_PATCH,
    ERR_ENTRIES_UNAVAILABLE,
    ERR_INVALID_AMOUNT,
    ERR_INVOICE_NOT_DRAFT,
    ERR_INVOICE_NOT_FOUND,
    ERR_INVOICE_NUMBER_COLLISION,
    ERR_INVOICE_NUMBER_EXHAUSTED,
    ERR_ITEM_NOT_FOUND,
    ERR_MISSING_FIELD,
    Conflict,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from services.event_stream import EventBroadcaster, NullBroadcaster
from services.invoice_state import DRAFT, effective_status
from services.records import entry_to_dict, invoice_to_dict, item_to_dict, money
from services.unit_of_work import unit_of_work

log = logging.getLogger("timeledger.invoicing")

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MAX_SEQUENCE = 9999
_NUMBER_RE = re.compile(r"^(\d{4})-(\d{4})$")

UPDATABLE_FIELDS = frozenset({"date_due", "tax_rate", "notes"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number", code=ERR_INVALID_AMOUNT, field=name)
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(
            f"{name} must be a number", code=ERR_INVALID_AMOUNT, field=name
        ) from exc
    if not d.is_finite():
        raise ValidationError(f"{name} must be finite", code=ERR_INVALID_AMOUNT, field=name)
    return d


def validate_tax_rate(value: Any) -> Decimal:
    rate = _decimal(value, "tax_rate")
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError(
            "tax_rate must be between 0 and 100",
            code=ERR_INVALID_AMOUNT,
            field="tax_rate",
            tax_rate=str(value),
        )
    return money(rate)


def line_item(description: Any, quantity: Any, rate: Any) -> InvoiceItem:
    if description is None or not str(description).strip():
        raise ValidationError(
            "line item description is required", code=ERR_MISSING_FIELD, field="description"
        )
    qty = money(_decimal(quantity, "quantity"))
    unit = money(_decimal(rate, "rate"))
    if qty <= ZERO:
        raise ValidationError(
            "line item quantity must be positive", code=ERR_INVALID_AMOUNT, field="quantity"
        )
    if unit < ZERO:
        raise ValidationError(
            "line item rate must not be negative", code=ERR_INVALID_AMOUNT, field="rate"
        )
    return InvoiceItem(
        description=str(description), quantity=qty, rate=unit, amount=money(qty * unit)
    )


def entry_amount(duration: Decimal, rate: Decimal) -> Decimal:
    return money(Decimal(duration) * Decimal(rate))


def apply_totals(invoice: Invoice, subtotal: Decimal) -> None:
    """total = subtotal + tax_amount, tax_amount = subtotal * tax_rate / 100."""
    subtotal = money(subtotal)
    tax_amount = money(subtotal * Decimal(invoice.tax_rate) / HUNDRED)
    invoice.subtotal = subtotal
    invoice.tax_amount = tax_amount
    invoice.total = subtotal + tax_amount


def _is_invoice_number_collision(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return "invoice_number" in msg


def _unique_in_order(ids: Iterable[int]) -> List[int]:
    seen: set[int] = set()
    out: List[int] = []
    for i in ids:
        i = int(i)
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class InvoiceAggregator:
    def __init__(
        self,
        db: Session,
        *,
        directory: Optional[DirectoryService] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.directory = directory or DirectoryService(db)
        self.broadcaster = broadcaster or NullBroadcaster()
        self.clock = clock or _utc_now

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------

    def _year_maximum(self, prefix: str) -> int:
        current = (
            self.db.query(Invoice.invoice_number)
            .filter(Invoice.invoice_number.like(prefix + "%"))
            .order_by(Invoice.invoice_number.desc())
            .limit(1)
            .scalar()
        )
        if current:
            m = _NUMBER_RE.match(current)
            if m:
                return int(m.group(2))
        return 0

    def _lock_sequence(self, year: int) -> Optional[InvoiceSequence]:
        return (
            self.db.query(InvoiceSequence)
            .filter(InvoiceSequence.year == year)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    def _next_invoice_number(self) -> str:
        """
        Allocate from the year's counter row under a row lock, so two
        aggregations over disjoint entries still serialize on numbering.
        The counter never falls behind numbers already present in the table.
        """
        year = self.clock().year
        prefix = f"{year:04d}-"
        counter = self._lock_sequence(year)
        if counter is None:
            savepoint = self.db.begin_nested()
            try:
                counter = InvoiceSequence(year=year, last_value=0)
                self.db.add(counter)
                self.db.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                log.debug("invoice_sequence_create_race year=%s", year)
                counter = self._lock_sequence(year)
                if counter is None:
                    raise

        seq = max(counter.last_value, self._year_maximum(prefix))
        if seq >= MAX_SEQUENCE:
            raise Conflict(
                f"invoice numbers for {year} are exhausted",
                code=ERR_INVOICE_NUMBER_EXHAUSTED,
                year=year,
            )
        counter.last_value = seq + 1
        self.db.flush()
        return f"{prefix}{seq + 1:04d}"

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        *,
        client_id: int,
        date_issued: date,
        date_due: Optional[date] = None,
        tax_rate: Any = ZERO,
        notes: Optional[str] = None,
        entry_ids: Sequence[int] = (),
        items: Sequence[Mapping[str, Any]] = (),
    ) -> Dict[str, Any]:
        if date_issued is None:
            raise ValidationError("date_issued is required", code=ERR_MISSING_FIELD, field="date_issued")
        rate = validate_tax_rate(tax_rate)
        new_items = [line_item(i.get("description"), i.get("quantity"), i.get("rate")) for i in items]
        ids = _unique_in_order(entry_ids)

        try:
            with unit_of_work(self.db, operation="invoice.create"):
                if not self.directory.client_exists(client_id):
                    raise NotFound("client not found", code=ERR_CLIENT_NOT_FOUND, client_id=client_id)

                entries = self._lock_unbilled(client_id, ids)

                invoice = Invoice(
                    client_id=client_id,
                    invoice_number=self._next_invoice_number(),
                    date_issued=date_issued,
                    date_due=date_due,
                    tax_rate=rate,
                    status=DRAFT,
                    notes=notes,
                )
                rates = {
                    e.id: self.directory.effective_rate(e.client_id, e.project_id) for e in entries
                }
                subtotal = sum(
                    (entry_amount(e.duration, rates[e.id]) for e in entries), ZERO
                ) + sum((i.amount for i in new_items), ZERO)
                apply_totals(invoice, subtotal)
                invoice.items.extend(new_items)
                self.db.add(invoice)
                self.db.flush()

                if ids:
                    claimed = (
                        self.db.query(TimeEntry)
                        .filter(
                            TimeEntry.id.in_(ids),
                            TimeEntry.client_id == client_id,
                            TimeEntry.invoiced.is_(False),
                        )
                        .update(
                            {TimeEntry.invoiced: True, TimeEntry.invoice_id: invoice.id},
                            synchronize_session="fetch",
                        )
                    )
                    if claimed != len(ids):
                        raise Conflict(
                            "time entries were invoiced concurrently",
                            code=ERR_ENTRIES_UNAVAILABLE,
                            entry_ids=ids,
                        )
                    for e in entries:
                        e.billed_rate = money(rates[e.id])
                    self.db.flush()

                out = self._detail(invoice)
        except IntegrityError as exc:
            if not _is_invoice_number_collision(exc):
                raise
            AGGREGATION_CONFLICTS.inc()
            log.warning("invoice_number_collision client=%s err=%s", client_id, exc.orig)
            raise Conflict(
                "invoice number collided with a concurrent aggregation; retry",
                code=ERR_INVOICE_NUMBER_COLLISION,
                client_id=client_id,
            ) from exc
        except Conflict:
            AGGREGATION_CONFLICTS.inc()
            raise

        INVOICES_CREATED.inc()
        log.info(
            "invoice_created id=%s number=%s client=%s entries=%d items=%d total=%s",
            out["id"],
            out["invoice_number"],
            client_id,
            len(ids),
            len(new_items),
            out["total"],
        )
        self.broadcaster.invoice_created(out)
        return out

    def _lock_unbilled(self, client_id: int, ids: List[int]) -> List[TimeEntry]:
        if not ids:
            return []
        rows = (
            self.db.query(TimeEntry)
            .filter(TimeEntry.id.in_(ids))
            .order_by(TimeEntry.id)
            .with_for_update()
            .all()
        )
        by_id = {r.id: r for r in rows}
        unavailable = [
            i
            for i in ids
            if i not in by_id or by_id[i].client_id != client_id or by_id[i].invoiced
        ]
        if unavailable:
            log.info(
                "aggregation_conflict client=%s unavailable=%s", client_id, unavailable
            )
            raise Conflict(
                "time entries are missing, belong to another client, or are already invoiced",
                code=ERR_ENTRIES_UNAVAILABLE,
                entry_ids=unavailable,
            )
        return [by_id[i] for i in ids]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, invoice_id: int, *, for_update: bool = False) -> Invoice:
        q = self.db.query(Invoice).filter(Invoice.id == invoice_id)
        if for_update:
            q = q.with_for_update()
        invoice = q.one_or_none()
        if invoice is None:
            raise NotFound("invoice not found", code=ERR_INVOICE_NOT_FOUND, invoice_id=invoice_id)
        return invoice

    def _entries_of(self, invoice_id: int) -> List[TimeEntry]:
        return (
            self.db.query(TimeEntry)
            .filter(TimeEntry.invoice_id == invoice_id)
            .order_by(TimeEntry.date, TimeEntry.id)
            .all()
        )

    def _detail(self, invoice: Invoice) -> Dict[str, Any]:
        today = self.clock().date()
        out = invoice_to_dict(
            invoice, status=effective_status(invoice.status, invoice.date_due, today)
        )
        entries = []
        for e in self._entries_of(invoice.id):
            current_rate = self.directory.effective_rate(e.client_id, e.project_id)
            billed = e.billed_rate if e.billed_rate is not None else current_rate
            row = entry_to_dict(e, effective_rate=current_rate)
            row["amount"] = float(entry_amount(e.duration, billed))
            entries.append(row)
        out["entries"] = entries
        out["items"] = [item_to_dict(i) for i in invoice.items]
        return out

    def get_invoice(self, invoice_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="invoice.get"):
            return self._detail(self._load(invoice_id))

    # ------------------------------------------------------------------
    # Draft edits
    # ------------------------------------------------------------------

    def _load_draft(self, invoice_id: int, action: str) -> Invoice:
        invoice = self._load(invoice_id, for_update=True)
        if invoice.status != DRAFT:
            raise InvalidTransition(
                f"only draft invoices can be {action}",
                code=ERR_INVOICE_NOT_DRAFT,
                invoice_id=invoice_id,
                status=invoice.status,
            )
        return invoice

    def recompute_totals(self, invoice: Invoice) -> None:
        """Re-sum entries and items; never adjusts incrementally."""
        subtotal = ZERO
        for e in self._entries_of(invoice.id):
            rate = e.billed_rate
            if rate is None:
                rate = self.directory.effective_rate(e.client_id, e.project_id)
            subtotal += entry_amount(e.duration, rate)
        subtotal += sum((i.amount for i in invoice.items), ZERO)
        apply_totals(invoice, subtotal)

    def update_invoice(self, invoice_id: int, patch: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError("no updatable fields supplied", code=ERR_EMPTY_PATCH)
        if "tax_rate" in changes:
            changes["tax_rate"] = validate_tax_rate(changes["tax_rate"])

        with unit_of_work(self.db, operation="invoice.update"):
            invoice = self._load_draft(invoice_id, "updated")
            for name, value in changes.items():
                setattr(invoice, name, value)
            self.recompute_totals(invoice)
            self.db.flush()
            out = self._detail(invoice)

        log.info("invoice_updated id=%s fields=%s", invoice_id, ",".join(sorted(changes)))
        self.broadcaster.invoice_updated(out)
        return out

    def add_line_item(
        self, invoice_id: int, *, description: Any, quantity: Any, rate: Any
    ) -> Dict[str, Any]:
        item = line_item(description, quantity, rate)
        with unit_of_work(self.db, operation="invoice.add_item"):
            invoice = self._load_draft(invoice_id, "edited")
            invoice.items.append(item)
            self.recompute_totals(invoice)
            self.db.flush()
            out = self._detail(invoice)

        log.info("invoice_item_added invoice=%s item=%s", invoice_id, item.id)
        self.broadcaster.invoice_updated(out)
        return out

    def remove_line_item(self, invoice_id: int, item_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="invoice.remove_item"):
            invoice = self._load_draft(invoice_id, "edited")
            item = next((i for i in invoice.items if i.id == item_id), None)
            if item is None:
                raise NotFound(
                    "line item not found on this invoice",
                    code=ERR_ITEM_NOT_FOUND,
                    invoice_id=invoice_id,
                    item_id=item_id,
                )
            invoice.items.remove(item)
            self.recompute_totals(invoice)
            self.db.flush()
            out = self._detail(invoice)

        log.info("invoice_item_removed invoice=%s item=%s", invoice_id, item_id)
        self.broadcaster.invoice_updated(out)
        return out

    def delete_invoice(self, invoice_id: int) -> Dict[str, Any]:
        """Draft only. Unlocks every entry the invoice held, then removes it."""
        with unit_of_work(self.db, operation="invoice.delete"):
            invoice = self._load_draft(invoice_id, "deleted")
            entries = self._entries_of(invoice_id)
            for e in entries:
                e.invoiced = False
                e.invoice_id = None
                e.billed_rate = None
            self.db.flush()
            self.db.delete(invoice)
            self.db.flush()
            freed = [
                entry_to_dict(e, effective_rate=self.directory.effective_rate(e.client_id, e.project_id))
                for e in entries
            ]

        log.info("invoice_deleted id=%s unlocked=%d", invoice_id, len(freed))
        for row in freed:
            self.broadcaster.entry_updated(row)
        return {"id": invoice_id, "deleted": True, "unlocked_entry_ids": [r["id"] for r in freed]}
