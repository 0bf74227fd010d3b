"""
Invoice State Machine

    draft --send--> sent --mark_paid--> paid

``overdue`` is never written here. It is projected at read time for a sent
invoice whose due date has passed, and a stored ``overdue`` (older rows) is
accepted as a prior state for mark_paid. Transitions never touch the money
columns; those are frozen once the invoice leaves draft.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from api.db_models import Invoice
from api.metrics import INVOICE_TRANSITIONS
from services.errors import (
    ERR_ALREADY_PAID,
    ERR_ALREADY_SENT,
    ERR_INVOICE_NOT_FOUND,
    ERR_NOT_SENT,
    InvalidTransition,
    NotFound,
)
from services.event_stream import EventBroadcaster, NullBroadcaster
from services.records import invoice_to_dict
from services.unit_of_work import unit_of_work

log = logging.getLogger("timeledger.invoice_state")

DRAFT = "draft"
SENT = "sent"
PAID = "paid"
OVERDUE = "overdue"

PAYABLE_FROM = frozenset({SENT, OVERDUE})


def effective_status(status: str, date_due: Optional[date], today: date) -> str:
    if status == SENT and date_due is not None and date_due < today:
        return OVERDUE
    return status


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStateMachine:
    def __init__(
        self,
        db: Session,
        *,
        broadcaster: Optional[EventBroadcaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.broadcaster = broadcaster or NullBroadcaster()
        self.clock = clock or _utc_now

    def _load_for_update(self, invoice_id: int) -> Invoice:
        invoice = (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id)
            .with_for_update()
            .one_or_none()
        )
        if invoice is None:
            raise NotFound("invoice not found", code=ERR_INVOICE_NOT_FOUND, invoice_id=invoice_id)
        return invoice

    def _view(self, invoice: Invoice) -> Dict[str, Any]:
        today = self.clock().date()
        return invoice_to_dict(
            invoice, status=effective_status(invoice.status, invoice.date_due, today)
        )

    def send(self, invoice_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="invoice.send"):
            invoice = self._load_for_update(invoice_id)
            if invoice.status != DRAFT:
                raise InvalidTransition(
                    f"cannot send an invoice in status {invoice.status!r}",
                    code=ERR_ALREADY_SENT,
                    invoice_id=invoice_id,
                    status=invoice.status,
                )
            invoice.status = SENT
            self.db.flush()
            out = self._view(invoice)

        INVOICE_TRANSITIONS.labels(to_status=SENT).inc()
        log.info("invoice_sent id=%s number=%s", invoice_id, out["invoice_number"])
        self.broadcaster.invoice_sent(out)
        return out

    def mark_paid(self, invoice_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="invoice.mark_paid"):
            invoice = self._load_for_update(invoice_id)
            if invoice.status not in PAYABLE_FROM:
                code = ERR_ALREADY_PAID if invoice.status == PAID else ERR_NOT_SENT
                raise InvalidTransition(
                    f"cannot mark an invoice in status {invoice.status!r} as paid",
                    code=code,
                    invoice_id=invoice_id,
                    status=invoice.status,
                )
            invoice.status = PAID
            self.db.flush()
            out = self._view(invoice)

        INVOICE_TRANSITIONS.labels(to_status=PAID).inc()
        log.info("invoice_paid id=%s number=%s", invoice_id, out["invoice_number"])
        self.broadcaster.invoice_updated(out)
        return out
