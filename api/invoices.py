from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from api.auth import current_principal, require_staff
from api.db import get_db
from api.schemas import InvoiceCreate, InvoiceUpdate, LineItemCreate
from api.time_entries import client_entry_view
from services.invoice_state import InvoiceStateMachine
from services.invoicing import InvoiceAggregator
from services.ledger import TimeEntryLedger
from services.principals import Principal

log = logging.getLogger("timeledger.api.invoices")

router = APIRouter(prefix="/invoices", tags=["invoices"])


def _aggregator(request: Request, db: Session) -> InvoiceAggregator:
    return InvoiceAggregator(
        db,
        broadcaster=request.app.state.broadcaster,
        clock=request.app.state.clock,
    )


def _state_machine(request: Request, db: Session) -> InvoiceStateMachine:
    return InvoiceStateMachine(
        db,
        broadcaster=request.app.state.broadcaster,
        clock=request.app.state.clock,
    )


@router.get("/unbilled/{client_id}")
def list_unbilled(
    client_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> List[Dict[str, Any]]:
    ledger = TimeEntryLedger(db, broadcaster=request.app.state.broadcaster)
    return ledger.list_unbilled(client_id)


@router.post("", status_code=201)
def create_invoice(
    req: InvoiceCreate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _aggregator(request, db).create_invoice(
        client_id=req.client_id,
        date_issued=req.date_issued,
        date_due=req.date_due,
        tax_rate=req.tax_rate,
        notes=req.notes,
        entry_ids=req.entry_ids,
        items=[i.model_dump() for i in req.items],
    )


@router.get("/{invoice_id}")
def get_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
) -> Dict[str, Any]:
    invoice = _aggregator(request, db).get_invoice(invoice_id)
    if principal.is_staff:
        return invoice
    # clients see their own invoices once sent, with entries redacted
    if invoice["client_id"] != principal.id or invoice["status"] == "draft":
        raise HTTPException(status_code=404, detail="invoice not found")
    invoice["entries"] = [client_entry_view(e) for e in invoice["entries"]]
    return invoice


@router.put("/{invoice_id}")
def update_invoice(
    invoice_id: int,
    req: InvoiceUpdate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _aggregator(request, db).update_invoice(
        invoice_id, req.model_dump(exclude_unset=True)
    )


@router.delete("/{invoice_id}")
def delete_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _aggregator(request, db).delete_invoice(invoice_id)


@router.post("/{invoice_id}/items", status_code=201)
def add_line_item(
    invoice_id: int,
    req: LineItemCreate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _aggregator(request, db).add_line_item(
        invoice_id, description=req.description, quantity=req.quantity, rate=req.rate
    )


@router.delete("/{invoice_id}/items/{item_id}")
def remove_line_item(
    invoice_id: int,
    item_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _aggregator(request, db).remove_line_item(invoice_id, item_id)


@router.post("/{invoice_id}/send")
def send_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _state_machine(request, db).send(invoice_id)


@router.post("/{invoice_id}/paid")
def mark_invoice_paid(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _state_machine(request, db).mark_paid(invoice_id)
