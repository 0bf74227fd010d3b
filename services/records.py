"""
Wire representations of ledger and invoice rows.

The same dicts back HTTP responses and event payloads, so a staff viewer sees
identical data whether it polled or was pushed. Money and hours leave the
process as JSON numbers; all arithmetic stays in Decimal.
"""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from api.db_models import Invoice, InvoiceItem, Resource, TimeEntry

CENTS = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _num(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _iso(value: date | time | datetime | None) -> Optional[str]:
    return None if value is None else value.isoformat()


def resource_to_dict(resource: Resource) -> Dict[str, Any]:
    return {
        "id": resource.id,
        "time_entry_id": resource.time_entry_id,
        "type": resource.type,
        "name": resource.name,
        "url": resource.url,
        "created_at": _iso(resource.created_at),
    }


def entry_to_dict(
    entry: TimeEntry,
    *,
    effective_rate: Decimal,
    resources: Iterable[Resource] | None = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": entry.id,
        "client_id": entry.client_id,
        "project_id": entry.project_id,
        "date": _iso(entry.date),
        "start_time": _iso(entry.start_time),
        "duration": _num(entry.duration),
        "title": entry.title,
        "description": entry.description,
        "internal_notes": entry.internal_notes,
        "billable": bool(entry.billable),
        "invoiced": bool(entry.invoiced),
        "invoice_id": entry.invoice_id,
        "billed_rate": _num(entry.billed_rate),
        "effective_rate": _num(effective_rate),
        "created_at": _iso(entry.created_at),
        "updated_at": _iso(entry.updated_at),
    }
    if resources is not None:
        rows = [resource_to_dict(r) for r in resources]
        out["resources"] = rows
        out["resource_count"] = len(rows)
    return out


def item_to_dict(item: InvoiceItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "invoice_id": item.invoice_id,
        "description": item.description,
        "quantity": _num(item.quantity),
        "rate": _num(item.rate),
        "amount": _num(item.amount),
    }


def invoice_to_dict(invoice: Invoice, *, status: Optional[str] = None) -> Dict[str, Any]:
    """`status` overrides the stored value with the read-side projection."""
    return {
        "id": invoice.id,
        "client_id": invoice.client_id,
        "invoice_number": invoice.invoice_number,
        "date_issued": _iso(invoice.date_issued),
        "date_due": _iso(invoice.date_due),
        "subtotal": _num(invoice.subtotal),
        "tax_rate": _num(invoice.tax_rate),
        "tax_amount": _num(invoice.tax_amount),
        "total": _num(invoice.total),
        "status": status or invoice.status,
        "notes": invoice.notes,
        "created_at": _iso(invoice.created_at),
        "updated_at": _iso(invoice.updated_at),
    }
