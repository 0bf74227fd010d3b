from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from api.auth import current_principal, require_staff
from api.db import get_db
from api.schemas import ResourceCreate, TimeEntryCreate, TimeEntryUpdate
from services.event_stream import INTERNAL_ENTRY_FIELDS
from services.ledger import TimeEntryLedger
from services.principals import Principal

log = logging.getLogger("timeledger.api.time_entries")

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


def _ledger(request: Request, db: Session) -> TimeEntryLedger:
    return TimeEntryLedger(db, broadcaster=request.app.state.broadcaster)


def client_entry_view(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in INTERNAL_ENTRY_FIELDS}


@router.post("", status_code=201)
def create_entry(
    req: TimeEntryCreate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _ledger(request, db).create(**req.model_dump())


@router.get("/{entry_id}")
def get_entry(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
) -> Dict[str, Any]:
    entry = _ledger(request, db).get(entry_id)
    if principal.is_staff:
        return entry
    if entry["client_id"] != principal.id:
        # same answer as a missing entry so ids of other clients do not leak
        raise HTTPException(status_code=404, detail="time entry not found")
    return client_entry_view(entry)


@router.put("/{entry_id}")
def update_entry(
    entry_id: int,
    req: TimeEntryUpdate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _ledger(request, db).update(entry_id, req.model_dump(exclude_unset=True))


@router.delete("/{entry_id}")
def delete_entry(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _ledger(request, db).delete(entry_id)


@router.post("/{entry_id}/resources", status_code=201)
def add_resource(
    entry_id: int,
    req: ResourceCreate,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _ledger(request, db).add_resource(
        entry_id, type=req.type, name=req.name, url=req.url
    )


@router.delete("/{entry_id}/resources/{resource_id}")
def remove_resource(
    entry_id: int,
    resource_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _staff: Principal = Depends(require_staff),
) -> Dict[str, Any]:
    return _ledger(request, db).remove_resource(entry_id, resource_id)
