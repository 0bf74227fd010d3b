"""
Time Entry Ledger

Durable record of billable and non-billable work units. Entries are mutable
only while unbilled; attaching one to an invoice locks it, and only deleting
that (draft) invoice frees it again.

Every successful mutation hands its record to the broadcaster after commit.
"""
from __future__ import annotations

import logging
from datetime import date, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from api.db_models import RESOURCE_TYPES, Resource, TimeEntry
from services.directory import DirectoryService
from services.errors import (
    ERR_CLIENT_NOT_FOUND,
    ERR_EMPTY_PATCH,
    ERR_ENTRY_LOCKED,
    ERR_ENTRY_NOT_FOUND,
    ERR_INVALID_DURATION,
    ERR_INVALID_RESOURCE,
    ERR_MISSING_FIELD,
    ERR_PROJECT_NOT_FOUND,
    ERR_RESOURCE_NOT_FOUND,
    Locked,
    NotFound,
    ValidationError,
)
from services.event_stream import EventBroadcaster, NullBroadcaster
from services.records import entry_to_dict, resource_to_dict
from services.unit_of_work import unit_of_work

log = logging.getLogger("timeledger.ledger")

TENTH = Decimal("0.1")
# NUMERIC(6,1)
MAX_DURATION = Decimal("99999.9")

UPDATABLE_FIELDS = frozenset(
    {
        "client_id",
        "project_id",
        "date",
        "start_time",
        "duration",
        "title",
        "description",
        "internal_notes",
        "billable",
    }
)


def round_duration(value: Any) -> Decimal:
    """Half-up to the nearest 0.1 hour; must stay positive."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("duration must be a number", code=ERR_INVALID_DURATION)
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(
            "duration must be a number", code=ERR_INVALID_DURATION
        ) from exc
    if not d.is_finite():
        raise ValidationError("duration must be finite", code=ERR_INVALID_DURATION)
    rounded = d.quantize(TENTH, rounding=ROUND_HALF_UP)
    if rounded <= 0:
        raise ValidationError(
            "duration must be at least 0.1 hours after rounding",
            code=ERR_INVALID_DURATION,
            duration=str(value),
        )
    if rounded > MAX_DURATION:
        raise ValidationError(
            "duration is too large", code=ERR_INVALID_DURATION, duration=str(value)
        )
    return rounded


def _require(value: Any, name: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required", code=ERR_MISSING_FIELD, field=name)
    return value


class TimeEntryLedger:
    def __init__(
        self,
        db: Session,
        *,
        directory: Optional[DirectoryService] = None,
        broadcaster: Optional[EventBroadcaster] = None,
    ) -> None:
        self.db = db
        self.directory = directory or DirectoryService(db)
        self.broadcaster = broadcaster or NullBroadcaster()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, entry_id: int) -> TimeEntry:
        entry = self.db.query(TimeEntry).filter(TimeEntry.id == entry_id).one_or_none()
        if entry is None:
            raise NotFound(
                "time entry not found", code=ERR_ENTRY_NOT_FOUND, entry_id=entry_id
            )
        return entry

    def _to_dict(self, entry: TimeEntry, *, with_resources: bool = False) -> Dict[str, Any]:
        return entry_to_dict(
            entry,
            effective_rate=self.directory.effective_rate(entry.client_id, entry.project_id),
            resources=entry.resources if with_resources else None,
        )

    def get(self, entry_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="entry.get"):
            return self._to_dict(self._load(entry_id), with_resources=True)

    def list_unbilled(self, client_id: int) -> List[Dict[str, Any]]:
        """Billable, not yet invoiced entries for a client, oldest first."""
        with unit_of_work(self.db, operation="entry.list_unbilled"):
            if not self.directory.client_exists(client_id):
                raise NotFound("client not found", code=ERR_CLIENT_NOT_FOUND, client_id=client_id)
            rows = (
                self.db.query(TimeEntry)
                .filter(
                    TimeEntry.client_id == client_id,
                    TimeEntry.invoiced.is_(False),
                    TimeEntry.billable.is_(True),
                )
                .order_by(TimeEntry.date, TimeEntry.id)
                .all()
            )
            return [self._to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check_ownership(self, client_id: int, project_id: Optional[int]) -> None:
        if not self.directory.client_exists(client_id):
            raise NotFound("client not found", code=ERR_CLIENT_NOT_FOUND, client_id=client_id)
        if project_id is not None and not self.directory.project_belongs_to(project_id, client_id):
            raise NotFound(
                "project not found for this client",
                code=ERR_PROJECT_NOT_FOUND,
                project_id=project_id,
                client_id=client_id,
            )

    def create(
        self,
        *,
        client_id: int,
        date: date,
        duration: Any,
        title: str,
        project_id: Optional[int] = None,
        start_time: Optional[time] = None,
        description: Optional[str] = None,
        internal_notes: Optional[str] = None,
        billable: bool = True,
    ) -> Dict[str, Any]:
        _require(client_id, "client_id")
        _require(date, "date")
        _require(title, "title")
        hours = round_duration(duration)

        with unit_of_work(self.db, operation="entry.create"):
            self._check_ownership(client_id, project_id)
            entry = TimeEntry(
                client_id=client_id,
                project_id=project_id,
                date=date,
                start_time=start_time,
                duration=hours,
                title=title,
                description=description,
                internal_notes=internal_notes,
                billable=bool(billable),
                invoiced=False,
                invoice_id=None,
            )
            self.db.add(entry)
            self.db.flush()
            out = self._to_dict(entry)

        log.info(
            "entry_created id=%s client=%s duration=%s", out["id"], client_id, hours
        )
        self.broadcaster.entry_created(out)
        return out

    def update(self, entry_id: int, patch: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError("no updatable fields supplied", code=ERR_EMPTY_PATCH)
        for name in ("client_id", "date", "title", "billable"):
            if name in changes:
                _require(changes[name], name)
        if "duration" in changes:
            changes["duration"] = round_duration(changes["duration"])

        with unit_of_work(self.db, operation="entry.update"):
            entry = self._load(entry_id)
            if entry.invoiced:
                raise Locked(
                    "time entry is invoiced and cannot be changed",
                    code=ERR_ENTRY_LOCKED,
                    entry_id=entry_id,
                    invoice_id=entry.invoice_id,
                )
            client_id = changes.get("client_id", entry.client_id)
            project_id = changes.get("project_id", entry.project_id)
            if "client_id" in changes or "project_id" in changes:
                self._check_ownership(client_id, project_id)
            for name, value in changes.items():
                setattr(entry, name, value)
            self.db.flush()
            out = self._to_dict(entry)

        log.info("entry_updated id=%s fields=%s", entry_id, ",".join(sorted(changes)))
        self.broadcaster.entry_updated(out)
        return out

    def delete(self, entry_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="entry.delete"):
            entry = self._load(entry_id)
            if entry.invoiced:
                raise Locked(
                    "time entry is invoiced and cannot be deleted",
                    code=ERR_ENTRY_LOCKED,
                    entry_id=entry_id,
                    invoice_id=entry.invoice_id,
                )
            client_id = entry.client_id
            self.db.delete(entry)

        log.info("entry_deleted id=%s client=%s", entry_id, client_id)
        self.broadcaster.entry_deleted(entry_id, client_id)
        return {"id": entry_id, "deleted": True}

    # ------------------------------------------------------------------
    # Resources (attachments; allowed on invoiced entries)
    # ------------------------------------------------------------------

    def add_resource(self, entry_id: int, *, type: str, name: str, url: str) -> Dict[str, Any]:
        if type not in RESOURCE_TYPES:
            raise ValidationError(
                f"resource type must be one of {', '.join(RESOURCE_TYPES)}",
                code=ERR_INVALID_RESOURCE,
                type=type,
            )
        _require(name, "name")
        _require(url, "url")

        with unit_of_work(self.db, operation="entry.add_resource"):
            entry = self._load(entry_id)
            resource = Resource(time_entry_id=entry.id, type=type, name=name, url=url)
            entry.resources.append(resource)
            self.db.flush()
            created = resource_to_dict(resource)
            out = self._to_dict(entry)

        log.info("resource_added entry=%s resource=%s", entry_id, created["id"])
        self.broadcaster.entry_updated(out)
        return created

    def remove_resource(self, entry_id: int, resource_id: int) -> Dict[str, Any]:
        with unit_of_work(self.db, operation="entry.remove_resource"):
            entry = self._load(entry_id)
            resource = (
                self.db.query(Resource)
                .filter(Resource.id == resource_id, Resource.time_entry_id == entry_id)
                .one_or_none()
            )
            if resource is None:
                raise NotFound(
                    "resource not found on this entry",
                    code=ERR_RESOURCE_NOT_FOUND,
                    entry_id=entry_id,
                    resource_id=resource_id,
                )
            entry.resources.remove(resource)
            self.db.flush()
            out = self._to_dict(entry)

        log.info("resource_removed entry=%s resource=%s", entry_id, resource_id)
        self.broadcaster.entry_updated(out)
        return {"id": resource_id, "deleted": True}
