# api/schemas.py
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TimeEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: int = Field(..., description="Owning client")
    project_id: Optional[int] = Field(default=None, description="Must belong to the client")
    date: dt.date
    start_time: Optional[dt.time] = None
    duration: Decimal = Field(..., description="Hours; rounded half-up to 0.1")
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    internal_notes: Optional[str] = Field(
        default=None, description="Staff only; never sent to clients"
    )
    billable: bool = True


class TimeEntryUpdate(BaseModel):
    """Only fields present in the request body are applied."""

    model_config = ConfigDict(extra="forbid")

    client_id: Optional[int] = None
    project_id: Optional[int] = None
    date: Optional[dt.date] = None
    start_time: Optional[dt.time] = None
    duration: Optional[Decimal] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    internal_notes: Optional[str] = None
    billable: Optional[bool] = None


class ResourceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["link", "document"]
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1)


class LineItemCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=255)
    quantity: Decimal = Field(..., gt=0)
    rate: Decimal = Field(..., ge=0)


class InvoiceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: int
    date_issued: dt.date
    date_due: Optional[dt.date] = None
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    notes: Optional[str] = None
    entry_ids: List[int] = Field(default_factory=list)
    items: List[LineItemCreate] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date_due: Optional[dt.date] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None
