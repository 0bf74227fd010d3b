"""
Domain error taxonomy for the ledger/invoice core.

Every mutating operation surfaces one of these synchronously to its caller.
Each carries a deterministic error code; the API layer maps the class to an
HTTP status and never collapses them into a generic failure.
"""
from __future__ import annotations

from typing import Any, Dict

# ---------------------------------------------------------------------------
# Deterministic error codes
# ---------------------------------------------------------------------------
ERR_CLIENT_NOT_FOUND = "TL-NF-001"
ERR_PROJECT_NOT_FOUND = "TL-NF-002"
ERR_ENTRY_NOT_FOUND = "TL-NF-003"
ERR_INVOICE_NOT_FOUND = "TL-NF-004"
ERR_ITEM_NOT_FOUND = "TL-NF-005"
ERR_RESOURCE_NOT_FOUND = "TL-NF-006"

ERR_ENTRY_LOCKED = "TL-LOCK-001"

ERR_ENTRIES_UNAVAILABLE = "TL-CONFLICT-001"
ERR_INVOICE_NUMBER_COLLISION = "TL-CONFLICT-002"
ERR_STORE_BUSY = "TL-CONFLICT-003"
ERR_INVOICE_NUMBER_EXHAUSTED = "TL-CONFLICT-004"

ERR_INVOICE_NOT_DRAFT = "TL-STATE-001"
ERR_ALREADY_SENT = "TL-STATE-002"
ERR_NOT_SENT = "TL-STATE-003"
ERR_ALREADY_PAID = "TL-STATE-004"

ERR_INVALID_DURATION = "TL-VAL-001"
ERR_MISSING_FIELD = "TL-VAL-002"
ERR_INVALID_AMOUNT = "TL-VAL-003"
ERR_EMPTY_PATCH = "TL-VAL-004"
ERR_INVALID_RESOURCE = "TL-VAL-005"


class LedgerError(Exception):
    """Base class; `context` is echoed back to the caller next to the code."""

    code: str = "TL-ERR-000"

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class NotFound(LedgerError):
    code = ERR_ENTRY_NOT_FOUND


class Locked(LedgerError):
    code = ERR_ENTRY_LOCKED


class Conflict(LedgerError):
    code = ERR_ENTRIES_UNAVAILABLE


class InvalidTransition(LedgerError):
    code = ERR_INVOICE_NOT_DRAFT


class ValidationError(LedgerError):
    code = ERR_MISSING_FIELD
