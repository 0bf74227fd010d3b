from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from services.errors import ERR_STORE_BUSY, Conflict

log = logging.getLogger("timeledger.store")


@contextmanager
def unit_of_work(db: Session, *, operation: str) -> Iterator[Session]:
    """
    Commit on clean exit, roll back on any error.

    A store that stays locked past the busy timeout surfaces as Conflict so
    callers fail fast instead of waiting indefinitely.
    """
    try:
        yield db
        db.commit()
    except OperationalError as exc:
        db.rollback()
        log.warning("store_busy op=%s err=%s", operation, exc.orig)
        raise Conflict(
            "store is busy; retry the operation",
            code=ERR_STORE_BUSY,
            operation=operation,
        ) from exc
    except Exception:
        db.rollback()
        raise
