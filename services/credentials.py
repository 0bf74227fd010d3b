"""
Credential Store adapter.

Sessions are opaque random tokens; only their SHA-256 digest is persisted.
The billing core trusts the principal a valid session resolves to and never
re-verifies credentials itself.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from api.config.env import session_ttl_hours
from api.db_models import AuthSession, StaffUser
from services.principals import Principal, PrincipalKind

log = logging.getLogger("timeledger.credentials")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def add_staff(db: Session, *, email: str, name: str) -> StaffUser:
    user = StaffUser(email=email, name=name)
    db.add(user)
    db.commit()
    return user


def issue_session(
    db: Session,
    principal: Principal,
    *,
    ttl: Optional[timedelta] = None,
) -> str:
    token = secrets.token_urlsafe(32)
    row = AuthSession(
        token_sha256=_digest(token),
        principal_kind=principal.kind.value,
        staff_id=principal.id if principal.is_staff else None,
        client_id=principal.id if principal.is_client else None,
        expires_at=_utc_now() + (ttl if ttl is not None else timedelta(hours=session_ttl_hours())),
    )
    db.add(row)
    db.commit()
    log.info("session_issued principal=%s", principal.key)
    return token


def resolve_session(db: Session, token: Optional[str]) -> Optional[Principal]:
    """Return the principal behind `token`, or None if unknown or expired."""
    if not token:
        return None
    row = (
        db.query(AuthSession)
        .filter(AuthSession.token_sha256 == _digest(token))
        .one_or_none()
    )
    if row is None:
        return None
    if _as_utc(row.expires_at) <= _utc_now():
        log.info("session_expired principal_kind=%s", row.principal_kind)
        return None
    if row.principal_kind == PrincipalKind.STAFF.value and row.staff_id is not None:
        return Principal.staff(row.staff_id)
    if row.principal_kind == PrincipalKind.CLIENT.value and row.client_id is not None:
        return Principal.client(row.client_id)
    return None

