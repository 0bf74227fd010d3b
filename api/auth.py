# api/auth.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from api.config.env import session_cookie_name
from api.db import get_db
from services.credentials import resolve_session
from services.principals import Principal

log = logging.getLogger("timeledger.auth")

SESSION_HEADER = "x-session-token"


class AuthError(HTTPException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
        )


def session_token_from(
    cookies: dict, header_value: Optional[str] = None
) -> Optional[str]:
    """Cookie wins; the header serves API clients and websockets without cookies."""
    token = cookies.get(session_cookie_name())
    if token:
        return token
    if header_value and header_value.strip():
        return header_value.strip()
    return None


def current_principal(
    request: Request,
    x_session_token: str | None = Header(default=None, alias=SESSION_HEADER),
    db: Session = Depends(get_db),
) -> Principal:
    token = session_token_from(request.cookies, x_session_token)
    if not token:
        raise AuthError("authentication required")
    principal = resolve_session(db, token)
    # resolve_session opens a read transaction; release it before the handler runs
    db.commit()
    if principal is None:
        raise AuthError("invalid session")
    return principal


def require_staff(principal: Principal = Depends(current_principal)) -> Principal:
    if not principal.is_staff:
        log.info("staff_required principal=%s path_denied", principal.key)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="staff access required",
        )
    return principal
