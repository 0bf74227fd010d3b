from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

VALID_TL_ENVS = {"dev", "test", "staging", "prod", "production"}
_PROD_ENVS = {"prod", "production", "staging"}
_TRUE = {"1", "true", "yes", "y", "on"}


@dataclass
class ProdInvariantViolation(RuntimeError):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}:{self.message}"


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    return str(raw).strip().lower() in _TRUE


def assert_prod_invariants(settings: Mapping[str, str] | None = None) -> None:
    env = settings or os.environ
    tl_env = (env.get("TL_ENV") or "dev").strip().lower()
    if tl_env not in VALID_TL_ENVS:
        raise ProdInvariantViolation(
            "TL-PROD-000", "TL_ENV must be one of: dev, test, staging, prod"
        )
    if tl_env not in _PROD_ENVS:
        return

    db_url = (env.get("TL_DB_URL") or "").strip()
    allow_sqlite = _env_bool(env, "TL_ALLOW_SQLITE_IN_PROD", False)
    if not db_url and not allow_sqlite:
        raise ProdInvariantViolation(
            "TL-PROD-001", "TL_DB_URL is required in prod/staging"
        )
    if db_url.lower().startswith("sqlite") and not allow_sqlite:
        raise ProdInvariantViolation(
            "TL-PROD-002", "sqlite TL_DB_URL is forbidden in prod/staging"
        )

    heartbeat = (env.get("TL_WS_HEARTBEAT_SECONDS") or "30").strip()
    try:
        heartbeat_ok = float(heartbeat) > 0
    except ValueError:
        heartbeat_ok = False
    if not heartbeat_ok:
        raise ProdInvariantViolation(
            "TL-PROD-003", "TL_WS_HEARTBEAT_SECONDS must be a positive number in prod/staging"
        )
