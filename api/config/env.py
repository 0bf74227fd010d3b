from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Tunables (read on every call so tests can monkeypatch between app builds)
# ---------------------------------------------------------------------------

def log_level() -> str:
    return (os.getenv("TL_LOG_LEVEL") or "INFO").strip().upper()


def session_cookie_name() -> str:
    return (os.getenv("TL_SESSION_COOKIE") or "session").strip()


def session_ttl_hours() -> int:
    return _env_int("TL_SESSION_TTL_HOURS", 7 * 24)


def db_lock_timeout_seconds() -> float:
    return _env_float("TL_DB_LOCK_TIMEOUT_SECONDS", 5.0)


def ws_heartbeat_seconds() -> float:
    """Non-positive values fall back to the default; a zero interval would evict everyone."""
    value = _env_float("TL_WS_HEARTBEAT_SECONDS", 30.0)
    return value if value > 0 else 30.0


def ws_queue_size() -> int:
    return _env_int("TL_WS_QUEUE_SIZE", 256)


def ws_slow_consumer_drop_threshold() -> int:
    """Consecutive queue-full drops before a connection is evicted."""
    return _env_int("TL_WS_SLOW_CONSUMER_DROP_THRESHOLD", 5)


def ws_max_connections_per_principal() -> int:
    return _env_int("TL_WS_MAX_CONNECTIONS_PER_PRINCIPAL", 10)
