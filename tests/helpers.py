from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Dict


def entry_payload(client_id: int, **overrides) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "client_id": client_id,
        "date": date(2026, 3, 2).isoformat(),
        "duration": 1.0,
        "title": "Design review",
        "description": "Reviewed homepage mockups",
        "internal_notes": "client was late to the call",
    }
    payload.update(overrides)
    return payload


def fixed_clock(year: int = 2026, month: int = 3, day: int = 15) -> Callable[[], datetime]:
    moment = datetime(year, month, day, 12, 0, tzinfo=timezone.utc)
    return lambda: moment
