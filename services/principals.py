"""
Authenticated identities attached to requests and connections.

A principal is either a staff member (sees everything, unredacted) or a
specific client (sees only its own records, redacted).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PrincipalKind(str, Enum):
    STAFF = "staff"
    CLIENT = "client"


@dataclass(frozen=True)
class Principal:
    kind: PrincipalKind
    id: int

    @classmethod
    def staff(cls, staff_id: int) -> "Principal":
        return cls(PrincipalKind.STAFF, int(staff_id))

    @classmethod
    def client(cls, client_id: int) -> "Principal":
        return cls(PrincipalKind.CLIENT, int(client_id))

    @property
    def is_staff(self) -> bool:
        return self.kind is PrincipalKind.STAFF

    @property
    def is_client(self) -> bool:
        return self.kind is PrincipalKind.CLIENT

    @property
    def key(self) -> str:
        """Registry key, e.g. ``staff:3`` or ``client:12``."""
        return f"{self.kind.value}:{self.id}"

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "id": self.id}
