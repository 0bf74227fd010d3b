"""
Directory Service: the three client/project questions the billing core asks.

Client and project CRUD lives elsewhere; `add_client` / `add_project` exist so
seed scripts and tests can populate the directory.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from api.db_models import Client, Project

ZERO = Decimal("0")


class DirectoryService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def client_exists(self, client_id: int) -> bool:
        return (
            self.db.query(Client.id).filter(Client.id == client_id).one_or_none()
            is not None
        )

    def project_belongs_to(self, project_id: int, client_id: int) -> bool:
        return (
            self.db.query(Project.id)
            .filter(Project.id == project_id, Project.client_id == client_id)
            .one_or_none()
            is not None
        )

    def effective_rate(self, client_id: int, project_id: Optional[int] = None) -> Decimal:
        """Project rate if set, else client rate, else zero."""
        if project_id is not None:
            project_rate = (
                self.db.query(Project.hourly_rate)
                .filter(Project.id == project_id)
                .scalar()
            )
            if project_rate is not None:
                return Decimal(project_rate)
        client_rate = (
            self.db.query(Client.hourly_rate).filter(Client.id == client_id).scalar()
        )
        return Decimal(client_rate) if client_rate is not None else ZERO

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_client(
        self,
        *,
        name: str,
        email: str,
        hourly_rate: Decimal | int | str = ZERO,
    ) -> Client:
        client = Client(name=name, email=email, hourly_rate=Decimal(str(hourly_rate)))
        self.db.add(client)
        self.db.commit()
        return client

    def add_project(
        self,
        *,
        client_id: int,
        name: str,
        hourly_rate: Decimal | int | str | None = None,
    ) -> Project:
        project = Project(
            client_id=client_id,
            name=name,
            hourly_rate=None if hourly_rate is None else Decimal(str(hourly_rate)),
        )
        self.db.add(project)
        self.db.commit()
        return project
