"""Persistent-store adapter used by every worker.

Workers only see detached ORM instances and issue single-statement writes,
so the database stays the one coordination point between worker processes.
"""

import logging
import uuid
from typing import Any, Iterable, TypeVar

from sqlalchemy import select, update

from shotline.models.base import Base
from shotline.models.database import Database

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


def as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class Store:
    def __init__(self, database: Database):
        self.database = database

    def get(self, model: type[ModelT], record_id: Any) -> ModelT | None:
        try:
            key = as_uuid(record_id)
        except (TypeError, ValueError):
            return None
        with self.database.session() as session:
            return session.get(model, key)

    def create(self, record: ModelT) -> ModelT:
        with self.database.session() as session:
            session.add(record)
            session.flush()
            session.refresh(record)
        return record

    def update(self, model: type[ModelT], record_id: Any, **values: Any) -> bool:
        """Unconditional update by id. Returns False if the record is gone."""
        return self.conditional_update(model, record_id, **values)

    def conditional_update(
        self,
        model: type[ModelT],
        record_id: Any,
        *conditions: Any,
        statuses: Iterable[str] | None = None,
        **values: Any,
    ) -> bool:
        """Compare-and-set by id.

        The write applies only if the record's status is in ``statuses`` and
        every extra SQL condition holds. Returns True when exactly one row
        changed, which is how a claim is won.
        """
        stmt = update(model).where(model.id == as_uuid(record_id))
        if statuses is not None:
            stmt = stmt.where(model.status.in_([str(getattr(s, "value", s)) for s in statuses]))
        if conditions:
            stmt = stmt.where(*conditions)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        with self.database.session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def increment(self, model: type[ModelT], record_id: Any, **deltas: int | float) -> bool:
        values = {name: getattr(model, name) + delta for name, delta in deltas.items()}
        return self.conditional_update(model, record_id, **values)

    def find_one(self, model: type[ModelT], *criteria: Any, order_by: Any = None) -> ModelT | None:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        with self.database.session() as session:
            return session.execute(stmt.limit(1)).scalars().first()

    def find_all(self, model: type[ModelT], *criteria: Any, order_by: Any = None) -> list[ModelT]:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        with self.database.session() as session:
            return list(session.execute(stmt).scalars().all())
