"""Usage counters per owner and billing period, plus the admission gate.

The engine never interprets quota policy: it asks ``check_and_reserve`` for
a yes/no answer and calls ``commit`` once work has actually happened.
"""

import logging
import uuid
from enum import Enum
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from shotline.clock import Clock, system_clock
from shotline.models.database import Database
from shotline.models.render_job import RenderType
from shotline.models.usage import UsageCounter
from shotline.store import as_uuid

logger = logging.getLogger(__name__)


class QuotaKind(str, Enum):
    RENDER_MINUTES = "render_minutes"
    CAPTION_RENDER_MINUTES = "caption_render_minutes"
    CAPTION_PROJECTS = "caption_projects"
    TRANSCRIPTION_MINUTES = "transcription_minutes"
    STORAGE_BYTES = "storage_bytes"


def render_minutes_kind(render_type: str) -> QuotaKind:
    """Caption renders bill against their own counter."""
    if render_type == RenderType.CAPTION.value:
        return QuotaKind.CAPTION_RENDER_MINUTES
    return QuotaKind.RENDER_MINUTES


class QuotaGate(Protocol):
    def check_and_reserve(self, owner_id: Any, kind: QuotaKind, amount: float) -> bool: ...

    def commit(self, owner_id: Any, kind: QuotaKind, amount: float) -> None: ...


class DatabaseQuotaGate:
    def __init__(self, database: Database, limits: dict[str, float] | None = None, clock: Clock = system_clock):
        self.database = database
        self.limits = limits or {}
        self.clock = clock

    def period(self) -> str:
        return self.clock.now().strftime("%Y-%m")

    def usage(self, owner_id: Any, kind: QuotaKind) -> float:
        with self.database.session() as session:
            amount = session.execute(
                select(UsageCounter.amount).where(
                    UsageCounter.owner_id == as_uuid(owner_id),
                    UsageCounter.kind == kind.value,
                    UsageCounter.period == self.period(),
                )
            ).scalar_one_or_none()
        return amount or 0.0

    def check_and_reserve(self, owner_id: Any, kind: QuotaKind, amount: float) -> bool:
        limit = self.limits.get(kind.value)
        if limit is None:
            return True
        allowed = self.usage(owner_id, kind) + amount <= limit
        if not allowed:
            logger.info(f"[Quota] Owner {str(owner_id)[-6:]} denied {kind.value} +{amount} (limit {limit})")
        return allowed

    def commit(self, owner_id: Any, kind: QuotaKind, amount: float) -> None:
        if amount == 0:
            return
        owner = as_uuid(owner_id)
        period = self.period()
        if not self._increment(owner, kind, period, amount):
            try:
                with self.database.session() as session:
                    session.add(UsageCounter(owner_id=owner, kind=kind.value, period=period, amount=amount))
            except IntegrityError:
                # Another worker created the row first
                self._increment(owner, kind, period, amount)
        logger.info(f"[Quota] Owner {str(owner_id)[-6:]}: {kind.value} +{amount:g}")

    def _increment(self, owner: uuid.UUID, kind: QuotaKind, period: str, amount: float) -> bool:
        stmt = (
            update(UsageCounter)
            .where(
                UsageCounter.owner_id == owner,
                UsageCounter.kind == kind.value,
                UsageCounter.period == period,
            )
            .values(amount=UsageCounter.amount + amount)
            .execution_options(synchronize_session=False)
        )
        with self.database.session() as session:
            return session.execute(stmt).rowcount == 1
