import uuid

from sqlalchemy import Float, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shotline.models.base import Base, TimestampMixin, UUIDMixin


class UsageCounter(Base, UUIDMixin, TimestampMixin):
    """Monotonic usage total for one owner, quota kind and billing period."""

    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("owner_id", "kind", "period", name="uq_usage_owner_kind_period"),)

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    # Billing period as YYYY-MM
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0)

    def __repr__(self) -> str:
        return f"<UsageCounter {self.owner_id} {self.kind} {self.period}={self.amount}>"
