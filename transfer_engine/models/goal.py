"""Savings goal model."""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from transfer_engine.database import Base
from transfer_engine.models.base import MONEY, TimestampMixin, UserOwnedMixin, UUIDMixin


class Goal(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """A savings target. Lower priority numbers are more important."""

    __tablename__ = "goals"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    linked_account_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    target_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Goal {self.name} {self.current_amount}/{self.target_amount}>"
