"""Account model for the money pots a household moves funds between."""

import enum
from decimal import Decimal

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from transfer_engine.database import Base
from transfer_engine.models.base import MONEY, TimestampMixin, UserOwnedMixin, UUIDMixin


class AccountRole(str, enum.Enum):
    """What an account is used for when routing transfers."""

    INCOME = "income"
    CHECKING = "checking"
    SAVINGS = "savings"
    EMERGENCY = "emergency"
    INVESTMENT = "investment"
    GOAL_SPECIFIC = "goal-specific"
    VASTE_LASTEN = "vaste_lasten"


class Account(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """A bank account with its current balance and optional role."""

    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[AccountRole | None] = mapped_column(Enum(AccountRole), nullable=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    def __repr__(self) -> str:
        role = self.role.value if self.role else "unassigned"
        return f"<Account {self.name} ({role})>"
