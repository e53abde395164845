"""User transfer preference model."""

import enum
from uuid import UUID

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from transfer_engine.database import Base
from transfer_engine.models.account import AccountRole
from transfer_engine.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin


class AllocationType(str, enum.Enum):
    """Kind of money flow a preference routes."""

    BUFFER = "buffer"
    GOAL = "goal"
    INVESTMENT = "investment"
    EMERGENCY = "emergency"


class TransferPreference(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Where the user wants one kind of allocation to land.

    Exactly one selector should be set: a direct account, an account role, or a
    regex matched against goal names.
    """

    __tablename__ = "transfer_preferences"

    allocation_type: Mapped[AllocationType] = mapped_column(Enum(AllocationType), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=True
    )
    account_role: Mapped[AccountRole | None] = mapped_column(Enum(AccountRole), nullable=True)
    goal_pattern: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<TransferPreference {self.allocation_type.value} #{self.priority}>"
