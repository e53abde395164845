"""Persisted transfer recommendation model."""

import enum
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Enum, Float, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from transfer_engine.database import Base
from transfer_engine.models.base import MONEY, TimestampMixin, UserOwnedMixin, UUIDMixin


class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Urgency(str, enum.Enum):
    IMMEDIATE = "immediate"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RecommendationType(str, enum.Enum):
    """Bucket a recommendation serves; drives ranking weights."""

    VASTE_LASTEN = "vaste_lasten"
    EMERGENCY_BUFFER = "emergency_buffer"
    GOAL_FUNDING = "goal_funding"
    OPTIMIZATION = "optimization"


class RecommendationKind(str, enum.Enum):
    TRANSFER = "transfer"
    ADVISORY = "advisory"


class AdvisoryTag(str, enum.Enum):
    """What an advisory asks the user to set up."""

    ESTABLISH_EMERGENCY_FUND = "establish_emergency_fund"
    LINK_GOAL_ACCOUNT = "link_goal_account"


class RecommendationStatus(str, enum.Enum):
    """Lifecycle of a stored recommendation.

    Only one generation per user is PENDING at a time; regenerating moves the
    previous set to REPLACED.
    """

    PENDING = "pending"
    REPLACED = "replaced"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


class TransferRecommendationRecord(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    __tablename__ = "transfer_recommendations"

    kind: Mapped[RecommendationKind] = mapped_column(Enum(RecommendationKind), nullable=False)
    advisory_tag: Mapped[AdvisoryTag | None] = mapped_column(Enum(AdvisoryTag), nullable=True)
    recommendation_type: Mapped[RecommendationType] = mapped_column(
        Enum(RecommendationType), nullable=False
    )
    from_account_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    to_account_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    goal_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    purpose: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[Priority] = mapped_column(Enum(Priority), nullable=False)
    urgency: Mapped[Urgency] = mapped_column(Enum(Urgency), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[RecommendationStatus] = mapped_column(
        Enum(RecommendationStatus),
        nullable=False,
        default=RecommendationStatus.PENDING,
        index=True,
    )
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<TransferRecommendationRecord {self.kind.value} {self.amount} "
            f"({self.status.value})>"
        )
