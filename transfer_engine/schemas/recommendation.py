"""Request and response schemas for recommendation generation."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationType,
    Urgency,
)
from transfer_engine.schemas.base import BaseResponse


class DataQuality(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class Strategy(str, enum.Enum):
    INTELLIGENT = "intelligent"
    BASIC = "basic"
    FALLBACK = "fallback"


class RecommendationRequest(BaseModel):
    """Validated at construction; bad values never reach the engine."""

    user_id: UUID
    force_recalculation: bool = False
    include_intelligent_recommendations: bool = False
    max_recommendations: int | None = Field(default=None, ge=1, le=50)
    min_transfer_amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)


class ExpectedImpact(BaseModel):
    savings_rate: float = 0.0
    risk_reduction: float = 0.0
    opportunity_cost: float = 0.0


class _RecommendationBase(BaseResponse):
    from_account_id: UUID
    to_account_id: UUID
    amount: Decimal = Field(gt=0, decimal_places=2)
    purpose: str = Field(min_length=1, max_length=255)
    priority: Priority
    urgency: Urgency
    confidence: float = Field(ge=0.0, le=1.0)
    recommendation_type: RecommendationType
    goal_id: UUID | None = None
    expected_impact: ExpectedImpact | None = None
    valid_until: datetime | None = None


class TransferRecommendation(_RecommendationBase):
    """An actionable move of money between two different accounts."""

    kind: Literal["transfer"] = "transfer"

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "TransferRecommendation":
        if self.from_account_id == self.to_account_id:
            raise ValueError("from_account_id and to_account_id must differ")
        return self


class AdvisoryRecommendation(_RecommendationBase):
    """Advice to set something up before money can be moved.

    Both account ids point at the account the money would come from; read
    ``advisory_tag`` for what is being advised.
    """

    kind: Literal["advisory"] = "advisory"
    advisory_tag: AdvisoryTag


Recommendation = Annotated[
    TransferRecommendation | AdvisoryRecommendation,
    Field(discriminator="kind"),
]


class GoalAllocation(BaseResponse):
    goal_id: UUID
    amount: Decimal


class AllocationSummary(BaseResponse):
    """Monthly split of income into its destinations."""

    pocket_money: Decimal = Decimal("0.00")
    essential_expenses: Decimal = Decimal("0.00")
    buffer_allocation: Decimal = Decimal("0.00")
    excess_for_goals: Decimal = Decimal("0.00")
    goal_allocations: list[GoalAllocation] = Field(default_factory=list)
    total_allocated: Decimal = Decimal("0.00")
    remaining_amount: Decimal = Decimal("0.00")


class RecommendationSummary(BaseResponse):
    total_recommended: Decimal = Decimal("0.00")
    number_of_transfers: int = 0
    number_of_advisories: int = 0
    high_priority_count: int = 0
    medium_priority_count: int = 0
    low_priority_count: int = 0
    average_confidence: float = 0.0
    total_potential_impact: float = 0.0


class RecommendationMetadata(BaseResponse):
    generated_at: datetime
    engine_version: str
    validation_passed: bool
    data_quality: DataQuality
    recommendation_strategy: Strategy
    processing_time_ms: float
    warnings_count: int = 0
    errors_count: int = 0


class RecommendationResponse(BaseResponse):
    success: bool
    recommendations: list[Recommendation] = Field(default_factory=list)
    allocation: AllocationSummary = Field(default_factory=AllocationSummary)
    summary: RecommendationSummary = Field(default_factory=RecommendationSummary)
    metadata: RecommendationMetadata
    warnings: list[str] | None = None
    errors: list[str] | None = None

    @property
    def transfers(self) -> list[TransferRecommendation]:
        return [r for r in self.recommendations if isinstance(r, TransferRecommendation)]

    @property
    def advisories(self) -> list[AdvisoryRecommendation]:
        return [r for r in self.recommendations if isinstance(r, AdvisoryRecommendation)]
