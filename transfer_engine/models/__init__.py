"""SQLAlchemy models package."""

from transfer_engine.models.account import Account, AccountRole
from transfer_engine.models.category import Category
from transfer_engine.models.goal import Goal
from transfer_engine.models.preference import AllocationType, TransferPreference
from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationKind,
    RecommendationStatus,
    RecommendationType,
    TransferRecommendationRecord,
    Urgency,
)
from transfer_engine.models.transaction import Transaction
from transfer_engine.models.user import User

__all__ = [
    "Account",
    "AccountRole",
    "AdvisoryTag",
    "AllocationType",
    "Category",
    "Goal",
    "Priority",
    "RecommendationKind",
    "RecommendationStatus",
    "RecommendationType",
    "Transaction",
    "TransferPreference",
    "TransferRecommendationRecord",
    "Urgency",
    "User",
]
