"""Read-only snapshots of a user's financial data for one generation run."""

from datetime import date
from decimal import Decimal
from uuid import UUID

from pydantic import Field

from transfer_engine.models.account import AccountRole
from transfer_engine.models.preference import AllocationType
from transfer_engine.schemas.base import Snapshot


class AccountSnapshot(Snapshot):
    id: UUID
    user_id: UUID
    name: str
    custom_name: str | None = None
    role: AccountRole | None = None
    balance: Decimal = Decimal("0.00")
    currency: str = "EUR"

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name


class TransactionSnapshot(Snapshot):
    id: UUID
    account_id: UUID
    txn_date: date
    amount: Decimal
    currency: str = "EUR"
    merchant: str | None = None
    description: str | None = None
    category_id: UUID | None = None
    is_income: bool = False

    @property
    def is_expense(self) -> bool:
        return not self.is_income and self.amount < 0


class GoalSnapshot(Snapshot):
    id: UUID
    user_id: UUID
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0.00")
    linked_account_id: UUID | None = None
    priority: int = 5
    target_date: date | None = None
    is_completed: bool = False

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0.00"), self.target_amount - self.current_amount)

    @property
    def is_fundable(self) -> bool:
        return not self.is_completed and self.remaining > 0


class TransferPreferenceSnapshot(Snapshot):
    id: UUID
    allocation_type: AllocationType
    priority: int = 1
    account_id: UUID | None = None
    account_role: AccountRole | None = None
    goal_pattern: str | None = None
    is_active: bool = True

    @property
    def selector_count(self) -> int:
        return sum(
            1 for value in (self.account_id, self.account_role, self.goal_pattern) if value
        )


class CategorySnapshot(Snapshot):
    id: UUID
    name: str


class RecommendationContext(Snapshot):
    """Everything a generation run reads, loaded once per run."""

    user_id: UUID
    as_of: date
    accounts: list[AccountSnapshot] = Field(default_factory=list)
    transactions: list[TransactionSnapshot] = Field(default_factory=list)
    goals: list[GoalSnapshot] = Field(default_factory=list)
    preferences: list[TransferPreferenceSnapshot] = Field(default_factory=list)
    categories: list[CategorySnapshot] = Field(default_factory=list)

    def account(self, account_id: UUID | None) -> AccountSnapshot | None:
        if account_id is None:
            return None
        return next((a for a in self.accounts if a.id == account_id), None)

    def goal(self, goal_id: UUID | None) -> GoalSnapshot | None:
        if goal_id is None:
            return None
        return next((g for g in self.goals if g.id == goal_id), None)

    def first_with_role(self, *roles: AccountRole) -> AccountSnapshot | None:
        for role in roles:
            match = next((a for a in self.accounts if a.role is role), None)
            if match is not None:
                return match
        return None

    @property
    def active_preferences(self) -> list[TransferPreferenceSnapshot]:
        return sorted((p for p in self.preferences if p.is_active), key=lambda p: p.priority)

    @property
    def category_names(self) -> dict[UUID, str]:
        return {c.id: c.name for c in self.categories}
