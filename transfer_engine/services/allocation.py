"""Cash-flow metrics and the rule-based monthly allocation.

The allocation follows a simple household plan: fixed pocket money per adult,
essential expenses, topping up the emergency buffer (capped at a share of
income), and whatever is left split across open goals by their deficit.
"""

import statistics
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from transfer_engine.config import settings
from transfer_engine.logger import get_logger
from transfer_engine.models.account import AccountRole
from transfer_engine.schemas.context import GoalSnapshot, RecommendationContext
from transfer_engine.schemas.recommendation import AllocationSummary, GoalAllocation
from transfer_engine.utils.exceptions import InvariantViolationError
from transfer_engine.utils.money import (
    ZERO,
    add_money,
    distribute_capped,
    multiply_money,
    percentage_of,
    round_money,
    subtract_money,
    sum_money,
    validate_sum,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AllocationConfig:
    buffer_minimum: Decimal = Decimal("3000.00")
    buffer_maximum: Decimal = Decimal("4000.00")
    buffer_income_share_pct: Decimal = Decimal("10")
    fire_multiple: int = 25
    metrics_window_months: int = 6

    @property
    def buffer_target(self) -> Decimal:
        return round_money((self.buffer_minimum + self.buffer_maximum) / 2)


DEFAULT_CONFIG = AllocationConfig()


@dataclass
class CashFlowMetrics:
    monthly_income: Decimal
    monthly_expenses: Decimal
    savings_rate: float
    income_volatility: float
    volatility_score: str
    buffer_current: Decimal
    buffer_target: Decimal
    fire_target: Decimal
    fire_progress: float
    months_of_data: int

    @property
    def buffer_need(self) -> Decimal:
        return max(ZERO, self.buffer_target - self.buffer_current)


@dataclass
class BasicAllocation:
    pocket_money: Decimal
    essential_expenses: Decimal
    buffer_allocation: Decimal
    excess_for_goals: Decimal
    goal_allocations: list[GoalAllocation] = field(default_factory=list)

    @property
    def goals_total(self) -> Decimal:
        return sum_money(g.amount for g in self.goal_allocations)

    @property
    def total_allocated(self) -> Decimal:
        return add_money(
            self.pocket_money, self.essential_expenses, self.buffer_allocation, self.goals_total
        )

    def to_summary(self, monthly_income: Decimal) -> AllocationSummary:
        return AllocationSummary(
            pocket_money=self.pocket_money,
            essential_expenses=self.essential_expenses,
            buffer_allocation=self.buffer_allocation,
            excess_for_goals=self.excess_for_goals,
            goal_allocations=list(self.goal_allocations),
            total_allocated=self.total_allocated,
            remaining_amount=max(ZERO, subtract_money(monthly_income, self.total_allocated)),
        )


def _month_key(day: date) -> tuple[int, int]:
    return day.year, day.month


def emergency_goal(goals: Sequence[GoalSnapshot]) -> GoalSnapshot | None:
    """First incomplete goal whose name mentions "emergency"."""
    return next(
        (g for g in goals if not g.is_completed and "emergency" in g.name.lower()),
        None,
    )


def current_buffer(context: RecommendationContext) -> Decimal:
    goal = emergency_goal(context.goals)
    if goal is not None:
        return goal.current_amount
    account = context.first_with_role(AccountRole.EMERGENCY)
    if account is not None:
        return max(ZERO, account.balance)
    return ZERO


def calculate_cash_flow_metrics(
    context: RecommendationContext,
    config: AllocationConfig = DEFAULT_CONFIG,
) -> CashFlowMetrics:
    """Summarise the trailing window of income and spending."""
    window_start = context.as_of - relativedelta(months=config.metrics_window_months)
    income_by_month: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
    expenses_by_month: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)

    for txn in context.transactions:
        if txn.txn_date < window_start or txn.txn_date > context.as_of:
            continue
        if txn.is_income:
            income_by_month[_month_key(txn.txn_date)] += abs(txn.amount)
        elif txn.amount < 0:
            expenses_by_month[_month_key(txn.txn_date)] += abs(txn.amount)

    incomes = list(income_by_month.values())
    expenses = list(expenses_by_month.values())
    monthly_income = round_money(sum(incomes, ZERO) / len(incomes)) if incomes else ZERO
    monthly_expenses = round_money(sum(expenses, ZERO) / len(expenses)) if expenses else ZERO

    savings_rate = (
        float((monthly_income - monthly_expenses) / monthly_income) if monthly_income > 0 else 0.0
    )

    volatility = 0.0
    if len(incomes) > 1:
        float_incomes = [float(i) for i in incomes]
        mean = statistics.fmean(float_incomes)
        volatility = statistics.pstdev(float_incomes) / mean if mean > 0 else 0.0
    if volatility <= 0.1:
        volatility_score = "low"
    elif volatility <= 0.2:
        volatility_score = "medium"
    else:
        volatility_score = "high"

    fire_target = round_money(monthly_expenses * 12 * config.fire_multiple)
    total_saved = sum_money(g.current_amount for g in context.goals)
    fire_progress = min(1.0, float(total_saved / fire_target)) if fire_target > 0 else 0.0

    return CashFlowMetrics(
        monthly_income=monthly_income,
        monthly_expenses=monthly_expenses,
        savings_rate=savings_rate,
        income_volatility=volatility,
        volatility_score=volatility_score,
        buffer_current=current_buffer(context),
        buffer_target=config.buffer_target,
        fire_target=fire_target,
        fire_progress=fire_progress,
        months_of_data=len(set(income_by_month) | set(expenses_by_month)),
    )


def calculate_basic_allocation(
    context: RecommendationContext,
    metrics: CashFlowMetrics,
    config: AllocationConfig = DEFAULT_CONFIG,
) -> BasicAllocation:
    """Split monthly income into pocket money, expenses, buffer and goals."""
    pocket_money = round_money(settings.pocket_money_per_adult * settings.number_of_adults)
    buffer_allocation = min(
        metrics.buffer_need,
        percentage_of(metrics.monthly_income, config.buffer_income_share_pct),
    )
    excess = round_money(
        metrics.monthly_income - metrics.monthly_expenses - pocket_money - buffer_allocation
    )

    goal_allocations: list[GoalAllocation] = []
    if excess > 0:
        open_goals = sorted(
            (g for g in context.goals if g.is_fundable),
            key=lambda g: (g.priority, g.target_date or date.max),
        )
        deficits = [g.remaining for g in open_goals]
        total_deficit = sum(deficits, ZERO)
        if open_goals and total_deficit > 0:
            to_distribute = min(excess, total_deficit)
            shares = distribute_capped(to_distribute, deficits)
            if not validate_sum(shares, to_distribute):
                raise InvariantViolationError(
                    f"Goal shares {shares} do not add up to {to_distribute}"
                )
            goal_allocations = [
                GoalAllocation(goal_id=goal.id, amount=share)
                for goal, share in zip(open_goals, shares, strict=True)
                if share > 0
            ]

    allocation = BasicAllocation(
        pocket_money=pocket_money,
        essential_expenses=metrics.monthly_expenses,
        buffer_allocation=buffer_allocation,
        excess_for_goals=max(ZERO, excess),
        goal_allocations=goal_allocations,
    )
    logger.debug(
        "Basic allocation calculated",
        monthly_income=str(metrics.monthly_income),
        buffer_allocation=str(buffer_allocation),
        excess_for_goals=str(allocation.excess_for_goals),
        goals_funded=len(goal_allocations),
    )
    return allocation


def monthly_expense_average(context: RecommendationContext, months: int = 3) -> Decimal:
    """Average non-income spending over the trailing ``months`` months."""
    window_start = context.as_of - relativedelta(months=months)
    total = sum(
        (
            abs(t.amount)
            for t in context.transactions
            if t.is_expense and window_start <= t.txn_date <= context.as_of
        ),
        ZERO,
    )
    return multiply_money(total, Decimal(1) / Decimal(months))
