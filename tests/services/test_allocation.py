"""Tests for cash-flow metrics and the basic allocation."""

from datetime import date
from decimal import Decimal

import pytest

from tests.factories import (
    AccountSnapshotFactory,
    GoalSnapshotFactory,
    make_context,
    monthly_series,
)
from transfer_engine.models import AccountRole
from transfer_engine.services.allocation import (
    calculate_basic_allocation,
    calculate_cash_flow_metrics,
    current_buffer,
    monthly_expense_average,
)

AS_OF = date(2026, 6, 15)


@pytest.fixture
def income_account():
    return AccountSnapshotFactory.build(role=AccountRole.INCOME, balance=Decimal("5000.00"))


def _context(income_account, goals=(), months=1, accounts=None):
    txns = monthly_series(
        income_account.id, Decimal("4000.00"), as_of=AS_OF, months=months, is_income=True,
        merchant="Employer",
    ) + monthly_series(
        income_account.id, Decimal("-800.00"), as_of=AS_OF, months=months, merchant="Rent BV",
        day=10,
    )
    return make_context(
        income_account.user_id,
        as_of=AS_OF,
        accounts=accounts or [income_account],
        transactions=txns,
        goals=goals,
    )


class TestCashFlowMetrics:
    def test_averages_and_rates(self, income_account):
        context = _context(income_account, months=3)

        metrics = calculate_cash_flow_metrics(context)

        assert metrics.monthly_income == Decimal("4000.00")
        assert metrics.monthly_expenses == Decimal("800.00")
        assert metrics.savings_rate == pytest.approx(0.8)
        assert metrics.volatility_score == "low"
        assert metrics.fire_target == Decimal("240000.00")
        assert metrics.months_of_data == 3
        assert metrics.buffer_target == Decimal("3500.00")

    def test_no_transactions(self, income_account):
        context = make_context(income_account.user_id, as_of=AS_OF, accounts=[income_account])
        metrics = calculate_cash_flow_metrics(context)
        assert metrics.monthly_income == Decimal("0.00")
        assert metrics.savings_rate == 0.0
        assert metrics.fire_progress == 0.0

    def test_buffer_from_emergency_goal_then_account(self, income_account):
        goal = GoalSnapshotFactory.build(name="Emergency fund", current_amount=Decimal("1200.00"))
        assert current_buffer(_context(income_account, goals=[goal])) == Decimal("1200.00")

        emergency = AccountSnapshotFactory.build(
            role=AccountRole.EMERGENCY, balance=Decimal("800.00")
        )
        context = _context(income_account, accounts=[income_account, emergency])
        assert current_buffer(context) == Decimal("800.00")

    def test_monthly_expense_average_spreads_over_window(self, income_account):
        """
        GIVEN two months of 800 spending inside a three month window
        WHEN averaging
        THEN the total is divided by the full window
        """
        context = _context(income_account, months=2)
        assert monthly_expense_average(context, months=3) == Decimal("533.33")


class TestBasicAllocation:
    def test_buffer_capped_at_ten_percent_of_income(self, income_account):
        """
        GIVEN income 4000, expenses 800 and no buffer yet
        WHEN allocating
        THEN the buffer gets min(3500 need, 400) = 400
        """
        context = _context(income_account)
        allocation = calculate_basic_allocation(context, calculate_cash_flow_metrics(context))

        assert allocation.pocket_money == Decimal("300.00")
        assert allocation.essential_expenses == Decimal("800.00")
        assert allocation.buffer_allocation == Decimal("400.00")
        assert allocation.excess_for_goals == Decimal("2500.00")
        assert allocation.goal_allocations == []

    def test_single_goal_capped_at_deficit(self, income_account):
        goal = GoalSnapshotFactory.build(
            name="Holiday Fund", target_amount=Decimal("3000.00"), current_amount=Decimal("500.00")
        )
        context = _context(income_account, goals=[goal])
        metrics = calculate_cash_flow_metrics(context)

        allocation = calculate_basic_allocation(context, metrics)
        summary = allocation.to_summary(metrics.monthly_income)

        assert [(g.goal_id, g.amount) for g in allocation.goal_allocations] == [
            (goal.id, Decimal("2500.00"))
        ]
        assert summary.total_allocated == Decimal("4000.00")
        assert summary.remaining_amount == Decimal("0.00")

    def test_goals_split_by_deficit_with_exact_sum(self, income_account):
        first = GoalSnapshotFactory.build(
            priority=1, target_amount=Decimal("3000.00"), current_amount=Decimal("500.00")
        )
        second = GoalSnapshotFactory.build(
            priority=2, target_amount=Decimal("1000.00"), current_amount=Decimal("500.00")
        )
        done = GoalSnapshotFactory.build(priority=0, is_completed=True)
        context = _context(income_account, goals=[second, done, first])

        allocation = calculate_basic_allocation(context, calculate_cash_flow_metrics(context))

        assert [(g.goal_id, g.amount) for g in allocation.goal_allocations] == [
            (first.id, Decimal("2083.33")),
            (second.id, Decimal("416.67")),
        ]
        assert allocation.goals_total == Decimal("2500.00")

    def test_rounding_residue_never_overfunds_a_small_goal(self, income_account):
        """
        GIVEN 2500 to spread over two 6250 deficits and a goal one cent short
        WHEN the floored shares leave two cents over
        THEN the small goal gets its cent, the rest moves up, and the sum stays exact
        """
        big_goals = [
            GoalSnapshotFactory.build(
                priority=p, target_amount=Decimal("6500.00"), current_amount=Decimal("250.00")
            )
            for p in (1, 2)
        ]
        nearly_done = GoalSnapshotFactory.build(
            priority=3, target_amount=Decimal("100.00"), current_amount=Decimal("99.99")
        )
        context = _context(income_account, goals=[*big_goals, nearly_done])

        allocation = calculate_basic_allocation(context, calculate_cash_flow_metrics(context))

        assert [g.amount for g in allocation.goal_allocations] == [
            Decimal("1249.99"),
            Decimal("1250.00"),
            Decimal("0.01"),
        ]
        assert allocation.goals_total == Decimal("2500.00")

    def test_no_goal_funding_without_surplus(self, income_account):
        goal = GoalSnapshotFactory.build()
        txns = monthly_series(
            income_account.id, Decimal("1000.00"), as_of=AS_OF, months=1, is_income=True
        ) + monthly_series(income_account.id, Decimal("-1500.00"), as_of=AS_OF, months=1)
        context = make_context(
            income_account.user_id,
            as_of=AS_OF,
            accounts=[income_account],
            transactions=txns,
            goals=[goal],
        )

        allocation = calculate_basic_allocation(context, calculate_cash_flow_metrics(context))

        assert allocation.excess_for_goals == Decimal("0.00")
        assert allocation.goal_allocations == []
