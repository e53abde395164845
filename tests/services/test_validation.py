"""Tests for context and recommendation validation."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from tests.factories import (
    AccountSnapshotFactory,
    GoalSnapshotFactory,
    PreferenceSnapshotFactory,
    TransactionSnapshotFactory,
    make_context,
)
from transfer_engine.models import AccountRole
from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationType,
    Urgency,
)
from transfer_engine.schemas.recommendation import AdvisoryRecommendation, TransferRecommendation
from transfer_engine.services.validation import validate_context, validate_recommendation

AS_OF = date(2026, 6, 15)
MIN_AMOUNT = Decimal("10.00")


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def income(user_id):
    return AccountSnapshotFactory.build(
        user_id=user_id, role=AccountRole.INCOME, balance=Decimal("2000.00")
    )


@pytest.fixture
def savings(user_id):
    return AccountSnapshotFactory.build(user_id=user_id, role=AccountRole.SAVINGS)


def _full_context(user_id, income, savings, **overrides):
    data = {
        "accounts": [income, savings],
        "transactions": [
            TransactionSnapshotFactory.build(account_id=income.id, txn_date=AS_OF)
        ],
        "goals": [GoalSnapshotFactory.build(user_id=user_id)],
        "preferences": [PreferenceSnapshotFactory.build()],
    }
    data.update(overrides)
    return make_context(user_id, as_of=AS_OF, **data)


class TestValidateContext:
    def test_clean_context(self, user_id, income, savings):
        result = validate_context(_full_context(user_id, income, savings))
        assert result.is_valid
        assert result.warnings == []

    def test_no_accounts_is_an_error(self, user_id):
        result = validate_context(make_context(user_id, as_of=AS_OF))
        assert result.errors == ["No accounts found for user"]

    def test_foreign_goal_and_orphan_transactions(self, user_id, income, savings):
        """
        GIVEN a goal owned by another user and a transaction on an unknown account
        WHEN validating
        THEN both are reported as errors
        """
        context = _full_context(
            user_id,
            income,
            savings,
            goals=[GoalSnapshotFactory.build(name="Other", user_id=uuid4())],
            transactions=[TransactionSnapshotFactory.build(account_id=uuid4(), txn_date=AS_OF)],
        )

        result = validate_context(context)

        assert not result.is_valid
        assert "Goal Other does not belong to user" in result.errors
        assert "1 transactions reference unknown accounts" in result.errors

    def test_goal_amount_errors(self, user_id, income, savings):
        bad = GoalSnapshotFactory.build(
            name="Bad",
            user_id=user_id,
            target_amount=Decimal("0.00"),
            current_amount=Decimal("-5.00"),
            linked_account_id=uuid4(),
        )
        result = validate_context(_full_context(user_id, income, savings, goals=[bad]))
        assert result.errors == [
            "Goal Bad has a non-positive target amount",
            "Goal Bad has a negative current amount",
            "Goal Bad is linked to an unknown account",
        ]

    def test_warnings_do_not_invalidate(self, user_id, savings):
        overdrawn = AccountSnapshotFactory.build(
            user_id=user_id, name="Main", role=AccountRole.CHECKING, balance=Decimal("-20.00")
        )
        late_goal = GoalSnapshotFactory.build(
            name="Late",
            user_id=user_id,
            target_date=AS_OF - timedelta(days=1),
            priority=42,
        )
        future_txn = TransactionSnapshotFactory.build(
            account_id=overdrawn.id, txn_date=AS_OF + timedelta(days=3)
        )
        context = make_context(
            user_id,
            as_of=AS_OF,
            accounts=[overdrawn, savings],
            goals=[late_goal],
            transactions=[future_txn],
        )

        result = validate_context(context)

        assert result.is_valid
        assert result.warnings == [
            "Account Main has a negative balance (-20.00)",
            "No income account configured; using the first account as source",
            "Goal Late is past its target date",
            "Goal Late has an unusual priority (42)",
            "1 transactions are dated in the future",
            "No transfer preferences configured; using defaults",
        ]

    def test_foreign_currency_account_warns(self, user_id, income):
        usd = AccountSnapshotFactory.build(user_id=user_id, name="Wise USD", currency="USD")
        result = validate_context(_full_context(user_id, income, usd, accounts=[income, usd]))
        assert result.is_valid
        assert result.warnings == ["Account Wise USD is in USD; amounts are treated as EUR"]

    def test_preference_problems(self, user_id, income, savings):
        prefs = [
            PreferenceSnapshotFactory.build(account_role=None, account_id=uuid4(), priority=1),
            PreferenceSnapshotFactory.build(account_role=None, priority=2),
            PreferenceSnapshotFactory.build(account_role=None, goal_pattern="(a+)+", priority=3),
        ]

        result = validate_context(_full_context(user_id, income, savings, preferences=prefs))

        assert result.errors == ["Transfer buffer preference #1 references an unknown account"]
        assert result.warnings == [
            "Transfer buffer preference #2 should set exactly one selector",
            "Transfer buffer preference #3 has an invalid goal pattern; ignored",
        ]


class TestValidateRecommendation:
    @pytest.fixture
    def context(self, user_id, income, savings):
        return _full_context(user_id, income, savings)

    def _transfer(self, income, savings, amount="100.00", **kwargs):
        return TransferRecommendation(
            from_account_id=income.id,
            to_account_id=savings.id,
            amount=Decimal(amount),
            purpose="Top up savings",
            priority=Priority.MEDIUM,
            urgency=Urgency.MONTHLY,
            confidence=0.8,
            recommendation_type=RecommendationType.OPTIMIZATION,
            **kwargs,
        )

    def test_valid_transfer(self, context, income, savings):
        assert validate_recommendation(self._transfer(income, savings), context, MIN_AMOUNT) == []

    def test_below_minimum(self, context, income, savings):
        rec = self._transfer(income, savings, amount="5.00")
        assert validate_recommendation(rec, context, MIN_AMOUNT) == [
            "Amount 5.00 below minimum 10.00"
        ]

    def test_insufficient_funds(self, context, income, savings):
        rec = self._transfer(income, savings, amount="2500.00")
        [reason] = validate_recommendation(rec, context, MIN_AMOUNT)
        assert reason.startswith("Insufficient funds")

    def test_unknown_accounts_and_goal(self, context, income):
        rec = TransferRecommendation(
            from_account_id=uuid4(),
            to_account_id=income.id,
            amount=Decimal("50.00"),
            purpose="x",
            priority=Priority.LOW,
            urgency=Urgency.MONTHLY,
            confidence=0.5,
            recommendation_type=RecommendationType.GOAL_FUNDING,
            goal_id=uuid4(),
        )
        assert validate_recommendation(rec, context, MIN_AMOUNT) == [
            "Source account not found",
            "Goal not found",
        ]

    def test_completed_goal_rejected(self, user_id, income, savings):
        goal = GoalSnapshotFactory.build(user_id=user_id, is_completed=True)
        context = _full_context(user_id, income, savings, goals=[goal])
        rec = self._transfer(income, savings, goal_id=goal.id)
        assert validate_recommendation(rec, context, MIN_AMOUNT) == ["Goal is already completed"]

    def test_advisory_skips_funds_check(self, context, income):
        """
        GIVEN an advisory larger than the source balance
        WHEN validating
        THEN it passes because no money moves
        """
        rec = AdvisoryRecommendation(
            from_account_id=income.id,
            to_account_id=income.id,
            amount=Decimal("9000.00"),
            purpose="Establish an emergency fund account",
            priority=Priority.HIGH,
            urgency=Urgency.MONTHLY,
            confidence=0.95,
            recommendation_type=RecommendationType.EMERGENCY_BUFFER,
            advisory_tag=AdvisoryTag.ESTABLISH_EMERGENCY_FUND,
        )
        assert validate_recommendation(rec, context, MIN_AMOUNT) == []

    def test_advisory_must_point_at_source(self, context, income, savings):
        rec = AdvisoryRecommendation(
            from_account_id=income.id,
            to_account_id=savings.id,
            amount=Decimal("100.00"),
            purpose="Link a savings account",
            priority=Priority.LOW,
            urgency=Urgency.MONTHLY,
            confidence=0.85,
            recommendation_type=RecommendationType.GOAL_FUNDING,
            advisory_tag=AdvisoryTag.LINK_GOAL_ACCOUNT,
        )
        assert validate_recommendation(rec, context, MIN_AMOUNT) == [
            "Advisory must reference its source account on both sides"
        ]
