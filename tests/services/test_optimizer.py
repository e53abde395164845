"""Tests for the intelligent transfer optimizer."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from tests.factories import (
    AccountSnapshotFactory,
    GoalSnapshotFactory,
    PreferenceSnapshotFactory,
    make_context,
    monthly_series,
)
from transfer_engine.models import AccountRole, AllocationType
from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationType,
    Urgency,
)
from transfer_engine.schemas.recommendation import (
    AdvisoryRecommendation,
    ExpectedImpact,
    TransferRecommendation,
)
from transfer_engine.services.fixed_expenses import (
    FixedExpenseAnalyzer,
    FixedExpenseAnomaly,
    VasteLastenPrediction,
)
from transfer_engine.services.optimizer import (
    IntelligentTransferOptimizer,
    goal_priority_score,
    rank_recommendations,
)

AS_OF = date(2026, 6, 15)
JULY = date(2026, 7, 1)


def _prediction(
    monthly: str = "0.00",
    seasonal: str = "0.00",
    total: str | None = None,
    buffer: str = "0.00",
    patterns_used: int = 0,
) -> VasteLastenPrediction:
    return VasteLastenPrediction(
        target_month=JULY,
        monthly_requirement=Decimal(monthly),
        seasonal_adjustment=Decimal(seasonal),
        total_requirement=Decimal(total if total is not None else monthly),
        recommended_buffer=Decimal(buffer),
        confidence=0.9,
        patterns_used=patterns_used,
    )


class StubAnalyzer(FixedExpenseAnalyzer):
    """Analyzer returning a fixed forecast so optimizer rules can be tested alone."""

    def __init__(self, prediction=None, anomalies=()):
        super().__init__(extra_keywords=())
        self.prediction = prediction or _prediction()
        self.anomalies = list(anomalies)

    def analyze(self, transactions, categories=()):
        return []

    def detect_anomalies(self, transactions, patterns, as_of):
        return self.anomalies

    def predict_vaste_lasten(self, patterns, as_of, target_month=None, months_ahead=None):
        return self.prediction


@pytest.fixture
def checking():
    return AccountSnapshotFactory.build(
        name="Betaalrekening", role=AccountRole.CHECKING, balance=Decimal("5000.00")
    )


def _optimizer(checking, *, accounts=(), goals=(), transactions=(), preferences=(), analyzer=None):
    context = make_context(
        checking.user_id,
        as_of=AS_OF,
        accounts=[checking, *accounts],
        goals=goals,
        transactions=transactions,
        preferences=preferences,
    )
    return IntelligentTransferOptimizer(context, analyzer=analyzer or StubAnalyzer())


def _transfer(urgency, priority, amount="100.00", rtype=RecommendationType.OPTIMIZATION):
    return TransferRecommendation(
        from_account_id=uuid4(),
        to_account_id=uuid4(),
        amount=Decimal(amount),
        purpose="test",
        priority=priority,
        urgency=urgency,
        confidence=0.9,
        recommendation_type=rtype,
        expected_impact=ExpectedImpact(),
    )


class TestRanking:
    def test_urgency_then_priority_then_score(self):
        monthly_high = _transfer(Urgency.MONTHLY, Priority.HIGH)
        weekly_low = _transfer(Urgency.WEEKLY, Priority.LOW)
        monthly_high_goal = _transfer(
            Urgency.MONTHLY, Priority.HIGH, rtype=RecommendationType.GOAL_FUNDING
        )
        immediate = _transfer(Urgency.IMMEDIATE, Priority.LOW)

        ranked = rank_recommendations([monthly_high, weekly_low, monthly_high_goal, immediate])

        assert ranked == [immediate, weekly_low, monthly_high_goal, monthly_high]

    def test_ties_keep_input_order(self):
        first = _transfer(Urgency.MONTHLY, Priority.LOW)
        second = _transfer(Urgency.MONTHLY, Priority.LOW)
        assert rank_recommendations([first, second]) == [first, second]


class TestGoalPriorityScore:
    def test_near_deadline_well_funded_home_goal_is_capped(self):
        goal = GoalSnapshotFactory.build(
            name="New home",
            target_amount=Decimal("1000.00"),
            current_amount=Decimal("850.00"),
            target_date=AS_OF + timedelta(days=100),
        )
        context = make_context(as_of=AS_OF, goals=[goal])
        assert goal_priority_score(goal, context, AS_OF) == 1.0

    def test_deadline_bonuses_accumulate(self):
        within_year = GoalSnapshotFactory.build(name="Car", target_date=AS_OF + timedelta(days=300))
        within_half_year = GoalSnapshotFactory.build(
            name="Car", target_date=AS_OF + timedelta(days=150)
        )
        context = make_context(as_of=AS_OF)
        assert goal_priority_score(within_year, context, AS_OF) == pytest.approx(0.3)
        assert goal_priority_score(within_half_year, context, AS_OF) == pytest.approx(0.5)

    def test_matching_goal_preference_adds_boost(self):
        goal = GoalSnapshotFactory.build(name="Summer holiday")
        pref = PreferenceSnapshotFactory.build(
            allocation_type=AllocationType.GOAL,
            priority=2,
            account_role=None,
            goal_pattern="holiday",
        )
        context = make_context(as_of=AS_OF, goals=[goal], preferences=[pref])
        assert goal_priority_score(goal, context, AS_OF) == pytest.approx(0.4)


class TestVasteLasten:
    def test_shortfall_and_buffer(self, checking):
        """
        GIVEN a vaste lasten account holding 300 against a 1100 requirement
        WHEN the optimizer runs
        THEN it tops up the shortfall weekly and builds the buffer capped at 500
        """
        vl_account = AccountSnapshotFactory.build(
            role=AccountRole.VASTE_LASTEN, balance=Decimal("300.00")
        )
        analyzer = StubAnalyzer(_prediction("1100.00", buffer="2750.00", patterns_used=2))

        result = _optimizer(checking, accounts=[vl_account], analyzer=analyzer).generate()

        summary = [
            (r.recommendation_type, r.amount, r.urgency, r.priority) for r in result.recommendations
        ]
        assert summary == [
            (RecommendationType.VASTE_LASTEN, Decimal("800.00"), Urgency.WEEKLY, Priority.HIGH),
            (
                RecommendationType.EMERGENCY_BUFFER,
                Decimal("500.00"),
                Urgency.MONTHLY,
                Priority.MEDIUM,
            ),
        ]
        assert all(r.to_account_id == vl_account.id for r in result.recommendations)
        assert result.recommendations[0].purpose == "Fund fixed expenses for July 2026"
        assert result.prediction is analyzer.prediction

    def test_account_found_by_name(self, checking):
        vl_account = AccountSnapshotFactory.build(
            name="Vaste Lasten rekening", role=None, balance=Decimal("0.00")
        )
        analyzer = StubAnalyzer(_prediction("100.00", patterns_used=1))

        result = _optimizer(checking, accounts=[vl_account], analyzer=analyzer).generate()

        assert [(r.to_account_id, r.amount) for r in result.recommendations] == [
            (vl_account.id, Decimal("100.00"))
        ]

    def test_seasonal_top_up(self, checking):
        vl_account = AccountSnapshotFactory.build(
            role=AccountRole.VASTE_LASTEN, balance=Decimal("5000.00")
        )
        analyzer = StubAnalyzer(
            _prediction("1000.00", seasonal="200.00", total="1200.00", patterns_used=1)
        )

        result = _optimizer(checking, accounts=[vl_account], analyzer=analyzer).generate()

        [rec] = result.recommendations
        assert rec.amount == Decimal("200.00")
        assert rec.purpose.startswith("Seasonal top-up")
        assert rec.confidence == pytest.approx(0.72)

    def test_negative_adjustment_releases_surplus(self, checking):
        """
        GIVEN a lighter month (-220) and a vaste lasten account holding 3000
        WHEN the optimizer runs
        THEN the surplus flows back from the vaste lasten account to checking
        """
        vl_account = AccountSnapshotFactory.build(
            role=AccountRole.VASTE_LASTEN, balance=Decimal("3000.00")
        )
        analyzer = StubAnalyzer(
            _prediction(
                "1100.00", seasonal="-220.00", total="880.00", buffer="2200.00", patterns_used=2
            )
        )

        result = _optimizer(checking, accounts=[vl_account], analyzer=analyzer).generate()

        [rec] = result.recommendations
        assert (rec.from_account_id, rec.to_account_id) == (vl_account.id, checking.id)
        assert rec.amount == Decimal("220.00")

    def test_no_patterns_no_vaste_lasten(self, checking):
        vl_account = AccountSnapshotFactory.build(role=AccountRole.VASTE_LASTEN)
        result = _optimizer(checking, accounts=[vl_account]).generate()
        assert result.recommendations == []

    def test_high_severity_anomalies_become_insights(self, checking):
        anomaly = FixedExpenseAnomaly(
            transaction_id=uuid4(),
            txn_date=AS_OF,
            merchant_key="energie",
            anomaly_type="amount_spike",
            severity="high",
            expected_amount=Decimal("100.00"),
            actual_amount=Decimal("170.00"),
            deviation=0.7,
            message="energie charged 70% more than usual",
        )
        low = FixedExpenseAnomaly(
            transaction_id=uuid4(),
            txn_date=AS_OF,
            merchant_key="water",
            anomaly_type="amount_spike",
            severity="low",
            expected_amount=Decimal("20.00"),
            actual_amount=Decimal("26.00"),
            deviation=0.3,
            message="water slightly higher",
        )

        result = _optimizer(checking, analyzer=StubAnalyzer(anomalies=[anomaly, low])).generate()

        assert result.insights == ["energie charged 70% more than usual"]


class TestEmergencyBuffer:
    @pytest.fixture
    def expenses(self, checking):
        return monthly_series(
            checking.id, Decimal("-1000.00"), as_of=AS_OF, months=3, merchant="Shop", day=20
        )

    def test_transfer_to_linked_account(self, checking, expenses):
        emergency = AccountSnapshotFactory.build(role=AccountRole.EMERGENCY)
        goal = GoalSnapshotFactory.build(
            name="Emergency fund",
            target_amount=Decimal("5000.00"),
            current_amount=Decimal("500.00"),
            linked_account_id=emergency.id,
        )
        checking = checking.model_copy(update={"balance": Decimal("1000.00")})

        result = _optimizer(
            checking, accounts=[emergency], goals=[goal], transactions=expenses
        ).generate()

        [rec] = result.recommendations
        assert isinstance(rec, TransferRecommendation)
        assert rec.to_account_id == emergency.id
        assert rec.amount == Decimal("500.00")
        assert rec.goal_id == goal.id
        assert rec.priority is Priority.HIGH

    def test_advisory_without_destination(self, checking, expenses):
        goal = GoalSnapshotFactory.build(
            name="Emergency fund", target_amount=Decimal("5000.00"), current_amount=Decimal("0.00")
        )
        checking = checking.model_copy(update={"balance": Decimal("1000.00")})

        result = _optimizer(checking, goals=[goal], transactions=expenses).generate()

        [rec] = result.recommendations
        assert isinstance(rec, AdvisoryRecommendation)
        assert rec.advisory_tag is AdvisoryTag.ESTABLISH_EMERGENCY_FUND
        assert rec.from_account_id == rec.to_account_id == checking.id

    def test_covered_buffer_skipped(self, checking, expenses):
        goal = GoalSnapshotFactory.build(
            name="Emergency fund",
            target_amount=Decimal("5000.00"),
            current_amount=Decimal("3500.00"),
        )
        checking = checking.model_copy(update={"balance": Decimal("1000.00")})
        result = _optimizer(checking, goals=[goal], transactions=expenses).generate()
        assert result.recommendations == []


class TestGoalFunding:
    def test_linked_goal_transfer_and_unlinked_advisory(self, checking):
        """
        GIVEN 5000 in checking, a linked holiday goal and an unlinked car goal
        WHEN the optimizer runs
        THEN the holiday goal gets a capped transfer and the car goal an advisory
        """
        goal_account = AccountSnapshotFactory.build(role=AccountRole.GOAL_SPECIFIC)
        holiday = GoalSnapshotFactory.build(
            name="Holiday Fund",
            target_amount=Decimal("3000.00"),
            current_amount=Decimal("500.00"),
            linked_account_id=goal_account.id,
        )
        car = GoalSnapshotFactory.build(name="Car", target_amount=Decimal("2000.00"))

        result = _optimizer(checking, accounts=[goal_account], goals=[car, holiday]).generate()

        transfer, advisory = result.recommendations
        assert isinstance(transfer, TransferRecommendation)
        assert transfer.to_account_id == goal_account.id
        assert transfer.amount == Decimal("1000.00")
        assert transfer.goal_id == holiday.id
        assert isinstance(advisory, AdvisoryRecommendation)
        assert advisory.advisory_tag is AdvisoryTag.LINK_GOAL_ACCOUNT
        assert advisory.amount == Decimal("900.00")
        assert advisory.goal_id == car.id

    def test_reserve_blocks_funding(self, checking):
        goal = GoalSnapshotFactory.build()
        checking = checking.model_copy(update={"balance": Decimal("1050.00")})
        result = _optimizer(checking, goals=[goal]).generate()
        assert result.recommendations == []


class TestLiquidity:
    @pytest.fixture
    def expenses(self, checking):
        return monthly_series(
            checking.id, Decimal("-1000.00"), as_of=AS_OF, months=3, merchant="Shop", day=20
        )

    def test_excess_checking_moves_to_savings(self, checking, expenses):
        savings = AccountSnapshotFactory.build(role=AccountRole.SAVINGS, balance=Decimal("2000.00"))

        result = _optimizer(checking, accounts=[savings], transactions=expenses).generate()

        [rec] = result.recommendations
        assert rec.to_account_id == savings.id
        assert rec.amount == Decimal("2800.00")
        assert rec.recommendation_type is RecommendationType.OPTIMIZATION

    def test_low_checking_replenished_from_savings(self, checking, expenses):
        savings = AccountSnapshotFactory.build(role=AccountRole.SAVINGS, balance=Decimal("5000.00"))
        checking = checking.model_copy(update={"balance": Decimal("500.00")})

        result = _optimizer(checking, accounts=[savings], transactions=expenses).generate()

        [rec] = result.recommendations
        assert (rec.from_account_id, rec.to_account_id) == (savings.id, checking.id)
        assert rec.amount == Decimal("1000.00")
        assert rec.urgency is Urgency.WEEKLY


def test_no_source_account():
    savings = AccountSnapshotFactory.build(role=AccountRole.SAVINGS)
    context = make_context(savings.user_id, as_of=AS_OF, accounts=[savings])

    result = IntelligentTransferOptimizer(context, analyzer=StubAnalyzer()).generate()

    assert result.recommendations == []
    assert result.insights == ["No checking or income account to fund transfers from"]
