"""Intelligent transfer optimizer.

Builds candidate transfers from four angles (vaste lasten funding, emergency
buffer, goal funding and liquidity optimisation), scores them by expected
impact and returns them ranked.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from transfer_engine.logger import get_logger, log_timing
from transfer_engine.models.account import AccountRole
from transfer_engine.models.preference import AllocationType
from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationType,
    Urgency,
)
from transfer_engine.schemas.context import AccountSnapshot, GoalSnapshot, RecommendationContext
from transfer_engine.schemas.recommendation import (
    AdvisoryRecommendation,
    ExpectedImpact,
    Recommendation,
    TransferRecommendation,
)
from transfer_engine.services.allocation import emergency_goal, monthly_expense_average
from transfer_engine.services.destination import resolve_destination, safe_goal_pattern
from transfer_engine.services.fixed_expenses import (
    FixedExpenseAnalyzer,
    VasteLastenPrediction,
    clamp_unit,
)
from transfer_engine.utils.money import ZERO, multiply_money, round_money, subtract_money

logger = get_logger(__name__)

TYPE_WEIGHTS = {
    RecommendationType.VASTE_LASTEN: 10,
    RecommendationType.EMERGENCY_BUFFER: 8,
    RecommendationType.GOAL_FUNDING: 6,
    RecommendationType.OPTIMIZATION: 4,
}
URGENCY_RANK = {Urgency.IMMEDIATE: 3, Urgency.WEEKLY: 2, Urgency.MONTHLY: 1}
PRIORITY_RANK = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}

# Goal-name keywords and the priority boost they earn
GOAL_NAME_WEIGHTS: tuple[tuple[tuple[str, ...], float], ...] = (
    (("emergency",), 0.4),
    (("house", "home"), 0.3),
    (("retirement", "pension"), 0.2),
    (("vacation", "holiday"), 0.1),
)

_VASTE_LASTEN_NAME = re.compile(r"vaste\s*lasten", re.IGNORECASE)


@dataclass(frozen=True)
class OptimizerConfig:
    goal_reserve: Decimal = Decimal("1000.00")
    goal_min_remaining: Decimal = Decimal("100.00")
    goal_share_of_remaining: Decimal = Decimal("0.30")
    goal_transfer_cap: Decimal = Decimal("1000.00")
    goal_min_transfer: Decimal = Decimal("50.00")
    goal_top_n: int = 3
    seasonal_threshold: Decimal = Decimal("50.00")
    vl_buffer_gap_threshold: Decimal = Decimal("100.00")
    vl_buffer_transfer_cap: Decimal = Decimal("500.00")
    emergency_months_target: int = 3
    emergency_min_gap: Decimal = Decimal("100.00")
    emergency_monthly_share: Decimal = Decimal("0.5")
    optimal_checking_multiple: Decimal = Decimal("1.5")
    excess_threshold: Decimal = Decimal("200.00")
    excess_share: Decimal = Decimal("0.8")
    low_liquidity_ratio: Decimal = Decimal("0.7")
    savings_floor: Decimal = Decimal("1000.00")
    replenish_share: Decimal = Decimal("0.3")


DEFAULT_CONFIG = OptimizerConfig()


@dataclass
class OptimizerResult:
    recommendations: list[Recommendation] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    prediction: VasteLastenPrediction | None = None


def recommendation_score(recommendation: Recommendation) -> float:
    impact = recommendation.expected_impact or ExpectedImpact()
    impact_score = (
        10 * impact.savings_rate + 5 * impact.risk_reduction - 3 * impact.opportunity_cost
    ) * recommendation.confidence
    amount_bonus = min(float(recommendation.amount) / 1000, 2.0)
    return impact_score + TYPE_WEIGHTS[recommendation.recommendation_type] + amount_bonus


def rank_recommendations(recommendations: Iterable[Recommendation]) -> list[Recommendation]:
    """Urgency first, then priority, then score; ties keep input order."""
    return sorted(
        recommendations,
        key=lambda r: (
            -URGENCY_RANK[r.urgency],
            -PRIORITY_RANK[r.priority],
            -recommendation_score(r),
        ),
    )


def goal_priority_score(
    goal: GoalSnapshot,
    context: RecommendationContext,
    today: date,
) -> float:
    score = 0.0
    if goal.target_date is not None:
        days_left = (goal.target_date - today).days
        if days_left <= 365:
            score += 0.3
        if days_left <= 180:
            score += 0.2
    if goal.target_amount > 0:
        progress = float(goal.current_amount / goal.target_amount)
        if progress > 0.8:
            score += 0.2
        elif progress > 0.5:
            score += 0.1

    name = goal.name.lower()
    for keywords, weight in GOAL_NAME_WEIGHTS:
        if any(keyword in name for keyword in keywords):
            score += weight

    for preference in context.active_preferences:
        if preference.allocation_type is not AllocationType.GOAL or not preference.goal_pattern:
            continue
        regex = safe_goal_pattern(preference.goal_pattern)
        if regex is not None and regex.search(goal.name):
            score += (5 - preference.priority) * 0.1
            break

    return clamp_unit(score)


def _priority_for_score(score: float) -> Priority:
    if score > 0.8:
        return Priority.HIGH
    if score > 0.5:
        return Priority.MEDIUM
    return Priority.LOW


class IntelligentTransferOptimizer:
    """Generates scored transfer candidates for one user's context."""

    def __init__(
        self,
        context: RecommendationContext,
        analyzer: FixedExpenseAnalyzer | None = None,
        config: OptimizerConfig = DEFAULT_CONFIG,
    ):
        self.context = context
        self.analyzer = analyzer or FixedExpenseAnalyzer()
        self.config = config
        self.source = context.first_with_role(AccountRole.CHECKING, AccountRole.INCOME)

    def generate(self) -> OptimizerResult:
        result = OptimizerResult()
        if self.source is None:
            result.insights.append("No checking or income account to fund transfers from")
            return result

        with log_timing("optimizer.generate", logger=logger, level="debug") as timing:
            self._vaste_lasten(result)
            funded_emergency = self._emergency_buffer(result)
            self._goal_funding(result, skip_goal=funded_emergency)
            self._liquidity(result)
            result.recommendations = rank_recommendations(result.recommendations)
            timing["candidates"] = len(result.recommendations)
        return result

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def _transfer(
        self,
        from_account: AccountSnapshot,
        to_account_id: UUID,
        amount: Decimal,
        purpose: str,
        recommendation_type: RecommendationType,
        priority: Priority,
        urgency: Urgency,
        confidence: float,
        impact: tuple[float, float, float],
        goal_id: UUID | None = None,
    ) -> TransferRecommendation:
        savings_rate, risk_reduction, opportunity_cost = impact
        return TransferRecommendation(
            from_account_id=from_account.id,
            to_account_id=to_account_id,
            amount=round_money(amount),
            purpose=purpose,
            priority=priority,
            urgency=urgency,
            confidence=clamp_unit(confidence),
            recommendation_type=recommendation_type,
            goal_id=goal_id,
            expected_impact=ExpectedImpact(
                savings_rate=savings_rate,
                risk_reduction=risk_reduction,
                opportunity_cost=opportunity_cost,
            ),
        )

    def _advisory(
        self,
        tag: AdvisoryTag,
        amount: Decimal,
        purpose: str,
        recommendation_type: RecommendationType,
        priority: Priority,
        confidence: float,
        goal_id: UUID | None = None,
    ) -> AdvisoryRecommendation:
        return AdvisoryRecommendation(
            from_account_id=self.source.id,
            to_account_id=self.source.id,
            amount=round_money(amount),
            purpose=purpose,
            priority=priority,
            urgency=Urgency.MONTHLY,
            confidence=clamp_unit(confidence),
            recommendation_type=recommendation_type,
            goal_id=goal_id,
            advisory_tag=tag,
        )

    # ------------------------------------------------------------------
    # Candidate generators
    # ------------------------------------------------------------------

    def _vaste_lasten_account(self) -> AccountSnapshot | None:
        account = self.context.first_with_role(AccountRole.VASTE_LASTEN)
        if account is not None:
            return account
        return next(
            (
                a
                for a in self.context.accounts
                if _VASTE_LASTEN_NAME.search(f"{a.name} {a.custom_name or ''}")
            ),
            None,
        )

    def _vaste_lasten(self, result: OptimizerResult) -> None:
        patterns = self.analyzer.analyze(self.context.transactions, self.context.categories)
        prediction = self.analyzer.predict_vaste_lasten(patterns, self.context.as_of)
        result.prediction = prediction
        for anomaly in self.analyzer.detect_anomalies(
            self.context.transactions, patterns, self.context.as_of
        ):
            if anomaly.severity == "high":
                result.insights.append(anomaly.message)

        account = self._vaste_lasten_account()
        if account is None or account.id == self.source.id or prediction.patterns_used == 0:
            return

        month_label = prediction.target_month.strftime("%B %Y")
        shortfall = subtract_money(prediction.monthly_requirement, account.balance)
        if shortfall > 0:
            result.recommendations.append(
                self._transfer(
                    self.source,
                    account.id,
                    shortfall,
                    f"Fund fixed expenses for {month_label}",
                    RecommendationType.VASTE_LASTEN,
                    Priority.HIGH,
                    Urgency.WEEKLY,
                    prediction.confidence,
                    (0.02, 0.8, 0.01),
                )
            )

        adjustment = prediction.seasonal_adjustment
        if adjustment > self.config.seasonal_threshold:
            result.recommendations.append(
                self._transfer(
                    self.source,
                    account.id,
                    adjustment,
                    f"Seasonal top-up for higher expenses in {month_label}",
                    RecommendationType.VASTE_LASTEN,
                    Priority.MEDIUM,
                    Urgency.MONTHLY,
                    prediction.confidence * 0.8,
                    (0.01, 0.6, 0.02),
                )
            )
        elif adjustment < -self.config.seasonal_threshold:
            release = min(-adjustment, max(ZERO, account.balance - prediction.total_requirement))
            if release > 0:
                result.recommendations.append(
                    self._transfer(
                        account,
                        self.source.id,
                        release,
                        f"Release seasonal surplus for lower expenses in {month_label}",
                        RecommendationType.VASTE_LASTEN,
                        Priority.MEDIUM,
                        Urgency.MONTHLY,
                        prediction.confidence * 0.8,
                        (0.01, 0.0, -0.01),
                    )
                )

        buffer_gap = prediction.recommended_buffer - account.balance
        if buffer_gap > self.config.vl_buffer_gap_threshold:
            result.recommendations.append(
                self._transfer(
                    self.source,
                    account.id,
                    min(buffer_gap, self.config.vl_buffer_transfer_cap),
                    "Build fixed-expense buffer",
                    RecommendationType.EMERGENCY_BUFFER,
                    Priority.MEDIUM,
                    Urgency.MONTHLY,
                    0.9,
                    (0.005, 0.7, 0.02),
                )
            )

    def _emergency_buffer(self, result: OptimizerResult) -> UUID | None:
        goal = emergency_goal(self.context.goals)
        if goal is None or not goal.is_fundable:
            return None

        monthly_expenses = monthly_expense_average(self.context, months=3)
        target_cover = monthly_expenses * self.config.emergency_months_target
        gap = goal.remaining
        if goal.current_amount >= target_cover or gap <= self.config.emergency_min_gap:
            return None
        amount = min(gap, multiply_money(monthly_expenses, self.config.emergency_monthly_share))
        if amount <= 0:
            return None

        destination = resolve_destination(
            AllocationType.EMERGENCY,
            self.context.accounts,
            self.context.goals,
            self.context.preferences,
        )
        linked = self.context.account(goal.linked_account_id)
        to_account_id = linked.id if linked is not None else (
            destination.account_id if destination is not None else None
        )
        if to_account_id is None or to_account_id == self.source.id:
            result.recommendations.append(
                self._advisory(
                    AdvisoryTag.ESTABLISH_EMERGENCY_FUND,
                    amount,
                    f"Establish an emergency fund account for {goal.name}",
                    RecommendationType.EMERGENCY_BUFFER,
                    Priority.HIGH,
                    0.95,
                    goal_id=goal.id,
                )
            )
        else:
            result.recommendations.append(
                self._transfer(
                    self.source,
                    to_account_id,
                    amount,
                    f"Build emergency buffer: {goal.name}",
                    RecommendationType.EMERGENCY_BUFFER,
                    Priority.HIGH,
                    Urgency.MONTHLY,
                    0.95,
                    (0.03, 0.9, 0.01),
                    goal_id=goal.id,
                )
            )
        return goal.id

    def _goal_funding(self, result: OptimizerResult, skip_goal: UUID | None) -> None:
        today = self.context.as_of
        scored = sorted(
            (
                (goal_priority_score(goal, self.context, today), goal)
                for goal in self.context.goals
                if goal.is_fundable and goal.id != skip_goal
            ),
            key=lambda pair: pair[0],
            reverse=True,
        )[: self.config.goal_top_n]

        remaining = max(ZERO, self.source.balance - self.config.goal_reserve)
        for score, goal in scored:
            if remaining <= self.config.goal_min_remaining:
                break
            amount = min(
                goal.remaining,
                multiply_money(remaining, self.config.goal_share_of_remaining),
                self.config.goal_transfer_cap,
            )
            if amount < self.config.goal_min_transfer:
                continue
            remaining -= amount
            priority = _priority_for_score(score)

            destination = resolve_destination(
                AllocationType.GOAL,
                self.context.accounts,
                self.context.goals,
                self.context.preferences,
                goal_id=goal.id,
            )
            if destination is None or destination.account_id == self.source.id:
                result.recommendations.append(
                    self._advisory(
                        AdvisoryTag.LINK_GOAL_ACCOUNT,
                        amount,
                        f"Link a savings account to goal: {goal.name}",
                        RecommendationType.GOAL_FUNDING,
                        priority,
                        0.85,
                        goal_id=goal.id,
                    )
                )
                continue
            result.recommendations.append(
                self._transfer(
                    self.source,
                    destination.account_id,
                    amount,
                    f"Progress towards {goal.name}",
                    RecommendationType.GOAL_FUNDING,
                    priority,
                    Urgency.MONTHLY,
                    0.85,
                    (0.02, 0.3, 0.03),
                    goal_id=goal.id,
                )
            )

    def _liquidity(self, result: OptimizerResult) -> None:
        savings = self.context.first_with_role(AccountRole.SAVINGS)
        if savings is None or savings.id == self.source.id:
            return
        optimal = multiply_money(
            monthly_expense_average(self.context, months=3),
            self.config.optimal_checking_multiple,
        )
        if optimal <= 0:
            return

        excess = self.source.balance - optimal
        if excess > self.config.excess_threshold:
            result.recommendations.append(
                self._transfer(
                    self.source,
                    savings.id,
                    multiply_money(excess, self.config.excess_share),
                    "Move excess checking balance to savings",
                    RecommendationType.OPTIMIZATION,
                    Priority.LOW,
                    Urgency.MONTHLY,
                    0.9,
                    (0.005, 0.1, -0.02),
                )
            )
        elif (
            self.source.balance < optimal * self.config.low_liquidity_ratio
            and savings.balance > self.config.savings_floor
        ):
            amount = min(
                optimal - self.source.balance,
                multiply_money(savings.balance, self.config.replenish_share),
            )
            if amount > 0:
                result.recommendations.append(
                    self._transfer(
                        savings,
                        self.source.id,
                        amount,
                        "Replenish checking for upcoming spending",
                        RecommendationType.OPTIMIZATION,
                        Priority.MEDIUM,
                        Urgency.WEEKLY,
                        0.85,
                        (-0.002, 0.4, 0.01),
                    )
                )
