"""Unified transfer recommendation engine.

One call runs the whole pipeline for a user while holding that user's lease:

    load context -> validate -> assess data quality -> select strategy
    -> generate candidates -> validate, rank, cap -> persist -> respond

Generation problems degrade to the conservative fallback strategy instead of
failing the request. Only boundary errors (unknown user, busy user, invalid
request) are raised to the caller.
"""

import asyncio
import statistics
import time
from collections import defaultdict
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transfer_engine.config import settings
from transfer_engine.database import get_session_maker
from transfer_engine.logger import bound_run_context, get_logger, log_exception
from transfer_engine.models.account import AccountRole
from transfer_engine.models.preference import AllocationType
from transfer_engine.models.recommendation import (
    AdvisoryTag,
    Priority,
    RecommendationType,
    Urgency,
)
from transfer_engine.schemas.context import AccountSnapshot, RecommendationContext
from transfer_engine.schemas.recommendation import (
    AdvisoryRecommendation,
    AllocationSummary,
    DataQuality,
    GoalAllocation,
    Recommendation,
    RecommendationMetadata,
    RecommendationRequest,
    RecommendationResponse,
    RecommendationSummary,
    Strategy,
    TransferRecommendation,
)
from transfer_engine.services.allocation import (
    calculate_basic_allocation,
    calculate_cash_flow_metrics,
)
from transfer_engine.services.destination import ResolutionConfidence, resolve_destination
from transfer_engine.services.optimizer import IntelligentTransferOptimizer, rank_recommendations
from transfer_engine.services.recommendation_store import RecommendationStore
from transfer_engine.services.validation import validate_context, validate_recommendation
from transfer_engine.utils.concurrency import UserLeaseTable, user_leases
from transfer_engine.utils.exceptions import UnknownUserError
from transfer_engine.utils.money import ZERO, percentage_of, sum_money
from transfer_engine.utils.recovery import (
    CircuitBreaker,
    RetryPolicy,
    call_with_recovery,
    classify_error,
    store_circuit_breaker,
)

logger = get_logger(__name__)

FALLBACK_MAX_TRANSFER = Decimal("100.00")
FALLBACK_BALANCE_SHARE_PCT = Decimal("10")

# (minimum count, points) tiers per data source, first match wins
# Generation threads cannot be cancelled; a timed-out run keeps its worker until
# it finishes, so the pool bounds how many abandoned runs can pile up
_generation_executor = ThreadPoolExecutor(
    max_workers=settings.generation_max_workers,
    thread_name_prefix="recommendation-generation",
)

_ACCOUNT_TIERS = ((3, 25), (2, 15), (1, 10))
_TRANSACTION_TIERS = ((100, 25), (50, 20), (20, 15), (5, 10))
_GOAL_TIERS = ((3, 25), (2, 15), (1, 10))
_PREFERENCE_POINTS = 25


@dataclass
class StrategyOutcome:
    recommendations: list[Recommendation] = field(default_factory=list)
    # None means "derive from the final recommendation list"
    allocation: AllocationSummary | None = None
    insights: list[str] = field(default_factory=list)


def _tier_points(count: int, tiers: Sequence[tuple[int, int]]) -> int:
    for minimum, points in tiers:
        if count >= minimum:
            return points
    return 0


def data_quality_score(context: RecommendationContext) -> int:
    score = _tier_points(len(context.accounts), _ACCOUNT_TIERS)
    score += _tier_points(len(context.transactions), _TRANSACTION_TIERS)
    score += _tier_points(len(context.goals), _GOAL_TIERS)
    if context.active_preferences:
        score += _PREFERENCE_POINTS
    return score


def assess_data_quality(context: RecommendationContext) -> DataQuality:
    score = data_quality_score(context)
    if score >= 80:
        return DataQuality.EXCELLENT
    if score >= 60:
        return DataQuality.GOOD
    if score >= 40:
        return DataQuality.FAIR
    return DataQuality.POOR


def select_strategy(request: RecommendationRequest, quality: DataQuality) -> Strategy:
    if request.include_intelligent_recommendations and quality is not DataQuality.POOR:
        return Strategy.INTELLIGENT
    if quality in (DataQuality.GOOD, DataQuality.EXCELLENT):
        return Strategy.BASIC
    return Strategy.FALLBACK


def main_account(context: RecommendationContext) -> AccountSnapshot | None:
    """Income account, or the first account when none is marked as income."""
    return context.first_with_role(AccountRole.INCOME) or (
        context.accounts[0] if context.accounts else None
    )


def allocation_from_recommendations(recommendations: Sequence[Recommendation]) -> AllocationSummary:
    """Summarise optimizer output in allocation terms; advisories move no money."""
    transfers = [r for r in recommendations if isinstance(r, TransferRecommendation)]
    per_goal: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    for transfer in transfers:
        if transfer.recommendation_type is RecommendationType.GOAL_FUNDING and transfer.goal_id:
            per_goal[transfer.goal_id] += transfer.amount

    def total_of(kind: RecommendationType) -> Decimal:
        return sum_money(t.amount for t in transfers if t.recommendation_type is kind)

    goal_allocations = [
        GoalAllocation(goal_id=gid, amount=amount) for gid, amount in per_goal.items()
    ]
    return AllocationSummary(
        essential_expenses=total_of(RecommendationType.VASTE_LASTEN),
        buffer_allocation=total_of(RecommendationType.EMERGENCY_BUFFER),
        excess_for_goals=sum_money(per_goal.values()),
        goal_allocations=goal_allocations,
        total_allocated=sum_money(t.amount for t in transfers),
    )


def summarize(recommendations: Sequence[Recommendation]) -> RecommendationSummary:
    transfers = [r for r in recommendations if isinstance(r, TransferRecommendation)]
    by_priority = defaultdict(int)
    for recommendation in recommendations:
        by_priority[recommendation.priority] += 1
    return RecommendationSummary(
        total_recommended=sum_money(t.amount for t in transfers),
        number_of_transfers=len(transfers),
        number_of_advisories=len(recommendations) - len(transfers),
        high_priority_count=by_priority[Priority.HIGH],
        medium_priority_count=by_priority[Priority.MEDIUM],
        low_priority_count=by_priority[Priority.LOW],
        average_confidence=(
            statistics.fmean(r.confidence for r in recommendations) if recommendations else 0.0
        ),
        total_potential_impact=sum(
            r.expected_impact.savings_rate for r in recommendations if r.expected_impact
        ),
    )


def _advisory(
    source: AccountSnapshot,
    tag: AdvisoryTag,
    amount: Decimal,
    purpose: str,
    recommendation_type: RecommendationType,
    priority: Priority,
    confidence: float,
    goal_id: UUID | None = None,
) -> AdvisoryRecommendation:
    return AdvisoryRecommendation(
        from_account_id=source.id,
        to_account_id=source.id,
        amount=amount,
        purpose=purpose,
        priority=priority,
        urgency=Urgency.MONTHLY,
        confidence=confidence,
        recommendation_type=recommendation_type,
        goal_id=goal_id,
        advisory_tag=tag,
    )


# =============================================================================
# Strategies (synchronous, run in a worker thread)
# =============================================================================


def generate_intelligent(context: RecommendationContext) -> StrategyOutcome:
    result = IntelligentTransferOptimizer(context).generate()
    return StrategyOutcome(recommendations=result.recommendations, insights=result.insights)


def generate_basic(context: RecommendationContext) -> StrategyOutcome:
    """Turn the rule-based monthly allocation into transfers."""
    metrics = calculate_cash_flow_metrics(context)
    allocation = calculate_basic_allocation(context, metrics)
    outcome = StrategyOutcome(allocation=allocation.to_summary(metrics.monthly_income))
    source = main_account(context)
    if source is None:
        return outcome

    if allocation.buffer_allocation > 0:
        destination = resolve_destination(
            AllocationType.BUFFER, context.accounts, context.goals, context.preferences
        )
        if destination is not None and destination.account_id != source.id:
            outcome.recommendations.append(
                TransferRecommendation(
                    from_account_id=source.id,
                    to_account_id=destination.account_id,
                    amount=allocation.buffer_allocation,
                    purpose=destination.purpose,
                    priority=Priority.HIGH,
                    urgency=Urgency.WEEKLY,
                    confidence=0.9 if destination.confidence is ResolutionConfidence.HIGH else 0.7,
                    recommendation_type=RecommendationType.EMERGENCY_BUFFER,
                )
            )
        else:
            outcome.recommendations.append(
                _advisory(
                    source,
                    AdvisoryTag.ESTABLISH_EMERGENCY_FUND,
                    allocation.buffer_allocation,
                    "Establish an emergency fund account to hold your buffer",
                    RecommendationType.EMERGENCY_BUFFER,
                    Priority.HIGH,
                    0.7,
                )
            )

    for goal_allocation in allocation.goal_allocations:
        goal = context.goal(goal_allocation.goal_id)
        goal_label = goal.name if goal else str(goal_allocation.goal_id)
        destination = resolve_destination(
            AllocationType.GOAL,
            context.accounts,
            context.goals,
            context.preferences,
            goal_id=goal_allocation.goal_id,
        )
        if destination is not None and destination.account_id != source.id:
            outcome.recommendations.append(
                TransferRecommendation(
                    from_account_id=source.id,
                    to_account_id=destination.account_id,
                    amount=goal_allocation.amount,
                    purpose=destination.purpose,
                    priority=Priority.MEDIUM,
                    urgency=Urgency.MONTHLY,
                    confidence=0.8 if destination.confidence is ResolutionConfidence.HIGH else 0.6,
                    recommendation_type=RecommendationType.GOAL_FUNDING,
                    goal_id=goal_allocation.goal_id,
                )
            )
        else:
            outcome.recommendations.append(
                _advisory(
                    source,
                    AdvisoryTag.LINK_GOAL_ACCOUNT,
                    goal_allocation.amount,
                    f"Link a savings account to goal: {goal_label}",
                    RecommendationType.GOAL_FUNDING,
                    Priority.MEDIUM,
                    0.6,
                    goal_id=goal_allocation.goal_id,
                )
            )
    return outcome


def generate_fallback(context: RecommendationContext, min_amount: Decimal) -> StrategyOutcome:
    """At most one conservative recommendation, using only account balances."""
    metrics = calculate_cash_flow_metrics(context)
    allocation = calculate_basic_allocation(context, metrics)
    outcome = StrategyOutcome(
        allocation=allocation.to_summary(metrics.monthly_income),
        insights=["Limited data available; showing conservative fallback recommendations"],
    )
    source = main_account(context)
    if source is None:
        return outcome

    emergency = context.first_with_role(AccountRole.EMERGENCY)
    if emergency is not None and emergency.id != source.id and source.balance > 2 * min_amount:
        outcome.recommendations.append(
            TransferRecommendation(
                from_account_id=source.id,
                to_account_id=emergency.id,
                amount=min(
                    percentage_of(source.balance, FALLBACK_BALANCE_SHARE_PCT),
                    FALLBACK_MAX_TRANSFER,
                ),
                purpose="Emergency fund contribution (automatic)",
                priority=Priority.MEDIUM,
                urgency=Urgency.MONTHLY,
                confidence=0.6,
                recommendation_type=RecommendationType.EMERGENCY_BUFFER,
            )
        )
    elif allocation.buffer_allocation > 0:
        outcome.recommendations.append(
            _advisory(
                source,
                AdvisoryTag.ESTABLISH_EMERGENCY_FUND,
                allocation.buffer_allocation,
                "Establish an emergency fund to start building your buffer",
                RecommendationType.EMERGENCY_BUFFER,
                Priority.MEDIUM,
                0.6,
            )
        )
    return outcome


def _generate(
    strategy: Strategy,
    context: RecommendationContext,
    min_amount: Decimal,
) -> StrategyOutcome:
    if strategy is Strategy.INTELLIGENT:
        return generate_intelligent(context)
    if strategy is Strategy.BASIC:
        return generate_basic(context)
    return generate_fallback(context, min_amount)


# =============================================================================
# Orchestrator
# =============================================================================


class TransferRecommendationEngine:
    """Entry point for generating a user's transfer recommendations.

    Engines are cheap to build per call. By default they share the process-wide
    lease table and store circuit breaker, so concurrent runs for one user are
    excluded however many engines exist.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        *,
        leases: UserLeaseTable | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_maker = session_maker
        self._leases = leases if leases is not None else user_leases
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._breaker = breaker if breaker is not None else store_circuit_breaker
        self._clock = clock or (lambda: datetime.now(UTC))

    async def generate_recommendations(
        self, request: RecommendationRequest
    ) -> RecommendationResponse:
        """Generate, persist and return a fresh recommendation set.

        Raises:
            UnknownUserError: the user does not exist.
            GenerationBusyError: another run holds the user's lease.
        """
        session_maker = self._session_maker or get_session_maker()
        with bound_run_context(request.user_id, uuid4()):
            async with self._leases.lease(
                request.user_id,
                timeout=settings.lease_timeout_seconds,
                wait=request.force_recalculation,
            ):
                async with session_maker() as db:
                    return await self._run(RecommendationStore(db), request)

    async def _run(
        self, store: RecommendationStore, request: RecommendationRequest
    ) -> RecommendationResponse:
        started = time.perf_counter()
        generated_at = self._clock()
        min_amount = request.min_transfer_amount or settings.default_min_transfer_amount
        max_recommendations = request.max_recommendations or settings.default_max_recommendations
        warnings: list[str] = []

        try:
            context = await self._load_context(store, request.user_id, generated_at)
        except UnknownUserError:
            raise
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Context load failed",
                level="warning",
                category=classify_error(exc).value,
            )
            warnings.append("Financial data could not be loaded; no recommendations available")
            return self._respond(
                started,
                generated_at,
                success=True,
                recommendations=[],
                allocation=AllocationSummary(),
                quality=DataQuality.POOR,
                strategy=Strategy.FALLBACK,
                validation_passed=False,
                warnings=warnings,
            )

        validation = validate_context(context)
        warnings.extend(validation.warnings)
        quality = assess_data_quality(context)
        if not validation.is_valid:
            return self._respond(
                started,
                generated_at,
                success=False,
                recommendations=[],
                allocation=AllocationSummary(),
                quality=quality,
                strategy=Strategy.FALLBACK,
                validation_passed=False,
                warnings=warnings,
                errors=validation.errors,
            )

        strategy = select_strategy(request, quality)
        logger.info("Generating recommendations", strategy=strategy.value, quality=quality.value)
        outcome, strategy = await self._generate_with_deadline(
            strategy, context, min_amount, warnings
        )
        warnings.extend(outcome.insights)

        recommendations = self._finalize(
            outcome.recommendations, context, min_amount, max_recommendations, generated_at
        )
        allocation = outcome.allocation
        if allocation is None:
            allocation = allocation_from_recommendations(recommendations)

        try:
            await call_with_recovery(
                "replace_pending",
                lambda: store.replace_pending(
                    request.user_id, recommendations, generated_at=generated_at
                ),
                self._retry_policy,
                self._breaker,
            )
        except Exception as exc:
            log_exception(
                logger,
                exc,
                "Persisting recommendations failed",
                level="warning",
                category=classify_error(exc).value,
            )
            warnings.append(
                "Recommendations could not be saved; showing unsaved fallback recommendations"
            )
            strategy = Strategy.FALLBACK
            fallback = self._safe_fallback(context, min_amount)
            recommendations = self._finalize(
                fallback.recommendations, context, min_amount, max_recommendations, generated_at
            )
            allocation = fallback.allocation or AllocationSummary()

        return self._respond(
            started,
            generated_at,
            success=True,
            recommendations=recommendations,
            allocation=allocation,
            quality=quality,
            strategy=strategy,
            validation_passed=True,
            warnings=warnings,
        )

    async def _load_context(
        self, store: RecommendationStore, user_id: UUID, generated_at: datetime
    ) -> RecommendationContext:
        exists = await call_with_recovery(
            "user_exists", lambda: store.user_exists(user_id), self._retry_policy, self._breaker
        )
        if not exists:
            raise UnknownUserError(user_id)
        return await call_with_recovery(
            "load_context",
            lambda: store.load_context(
                user_id,
                as_of=generated_at.date(),
                lookback_months=settings.fixed_expense_lookback_months,
            ),
            self._retry_policy,
            self._breaker,
        )

    async def _generate_with_deadline(
        self,
        strategy: Strategy,
        context: RecommendationContext,
        min_amount: Decimal,
        warnings: list[str],
    ) -> tuple[StrategyOutcome, Strategy]:
        """Run the CPU-bound strategy on the generation pool under the processing deadline.

        A timed-out worker is abandoned, not stopped: it runs to completion on
        the pool and its result is discarded.
        """
        loop = asyncio.get_running_loop()
        try:
            outcome = await asyncio.wait_for(
                loop.run_in_executor(
                    _generation_executor, _generate, strategy, context, min_amount
                ),
                timeout=settings.processing_timeout_seconds,
            )
            return outcome, strategy
        except TimeoutError:
            logger.warning(
                "Recommendation generation timed out",
                strategy=strategy.value,
                timeout_seconds=settings.processing_timeout_seconds,
            )
            warnings.append("Recommendation generation timed out; using fallback recommendations")
        except Exception as exc:
            category = classify_error(exc)
            log_exception(
                logger,
                exc,
                "Recommendation generation failed",
                level="warning",
                strategy=strategy.value,
                category=category.value,
            )
            warnings.append(
                f"Recommendation generation failed ({category.value}); "
                "using fallback recommendations"
            )
        return self._safe_fallback(context, min_amount), Strategy.FALLBACK

    def _safe_fallback(
        self, context: RecommendationContext, min_amount: Decimal
    ) -> StrategyOutcome:
        try:
            return generate_fallback(context, min_amount)
        except Exception as exc:
            log_exception(logger, exc, "Fallback strategy failed")
            return StrategyOutcome(allocation=AllocationSummary())

    def _finalize(
        self,
        candidates: Sequence[Recommendation],
        context: RecommendationContext,
        min_amount: Decimal,
        max_recommendations: int,
        generated_at: datetime,
    ) -> list[Recommendation]:
        valid_until = generated_at + timedelta(days=settings.recommendation_validity_days)
        kept: list[Recommendation] = []
        for candidate in candidates:
            reasons = validate_recommendation(candidate, context, min_amount)
            if reasons:
                logger.info(
                    "Dropping recommendation",
                    purpose=candidate.purpose,
                    amount=str(candidate.amount),
                    reasons=reasons,
                )
                continue
            kept.append(candidate.model_copy(update={"valid_until": valid_until}))
        return rank_recommendations(kept)[:max_recommendations]

    def _respond(
        self,
        started: float,
        generated_at: datetime,
        *,
        success: bool,
        recommendations: list[Recommendation],
        allocation: AllocationSummary,
        quality: DataQuality,
        strategy: Strategy,
        validation_passed: bool,
        warnings: list[str],
        errors: list[str] | None = None,
    ) -> RecommendationResponse:
        errors = errors or []
        processing_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Recommendations generated",
            success=success,
            strategy=strategy.value,
            recommendations=len(recommendations),
            warnings=len(warnings),
            errors=len(errors),
            duration_ms=processing_ms,
        )
        return RecommendationResponse(
            success=success,
            recommendations=recommendations,
            allocation=allocation,
            summary=summarize(recommendations),
            metadata=RecommendationMetadata(
                generated_at=generated_at,
                engine_version=settings.engine_version,
                validation_passed=validation_passed,
                data_quality=quality,
                recommendation_strategy=strategy,
                processing_time_ms=processing_ms,
                warnings_count=len(warnings),
                errors_count=len(errors),
            ),
            warnings=warnings or None,
            errors=errors or None,
        )
