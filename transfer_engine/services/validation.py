"""Validation of generation inputs and of candidate recommendations."""

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal

from transfer_engine.config import settings
from transfer_engine.logger import get_logger
from transfer_engine.models.account import AccountRole
from transfer_engine.schemas.context import RecommendationContext
from transfer_engine.schemas.recommendation import (
    AdvisoryRecommendation,
    Recommendation,
    TransferRecommendation,
)
from transfer_engine.services.destination import safe_goal_pattern
from transfer_engine.utils.money import compare_money, format_money, validate_transfer_amount

logger = get_logger(__name__)

MIN_GOAL_PRIORITY = 1
MAX_GOAL_PRIORITY = 10


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_context(context: RecommendationContext) -> ValidationResult:
    """Check loaded data for inconsistencies.

    Errors make the data unusable for recommendations; warnings are reported
    with the response but do not stop generation.
    """
    result = ValidationResult()
    errors, warnings = result.errors, result.warnings

    if not context.accounts:
        errors.append("No accounts found for user")
        return result

    account_ids = {a.id for a in context.accounts}
    id_counts = Counter(a.id for a in context.accounts)
    for account_id in (aid for aid, count in id_counts.items() if count > 1):
        errors.append(f"Duplicate account id: {account_id}")

    for account in context.accounts:
        if account.user_id != context.user_id:
            errors.append(f"Account {account.name} does not belong to user")
        if account.balance < 0:
            warnings.append(f"Account {account.name} has a negative balance ({account.balance})")
        if account.currency != settings.base_currency:
            warnings.append(
                f"Account {account.name} is in {account.currency}; "
                f"amounts are treated as {settings.base_currency}"
            )

    if not any(a.role is AccountRole.INCOME for a in context.accounts):
        warnings.append("No income account configured; using the first account as source")

    _validate_goals(context, account_ids, result)
    _validate_transactions(context, account_ids, result)
    _validate_preferences(context, account_ids, result)

    if errors:
        logger.warning("Context validation failed", errors=len(errors), warnings=len(warnings))
    return result


def _validate_goals(
    context: RecommendationContext, account_ids: set, result: ValidationResult
) -> None:
    if not context.goals:
        result.warnings.append("No savings goals defined")
    for goal in context.goals:
        if goal.user_id != context.user_id:
            result.errors.append(f"Goal {goal.name} does not belong to user")
        if goal.target_amount <= 0:
            result.errors.append(f"Goal {goal.name} has a non-positive target amount")
        if goal.current_amount < 0:
            result.errors.append(f"Goal {goal.name} has a negative current amount")
        if goal.linked_account_id is not None and goal.linked_account_id not in account_ids:
            result.errors.append(f"Goal {goal.name} is linked to an unknown account")
        if goal.current_amount >= goal.target_amount > 0 and not goal.is_completed:
            result.warnings.append(f"Goal {goal.name} reached its target but is not completed")
        overdue = goal.target_date is not None and goal.target_date < context.as_of
        if overdue and not goal.is_completed:
            result.warnings.append(f"Goal {goal.name} is past its target date")
        if not MIN_GOAL_PRIORITY <= goal.priority <= MAX_GOAL_PRIORITY:
            result.warnings.append(f"Goal {goal.name} has an unusual priority ({goal.priority})")


def _validate_transactions(
    context: RecommendationContext, account_ids: set, result: ValidationResult
) -> None:
    if not context.transactions:
        result.warnings.append("No transaction history available")
        return
    unknown = sum(1 for t in context.transactions if t.account_id not in account_ids)
    if unknown:
        result.errors.append(f"{unknown} transactions reference unknown accounts")
    future = sum(1 for t in context.transactions if t.txn_date > context.as_of)
    if future:
        result.warnings.append(f"{future} transactions are dated in the future")


def _validate_preferences(
    context: RecommendationContext, account_ids: set, result: ValidationResult
) -> None:
    if not context.preferences:
        result.warnings.append("No transfer preferences configured; using defaults")
    for preference in context.preferences:
        label = f"{preference.allocation_type.value} preference #{preference.priority}"
        if preference.account_id is not None and preference.account_id not in account_ids:
            result.errors.append(f"Transfer {label} references an unknown account")
        if preference.selector_count != 1:
            result.warnings.append(f"Transfer {label} should set exactly one selector")
        if preference.goal_pattern and safe_goal_pattern(preference.goal_pattern) is None:
            result.warnings.append(f"Transfer {label} has an invalid goal pattern; ignored")


def validate_recommendation(
    recommendation: Recommendation,
    context: RecommendationContext,
    min_amount: Decimal,
) -> list[str]:
    """Reasons a candidate must be dropped; empty when it is usable."""
    reasons: list[str] = []

    amount_error = validate_transfer_amount(recommendation.amount)
    if amount_error:
        reasons.append(amount_error)
    elif recommendation.amount < min_amount:
        reasons.append(f"Amount {recommendation.amount} below minimum {min_amount}")

    if not recommendation.purpose.strip():
        reasons.append("Purpose is required")

    source = context.account(recommendation.from_account_id)
    if source is None:
        reasons.append("Source account not found")

    if isinstance(recommendation, TransferRecommendation):
        if context.account(recommendation.to_account_id) is None:
            reasons.append("Destination account not found")
        if source is not None and compare_money(source.balance, recommendation.amount) < 0:
            reasons.append(
                f"Insufficient funds in {source.name}: "
                f"{format_money(source.balance)} < {format_money(recommendation.amount)}"
            )
    elif isinstance(recommendation, AdvisoryRecommendation):
        if recommendation.to_account_id != recommendation.from_account_id:
            reasons.append("Advisory must reference its source account on both sides")

    if recommendation.goal_id is not None:
        goal = context.goal(recommendation.goal_id)
        if goal is None:
            reasons.append("Goal not found")
        elif goal.is_completed:
            reasons.append("Goal is already completed")

    return reasons
