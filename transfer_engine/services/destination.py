"""Resolve which account an allocation should be transferred to."""

import enum
import re
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID, uuid4

from transfer_engine.config import settings
from transfer_engine.logger import get_logger
from transfer_engine.models.account import AccountRole
from transfer_engine.models.preference import AllocationType
from transfer_engine.schemas.context import (
    AccountSnapshot,
    GoalSnapshot,
    TransferPreferenceSnapshot,
)

logger = get_logger(__name__)

# A quantified group that is itself quantified, e.g. (a+)+ or (\w*)*
_NESTED_QUANTIFIER = re.compile(r"\([^)]*[+*}][^)]*\)\s*[+*{]")


class ResolutionConfidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionSource(str, enum.Enum):
    AUTO = "auto"
    PREFERENCE = "preference"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class DestinationResolution:
    account_id: UUID
    purpose: str
    confidence: ResolutionConfidence
    source: ResolutionSource


class UnsafePatternError(ValueError):
    """A goal-name pattern was rejected before compilation."""


@lru_cache(maxsize=256)
def compile_goal_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a user-supplied goal-name pattern, case-insensitive.

    Raises:
        UnsafePatternError: pattern too long or prone to catastrophic backtracking.
        re.error: pattern does not compile.
    """
    if len(pattern) > settings.max_goal_pattern_length:
        raise UnsafePatternError(
            f"Pattern longer than {settings.max_goal_pattern_length} characters"
        )
    if _NESTED_QUANTIFIER.search(pattern):
        raise UnsafePatternError("Pattern contains nested quantifiers")
    return re.compile(pattern, re.IGNORECASE)


def safe_goal_pattern(pattern: str) -> re.Pattern[str] | None:
    """Compiled pattern, or None (with a warning) when it is invalid or unsafe."""
    try:
        return compile_goal_pattern(pattern)
    except (UnsafePatternError, re.error) as exc:
        logger.warning(
            "Skipping goal pattern",
            pattern=pattern[:50],
            reason=str(exc),
            error_type=type(exc).__name__,
        )
        return None


def _first_with_role(
    accounts: Sequence[AccountSnapshot], role: AccountRole
) -> AccountSnapshot | None:
    return next((a for a in accounts if a.role is role), None)


def _name_mentions(account: AccountSnapshot, *words: str) -> bool:
    text = f"{account.name} {account.custom_name or ''}".lower()
    return any(word in text for word in words)


def _goal_label(goal: GoalSnapshot) -> str:
    return f"Transfer to goal: {goal.name}"


def _resolve_preference(
    preference: TransferPreferenceSnapshot,
    accounts: Sequence[AccountSnapshot],
    goals: Sequence[GoalSnapshot],
) -> DestinationResolution | None:
    if preference.account_id is not None:
        account = next((a for a in accounts if a.id == preference.account_id), None)
        if account is not None:
            return DestinationResolution(
                account.id,
                f"Transfer to {account.display_name}",
                ResolutionConfidence.HIGH,
                ResolutionSource.PREFERENCE,
            )
        return None

    if preference.account_role is not None:
        account = _first_with_role(accounts, preference.account_role)
        if account is not None:
            return DestinationResolution(
                account.id,
                f"Transfer to {preference.account_role.value} account",
                ResolutionConfidence.HIGH,
                ResolutionSource.PREFERENCE,
            )
        return None

    if preference.goal_pattern:
        regex = safe_goal_pattern(preference.goal_pattern)
        if regex is None:
            return None
        account_ids = {a.id for a in accounts}
        for goal in goals:
            if goal.linked_account_id in account_ids and regex.search(goal.name):
                return DestinationResolution(
                    goal.linked_account_id,
                    _goal_label(goal),
                    ResolutionConfidence.HIGH,
                    ResolutionSource.PREFERENCE,
                )
    return None


def _fallback(
    allocation_type: AllocationType,
    accounts: Sequence[AccountSnapshot],
    goals: Sequence[GoalSnapshot],
) -> DestinationResolution | None:
    fallback = ResolutionSource.FALLBACK

    if allocation_type in (AllocationType.BUFFER, AllocationType.EMERGENCY):
        emergency = _first_with_role(accounts, AccountRole.EMERGENCY)
        if emergency is not None:
            return DestinationResolution(
                emergency.id, "Emergency buffer maintenance", ResolutionConfidence.HIGH, fallback
            )
        savings = _first_with_role(accounts, AccountRole.SAVINGS)
        if savings is not None:
            return DestinationResolution(
                savings.id,
                "Transfer to savings account for emergency buffer",
                ResolutionConfidence.MEDIUM,
                fallback,
            )
        goal_account = _first_with_role(accounts, AccountRole.GOAL_SPECIFIC)
        if goal_account is not None:
            return DestinationResolution(
                goal_account.id,
                "Transfer to goal account for emergency buffer",
                ResolutionConfidence.MEDIUM,
                fallback,
            )
        account_ids = {a.id for a in accounts}
        for goal in goals:
            if "emergency" in goal.name.lower() and goal.linked_account_id in account_ids:
                return DestinationResolution(
                    goal.linked_account_id,
                    f"Transfer to emergency goal: {goal.name}",
                    ResolutionConfidence.MEDIUM,
                    fallback,
                )
        return None

    if allocation_type is AllocationType.INVESTMENT:
        investment = _first_with_role(accounts, AccountRole.INVESTMENT) or next(
            (a for a in accounts if _name_mentions(a, "investment", "broker")), None
        )
        if investment is not None:
            return DestinationResolution(
                investment.id, "Investment contribution", ResolutionConfidence.HIGH, fallback
            )
        savings = _first_with_role(accounts, AccountRole.SAVINGS)
        if savings is not None:
            return DestinationResolution(
                savings.id,
                "Transfer to savings (no investment account)",
                ResolutionConfidence.LOW,
                fallback,
            )
        return None

    savings = _first_with_role(accounts, AccountRole.SAVINGS)
    if savings is not None:
        return DestinationResolution(
            savings.id, "Transfer to savings", ResolutionConfidence.MEDIUM, fallback
        )
    return None


def resolve_destination(
    allocation_type: AllocationType,
    accounts: Sequence[AccountSnapshot],
    goals: Sequence[GoalSnapshot],
    preferences: Sequence[TransferPreferenceSnapshot],
    goal_id: UUID | None = None,
) -> DestinationResolution | None:
    """Pick the destination account for one allocation.

    Order: the goal's own linked account, then the user's active preferences
    for this allocation type by priority, then the built-in role hierarchy.
    Returns None when nothing matches; callers turn that into an advisory.
    """
    account_ids = {a.id for a in accounts}

    if allocation_type is AllocationType.GOAL and goal_id is not None:
        goal = next((g for g in goals if g.id == goal_id), None)
        if goal is not None and goal.linked_account_id in account_ids:
            return DestinationResolution(
                goal.linked_account_id,
                _goal_label(goal),
                ResolutionConfidence.HIGH,
                ResolutionSource.AUTO,
            )

    candidates = sorted(
        (p for p in preferences if p.is_active and p.allocation_type is allocation_type),
        key=lambda p: p.priority,
    )
    for preference in candidates:
        resolution = _resolve_preference(preference, accounts, goals)
        if resolution is not None:
            return resolution

    resolution = _fallback(allocation_type, accounts, goals)
    if resolution is None:
        logger.info(
            "No destination resolved",
            allocation_type=allocation_type.value,
            accounts=len(accounts),
        )
    return resolution


def default_preferences(user_id: UUID) -> list[dict]:
    """Starter preference rows for a new user, ready for ``TransferPreference(**row)``."""
    rows = [
        (AllocationType.BUFFER, 1, {"account_role": AccountRole.EMERGENCY}),
        (AllocationType.BUFFER, 2, {"account_role": AccountRole.SAVINGS}),
        (AllocationType.BUFFER, 3, {"goal_pattern": "emergency"}),
        (AllocationType.INVESTMENT, 1, {"account_role": AccountRole.INVESTMENT}),
        (AllocationType.INVESTMENT, 2, {"account_role": AccountRole.SAVINGS}),
    ]
    return [
        {
            "id": uuid4(),
            "user_id": user_id,
            "allocation_type": allocation_type,
            "priority": priority,
            "is_active": True,
            **selector,
        }
        for allocation_type, priority, selector in rows
    ]
