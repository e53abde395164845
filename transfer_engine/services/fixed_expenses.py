"""Fixed-expense ("vaste lasten") detection, prediction and anomaly checks.

Expenses are grouped by a normalised merchant key. A group becomes a fixed
expense pattern when its amounts are stable, its cadence is regular and it
has been seen often enough. Patterns feed the monthly requirement forecast
that the optimizer uses to keep the vaste lasten account funded.
"""

import enum
import statistics
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from dateutil.relativedelta import relativedelta

from transfer_engine.config import settings
from transfer_engine.logger import get_logger
from transfer_engine.schemas.context import CategorySnapshot, TransactionSnapshot
from transfer_engine.utils.money import ZERO, multiply_money, round_money, sum_money

logger = get_logger(__name__)

FIXED_EXPENSE_KEYWORDS: tuple[str, ...] = (
    "rent",
    "mortgage",
    "insurance",
    "utilities",
    "electric",
    "gas",
    "water",
    "internet",
    "phone",
    "subscription",
    "netflix",
    "spotify",
    "gym",
    "lease",
    "loan",
    "payment",
    "monthly",
    "annual",
)

GENERIC_DESCRIPTION_WORDS = frozenset({"payment", "purchase", "transaction", "debit", "card"})

# Spending seasonality: heating and holidays push winter months up.
SEASONAL_FACTORS: dict[int, Decimal] = {
    1: Decimal("1.20"),
    2: Decimal("1.15"),
    3: Decimal("1.00"),
    4: Decimal("0.95"),
    5: Decimal("0.90"),
    6: Decimal("0.85"),
    7: Decimal("0.80"),
    8: Decimal("0.80"),
    9: Decimal("0.90"),
    10: Decimal("1.00"),
    11: Decimal("1.10"),
    12: Decimal("1.25"),
}


class ExpenseFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    IRREGULAR = "irregular"


_CADENCE_MONTHS = {
    ExpenseFrequency.MONTHLY: 1,
    ExpenseFrequency.QUARTERLY: 3,
    ExpenseFrequency.YEARLY: 12,
}

# Inclusive day-interval ranges per cadence
_FREQUENCY_RANGES = (
    (ExpenseFrequency.MONTHLY, 27, 35),
    (ExpenseFrequency.QUARTERLY, 80, 100),
    (ExpenseFrequency.YEARLY, 350, 380),
)


@dataclass(frozen=True)
class FixedExpenseConfig:
    """Thresholds for pattern detection and forecasting."""

    variability_threshold: float = 0.15
    confidence_threshold: float = 0.7
    min_group_size: int = 2
    min_occurrences: int = 3
    fixed_score_threshold: int = 5
    interval_variation_limit: float = 0.3
    min_meaningful_amount: Decimal = Decimal("10.00")
    anomaly_window_months: int = 3
    anomaly_ignore_deviation: float = 0.2
    new_expense_min_amount: Decimal = Decimal("50.00")
    buffer_multiplier: Decimal = Decimal("2.5")
    recurring_transfer_lead_days: int = 3
    large_expense_lead_days: int = 7
    large_expense_share: Decimal = Decimal("0.5")
    large_expense_horizon_months: int = 2


DEFAULT_CONFIG = FixedExpenseConfig()


@dataclass
class FixedExpensePattern:
    merchant_key: str
    average_amount: Decimal
    frequency: ExpenseFrequency
    variability: float
    confidence: float
    predicted_amount: Decimal
    predicted_date: date
    last_seen: date
    occurrences: int
    average_interval_days: float
    category_id: UUID | None = None
    category_name: str | None = None

    @property
    def monthly_equivalent(self) -> Decimal:
        months = _CADENCE_MONTHS.get(self.frequency)
        if months is None:
            return ZERO
        return round_money(self.predicted_amount / months)


@dataclass
class FixedExpenseAnomaly:
    transaction_id: UUID
    txn_date: date
    merchant_key: str
    anomaly_type: str
    severity: str
    expected_amount: Decimal
    actual_amount: Decimal
    deviation: float
    message: str


@dataclass
class UpcomingExpense:
    expected_date: date
    amount: Decimal
    merchant_key: str
    kind: str
    confidence: float


@dataclass
class TransferTiming:
    transfer_date: date
    amount: Decimal
    reason: str
    recurring: bool


@dataclass
class VasteLastenPrediction:
    target_month: date
    monthly_requirement: Decimal
    seasonal_adjustment: Decimal
    total_requirement: Decimal
    recommended_buffer: Decimal
    confidence: float
    patterns_used: int
    upcoming_expenses: list[UpcomingExpense] = field(default_factory=list)
    transfer_timing: list[TransferTiming] = field(default_factory=list)


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def merchant_key(txn: TransactionSnapshot) -> str:
    """Normalised grouping key for a transaction's counterparty."""
    merchant = (txn.merchant or "").strip().lower()
    if len(merchant) > 3:
        return merchant
    description = (txn.description or "").strip().lower()
    for word in description.split():
        if len(word) > 3 and word not in GENERIC_DESCRIPTION_WORDS:
            return word
    if description:
        return description[:20]
    return "unknown"


def _add_cadence(start: date, frequency: ExpenseFrequency, interval_days: float) -> date:
    months = _CADENCE_MONTHS.get(frequency)
    if months is not None:
        return start + relativedelta(months=months)
    return start + timedelta(days=max(1, round(interval_days)))


def _start_of_next_month(day: date) -> date:
    return day.replace(day=1) + relativedelta(months=1)


class FixedExpenseAnalyzer:
    """Detects recurring fixed expenses and forecasts the monthly requirement."""

    def __init__(
        self,
        config: FixedExpenseConfig = DEFAULT_CONFIG,
        extra_keywords: Iterable[str] | None = None,
    ):
        self.config = config
        extra = settings.extra_fixed_expense_keywords if extra_keywords is None else extra_keywords
        self.keywords = FIXED_EXPENSE_KEYWORDS + tuple(kw.lower() for kw in extra)

    def has_fixed_keyword(self, key: str) -> bool:
        return any(keyword in key for keyword in self.keywords)

    # ------------------------------------------------------------------
    # Pattern detection
    # ------------------------------------------------------------------

    def analyze(
        self,
        transactions: Sequence[TransactionSnapshot],
        categories: Sequence[CategorySnapshot] = (),
    ) -> list[FixedExpensePattern]:
        """Return fixed-expense patterns, largest average amount first."""
        category_names = {c.id: c.name for c in categories}
        groups: dict[str, list[TransactionSnapshot]] = defaultdict(list)
        for txn in transactions:
            if txn.is_expense:
                groups[merchant_key(txn)].append(txn)

        patterns: list[FixedExpensePattern] = []
        for key, group in groups.items():
            if len(group) < self.config.min_group_size:
                continue
            pattern = self._build_pattern(key, group, category_names)
            if self._is_fixed(pattern):
                patterns.append(pattern)

        patterns.sort(key=lambda p: p.average_amount, reverse=True)
        logger.debug(
            "Fixed expense patterns detected",
            groups=len(groups),
            patterns=len(patterns),
        )
        return patterns

    def _build_pattern(
        self,
        key: str,
        group: list[TransactionSnapshot],
        category_names: dict[UUID, str],
    ) -> FixedExpensePattern:
        ordered = sorted(group, key=lambda t: t.txn_date)
        amounts = [abs(t.amount) for t in ordered]
        average = round_money(sum(amounts, ZERO) / len(amounts))

        float_amounts = [float(a) for a in amounts]
        mean = statistics.fmean(float_amounts)
        variability = clamp_unit(statistics.pstdev(float_amounts) / mean) if mean > 0 else 1.0

        intervals = [
            (later.txn_date - earlier.txn_date).days
            for earlier, later in zip(ordered, ordered[1:], strict=False)
        ]
        frequency, average_interval = self._detect_frequency(intervals)

        occurrences = len(ordered)
        confidence = clamp_unit(
            (min(occurrences / 6, 1.0) + max(0.0, 1.0 - 2 * variability)) / 2
        )
        last = ordered[-1]
        category_id = last.category_id
        return FixedExpensePattern(
            merchant_key=key,
            average_amount=average,
            frequency=frequency,
            variability=variability,
            confidence=confidence,
            predicted_amount=average,
            predicted_date=_add_cadence(last.txn_date, frequency, average_interval),
            last_seen=last.txn_date,
            occurrences=occurrences,
            average_interval_days=average_interval,
            category_id=category_id,
            category_name=category_names.get(category_id) if category_id else None,
        )

    def _detect_frequency(self, intervals: list[int]) -> tuple[ExpenseFrequency, float]:
        if not intervals:
            return ExpenseFrequency.IRREGULAR, 0.0
        average = statistics.fmean(intervals)
        if average <= 0:
            return ExpenseFrequency.IRREGULAR, average
        variation = statistics.pstdev(intervals) / average
        if variation < self.config.interval_variation_limit:
            for frequency, low, high in _FREQUENCY_RANGES:
                if low <= average <= high:
                    return frequency, average
        return ExpenseFrequency.IRREGULAR, average

    def _is_fixed(self, pattern: FixedExpensePattern) -> bool:
        if pattern.occurrences < self.config.min_occurrences:
            return False
        score = 0
        if pattern.variability <= self.config.variability_threshold:
            score += 3
        if pattern.frequency is not ExpenseFrequency.IRREGULAR:
            score += 2
        if pattern.occurrences >= self.config.min_occurrences:
            score += 2
        if self.has_fixed_keyword(pattern.merchant_key):
            score += 2
        if pattern.average_amount >= self.config.min_meaningful_amount:
            score += 1
        return score >= self.config.fixed_score_threshold

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def detect_anomalies(
        self,
        transactions: Sequence[TransactionSnapshot],
        patterns: Sequence[FixedExpensePattern],
        as_of: date,
    ) -> list[FixedExpenseAnomaly]:
        """Flag recent expenses that deviate from their pattern, newest first."""
        window_start = as_of - relativedelta(months=self.config.anomaly_window_months)
        by_key = {p.merchant_key: p for p in patterns}
        anomalies: list[FixedExpenseAnomaly] = []

        for txn in transactions:
            if not txn.is_expense or txn.txn_date < window_start:
                continue
            key = merchant_key(txn)
            actual = abs(txn.amount)
            pattern = by_key.get(key)

            if pattern is None:
                if self.has_fixed_keyword(key) and actual >= self.config.new_expense_min_amount:
                    anomalies.append(
                        FixedExpenseAnomaly(
                            transaction_id=txn.id,
                            txn_date=txn.txn_date,
                            merchant_key=key,
                            anomaly_type="new_expense",
                            severity="medium",
                            expected_amount=ZERO,
                            actual_amount=actual,
                            deviation=1.0,
                            message=f"New fixed expense detected: {key}",
                        )
                    )
                continue

            expected = pattern.average_amount
            if expected <= 0:
                continue
            deviation = float(abs(actual - expected) / expected)
            if deviation <= self.config.anomaly_ignore_deviation:
                continue
            if deviation > 0.5:
                severity = "high"
            elif deviation > 0.3:
                severity = "medium"
            else:
                severity = "low"
            anomaly_type = "amount_spike" if actual > expected else "amount_drop"
            anomalies.append(
                FixedExpenseAnomaly(
                    transaction_id=txn.id,
                    txn_date=txn.txn_date,
                    merchant_key=key,
                    anomaly_type=anomaly_type,
                    severity=severity,
                    expected_amount=expected,
                    actual_amount=actual,
                    deviation=deviation,
                    message=(
                        f"Unusual amount for {key}: expected {expected}, got {actual}"
                    ),
                )
            )

        anomalies.sort(key=lambda a: a.txn_date, reverse=True)
        return anomalies

    # ------------------------------------------------------------------
    # Forecasting
    # ------------------------------------------------------------------

    def predict_vaste_lasten(
        self,
        patterns: Sequence[FixedExpensePattern],
        as_of: date,
        target_month: date | None = None,
        months_ahead: int | None = None,
    ) -> VasteLastenPrediction:
        """Forecast what the vaste lasten account needs for ``target_month``.

        ``target_month`` defaults to the month after ``as_of``.
        """
        target = (target_month or _start_of_next_month(as_of)).replace(day=1)
        months_ahead = settings.upcoming_expense_months if months_ahead is None else months_ahead
        qualifying = [p for p in patterns if p.confidence >= self.config.confidence_threshold]

        base = sum_money(p.monthly_equivalent for p in qualifying)
        factor = SEASONAL_FACTORS[target.month]
        adjustment = multiply_money(base, factor - 1)
        total = round_money(base + adjustment)
        buffer = multiply_money(total, self.config.buffer_multiplier)

        weight = sum((p.average_amount for p in qualifying), ZERO)
        if weight > 0:
            confidence = clamp_unit(
                sum(p.confidence * float(p.average_amount) for p in qualifying) / float(weight)
            )
        else:
            confidence = 0.0

        return VasteLastenPrediction(
            target_month=target,
            monthly_requirement=base,
            seasonal_adjustment=adjustment,
            total_requirement=total,
            recommended_buffer=buffer,
            confidence=confidence,
            patterns_used=len(qualifying),
            upcoming_expenses=self._upcoming_expenses(qualifying, as_of, months_ahead),
            transfer_timing=self._transfer_timing(qualifying, as_of, total),
        )

    def _upcoming_expenses(
        self,
        patterns: Sequence[FixedExpensePattern],
        as_of: date,
        months_ahead: int,
    ) -> list[UpcomingExpense]:
        horizon = as_of + relativedelta(months=months_ahead)
        upcoming: list[UpcomingExpense] = []
        for pattern in patterns:
            kind = (
                "fixed"
                if pattern.variability <= self.config.variability_threshold
                else "variable"
            )
            expected = pattern.predicted_date
            if pattern.frequency is ExpenseFrequency.IRREGULAR:
                if as_of <= expected <= horizon:
                    upcoming.append(
                        UpcomingExpense(
                            expected, pattern.predicted_amount, pattern.merchant_key, kind,
                            pattern.confidence,
                        )
                    )
                continue
            while expected < as_of:
                expected = _add_cadence(expected, pattern.frequency, pattern.average_interval_days)
            while expected <= horizon:
                upcoming.append(
                    UpcomingExpense(
                        expected, pattern.predicted_amount, pattern.merchant_key, kind,
                        pattern.confidence,
                    )
                )
                expected = _add_cadence(expected, pattern.frequency, pattern.average_interval_days)
        upcoming.sort(key=lambda u: u.expected_date)
        return upcoming

    def _transfer_timing(
        self,
        patterns: Sequence[FixedExpensePattern],
        as_of: date,
        total_requirement: Decimal,
    ) -> list[TransferTiming]:
        timing: list[TransferTiming] = []
        if total_requirement > 0:
            timing.append(
                TransferTiming(
                    transfer_date=_start_of_next_month(as_of)
                    - timedelta(days=self.config.recurring_transfer_lead_days),
                    amount=total_requirement,
                    reason="Monthly vaste lasten transfer",
                    recurring=True,
                )
            )

        horizon = as_of + relativedelta(months=self.config.large_expense_horizon_months)
        threshold = total_requirement * self.config.large_expense_share
        for pattern in patterns:
            if pattern.frequency is ExpenseFrequency.MONTHLY:
                continue
            if pattern.predicted_amount <= threshold or pattern.predicted_date > horizon:
                continue
            transfer_date = max(
                as_of,
                pattern.predicted_date - timedelta(days=self.config.large_expense_lead_days),
            )
            timing.append(
                TransferTiming(
                    transfer_date=transfer_date,
                    amount=pattern.predicted_amount,
                    reason=f"Upcoming {pattern.frequency.value} expense: {pattern.merchant_key}",
                    recurring=False,
                )
            )
        timing.sort(key=lambda t: t.transfer_date)
        return timing
