"""Decimal money arithmetic.

All amounts are ``Decimal`` quantised to cents with half-up rounding. Ratios
(confidence, variability, scores) stay ``float``; they never feed back into a
stored amount without going through ``multiply_money``.
"""

from collections.abc import Iterable, Sequence
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

from transfer_engine.utils.exceptions import MoneyError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MIN_TRANSFER_AMOUNT = Decimal("0.01")
MAX_TRANSFER_AMOUNT = Decimal("1000000.00")
MAX_SAFE_AMOUNT = Decimal("9007199254740.99")
SUM_TOLERANCE = Decimal("0.01")

MoneyInput = Decimal | int | str


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: MoneyInput) -> Decimal:
    """Parse a value into a cent-quantised Decimal.

    Floats are rejected: convert them with ``str()`` first so the caller owns
    the representation.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise MoneyError("INVALID_AMOUNT", f"Unsupported money type: {type(value).__name__}")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise MoneyError("INVALID_AMOUNT", "Empty amount")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise MoneyError("INVALID_AMOUNT", f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise MoneyError("INVALID_AMOUNT", f"Amount must be finite: {value!r}")
    if abs(amount) > MAX_SAFE_AMOUNT:
        raise MoneyError("AMOUNT_TOO_LARGE", f"Amount exceeds safe range: {value!r}")
    return round_money(amount)


def add_money(*amounts: MoneyInput) -> Decimal:
    return round_money(sum((to_money(a) for a in amounts), ZERO))


def subtract_money(minuend: MoneyInput, subtrahend: MoneyInput) -> Decimal:
    return round_money(to_money(minuend) - to_money(subtrahend))


def multiply_money(amount: MoneyInput, factor: Decimal | int | float | str) -> Decimal:
    """Multiply an amount by a ratio; float factors go through ``str``."""
    if isinstance(factor, float):
        factor = Decimal(str(factor))
    try:
        factor_dec = Decimal(factor)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise MoneyError("INVALID_FACTOR", f"Invalid factor: {factor!r}") from exc
    if not factor_dec.is_finite():
        raise MoneyError("INVALID_FACTOR", f"Factor must be finite: {factor!r}")
    return round_money(to_money(amount) * factor_dec)


def sum_money(amounts: Iterable[MoneyInput]) -> Decimal:
    return round_money(sum((to_money(a) for a in amounts), ZERO))


def compare_money(a: MoneyInput, b: MoneyInput) -> int:
    """Return -1, 0 or 1 after rounding both sides to cents."""
    left, right = to_money(a), to_money(b)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def percentage_of(amount: MoneyInput, percentage: Decimal | int | float | str) -> Decimal:
    pct = Decimal(str(percentage)) if isinstance(percentage, float) else Decimal(percentage)
    if pct < 0 or pct > 100:
        raise MoneyError("INVALID_PERCENTAGE", f"Percentage must be within 0-100: {percentage}")
    return multiply_money(amount, pct / Decimal(100))


def distribute_amount(total: MoneyInput, weights: Sequence[Decimal | int | float]) -> list[Decimal]:
    """Split ``total`` proportionally to ``weights``.

    Every share but the last is floored to the cent; the last share takes the
    residue, so ``sum(result) == total`` exactly.
    """
    total_dec = to_money(total)
    if not weights:
        return []
    dec_weights = [Decimal(str(w)) if isinstance(w, float) else Decimal(w) for w in weights]
    if any(w < 0 for w in dec_weights):
        raise MoneyError("INVALID_ALLOCATION_WEIGHT", "Allocation weights must be non-negative")
    weight_total = sum(dec_weights, Decimal(0))
    if weight_total <= 0:
        raise MoneyError("INVALID_ALLOCATION_WEIGHT", "Allocation weights must sum to more than 0")

    parts: list[Decimal] = []
    for weight in dec_weights[:-1]:
        parts.append((total_dec * weight / weight_total).quantize(CENT, rounding=ROUND_DOWN))
    parts.append(total_dec - sum(parts, ZERO))
    return parts


def distribute_capped(total: MoneyInput, caps: Sequence[MoneyInput]) -> list[Decimal]:
    """Split ``total`` proportionally to ``caps`` without any share exceeding its cap.

    Shares are floored to the cent; the residue goes to the last share with
    headroom, then the one before it. ``sum(result) == total`` exactly.

    Raises:
        MoneyError: ``total`` is negative or larger than the caps combined.
    """
    total_dec = to_money(total)
    cap_values = [to_money(c) for c in caps]
    if any(c < 0 for c in cap_values):
        raise MoneyError("INVALID_ALLOCATION_WEIGHT", "Allocation caps must be non-negative")
    cap_total = sum(cap_values, ZERO)
    if total_dec < 0 or total_dec > cap_total:
        raise MoneyError(
            "INVALID_ALLOCATION_TOTAL", f"Cannot distribute {total_dec} over caps of {cap_total}"
        )
    if total_dec == 0:
        return [ZERO for _ in cap_values]

    parts = [
        (total_dec * cap / cap_total).quantize(CENT, rounding=ROUND_DOWN) for cap in cap_values
    ]
    residue = total_dec - sum(parts, ZERO)
    for index in reversed(range(len(parts))):
        if residue == 0:
            break
        extra = min(residue, cap_values[index] - parts[index])
        parts[index] += extra
        residue -= extra
    return parts


def validate_sum(parts: Iterable[MoneyInput], expected: MoneyInput) -> bool:
    """True when the parts add up to ``expected`` within one cent."""
    return abs(sum_money(parts) - to_money(expected)) <= SUM_TOLERANCE


def validate_transfer_amount(amount: MoneyInput) -> str | None:
    """Return an error message for an unusable transfer amount, else None."""
    try:
        value = to_money(amount)
    except MoneyError as exc:
        return str(exc)
    if value <= 0:
        return "Transfer amount must be positive"
    if value < MIN_TRANSFER_AMOUNT:
        return f"Transfer amount must be at least {MIN_TRANSFER_AMOUNT}"
    if value > MAX_TRANSFER_AMOUNT:
        return f"Transfer amount cannot exceed {MAX_TRANSFER_AMOUNT}"
    return None


def format_money(amount: Decimal, currency: str = "EUR") -> str:
    symbol = "€" if currency == "EUR" else f"{currency} "
    return f"{symbol}{round_money(amount):,.2f}"
