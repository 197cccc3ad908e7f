from __future__ import annotations

from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from typing import Iterable, Sequence, Union

from potsettle.errors import InvalidAmountError
from potsettle.models import CENT, FractionalCentIssue, PrecisionReport, RoundingOperation

Amount = Union[Decimal, int, str, float]

DECIMAL_PRECISION = 2
LOSS_QUANTUM = Decimal("0.000001")


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmountError(f"not a monetary amount: {value!r}")
    try:
        # floats go through str() so 0.1 stays 0.1
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmountError(f"not a monetary amount: {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmountError(f"amount must be finite: {value!r}")
    return result


def has_fractional_cents(value: Amount) -> bool:
    decimal_value = to_decimal(value)
    return decimal_value != decimal_value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def to_cents(value: Amount, rounding: str = ROUND_HALF_EVEN) -> int:
    return int(to_decimal(value).quantize(CENT, rounding=rounding) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def format_cents(cents: int) -> str:
    return f"{from_cents(cents):.2f}"


def format_money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${from_cents(abs(cents)):.2f}"


def add_cents(*amounts: int) -> int:
    return sum(amounts)


def subtract_cents(minuend: int, subtrahend: int) -> int:
    return minuend - subtrahend


def sum_cents(amounts: Iterable[int]) -> int:
    return sum(amounts)


def round_fraction(exact_cents: Fraction) -> int:
    # round() on a Fraction is half-to-even
    return round(exact_cents)


def fraction_to_decimal(exact_cents: Fraction) -> Decimal:
    dollars = Decimal(exact_cents.numerator) / Decimal(exact_cents.denominator) / 100
    return dollars.quantize(LOSS_QUANTUM, rounding=ROUND_HALF_EVEN)


def quantize_half_up(value: Decimal) -> int:
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def allocate_cents(amount_cents: int, weights: Sequence[int]) -> list[int]:
    """Split ``amount_cents`` proportionally to ``weights``.

    Shares are rounded half-even and the remainder is handed out one cent at a
    time to the shares whose rounding moved them furthest from their exact
    value, so the result always sums to ``amount_cents``.
    """
    if amount_cents < 0:
        raise ValueError("amount_cents must be non-negative")
    if not weights:
        raise ValueError("weights must not be empty")
    if any(w < 0 for w in weights):
        raise ValueError("weights must be non-negative")

    total_weight = sum(weights)
    if total_weight == 0:
        raise ValueError("weights must not all be zero")

    exact = [Fraction(amount_cents * w, total_weight) for w in weights]
    shares = [round_fraction(value) for value in exact]
    remainder = amount_cents - sum(shares)

    step = 1 if remainder > 0 else -1
    while remainder != 0:
        if step > 0:
            idx = max(range(len(shares)), key=lambda i: (exact[i] - shares[i], -i))
        else:
            candidates = [i for i in range(len(shares)) if shares[i] > 0]
            idx = max(candidates, key=lambda i: (shares[i] - exact[i], -i))
        shares[idx] += step
        remainder -= step

    return shares


class PrecisionTracker:
    """Collects rounding operations and fractional-cent issues for one calculation."""

    def __init__(self, tolerance_cents: int = 1) -> None:
        self._tolerance_cents = tolerance_cents
        self._operations: list[RoundingOperation] = []
        self._issues: list[FractionalCentIssue] = []

    @property
    def operations(self) -> tuple[RoundingOperation, ...]:
        return tuple(self._operations)

    @property
    def issues(self) -> tuple[FractionalCentIssue, ...]:
        return tuple(self._issues)

    def resolve(self, operation: str, exact_cents: Fraction) -> int:
        rounded = round_fraction(exact_cents)
        self.record(operation, exact_cents, rounded)
        return rounded

    def record(self, operation: str, exact_cents: Fraction, final_cents: int, mode: str = "half_even") -> None:
        if exact_cents == final_cents:
            return
        self._operations.append(
            RoundingOperation(
                step=len(self._operations) + 1,
                operation=operation,
                original_value=fraction_to_decimal(exact_cents),
                rounded_cents=final_cents,
                rounding_mode=mode,
                precision_loss=fraction_to_decimal(abs(exact_cents - final_cents)),
            )
        )

    def flag_fractional(
        self,
        participant_id: str,
        participant_name: str,
        original: Decimal,
        adjusted_cents: int,
        reason: str = "fractional cent precision correction",
    ) -> None:
        self._issues.append(
            FractionalCentIssue(
                participant_id=participant_id,
                participant_name=participant_name,
                original_amount=original,
                adjusted_cents=adjusted_cents,
                reason=reason,
            )
        )

    def report(self) -> PrecisionReport:
        losses = [op.precision_loss for op in self._operations]
        max_loss = max(losses, default=Decimal("0"))
        tolerance = from_cents(self._tolerance_cents)
        return PrecisionReport(
            original_precision=DECIMAL_PRECISION,
            rounding_operations=tuple(self._operations),
            cumulative_precision_loss=sum(losses, Decimal("0")),
            max_precision_loss=max_loss,
            is_within_tolerance=max_loss <= tolerance,
            fractional_cent_issues=tuple(self._issues),
        )
