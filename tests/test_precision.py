from decimal import Decimal
from fractions import Fraction

import pytest

from potsettle.errors import InvalidAmountError, SettlementErrorCode
from potsettle.services.precision import (
    PrecisionTracker,
    allocate_cents,
    add_cents,
    format_cents,
    format_money,
    from_cents,
    has_fractional_cents,
    subtract_cents,
    sum_cents,
    to_cents,
    to_decimal,
)


def test_to_cents_rounds_half_even():
    assert to_cents("10.005") == 1000
    assert to_cents("10.015") == 1002
    assert to_cents(0.1) == 10
    assert to_cents(Decimal("-40")) == -4000


def test_formatting():
    assert from_cents(1234) == Decimal("12.34")
    assert format_cents(5) == "0.05"
    assert format_money(-1234) == "-$12.34"
    assert format_money(25000) == "$250.00"


def test_invalid_amounts():
    for value in ("abc", float("nan"), float("inf"), True):
        with pytest.raises(InvalidAmountError) as exc_info:
            to_decimal(value)
        assert exc_info.value.code is SettlementErrorCode.INVALID_AMOUNT


def test_fractional_cents_detection():
    assert has_fractional_cents("133.333")
    assert not has_fractional_cents("133.33")


def test_allocate_even():
    assert allocate_cents(1000, [1, 2, 3, 4]) == [100, 200, 300, 400]


def test_allocate_remainder():
    shares = allocate_cents(1001, [1, 1, 1])
    assert sum(shares) == 1001
    assert sorted(shares) == [333, 334, 334]


def test_allocate_rejects_bad_weights():
    with pytest.raises(ValueError):
        allocate_cents(100, [])
    with pytest.raises(ValueError):
        allocate_cents(100, [0, 0])


def test_tracker_reports_rounding():
    tracker = PrecisionTracker(tolerance_cents=1)

    assert tracker.resolve("third of $10", Fraction(1000, 3)) == 333
    assert tracker.resolve("exact", Fraction(500)) == 500

    report = tracker.report()
    assert len(report.rounding_operations) == 1
    assert report.rounding_operations[0].original_value == Decimal("3.333333")
    assert report.max_precision_loss == Decimal("0.003333")
    assert report.is_within_tolerance
    assert report.original_precision == 2


def test_cent_arithmetic_stays_exact():
    # 0.1 + 0.2 drifts as float; in cents it does not
    assert add_cents(to_cents("0.1"), to_cents("0.2")) == to_cents("0.3")
    assert subtract_cents(1000, 333) == 667
    assert sum_cents([to_cents("133.34"), to_cents("133.33"), to_cents("133.33")]) == 40000
