import pytest

from potsettle.errors import SettlementErrorCode, SettlementValidationError, SettlementWarningCode
from potsettle.models import OptimizationMetrics, ParticipantPosition, PaymentPlanEntry, Severity
from potsettle.services.settlement import greedy_debt_reduction
from potsettle.services.validation import DiscrepancyThresholds, MathematicalValidator


def make_positions(*amounts):
    return [
        ParticipantPosition(id=f"p{i}", display_name=f"Player {i}", net_cents=amount)
        for i, amount in enumerate(amounts, start=1)
    ]


def pay(from_id, to_id, amount_cents, priority=1):
    return PaymentPlanEntry(
        from_id=from_id,
        from_name=from_id,
        to_id=to_id,
        to_name=to_id,
        amount_cents=amount_cents,
        priority=priority,
    )


def test_valid_plan_has_full_audit_trail():
    validator = MathematicalValidator()
    positions = make_positions(10000, -4000, -6000)

    validation = validator.validate(positions, greedy_debt_reduction(positions))

    assert validation.is_valid
    assert validation.can_proceed
    assert validation.errors == ()
    descriptions = [step.description for step in validation.audit_trail]
    assert "compute total debits" in descriptions
    assert "compute total credits" in descriptions
    assert "validate balance for Player 2" in descriptions
    assert all(step.is_valid for step in validation.audit_trail)
    assert [step.step_number for step in validation.audit_trail] == list(range(1, len(descriptions) + 1))


def test_unbalanced_positions_are_blocking():
    validator = MathematicalValidator()
    positions = make_positions(15000, 15000)

    validation = validator.validate(positions, [])

    assert not validation.is_valid
    assert validation.errors[0].code is SettlementErrorCode.UNBALANCED_POSITIONS
    assert validation.errors[0].severity is Severity.CRITICAL
    with pytest.raises(SettlementValidationError) as exc_info:
        validation.raise_for_errors()
    assert exc_info.value.code is SettlementErrorCode.UNBALANCED_POSITIONS
    assert exc_info.value.validation is validation


def test_wrong_amount_is_reported_per_player():
    validator = MathematicalValidator()
    positions = make_positions(10000, -4000, -6000)
    plan = [pay("p3", "p1", 6000, 1), pay("p2", "p1", 3000, 2)]

    validation = validator.validate(positions, plan)

    assert not validation.is_valid
    codes = validation.error_codes
    assert SettlementErrorCode.MATHEMATICAL_BALANCE_FAILED in codes
    mismatched = [e for e in validation.errors if e.code is SettlementErrorCode.PLAYER_POSITION_MISMATCH]
    assert sorted(e.affected_players[0] for e in mismatched) == ["p1", "p2"]
    assert all(e.suggested_fix for e in validation.errors)


def test_structural_payment_errors():
    validator = MathematicalValidator(minimum_transaction_cents=100)
    positions = make_positions(5000, -5000)
    plan = [
        pay("p1", "p1", 500, 1),
        pay("p2", "ghost", 500, 2),
        pay("p2", "p1", 50, 3),
    ]

    codes = validator.validate(positions, plan).error_codes

    assert SettlementErrorCode.SELF_PAYMENT in codes
    assert SettlementErrorCode.UNKNOWN_PARTICIPANT in codes
    assert SettlementErrorCode.BELOW_MINIMUM_AMOUNT in codes


def test_minimum_can_be_lowered_per_call():
    validator = MathematicalValidator(minimum_transaction_cents=100)
    positions = make_positions(10050, -10000, -50)
    plan = [pay("p2", "p1", 10000, 1), pay("p3", "p1", 50, 2)]

    assert validator.validate(positions, plan).error_codes == (SettlementErrorCode.BELOW_MINIMUM_AMOUNT,)
    assert validator.validate(positions, plan, minimum_transaction_cents=1).is_valid


def test_drift_within_tolerance_is_a_warning():
    validator = MathematicalValidator()
    positions = make_positions(5001, -5000)

    validation = validator.validate(positions, [pay("p2", "p1", 5000)])

    assert validation.is_valid
    assert [w.code for w in validation.warnings] == [SettlementWarningCode.BALANCE_DISCREPANCY]
    assert validation.warnings[0].balance_discrepancy_cents == 1


def test_outstanding_balances_are_classified():
    validator = MathematicalValidator()

    major = validator.validate(make_positions(300, -300), [], allow_outstanding=True)
    assert major.is_valid
    assert major.can_proceed
    assert {w.code for w in major.warnings} == {SettlementWarningCode.OUTSTANDING_BALANCE}
    assert all(w.severity is Severity.MAJOR for w in major.warnings)

    critical = validator.validate(make_positions(1000, -1000), [], allow_outstanding=True)
    assert critical.is_valid
    assert not critical.can_proceed
    assert all(w.severity is Severity.CRITICAL and not w.can_proceed for w in critical.warnings)


def test_thresholds():
    thresholds = DiscrepancyThresholds()
    assert thresholds.classify(5) is Severity.MINOR
    assert thresholds.classify(-11) is Severity.MINOR
    assert thresholds.classify(101) is Severity.MAJOR
    assert thresholds.classify(-501) is Severity.CRITICAL


def test_metric_warnings():
    validator = MathematicalValidator()
    positions = make_positions(3000, -1000, -1000, -1000)
    plan = greedy_debt_reduction(positions)
    metrics = OptimizationMetrics.compute(3, 3, 3000, 2500.0)

    validation = validator.validate(positions, plan, metrics=metrics, time_budget_ms=2000)

    assert validation.is_valid
    codes = {w.code for w in validation.warnings}
    assert codes == {
        SettlementWarningCode.PERFORMANCE_DEGRADATION,
        SettlementWarningCode.INSUFFICIENT_OPTIMIZATION,
    }


def test_balance_verification_totals():
    validator = MathematicalValidator()
    positions = make_positions(13334, 13333, 13333, -20000, -20000)

    balance = validator.balance_verification(positions, greedy_debt_reduction(positions))

    assert balance.total_debits_cents == 40000
    assert balance.total_credits_cents == 40000
    assert balance.net_balance_cents == 0
    assert balance.is_balanced
    assert balance.precision == 2
