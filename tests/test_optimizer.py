import asyncio

import pytest

from potsettle.config import Settings
from potsettle.errors import (
    DuplicateParticipantError,
    OptimizationError,
    SettlementErrorCode,
    SettlementValidationError,
    SettlementWarningCode,
    UnbalancedPositionsError,
)
from potsettle.models import ComparisonOptions, OptimizationOptions, ParticipantPosition, SettlementAlgorithmType
from potsettle.services.optimizer import TIMEOUT_NOTICE, SettlementOptimizer
from potsettle.services.validation import MathematicalValidator, residuals

Algo = SettlementAlgorithmType


class StepClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class BrokenValidator(MathematicalValidator):
    def validate(self, positions, payments, **kwargs):
        raise RuntimeError("boom")


def make_positions(*amounts):
    return [
        ParticipantPosition(id=f"p{i}", display_name=f"Player {i}", net_cents=amount)
        for i, amount in enumerate(amounts, start=1)
    ]


def make_optimizer(**kwargs):
    return SettlementOptimizer(Settings(), **kwargs)


def test_three_participants():
    positions = make_positions(10000, -4000, -6000)

    result = make_optimizer().optimize("s1", positions)

    assert result.algorithm is Algo.GREEDY_DEBT_REDUCTION
    assert sorted(p.amount_cents for p in result.optimized_payments) == [4000, 6000]
    assert all(v == 0 for v in residuals(positions, result.optimized_payments).values())
    assert result.is_valid
    assert result.metrics.original_payment_count == 2
    assert result.metrics.reduction_percentage == 0.0
    assert result.metrics.total_amount_settled_cents == 10000
    assert result.proof is not None and result.proof.is_valid
    assert result.validation_errors == ()


def test_eight_participants_one_payment():
    positions = make_positions(0, 0, 25000, 0, 0, -25000, 0, 0)

    result = make_optimizer().optimize("s1", positions)

    assert len(result.optimized_payments) == 1
    assert result.optimized_payments[0].amount_cents == 25000


def test_break_even_and_single_participant():
    optimizer = make_optimizer()

    zeros = optimizer.optimize("s1", make_positions(0, 0, 0, 0))
    single = optimizer.optimize("s2", make_positions(0))

    for result in (zeros, single):
        assert result.optimized_payments == ()
        assert result.metrics.reduction_percentage == 0
        assert result.is_valid


def test_thirds_reduce_against_direct():
    positions = make_positions(13334, 13333, 13333, -20000, -20000)

    result = make_optimizer().optimize("s1", positions)

    assert result.metrics.original_payment_count == 6
    assert result.metrics.optimized_payment_count == 4
    assert result.metrics.reduction_percentage == pytest.approx(33.33)
    assert result.proof.precision_analysis.is_within_tolerance


def test_proof_rounding_belongs_to_proven_plan():
    positions = make_positions(13334, 13333, 13333, -20000, -20000)
    optimizer = make_optimizer()

    greedy = optimizer.optimize("s1", positions)
    direct = optimizer.optimize("s1", positions, OptimizationOptions(algorithm=Algo.DIRECT_SETTLEMENT))

    assert greedy.proof.precision_analysis.rounding_operations == ()
    assert direct.proof.precision_analysis.rounding_operations


def test_per_call_minimum_reaches_validation():
    optimizer = SettlementOptimizer(Settings(minimum_transaction_cents=100))
    positions = make_positions(10050, -10000, -50)

    result = optimizer.optimize("s1", positions, OptimizationOptions(minimum_transaction_cents=1))

    assert result.is_valid
    assert sorted(p.amount_cents for p in result.optimized_payments) == [50, 10000]
    assert result.proof.consensus

    comparison = optimizer.compare_alternatives("s1", positions, ComparisonOptions(minimum_transaction_cents=1))
    assert all(a.is_valid for a in comparison.alternatives)


def test_unbalanced_input_rejected_before_algorithms():
    optimizer = make_optimizer()

    with pytest.raises(UnbalancedPositionsError) as exc_info:
        optimizer.optimize("s1", make_positions(15000, 15000))
    assert exc_info.value.code is SettlementErrorCode.UNBALANCED_POSITIONS
    assert optimizer.cache.size == 0


def test_duplicate_participants_rejected():
    positions = [ParticipantPosition("a", "Alice", 100), ParticipantPosition("a", "Alice", -100)]
    with pytest.raises(DuplicateParticipantError):
        make_optimizer().optimize("s1", positions)


def test_validate_strict_raises_on_imbalance():
    optimizer = make_optimizer()
    positions = make_positions(15000, 15000)

    assert not optimizer.validate(positions, []).is_valid
    with pytest.raises(SettlementValidationError) as exc_info:
        optimizer.validate(positions, [], strict=True)
    assert exc_info.value.code is SettlementErrorCode.UNBALANCED_POSITIONS


def test_repeat_call_hits_cache():
    optimizer = make_optimizer()
    positions = make_positions(3000, 1000, -2500, -1500)

    first = optimizer.optimize("s1", positions)
    second = optimizer.optimize("s1", list(reversed(positions)))

    assert second is first
    assert optimizer.cache.hits == 1
    assert optimizer.cache.misses == 1


def test_identical_input_gives_identical_plan_without_cache():
    optimizer = make_optimizer()
    positions = make_positions(3000, 1000, -2500, -1500)
    options = OptimizationOptions(use_cache=False)

    first = optimizer.optimize("s1", positions, options)
    second = optimizer.optimize("s1", positions, options)

    assert first.optimized_payments == second.optimized_payments


def test_clear_cache_per_session():
    optimizer = make_optimizer()
    positions = make_positions(3000, -3000)
    optimizer.optimize("s1", positions)
    optimizer.optimize("s2", positions)

    assert optimizer.clear_cache("s1") == 1
    assert optimizer.cache.size == 1

    optimizer.optimize("s1", positions)
    assert optimizer.cache.misses == 3
    assert optimizer.clear_cache() == 2
    assert optimizer.cache.size == 0


def test_timeout_falls_back_to_direct():
    optimizer = make_optimizer(clock=StepClock(1.5))
    positions = make_positions(3000, 1000, -2500, -1500)

    result = optimizer.optimize("s1", positions)

    assert result.used_fallback
    assert result.algorithm is Algo.DIRECT_SETTLEMENT
    assert result.optimized_payments == result.direct_payments
    assert result.validation_errors == (TIMEOUT_NOTICE,)
    assert result.is_valid
    codes = {w.code for w in result.validation.warnings}
    assert SettlementWarningCode.OPTIMIZATION_TIMEOUT in codes
    assert all(v == 0 for v in residuals(positions, result.optimized_payments).values())


def test_expensive_algorithm_is_not_started():
    optimizer = make_optimizer(clock=StepClock(0.0))
    positions = make_positions(*([100] * 6 + [-100] * 6))

    result = optimizer.optimize(
        "s1", positions, OptimizationOptions(algorithm=Algo.MINIMAL_TRANSACTIONS, time_budget_ms=10)
    )

    assert result.used_fallback
    assert result.algorithm is Algo.DIRECT_SETTLEMENT


def test_minimal_transactions_bound_exceeded():
    positions = make_positions(*([100] * 7 + [-100] * 7))

    result = make_optimizer(clock=StepClock(0.0)).optimize(
        "s1", positions, OptimizationOptions(algorithm=Algo.MINIMAL_TRANSACTIONS)
    )

    assert result.bound_exceeded
    assert not result.used_fallback
    assert SettlementWarningCode.SEARCH_BOUND_EXCEEDED in {w.code for w in result.validation.warnings}


def test_manual_settlement_returns_empty_plan():
    result = make_optimizer().optimize(
        "s1",
        make_positions(300, -300),
        OptimizationOptions(algorithm=Algo.MANUAL_SETTLEMENT, include_proof=False),
    )

    assert result.optimized_payments == ()
    assert result.proof is None
    assert result.metrics.reduction_percentage == 0.0
    assert {w.code for w in result.validation.warnings} == {SettlementWarningCode.OUTSTANDING_BALANCE}


def test_internal_failure_becomes_typed_error():
    optimizer = make_optimizer(validator=BrokenValidator())

    with pytest.raises(OptimizationError) as exc_info:
        optimizer.optimize("s1", make_positions(3000, -3000))
    assert exc_info.value.code is SettlementErrorCode.OPTIMIZATION_FAILED
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_proof_integrity_through_facade():
    optimizer = make_optimizer()
    result = optimizer.optimize("s1", make_positions(10000, -4000, -6000))

    assert optimizer.verify_proof_integrity(result.proof).is_valid


def test_compare_alternatives_validates_input():
    optimizer = make_optimizer()

    comparison = optimizer.compare_alternatives("s1", make_positions(10000, -4000, -6000))
    assert comparison.session_id == "s1"
    assert comparison.alternatives

    with pytest.raises(UnbalancedPositionsError):
        optimizer.compare_alternatives("s1", make_positions(100, 100))


@pytest.mark.asyncio
async def test_concurrent_sessions():
    optimizer = make_optimizer()

    first, second = await asyncio.gather(
        optimizer.aoptimize("s1", make_positions(10000, -4000, -6000)),
        optimizer.aoptimize("s2", make_positions(0, 25000, -25000)),
    )

    assert len(first.optimized_payments) == 2
    assert len(second.optimized_payments) == 1
    assert optimizer.cache.size == 2


@pytest.mark.asyncio
async def test_async_comparison():
    optimizer = make_optimizer()

    comparison = await optimizer.acompare_alternatives("s1", make_positions(3000, 1000, -2500, -1500))

    assert comparison.summary.total_options_generated >= 1
