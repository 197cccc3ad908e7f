from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any, Callable, Optional, Sequence

from potsettle.cache import SettlementCache, cache_key
from potsettle.config import Settings, get_settings
from potsettle.errors import OptimizationError, ProofError, SettlementEngineError, SettlementWarningCode
from potsettle.logging import get_logger
from potsettle.models import (
    ComparisonOptions,
    MathematicalProof,
    OptimizationMetrics,
    OptimizationOptions,
    OptimizedSettlement,
    ParticipantPosition,
    PaymentPlanEntry,
    ProofIntegrityResult,
    SettlementAlgorithmType,
    SettlementComparison,
    SettlementValidation,
    SettlementWarning,
)
from potsettle.services.comparison import AlternativeComparator
from potsettle.services.positions import ensure_settleable
from potsettle.services.precision import PrecisionTracker
from potsettle.services.proof import ProofGenerator
from potsettle.services.settlement import direct_settlement, estimate_cost_ms, run_algorithm
from potsettle.services.validation import MathematicalValidator

TIMEOUT_NOTICE = "Optimization timeout - using direct settlement fallback"


class SettlementOptimizer:
    """Optimize, compare and validate settlement plans.

    Instances hold no per-session state apart from the result cache, so one
    optimizer can serve many sessions concurrently.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        validator: Optional[MathematicalValidator] = None,
        proof_generator: Optional[ProofGenerator] = None,
        comparator: Optional[AlternativeComparator] = None,
        cache: Optional[SettlementCache[Any]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings or get_settings()
        self.validator = validator or MathematicalValidator.from_settings(self.settings)
        self.proof_generator = proof_generator or ProofGenerator(self.settings, validator=self.validator)
        self.comparator = comparator or AlternativeComparator(self.settings, self.validator, clock=clock)
        self.cache: SettlementCache[Any] = cache if cache is not None else SettlementCache()
        self._clock = clock
        self._log = get_logger(__name__)

    def optimize(
        self,
        session_id: str,
        positions: Sequence[ParticipantPosition],
        options: Optional[OptimizationOptions] = None,
    ) -> OptimizedSettlement:
        options = options or OptimizationOptions()
        positions = tuple(positions)
        minimum = options.minimum_transaction_cents or self.settings.minimum_transaction_cents
        budget = options.time_budget_ms or self.settings.time_budget_ms

        self._log.info(
            "settlement.optimize.start",
            session_id=session_id,
            participants=len(positions),
            algorithm=options.algorithm.value,
        )
        ensure_settleable(positions, self.settings.aggregate_tolerance_cents)

        key = cache_key(
            session_id,
            positions,
            {
                "kind": "optimize",
                "algorithm": options.algorithm.value,
                "minimum_cents": minimum,
                "proof": options.include_proof,
            },
        )
        if options.use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                self._log.info("settlement.cache.hit", session_id=session_id)
                return cached

        try:
            result = self._optimize(session_id, positions, options.algorithm, minimum, budget, options.include_proof)
        except SettlementEngineError:
            raise
        except Exception as exc:
            self._log.exception("settlement.optimize.failed", session_id=session_id)
            raise OptimizationError(
                f"settlement optimization failed: {exc}",
                details={"session_id": session_id},
            ) from exc

        self.cache.put(key, result)
        self._log.info(
            "settlement.optimize.completed",
            session_id=session_id,
            algorithm=result.algorithm.value,
            payments=len(result.optimized_payments),
            reduction=result.metrics.reduction_percentage,
            elapsed_ms=round(result.metrics.processing_time_ms, 3),
            fallback=result.used_fallback,
        )
        return result

    def _optimize(
        self,
        session_id: str,
        positions: tuple[ParticipantPosition, ...],
        algorithm: SettlementAlgorithmType,
        minimum: int,
        budget: float,
        include_proof: bool,
    ) -> OptimizedSettlement:
        started = self._clock()

        def elapsed_ms() -> float:
            return (self._clock() - started) * 1000

        limit = self.settings.exhaustive_search_limit
        tracker = PrecisionTracker(self.settings.tolerance_cents)
        direct = direct_settlement(positions, minimum, tracker)

        payments: tuple[PaymentPlanEntry, ...] = direct
        used_fallback = False
        bound_exceeded = False

        if algorithm is not SettlementAlgorithmType.DIRECT_SETTLEMENT:
            # algorithms cannot be interrupted, so the budget is checked before and after
            estimate = estimate_cost_ms(algorithm, positions, limit)
            if estimate > budget - elapsed_ms():
                used_fallback = True
                self._log.warning(
                    "settlement.optimize.fallback",
                    session_id=session_id,
                    reason="estimate",
                    estimate_ms=round(estimate, 2),
                )
            else:
                outcome = run_algorithm(algorithm, positions, minimum, limit)
                if elapsed_ms() > budget:
                    used_fallback = True
                    self._log.warning(
                        "settlement.optimize.fallback",
                        session_id=session_id,
                        reason="timeout",
                        elapsed_ms=round(elapsed_ms(), 2),
                    )
                else:
                    payments = outcome.payments
                    bound_exceeded = outcome.bound_exceeded

        used = SettlementAlgorithmType.DIRECT_SETTLEMENT if used_fallback else algorithm
        manual = used is SettlementAlgorithmType.MANUAL_SETTLEMENT
        total = sum(p.amount_cents for p in payments)

        if manual:
            metrics = OptimizationMetrics(len(direct), 0, 0.0, 0, elapsed_ms())
        else:
            metrics = OptimizationMetrics.compute(len(direct), len(payments), total, elapsed_ms())

        validation = self.validator.validate(
            positions,
            payments,
            allow_outstanding=manual,
            metrics=None if manual else metrics,
            time_budget_ms=budget,
            minimum_transaction_cents=minimum,
        )
        extra: list[SettlementWarning] = []
        if used_fallback:
            extra.append(SettlementWarning(code=SettlementWarningCode.OPTIMIZATION_TIMEOUT, message=TIMEOUT_NOTICE))
        if bound_exceeded:
            extra.append(
                SettlementWarning(
                    code=SettlementWarningCode.SEARCH_BOUND_EXCEEDED,
                    message=f"more than {limit} participants, minimum not proven",
                )
            )
        if extra:
            validation = dataclasses.replace(validation, warnings=validation.warnings + tuple(extra))

        # direct-share roundings belong to the proof only when the direct plan is the one proven
        proof_tracker = tracker
        if used is not SettlementAlgorithmType.DIRECT_SETTLEMENT:
            proof_tracker = PrecisionTracker(self.settings.tolerance_cents)

        if not validation.is_valid:
            self._log.error(
                "settlement.optimize.invalid",
                session_id=session_id,
                codes=[c.value for c in validation.error_codes],
            )
            validation.raise_for_errors()

        proof: Optional[MathematicalProof] = None
        if include_proof:
            try:
                proof = self.proof_generator.generate(
                    session_id, positions, payments, used, metrics, proof_tracker, validation, minimum
                )
            except SettlementEngineError:
                raise
            except (ValueError, TypeError, ArithmeticError) as exc:
                raise ProofError(f"proof generation failed: {exc}", details={"session_id": session_id}) from exc

        return OptimizedSettlement(
            session_id=session_id,
            algorithm=used,
            positions=positions,
            optimized_payments=payments,
            direct_payments=direct,
            metrics=metrics,
            is_valid=validation.is_valid,
            validation=validation,
            validation_errors=(TIMEOUT_NOTICE,) if used_fallback else (),
            proof=proof,
            used_fallback=used_fallback,
            bound_exceeded=bound_exceeded,
        )

    def compare_alternatives(
        self,
        session_id: str,
        positions: Sequence[ParticipantPosition],
        options: Optional[ComparisonOptions] = None,
    ) -> SettlementComparison:
        options = options or ComparisonOptions()
        positions = tuple(positions)
        self._log.info("comparison.start", session_id=session_id, participants=len(positions))
        ensure_settleable(positions, self.settings.aggregate_tolerance_cents)

        try:
            return self.comparator.compare(session_id, positions, options)
        except SettlementEngineError:
            raise
        except Exception as exc:
            self._log.exception("comparison.failed", session_id=session_id)
            raise OptimizationError(
                f"settlement comparison failed: {exc}",
                details={"session_id": session_id},
            ) from exc

    def validate(
        self,
        positions: Sequence[ParticipantPosition],
        payments: Sequence[PaymentPlanEntry],
        *,
        strict: bool = False,
    ) -> SettlementValidation:
        """Check a plan against positions. With ``strict`` blocking errors raise."""
        validation = self.validator.validate(positions, payments)
        if strict:
            validation.raise_for_errors()
        return validation

    def verify_proof_integrity(self, proof: MathematicalProof) -> ProofIntegrityResult:
        return self.proof_generator.verify_proof_integrity(proof)

    def clear_cache(self, session_id: Optional[str] = None) -> int:
        dropped = self.cache.clear(session_id)
        self._log.info("settlement.cache.cleared", session_id=session_id, dropped=dropped)
        return dropped

    async def aoptimize(
        self,
        session_id: str,
        positions: Sequence[ParticipantPosition],
        options: Optional[OptimizationOptions] = None,
    ) -> OptimizedSettlement:
        return await asyncio.to_thread(self.optimize, session_id, positions, options)

    async def acompare_alternatives(
        self,
        session_id: str,
        positions: Sequence[ParticipantPosition],
        options: Optional[ComparisonOptions] = None,
    ) -> SettlementComparison:
        return await asyncio.to_thread(self.compare_alternatives, session_id, positions, options)
