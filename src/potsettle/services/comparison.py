from __future__ import annotations

import math
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Sequence

from potsettle.config import Settings, get_settings
from potsettle.errors import OptimizationError, SettlementErrorCode
from potsettle.logging import get_logger
from potsettle.models import (
    AlternativeSettlement,
    ComparisonMetric,
    ComparisonOptions,
    ComparisonSummary,
    ExcludedAlgorithm,
    OptimizationMetrics,
    ParticipantPosition,
    PaymentPlanEntry,
    SettlementAlgorithmType,
    SettlementComparison,
    SettlementRecommendation,
)
from potsettle.services.settlement import direct_settlement, estimate_cost_ms, run_algorithm
from potsettle.services.validation import MathematicalValidator

Algo = SettlementAlgorithmType

ALL_ALGORITHMS = (
    Algo.GREEDY_DEBT_REDUCTION,
    Algo.DIRECT_SETTLEMENT,
    Algo.HUB_BASED,
    Algo.BALANCED_FLOW,
    Algo.MINIMAL_TRANSACTIONS,
    Algo.MANUAL_SETTLEMENT,
)

NAMES = {
    Algo.GREEDY_DEBT_REDUCTION: ("Optimized settlement", "Largest debts are matched with largest credits first"),
    Algo.DIRECT_SETTLEMENT: ("Direct settlement", "Every debtor pays every creditor their proportional share"),
    Algo.HUB_BASED: ("Banker settlement", "One participant collects and pays out all money"),
    Algo.BALANCED_FLOW: ("Balanced flow", "Smaller debts are cleared first against the largest credits"),
    Algo.MINIMAL_TRANSACTIONS: ("Fewest payments", "Searches for the smallest possible number of payments"),
    Algo.MANUAL_SETTLEMENT: ("Manual settlement", "Participants settle among themselves outside the app"),
}

WEIGHT_KEYS = ("simplicity", "fairness", "efficiency", "user_friendliness")

# name, description, weight, display format
MATRIX = (
    ("Transaction Count", "Number of payments required", 0.25, "number"),
    ("Optimization %", "Percentage reduction in transactions", 0.20, "percentage"),
    ("Simplicity Score", "How easy to understand (1-10)", 0.20, "number"),
    ("Fairness Score", "How balanced the payments are (1-10)", 0.15, "number"),
    ("Calculation Time", "Time taken to generate option", 0.10, "time"),
    ("Overall Score", "Combined weighted score (1-10)", 0.10, "number"),
)

CLOSE_SCORE_GAP = 1.0
SMALL_SESSION = 4
MEDIUM_SESSION = 8
LARGE_PAYMENT_CENTS = 10000


# factor and overall scores live on a 1-10 scale
def _clamp(value: float, low: float = 1.0, high: float = 10.0) -> float:
    return max(low, min(high, value))


def simplicity_score(transaction_count: int, participant_count: int) -> float:
    pairs = participant_count * (participant_count - 1)
    if pairs == 0:
        return 10.0
    return _clamp(10 - transaction_count / pairs * 9)


def fairness_score(payments: Sequence[PaymentPlanEntry]) -> float:
    if len(payments) < 2:
        return 10.0
    amounts = [p.amount_cents for p in payments]
    avg = sum(amounts) / len(amounts)
    variance = sum((a - avg) ** 2 for a in amounts) / len(amounts)
    return _clamp(10 - variance / (avg * avg) * 2)


def efficiency_score(reduction_percentage: float, calculation_time_ms: float) -> float:
    speed = max(1.0, 10 - calculation_time_ms / 1000)
    return _clamp((reduction_percentage / 10 + speed) / 2)


def user_friendliness_score(payments: Sequence[PaymentPlanEntry]) -> float:
    if not payments:
        return 10.0
    amounts = [p.amount_cents for p in payments]
    avg_dollars = sum(amounts) / len(amounts) / 100
    score = max(1.0, 10 - abs(math.log10(avg_dollars)) * 2)
    if any(a < 100 for a in amounts):
        score -= 1
    if any(a > LARGE_PAYMENT_CENTS for a in amounts):
        score -= 0.5
    return _clamp(score)


def overall_score(factors: Mapping[str, float], weights: Mapping[str, float]) -> float:
    total_weight = sum(weights.values())
    weighted = sum(factors[k] * weights[k] for k in WEIGHT_KEYS)
    return round(_clamp(weighted / total_weight), 2)


def pros_and_cons(
    algorithm: SettlementAlgorithmType,
    transaction_count: int,
    optimization_percentage: float,
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    few = transaction_count <= 3

    if algorithm is Algo.GREEDY_DEBT_REDUCTION:
        pros = [
            "Reduces transaction count significantly" if optimization_percentage > 50 else "Some transaction reduction",
            "Fast calculation",
        ]
        if optimization_percentage > 75:
            pros.append("Excellent optimization efficiency")
        cons = ["May create uneven payment amounts", "Less intuitive than direct settlement"]
        if optimization_percentage < 25:
            cons.append("Limited optimization benefit")
        return tuple(pros), tuple(cons)

    if algorithm is Algo.DIRECT_SETTLEMENT:
        return (
            ("Easy to understand", "Each participant knows exactly what they owe or receive"),
            ("Maximum number of transactions", "Can be tedious with many participants"),
        )

    if algorithm is Algo.HUB_BASED:
        return (
            (
                "Centralizes transactions through one participant",
                "Very few total transactions" if few else "Reduces transaction count",
            ),
            ("One participant handles every transfer", "Central participant needs sufficient funds"),
        )

    if algorithm is Algo.BALANCED_FLOW:
        return (
            ("Clears small debts first", "Good optimization"),
            ("May still require multiple transactions",),
        )

    if algorithm is Algo.MINIMAL_TRANSACTIONS:
        return (
            (
                "Minimum number of transactions",
                "Very few transactions needed" if few else "Significant transaction reduction",
            ),
            ("May create unusual payment amounts", "Longer calculation time"),
        )

    return (
        ("Maximum transparency", "Participants can follow each step"),
        ("Payments are not planned", "Balances must be tracked by hand"),
    )


def _hub_name(payments: Sequence[PaymentPlanEntry]) -> str:
    # the hub is the one participant in every payment
    common = {payments[0].from_id, payments[0].to_id}
    names = {payments[0].from_id: payments[0].from_name, payments[0].to_id: payments[0].to_name}
    for payment in payments[1:]:
        common &= {payment.from_id, payment.to_id}
    hub_id = next((pid for pid in names if pid in common), payments[0].from_id)
    return names[hub_id]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlternativeComparator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        validator: Optional[MathematicalValidator] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings or get_settings()
        self.validator = validator or MathematicalValidator.from_settings(self.settings)
        self._clock = clock
        self._log = get_logger(__name__)

    def _weights(self, overrides: Optional[Mapping[str, float]]) -> dict[str, float]:
        weights = dict(self.settings.weights)
        for key, value in (overrides or {}).items():
            if key in weights:
                weights[key] = max(0.0, float(value))
        if sum(weights.values()) <= 0:
            return dict(self.settings.weights)
        return weights

    def compare(
        self,
        session_id: str,
        positions: Sequence[ParticipantPosition],
        options: Optional[ComparisonOptions] = None,
    ) -> SettlementComparison:
        options = options or ComparisonOptions()
        algorithms = tuple(dict.fromkeys(options.algorithms or ALL_ALGORITHMS))
        weights = self._weights(options.weights)
        minimum = options.minimum_transaction_cents or self.settings.minimum_transaction_cents
        budget = options.time_budget_ms or self.settings.time_budget_ms
        share = budget / len(algorithms)
        limit = self.settings.exhaustive_search_limit

        direct_count = len(direct_settlement(positions, minimum))

        alternatives: list[AlternativeSettlement] = []
        excluded: list[ExcludedAlgorithm] = []

        for algorithm in algorithms:
            estimate = estimate_cost_ms(algorithm, positions, limit)
            if estimate > share:
                excluded.append(
                    ExcludedAlgorithm(algorithm, f"estimated {estimate:.0f}ms exceeds its {share:.0f}ms share")
                )
                self._log.warning(
                    "comparison.algorithm.excluded",
                    session_id=session_id,
                    algorithm=algorithm.value,
                    reason="estimate",
                    estimate_ms=round(estimate, 2),
                    share_ms=round(share, 2),
                )
                continue

            started = self._clock()
            result = run_algorithm(algorithm, positions, minimum, limit)
            elapsed = (self._clock() - started) * 1000

            if elapsed > share:
                excluded.append(
                    ExcludedAlgorithm(algorithm, f"took {elapsed:.0f}ms, over its {share:.0f}ms share")
                )
                self._log.warning(
                    "comparison.algorithm.excluded",
                    session_id=session_id,
                    algorithm=algorithm.value,
                    reason="elapsed",
                    elapsed_ms=round(elapsed, 2),
                    share_ms=round(share, 2),
                )
                continue

            alternatives.append(
                self._score(algorithm, result.payments, positions, direct_count, elapsed, weights, share, minimum)
            )

        if not alternatives:
            raise OptimizationError(
                "no settlement algorithm fit in the time budget",
                code=SettlementErrorCode.NO_ALTERNATIVES,
                details={"session_id": session_id, "excluded": len(excluded)},
            )

        recommendation = self._recommend(alternatives, positions)
        comparison = SettlementComparison(
            comparison_id=str(uuid.uuid4()),
            session_id=session_id,
            generated_at=_utcnow(),
            alternatives=tuple(alternatives),
            comparison_matrix=self._matrix(alternatives),
            recommendation=recommendation,
            summary=ComparisonSummary(
                transaction_count_range=(
                    min(a.transaction_count for a in alternatives),
                    max(a.transaction_count for a in alternatives),
                ),
                optimization_range=(
                    min(a.optimization_percentage for a in alternatives),
                    max(a.optimization_percentage for a in alternatives),
                ),
                average_score=round(sum(a.score for a in alternatives) / len(alternatives), 2),
                total_options_generated=len(alternatives),
            ),
            excluded=tuple(excluded),
        )
        self._log.info(
            "comparison.completed",
            session_id=session_id,
            options=len(alternatives),
            excluded=len(excluded),
            recommended=recommendation.recommended_option_id,
            confidence=recommendation.confidence,
        )
        return comparison

    def _score(
        self,
        algorithm: SettlementAlgorithmType,
        payments: tuple[PaymentPlanEntry, ...],
        positions: Sequence[ParticipantPosition],
        direct_count: int,
        elapsed_ms: float,
        weights: Mapping[str, float],
        share_ms: float,
        minimum_cents: int,
    ) -> AlternativeSettlement:
        manual = algorithm is Algo.MANUAL_SETTLEMENT
        count = direct_count if manual else len(payments)
        total = sum(p.amount_cents for p in payments)
        metrics = OptimizationMetrics.compute(direct_count, count, total, elapsed_ms)
        reduction = 0.0 if manual else metrics.reduction_percentage

        validation = self.validator.validate(
            positions,
            payments,
            allow_outstanding=manual,
            metrics=None if manual else metrics,
            time_budget_ms=share_ms,
            minimum_transaction_cents=minimum_cents,
        )

        factors = {
            "simplicity": simplicity_score(count, len(positions)),
            "fairness": fairness_score(payments),
            "efficiency": efficiency_score(reduction, elapsed_ms),
            "user_friendliness": user_friendliness_score(payments),
        }
        if manual:
            factors["simplicity"] = _clamp(factors["simplicity"] + 2)
            factors["user_friendliness"] = _clamp(factors["user_friendliness"] + 1.5)
        factors = {k: round(v, 2) for k, v in factors.items()}

        name, description = NAMES[algorithm]
        pros, cons = pros_and_cons(algorithm, len(payments), reduction)
        return AlternativeSettlement(
            option_id=algorithm.value,
            name=name,
            description=description,
            algorithm=algorithm,
            payment_plan=payments,
            transaction_count=len(payments),
            total_amount_settled_cents=total,
            score=overall_score(factors, weights),
            simplicity=factors["simplicity"],
            fairness=factors["fairness"],
            efficiency=factors["efficiency"],
            user_friendliness=factors["user_friendliness"],
            calculation_time_ms=round(elapsed_ms, 3),
            optimization_percentage=reduction,
            pros=pros,
            cons=cons,
            is_valid=validation.is_valid,
            validation=validation,
        )

    @staticmethod
    def _matrix(alternatives: Sequence[AlternativeSettlement]) -> tuple[ComparisonMetric, ...]:
        columns = (
            lambda a: float(a.transaction_count),
            lambda a: a.optimization_percentage,
            lambda a: a.simplicity,
            lambda a: a.fairness,
            lambda a: a.calculation_time_ms,
            lambda a: a.score,
        )
        return tuple(
            ComparisonMetric(
                metric_name=name,
                description=description,
                values={a.option_id: column(a) for a in alternatives},
                weight=weight,
                display_format=display,
            )
            for (name, description, weight, display), column in zip(MATRIX, columns)
        )

    def _recommend(
        self,
        alternatives: Sequence[AlternativeSettlement],
        positions: Sequence[ParticipantPosition],
    ) -> SettlementRecommendation:
        participant_count = len(positions)
        small = participant_count <= SMALL_SESSION
        tie_factor = "simplicity" if small else "efficiency"

        ranked = sorted(
            range(len(alternatives)),
            key=lambda i: (
                not alternatives[i].validation.can_proceed,
                -alternatives[i].score,
                -getattr(alternatives[i], tie_factor),
                i,
            ),
        )
        best = alternatives[ranked[0]]
        runner_up = alternatives[ranked[1]] if len(ranked) > 1 else None

        if runner_up is None:
            confidence = 0.95
        else:
            gap = max(0.0, best.score - runner_up.score)
            confidence = round(min(0.95, max(0.6, 0.6 + gap * 0.1)), 2)

        if participant_count <= SMALL_SESSION:
            complexity = "low"
        elif participant_count <= MEDIUM_SESSION:
            complexity = "medium"
        else:
            complexity = "high"

        amounts = [p.amount_cents for a in alternatives for p in a.payment_plan]
        large = any(a > LARGE_PAYMENT_CENTS for a in amounts)
        uneven = any(a % 100 for a in amounts)
        if large and uneven:
            dispute_risk = "high"
        elif large or uneven:
            dispute_risk = "medium"
        else:
            dispute_risk = "low"

        factors = {
            "simplicity": best.simplicity,
            "fairness": best.fairness,
            "efficiency": best.efficiency,
            "user friendliness": best.user_friendliness,
        }
        dominant = sorted(factors, key=lambda k: -factors[k])[:2]
        reasoning = [
            f"Highest overall score: {best.score:.2f}/10",
            f"{best.transaction_count} transactions ({best.optimization_percentage:.1f}% fewer than direct settlement)",
            f"Strongest on {dominant[0]} ({factors[dominant[0]]:.1f}) and {dominant[1]} ({factors[dominant[1]]:.1f})",
        ]
        if runner_up is not None and best.score == runner_up.score:
            reasoning.append(
                f"Tied with {runner_up.name}; {tie_factor} decides for a {'small' if small else 'large'} session"
            )

        considerations: list[str] = []
        if runner_up is not None and abs(best.score - runner_up.score) < CLOSE_SCORE_GAP:
            considerations.append(f"{runner_up.name} is a close alternative (score: {runner_up.score:.2f})")
        if complexity == "high":
            considerations.append("Consider manual settlement for large groups")
        if dispute_risk == "high":
            considerations.append("Manual settlement may reduce dispute risk")

        mitigation = ["Confirm each payment as it is made"]
        if dispute_risk != "low":
            mitigation.append("Share the exported proof with every participant before paying")
        if best.algorithm is Algo.HUB_BASED and best.payment_plan:
            hub = _hub_name(best.payment_plan)
            mitigation.append(f"Make sure {hub} can pay out before collecting every pay-in")
        for alternative in alternatives:
            if not alternative.is_valid:
                mitigation.append(f"Do not use {alternative.name}: it failed validation")

        return SettlementRecommendation(
            recommended_option_id=best.option_id,
            confidence=confidence,
            reasoning=tuple(reasoning),
            alternative_considerations=tuple(considerations),
            risk_mitigation=tuple(mitigation),
            participant_count=participant_count,
            complexity_level=complexity,
            dispute_risk=dispute_risk,
        )
