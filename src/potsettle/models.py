from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from potsettle.errors import (
    SettlementErrorCode,
    SettlementValidationError,
    SettlementWarningCode,
)

CENT = Decimal("0.01")


def _cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


class TransactionKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class SettlementAlgorithmType(str, Enum):
    GREEDY_DEBT_REDUCTION = "greedy_debt_reduction"
    DIRECT_SETTLEMENT = "direct_settlement"
    HUB_BASED = "hub_based"
    BALANCED_FLOW = "balanced_flow"
    MINIMAL_TRANSACTIONS = "minimal_transactions"
    MANUAL_SETTLEMENT = "manual_settlement"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class ExportFormat(str, Enum):
    JSON = "json"
    TEXT = "text"
    CSV = "csv"


@dataclass(frozen=True, slots=True)
class OptimizationOptions:
    algorithm: SettlementAlgorithmType = SettlementAlgorithmType.GREEDY_DEBT_REDUCTION
    time_budget_ms: Optional[float] = None
    minimum_transaction_cents: Optional[int] = None
    include_proof: bool = True
    use_cache: bool = True


@dataclass(frozen=True, slots=True)
class ComparisonOptions:
    # None means every algorithm, manual included
    algorithms: Optional[tuple[SettlementAlgorithmType, ...]] = None
    weights: Optional[dict[str, float]] = None
    time_budget_ms: Optional[float] = None
    minimum_transaction_cents: Optional[int] = None


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    participant_id: str
    kind: TransactionKind
    amount: Decimal
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ParticipantPosition:
    id: str
    display_name: str
    net_cents: int

    @property
    def net_position(self) -> Decimal:
        return _cents_to_decimal(self.net_cents)

    @property
    def is_creditor(self) -> bool:
        return self.net_cents > 0

    @property
    def is_debtor(self) -> bool:
        return self.net_cents < 0


@dataclass(frozen=True, slots=True)
class PaymentPlanEntry:
    from_id: str
    from_name: str
    to_id: str
    to_name: str
    amount_cents: int
    priority: int
    description: str = ""

    @property
    def amount(self) -> Decimal:
        return _cents_to_decimal(self.amount_cents)


@dataclass(frozen=True, slots=True)
class OptimizationMetrics:
    original_payment_count: int
    optimized_payment_count: int
    reduction_percentage: float
    total_amount_settled_cents: int
    processing_time_ms: float

    @classmethod
    def compute(
        cls,
        original: int,
        optimized: int,
        total_cents: int,
        processing_time_ms: float,
    ) -> "OptimizationMetrics":
        if original > 0:
            reduction = (original - optimized) / original * 100
        else:
            reduction = 0.0
        reduction = max(0.0, min(100.0, reduction))
        return cls(
            original_payment_count=original,
            optimized_payment_count=optimized,
            reduction_percentage=round(reduction, 2),
            total_amount_settled_cents=total_cents,
            processing_time_ms=processing_time_ms,
        )

    @property
    def total_amount_settled(self) -> Decimal:
        return _cents_to_decimal(self.total_amount_settled_cents)


@dataclass(frozen=True, slots=True)
class AuditStep:
    step_number: int
    description: str
    expected_cents: int
    actual_cents: int
    tolerance_cents: int
    is_valid: bool


@dataclass(frozen=True, slots=True)
class SettlementError:
    code: SettlementErrorCode
    message: str
    severity: Severity = Severity.CRITICAL
    affected_players: tuple[str, ...] = ()
    suggested_fix: str = ""


@dataclass(frozen=True, slots=True)
class SettlementWarning:
    code: SettlementWarningCode
    message: str
    affected_players: tuple[str, ...] = ()
    can_proceed: bool = True
    severity: Severity = Severity.MINOR
    balance_discrepancy_cents: int = 0


@dataclass(frozen=True, slots=True)
class SettlementValidation:
    is_valid: bool
    errors: tuple[SettlementError, ...] = ()
    warnings: tuple[SettlementWarning, ...] = ()
    audit_trail: tuple[AuditStep, ...] = ()

    @property
    def can_proceed(self) -> bool:
        return self.is_valid and all(w.can_proceed for w in self.warnings)

    @property
    def error_codes(self) -> tuple[SettlementErrorCode, ...]:
        return tuple(error.code for error in self.errors)

    def raise_for_errors(self) -> None:
        if self.errors:
            messages = "; ".join(error.message for error in self.errors)
            raise SettlementValidationError(f"settlement validation failed: {messages}", self)


@dataclass(frozen=True, slots=True)
class BalanceVerification:
    total_debits_cents: int
    total_credits_cents: int
    net_balance_cents: int
    is_balanced: bool
    precision: int
    tolerance_cents: int
    audit_steps: tuple[AuditStep, ...] = ()


@dataclass(frozen=True, slots=True)
class RoundingOperation:
    step: int
    operation: str
    original_value: Decimal
    rounded_cents: int
    rounding_mode: str
    precision_loss: Decimal


@dataclass(frozen=True, slots=True)
class FractionalCentIssue:
    participant_id: str
    participant_name: str
    original_amount: Decimal
    adjusted_cents: int
    reason: str


@dataclass(frozen=True, slots=True)
class PrecisionReport:
    original_precision: int
    rounding_operations: tuple[RoundingOperation, ...]
    cumulative_precision_loss: Decimal
    max_precision_loss: Decimal
    is_within_tolerance: bool
    fractional_cent_issues: tuple[FractionalCentIssue, ...] = ()


@dataclass(frozen=True, slots=True)
class ProofStep:
    step_number: int
    operation: str
    description: str
    inputs: dict[str, int]
    formula: str
    result: int
    unit: str
    precision: int
    tolerance: int
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "operation": self.operation,
            "description": self.description,
            "inputs": dict(self.inputs),
            "formula": self.formula,
            "result": self.result,
            "unit": self.unit,
            "precision": self.precision,
            "tolerance": self.tolerance,
            "passed": self.passed,
        }


@dataclass(frozen=True, slots=True)
class AlgorithmVerification:
    algorithm: SettlementAlgorithmType
    transaction_count: int
    total_amount_cents: int
    balance_discrepancy_cents: int
    is_balanced: bool
    verified: bool


@dataclass(frozen=True, slots=True)
class MathematicalProof:
    proof_id: str
    settlement_id: str
    generated_at: datetime
    algorithm: SettlementAlgorithmType
    positions: tuple[ParticipantPosition, ...]
    payments: tuple[PaymentPlanEntry, ...]
    calculation_steps: tuple[ProofStep, ...]
    balance_verification: BalanceVerification
    precision_analysis: PrecisionReport
    alternative_algorithm_results: tuple[AlgorithmVerification, ...]
    human_readable_summary: str
    checksum: str
    signature: str
    signer_public_key: str
    is_valid: bool

    @property
    def consensus(self) -> bool:
        return all(result.verified for result in self.alternative_algorithm_results)


@dataclass(frozen=True, slots=True)
class ProofIntegrityResult:
    is_valid: bool
    checksum_valid: bool
    signature_valid: bool
    mathematically_sound: bool
    balance_valid: bool
    algorithm_consensus: bool
    timestamp_valid: bool
    verified_at: datetime
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class OptimizedSettlement:
    session_id: str
    algorithm: SettlementAlgorithmType
    positions: tuple[ParticipantPosition, ...]
    optimized_payments: tuple[PaymentPlanEntry, ...]
    direct_payments: tuple[PaymentPlanEntry, ...]
    metrics: OptimizationMetrics
    is_valid: bool
    validation: SettlementValidation
    validation_errors: tuple[str, ...] = ()
    proof: Optional[MathematicalProof] = None
    used_fallback: bool = False
    bound_exceeded: bool = False


@dataclass(frozen=True, slots=True)
class AlternativeSettlement:
    option_id: str
    name: str
    description: str
    algorithm: SettlementAlgorithmType
    payment_plan: tuple[PaymentPlanEntry, ...]
    transaction_count: int
    total_amount_settled_cents: int
    score: float
    simplicity: float
    fairness: float
    efficiency: float
    user_friendliness: float
    calculation_time_ms: float
    optimization_percentage: float
    pros: tuple[str, ...]
    cons: tuple[str, ...]
    is_valid: bool
    validation: SettlementValidation


@dataclass(frozen=True, slots=True)
class ComparisonMetric:
    metric_name: str
    description: str
    values: dict[str, float]
    weight: float
    display_format: str


@dataclass(frozen=True, slots=True)
class SettlementRecommendation:
    recommended_option_id: str
    confidence: float
    reasoning: tuple[str, ...]
    alternative_considerations: tuple[str, ...]
    risk_mitigation: tuple[str, ...]
    participant_count: int
    complexity_level: str
    dispute_risk: str


@dataclass(frozen=True, slots=True)
class ExcludedAlgorithm:
    algorithm: SettlementAlgorithmType
    reason: str


@dataclass(frozen=True, slots=True)
class ComparisonSummary:
    transaction_count_range: tuple[int, int]
    optimization_range: tuple[float, float]
    average_score: float
    total_options_generated: int


@dataclass(frozen=True, slots=True)
class SettlementComparison:
    comparison_id: str
    session_id: str
    generated_at: datetime
    alternatives: tuple[AlternativeSettlement, ...]
    comparison_matrix: tuple[ComparisonMetric, ...]
    recommendation: SettlementRecommendation
    summary: ComparisonSummary
    excluded: tuple[ExcludedAlgorithm, ...] = field(default=())

    @property
    def recommended_option(self) -> AlternativeSettlement:
        for alternative in self.alternatives:
            if alternative.option_id == self.recommendation.recommended_option_id:
                return alternative
        return self.alternatives[0]
