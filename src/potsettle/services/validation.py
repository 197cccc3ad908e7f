from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from potsettle.config import Settings, get_settings
from potsettle.errors import SettlementErrorCode, SettlementWarningCode
from potsettle.logging import get_logger
from potsettle.models import (
    AuditStep,
    BalanceVerification,
    OptimizationMetrics,
    ParticipantPosition,
    PaymentPlanEntry,
    SettlementError,
    SettlementValidation,
    SettlementWarning,
    Severity,
)
from potsettle.services.precision import DECIMAL_PRECISION, format_money

INSUFFICIENT_REDUCTION_PERCENT = 25.0


@dataclass(frozen=True, slots=True)
class DiscrepancyThresholds:
    minor_cents: int = 10
    major_cents: int = 100
    critical_cents: int = 500

    def classify(self, discrepancy_cents: int) -> Severity:
        magnitude = abs(discrepancy_cents)
        if magnitude > self.critical_cents:
            return Severity.CRITICAL
        if magnitude > self.major_cents:
            return Severity.MAJOR
        return Severity.MINOR


def residuals(
    positions: Sequence[ParticipantPosition],
    payments: Sequence[PaymentPlanEntry],
) -> dict[str, int]:
    """Apply every payment and return what each participant is still owed (+) or owes (-)."""
    remaining = {p.id: p.net_cents for p in positions}
    for payment in payments:
        if payment.from_id in remaining:
            remaining[payment.from_id] += payment.amount_cents
        if payment.to_id in remaining:
            remaining[payment.to_id] -= payment.amount_cents
    return remaining


class MathematicalValidator:
    def __init__(
        self,
        tolerance_cents: int = 1,
        aggregate_tolerance_cents: int = 1,
        minimum_transaction_cents: int = 1,
        thresholds: Optional[DiscrepancyThresholds] = None,
    ) -> None:
        self.tolerance_cents = tolerance_cents
        self.aggregate_tolerance_cents = aggregate_tolerance_cents
        self.minimum_transaction_cents = minimum_transaction_cents
        self.thresholds = thresholds or DiscrepancyThresholds()
        self._log = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MathematicalValidator":
        settings = settings or get_settings()
        return cls(
            tolerance_cents=settings.tolerance_cents,
            aggregate_tolerance_cents=settings.aggregate_tolerance_cents,
            minimum_transaction_cents=settings.minimum_transaction_cents,
        )

    def validate(
        self,
        positions: Sequence[ParticipantPosition],
        payments: Sequence[PaymentPlanEntry],
        *,
        allow_outstanding: bool = False,
        metrics: Optional[OptimizationMetrics] = None,
        time_budget_ms: Optional[float] = None,
        minimum_transaction_cents: Optional[int] = None,
    ) -> SettlementValidation:
        """Re-simulate ``payments`` against ``positions``.

        With ``allow_outstanding`` (manual settlement) balances left unsettled
        become warnings instead of errors; the input itself must still balance.
        ``minimum_transaction_cents`` overrides the validator default for one call.
        """
        errors: list[SettlementError] = []
        warnings: list[SettlementWarning] = []
        trail: list[AuditStep] = []

        def step(description: str, expected: int, actual: int, tolerance: int) -> bool:
            ok = abs(expected - actual) <= tolerance
            trail.append(
                AuditStep(
                    step_number=len(trail) + 1,
                    description=description,
                    expected_cents=expected,
                    actual_cents=actual,
                    tolerance_cents=tolerance,
                    is_valid=ok,
                )
            )
            return ok

        names = {p.id: p.display_name for p in positions}
        total_debits = sum(-p.net_cents for p in positions if p.net_cents < 0)
        total_credits = sum(p.net_cents for p in positions if p.net_cents > 0)
        net_balance = total_credits - total_debits

        if not step("verify net positions sum to zero", 0, net_balance, self.aggregate_tolerance_cents):
            errors.append(
                SettlementError(
                    code=SettlementErrorCode.UNBALANCED_POSITIONS,
                    message=(
                        f"positions are unbalanced: credits {format_money(total_credits)}, "
                        f"debits {format_money(total_debits)}"
                    ),
                    affected_players=tuple(names),
                    suggested_fix="Check for missing buy-ins or cash-outs and recompute positions",
                )
            )
        elif net_balance != 0:
            warnings.append(
                SettlementWarning(
                    code=SettlementWarningCode.BALANCE_DISCREPANCY,
                    message=f"positions are off by {format_money(net_balance)}, within tolerance",
                    affected_players=tuple(names),
                    balance_discrepancy_cents=net_balance,
                )
            )

        minimum = self.minimum_transaction_cents if minimum_transaction_cents is None else minimum_transaction_cents
        errors.extend(self._check_payments(payments, names, minimum))

        remaining = residuals(positions, payments)
        settled_debits = sum(
            p.net_cents - remaining[p.id] for p in positions if p.net_cents < 0
        )
        settled_credits = sum(
            p.net_cents - remaining[p.id] for p in positions if p.net_cents > 0
        )

        debits_ok = step("compute total debits", total_debits, -settled_debits, self.aggregate_tolerance_cents)
        credits_ok = step("compute total credits", total_credits, settled_credits, self.aggregate_tolerance_cents)
        if not (debits_ok and credits_ok) and not allow_outstanding:
            errors.append(
                SettlementError(
                    code=SettlementErrorCode.MATHEMATICAL_BALANCE_FAILED,
                    message=(
                        f"plan settles {format_money(-settled_debits)} of {format_money(total_debits)} debits "
                        f"and {format_money(settled_credits)} of {format_money(total_credits)} credits"
                    ),
                    affected_players=tuple(names),
                    suggested_fix="Recalculate the settlement from corrected positions",
                )
            )

        for position in positions:
            left = remaining[position.id]
            if step(f"validate balance for {position.display_name}", 0, left, self.tolerance_cents):
                continue
            if allow_outstanding:
                severity = self.thresholds.classify(left)
                warnings.append(
                    SettlementWarning(
                        code=SettlementWarningCode.OUTSTANDING_BALANCE,
                        message=f"{position.display_name} has {format_money(left)} left to settle outside the plan",
                        affected_players=(position.id,),
                        can_proceed=severity is not Severity.CRITICAL,
                        severity=severity,
                        balance_discrepancy_cents=left,
                    )
                )
            else:
                errors.append(
                    SettlementError(
                        code=SettlementErrorCode.PLAYER_POSITION_MISMATCH,
                        message=(
                            f"{position.display_name} ends at {format_money(left)} "
                            f"after applying the plan, expected $0.00"
                        ),
                        affected_players=(position.id,),
                        suggested_fix=f"Verify {position.display_name}'s transaction history and recalculate",
                    )
                )

        if metrics is not None:
            warnings.extend(self._check_metrics(metrics, len(payments), time_budget_ms))

        validation = SettlementValidation(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            audit_trail=tuple(trail),
        )
        self._log.debug(
            "settlement.validate",
            is_valid=validation.is_valid,
            errors=len(errors),
            warnings=len(warnings),
            steps=len(trail),
        )
        return validation

    def _check_payments(
        self,
        payments: Sequence[PaymentPlanEntry],
        names: dict[str, str],
        minimum_cents: int,
    ) -> list[SettlementError]:
        errors: list[SettlementError] = []
        for payment in payments:
            if payment.from_id == payment.to_id:
                errors.append(
                    SettlementError(
                        code=SettlementErrorCode.SELF_PAYMENT,
                        message=f"payment #{payment.priority} pays {payment.from_name} to themselves",
                        affected_players=(payment.from_id,),
                        suggested_fix="Remove self-payments from the plan",
                    )
                )
            unknown = tuple(pid for pid in (payment.from_id, payment.to_id) if pid not in names)
            if unknown:
                errors.append(
                    SettlementError(
                        code=SettlementErrorCode.UNKNOWN_PARTICIPANT,
                        message=f"payment #{payment.priority} references unknown participants",
                        affected_players=unknown,
                        suggested_fix="Recompute positions including every paying participant",
                    )
                )
            if payment.amount_cents < minimum_cents:
                errors.append(
                    SettlementError(
                        code=SettlementErrorCode.BELOW_MINIMUM_AMOUNT,
                        message=(
                            f"payment #{payment.priority} of {format_money(payment.amount_cents)} is below "
                            f"the minimum {format_money(minimum_cents)}"
                        ),
                        affected_players=(payment.from_id, payment.to_id),
                        suggested_fix="Drop or merge payments below the minimum amount",
                    )
                )
        return errors

    def _check_metrics(
        self,
        metrics: OptimizationMetrics,
        payment_count: int,
        time_budget_ms: Optional[float],
    ) -> list[SettlementWarning]:
        warnings: list[SettlementWarning] = []
        if time_budget_ms is not None and metrics.processing_time_ms > time_budget_ms:
            warnings.append(
                SettlementWarning(
                    code=SettlementWarningCode.PERFORMANCE_DEGRADATION,
                    message=(
                        f"settlement took {metrics.processing_time_ms:.0f}ms, "
                        f"budget is {time_budget_ms:.0f}ms"
                    ),
                )
            )
        if metrics.reduction_percentage < INSUFFICIENT_REDUCTION_PERCENT and payment_count > 2:
            warnings.append(
                SettlementWarning(
                    code=SettlementWarningCode.INSUFFICIENT_OPTIMIZATION,
                    message=f"plan reduces payments by only {metrics.reduction_percentage:.1f}%",
                )
            )
        return warnings

    def balance_verification(
        self,
        positions: Sequence[ParticipantPosition],
        payments: Sequence[PaymentPlanEntry],
        validation: Optional[SettlementValidation] = None,
    ) -> BalanceVerification:
        validation = validation or self.validate(positions, payments)
        total_debits = sum(-p.net_cents for p in positions if p.net_cents < 0)
        total_credits = sum(p.net_cents for p in positions if p.net_cents > 0)
        net_balance = total_credits - total_debits
        return BalanceVerification(
            total_debits_cents=total_debits,
            total_credits_cents=total_credits,
            net_balance_cents=net_balance,
            is_balanced=abs(net_balance) <= self.aggregate_tolerance_cents
            and all(s.is_valid for s in validation.audit_trail),
            precision=DECIMAL_PRECISION,
            tolerance_cents=self.aggregate_tolerance_cents,
            audit_steps=validation.audit_trail,
        )
