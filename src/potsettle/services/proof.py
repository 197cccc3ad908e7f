from __future__ import annotations

import csv
import io
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from potsettle.config import Settings, get_settings
from potsettle.errors import ProofError, SettlementErrorCode
from potsettle.logging import get_logger
from potsettle.models import (
    AlgorithmVerification,
    BalanceVerification,
    ExportFormat,
    MathematicalProof,
    OptimizationMetrics,
    ParticipantPosition,
    PaymentPlanEntry,
    PrecisionReport,
    ProofIntegrityResult,
    ProofStep,
    SettlementAlgorithmType,
    SettlementValidation,
)
from potsettle.services.precision import DECIMAL_PRECISION, PrecisionTracker, format_money, from_cents
from potsettle.services.settlement import run_algorithm
from potsettle.services.signing import ProofSigner, canonical_hash
from potsettle.services.validation import MathematicalValidator, residuals

CROSS_CHECK_ALGORITHMS = (
    SettlementAlgorithmType.DIRECT_SETTLEMENT,
    SettlementAlgorithmType.GREEDY_DEBT_REDUCTION,
    SettlementAlgorithmType.BALANCED_FLOW,
)

TEXT_PAYMENT_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def balance_to_dict(balance: BalanceVerification) -> dict[str, Any]:
    return {
        "total_debits_cents": balance.total_debits_cents,
        "total_credits_cents": balance.total_credits_cents,
        "net_balance_cents": balance.net_balance_cents,
        "is_balanced": balance.is_balanced,
        "precision": balance.precision,
        "tolerance_cents": balance.tolerance_cents,
        "audit_steps": [
            {
                "step_number": s.step_number,
                "description": s.description,
                "expected_cents": s.expected_cents,
                "actual_cents": s.actual_cents,
                "tolerance_cents": s.tolerance_cents,
                "is_valid": s.is_valid,
            }
            for s in balance.audit_steps
        ],
    }


def payment_to_dict(payment: PaymentPlanEntry) -> dict[str, Any]:
    return {
        "from_id": payment.from_id,
        "from_name": payment.from_name,
        "to_id": payment.to_id,
        "to_name": payment.to_name,
        "amount_cents": payment.amount_cents,
        "priority": payment.priority,
    }


def checksum_payload(proof: MathematicalProof) -> dict[str, Any]:
    return _checksum_payload(
        proof.settlement_id, proof.payments, proof.calculation_steps, proof.balance_verification
    )


def _checksum_payload(
    settlement_id: str,
    payments: Sequence[PaymentPlanEntry],
    steps: Sequence[ProofStep],
    balance: BalanceVerification,
) -> dict[str, Any]:
    return {
        "settlement_id": settlement_id,
        "payments": [payment_to_dict(p) for p in payments],
        "calculation_steps": [s.to_dict() for s in steps],
        "balance_verification": balance_to_dict(balance),
    }


def proof_to_dict(proof: MathematicalProof) -> dict[str, Any]:
    precision = proof.precision_analysis
    return {
        "proof_id": proof.proof_id,
        "settlement_id": proof.settlement_id,
        "generated_at": proof.generated_at.isoformat(),
        "algorithm": proof.algorithm.value,
        "positions": [
            {"id": p.id, "display_name": p.display_name, "net_cents": p.net_cents}
            for p in proof.positions
        ],
        "payments": [payment_to_dict(p) for p in proof.payments],
        "calculation_steps": [s.to_dict() for s in proof.calculation_steps],
        "balance_verification": balance_to_dict(proof.balance_verification),
        "precision_analysis": {
            "original_precision": precision.original_precision,
            "rounding_operations": [
                {
                    "step": op.step,
                    "operation": op.operation,
                    "original_value": str(op.original_value),
                    "rounded_cents": op.rounded_cents,
                    "rounding_mode": op.rounding_mode,
                    "precision_loss": str(op.precision_loss),
                }
                for op in precision.rounding_operations
            ],
            "cumulative_precision_loss": str(precision.cumulative_precision_loss),
            "max_precision_loss": str(precision.max_precision_loss),
            "is_within_tolerance": precision.is_within_tolerance,
            "fractional_cent_issues": [
                {
                    "participant_id": issue.participant_id,
                    "participant_name": issue.participant_name,
                    "original_amount": str(issue.original_amount),
                    "adjusted_cents": issue.adjusted_cents,
                    "reason": issue.reason,
                }
                for issue in precision.fractional_cent_issues
            ],
        },
        "alternative_algorithm_results": [
            {
                "algorithm": r.algorithm.value,
                "transaction_count": r.transaction_count,
                "total_amount_cents": r.total_amount_cents,
                "balance_discrepancy_cents": r.balance_discrepancy_cents,
                "is_balanced": r.is_balanced,
                "verified": r.verified,
            }
            for r in proof.alternative_algorithm_results
        ],
        "human_readable_summary": proof.human_readable_summary,
        "checksum": proof.checksum,
        "signature": proof.signature,
        "signer_public_key": proof.signer_public_key,
        "is_valid": proof.is_valid,
    }


class ProofGenerator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[ProofSigner] = None,
        validator: Optional[MathematicalValidator] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.signer = signer or ProofSigner.from_settings(self.settings)
        self.validator = validator or MathematicalValidator.from_settings(self.settings)
        self._now = now
        self._log = get_logger(__name__)

    def generate(
        self,
        settlement_id: str,
        positions: Sequence[ParticipantPosition],
        payments: Sequence[PaymentPlanEntry],
        algorithm: SettlementAlgorithmType,
        metrics: OptimizationMetrics,
        tracker: Optional[PrecisionTracker] = None,
        validation: Optional[SettlementValidation] = None,
        minimum_cents: Optional[int] = None,
    ) -> MathematicalProof:
        """Build a signed proof that ``payments`` settle ``positions``.

        The proof is checked independently of the algorithm that produced the
        plan: steps are recomputed from the positions and payments alone.
        """
        minimum = self.settings.minimum_transaction_cents if minimum_cents is None else minimum_cents
        validation = validation or self.validator.validate(positions, payments, minimum_transaction_cents=minimum)
        balance = self.validator.balance_verification(positions, payments, validation)
        precision = (tracker or PrecisionTracker(self.settings.tolerance_cents)).report()

        steps = self._calculation_steps(positions, payments, metrics, precision)
        alternatives = self._cross_check(positions, minimum)

        is_valid = validation.is_valid and balance.is_balanced and all(s.passed for s in steps)

        checksum = canonical_hash(_checksum_payload(settlement_id, payments, steps, balance))
        signature = self.signer.sign(checksum.encode("ascii"))

        proof = MathematicalProof(
            proof_id=str(uuid.uuid4()),
            settlement_id=settlement_id,
            generated_at=self._now(),
            algorithm=algorithm,
            positions=tuple(positions),
            payments=tuple(payments),
            calculation_steps=tuple(steps),
            balance_verification=balance,
            precision_analysis=precision,
            alternative_algorithm_results=alternatives,
            human_readable_summary=self._summary(settlement_id, payments, metrics, steps, balance),
            checksum=checksum,
            signature=signature,
            signer_public_key=self.signer.public_key_hex,
            is_valid=is_valid,
        )
        self._log.info(
            "proof.generated",
            proof_id=proof.proof_id,
            settlement_id=settlement_id,
            steps=len(steps),
            is_valid=is_valid,
        )
        return proof

    def _calculation_steps(
        self,
        positions: Sequence[ParticipantPosition],
        payments: Sequence[PaymentPlanEntry],
        metrics: OptimizationMetrics,
        precision: PrecisionReport,
    ) -> list[ProofStep]:
        tolerance = self.settings.tolerance_cents
        aggregate = self.settings.aggregate_tolerance_cents
        steps: list[ProofStep] = []

        def add(operation: str, description: str, inputs: dict[str, int], formula: str,
                result: int, passed: bool, unit: str = "cents", tol: int = aggregate) -> None:
            steps.append(
                ProofStep(
                    step_number=len(steps) + 1,
                    operation=operation,
                    description=description,
                    inputs=inputs,
                    formula=formula,
                    result=result,
                    unit=unit,
                    precision=DECIMAL_PRECISION,
                    tolerance=tol,
                    passed=passed,
                )
            )

        net_sum = sum(p.net_cents for p in positions)
        add(
            "net_position_sum",
            "Net positions of all participants sum to zero",
            {p.id: p.net_cents for p in positions},
            "sum(net_cents)",
            net_sum,
            abs(net_sum) <= aggregate,
        )

        remaining = residuals(positions, payments)
        total_debt = sum(-p.net_cents for p in positions if p.net_cents < 0)
        # routed plans (hub) move more money than the debt; count only what debtors settle
        settled = sum(remaining[p.id] - p.net_cents for p in positions if p.net_cents < 0)
        add(
            "total_payments",
            "Payments settle exactly the total outstanding debt",
            {
                "total_debt_cents": total_debt,
                "gross_payments_cents": sum(p.amount_cents for p in payments),
                "payment_count": len(payments),
            },
            "sum(paid - received for debtors) - total_debt_cents",
            settled - total_debt,
            abs(settled - total_debt) <= aggregate,
        )

        paid: dict[str, int] = {}
        received: dict[str, int] = {}
        for payment in payments:
            paid[payment.from_id] = paid.get(payment.from_id, 0) + payment.amount_cents
            received[payment.to_id] = received.get(payment.to_id, 0) + payment.amount_cents
        for position in positions:
            left = remaining[position.id]
            add(
                "player_verification",
                f"{position.display_name} ends settled",
                {
                    "net_cents": position.net_cents,
                    "paid_cents": paid.get(position.id, 0),
                    "received_cents": received.get(position.id, 0),
                },
                "net_cents + paid_cents - received_cents",
                left,
                abs(left) <= tolerance,
                tol=tolerance,
            )

        direct = metrics.original_payment_count
        optimized = metrics.optimized_payment_count
        reduction_bp = (direct - optimized) * 10000 // direct if direct else 0
        add(
            "optimization_efficiency",
            "Plan needs no more payments than direct settlement",
            {"direct_payment_count": direct, "optimized_payment_count": optimized},
            "(direct - optimized) * 10000 / direct",
            reduction_bp,
            optimized <= direct,
            unit="basis_points",
            tol=0,
        )

        limit = from_cents(tolerance)
        over = sum(1 for op in precision.rounding_operations if op.precision_loss > limit)
        add(
            "precision_check",
            "Every rounding stays within one cent of its exact value",
            {
                "rounding_operations": len(precision.rounding_operations),
                "fractional_cent_issues": len(precision.fractional_cent_issues),
            },
            "max(precision_loss) <= tolerance",
            over,
            precision.is_within_tolerance,
            unit="operations",
            tol=tolerance,
        )
        return steps

    def _cross_check(
        self,
        positions: Sequence[ParticipantPosition],
        minimum_cents: int,
    ) -> tuple[AlgorithmVerification, ...]:
        results: list[AlgorithmVerification] = []
        for algorithm in CROSS_CHECK_ALGORITHMS:
            plan = run_algorithm(
                algorithm,
                positions,
                minimum_cents,
                self.settings.exhaustive_search_limit,
            ).payments
            validation = self.validator.validate(positions, plan, minimum_transaction_cents=minimum_cents)
            discrepancy = sum(abs(v) for v in residuals(positions, plan).values())
            results.append(
                AlgorithmVerification(
                    algorithm=algorithm,
                    transaction_count=len(plan),
                    total_amount_cents=sum(p.amount_cents for p in plan),
                    balance_discrepancy_cents=discrepancy,
                    is_balanced=discrepancy <= self.settings.aggregate_tolerance_cents * max(len(positions), 1),
                    verified=validation.is_valid,
                )
            )
        return tuple(results)

    @staticmethod
    def _summary(
        settlement_id: str,
        payments: Sequence[PaymentPlanEntry],
        metrics: OptimizationMetrics,
        steps: Sequence[ProofStep],
        balance: BalanceVerification,
    ) -> str:
        involved = {p.from_id for p in payments} | {p.to_id for p in payments}
        passed = sum(1 for s in steps if s.passed)
        lines = [
            f"Mathematical proof for settlement {settlement_id}",
            f"Participants involved: {len(involved)}",
            f"Total settled: {format_money(metrics.total_amount_settled_cents)}",
            f"Payments: {metrics.optimized_payment_count} "
            f"(direct settlement needs {metrics.original_payment_count}, "
            f"{metrics.reduction_percentage:.1f}% reduction)",
            f"Balance: {'verified' if balance.is_balanced else 'FAILED'} "
            f"(debits {format_money(balance.total_debits_cents)}, credits {format_money(balance.total_credits_cents)})",
            f"Calculation steps: {passed}/{len(steps)} passed",
        ]
        return "\n".join(lines)

    def verify_proof_integrity(
        self,
        proof: MathematicalProof,
        now: Optional[datetime] = None,
    ) -> ProofIntegrityResult:
        return verify_proof_integrity(
            proof,
            max_age=timedelta(days=self.settings.proof_max_age_days),
            now=now or self._now(),
            trusted_keys=(self.signer.public_key_hex,),
        )


def verify_proof_integrity(
    proof: MathematicalProof,
    max_age: timedelta = timedelta(days=7),
    now: Optional[datetime] = None,
    trusted_keys: Optional[Iterable[str]] = None,
) -> ProofIntegrityResult:
    """Detect tampering without rerunning any settlement algorithm.

    A proof carries its signer's public key, so without ``trusted_keys`` the
    signature only shows the proof is self-consistent. Pass the keys of known
    signers to reject proofs re-signed by anyone else.
    """
    now = now or _utcnow()
    errors: list[str] = []
    warnings: list[str] = []

    checksum_valid = canonical_hash(checksum_payload(proof)) == proof.checksum
    if not checksum_valid:
        errors.append("checksum does not match proof contents")

    signature_valid = ProofSigner.verify(
        proof.checksum.encode("ascii"), proof.signature, proof.signer_public_key
    )
    if trusted_keys is not None and proof.signer_public_key not in set(trusted_keys):
        signature_valid = False
        errors.append("proof is signed by an untrusted key")
    elif not signature_valid:
        errors.append("signature does not match checksum")

    mathematically_sound = all(step.passed for step in proof.calculation_steps)
    if not mathematically_sound:
        failed = [str(s.step_number) for s in proof.calculation_steps if not s.passed]
        errors.append(f"calculation steps failed: {', '.join(failed)}")

    balance_valid = proof.balance_verification.is_balanced
    if not balance_valid:
        errors.append("balance verification failed")

    algorithm_consensus = proof.consensus
    if not algorithm_consensus:
        warnings.append("cross-check algorithms disagree on settleability")

    age = now - proof.generated_at
    timestamp_valid = timedelta(0) <= age <= max_age
    if age < timedelta(0):
        errors.append("proof timestamp is in the future")
    elif age > max_age:
        errors.append(f"proof is older than {max_age.days} days")

    return ProofIntegrityResult(
        is_valid=checksum_valid and signature_valid and mathematically_sound and balance_valid and timestamp_valid,
        checksum_valid=checksum_valid,
        signature_valid=signature_valid,
        mathematically_sound=mathematically_sound,
        balance_valid=balance_valid,
        algorithm_consensus=algorithm_consensus,
        timestamp_valid=timestamp_valid,
        verified_at=now,
        warnings=tuple(warnings),
        errors=tuple(errors),
    )


def export_proof(proof: MathematicalProof, fmt: Union[ExportFormat, str] = ExportFormat.JSON) -> str:
    if not proof.is_valid:
        raise ProofError(
            "cannot export an invalid proof",
            code=SettlementErrorCode.INVALID_PROOF_EXPORT,
            details={"proof_id": proof.proof_id},
        )
    try:
        fmt = ExportFormat(fmt)
    except ValueError as exc:
        raise ProofError(
            f"unsupported export format: {fmt!r}",
            code=SettlementErrorCode.UNSUPPORTED_EXPORT_FORMAT,
        ) from exc

    if fmt is ExportFormat.JSON:
        return json.dumps(proof_to_dict(proof), indent=2)
    if fmt is ExportFormat.CSV:
        return _export_csv(proof)
    return _export_text(proof)


def _export_csv(proof: MathematicalProof) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["step_number", "operation", "description", "formula", "result", "unit", "tolerance", "passed"])
    for step in proof.calculation_steps:
        writer.writerow(
            [
                step.step_number,
                step.operation,
                step.description,
                step.formula,
                step.result,
                step.unit,
                step.tolerance,
                "yes" if step.passed else "no",
            ]
        )
    return buf.getvalue()


def _export_text(proof: MathematicalProof) -> str:
    passed = sum(1 for s in proof.calculation_steps if s.passed)
    total = len(proof.calculation_steps)
    balance = proof.balance_verification
    precision = proof.precision_analysis
    settled = sum(p.amount_cents for p in proof.payments)

    lines = [
        "SETTLEMENT PROOF",
        "=" * 35,
        "",
        "SUMMARY",
        f"Settlement: {proof.settlement_id}",
        f"Generated: {proof.generated_at.strftime('%Y-%m-%d %H:%M UTC')}",
        f"Status: {'VERIFIED' if passed == total else 'ISSUES FOUND'}",
        "",
        "BREAKDOWN",
        f"Amount: {format_money(settled)}",
        f"Transactions: {len(proof.payments)}",
        f"Balance: {'balanced' if balance.is_balanced else 'unbalanced'}",
        "",
        "PAYMENTS",
    ]
    for payment in proof.payments[:TEXT_PAYMENT_LIMIT]:
        lines.append(f"{payment.priority}. {payment.from_name} -> {payment.to_name}: {format_money(payment.amount_cents)}")
    if len(proof.payments) > TEXT_PAYMENT_LIMIT:
        lines.append(f"... and {len(proof.payments) - TEXT_PAYMENT_LIMIT} more")
    if not proof.payments:
        lines.append("No payments needed")

    lines += [
        "",
        "VERIFICATION",
        f"Mathematical: {passed}/{total} checks passed",
        f"Precision: {'within tolerance' if precision.is_within_tolerance else 'issues found'}",
        f"Cross-check: {'consensus' if proof.consensus else 'disagreement'}",
        f"Checksum: {proof.checksum[:16]}",
    ]
    if precision.fractional_cent_issues:
        lines.append(f"Fractional cent corrections: {len(precision.fractional_cent_issues)}")
    return "\n".join(lines)
