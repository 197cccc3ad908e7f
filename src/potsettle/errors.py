from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from potsettle.models import SettlementValidation


class SettlementErrorCode(str, Enum):
    # input
    INCOMPLETE_DATA = "INCOMPLETE_DATA"
    DUPLICATE_PARTICIPANT = "DUPLICATE_PARTICIPANT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNBALANCED_POSITIONS = "UNBALANCED_POSITIONS"

    # validation
    MATHEMATICAL_BALANCE_FAILED = "MATHEMATICAL_BALANCE_FAILED"
    PLAYER_POSITION_MISMATCH = "PLAYER_POSITION_MISMATCH"
    SELF_PAYMENT = "SELF_PAYMENT"
    UNKNOWN_PARTICIPANT = "UNKNOWN_PARTICIPANT"
    BELOW_MINIMUM_AMOUNT = "BELOW_MINIMUM_AMOUNT"

    # engine
    OPTIMIZATION_FAILED = "OPTIMIZATION_FAILED"
    PROOF_GENERATION_FAILED = "PROOF_GENERATION_FAILED"
    INVALID_PROOF_EXPORT = "INVALID_PROOF_EXPORT"
    UNSUPPORTED_EXPORT_FORMAT = "UNSUPPORTED_EXPORT_FORMAT"
    NO_ALTERNATIVES = "NO_ALTERNATIVES"


class SettlementWarningCode(str, Enum):
    BALANCE_DISCREPANCY = "BALANCE_DISCREPANCY"
    OUTSTANDING_BALANCE = "OUTSTANDING_BALANCE"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    INSUFFICIENT_OPTIMIZATION = "INSUFFICIENT_OPTIMIZATION"
    OPTIMIZATION_TIMEOUT = "OPTIMIZATION_TIMEOUT"
    SEARCH_BOUND_EXCEEDED = "SEARCH_BOUND_EXCEEDED"


class SettlementEngineError(Exception):
    code: SettlementErrorCode = SettlementErrorCode.OPTIMIZATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: Optional[SettlementErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.value}] {self.message} ({details_str})"
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "details": dict(self.details),
        }


class SettlementInputError(SettlementEngineError, ValueError):
    pass


class IncompleteDataError(SettlementInputError):
    code = SettlementErrorCode.INCOMPLETE_DATA


class DuplicateParticipantError(SettlementInputError):
    code = SettlementErrorCode.DUPLICATE_PARTICIPANT


class InvalidAmountError(SettlementInputError):
    code = SettlementErrorCode.INVALID_AMOUNT


class UnbalancedPositionsError(SettlementInputError):
    code = SettlementErrorCode.UNBALANCED_POSITIONS


class SettlementValidationError(SettlementEngineError):
    code = SettlementErrorCode.MATHEMATICAL_BALANCE_FAILED

    def __init__(self, message: str, validation: "SettlementValidation") -> None:
        first = validation.errors[0].code if validation.errors else None
        super().__init__(
            message,
            code=first,
            details={"error_count": len(validation.errors)},
        )
        self.validation = validation


class ProofError(SettlementEngineError):
    code = SettlementErrorCode.PROOF_GENERATION_FAILED


class OptimizationError(SettlementEngineError):
    code = SettlementErrorCode.OPTIMIZATION_FAILED
