"""Custom exception hierarchy."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """What went wrong, at the granularity a caller needs to render a UI state."""
    TRANSIENT = "transient"
    VALIDATION = "validation"
    SIMULATION = "simulation"
    EXPIRED = "expired"
    PARTIAL_EXECUTION = "partial_execution"
    AUTHORIZATION = "authorization"
    TIMEOUT = "timeout"
    EXECUTION = "execution"


class StakelineError(Exception):
    """Base exception for all stakeline errors."""
    code: str = "SYS_001"
    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(StakelineError):
    """Input validation failed locally."""
    code = "VAL_001"
    kind = ErrorKind.VALIDATION


class EncodingError(ValidationError):
    """A value does not fit the instruction wire layout."""
    code = "VAL_002"

    def __init__(self, message: str, field: str = None, value: Any = None):
        super().__init__(message, {"field": field, "value": value})
        self.field = field
        self.value = value


class HarvestNotReadyError(ValidationError):
    """Pending reward has not reached the harvest threshold."""
    code = "VAL_003"

    def __init__(self, message: str, pending: int = 0, threshold: int = 0):
        super().__init__(message, {"pending": pending, "threshold": threshold})
        self.pending = pending
        self.threshold = threshold


class AuthorizationError(StakelineError):
    """Signer missing or not permitted for a privileged operation."""
    code = "AUTHZ_001"
    kind = ErrorKind.AUTHORIZATION


class ConfigurationError(StakelineError):
    """Configuration error."""
    code = "CFG_001"


class TransientNetworkError(StakelineError):
    """Timeout, reset, DNS failure or rate limit talking to an endpoint."""
    code = "NET_001"
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, endpoint: str = None, retry_after: Optional[float] = None):
        super().__init__(message, {"endpoint": endpoint, "retry_after": retry_after})
        self.endpoint = endpoint
        self.retry_after = retry_after


class RefundError(StakelineError):
    """Compensation transfer could not be issued."""
    code = "REFUND_001"
    kind = ErrorKind.PARTIAL_EXECUTION

    def __init__(self, message: str, recipient: str = None, amount: int = 0):
        super().__init__(message, {"recipient": recipient, "amount": amount})
        self.recipient = recipient
        self.amount = amount

    @property
    def user_message(self) -> str:
        return "Refund could not be issued automatically, please contact support."


class SubmissionError(StakelineError):
    """Terminal failure of a transaction submission.

    Carries everything a caller needs to render the outcome: the error kind,
    a human hint, the signature if one was broadcast, the last pipeline
    state reached, and the compensation outcome (a refund record, or the
    error that prevented the refund).
    """
    code = "TX_001"

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.EXECUTION,
        *,
        hint: Optional[str] = None,
        signature: Optional[str] = None,
        description: str = "transaction",
        state: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, {"description": description})
        self.kind = kind
        self.hint = hint
        self.signature = signature
        self.description = description
        self.state = state
        self.cause = cause
        self.refund = None
        self.refund_error: Optional[RefundError] = None

    @property
    def refunded(self) -> bool:
        return self.refund is not None

    @property
    def user_message(self) -> str:
        parts = [f"The {self.description} failed: {self.hint or self.message}"]
        if self.refund is not None:
            parts.append(
                f"{self.refund.amount_raw} lamports were refunded "
                f"({self.refund.compensation_signature})."
            )
        elif self.refund_error is not None:
            parts.append(self.refund_error.user_message)
        return " ".join(parts)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "hint": self.hint,
            "signature": self.signature,
            "state": self.state,
            "refund_signature": self.refund.compensation_signature if self.refund else None,
            "refund_error": self.refund_error.message if self.refund_error else None,
        })
        return data


class SimulationError(SubmissionError):
    """Dry-run rejected the transaction as built."""
    code = "TX_002"


class BlockhashExpiredError(SubmissionError):
    """Blockhash expired even after a fresh rebuild."""
    code = "TX_003"


class SubmissionTimeout(SubmissionError):
    """Deadline elapsed while waiting on the ledger."""
    code = "TX_004"
