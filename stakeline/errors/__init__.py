"""
Error handling and exception classes.

Every error raised by stakeline derives from StakelineError and carries an
ErrorKind, so callers can render the right outcome without string matching:

    from stakeline.errors import SubmissionError, ErrorKind

    try:
        await pipeline.submit(signer, request, "stake")
    except SubmissionError as exc:
        if exc.kind is ErrorKind.SIMULATION:
            ...
"""

from stakeline.errors.exceptions import (
    StakelineError, ErrorKind, ValidationError, EncodingError, HarvestNotReadyError,
    AuthorizationError, ConfigurationError, TransientNetworkError, RefundError,
    SubmissionError, SimulationError, BlockhashExpiredError, SubmissionTimeout,
)
from stakeline.errors.classification import (
    classify_error, ClassifiedError, describe_simulation_error, is_network_error,
    is_blockhash_expired, is_authorization_failure,
)

__all__ = [
    "StakelineError", "ErrorKind", "ValidationError", "EncodingError", "HarvestNotReadyError",
    "AuthorizationError", "ConfigurationError", "TransientNetworkError", "RefundError",
    "SubmissionError", "SimulationError", "BlockhashExpiredError", "SubmissionTimeout",
    "classify_error", "ClassifiedError", "describe_simulation_error", "is_network_error",
    "is_blockhash_expired", "is_authorization_failure",
]
