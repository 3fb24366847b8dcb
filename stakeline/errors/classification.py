"""Error classification system."""
from __future__ import annotations

import asyncio
import re
import socket
from dataclasses import dataclass
from typing import Optional

import aiohttp
import httpx

from stakeline.errors.exceptions import ErrorKind, StakelineError


@dataclass
class ClassifiedError:
    code: str
    kind: ErrorKind
    message: str
    recoverable: bool
    retry_after: Optional[int] = None
    log_level: str = "error"


ERROR_DEFINITIONS = {
    "VAL_001": ClassifiedError("VAL_001", ErrorKind.VALIDATION, "Invalid input", False, log_level="warning"),
    "VAL_002": ClassifiedError("VAL_002", ErrorKind.VALIDATION, "Value does not fit instruction layout", False, log_level="warning"),
    "VAL_003": ClassifiedError("VAL_003", ErrorKind.VALIDATION, "Harvest threshold not reached", True, log_level="info"),
    "AUTHZ_001": ClassifiedError("AUTHZ_001", ErrorKind.AUTHORIZATION, "Not authorized", False, log_level="warning"),
    "CFG_001": ClassifiedError("CFG_001", ErrorKind.VALIDATION, "Configuration error", False),
    "NET_001": ClassifiedError("NET_001", ErrorKind.TRANSIENT, "Connection failed", True, 5),
    "NET_002": ClassifiedError("NET_002", ErrorKind.TRANSIENT, "Timeout", True, 10),
    "NET_003": ClassifiedError("NET_003", ErrorKind.TRANSIENT, "Rate limited", True, 60, log_level="warning"),
    "TX_001": ClassifiedError("TX_001", ErrorKind.EXECUTION, "Transaction failed", False),
    "TX_002": ClassifiedError("TX_002", ErrorKind.SIMULATION, "Simulation failed", False, log_level="warning"),
    "TX_003": ClassifiedError("TX_003", ErrorKind.EXPIRED, "Blockhash expired", True),
    "TX_004": ClassifiedError("TX_004", ErrorKind.TIMEOUT, "Timed out waiting for the ledger", True),
    "REFUND_001": ClassifiedError("REFUND_001", ErrorKind.PARTIAL_EXECUTION, "Refund could not be issued", False, log_level="critical"),
    "SYS_001": ClassifiedError("SYS_001", ErrorKind.EXECUTION, "Internal error", False),
}

# Lower-cased phrases seen in transient failures from fetch stacks and RPC gateways.
# Matched on word boundaries; error text often embeds base58 addresses.
NETWORK_ERROR_SIGNATURES = (
    r"fetch failed",
    r"network (?:error|is unreachable)",
    r"timeout",
    r"timed out",
    r"econnrefused",
    r"econnreset",
    r"etimedout",
    r"connection (?:reset|refused|aborted)",
    r"socket (?:hang up|closed|error)",
    r"name or service not known",
    r"nodename nor servname",
    r"temporary failure in name resolution",
    r"getaddrinfo",
    r"rate limit(?:ed)?",
    r"too many requests",
    r"502 bad gateway",
    r"503 service unavailable",
)
_NETWORK_ERROR_RE = re.compile(r"\b(?:" + "|".join(NETWORK_ERROR_SIGNATURES) + r")\b")
_RATE_LIMIT_RE = re.compile(r"\b(?:rate limit(?:ed)?|too many requests)\b")

RATE_LIMIT_STATUS_CODES = (429, 502, 503)


def _iter_chain(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__


def _is_network_exception(exc: BaseException) -> bool:
    if isinstance(exc, StakelineError):
        return exc.kind == ErrorKind.TRANSIENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RATE_LIMIT_STATUS_CODES
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status in RATE_LIMIT_STATUS_CODES
    if isinstance(exc, aiohttp.ClientError):
        return True
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return True
    return False


def is_network_error(exc: BaseException) -> bool:
    """True when ``exc`` (or anything it wraps) matches a transient-failure signature.

    Deterministic failures (bad input, program rejections, RPC error
    responses) return False so callers rethrow them instead of rotating
    endpoints.
    """
    for link in _iter_chain(exc):
        if isinstance(link, StakelineError) and link.kind != ErrorKind.TRANSIENT:
            return False
        if _is_network_exception(link):
            return True
        message = str(link).lower()
        if _NETWORK_ERROR_RE.search(message):
            return True
    return False


def is_blockhash_expired(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return (
        "blockhash" in lower
        or "block height exceeded" in lower
        or "blockheightexceeded" in lower
    )


def is_authorization_failure(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return (
        "missingrequiredsignature" in lower
        or "missing required signature" in lower
        or "signatureverificationfailed" in lower
        or "signature verification failed" in lower
        or "unauthorized" in lower
    )


def describe_simulation_error(error: Optional[str]) -> Optional[str]:
    """Return a short, human-readable hint for common ledger errors."""
    if not error:
        return None

    lower = error.lower()
    if "alreadyprocessed" in lower:
        return "Transaction already processed; likely duplicate or replayed."
    if is_blockhash_expired(error):
        return "Blockhash expired; rebuild and re-sign the transaction."
    if "accountinuse" in lower:
        return "Account in use; retry with backoff."
    if "insufficientfunds" in lower or "insufficient funds" in lower:
        return "Insufficient funds for fee or transfer."
    if "invalidaccountdata" in lower:
        return "Invalid account data; verify mint/account ownership."
    if "uninitializedaccount" in lower or "accountnotfound" in lower:
        return "Account not initialized; create the associated token account first."
    if is_authorization_failure(error):
        return "Not authorized; the connected wallet cannot sign this operation."

    match = re.search(r"(?:InstructionErrorCustom\(|Custom\(|custom program error: 0x)([0-9a-fA-F]+)", error)
    if match:
        code = match.group(1)
        return f"Custom program error {code}; program-specific constraint failed."
    return None


def classify_error(exception: BaseException) -> ClassifiedError:
    """Classify an exception into a standard error."""
    if isinstance(exception, StakelineError):
        return ERROR_DEFINITIONS.get(exception.code, ERROR_DEFINITIONS["SYS_001"])

    exc_str = str(exception).lower()

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)) or "timeout" in exc_str or "timed out" in exc_str:
        return ERROR_DEFINITIONS["NET_002"]
    if _RATE_LIMIT_RE.search(exc_str):
        return ERROR_DEFINITIONS["NET_003"]
    if is_network_error(exception):
        return ERROR_DEFINITIONS["NET_001"]
    if is_authorization_failure(exc_str):
        return ERROR_DEFINITIONS["AUTHZ_001"]
    if is_blockhash_expired(exc_str):
        return ERROR_DEFINITIONS["TX_003"]
    if "invalid" in exc_str or "malformed" in exc_str:
        return ERROR_DEFINITIONS["VAL_001"]

    return ERROR_DEFINITIONS["SYS_001"]


def get_error_code(code: str) -> Optional[ClassifiedError]:
    """Get error definition by code."""
    return ERROR_DEFINITIONS.get(code)
