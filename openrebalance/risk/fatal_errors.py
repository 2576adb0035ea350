"""
Fatal-error policy.

A failed cycle is either retried on the next scheduled tick or, when the
failure says the wallet cannot pay for the trade or its gas, monitoring is
disabled until an operator re-enables it.
"""
from enum import Enum
from typing import Optional

from openrebalance.domain.errors import SwapExecutionError

FATAL_ERROR_PATTERNS = (
    "not enough balance",
    "insufficient funds",
    "insufficient balance",
    "gas too low",
    "out of gas",
    "insufficient gas",
)


class FailureClass(Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"


def is_fatal_error(message: Optional[str]) -> bool:
    """Case-insensitive substring match against the known unrecoverable classes."""
    if not message:
        return False
    lowered = message.lower()
    return any(pattern in lowered for pattern in FATAL_ERROR_PATTERNS)


def classify_failure(exc: BaseException) -> FailureClass:
    reason = exc.reason if isinstance(exc, SwapExecutionError) else str(exc)
    return FailureClass.FATAL if is_fatal_error(reason) else FailureClass.RETRYABLE
