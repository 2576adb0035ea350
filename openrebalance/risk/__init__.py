"""Failure classification."""
from .fatal_errors import FATAL_ERROR_PATTERNS, FailureClass, classify_failure, is_fatal_error

__all__ = ["FATAL_ERROR_PATTERNS", "FailureClass", "classify_failure", "is_fatal_error"]
