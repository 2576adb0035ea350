"""
Structured logging utilities for OpenRebalance.

Provides JSON-formatted logs and sensitive data redaction (RPC keys,
signing keys, API tokens).
"""
import logging
import json
import os
import re
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

LOG_FILENAME = "openrebalance.log"

# Loggers created by get_logger, by name
_LOGGERS: Dict[str, logging.Logger] = {}

# Sensitive field patterns to redact
SENSITIVE_PATTERNS = [
    r'(?i)(password|passwd|pwd)',
    r'(?i)(api[_-]?key|apikey)',
    r'(?i)(private[_-]?key)',
    r'(?i)(secret|token)',
]

# Structured fields copied from `extra=` into the JSON payload
STRUCTURED_FIELDS = (
    'portfolio_id',
    'job_id',
    'symbol',
    'policy',
    'state',
    'swap_index',
    'tx_hash',
    'amount_usd',
    'reason',
    'duration_ms',
    'event_type',
)


class SensitiveDataFilter(logging.Filter):
    """Filter to redact sensitive data from log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'msg') and isinstance(record.msg, str):
            for pattern in SENSITIVE_PATTERNS:
                record.msg = re.sub(
                    rf'{pattern}[\'\"]?\s*[:=]\s*[\'\"]?([^\s\'"]+)',
                    r'\1=***REDACTED***',
                    record.msg,
                    flags=re.IGNORECASE
                )
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_logger(name: str, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Get a structured logger with JSON file output and a console handler.

    Args:
        name: Logger name (usually __name__)
        log_dir: Directory to store log files. Defaults to $OPENREBALANCE_LOG_DIR or "logs".

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    log_dir = log_dir or os.getenv("OPENREBALANCE_LOG_DIR", "logs")
    json_handler = _json_file_handler(log_dir)

    # Console handler (human-readable)
    console_handler = logging.StreamHandler()
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(SensitiveDataFilter())

    logger.addHandler(json_handler)
    logger.addHandler(console_handler)
    _LOGGERS[name] = logger

    return logger


def _json_file_handler(log_dir: str) -> logging.FileHandler:
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(filename=os.path.join(log_dir, LOG_FILENAME), encoding='utf-8', delay=True)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SensitiveDataFilter())
    return handler


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None,
                      prefixes: Sequence[str] = ("openrebalance",)) -> int:
    """
    Apply the configured level and log directory to loggers already created
    by get_logger whose name starts with one of `prefixes`.

    Module loggers are created at import time, before any config file is
    read, so the JSON file handler is swapped for one in `log_dir`.

    Returns:
        Number of loggers reconfigured
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    count = 0
    for name, logger in list(_LOGGERS.items()):
        if not name.startswith(tuple(prefixes)):
            continue
        logger.setLevel(numeric_level)
        if log_dir:
            for handler in list(logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    handler.close()
                    logger.removeHandler(handler)
            logger.addHandler(_json_file_handler(log_dir))
        count += 1
    return count


class CycleLogger:
    """Context manager for logging one monitoring cycle of a portfolio.

    Records every state transition with its elapsed time and logs the
    exception (if any) that escapes the cycle.
    """

    def __init__(self, logger: logging.Logger, portfolio_id: str, policy: str = ""):
        self.logger = logger
        self.portfolio_id = portfolio_id
        self.policy = policy
        self.start_time: Optional[datetime] = None
        self.transitions: List[str] = []

    def _elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self.start_time).total_seconds() * 1000

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.logger.error(
                f"{self.portfolio_id} - monitoring cycle aborted: {exc_val}",
                extra={
                    'portfolio_id': self.portfolio_id,
                    'policy': self.policy,
                    'event_type': 'cycle_error',
                    'duration_ms': self._elapsed_ms(),
                },
                exc_info=True
            )
        return False

    def log_transition(self, state: str, reason: str = ""):
        """Log a state transition of the cycle."""
        self.transitions.append(state)
        self.logger.info(
            f"{self.portfolio_id} - {state}" + (f" ({reason})" if reason else ""),
            extra={
                'portfolio_id': self.portfolio_id,
                'policy': self.policy,
                'state': state,
                'reason': reason,
                'event_type': 'transition',
                'duration_ms': self._elapsed_ms(),
            }
        )

    def log_swap(self, swap_index: int, description: str, amount_usd: float, tx_hash: str = ""):
        """Log a confirmed swap of the cycle."""
        self.logger.info(
            f"{self.portfolio_id} - swap {swap_index} {description} ${amount_usd:.2f} {tx_hash}".rstrip(),
            extra={
                'portfolio_id': self.portfolio_id,
                'swap_index': swap_index,
                'amount_usd': amount_usd,
                'tx_hash': tx_hash,
                'event_type': 'swap',
            }
        )
