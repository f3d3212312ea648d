"""Utility modules for logging, auditing and retries."""
from .logging_config import (
    setup_logging,
    timed_section,
    timed_section_sync,
    perf_logger,
)
from .audit_log import setup_audit_logging, TransactionRecord
from .retry import with_retry

__all__ = [
    "setup_logging",
    "timed_section",
    "timed_section_sync",
    "perf_logger",
    "setup_audit_logging",
    "TransactionRecord",
    "with_retry",
]
