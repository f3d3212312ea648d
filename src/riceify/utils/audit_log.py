"""Audit logging for switch transactions.

One JSON line per finished transaction on the dedicated riceify.audit
logger, written to a rotating audit.log. Nothing is configured on import;
call setup_audit_logging() once at startup.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Create dedicated audit logger
audit_logger = logging.getLogger("riceify.audit")


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.riceify/

    Returns:
        Path of the audit log file
    """
    if log_dir is None:
        log_dir = os.path.expanduser("~/.riceify")

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    # JSON lines for machine-readability
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)

    # Don't propagate to the riceify logger
    audit_logger.propagate = False
    return audit_file


@dataclass
class TransactionRecord:
    """Record of a finished transaction."""
    timestamp: str
    transaction_id: str
    kind: str  # save, apply, restore
    profile: str
    state: str
    success: bool
    touched: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    unrestored: list[str] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None)

    @classmethod
    def from_json(cls, json_str: str) -> "TransactionRecord":
        """Parse from JSON string."""
        return cls(**json.loads(json_str))


def log_transaction(record: TransactionRecord) -> None:
    audit_logger.info(record.to_json())
