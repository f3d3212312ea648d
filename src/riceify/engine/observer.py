"""Read-only notifications from the engine.

Observers receive state transitions, per-file outcomes and cache counts.
The engine calls them through a guard: an observer that raises is logged
and ignored, it can never fail a transaction.
"""
import logging
from datetime import datetime, timezone

from ..utils.audit_log import TransactionRecord, log_transaction
from .schema import CacheStatus, FileOutcome, SwitchResult, SwitchState, SwitchTransaction

logger = logging.getLogger(__name__)


class SwitchObserver:
    """Base observer; every hook is a no-op."""

    def on_state_change(
        self,
        transaction: SwitchTransaction,
        old: SwitchState,
        new: SwitchState,
    ) -> None:
        pass

    def on_file_outcome(self, transaction: SwitchTransaction, outcome: FileOutcome) -> None:
        pass

    def on_layer_complete(self, transaction: SwitchTransaction, index: int, paths: list[str]) -> None:
        pass

    def on_cache_stats(self, transaction: SwitchTransaction, status: CacheStatus) -> None:
        pass

    def on_finished(self, result: SwitchResult) -> None:
        pass


class LoggingObserver(SwitchObserver):
    """Log everything through the standard logging module."""

    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def on_state_change(self, transaction, old, new):
        level = logging.WARNING if new in (SwitchState.ROLLING_BACK, SwitchState.FAILED) else logging.INFO
        self.log.log(
            level,
            f"[{transaction.id}] {transaction.kind.value} '{transaction.target}': "
            f"{old.value} -> {new.value}",
        )

    def on_file_outcome(self, transaction, outcome):
        if outcome.success:
            self.log.debug(f"[{transaction.id}] {outcome.action.value}: {outcome.path}")
        else:
            self.log.error(
                f"[{transaction.id}] {outcome.action.value}: {outcome.path}: {outcome.error}"
            )

    def on_layer_complete(self, transaction, index, paths):
        self.log.debug(f"[{transaction.id}] layer {index} complete ({len(paths)} files)")

    def on_cache_stats(self, transaction, status):
        self.log.info(
            f"[{transaction.id}] hash cache: {status.hits} hits, {status.misses} misses "
            f"({status.hit_rate:.0%})"
        )


class AuditObserver(SwitchObserver):
    """Write one audit record per finished transaction."""

    def on_finished(self, result):
        log_transaction(TransactionRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            transaction_id=result.transaction_id,
            kind=result.kind.value,
            profile=result.profile,
            state=result.state.value,
            success=result.success,
            touched=result.touched,
            errors=result.errors,
            unrestored=result.unrestored,
            cancelled=result.cancelled,
            error=result.error,
        ))

