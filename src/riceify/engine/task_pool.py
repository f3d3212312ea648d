"""Bounded-concurrency executor for file operations.

Operations in one batch (a dependency layer) run concurrently on a thread
pool; the caller blocks on the batch barrier. Layers run strictly one after
another: layer N+1 is never dispatched before every operation of layer N
has resolved.

Usage:
    pool = TaskPool(max_workers=4)
    handle = pool.submit([WriteFile(path, data), DeleteFile(other)])
    results = await handle.wait()
"""
import asyncio
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from .errors import ReadError, RiceifyError, WriteError
from .fileops import atomic_write_bytes, delete_file, hash_bytes, stat_mtime_ns
from .hash_store import inspect_file

if TYPE_CHECKING:
    from .hash_store import HashStore

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Kind of file operation."""
    HASH_CHECK = "hash_check"
    COPY_TO_BACKUP = "copy_to_backup"
    WRITE_FILE = "write_file"
    DELETE_FILE = "delete_file"


# --- Operations ---

@dataclass
class FileOperation:
    """A single filesystem operation on one path."""
    path: str

    kind = OperationKind.HASH_CHECK
    error_class = ReadError

    def execute(self) -> Any:
        raise NotImplementedError


@dataclass
class HashCheck(FileOperation):
    """Hash a live file and compare it with the hash cache."""
    store: Optional["HashStore"] = field(default=None, repr=False)

    kind = OperationKind.HASH_CHECK
    error_class = ReadError

    def execute(self) -> Any:
        if self.store is not None:
            return self.store.check(self.path)
        return inspect_file(self.path, None)


@dataclass
class CopyToBackup(FileOperation):
    """Copy live content to a backup location.

    Returns (hash, size, mtime_ns) of the copy, or None if the live file
    does not exist.
    """
    dest: str = ""

    kind = OperationKind.COPY_TO_BACKUP
    error_class = ReadError

    def execute(self) -> Any:
        mtime_ns = stat_mtime_ns(self.path)
        if mtime_ns is None:
            return None
        try:
            with open(self.path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ReadError(f"Cannot read {self.path}: {e}", [self.path]) from e
        try:
            atomic_write_bytes(self.dest, data)
        except OSError as e:
            raise WriteError(f"Cannot write backup {self.dest}: {e}", [self.path]) from e
        return hash_bytes(data), len(data), mtime_ns


@dataclass
class WriteFile(FileOperation):
    """Atomically replace a file's content. Returns (size, mtime_ns)."""
    data: bytes = field(default=b"", repr=False)

    kind = OperationKind.WRITE_FILE
    error_class = WriteError

    def execute(self) -> Any:
        atomic_write_bytes(self.path, self.data)
        return len(self.data), stat_mtime_ns(self.path)


@dataclass
class DeleteFile(FileOperation):
    """Remove a file. Returns False if it was already absent."""

    kind = OperationKind.DELETE_FILE
    error_class = WriteError

    def execute(self) -> Any:
        return delete_file(self.path)


# --- Results ---

@dataclass
class OperationResult:
    """Outcome of one operation, with monotonic start/finish timestamps."""
    operation: FileOperation
    value: Any = None
    error: Optional[RiceifyError] = None
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def path(self) -> str:
        return self.operation.path

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class LayerRun:
    """Results of running a sequence of layers."""
    results: list[list[OperationResult]] = field(default_factory=list)
    failed: bool = False
    cancelled: bool = False


class CancellationToken:
    """Cooperative cancellation signal, safe to raise from any thread."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BatchHandle:
    """Handle for a submitted batch; wait() is the layer barrier."""

    def __init__(self, operations: Sequence[FileOperation], futures: list[asyncio.Future]):
        self.operations = list(operations)
        self._futures = futures

    def done(self) -> bool:
        return all(f.done() for f in self._futures)

    async def wait(self) -> list[OperationResult]:
        """Block until every operation in the batch has resolved."""
        if not self._futures:
            return []
        # shield: a cancelled caller must not abandon dispatched writes
        return list(await asyncio.shield(asyncio.gather(*self._futures)))


class TaskPool:
    """Run file operations in parallel with a bounded number of workers."""

    def __init__(self, max_workers: Optional[int] = None):
        """
        Initialize the pool.

        Args:
            max_workers: Concurrency bound (default: available CPUs)
        """
        self.max_workers = max_workers or os.cpu_count() or 4
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: set[asyncio.Future] = set()

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="riceify-io",
            )
        return self._executor

    def submit(self, batch: Sequence[FileOperation]) -> BatchHandle:
        """Dispatch a batch of independent operations. Needs a running loop."""
        loop = asyncio.get_running_loop()
        futures = [
            loop.run_in_executor(self.executor, self._execute, op)
            for op in batch
        ]
        for future in futures:
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)
        return BatchHandle(batch, futures)

    async def run_batch(self, batch: Sequence[FileOperation]) -> list[OperationResult]:
        return await self.submit(batch).wait()

    async def drain(self) -> None:
        """Wait for every dispatched operation, including abandoned ones."""
        pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_layers(
        self,
        layers: Sequence[Sequence[FileOperation]],
        cancel: Optional[CancellationToken] = None,
        on_layer: Optional[Callable[[int, list[OperationResult]], None]] = None,
    ) -> LayerRun:
        """
        Run layers in order with a full barrier between them.

        A failing operation lets its dispatched siblings finish, then no
        further layer is started. Cancellation is checked before each layer.

        Args:
            layers: Operation batches in topological order
            cancel: Optional cooperative cancellation token
            on_layer: Called with (index, results) after each layer resolves

        Returns:
            LayerRun with per-layer results and failed/cancelled flags
        """
        run = LayerRun()
        for index, layer in enumerate(layers):
            if cancel is not None and cancel.cancelled:
                logger.info(f"Cancellation requested, not starting layer {index}")
                run.cancelled = True
                break
            if not layer:
                continue

            results = await self.submit(layer).wait()
            run.results.append(results)

            if on_layer is not None:
                on_layer(index, results)

            failures = [r for r in results if not r.success]
            if failures:
                logger.warning(
                    f"Layer {index}: {len(failures)}/{len(results)} operations failed, "
                    f"stopping before layer {index + 1}"
                )
                run.failed = True
                break
        return run

    def _execute(self, op: FileOperation) -> OperationResult:
        """Run one operation on a worker thread. Never raises."""
        result = OperationResult(operation=op, started_at=time.monotonic())
        try:
            result.value = op.execute()
        except RiceifyError as e:
            result.error = e
        except OSError as e:
            result.error = op.error_class(f"{op.kind.value} {op.path}: {e}", [op.path])
        except Exception as e:
            logger.exception(f"Unexpected error in {op.kind.value} {op.path}: {e}")
            result.error = op.error_class(f"{op.kind.value} {op.path}: {e!r}", [op.path])
        result.finished_at = time.monotonic()
        return result

    def close(self) -> None:
        """Shut down worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "TaskPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
