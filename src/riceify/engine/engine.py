"""Switch engine - orchestrates save, apply and restore.

Provides a single entry point for:
1. Capturing a profile from the live filesystem (save)
2. Making a profile live with a pre-switch backup (apply)
3. Reverting to the backup of the last switch (restore_previous)

State machine:
    IDLE -> CAPTURING_BACKUP -> APPLYING -> COMMITTING -> DONE
    *    -> ROLLING_BACK -> ROLLED_BACK
    *    -> FAILED

Only one transaction may be in flight per engine; a second request is
rejected with Busy, never queued.
"""
import asyncio
import glob
import logging
import os
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from ..store.snapshot_store import PREVIOUS_PROFILE, SnapshotStore, validate_profile_name
from ..utils.logging_config import timed_section, timed_section_sync
from .errors import Busy, ReadError, RiceifyError, ValidationError, WriteError
from .fileops import normalize_path
from .graph import DependencyGraph
from .hash_store import HashCheckResult, HashStore, inspect_file
from .observer import SwitchObserver
from .schema import (
    CacheStatus,
    DependencyEdge,
    FileAction,
    FileRecord,
    Profile,
    SwitchResult,
    SwitchState,
    SwitchTransaction,
    TRANSITIONS,
    TransactionKind,
)
from .task_pool import (
    CancellationToken,
    CopyToBackup,
    DeleteFile,
    FileOperation,
    HashCheck,
    OperationResult,
    TaskPool,
    WriteFile,
)

if TYPE_CHECKING:
    from ..config.settings import DependencyDeclaration, RiceifySettings

logger = logging.getLogger(__name__)

GLOB_CHARS = frozenset("*?[")

T = TypeVar("T")


@dataclass
class EngineContext:
    """Everything the engine needs from the outside, passed explicitly."""
    settings: "RiceifySettings"
    observers: list[SwitchObserver] = field(default_factory=list)


def resolve_tracked_files(patterns: list[str]) -> list[str]:
    """
    Expand a profile's file patterns to normalized paths.

    Glob patterns contribute only the files they currently match. Literal
    paths are always included so that a missing file is reported on save.
    """
    paths: set[str] = set()
    for pattern in patterns:
        expanded = os.path.expanduser(pattern)
        if GLOB_CHARS & set(expanded):
            for match in glob.glob(expanded, recursive=True):
                if os.path.isfile(match):
                    paths.add(normalize_path(match))
        else:
            paths.add(normalize_path(expanded))
    return sorted(paths)


def build_dependency_graph(
    paths: list[str],
    declarations: list["DependencyDeclaration"],
) -> DependencyGraph:
    """
    Build and validate the graph for a set of tracked files.

    Raises:
        ValidationError: If a declaration names an untracked file
        CycleError: If the declarations form a cycle
    """
    graph = DependencyGraph(nodes=paths)
    tracked = set(paths)
    errors = []
    for decl in declarations:
        source = normalize_path(decl.source)
        target = normalize_path(decl.target)
        for endpoint in (source, target):
            if endpoint not in tracked:
                errors.append(f"Dependency {source} -> {target} names untracked file {endpoint}")
        graph.add_edge(source, target)

    if errors:
        raise ValidationError(f"Invalid dependency declarations: {'; '.join(errors)}", errors)

    graph.validate()
    return graph


class SwitchEngine:
    """
    Orchestrates save / apply / restore over the hash cache, dependency
    graph, task pool and snapshot store.

    Usage:
        engine = SwitchEngine(EngineContext(settings))
        await engine.save("dark-theme")
        result = await engine.apply("light-theme")
        await engine.restore_previous()
    """

    def __init__(
        self,
        context: EngineContext,
        hash_store: Optional[HashStore] = None,
        store: Optional[SnapshotStore] = None,
        pool: Optional[TaskPool] = None,
    ):
        """
        Initialize the engine.

        Args:
            context: Settings and observers
            hash_store: HashStore to use (default: built from settings)
            store: SnapshotStore to use (default: built from settings)
            pool: TaskPool to use (default: built from settings)
        """
        self.context = context
        settings = context.settings
        self.hash_store = hash_store or HashStore(
            settings.resolved_cache_file,
            max_entries=settings.cache_max_entries,
        )
        self.store = store or SnapshotStore(
            settings.resolved_store_dir,
            content_cache_bytes=settings.content_cache_bytes,
        )
        self.pool = pool or TaskPool(settings.workers)
        self._lock = threading.Lock()
        self._active: Optional[SwitchTransaction] = None

    # === Transaction bookkeeping ===

    @property
    def active_transaction(self) -> Optional[SwitchTransaction]:
        return self._active

    @property
    def state(self) -> SwitchState:
        return self._active.state if self._active else SwitchState.IDLE

    def _acquire(self, description: str) -> None:
        if not self._lock.acquire(blocking=False):
            active = self._active
            raise Busy(f"{active.kind.value} '{active.target}'" if active else description)

    @asynccontextmanager
    async def _transaction_scope(self, kind: TransactionKind, target: str):
        """
        Acquire the single-flight slot and a staging directory.

        Both are released on every exit path, including cancellation.
        The slot is taken before the first suspension point, so a second
        caller is rejected immediately.
        """
        self._acquire(f"{kind.value} '{target}'")
        tx = SwitchTransaction(
            id=f"{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}",
            kind=kind,
            target=target,
            started_at=datetime.now(timezone.utc),
        )
        self._active = tx
        staging: Optional[Path] = None
        try:
            staging = self.store.create_staging(tx.id)
            yield tx, staging
        finally:
            if staging is not None:
                self.store.discard_staging(staging)
            if not tx.state.is_terminal:
                logger.error(f"[{tx.id}] transaction left in {tx.state.value}")
            self._active = None
            self._lock.release()

    def _transition(self, tx: SwitchTransaction, new: SwitchState) -> None:
        old = tx.state
        if new not in TRANSITIONS[old]:
            raise RuntimeError(f"Illegal transition {old.value} -> {new.value}")
        tx.state = new
        self._notify("on_state_change", tx, old, new)

    def _notify(self, hook: str, *args: Any) -> None:
        """Deliver a notification; observer failures never reach the caller."""
        for observer in self.context.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.warning(f"Observer {type(observer).__name__}.{hook} failed: {e!r}")

    async def _shielded(self, awaitable: Awaitable[T]) -> T:
        """
        Drive awaitable to completion even if the calling task is cancelled.

        A cancellation that arrives meanwhile is re-raised once the work
        has finished, so live files and the store are never left half done.
        """
        task = asyncio.ensure_future(awaitable)
        interrupted = False
        while True:
            try:
                result = await asyncio.shield(task)
                break
            except asyncio.CancelledError:
                if task.done():
                    raise
                interrupted = True
        if interrupted:
            raise asyncio.CancelledError()
        return result

    def _record(
        self,
        tx: SwitchTransaction,
        path: str,
        action: FileAction,
        error: Optional[str] = None,
    ) -> None:
        outcome = tx.record(path, action, error)
        self._notify("on_file_outcome", tx, outcome)

    def _finish(self, tx: SwitchTransaction, **kwargs: Any) -> SwitchResult:
        """Archive a terminal transaction into a result."""
        result = SwitchResult(
            transaction_id=tx.id,
            kind=tx.kind,
            profile=tx.target,
            state=tx.state,
            touched=list(tx.touched),
            errors=dict(tx.errors),
            outcomes=dict(tx.outcomes),
            layers=[list(layer) for layer in tx.layers],
            cancelled=tx.cancelled,
            **kwargs,
        )
        self._notify("on_finished", result)
        return result

    def _fail(self, tx: SwitchTransaction, error: RiceifyError) -> None:
        """Terminal FAILED for errors raised before anything was touched."""
        if not tx.state.is_terminal:
            self._transition(tx, SwitchState.FAILED)
        self._finish(tx, error=str(error))

    # === Save ===

    async def save(
        self,
        name: str,
        cancel: Optional[CancellationToken] = None,
    ) -> SwitchResult:
        """
        Capture the live state of a profile's tracked files as a new version.

        All-or-nothing: nothing is persisted unless every file was read.

        Raises:
            Busy: If another transaction is in flight
            ValidationError: Unknown profile, bad declarations or a cycle
            ReadError: Listing every tracked file that could not be read
        """
        validate_profile_name(name)
        async with self._transaction_scope(TransactionKind.SAVE, name) as (tx, staging):
            try:
                async with timed_section("save", profile=name):
                    return await self._save(tx, staging, name, cancel)
            except (ValidationError, ReadError, WriteError) as e:
                self._fail(tx, e)
                raise

    async def _save(
        self,
        tx: SwitchTransaction,
        staging: Path,
        name: str,
        cancel: Optional[CancellationToken],
    ) -> SwitchResult:
        definition = self.context.settings.get_profile(name)
        paths = resolve_tracked_files(definition.files)
        if not paths:
            raise ValidationError(f"Profile {name} tracks no files")

        graph = build_dependency_graph(paths, definition.dependencies)
        order = graph.topological_order()
        tx.layers = graph.layers()

        checks = await self._hash_check(tx, order)
        read_errors = {}
        for path, check in checks.items():
            if isinstance(check, RiceifyError):
                read_errors[path] = str(check)
            elif not check.exists:
                read_errors[path] = "file not found"
        if read_errors:
            for path, error in read_errors.items():
                self._record(tx, path, FileAction.FAILED, error)
            raise ReadError(
                f"Cannot save {name}: {len(read_errors)} unreadable files",
                sorted(read_errors),
            )

        previous = self.store.get_profile(name)
        previous_records = previous.by_path() if previous else {}
        changed = [
            p for p in order
            if p not in previous_records or previous_records[p].content_hash != checks[p].content_hash
        ]
        unchanged = [p for p in order if p not in changed]
        to_capture = [p for p in order if not self.store.has_blob(checks[p].content_hash)]

        self._transition(tx, SwitchState.CAPTURING_BACKUP)
        if cancel is not None and cancel.cancelled:
            return self._cancel_without_mutation(tx)

        records = {p: checks[p].as_record() for p in order}
        staged: dict[str, Path] = {}
        if to_capture:
            ops = [
                CopyToBackup(path, dest=str(staging / f"{i:05d}.blob"))
                for i, path in enumerate(to_capture)
            ]
            results = await self.pool.run_batch(ops)
            read_errors = {}
            for op, r in zip(ops, results):
                if not r.success:
                    read_errors[r.path] = str(r.error)
                elif r.value is None:
                    read_errors[r.path] = "file disappeared during save"
                else:
                    content_hash, size, mtime_ns = r.value
                    records[r.path] = FileRecord(r.path, content_hash, size, mtime_ns)
                    staged[r.path] = Path(op.dest)
                    self._record(tx, r.path, FileAction.CAPTURED)
            if read_errors:
                for path, error in read_errors.items():
                    self._record(tx, path, FileAction.FAILED, error)
                self._transition(tx, SwitchState.FAILED)
                raise ReadError(
                    f"Cannot save {name}: {len(read_errors)} unreadable files",
                    sorted(read_errors),
                )

        if cancel is not None and cancel.cancelled:
            return self._cancel_without_mutation(tx)

        for path in order:
            records[path].dependency_ids = graph.dependencies_of(path)
            if path not in tx.outcomes:
                self._record(tx, path, FileAction.UNCHANGED)

        self._transition(tx, SwitchState.COMMITTING)
        try:
            profile = await self._shielded(asyncio.to_thread(
                self._commit_save, name, order, records, staged, graph.edges(), checks,
            ))
        except OSError as e:
            raise WriteError(f"Cannot commit profile {name}: {e}") from e
        except asyncio.CancelledError:
            self._transition(tx, SwitchState.DONE)
            self._finish(tx, changed=changed, unchanged=unchanged)
            raise
        self._transition(tx, SwitchState.DONE)
        return self._finish(tx, version=profile.version, changed=changed, unchanged=unchanged)

    def _commit_save(
        self,
        name: str,
        order: list[str],
        records: dict[str, FileRecord],
        staged: dict[str, Path],
        edges: list[DependencyEdge],
        checks: dict[str, HashCheckResult],
    ) -> Profile:
        with timed_section_sync("commit_save", profile=name, blobs=len(staged)):
            for path, staged_path in staged.items():
                self.store.promote(staged_path, records[path].content_hash)
            profile = self.store.save_profile(name, [records[p] for p in order], edges)

            # cache hits need no write
            for path in order:
                if not checks[path].unchanged:
                    record = records[path]
                    self.hash_store.update(path, record.content_hash, record.last_modified, record.size)
            self._persist_cache()
        return profile

    def _cancel_without_mutation(self, tx: SwitchTransaction) -> SwitchResult:
        tx.cancelled = True
        self._transition(tx, SwitchState.ROLLING_BACK)
        self._transition(tx, SwitchState.ROLLED_BACK)
        return self._finish(tx, error="cancelled")

    # === Apply / restore ===

    async def apply(
        self,
        name: str,
        cancel: Optional[CancellationToken] = None,
    ) -> SwitchResult:
        """
        Make the latest version of a saved profile live.

        Returns a SwitchResult in DONE, ROLLED_BACK or FAILED (rollback
        incomplete; result.unrestored lists the affected paths).

        Raises:
            Busy: If another transaction is in flight
            ValidationError: Unknown or malformed profile (before any mutation)
        """
        validate_profile_name(name)

        def load() -> Profile:
            profile = self.store.get_profile(name)
            if profile is None:
                raise ValidationError(f"No saved profile named {name}")
            return profile

        return await self._switch(TransactionKind.APPLY, name, load, cancel)

    async def restore_previous(
        self,
        cancel: Optional[CancellationToken] = None,
    ) -> SwitchResult:
        """Apply the backup captured by the most recent successful switch."""

        def load() -> Profile:
            profile = self.store.previous_profile()
            if profile is None:
                raise ValidationError("No previous profile to restore")
            return profile

        return await self._switch(TransactionKind.RESTORE, PREVIOUS_PROFILE, load, cancel)

    async def _switch(
        self,
        kind: TransactionKind,
        target: str,
        load: Callable[[], Profile],
        cancel: Optional[CancellationToken],
    ) -> SwitchResult:
        async with self._transaction_scope(kind, target) as (tx, staging):
            try:
                profile = load()
                graph = DependencyGraph(nodes=profile.paths, edges=profile.edges)
                stray = sorted(set(graph.nodes) - set(profile.paths))
                if stray:
                    raise ValidationError(
                        f"Profile {profile.name} has edges to unlisted files", stray
                    )
                layers = graph.layers()
            except ValidationError as e:
                self._fail(tx, e)
                raise
            async with timed_section(kind.value, profile=target, files=len(profile.files)):
                return await self._run_switch(tx, staging, profile, graph, layers, cancel)

    async def _run_switch(
        self,
        tx: SwitchTransaction,
        staging: Path,
        profile: Profile,
        graph: DependencyGraph,
        layers: list[list[str]],
        cancel: Optional[CancellationToken],
    ) -> SwitchResult:
        targets = profile.by_path()

        # Skip files whose live content already matches the target
        checks = await self._hash_check(tx, graph.topological_order())
        needed: set[str] = set()
        for path, check in checks.items():
            target = targets[path]
            if isinstance(check, RiceifyError):
                # unreadable live file counts as changed
                needed.add(path)
            elif not target.exists:
                if check.exists:
                    needed.add(path)
            elif not check.exists or check.content_hash != target.content_hash:
                needed.add(path)
        for path in sorted(set(targets) - needed):
            self._record(tx, path, FileAction.UNCHANGED)

        tx.layers = [[p for p in layer if p in needed] for layer in layers]
        tx.layers = [layer for layer in tx.layers if layer]

        if not needed:
            logger.info(f"[{tx.id}] '{profile.name}' already live, nothing to switch")
            self._transition(tx, SwitchState.COMMITTING)
            try:
                await self._shielded(asyncio.to_thread(self._commit_noop, tx))
            except (RiceifyError, OSError) as e:
                logger.error(f"[{tx.id}] commit failed: {e}")
                tx.errors["<commit>"] = str(e)
                return await self._rollback(tx, {}, {}, graph)
            except asyncio.CancelledError:
                self._transition(tx, SwitchState.DONE)
                self._finish(tx, version=profile.version)
                raise
            self._transition(tx, SwitchState.DONE)
            return self._finish(tx, version=profile.version)

        backup_records: dict[str, FileRecord] = {}
        staged: dict[str, Path] = {}
        finished_layers: list[int] = []
        try:
            # --- CAPTURING_BACKUP ---
            self._transition(tx, SwitchState.CAPTURING_BACKUP)
            if cancel is not None and cancel.cancelled:
                tx.cancelled = True
                return await self._rollback(tx, {}, {}, graph)

            backup, staged = await self._capture_backup(tx, staging, sorted(needed), graph)
            if backup is None:
                return await self._rollback(tx, {}, {}, graph)
            tx.backup = backup
            backup_records = backup.by_path()

            try:
                payloads = await asyncio.to_thread(self._load_payloads, targets, needed)
            except ReadError as e:
                for path in e.paths or sorted(needed):
                    tx.errors[path] = str(e)
                return await self._rollback(tx, {}, {}, graph)

            # --- APPLYING ---
            self._transition(tx, SwitchState.APPLYING)
            op_layers: list[list[FileOperation]] = [
                [
                    WriteFile(path, data=payloads[path]) if targets[path].exists else DeleteFile(path)
                    for path in layer
                ]
                for layer in tx.layers
            ]

            def on_layer(index: int, results: list[OperationResult]) -> None:
                finished_layers.append(index)
                for r in results:
                    tx.touched.append(r.path)
                    if r.success:
                        action = FileAction.WRITTEN if isinstance(r.operation, WriteFile) else FileAction.DELETED
                        self._record(tx, r.path, action)
                    else:
                        self._record(tx, r.path, FileAction.FAILED, str(r.error))
                self._notify("on_layer_complete", tx, index, [r.path for r in results])

            run = await self.pool.run_layers(op_layers, cancel=cancel, on_layer=on_layer)
        except asyncio.CancelledError:
            if tx.state in (SwitchState.CAPTURING_BACKUP, SwitchState.APPLYING):
                await self._shielded(
                    self._rollback_interrupted(tx, backup_records, staged, graph, len(finished_layers))
                )
            raise

        if run.failed or run.cancelled:
            tx.cancelled = run.cancelled
            return await self._rollback(tx, backup_records, staged, graph, trace=run.results)

        # --- COMMITTING ---
        self._transition(tx, SwitchState.COMMITTING)
        try:
            await self._shielded(
                asyncio.to_thread(self._commit_switch, tx, profile, backup, staged, run.results)
            )
        except (RiceifyError, OSError) as e:
            logger.error(f"[{tx.id}] commit failed: {e}")
            tx.errors["<commit>"] = str(e)
            return await self._rollback(tx, backup_records, staged, graph, trace=run.results)
        except asyncio.CancelledError:
            # the commit ran to completion; only the caller went away
            self._transition(tx, SwitchState.DONE)
            self._finish(tx, version=profile.version, trace=run.results)
            raise

        self._transition(tx, SwitchState.DONE)
        return self._finish(tx, version=profile.version, trace=run.results)

    async def _rollback_interrupted(
        self,
        tx: SwitchTransaction,
        backup_records: dict[str, FileRecord],
        staged: dict[str, Path],
        graph: DependencyGraph,
        in_flight: int,
    ) -> SwitchResult:
        """Roll back after the task was cancelled outright.

        Waits for operations already handed to the pool, then treats the
        interrupted layer as touched: its writes may or may not have landed.
        """
        tx.cancelled = True
        await self.pool.drain()
        if tx.state == SwitchState.APPLYING and in_flight < len(tx.layers):
            for path in tx.layers[in_flight]:
                if path not in tx.touched:
                    tx.touched.append(path)
        return await self._rollback(tx, backup_records, staged, graph)

    async def _hash_check(
        self,
        tx: SwitchTransaction,
        paths: list[str],
    ) -> dict[str, Any]:
        """HashCheck every path. Values are HashCheckResult or the ReadError."""
        results = await self.pool.run_batch([HashCheck(p, store=self.hash_store) for p in paths])
        self._notify("on_cache_stats", tx, self.hash_store.status())
        return {r.path: (r.value if r.success else r.error) for r in results}

    async def _capture_backup(
        self,
        tx: SwitchTransaction,
        staging: Path,
        paths: list[str],
        graph: DependencyGraph,
    ) -> tuple[Optional[Profile], dict[str, Path]]:
        """Copy the live content of every file about to change into staging.

        Returns (None, {}) if any copy failed; nothing has been touched yet.
        """
        backup_dir = staging / "backup"
        ops = [
            CopyToBackup(path, dest=str(backup_dir / f"{i:05d}.blob"))
            for i, path in enumerate(paths)
        ]
        results = await self.pool.run_batch(ops)

        records: dict[str, FileRecord] = {}
        staged: dict[str, Path] = {}
        failed = False
        for op, r in zip(ops, results):
            if not r.success:
                failed = True
                self._record(tx, r.path, FileAction.FAILED, str(r.error))
                continue
            if r.value is None:
                records[r.path] = FileRecord(r.path, None)
            else:
                content_hash, size, mtime_ns = r.value
                records[r.path] = FileRecord(r.path, content_hash, size, mtime_ns)
                staged[r.path] = Path(op.dest)
            self._record(tx, r.path, FileAction.BACKED_UP)

        if failed:
            return None, {}

        needed = set(paths)
        edges = [e for e in graph.edges() if e.from_path in needed and e.to_path in needed]
        backup = Profile(
            name=PREVIOUS_PROFILE,
            version=0,
            files=[records[p] for p in graph.topological_order() if p in needed],
            edges=edges,
            created_at=datetime.now(timezone.utc),
        )
        return backup, staged

    def _load_payloads(self, targets: dict[str, FileRecord], needed: set[str]) -> dict[str, bytes]:
        """Read target content for every file that will be written."""
        payloads = {}
        for path in sorted(needed):
            record = targets[path]
            if record.exists:
                try:
                    payloads[path] = self.store.read_blob(record.content_hash)
                except ReadError as e:
                    raise ReadError(str(e), [path]) from e
        return payloads

    async def _rollback(
        self,
        tx: SwitchTransaction,
        backup_records: dict[str, FileRecord],
        staged: dict[str, Path],
        graph: DependencyGraph,
        trace: Optional[list[list[OperationResult]]] = None,
    ) -> SwitchResult:
        """Run a rollback to completion, even if the caller is cancelled."""
        return await self._shielded(self._restore_touched(tx, backup_records, staged, graph, trace))

    async def _restore_touched(
        self,
        tx: SwitchTransaction,
        backup_records: dict[str, FileRecord],
        staged: dict[str, Path],
        graph: DependencyGraph,
        trace: Optional[list[list[OperationResult]]],
    ) -> SwitchResult:
        """
        Restore every touched file from the backup, in reverse topological order.

        Files whose live content already equals the backup are left alone.
        Ends in ROLLED_BACK, or FAILED listing every file left unrestored.
        """
        self._transition(tx, SwitchState.ROLLING_BACK)
        touched = set(tx.touched)
        unrestored: list[str] = []

        for layer in graph.reverse_layers():
            paths = [p for p in layer if p in touched]
            if not paths:
                continue

            ops: list[FileOperation] = []
            for path in paths:
                record = backup_records.get(path)
                if record is None:
                    unrestored.append(path)
                    self._record(tx, path, FileAction.NOT_RESTORED, "no backup record")
                    continue
                try:
                    current = await asyncio.to_thread(inspect_file, path, None)
                except ReadError:
                    current = None
                if current is not None and current.exists == record.exists and (
                    not record.exists or current.content_hash == record.content_hash
                ):
                    self._record(tx, path, FileAction.RESTORED)
                    continue
                if record.exists:
                    try:
                        data = await asyncio.to_thread(staged[path].read_bytes)
                    except (KeyError, OSError) as e:
                        unrestored.append(path)
                        self._record(tx, path, FileAction.NOT_RESTORED, f"backup unreadable: {e}")
                        continue
                    ops.append(WriteFile(path, data=data))
                else:
                    ops.append(DeleteFile(path))

            for r in await self.pool.run_batch(ops):
                if r.success:
                    self._record(tx, r.path, FileAction.RESTORED)
                else:
                    unrestored.append(r.path)
                    self._record(tx, r.path, FileAction.NOT_RESTORED, str(r.error))

        if unrestored:
            logger.critical(
                f"[{tx.id}] rollback incomplete, manual intervention required for: "
                + ", ".join(sorted(unrestored))
            )
            self._transition(tx, SwitchState.FAILED)
        else:
            self._transition(tx, SwitchState.ROLLED_BACK)

        failed = sorted(p for p, o in tx.outcomes.items() if o.action == FileAction.FAILED)
        if tx.cancelled:
            error = "cancelled"
        elif failed:
            error = f"failed: {', '.join(failed)}"
        else:
            error = "switch aborted"
        return self._finish(
            tx,
            unrestored=sorted(unrestored),
            trace=trace or [],
            error=error,
        )

    def _commit_switch(
        self,
        tx: SwitchTransaction,
        profile: Profile,
        backup: Profile,
        staged: dict[str, Path],
        results: list[list[OperationResult]],
    ) -> None:
        with timed_section_sync("commit_switch", profile=tx.target, files=len(tx.touched)):
            backup_records = backup.by_path()
            for path, staged_path in staged.items():
                self.store.promote(staged_path, backup_records[path].content_hash)
            self.store.save_profile(PREVIOUS_PROFILE, backup.files, backup.edges)
            self._commit_active(tx)

            targets = profile.by_path()
            for layer in results:
                for r in layer:
                    size, mtime_ns = r.value if isinstance(r.operation, WriteFile) else (0, None)
                    if mtime_ns is None:
                        self.hash_store.invalidate(r.path)
                    else:
                        self.hash_store.update(r.path, targets[r.path].content_hash, mtime_ns, size)
            self._persist_cache()

    def _commit_noop(self, tx: SwitchTransaction) -> None:
        """Nothing was touched: the empty backup becomes the new previous."""
        self.store.save_profile(PREVIOUS_PROFILE, [], [])
        self._commit_active(tx)

    def _commit_active(self, tx: SwitchTransaction) -> None:
        if tx.kind == TransactionKind.RESTORE:
            self.store.set_active(self.store.previous_active_profile())
        else:
            self.store.set_active(tx.target)

    def _persist_cache(self) -> None:
        """The cache is an optimization: failing to persist it is not fatal."""
        try:
            self.hash_store.save()
        except OSError as e:
            logger.warning(f"Could not persist hash cache: {e}")

    # === Cache maintenance ===

    def clear_cache(self) -> int:
        """
        Forget every HashStore entry.

        Raises:
            Busy: If a transaction is in flight
        """
        self._acquire("clear-cache")
        try:
            count = self.hash_store.clear()
            self._persist_cache()
            return count
        finally:
            self._lock.release()

    def cache_status(self) -> CacheStatus:
        return self.hash_store.status()

    def close(self) -> None:
        self.pool.close()
