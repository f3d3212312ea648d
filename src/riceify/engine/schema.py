"""Schema definitions for the switch engine.

Defines file records, profiles, transaction state and results.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import RollbackIncomplete, ValidationError, WriteError, ReadError


class SwitchState(str, Enum):
    """Transaction states."""
    IDLE = "idle"
    CAPTURING_BACKUP = "capturing_backup"
    APPLYING = "applying"
    COMMITTING = "committing"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SwitchState.DONE,
    SwitchState.ROLLED_BACK,
    SwitchState.FAILED,
})

# Legal transitions; anything not listed is a programming error.
TRANSITIONS: dict[SwitchState, frozenset[SwitchState]] = {
    SwitchState.IDLE: frozenset({
        SwitchState.CAPTURING_BACKUP,
        SwitchState.APPLYING,
        SwitchState.COMMITTING,
        SwitchState.DONE,
        SwitchState.ROLLING_BACK,
        SwitchState.FAILED,
    }),
    SwitchState.CAPTURING_BACKUP: frozenset({
        SwitchState.APPLYING,
        SwitchState.COMMITTING,
        SwitchState.ROLLING_BACK,
        SwitchState.FAILED,
    }),
    SwitchState.APPLYING: frozenset({
        SwitchState.COMMITTING,
        SwitchState.ROLLING_BACK,
        SwitchState.FAILED,
    }),
    SwitchState.COMMITTING: frozenset({
        SwitchState.DONE,
        SwitchState.ROLLING_BACK,
        SwitchState.FAILED,
    }),
    SwitchState.ROLLING_BACK: frozenset({
        SwitchState.ROLLED_BACK,
        SwitchState.FAILED,
    }),
    SwitchState.DONE: frozenset(),
    SwitchState.ROLLED_BACK: frozenset(),
    SwitchState.FAILED: frozenset(),
}


class TransactionKind(str, Enum):
    """Kind of engine request."""
    SAVE = "save"
    APPLY = "apply"
    RESTORE = "restore"


class FileAction(str, Enum):
    """What happened to a single file during a transaction."""
    UNCHANGED = "unchanged"
    CAPTURED = "captured"
    BACKED_UP = "backed_up"
    WRITTEN = "written"
    DELETED = "deleted"
    RESTORED = "restored"
    FAILED = "failed"
    NOT_RESTORED = "not_restored"


@dataclass
class FileRecord:
    """Snapshot of a single file.

    content_hash is None when the file did not exist at capture time.
    last_modified is the modification time in nanoseconds.
    """
    path: str
    content_hash: Optional[str]
    size: int = 0
    last_modified: int = 0
    dependency_ids: list[str] = field(default_factory=list)
    valid: bool = True

    @property
    def exists(self) -> bool:
        return self.content_hash is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "hash": self.content_hash,
            "size": self.size,
            "mtime_ns": self.last_modified,
        }
        if self.dependency_ids:
            data["depends_on"] = list(self.dependency_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        if not isinstance(data, dict) or "path" not in data:
            raise ValidationError(f"Malformed file record: {data!r}")
        return cls(
            path=str(data["path"]),
            content_hash=data.get("hash"),
            size=int(data.get("size", 0)),
            last_modified=int(data.get("mtime_ns", 0)),
            dependency_ids=list(data.get("depends_on", [])),
        )


@dataclass(frozen=True)
class DependencyEdge:
    """from_path must be materialized before to_path."""
    from_path: str
    to_path: str


@dataclass
class Profile:
    """A named, versioned, immutable snapshot of a set of files."""
    name: str
    version: int
    files: list[FileRecord] = field(default_factory=list)
    edges: list[DependencyEdge] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    def by_path(self) -> dict[str, FileRecord]:
        return {f.path: f for f in self.files}

    @property
    def hashes(self) -> set[str]:
        """Content hashes referenced by this profile."""
        return {f.content_hash for f in self.files if f.content_hash}


@dataclass
class CacheStatus:
    """Read-only view of the HashStore."""
    path: str
    entries: int = 0
    valid: int = 0
    invalid: int = 0
    hits: int = 0
    misses: int = 0
    corrupt_records: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "entries": self.entries,
            "valid": self.valid,
            "invalid": self.invalid,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 3),
            "corrupt_records": self.corrupt_records,
        }


@dataclass
class FileOutcome:
    """Per-file outcome inside a transaction."""
    path: str
    action: FileAction
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.action not in (FileAction.FAILED, FileAction.NOT_RESTORED)


@dataclass
class SwitchTransaction:
    """One in-flight save/apply/restore. Owned by the engine."""
    id: str
    kind: TransactionKind
    target: str
    state: SwitchState = SwitchState.IDLE
    backup: Optional[Profile] = None
    outcomes: dict[str, FileOutcome] = field(default_factory=dict)
    touched: list[str] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    started_at: Optional[datetime] = None

    def record(self, path: str, action: FileAction, error: Optional[str] = None) -> FileOutcome:
        outcome = FileOutcome(path=path, action=action, error=error)
        self.outcomes[path] = outcome
        if error:
            self.errors[path] = error
        return outcome


@dataclass
class SwitchResult:
    """Result of an engine request (archived transaction)."""
    transaction_id: str
    kind: TransactionKind
    profile: str
    state: SwitchState
    version: Optional[int] = None
    touched: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    unrestored: list[str] = field(default_factory=list)
    outcomes: dict[str, FileOutcome] = field(default_factory=dict)
    layers: list[list[str]] = field(default_factory=list)
    trace: list[list[Any]] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == SwitchState.DONE

    @property
    def no_change(self) -> bool:
        return self.success and not self.touched and not self.changed

    def raise_for_status(self) -> None:
        """Raise the error matching a non-DONE terminal state."""
        if self.state == SwitchState.DONE:
            return
        if self.state == SwitchState.FAILED and self.unrestored:
            raise RollbackIncomplete(
                self.unrestored,
                {p: self.errors.get(p, "") for p in self.unrestored},
            )
        failed = sorted(self.errors)
        message = self.error or f"{self.kind.value} '{self.profile}' ended in {self.state.value}"
        if self.kind == TransactionKind.SAVE:
            raise ReadError(message, failed)
        raise WriteError(message, failed)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind.value,
            "profile": self.profile,
            "state": self.state.value,
            "success": self.success,
            "version": self.version,
            "touched": self.touched,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "unrestored": self.unrestored,
            "layers": self.layers,
            "cancelled": self.cancelled,
            "error": self.error,
        }
