"""Switch engine - hash cache, dependency ordering, parallel file operations."""
from .errors import (
    RiceifyError,
    ReadError,
    WriteError,
    ValidationError,
    CycleError,
    CacheCorruption,
    Busy,
    RollbackIncomplete,
)
from .schema import (
    SwitchState,
    TransactionKind,
    FileAction,
    FileRecord,
    DependencyEdge,
    Profile,
    CacheStatus,
    FileOutcome,
    SwitchTransaction,
    SwitchResult,
)
from .graph import DependencyGraph
from .hash_store import HashStore, HashCheckResult
from .task_pool import (
    TaskPool,
    CancellationToken,
    HashCheck,
    CopyToBackup,
    WriteFile,
    DeleteFile,
    OperationResult,
    LayerRun,
)
from .observer import SwitchObserver, LoggingObserver, AuditObserver
from .engine import SwitchEngine, EngineContext

__all__ = [
    # Errors
    "RiceifyError",
    "ReadError",
    "WriteError",
    "ValidationError",
    "CycleError",
    "CacheCorruption",
    "Busy",
    "RollbackIncomplete",
    # Schema
    "SwitchState",
    "TransactionKind",
    "FileAction",
    "FileRecord",
    "DependencyEdge",
    "Profile",
    "CacheStatus",
    "FileOutcome",
    "SwitchTransaction",
    "SwitchResult",
    # Components
    "DependencyGraph",
    "HashStore",
    "HashCheckResult",
    "TaskPool",
    "CancellationToken",
    "HashCheck",
    "CopyToBackup",
    "WriteFile",
    "DeleteFile",
    "OperationResult",
    "LayerRun",
    # Observers
    "SwitchObserver",
    "LoggingObserver",
    "AuditObserver",
    # Engine
    "SwitchEngine",
    "EngineContext",
]
