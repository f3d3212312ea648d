"""Riceify - switch between saved sets of dotfiles, with rollback."""
# engine first: the store imports engine primitives
from .engine import (
    SwitchEngine,
    EngineContext,
    SwitchResult,
    SwitchState,
    CancellationToken,
    RiceifyError,
)
from .store import SnapshotStore
from .config import RiceifySettings, load_settings

__version__ = "0.1.0"

__all__ = [
    "SwitchEngine",
    "EngineContext",
    "SwitchResult",
    "SwitchState",
    "CancellationToken",
    "RiceifyError",
    "SnapshotStore",
    "RiceifySettings",
    "load_settings",
]
