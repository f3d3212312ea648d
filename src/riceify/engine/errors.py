"""Error taxonomy for the switch engine.

All errors derive from RiceifyError so callers can catch the whole family.
Errors that concern files carry the affected paths so nothing is reported
only as a message.
"""
from typing import Optional


class RiceifyError(Exception):
    """Base class for every riceify error."""
    pass


class ReadError(RiceifyError):
    """A source file could not be read or hashed."""

    def __init__(self, message: str, paths: Optional[list[str]] = None):
        self.paths = list(paths or [])
        super().__init__(message)


class WriteError(RiceifyError):
    """A destination file could not be written, copied or deleted."""

    def __init__(self, message: str, paths: Optional[list[str]] = None):
        self.paths = list(paths or [])
        super().__init__(message)


class ValidationError(RiceifyError):
    """A profile or its dependency declarations are malformed."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors or [message])
        super().__init__(message)


class CycleError(ValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class CacheCorruption(RiceifyError):
    """A HashStore record could not be parsed.

    Never fatal: the loader logs it and treats the entry as unknown.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class Busy(RiceifyError):
    """Another transaction is already in flight."""

    def __init__(self, active: Optional[str] = None):
        self.active = active
        detail = f" ({active})" if active else ""
        super().__init__(f"A switch transaction is already in progress{detail}")


class RollbackIncomplete(RiceifyError):
    """Some files could not be restored to their pre-transaction content.

    The live filesystem is in a mixed state and needs manual attention.
    """

    def __init__(self, paths: list[str], errors: Optional[dict[str, str]] = None):
        self.paths = sorted(paths)
        self.errors = dict(errors or {})
        super().__init__(
            "Rollback incomplete, manual intervention required for: "
            + ", ".join(self.paths)
        )
