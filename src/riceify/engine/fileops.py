"""Filesystem primitives used by the task pool.

Every mutation goes through a temp file in the destination directory
followed by os.replace, so a crash never leaves a half-written file.
"""
import hashlib
import os
import uuid
from pathlib import Path
from typing import Optional, Union

HASH_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 1024
TEMP_SUFFIX = ".riceify-tmp"

PathLike = Union[str, Path]


def normalize_path(path: PathLike) -> str:
    """Identity of a managed file: expanded, absolute, normalized.

    Symlinks are not resolved; the link itself is the managed file.
    """
    expanded = os.path.expanduser(os.fspath(path))
    return os.path.normpath(os.path.abspath(expanded))


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(path: PathLike) -> tuple[str, int]:
    """Stream a file through the digest. Returns (hex digest, size)."""
    digest = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


def stat_mtime_ns(path: PathLike) -> Optional[int]:
    """Modification time in ns, or None if the file does not exist."""
    try:
        return os.stat(path).st_mtime_ns
    except FileNotFoundError:
        return None


def temp_path_for(path: PathLike) -> Path:
    target = Path(path)
    return target.parent / f".{target.name}.{uuid.uuid4().hex[:12]}{TEMP_SUFFIX}"


def fsync_directory(path: PathLike) -> None:
    """Flush a directory entry so a rename survives a crash."""
    try:
        fd = os.open(os.fspath(path), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        # directories cannot be opened on every platform
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: PathLike, data: bytes, fsync: bool = True) -> None:
    """Write data to path via temp file + rename.

    Keeps the permission bits of an existing destination. A symlinked
    destination is written through, so the link itself survives.
    """
    target = Path(path)
    if target.is_symlink():
        target = Path(os.path.realpath(target))
    target.parent.mkdir(parents=True, exist_ok=True)

    mode = None
    try:
        mode = os.stat(target).st_mode & 0o7777
    except FileNotFoundError:
        pass

    tmp = temp_path_for(target)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            if fsync:
                f.flush()
                os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
        if fsync:
            fsync_directory(target.parent)
    finally:
        if tmp.exists():
            tmp.unlink()


def delete_file(path: PathLike) -> bool:
    """Remove a file. Returns False if it was already absent."""
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
