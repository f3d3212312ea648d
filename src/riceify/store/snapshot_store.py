"""Snapshot store for saved profiles and the pre-switch backup.

Handles:
- Content-addressed blob storage (shared across profiles)
- Versioned, immutable profile metadata (YAML)
- Per-transaction staging areas
- The "previous" profile used by restore
"""
import logging
import os
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from ..engine.errors import ReadError, ValidationError
from ..engine.fileops import atomic_write_bytes, hash_bytes
from ..engine.schema import DependencyEdge, FileRecord, Profile
from ..utils.retry import with_retry
from .content_cache import ContentCache, DEFAULT_MAX_BYTES

logger = logging.getLogger(__name__)

# Default store directory
DEFAULT_STORE_DIR = Path.home() / ".riceify" / "store"

# Reserved name holding backup snapshots; user names cannot start with "_"
PREVIOUS_PROFILE = "_previous"

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
VERSION_PATTERN = re.compile(r"^v(\d+)\.yaml$")

# Marks which process owns a staging dir
STAGING_OWNER = "owner.pid"
# Unowned staging dirs younger than this may still be starting up
STAGING_GRACE_SECONDS = 60


def validate_profile_name(name: str) -> str:
    """Reject names that are not safe directory names."""
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid profile name: {name!r}. Use letters, digits, '.', '_' or '-'"
        )
    return name


def process_alive(pid: int) -> bool:
    """Check whether a process with this PID exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True


def profile_to_yaml(profile: Profile) -> str:
    """Serialize a profile to YAML."""
    data = {
        "name": profile.name,
        "version": profile.version,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
        "files": [record.to_dict() for record in profile.files],
        "edges": [
            {"from": edge.from_path, "to": edge.to_path}
            for edge in profile.edges
        ],
    }
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def profile_from_yaml(yaml_str: str) -> Profile:
    """Parse a profile from YAML.

    Raises:
        ValidationError: If the document is not a well-formed profile
    """
    try:
        data = yaml.safe_load(yaml_str)
    except yaml.YAMLError as e:
        raise ValidationError(f"Malformed profile document: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError("Malformed profile document: not a mapping")

    try:
        name = str(data["name"])
        version = int(data["version"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed profile header: {e!r}") from e

    created_at = None
    created_str = data.get("created_at")
    if created_str:
        try:
            created_at = datetime.fromisoformat(created_str)
        except (ValueError, TypeError):
            logger.debug(f"Profile {name} v{version}: unparsable created_at {created_str!r}")

    files = [FileRecord.from_dict(raw) for raw in data.get("files") or []]

    edges = []
    for raw in data.get("edges") or []:
        if not isinstance(raw, dict) or "from" not in raw or "to" not in raw:
            raise ValidationError(f"Malformed dependency edge in {name}: {raw!r}")
        edges.append(DependencyEdge(str(raw["from"]), str(raw["to"])))

    return Profile(
        name=name,
        version=version,
        files=files,
        edges=edges,
        created_at=created_at,
    )


class SnapshotStore:
    """
    Manages profile storage and retrieval.

    Directory structure:
        ~/.riceify/store/
        ├── objects/              # Content-addressed blobs: ab/cdef...
        ├── profiles/
        │   ├── <name>/v0001.yaml # Immutable profile versions
        │   └── _previous/        # Backup snapshots captured before switches
        ├── staging/<txid>/       # Per-transaction scratch space
        └── state.yaml            # Active profile
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        content_cache_bytes: int = DEFAULT_MAX_BYTES,
    ):
        """
        Initialize the snapshot store.

        Args:
            base_dir: Base directory for the store (default: ~/.riceify/store)
            content_cache_bytes: Budget of the in-memory blob cache (0 disables)
        """
        self.base_dir = Path(base_dir) if base_dir else DEFAULT_STORE_DIR
        self.cache = ContentCache(content_cache_bytes)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for d in (self.objects_dir, self.profiles_dir, self.staging_dir):
            d.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Snapshot store initialized at {self.base_dir}")

    @property
    def objects_dir(self) -> Path:
        return self.base_dir / "objects"

    @property
    def profiles_dir(self) -> Path:
        return self.base_dir / "profiles"

    @property
    def staging_dir(self) -> Path:
        return self.base_dir / "staging"

    @property
    def state_file(self) -> Path:
        return self.base_dir / "state.yaml"

    # === Blobs ===

    def blob_path(self, content_hash: str) -> Path:
        return self.objects_dir / content_hash[:2] / content_hash[2:]

    def has_blob(self, content_hash: str) -> bool:
        return self.blob_path(content_hash).exists()

    def read_blob(self, content_hash: str) -> bytes:
        """
        Read blob content, verifying it against its hash.

        Raises:
            ReadError: If the blob is missing or does not match its hash
        """
        cached = self.cache.get(content_hash)
        if cached is not None:
            return cached

        path = self.blob_path(content_hash)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ReadError(f"Blob {content_hash[:12]} unreadable: {e}", [str(path)]) from e

        if hash_bytes(data) != content_hash:
            raise ReadError(f"Blob {content_hash[:12]} is corrupt", [str(path)])

        self.cache.put(content_hash, data)
        return data

    def promote(self, staged: Path, content_hash: str) -> None:
        """Move a staged blob into the object store (no-op if already there)."""
        dest = self.blob_path(content_hash)
        if dest.exists():
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._replace(staged, dest)

    @with_retry()
    def _replace(self, src: Path, dest: Path) -> None:
        os.replace(src, dest)

    @with_retry()
    def _write_atomic(self, path: Path, data: bytes) -> None:
        atomic_write_bytes(path, data)

    # === Staging ===

    def create_staging(self, transaction_id: str) -> Path:
        """Create a transaction's scratch dir, stamped with the owning PID."""
        path = self.staging_dir / transaction_id
        path.mkdir(parents=True, exist_ok=False)
        (path / STAGING_OWNER).write_text(str(os.getpid()))
        return path

    def discard_staging(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)

    def staging_is_stale(self, path: Path) -> bool:
        """True if no running process owns the staging dir."""
        try:
            pid = int((path / STAGING_OWNER).read_text().strip())
        except (OSError, ValueError):
            # owner not written yet, or the dir predates owner stamps
            try:
                age = time.time() - path.stat().st_mtime
            except OSError:
                return False
            return age > STAGING_GRACE_SECONDS
        return not process_alive(pid)

    def clear_stale_staging(self) -> int:
        """Remove staging dirs left behind by a crashed process.

        Dirs owned by a live process (another riceify run) are kept.
        """
        count = 0
        for d in self.staging_dir.iterdir():
            if d.is_dir() and self.staging_is_stale(d):
                shutil.rmtree(d, ignore_errors=True)
                count += 1
        if count:
            logger.warning(f"Removed {count} stale staging directories")
        return count

    # === Profiles ===

    def _profile_dir(self, name: str) -> Path:
        return self.profiles_dir / name

    def list_profiles(self, include_previous: bool = False) -> list[str]:
        """List saved profile names."""
        names = sorted(
            p.name for p in self.profiles_dir.iterdir()
            if p.is_dir() and self.list_versions(p.name)
        )
        if not include_previous:
            names = [n for n in names if n != PREVIOUS_PROFILE]
        return names

    def list_versions(self, name: str) -> list[int]:
        profile_dir = self._profile_dir(name)
        if not profile_dir.is_dir():
            return []
        versions = []
        for p in profile_dir.iterdir():
            match = VERSION_PATTERN.match(p.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def latest_version(self, name: str) -> int:
        versions = self.list_versions(name)
        return versions[-1] if versions else 0

    def get_profile(self, name: str, version: Optional[int] = None) -> Optional[Profile]:
        """
        Get a profile (latest version by default).

        Returns None if no such profile exists.

        Raises:
            ValidationError: If the stored document is malformed
        """
        if version is None:
            version = self.latest_version(name)
            if version == 0:
                return None

        path = self._profile_dir(name) / f"v{version:04d}.yaml"
        if not path.exists():
            return None

        profile = profile_from_yaml(path.read_text(encoding="utf-8"))
        if profile.name != name or profile.version != version:
            raise ValidationError(
                f"Profile document {path} claims {profile.name} v{profile.version}"
            )
        return profile

    def previous_profile(self) -> Optional[Profile]:
        """The most recently captured backup snapshot."""
        return self.get_profile(PREVIOUS_PROFILE)

    def save_profile(
        self,
        name: str,
        files: Iterable[FileRecord],
        edges: Iterable[DependencyEdge] = (),
    ) -> Profile:
        """
        Write a new profile version. Prior versions are never modified.

        Every referenced blob must already be in the object store.
        """
        if name != PREVIOUS_PROFILE:
            validate_profile_name(name)

        files = list(files)
        missing = [
            f.path for f in files
            if f.content_hash is not None and not self.has_blob(f.content_hash)
        ]
        if missing:
            raise ValidationError(
                f"Profile {name} references missing content", missing
            )

        version = self.latest_version(name) + 1
        profile = Profile(
            name=name,
            version=version,
            files=files,
            edges=list(edges),
            created_at=datetime.now(timezone.utc),
        )

        path = self._profile_dir(name) / f"v{version:04d}.yaml"
        if path.exists():
            raise ValidationError(f"Profile {name} v{version} already exists")
        self._write_atomic(path, profile_to_yaml(profile).encode("utf-8"))

        logger.info(f"Saved profile '{name}' (v{version}, {len(files)} files)")
        return profile

    def delete_profile(self, name: str) -> bool:
        """Delete every version of a profile. Blobs are left for garbage_collect()."""
        profile_dir = self._profile_dir(name)
        if not profile_dir.is_dir():
            return False
        shutil.rmtree(profile_dir)
        if self.active_profile() == name:
            self.set_active(None)
        logger.info(f"Deleted profile '{name}'")
        return True

    # === State ===

    def _read_state(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            data = yaml.safe_load(self.state_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable store state {self.state_file}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def active_profile(self) -> Optional[str]:
        return self._read_state().get("active_profile")

    def previous_active_profile(self) -> Optional[str]:
        """The profile that was active before the last switch."""
        return self._read_state().get("previous_active_profile")

    def set_active(self, name: Optional[str]) -> None:
        """Mark a profile active; the outgoing one becomes previous_active.

        Re-activating the current profile records it as its own
        predecessor, matching the backup a no-op switch leaves behind.
        """
        state = self._read_state()
        state["previous_active_profile"] = state.get("active_profile")
        state["active_profile"] = name
        state["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._write_atomic(
            self.state_file,
            yaml.safe_dump(state, default_flow_style=False).encode("utf-8"),
        )

    # === Maintenance ===

    def referenced_hashes(self) -> set[str]:
        hashes: set[str] = set()
        for name in self.list_profiles(include_previous=True):
            for version in self.list_versions(name):
                profile = self.get_profile(name, version)
                if profile is not None:
                    hashes |= profile.hashes
        return hashes

    def garbage_collect(self) -> int:
        """Remove blobs no profile version references. Returns count removed."""
        referenced = self.referenced_hashes()
        removed = 0
        for prefix_dir in self.objects_dir.iterdir():
            if not prefix_dir.is_dir():
                continue
            for blob in prefix_dir.iterdir():
                content_hash = prefix_dir.name + blob.name
                if content_hash not in referenced:
                    blob.unlink()
                    self.cache.discard(content_hash)
                    removed += 1
        logger.info(f"Garbage collected {removed} unreferenced blobs")
        return removed

