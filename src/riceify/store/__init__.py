"""Content-addressed storage for saved profiles and backups."""
from .snapshot_store import SnapshotStore, PREVIOUS_PROFILE, validate_profile_name
from .content_cache import ContentCache

__all__ = ["SnapshotStore", "PREVIOUS_PROFILE", "validate_profile_name", "ContentCache"]
