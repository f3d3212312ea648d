"""Tests for the persistent hash cache."""
import json
import os

import pytest

from riceify.engine import HashStore, ReadError
from riceify.engine.fileops import hash_bytes, normalize_path
from riceify.engine.hash_store import inspect_file


def write(path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return str(path)


def record_current(store: HashStore, path: str) -> None:
    """Record the live state of a file the way a commit does."""
    st = os.stat(path)
    with open(path, "rb") as f:
        store.update(path, hash_bytes(f.read()), st.st_mtime_ns, st.st_size)


class TestInspectFile:
    """Tests for inspect_file()."""

    def test_missing_file(self, tmp_path):
        """A missing file is reported, not raised."""
        result = inspect_file(str(tmp_path / "nope"), None)

        assert result.exists is False
        assert result.content_hash is None
        assert result.unchanged is False

    def test_unknown_file_is_changed(self, tmp_path):
        """Without a cached record a file is never unchanged."""
        path = write(tmp_path / "a.conf", b"alpha")

        result = inspect_file(path, None)

        assert result.exists is True
        assert result.content_hash == hash_bytes(b"alpha")
        assert result.size == 5
        assert result.unchanged is False

    def test_unreadable_path_raises(self, tmp_path):
        """A directory where a file is expected cannot be hashed."""
        directory = tmp_path / "dir"
        directory.mkdir()

        with pytest.raises(ReadError) as exc:
            inspect_file(str(directory), None)

        assert exc.value.paths == [str(directory)]


class TestHashStore:
    """Tests for HashStore."""

    @pytest.fixture
    def cache_file(self, tmp_path):
        return tmp_path / "cache" / "hashes.json"

    @pytest.fixture
    def store(self, cache_file):
        return HashStore(cache_file)

    def test_starts_empty(self, store):
        """A missing cache file is an empty cache."""
        assert len(store) == 0
        assert store.status().entries == 0

    def test_unchanged_after_update(self, store, tmp_path):
        """A recorded file with the same mtime and content is unchanged."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)

        assert store.check(path).unchanged is True

    def test_content_change_detected(self, store, tmp_path):
        """Different content is a change even with a restored mtime."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)
        st = os.stat(path)

        write(tmp_path / "a.conf", b"bravo")
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))

        assert store.check(path).unchanged is False

    def test_mtime_change_detected(self, store, tmp_path):
        """A touched file is reported changed even with identical content."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)
        st = os.stat(path)

        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))

        assert store.check(path).unchanged is False

    def test_deleted_file_not_unchanged(self, store, tmp_path):
        """A file deleted since it was recorded is changed."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)
        os.unlink(path)

        assert store.check(path).unchanged is False

    def test_invalidate(self, store, tmp_path):
        """An invalidated entry is never unchanged."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)

        assert store.invalidate(path) is True
        assert store.check(path).unchanged is False
        assert store.invalidate(str(tmp_path / "unknown")) is False

    def test_paths_are_normalized(self, store, tmp_path):
        """Lookups go through the same path normalization as updates."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)

        odd = str(tmp_path / "sub" / ".." / "a.conf")

        assert odd in store
        assert store.lookup(odd).path == normalize_path(path)

    def test_lookup_returns_copy(self, store, tmp_path):
        """Mutating a looked-up record does not touch the cache."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)

        record = store.lookup(path)
        record.content_hash = "0" * 64

        assert store.check(path).unchanged is True

    def test_hit_and_miss_counters(self, store, tmp_path):
        """check() counts hits and misses."""
        path = write(tmp_path / "a.conf", b"alpha")
        store.check(path)
        record_current(store, path)
        store.check(path)
        store.check(path)

        status = store.status()
        assert status.hits == 2
        assert status.misses == 1
        assert status.hit_rate == pytest.approx(2 / 3)

    def test_check_does_not_write(self, store, tmp_path):
        """Reads never mutate the cache."""
        path = write(tmp_path / "a.conf", b"alpha")
        store.check(path)

        assert store.writes == 0
        assert len(store) == 0
        assert store.save() is False

    def test_persistence_roundtrip(self, store, cache_file, tmp_path):
        """Entries survive a reload."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)
        assert store.save() is True

        reloaded = HashStore(cache_file)

        assert path in reloaded
        assert reloaded.check(path).unchanged is True

    def test_save_only_when_dirty(self, store, tmp_path):
        """A second save with nothing new writes nothing."""
        path = write(tmp_path / "a.conf", b"alpha")
        record_current(store, path)

        assert store.save() is True
        assert store.save() is False

    def test_clear(self, store, cache_file, tmp_path):
        """clear() drops every entry and persists the empty cache."""
        for name in ("a", "b"):
            record_current(store, write(tmp_path / name, name.encode()))
        store.save()

        assert store.clear() == 2
        store.save()

        assert len(HashStore(cache_file)) == 0

    def test_corrupt_file_is_empty_cache(self, cache_file, tmp_path):
        """An unparsable cache file degrades to an empty cache."""
        cache_file.parent.mkdir(parents=True)
        cache_file.write_text("{not json")

        store = HashStore(cache_file)

        assert len(store) == 0
        assert store.corrupt_records == 1

    def test_wrong_algorithm_is_ignored(self, cache_file):
        """A cache written with another digest is not trusted."""
        cache_file.parent.mkdir(parents=True)
        cache_file.write_text(json.dumps({"version": 1, "algorithm": "md5", "entries": {}}))

        store = HashStore(cache_file)

        assert store.corrupt_records == 1

    def test_corrupt_record_is_skipped(self, cache_file, tmp_path):
        """One bad record does not poison the others."""
        good = write(tmp_path / "good", b"good")
        st = os.stat(good)
        cache_file.parent.mkdir(parents=True)
        cache_file.write_text(json.dumps({
            "version": 1,
            "algorithm": "sha256",
            "entries": {
                good: {"hash": hash_bytes(b"good"), "mtime_ns": st.st_mtime_ns, "size": 4},
                "/bad/one": {"hash": "short", "mtime_ns": 1},
                "/bad/two": "not a record",
            },
        }))

        store = HashStore(cache_file)

        assert len(store) == 1
        assert store.corrupt_records == 2
        assert store.check(good).unchanged is True
        assert store.status().corrupt_records == 2

    def test_eviction_prefers_invalid_entries(self, cache_file, tmp_path):
        """Over the bound, invalid entries go first, then the oldest."""
        store = HashStore(cache_file, max_entries=2)
        paths = [write(tmp_path / name, name.encode()) for name in ("a", "b", "c")]
        for path in paths:
            record_current(store, path)
        store.invalidate(paths[1])

        store.save()
        reloaded = HashStore(cache_file)

        assert paths[1] not in reloaded
        assert paths[0] in reloaded
        assert paths[2] in reloaded
