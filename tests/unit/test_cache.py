"""Tests for gum.cache: the legacy file cache and the store-backed cache."""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from gum import cache as gum_cache
from gum.cache import DatabaseCache, FileCache
from gum.database import Database
from gum.models import DirUsage, Project, ProjectDir


class TestDefaultTTLs:
    """Volatile data gets the shortest TTL."""

    def test_ordering(self):
        """
        >>> from gum.cache import DIRS_CACHE_TTL, PROJECTS_CACHE_TTL, PROJECT_DIRS_CACHE_TTL
        >>> DIRS_CACHE_TTL < PROJECTS_CACHE_TTL < PROJECT_DIRS_CACHE_TTL
        True
        """
        assert gum_cache.DIRS_CACHE_TTL < gum_cache.PROJECTS_CACHE_TTL < gum_cache.PROJECT_DIRS_CACHE_TTL

    def test_scales(self):
        assert gum_cache.DIRS_CACHE_TTL < 60
        assert 60 <= gum_cache.PROJECTS_CACHE_TTL < 3600
        assert gum_cache.PROJECT_DIRS_CACHE_TTL >= 3600


class TestFileCacheGetSet:
    """Tests for FileCache get/set."""

    def test_round_trip(self, cache_dir):
        fc = FileCache(cache_dir)
        fc.set("custom", {"a": [1, 2]}, ttl=60)
        assert fc.get("custom") == ({"a": [1, 2]}, True)

    def test_missing_key(self, cache_dir):
        assert FileCache(cache_dir).get("nope") == (None, False)

    def test_set_creates_directory(self, tmp_path):
        fc = FileCache(tmp_path / "a" / "b")
        fc.set("k", 1, ttl=10)
        assert (tmp_path / "a" / "b" / "k.json").exists()

    def test_envelope_shape(self, cache_dir):
        FileCache(cache_dir).set("k", [1], ttl=timedelta(minutes=5))
        envelope = json.loads((cache_dir / "k.json").read_text())
        assert set(envelope) == {"data", "timestamp", "ttl"}
        assert envelope["ttl"] == 300.0

    def test_last_writer_wins(self, cache_dir):
        fc = FileCache(cache_dir)
        fc.set("k", "first", ttl=60)
        fc.set("k", "second", ttl=60)
        assert fc.get("k") == ("second", True)

    def test_no_temp_files_left_behind(self, cache_dir):
        fc = FileCache(cache_dir)
        for i in range(5):
            fc.set("k", i, ttl=60)
        assert [p.name for p in cache_dir.iterdir()] == ["k.json"]

    def test_invalid_key_rejected(self, cache_dir):
        with pytest.raises(ValueError):
            FileCache(cache_dir).set("../escape", 1, ttl=1)


class TestFileCacheExpiry:
    """Stale entries are a miss and are removed on read."""

    def test_one_millisecond_ttl_expires(self, cache_dir):
        """TTL of 1ms read after 10ms reports not-found."""
        fc = FileCache(cache_dir)
        fc.set("short", "v", ttl=timedelta(milliseconds=1))
        time.sleep(0.01)
        assert fc.get("short") == (None, False)
        assert not (cache_dir / "short.json").exists()

    def test_fresh_at_exact_ttl_boundary(self, cache_dir):
        fc = FileCache(cache_dir)
        written = datetime(2025, 1, 1, tzinfo=timezone.utc)
        fc.set("k", "v", ttl=60, now=written)
        assert fc.get("k", now=written + timedelta(seconds=60)) == ("v", True)
        assert fc.get("k", now=written + timedelta(seconds=61)) == (None, False)

    def test_nanosecond_ttl_from_older_releases(self, cache_dir, legacy_file):
        written = datetime.now(timezone.utc)
        legacy_file(cache_dir, "projects.json", [{"Path": "/a"}], ttl=300_000_000_000, timestamp=written)
        data, found = FileCache(cache_dir).get("projects")
        assert found
        assert data == [{"Path": "/a"}]

    def test_sub_second_nanosecond_ttl(self, cache_dir, legacy_file):
        """An integer TTL under one second is still nanoseconds, not seconds."""
        stamp = datetime(2020, 1, 1, tzinfo=timezone.utc)
        legacy_file(cache_dir, "k.json", 1, ttl=500_000_000, timestamp=stamp)
        assert FileCache(cache_dir).get("k") == (None, False)
        assert not (cache_dir / "k.json").exists()

    def test_sub_second_ttl_boundary(self, cache_dir, legacy_file):
        stamp = datetime(2025, 1, 1, tzinfo=timezone.utc)
        legacy_file(cache_dir, "k.json", 1, ttl=500_000_000, timestamp=stamp)
        fc = FileCache(cache_dir)
        assert fc.get("k", now=stamp + timedelta(milliseconds=400)) == (1, True)
        assert fc.get("k", now=stamp + timedelta(milliseconds=600)) == (None, False)

    def test_info_does_not_delete_expired(self, cache_dir, legacy_file):
        old = datetime.now(timezone.utc) - timedelta(hours=2)
        legacy_file(cache_dir, "dirs.json", [], ttl=30_000_000_000, timestamp=old)
        info = FileCache(cache_dir).info("dirs")
        assert info["expired"] is True
        assert info["items"] == 0
        assert (cache_dir / "dirs.json").exists()


class TestFileCacheMalformed:
    """Malformed entries are a miss, never an exception."""

    def test_invalid_json(self, cache_dir):
        (cache_dir / "projects.json").write_text("{not json")
        assert FileCache(cache_dir).get("projects") == (None, False)
        assert (cache_dir / "projects.json").exists()

    def test_missing_envelope_fields(self, cache_dir):
        (cache_dir / "projects.json").write_text(json.dumps({"data": []}))
        assert FileCache(cache_dir).get("projects") == (None, False)

    def test_negative_ttl(self, cache_dir):
        (cache_dir / "k.json").write_text(
            json.dumps({"data": 1, "timestamp": "2025-01-01T00:00:00Z", "ttl": -1})
        )
        assert FileCache(cache_dir).get("k") == (None, False)

    def test_info_reports_malformed(self, cache_dir):
        (cache_dir / "k.json").write_text("[]")
        info = FileCache(cache_dir).info("k")
        assert info["valid"] is False

    def test_typed_payload_not_a_list_is_a_miss(self, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", {"Path": "/a"})
        assert FileCache(cache_dir).get_projects() is None

    def test_typed_payload_skips_bad_items(self, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", [{"Path": "/a"}, {"Remote": "orphan"}, {"Path": "/b"}])
        projects = FileCache(cache_dir).get_projects()
        assert [p.path for p in projects] == ["/a", "/b"]


class TestFileCacheClear:
    """clear/clear_all are idempotent."""

    def test_clear_absent_key(self, cache_dir):
        FileCache(cache_dir).clear("never-set")

    def test_clear_twice(self, cache_dir):
        fc = FileCache(cache_dir)
        fc.set("k", 1, ttl=60)
        fc.clear("k")
        fc.clear("k")
        assert fc.get("k") == (None, False)

    def test_clear_all_only_touches_entries(self, cache_dir):
        fc = FileCache(cache_dir)
        fc.set("a", 1, ttl=60)
        fc.set("b", 2, ttl=60)
        (cache_dir / "backup").mkdir()
        (cache_dir / "backup" / "projects.json").write_text("{}")
        (cache_dir / "gum.db").write_bytes(b"")

        assert fc.clear_all() == 2
        assert fc.keys() == []
        assert (cache_dir / "backup" / "projects.json").exists()
        assert (cache_dir / "gum.db").exists()

    def test_clear_all_on_missing_directory(self, tmp_path):
        assert FileCache(tmp_path / "absent").clear_all() == 0


class TestFileCacheTypedAccessors:
    """Typed legacy payloads."""

    def test_projects(self, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", [
            {"Path": "/src/gum", "Remote": "git@github.com:shalomb/gum.git", "Branch": ""},
            {"Path": "/src/local", "Remote": "", "Branch": "main"},
        ])
        projects = FileCache(cache_dir).get_projects()
        assert projects[0].remote_url == "git@github.com:shalomb/gum.git"
        assert projects[0].branch is None
        assert projects[1].branch == "main"
        assert projects[1].name == "local"

    def test_project_dirs_zero_time_is_never_scanned(self, cache_dir, legacy_file):
        legacy_file(cache_dir, "project-dirs.json", [
            {"Path": "/src", "LastScanned": "0001-01-01T00:00:00Z", "GitCount": 3},
        ])
        dirs = FileCache(cache_dir).get_project_dirs()
        assert dirs[0].last_scanned is None
        assert dirs[0].git_count == 3

    def test_set_project_dirs_round_trip(self, cache_dir):
        fc = FileCache(cache_dir)
        scanned = datetime(2025, 5, 1, tzinfo=timezone.utc)
        fc.set_project_dirs([ProjectDir(path="/src", last_scanned=scanned, git_count=2)])
        dirs = fc.get_project_dirs()
        assert dirs[0].path == "/src"
        assert dirs[0].last_scanned == scanned

    def test_dirs(self, cache_dir, legacy_file):
        legacy_file(cache_dir, "dirs.json", [
            {"Path": "/tmp", "Frequency": 4, "LastSeen": "2025-10-01T08:00:00Z"},
        ])
        usages = FileCache(cache_dir).get_dirs()
        assert usages[0].frequency == 4
        assert usages[0].last_seen.tzinfo is not None


class TestDatabaseCache:
    """Freshness markers in front of the store."""

    def test_miss_before_first_set(self, db):
        assert DatabaseCache(db).get_projects() is None

    def test_set_then_hit(self, db):
        dc = DatabaseCache(db)
        dc.set_projects([Project(path="/a"), Project(path="/b")])
        assert {p.path for p in dc.get_projects()} == {"/a", "/b"}

    def test_stale_after_ttl(self, db):
        dc = DatabaseCache(db)
        dc.set_projects([Project(path="/a")])
        later = datetime.now(timezone.utc) + timedelta(seconds=gum_cache.PROJECTS_CACHE_TTL + 1)
        assert dc.get_projects(now=later) is None
        assert dc.is_fresh("projects") is True

    def test_reads_go_to_the_store(self, db):
        """A write by another writer is visible on the next fresh read."""
        dc = DatabaseCache(db)
        dc.set_projects([Project(path="/a")])
        db.upsert_project(Project(path="/b"))
        assert {p.path for p in dc.get_projects()} == {"/a", "/b"}

    def test_invalidate(self, db):
        dc = DatabaseCache(db)
        dc.set_project_dirs([ProjectDir(path="/src")])
        assert dc.invalidate("project-dirs") == 1
        assert dc.get_project_dirs() is None

    def test_set_dirs_imports_usage(self, db):
        dc = DatabaseCache(db)
        now = datetime.now(timezone.utc)
        dc.set_dirs([DirUsage(path="/x", frequency=3, last_seen=now)])
        assert [u.path for u in dc.get_dirs()] == ["/x"]

    def test_custom_ttl(self, db):
        dc = DatabaseCache(db, ttls={"projects": 1})
        dc.set_projects([])
        assert db.get_cache_metadata("projects").ttl_seconds == 1

    def test_cache_stats(self, db):
        dc = DatabaseCache(db)
        dc.set_projects([Project(path="/a")])
        stats = dc.cache_stats()
        assert stats["projects_count"] == 1
        assert stats["linked_projects_count"] == 0
        assert stats["cache_info"]["projects"]["is_valid"] is True
        assert stats["cache_info"]["projects"]["ttl_seconds"] == gum_cache.PROJECTS_CACHE_TTL

    def test_two_instances_share_freshness(self, tmp_path):
        first = Database(tmp_path / "gum.db")
        second = Database(tmp_path / "gum.db")
        DatabaseCache(first).set_projects([Project(path="/a")])
        assert [p.path for p in DatabaseCache(second).get_projects()] == ["/a"]
        first.close()
        second.close()
