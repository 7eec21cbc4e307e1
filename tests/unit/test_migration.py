"""Tests for gum.migration: legacy JSON cache -> store and back."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from gum.database import Database
from gum.errors import BackupMissingError, Cancelled, MigrationStateError
from gum.migration import LEGACY_FILES, Migrator, load_legacy_file
from gum.models import GitHubRepo


def _projects(n=50):
    return [
        {"Path": f"/home/me/src/project-{i:02d}", "Remote": f"git@github.com:me/project-{i:02d}.git", "Branch": ""}
        for i in range(n)
    ]


def _project_dirs():
    return [{"Path": "/home/me/src", "LastScanned": "2025-10-01T09:30:00Z", "GitCount": 50}]


def _dirs():
    return [
        {"Path": "/home/me/src/project-01", "Frequency": 12, "LastSeen": "2025-10-05T18:00:00Z"},
        {"Path": "/tmp", "Frequency": 3, "LastSeen": "2025-09-01T10:00:00Z"},
    ]


class CancelAfter:
    """Event stand-in that reports set after ``n`` checks."""

    def __init__(self, n):
        self.remaining = n

    def is_set(self):
        self.remaining -= 1
        return self.remaining < 0


class TestLegacyFiles:
    """The closed set of legacy files and their tables."""

    def test_mapping(self):
        """
        >>> from gum.migration import LEGACY_FILES
        >>> sorted(LEGACY_FILES)
        ['dirs', 'project-dirs', 'projects']
        """
        assert [table for _, table in LEGACY_FILES.values()] == ["projects", "project_dirs", "dir_usage"]

    def test_load_ignores_expired_envelope(self, cache_dir, legacy_file):
        old = datetime.now(timezone.utc) - timedelta(days=30)
        path = legacy_file(cache_dir, "projects.json", _projects(3), ttl=1, timestamp=old)
        records, errors = load_legacy_file(path, "projects")
        assert len(records) == 3
        assert errors == []


class TestMigrateRoundTrip:
    """Migrate then roll back restores the legacy files byte for byte."""

    def test_fifty_projects_and_one_dir(self, db, cache_dir, legacy_file):
        projects_path = legacy_file(cache_dir, "projects.json", _projects())
        dirs_path = legacy_file(cache_dir, "project-dirs.json", _project_dirs())
        original_projects = projects_path.read_bytes()
        original_dirs = dirs_path.read_bytes()

        migrator = Migrator(db, cache_dir)
        result = migrator.migrate()

        assert result.success
        assert result.counts == {"projects": 50, "project_dirs": 1}
        assert sorted(result.migrated_files) == ["project-dirs.json", "projects.json"]
        assert result.missing_files == ["dirs.json"]
        assert db.stats()["projects"] == 50
        assert db.stats()["project_dirs"] == 1
        assert not projects_path.exists()
        assert (cache_dir / "backup" / "projects.json").read_bytes() == original_projects

        status = migrator.status()
        assert status.is_migrated
        assert status.counts == {"projects": 50, "project_dirs": 1}

        rolled = migrator.rollback()

        assert sorted(rolled.restored_files) == ["project-dirs.json", "projects.json"]
        assert rolled.cleared == {"projects": 50, "project_dirs": 1}
        assert projects_path.read_bytes() == original_projects
        assert dirs_path.read_bytes() == original_dirs
        assert db.stats()["projects"] == 0
        assert db.stats()["project_dirs"] == 0
        assert db.list_cache_metadata() == []
        assert migrator.status().state == "not_migrated"
        assert not (cache_dir / "backup" / "projects.json").exists()

    def test_migrate_again_after_rollback(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(5))
        migrator = Migrator(db, cache_dir)
        migrator.migrate()
        migrator.rollback()
        result = migrator.migrate()
        assert result.counts == {"projects": 5}
        assert db.stats()["projects"] == 5

    def test_dir_usage_keeps_frequency(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "dirs.json", _dirs())
        Migrator(db, cache_dir).migrate()
        usage = db.get_dir_usage("/home/me/src/project-01")
        assert usage.frequency == 12
        assert usage.last_seen == datetime(2025, 10, 5, 18, 0, tzinfo=timezone.utc)

    def test_writes_cache_metadata_markers(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(2))
        Migrator(db, cache_dir).migrate()
        meta = db.get_cache_metadata("projects")
        assert meta is not None
        assert len(meta.data_hash) == 64

    def test_links_github_repos(self, db, cache_dir, legacy_file):
        db.upsert_github_repo(GitHubRepo(full_name="me/project-07", ssh_url="git@github.com:me/project-07.git"))
        legacy_file(cache_dir, "projects.json", _projects(10))
        result = Migrator(db, cache_dir).migrate()
        assert result.linked_projects == 1
        assert db.get_project("/home/me/src/project-07").github_repo_id is not None


class TestMigrateIdempotence:
    """Never a silent double import."""

    def test_already_migrated_is_a_no_op(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(3))
        migrator = Migrator(db, cache_dir)
        migrator.migrate()

        legacy_file(cache_dir, "projects.json", _projects(8))
        result = migrator.migrate()

        assert result.already_migrated is True
        assert result.migrated_files == []
        assert db.stats()["projects"] == 3
        assert (cache_dir / "projects.json").exists()

    def test_nothing_to_migrate(self, db, cache_dir):
        result = Migrator(db, cache_dir).migrate()
        assert result.success
        assert result.total_records == 0
        assert sorted(result.missing_files) == ["dirs.json", "project-dirs.json", "projects.json"]

    def test_concurrent_migrators(self, tmp_path, cache_dir, legacy_file):
        """Two migrators racing on the same files leave one copy of every row."""
        legacy_file(cache_dir, "projects.json", _projects())
        legacy_file(cache_dir, "dirs.json", _dirs())
        db_path = tmp_path / "gum.db"
        Database(db_path).close()
        errors = []

        def run():
            db = Database(db_path, busy_timeout=10.0)
            try:
                Migrator(db, cache_dir).migrate()
            except Exception as e:  # surfaced below
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        db = Database(db_path)
        assert db.stats()["projects"] == 50
        assert db.stats()["dir_usage"] == 2
        assert db.get_migration_state()["status"] == "migrated"
        db.close()


class TestPartialFailure:
    """One bad file does not block the others."""

    def test_malformed_file_reported_and_left_in_place(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(4))
        (cache_dir / "dirs.json").write_text("{this is not json")

        result = Migrator(db, cache_dir).migrate()

        assert db.stats()["projects"] == 4
        assert list(result.failed_files) == ["dirs.json"]
        assert "invalid JSON" in result.failed_files["dirs.json"]
        assert not result.success
        assert (cache_dir / "dirs.json").exists()
        assert not (cache_dir / "backup" / "dirs.json").exists()

    def test_partial_run_can_be_retried(self, db, cache_dir, legacy_file):
        """After fixing the bad file, a re-run completes without duplicates."""
        legacy_file(cache_dir, "projects.json", _projects(4))
        (cache_dir / "dirs.json").write_text("[]")
        migrator = Migrator(db, cache_dir)

        first = migrator.migrate()
        assert "dirs.json" in first.failed_files
        assert migrator.status().state == "not_migrated"

        legacy_file(cache_dir, "dirs.json", _dirs())
        second = migrator.migrate()

        assert second.success
        assert second.counts == {"dir_usage": 2}
        assert db.stats()["projects"] == 4
        assert migrator.status().state == "migrated"
        assert sorted(migrator.status().migrated_files) == ["dirs.json", "projects.json"]

    def test_partial_run_can_be_rolled_back(self, db, cache_dir, legacy_file):
        path = legacy_file(cache_dir, "projects.json", _projects(4))
        original = path.read_bytes()
        (cache_dir / "project-dirs.json").write_text('{"data": "nope", "timestamp": "2025-01-01T00:00:00Z", "ttl": 5}')
        migrator = Migrator(db, cache_dir)
        migrator.migrate()

        migrator.rollback()
        assert path.read_bytes() == original
        assert db.stats()["projects"] == 0

    def test_rerun_with_broken_copy_keeps_earlier_backup(self, db, cache_dir, legacy_file):
        """A file that reappears broken after a partial run cannot destroy its backup."""
        path = legacy_file(cache_dir, "projects.json", _projects(4))
        original = path.read_bytes()
        (cache_dir / "project-dirs.json").write_text("{trunc")
        migrator = Migrator(db, cache_dir)
        migrator.migrate()

        path.write_text("{trunc")
        second = migrator.migrate()

        assert "projects.json" in second.failed_files
        assert (cache_dir / "backup" / "projects.json").read_bytes() == original
        assert list((cache_dir / "backup").glob("*.incoming")) == []

        result = migrator.rollback()
        assert "projects.json" in result.restored_files
        assert path.read_bytes() == original

    def test_rerun_with_new_copy_keeps_earlier_backup(self, db, cache_dir, legacy_file):
        path = legacy_file(cache_dir, "projects.json", _projects(4))
        original = path.read_bytes()
        (cache_dir / "dirs.json").write_text("{trunc")
        migrator = Migrator(db, cache_dir)
        migrator.migrate()

        legacy_file(cache_dir, "projects.json", _projects(6))
        second = migrator.migrate()

        assert second.counts["projects"] == 6
        assert not path.exists()
        assert (cache_dir / "backup" / "projects.json").read_bytes() == original
        assert list((cache_dir / "backup").glob("*.incoming")) == []

        migrator.rollback()
        assert path.read_bytes() == original

    def test_bad_items_are_skipped_and_counted(self, db, cache_dir, legacy_file):
        items = _projects(5) + [{"Remote": "no-path"}]
        legacy_file(cache_dir, "projects.json", items)
        result = Migrator(db, cache_dir).migrate()
        assert result.counts == {"projects": 5}
        assert result.skipped_items == {"projects.json": 1}
        assert result.success


class TestRollbackGuards:
    """Rollback fails loudly instead of losing data."""

    def test_not_migrated(self, db, cache_dir):
        with pytest.raises(MigrationStateError):
            Migrator(db, cache_dir).rollback()

    def test_missing_backup_touches_nothing(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(3))
        legacy_file(cache_dir, "project-dirs.json", _project_dirs())
        migrator = Migrator(db, cache_dir)
        migrator.migrate()
        (cache_dir / "backup" / "projects.json").unlink()

        with pytest.raises(BackupMissingError) as exc_info:
            migrator.rollback()

        assert any("projects.json" in m for m in exc_info.value.missing)
        assert exc_info.value.exit_code == 1
        assert db.stats()["projects"] == 3
        assert db.stats()["project_dirs"] == 1
        assert not (cache_dir / "project-dirs.json").exists()
        assert (cache_dir / "backup" / "project-dirs.json").exists()
        assert migrator.status().is_migrated


class TestCancellation:
    """Cancellation keeps committed work and is re-runnable."""

    def test_cancel_before_start(self, db, cache_dir, legacy_file):
        path = legacy_file(cache_dir, "projects.json", _projects(3))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled) as exc_info:
            Migrator(db, cache_dir).migrate(cancel)

        assert exc_info.value.result.migrated_files == []
        assert path.exists()
        assert db.stats()["projects"] == 0

    def test_cancel_between_files(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(3))
        dirs_path = legacy_file(cache_dir, "project-dirs.json", _project_dirs())
        migrator = Migrator(db, cache_dir)

        with pytest.raises(Cancelled) as exc_info:
            migrator.migrate(CancelAfter(1))

        assert exc_info.value.result.migrated_files == ["projects.json"]
        assert db.stats()["projects"] == 3
        assert dirs_path.exists()
        assert migrator.status().state == "not_migrated"

        result = migrator.migrate()
        assert result.migrated_files == ["project-dirs.json"]
        assert migrator.status().is_migrated


class TestStatusAndVerify:
    """Operator views."""

    def test_status_before_migration(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "dirs.json", _dirs())
        status = Migrator(db, cache_dir).status()
        assert status.state == "not_migrated"
        assert status.pending_files == ["dirs.json"]
        assert status.backups == []

    def test_verify_passes_after_migration(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(6))
        legacy_file(cache_dir, "dirs.json", _dirs())
        migrator = Migrator(db, cache_dir)
        migrator.migrate()

        report = migrator.verify()
        assert report.passed
        assert {(e.table, e.expected, e.actual) for e in report.entries} == {
            ("projects", 6, 6),
            ("dir_usage", 2, 2),
        }

    def test_verify_fails_when_rows_are_missing(self, db, cache_dir, legacy_file):
        legacy_file(cache_dir, "projects.json", _projects(6))
        migrator = Migrator(db, cache_dir)
        migrator.migrate()
        db.clear(["projects"])
        assert not migrator.verify().passed

    def test_from_config_uses_backup_dir(self, config, db):
        migrator = Migrator.from_config(config, db)
        assert migrator.backup_dir == config.cache_dir / "backup"
