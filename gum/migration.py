"""Migration of the legacy JSON cache into the SQLite store.

State machine::

    not_migrated --migrate()--> migrated --rollback()--> not_migrated

Per legacy file, ``migrate`` copies the file to a staging name beside the
backups, parses the copy, upserts every record, promotes the copy to the
backup, and only then removes the original. A file that fails to parse is
reported and left where it was; the other files still migrate. Re-running
after a partial failure upserts the same keys again, which is a no-op for
rows already present. A backup recorded by an earlier run is never
replaced or deleted by a later one.

``rollback`` checks that every backup it needs exists before it touches
anything, restores the files byte for byte, and then clears the affected
tables in one transaction.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from gum.cache import default_ttl
from gum.config import GumConfig
from gum.database import Database
from gum.errors import (
    BackupMissingError,
    Cancelled,
    MalformedCacheEntry,
    MigrationStateError,
    wrap_storage_error,
)
from gum.models import LegacyEnvelope, decode_payload_items

logger = logging.getLogger(__name__)

# Legacy cache key -> (file name, store table). Processing order is this order.
LEGACY_FILES = {
    "projects": ("projects.json", "projects"),
    "project-dirs": ("project-dirs.json", "project_dirs"),
    "dirs": ("dirs.json", "dir_usage"),
}

_TABLE_FOR_FILE = {filename: table for filename, table in LEGACY_FILES.values()}
_KEY_FOR_FILE = {filename: key for key, (filename, _) in LEGACY_FILES.items()}


class MigrationResult(BaseModel):
    """What one ``migrate()`` call did."""

    already_migrated: bool = False
    migrated_files: list[str] = Field(default_factory=list)
    missing_files: list[str] = Field(default_factory=list)
    failed_files: dict[str, str] = Field(default_factory=dict)
    skipped_items: dict[str, int] = Field(default_factory=dict)
    counts: dict[str, int] = Field(default_factory=dict)
    linked_projects: int = 0

    @property
    def success(self) -> bool:
        return not self.failed_files

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())


class RollbackResult(BaseModel):
    restored_files: list[str] = Field(default_factory=list)
    cleared: dict[str, int] = Field(default_factory=dict)


class MigrationStatus(BaseModel):
    state: str
    migrated_at: Optional[str] = None
    migrated_files: list[str] = Field(default_factory=list)
    pending_files: list[str] = Field(default_factory=list)
    backups: list[str] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)

    @property
    def is_migrated(self) -> bool:
        return self.state == "migrated"


class VerifyEntry(BaseModel):
    file: str
    table: str
    expected: int
    actual: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.actual >= self.expected


class MigrationVerification(BaseModel):
    entries: list[VerifyEntry] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(entry.ok for entry in self.entries)


def _atomic_copy(src: Path, dest: Path) -> None:
    """Copy src to dest so that dest is either absent/old or complete."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dest.parent, suffix=".tmp")
    os.close(fd)
    try:
        shutil.copy2(src, tmp_path)
        os.replace(tmp_path, dest)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def _stage_copy(src: Path, directory: Path) -> Path:
    """Copy src to a uniquely named ``*.incoming`` file in directory."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f"{src.name}.", suffix=".incoming")
    os.close(fd)
    try:
        shutil.copy2(src, tmp_path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    return Path(tmp_path)


def load_legacy_file(path: Path, key: str) -> tuple[list, list[str]]:
    """Parse a legacy cache file into ``(records, item_errors)``.

    The envelope's TTL is ignored: stale data is still worth importing.
    Raises MalformedCacheEntry if the envelope or payload shape is wrong.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedCacheEntry(key, f"invalid JSON: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise MalformedCacheEntry(key, f"not UTF-8 text: {exc}") from exc

    try:
        envelope = LegacyEnvelope.model_validate(raw)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        raise MalformedCacheEntry(key, f"{location}: {error['msg']}") from exc

    try:
        items, errors = decode_payload_items(key, envelope.data)
    except ValueError as exc:
        raise MalformedCacheEntry(key, str(exc)) from exc
    return [item.to_record() for item in items], errors


class Migrator:
    """Moves ``<cache_dir>/*.json`` into the store and back."""

    def __init__(self, db: Database, cache_dir, backup_dir=None):
        self.db = db
        self.cache_dir = Path(cache_dir)
        self.backup_dir = Path(backup_dir) if backup_dir else self.cache_dir / "backup"

    @classmethod
    def from_config(cls, config: GumConfig, db: Database) -> "Migrator":
        return cls(db, config.cache_dir, config.backup_dir)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def status(self) -> MigrationStatus:
        state = self.db.get_migration_state()
        filenames = [filename for filename, _ in LEGACY_FILES.values()]
        return MigrationStatus(
            state=state["status"],
            migrated_at=state["migrated_at"],
            migrated_files=state["files"],
            pending_files=[f for f in filenames if (self.cache_dir / f).exists()],
            backups=[f for f in filenames if (self.backup_dir / f).exists()],
            counts=state["counts"],
        )

    def verify(self) -> MigrationVerification:
        """Compare each backed-up file's distinct record count with its table.

        A table may legitimately hold more rows than the file (later scans
        or visits), so only fewer rows counts as a failure.
        """
        state = self.db.get_migration_state()
        stats = self.db.stats()
        report = MigrationVerification()
        for filename in state["files"]:
            table = _TABLE_FOR_FILE[filename]
            entry = VerifyEntry(file=filename, table=table, expected=0, actual=stats[table])
            backup = self.backup_dir / filename
            if not backup.exists():
                entry.error = "backup missing"
            else:
                try:
                    records, _ = load_legacy_file(backup, _KEY_FOR_FILE[filename])
                    entry.expected = len({record.path for record in records})
                except MalformedCacheEntry as exc:
                    entry.error = exc.reason
            report.entries.append(entry)
        return report

    # ------------------------------------------------------------------
    # migrate
    # ------------------------------------------------------------------

    def _import(self, table: str, records: list) -> None:
        if table == "projects":
            self.db.upsert_projects(records)
            return
        for record in records:
            if table == "project_dirs":
                self.db.upsert_project_dir(record)
            else:
                self.db.import_dir_usage(record)
            logger.debug("Imported %s row %s", table, record.path)

    def _promote_backup(self, filename: str, staged: Path, recorded: set[str]) -> None:
        """Make a parsed staging copy the backup of ``filename``.

        The backup of a file an earlier run already migrated holds the
        original bytes rollback must restore, so it is never replaced.
        """
        backup = self.backup_dir / filename
        if filename in recorded and backup.exists():
            logger.info("Keeping backup of %s from an earlier run", filename)
            return
        try:
            os.replace(staged, backup)
        except OSError as exc:
            raise wrap_storage_error("backup", f"file={filename!r}", exc) from exc

    def _record_progress(self, result: MigrationResult, complete: bool) -> None:
        known = set(self.db.get_migration_state()["files"])
        files = sorted(known | set(result.migrated_files))
        tables = [_TABLE_FOR_FILE[f] for f in files]
        self.db.mark_migrated(result.migrated_files, tables, complete=complete)

    def migrate(self, cancel: Optional[threading.Event] = None) -> MigrationResult:
        """Import every legacy file that is present.

        Returns the aggregate result. A file that cannot be parsed is listed
        in ``failed_files`` and stays in place; storage errors propagate.
        If ``cancel`` is set between files, the files finished so far stay
        committed and ``Cancelled`` is raised carrying the partial result.
        """
        state = self.db.get_migration_state()
        if state["status"] == "migrated":
            logger.info("Store already migrated at %s; nothing to do", state["migrated_at"])
            return MigrationResult(already_migrated=True, counts=state["counts"])

        result = MigrationResult()
        hashes: dict[str, str] = {}
        recorded = set(state["files"])

        for key, (filename, table) in LEGACY_FILES.items():
            if cancel is not None and cancel.is_set():
                logger.warning("Migration cancelled before %s", filename)
                if result.migrated_files:
                    self._record_progress(result, complete=False)
                raise Cancelled(result)

            source = self.cache_dir / filename
            if not source.exists():
                result.missing_files.append(filename)
                continue

            try:
                staged = _stage_copy(source, self.backup_dir)
            except FileNotFoundError:
                # Another migrator finished this file first
                result.missing_files.append(filename)
                continue
            except OSError as exc:
                raise wrap_storage_error("backup", f"file={filename!r}", exc) from exc

            try:
                try:
                    records, item_errors = load_legacy_file(staged, key)
                except MalformedCacheEntry as exc:
                    logger.warning("Skipping %s: %s", filename, exc.reason)
                    result.failed_files[filename] = exc.reason
                    continue

                for error in item_errors:
                    logger.warning("Skipping malformed item in %s: %s", filename, error)
                if item_errors:
                    result.skipped_items[filename] = len(item_errors)

                self._import(table, records)
                result.counts[table] = len(records)
                hashes[key] = hashlib.sha256(staged.read_bytes()).hexdigest()
                self._promote_backup(filename, staged, recorded)
            finally:
                staged.unlink(missing_ok=True)

            source.unlink(missing_ok=True)
            result.migrated_files.append(filename)
            logger.info("Migrated %d records from %s into %s", len(records), filename, table)

        self._record_progress(result, complete=not result.failed_files)

        if "projects" in result.counts:
            result.linked_projects = self.db.link_projects_to_github()
        for key, digest in hashes.items():
            self.db.upsert_cache_metadata(key, default_ttl(key), data_hash=digest)
        return result

    # ------------------------------------------------------------------
    # rollback
    # ------------------------------------------------------------------

    def rollback(self) -> RollbackResult:
        """Restore the legacy files and clear what migration populated.

        Raises MigrationStateError if there is nothing to roll back and
        BackupMissingError, before any change, if a backup is gone.
        """
        state = self.db.get_migration_state()
        files = state["files"]
        if state["status"] != "migrated" and not files:
            raise MigrationStateError("nothing to roll back: the store has not been migrated")

        missing = [str(self.backup_dir / f) for f in files if not (self.backup_dir / f).exists()]
        if missing:
            raise BackupMissingError(missing)

        for filename in files:
            try:
                _atomic_copy(self.backup_dir / filename, self.cache_dir / filename)
            except OSError as exc:
                raise wrap_storage_error("restore_file", f"file={filename!r}", exc) from exc
            logger.debug("Restored %s", filename)

        cleared = self.db.reset_migration([_TABLE_FOR_FILE[f] for f in files])

        for filename in files:
            (self.backup_dir / filename).unlink(missing_ok=True)

        logger.info("Rolled back migration of %s", ", ".join(files) or "no files")
        return RollbackResult(restored_files=list(files), cleared=cleared)
