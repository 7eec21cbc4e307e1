"""Read-only integrity checks over the gum store.

Each check passes or fails on its own and lists what it found. Nothing
here repairs anything: the store is opened with ``mode=ro`` so a check
cannot write even by accident.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from gum.database import NATURAL_KEYS, STATS_TABLES
from gum.models import ensure_utc, to_db, utc_now

logger = logging.getLogger(__name__)

CLOCK_SKEW_TOLERANCE = timedelta(minutes=5)

EXPECTED_TABLES = (
    "projects",
    "project_dirs",
    "github_repos",
    "dir_usage",
    "cache_metadata",
    "similarity_cache",
    "migration_state",
)


class CheckResult(BaseModel):
    name: str
    passed: bool
    details: str = ""
    findings: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    checks: list[CheckResult] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def structural_failure(self) -> bool:
        """True if the store itself is damaged, not just its contents."""
        return any(check.name == "structure" and not check.passed for check in self.checks)

    def get(self, name: str) -> Optional[CheckResult]:
        return next((check for check in self.checks if check.name == name), None)

    def summary(self) -> str:
        """One line per check plus a verdict.

        >>> report = IntegrityReport(checks=[
        ...     CheckResult(name="structure", passed=True, details="ok"),
        ...     CheckResult(name="duplicates", passed=False, details="1 duplicate key"),
        ... ])
        >>> print(report.summary())
        PASS structure: ok
        FAIL duplicates: 1 duplicate key
        1 of 2 checks failed
        """
        lines = [
            f"{'PASS' if check.passed else 'FAIL'} {check.name}: {check.details}"
            for check in self.checks
        ]
        failed = sum(1 for check in self.checks if not check.passed)
        if failed:
            lines.append(f"{failed} of {len(self.checks)} checks failed")
        else:
            lines.append(f"all {len(self.checks)} checks passed")
        return "\n".join(lines)


class IntegrityChecker:
    """Runs the checks against a store file.

    Accepts a ``Database`` or a path to the store file.
    """

    def __init__(self, db):
        self.db_path = Path(getattr(db, "db_path", db))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(f"{self.db_path.resolve().as_uri()}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        return conn

    def run(self, now: Optional[datetime] = None) -> IntegrityReport:
        now = ensure_utc(now) if now else utc_now()
        report = IntegrityReport()

        if not self.db_path.exists():
            report.checks.append(
                CheckResult(name="structure", passed=False, details=f"store file not found: {self.db_path}")
            )
            return report

        try:
            with closing(self._connect()) as conn:
                structure = self._check_structure(conn)
                report.checks.append(structure)
                if not structure.passed:
                    return report

                checks: list[tuple[str, Callable[[], CheckResult]]] = [
                    ("foreign_keys", lambda: self._check_foreign_keys(conn)),
                    ("orphans", lambda: self._check_orphans(conn)),
                    ("duplicates", lambda: self._check_duplicates(conn)),
                    ("cache_metadata", lambda: self._check_cache_metadata(conn, now)),
                ]
                for name, check in checks:
                    try:
                        report.checks.append(check())
                    except sqlite3.Error as exc:
                        logger.warning("Integrity check %s could not run: %s", name, exc)
                        report.checks.append(CheckResult(name=name, passed=False, details=str(exc)))

                report.counts = {
                    table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    for table in STATS_TABLES
                }
        except sqlite3.Error as exc:
            # Not a database at all, or unreadable: surfaced verbatim
            report.checks = [CheckResult(name="structure", passed=False, details=str(exc))]
        return report

    # ------------------------------------------------------------------

    def _check_structure(self, conn: sqlite3.Connection) -> CheckResult:
        rows = [row[0] for row in conn.execute("PRAGMA integrity_check")]
        findings = [] if rows == ["ok"] else rows

        present = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        findings.extend(f"missing table: {t}" for t in EXPECTED_TABLES if t not in present)

        if findings:
            return CheckResult(name="structure", passed=False, details=findings[0], findings=findings)
        return CheckResult(name="structure", passed=True, details="ok")

    def _check_foreign_keys(self, conn: sqlite3.Connection) -> CheckResult:
        findings = [
            f"{row[0]} rowid {row[1]} references missing {row[2]} row"
            for row in conn.execute("PRAGMA foreign_key_check")
        ]
        if findings:
            return CheckResult(
                name="foreign_keys",
                passed=False,
                details=f"{len(findings)} unresolved reference(s)",
                findings=findings,
            )
        return CheckResult(name="foreign_keys", passed=True, details="all references resolve")

    def _check_orphans(self, conn: sqlite3.Connection) -> CheckResult:
        findings = []
        for row in conn.execute(
            """SELECT p.path, p.github_repo_id FROM projects p
               LEFT JOIN github_repos gr ON p.github_repo_id = gr.id
               WHERE p.github_repo_id IS NOT NULL AND gr.id IS NULL"""
        ):
            findings.append(f"project {row[0]} links to missing github repo {row[1]}")

        for row in conn.execute(
            """SELECT s.id, s.source_id, s.target_id FROM similarity_cache s
               WHERE (s.source_type = 'project'
                      AND NOT EXISTS (SELECT 1 FROM projects p WHERE p.id = s.source_id))
                  OR (s.target_type = 'project'
                      AND NOT EXISTS (SELECT 1 FROM projects p WHERE p.id = s.target_id))"""
        ):
            findings.append(f"similarity row {row[0]} ({row[1]} -> {row[2]}) references a missing project")

        for row in conn.execute("SELECT path, frequency FROM dir_usage WHERE frequency < 1"):
            findings.append(f"dir usage {row[0]} has non-positive frequency {row[1]}")

        if findings:
            return CheckResult(
                name="orphans", passed=False, details=f"{len(findings)} orphaned row(s)", findings=findings
            )
        return CheckResult(name="orphans", passed=True, details="no orphaned rows")

    def _check_duplicates(self, conn: sqlite3.Connection) -> CheckResult:
        findings = []
        for table, column in NATURAL_KEYS.items():
            for row in conn.execute(
                f"SELECT {column}, COUNT(*) FROM {table} GROUP BY {column} HAVING COUNT(*) > 1"
            ):
                findings.append(f"{table}.{column} = {row[0]!r} ({row[1]} copies)")
        if findings:
            return CheckResult(
                name="duplicates",
                passed=False,
                details=f"{len(findings)} duplicate key(s)",
                findings=findings,
            )
        return CheckResult(name="duplicates", passed=True, details="natural keys are unique")

    def _check_cache_metadata(self, conn: sqlite3.Connection, now: datetime) -> CheckResult:
        findings = []
        for row in conn.execute("SELECT cache_key, ttl_seconds FROM cache_metadata WHERE ttl_seconds <= 0"):
            findings.append(f"{row[0]}: ttl_seconds is {row[1]}")

        limit = to_db(now + CLOCK_SKEW_TOLERANCE)
        for row in conn.execute(
            "SELECT cache_key, last_updated FROM cache_metadata WHERE last_updated > ?", (limit,)
        ):
            findings.append(f"{row[0]}: last_updated {row[1]} is in the future")

        if findings:
            return CheckResult(
                name="cache_metadata",
                passed=False,
                details=f"{len(findings)} inconsistent marker(s)",
                findings=findings,
            )
        return CheckResult(name="cache_metadata", passed=True, details="markers are consistent")
