"""SQLite store for gum.

Five data tables plus bookkeeping:
- Discovery: projects, project_dirs
- Usage: dir_usage
- Remote metadata: github_repos
- Freshness: cache_metadata
- Bookkeeping: similarity_cache, migration_state

WAL mode for concurrent readers, SQLite's single writer lock for writes.
Every write is one ``INSERT ... ON CONFLICT DO UPDATE`` (or a whole-table
delete) inside a ``BEGIN IMMEDIATE`` transaction, so concurrent processes
never race into duplicate rows or lost updates. No lock beyond SQLite's
own is taken.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from gum import frecency
from gum.config import (
    DEFAULT_BUSY_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    GumConfig,
)
from gum.errors import StorageError, is_transient, wrap_storage_error
from gum.models import (
    CacheMetadata,
    DirUsage,
    GitHubRepo,
    Project,
    ProjectDir,
    to_db,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Projects: git working copies found under project dirs
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    remote_url TEXT,
    branch TEXT,
    last_modified TEXT,
    git_count INTEGER DEFAULT 0,
    github_repo_id INTEGER REFERENCES github_repos(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Project dirs: roots that are scanned for projects
CREATE TABLE IF NOT EXISTS project_dirs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    last_scanned TEXT,
    git_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Remote repository metadata
CREATE TABLE IF NOT EXISTS github_repos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    full_name TEXT NOT NULL UNIQUE,
    description TEXT,
    url TEXT,
    clone_url TEXT,
    ssh_url TEXT,
    is_private BOOLEAN DEFAULT 0,
    is_fork BOOLEAN DEFAULT 0,
    updated_at TEXT,
    last_discovered TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Directory visits for frecency ranking
CREATE TABLE IF NOT EXISTS dir_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    frequency INTEGER NOT NULL DEFAULT 1,
    last_seen TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS similarity_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_type TEXT NOT NULL,
    source_id INTEGER NOT NULL,
    target_type TEXT NOT NULL,
    target_id INTEGER NOT NULL,
    similarity_score REAL NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(source_type, source_id, target_type, target_id)
);

CREATE TABLE IF NOT EXISTS cache_metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_key TEXT NOT NULL UNIQUE,
    last_updated TEXT NOT NULL,
    ttl_seconds INTEGER NOT NULL DEFAULT 300,
    data_hash TEXT,
    created_at TEXT NOT NULL
);

-- Single row: where the legacy JSON cache migration stands
CREATE TABLE IF NOT EXISTS migration_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    status TEXT NOT NULL DEFAULT 'not_migrated',
    migrated_at TEXT,
    files TEXT NOT NULL DEFAULT '[]',
    counts TEXT NOT NULL DEFAULT '{}'
);

INSERT OR IGNORE INTO migration_state (id, status) VALUES (1, 'not_migrated');
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_projects_name ON projects(name);
CREATE INDEX IF NOT EXISTS idx_projects_remote ON projects(remote_url);
CREATE INDEX IF NOT EXISTS idx_projects_updated ON projects(updated_at);
CREATE INDEX IF NOT EXISTS idx_projects_github ON projects(github_repo_id);
CREATE INDEX IF NOT EXISTS idx_project_dirs_scanned ON project_dirs(last_scanned);
CREATE INDEX IF NOT EXISTS idx_github_repos_name ON github_repos(name);
CREATE INDEX IF NOT EXISTS idx_github_repos_updated ON github_repos(updated_at);
CREATE INDEX IF NOT EXISTS idx_dir_usage_last_seen ON dir_usage(last_seen);
CREATE INDEX IF NOT EXISTS idx_similarity_source ON similarity_cache(source_type, source_id);
CREATE INDEX IF NOT EXISTS idx_similarity_target ON similarity_cache(target_type, target_id);
CREATE INDEX IF NOT EXISTS idx_cache_metadata_updated ON cache_metadata(last_updated);
"""

# Entity name -> table. Order matters for clear(): children before parents.
DATA_TABLES = (
    "similarity_cache",
    "projects",
    "project_dirs",
    "dir_usage",
    "github_repos",
    "cache_metadata",
)

STATS_TABLES = ("projects", "project_dirs", "github_repos", "dir_usage", "cache_metadata")

# Natural key per table, used by upserts and the integrity checker
NATURAL_KEYS = {
    "projects": "path",
    "project_dirs": "path",
    "dir_usage": "path",
    "github_repos": "full_name",
    "cache_metadata": "cache_key",
}


def _newest(table: str, column: str) -> str:
    """SQL expression keeping whichever of the stored/incoming timestamp is newer.

    A NULL incoming value never overwrites a stored one.
    """
    return (
        f"CASE WHEN {table}.{column} IS NULL OR excluded.{column} > {table}.{column} "
        f"THEN excluded.{column} ELSE {table}.{column} END"
    )


UPSERT_PROJECT_SQL = f"""
INSERT INTO projects (
    path, name, remote_url, branch, last_modified, git_count,
    github_repo_id, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    name = excluded.name,
    remote_url = excluded.remote_url,
    branch = excluded.branch,
    last_modified = {_newest("projects", "last_modified")},
    git_count = excluded.git_count,
    github_repo_id = COALESCE(excluded.github_repo_id, projects.github_repo_id),
    updated_at = {_newest("projects", "updated_at")}
"""

UPSERT_PROJECT_DIR_SQL = f"""
INSERT INTO project_dirs (path, last_scanned, git_count, created_at, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    last_scanned = {_newest("project_dirs", "last_scanned")},
    git_count = excluded.git_count,
    updated_at = {_newest("project_dirs", "updated_at")}
"""

UPSERT_GITHUB_REPO_SQL = f"""
INSERT INTO github_repos (
    name, full_name, description, url, clone_url, ssh_url,
    is_private, is_fork, updated_at, last_discovered, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(full_name) DO UPDATE SET
    name = excluded.name,
    description = excluded.description,
    url = excluded.url,
    clone_url = excluded.clone_url,
    ssh_url = excluded.ssh_url,
    is_private = excluded.is_private,
    is_fork = excluded.is_fork,
    updated_at = {_newest("github_repos", "updated_at")},
    last_discovered = {_newest("github_repos", "last_discovered")}
"""

# A visit: first sighting starts at 1, every later one adds exactly 1.
RECORD_VISIT_SQL = f"""
INSERT INTO dir_usage (path, frequency, last_seen, created_at, updated_at)
VALUES (?, 1, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    frequency = dir_usage.frequency + 1,
    last_seen = {_newest("dir_usage", "last_seen")},
    updated_at = {_newest("dir_usage", "updated_at")}
"""

# An import (migration): carries a frequency of its own. Re-importing the
# same record is idempotent and frequency never goes down.
IMPORT_DIR_USAGE_SQL = f"""
INSERT INTO dir_usage (path, frequency, last_seen, created_at, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    frequency = MAX(dir_usage.frequency, excluded.frequency),
    last_seen = {_newest("dir_usage", "last_seen")},
    updated_at = {_newest("dir_usage", "updated_at")}
"""

UPSERT_CACHE_METADATA_SQL = """
INSERT INTO cache_metadata (cache_key, last_updated, ttl_seconds, data_hash, created_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(cache_key) DO UPDATE SET
    last_updated = excluded.last_updated,
    ttl_seconds = excluded.ttl_seconds,
    data_hash = excluded.data_hash
"""

UPSERT_SIMILARITY_SQL = """
INSERT INTO similarity_cache (
    source_type, source_id, target_type, target_id, similarity_score, created_at
) VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(source_type, source_id, target_type, target_id) DO UPDATE SET
    similarity_score = excluded.similarity_score,
    created_at = excluded.created_at
"""

_PROJECT_COLUMNS = (
    "id, path, name, remote_url, branch, last_modified, git_count, "
    "github_repo_id, created_at, updated_at"
)

# Tier 0: exact name, tier 1: substring of name or path, tier 2: the rest.
_SIMILARITY_TIER = """
CASE
    WHEN LOWER(name) = LOWER(:q) THEN 0
    WHEN instr(LOWER(name), LOWER(:q)) > 0 OR instr(LOWER(path), LOWER(:q)) > 0 THEN 1
    ELSE 2
END
"""


class Database:
    """SQLite store with WAL mode and atomic upserts.

    >>> db = Database(":memory:")
    >>> db.stats()["projects"]
    0
    """

    def __init__(
        self,
        db_path,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._write_lock = threading.Lock()
        self._local = threading.local()

        if self.db_path != ":memory:":
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise wrap_storage_error("open", f"path={self.db_path!r}", exc) from exc

        self._retry("init_schema", None, self._init_schema)

    @classmethod
    def from_config(cls, config: GumConfig) -> "Database":
        return cls(
            config.db_path,
            busy_timeout=config.busy_timeout,
            retry_attempts=config.retry_attempts,
            retry_base_delay=config.retry_base_delay,
        )

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        """One IMMEDIATE transaction: takes SQLite's write lock up front."""
        with self._write_lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        yield self._get_connection()

    def _retry(self, operation: str, key: Optional[str], fn: Callable[[], T]) -> T:
        """Run fn, retrying lock contention with exponential backoff.

        Anything else, or contention that outlasts the attempts, is wrapped
        in StorageError naming the operation and key.
        """
        for attempt in range(self.retry_attempts):
            try:
                return fn()
            except sqlite3.Error as exc:
                if is_transient(exc) and attempt < self.retry_attempts - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(
                        "%s: database is locked (attempt %d/%d), retrying in %.2fs",
                        operation, attempt + 1, self.retry_attempts, delay,
                    )
                    time.sleep(delay)
                    continue
                raise wrap_storage_error(operation, key, exc) from exc
        raise StorageError(operation, key, "retry attempts exhausted")

    def _write(self, operation: str, key: Optional[str], fn: Callable[[sqlite3.Connection], T]) -> T:
        def attempt() -> T:
            with self._writer() as conn:
                return fn(conn)

        return self._retry(operation, key, attempt)

    def _read(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        def attempt() -> T:
            with self._reader() as conn:
                return fn(conn)

        return self._retry(operation, None, attempt)

    def _init_schema(self) -> None:
        conn = self._get_connection()
        conn.executescript(SCHEMA_SQL)
        # Migration: stores created before projects were linked to repos
        cols = {row[1] for row in conn.execute("PRAGMA table_info(projects)").fetchall()}
        if "github_repo_id" not in cols:
            try:
                conn.execute("ALTER TABLE projects ADD COLUMN github_repo_id INTEGER")
            except sqlite3.OperationalError:
                pass  # another process beat us to it
        conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Projects
    # ==================================================================

    def upsert_project(self, project: Project) -> None:
        """Insert a project or update it in place, keyed by path.

        >>> db = Database(":memory:")
        >>> db.upsert_project(Project(path="/src/gum", branch="main"))
        >>> db.upsert_project(Project(path="/src/gum", branch="dev"))
        >>> [(p.path, p.branch) for p in db.list_projects()]
        [('/src/gum', 'dev')]
        """
        self._write(
            "upsert_project",
            f"path={project.path!r}",
            lambda conn: conn.execute(UPSERT_PROJECT_SQL, _project_params(project)),
        )

    def upsert_projects(self, projects: Iterable[Project]) -> int:
        """Upsert many projects in one transaction. Returns the count."""
        params = [_project_params(p) for p in projects]

        def op(conn: sqlite3.Connection) -> int:
            conn.executemany(UPSERT_PROJECT_SQL, params)
            return len(params)

        return self._write("upsert_projects", f"count={len(params)}", op)

    def replace_projects(self, projects: Iterable[Project]) -> int:
        """Make the stored projects exactly the given set, atomically.

        Paths no longer present are deleted along with their similarity
        rows; the rest are upserted, so ``created_at`` and GitHub links
        survive a rescan. Readers see either the old set or the new one.
        """
        params = [_project_params(p) for p in projects]
        keep = {row[0] for row in params}

        def op(conn: sqlite3.Connection) -> int:
            stale = [
                (row["id"],)
                for row in conn.execute("SELECT id, path FROM projects")
                if row["path"] not in keep
            ]
            conn.executemany(
                "DELETE FROM similarity_cache WHERE (source_type = 'project' AND source_id = ?1) "
                "OR (target_type = 'project' AND target_id = ?1)",
                stale,
            )
            conn.executemany("DELETE FROM projects WHERE id = ?", stale)
            conn.executemany(UPSERT_PROJECT_SQL, params)
            return len(params)

        return self._write("replace_projects", f"count={len(params)}", op)

    def get_project(self, path: str) -> Optional[Project]:
        def op(conn: sqlite3.Connection) -> Optional[Project]:
            row = conn.execute(
                f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE path = ?", (path,)
            ).fetchone()
            return Project.model_validate(dict(row)) if row else None

        return self._read("get_project", op)

    def list_projects(
        self,
        query: Optional[str] = None,
        similar_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Project]:
        """All projects, most recently updated first.

        ``query`` keeps only projects whose name or path contains it.
        With ``similar_to``, every project is still returned but ordered by
        the three similarity tiers first (see ``search_projects``).
        """
        if query:
            return self.search_projects(query, limit=limit)
        if similar_to:
            return self.search_projects(similar_to, limit=limit, include_unmatched=True)

        sql = f"SELECT {_PROJECT_COLUMNS} FROM projects ORDER BY updated_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        return self._read(
            "list_projects",
            lambda conn: [Project.model_validate(dict(r)) for r in conn.execute(sql, params)],
        )

    def search_projects(
        self,
        text: str,
        limit: Optional[int] = None,
        include_unmatched: bool = False,
    ) -> list[Project]:
        """Rank projects against free text.

        Tiers: exact case-insensitive name match, then substring of name or
        path, then everything else (only with ``include_unmatched``). Within
        a tier, most recently updated first.

        >>> db = Database(":memory:")
        >>> for p in ("/a/gum", "/b/gumbo", "/c/other"):
        ...     db.upsert_project(Project(path=p))
        >>> [p.name for p in db.search_projects("GUM")]
        ['gum', 'gumbo']
        >>> [p.name for p in db.search_projects("gum", include_unmatched=True)][-1]
        'other'
        """
        where = "" if include_unmatched else (
            "WHERE instr(LOWER(name), LOWER(:q)) > 0 OR instr(LOWER(path), LOWER(:q)) > 0"
        )
        sql = (
            f"SELECT {_PROJECT_COLUMNS} FROM projects {where} "
            f"ORDER BY {_SIMILARITY_TIER}, updated_at DESC, id DESC"
        )
        params: dict = {"q": text}
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit

        return self._read(
            "search_projects",
            lambda conn: [Project.model_validate(dict(r)) for r in conn.execute(sql, params)],
        )

    def similar_projects(self, target_path: str, limit: int = 10) -> list[Project]:
        """Projects matching the last component of ``target_path``."""
        target_name = target_path.rstrip("/").rsplit("/", 1)[-1] or target_path
        return self.search_projects(target_name, limit=limit)

    def link_projects_to_github(self) -> int:
        """Point projects at the github_repos row whose clone/SSH URL matches.

        Returns the number of projects linked.
        """

        def op(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """UPDATE projects SET github_repo_id = (
                       SELECT gr.id FROM github_repos gr
                       WHERE gr.clone_url = projects.remote_url
                          OR gr.ssh_url = projects.remote_url
                       ORDER BY gr.id LIMIT 1
                   )
                   WHERE remote_url IS NOT NULL AND remote_url != ''
                     AND EXISTS (
                       SELECT 1 FROM github_repos gr
                       WHERE gr.clone_url = projects.remote_url
                          OR gr.ssh_url = projects.remote_url
                   )"""
            )
            return cursor.rowcount

        return self._write("link_projects_to_github", None, op)

    # ==================================================================
    # Project dirs
    # ==================================================================

    def upsert_project_dir(self, project_dir: ProjectDir) -> None:
        self._write(
            "upsert_project_dir",
            f"path={project_dir.path!r}",
            lambda conn: conn.execute(UPSERT_PROJECT_DIR_SQL, _project_dir_params(project_dir)),
        )

    def replace_project_dirs(self, dirs: Iterable[ProjectDir]) -> int:
        params = [_project_dir_params(d) for d in dirs]

        def op(conn: sqlite3.Connection) -> int:
            conn.execute("DELETE FROM project_dirs")
            conn.executemany(UPSERT_PROJECT_DIR_SQL, params)
            return len(params)

        return self._write("replace_project_dirs", f"count={len(params)}", op)

    def list_project_dirs(self) -> list[ProjectDir]:
        """All project dirs ordered by path."""
        return self._read(
            "list_project_dirs",
            lambda conn: [
                ProjectDir.model_validate(dict(r))
                for r in conn.execute(
                    "SELECT id, path, last_scanned, git_count, created_at, updated_at "
                    "FROM project_dirs ORDER BY path"
                )
            ],
        )

    # ==================================================================
    # GitHub repos
    # ==================================================================

    def upsert_github_repo(self, repo: GitHubRepo) -> None:
        """Insert or refresh a remote repo, keyed by full_name.

        >>> db = Database(":memory:")
        >>> db.upsert_github_repo(GitHubRepo(full_name="shalomb/gum", description="v1"))
        >>> db.upsert_github_repo(GitHubRepo(full_name="shalomb/gum", description="v2"))
        >>> [(r.full_name, r.description) for r in db.list_github_repos()]
        [('shalomb/gum', 'v2')]
        """
        self._write(
            "upsert_github_repo",
            f"full_name={repo.full_name!r}",
            lambda conn: conn.execute(UPSERT_GITHUB_REPO_SQL, _github_repo_params(repo)),
        )

    def get_github_repo(self, full_name: str) -> Optional[GitHubRepo]:
        def op(conn: sqlite3.Connection) -> Optional[GitHubRepo]:
            row = conn.execute("SELECT * FROM github_repos WHERE full_name = ?", (full_name,)).fetchone()
            return GitHubRepo.model_validate(dict(row)) if row else None

        return self._read("get_github_repo", op)

    def list_github_repos(self) -> list[GitHubRepo]:
        """All repos, most recently updated first."""
        return self._read(
            "list_github_repos",
            lambda conn: [
                GitHubRepo.model_validate(dict(r))
                for r in conn.execute(
                    "SELECT * FROM github_repos ORDER BY updated_at DESC, last_discovered DESC, id DESC"
                )
            ],
        )

    # ==================================================================
    # Directory usage
    # ==================================================================

    def record_dir_visit(self, path: str, seen_at: Optional[datetime] = None) -> None:
        """Count one visit to ``path``.

        >>> db = Database(":memory:")
        >>> for _ in range(3):
        ...     db.record_dir_visit("/home/me/src")
        >>> db.get_dir_usage("/home/me/src").frequency
        3
        """
        seen = to_db(seen_at or utc_now())
        now = to_db(utc_now())
        self._write(
            "record_dir_visit",
            f"path={path!r}",
            lambda conn: conn.execute(RECORD_VISIT_SQL, (path, seen, now, now)),
        )

    def import_dir_usage(self, usage: DirUsage) -> None:
        """Write a usage record carrying its own frequency (used by migration)."""
        now = to_db(utc_now())
        params = (usage.path, usage.frequency, to_db(usage.last_seen), now, now)
        self._write(
            "import_dir_usage",
            f"path={usage.path!r}",
            lambda conn: conn.execute(IMPORT_DIR_USAGE_SQL, params),
        )

    def get_dir_usage(self, path: str) -> Optional[DirUsage]:
        def op(conn: sqlite3.Connection) -> Optional[DirUsage]:
            row = conn.execute("SELECT * FROM dir_usage WHERE path = ?", (path,)).fetchone()
            return DirUsage.model_validate(dict(row)) if row else None

        return self._read("get_dir_usage", op)

    def list_frequent_dirs(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> list[DirUsage]:
        """Directories in frecency order (see ``gum.frecency``)."""
        rows = self._read(
            "list_frequent_dirs",
            lambda conn: [DirUsage.model_validate(dict(r)) for r in conn.execute("SELECT * FROM dir_usage")],
        )
        ranked = frecency.rank_dirs(rows, now)
        return ranked[:limit] if limit is not None else ranked

    # ==================================================================
    # Cache metadata
    # ==================================================================

    def upsert_cache_metadata(
        self,
        cache_key: str,
        ttl_seconds: int,
        last_updated: Optional[datetime] = None,
        data_hash: Optional[str] = None,
    ) -> None:
        stamp = to_db(last_updated or utc_now())
        params = (cache_key, stamp, int(ttl_seconds), data_hash, to_db(utc_now()))
        self._write(
            "upsert_cache_metadata",
            f"cache_key={cache_key!r}",
            lambda conn: conn.execute(UPSERT_CACHE_METADATA_SQL, params),
        )

    def get_cache_metadata(self, cache_key: str) -> Optional[CacheMetadata]:
        def op(conn: sqlite3.Connection) -> Optional[CacheMetadata]:
            row = conn.execute("SELECT * FROM cache_metadata WHERE cache_key = ?", (cache_key,)).fetchone()
            return CacheMetadata.model_validate(dict(row)) if row else None

        return self._read("get_cache_metadata", op)

    def list_cache_metadata(self) -> list[CacheMetadata]:
        return self._read(
            "list_cache_metadata",
            lambda conn: [
                CacheMetadata.model_validate(dict(r))
                for r in conn.execute("SELECT * FROM cache_metadata ORDER BY cache_key")
            ],
        )

    def delete_cache_metadata(self, cache_key: Optional[str] = None) -> int:
        """Drop one freshness marker, or all of them. Idempotent."""

        def op(conn: sqlite3.Connection) -> int:
            if cache_key is None:
                return conn.execute("DELETE FROM cache_metadata").rowcount
            return conn.execute("DELETE FROM cache_metadata WHERE cache_key = ?", (cache_key,)).rowcount

        return self._write("delete_cache_metadata", f"cache_key={cache_key!r}" if cache_key else None, op)

    # ==================================================================
    # Similarity cache
    # ==================================================================

    def record_similarity(
        self, source_type: str, source_id: int, target_type: str, target_id: int, score: float
    ) -> None:
        params = (source_type, source_id, target_type, target_id, score, to_db(utc_now()))
        self._write(
            "record_similarity",
            f"{source_type}:{source_id}->{target_type}:{target_id}",
            lambda conn: conn.execute(UPSERT_SIMILARITY_SQL, params),
        )

    # ==================================================================
    # Migration state
    # ==================================================================

    def get_migration_state(self) -> dict:
        def op(conn: sqlite3.Connection) -> dict:
            row = conn.execute("SELECT status, migrated_at, files, counts FROM migration_state WHERE id = 1").fetchone()
            if row is None:
                return {"status": "not_migrated", "migrated_at": None, "files": [], "counts": {}}
            return {
                "status": row["status"],
                "migrated_at": row["migrated_at"],
                "files": json.loads(row["files"] or "[]"),
                "counts": json.loads(row["counts"] or "{}"),
            }

        return self._read("get_migration_state", op)

    def mark_migrated(self, files: list[str], tables: Iterable[str], complete: bool = True) -> dict:
        """Record which legacy files have been imported.

        ``files`` is merged with any files a concurrent migrator already
        recorded; counts are the row counts of ``tables`` at commit time.
        The status only becomes ``migrated`` when ``complete`` is true, so a
        partial run can be retried and still be rolled back.
        """
        status = "migrated" if complete else "not_migrated"
        tables = [self._check_table(t) for t in tables]

        def op(conn: sqlite3.Connection) -> dict:
            row = conn.execute("SELECT files FROM migration_state WHERE id = 1").fetchone()
            known = json.loads(row["files"]) if row and row["files"] else []
            merged = sorted(set(known) | set(files))
            counts = {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}
            conn.execute(
                """INSERT INTO migration_state (id, status, migrated_at, files, counts)
                   VALUES (1, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       migrated_at = excluded.migrated_at,
                       files = excluded.files,
                       counts = excluded.counts""",
                (status, to_db(utc_now()) if complete else None, json.dumps(merged), json.dumps(counts)),
            )
            return counts

        return self._write("mark_migrated", None, op)

    def reset_migration(self, tables: Iterable[str]) -> dict:
        """Clear ``tables`` and cache metadata and mark not migrated, in one transaction.

        Returns the number of rows removed per table.
        """
        tables = [self._check_table(t) for t in tables]

        def op(conn: sqlite3.Connection) -> dict:
            removed = {}
            for table in tables:
                removed[table] = conn.execute(f"DELETE FROM {table}").rowcount
            conn.execute("DELETE FROM cache_metadata")
            conn.execute(
                "UPDATE migration_state SET status = 'not_migrated', migrated_at = NULL, "
                "files = '[]', counts = '{}' WHERE id = 1"
            )
            return removed

        return self._write("reset_migration", None, op)

    # ==================================================================
    # Whole-store operations
    # ==================================================================

    @staticmethod
    def _check_table(table: str) -> str:
        if table not in DATA_TABLES:
            raise ValueError(f"Unknown table: {table}")
        return table

    def clear(self, tables: Iterable[str]) -> dict:
        """Delete every row of the named tables in one transaction.

        All-or-nothing: an unknown name raises before anything is deleted.

        >>> db = Database(":memory:")
        >>> db.record_dir_visit("/tmp")
        >>> db.clear(["dir_usage"])
        {'dir_usage': 1}
        """
        tables = [self._check_table(t) for t in tables]
        ordered = [t for t in DATA_TABLES if t in tables]

        def op(conn: sqlite3.Connection) -> dict:
            return {t: conn.execute(f"DELETE FROM {t}").rowcount for t in ordered}

        return self._write("clear", ",".join(ordered), op)

    def clear_all(self) -> dict:
        return self.clear(DATA_TABLES)

    def stats(self) -> dict[str, int]:
        """Row count per entity table."""

        def op(conn: sqlite3.Connection) -> dict[str, int]:
            return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in STATS_TABLES}

        return self._read("stats", op)

    def linked_projects_count(self) -> int:
        return self._read(
            "linked_projects_count",
            lambda conn: conn.execute(
                "SELECT COUNT(*) FROM projects WHERE github_repo_id IS NOT NULL"
            ).fetchone()[0],
        )

    def backup_to(self, backup_path) -> Path:
        """Copy the live store to ``backup_path`` with SQLite's online backup."""
        target = Path(backup_path)

        def op() -> Path:
            target.parent.mkdir(parents=True, exist_ok=True)
            dest = sqlite3.connect(str(target))
            try:
                self._get_connection().backup(dest)
            finally:
                dest.close()
            return target

        try:
            return self._retry("backup", f"path={str(target)!r}", op)
        except OSError as exc:
            raise wrap_storage_error("backup", f"path={str(target)!r}", exc) from exc

    def restore_from(self, backup_path) -> None:
        """Replace the live store's contents with a backup file."""
        source_path = Path(backup_path)
        if not source_path.exists():
            raise StorageError("restore", f"path={str(source_path)!r}", "backup file does not exist")

        def op() -> None:
            source = sqlite3.connect(f"file:{source_path}?mode=ro", uri=True)
            try:
                with self._write_lock:
                    source.backup(self._get_connection())
            finally:
                source.close()

        self._retry("restore", f"path={str(source_path)!r}", op)
        logger.info("Store restored from %s", source_path)


# ---------------------------------------------------------------------------
# Parameter builders
# ---------------------------------------------------------------------------


def _project_params(project: Project) -> tuple:
    now = to_db(utc_now())
    return (
        project.path,
        project.name,
        project.remote_url,
        project.branch,
        to_db(project.last_modified),
        project.git_count,
        project.github_repo_id,
        now,
        now,
    )


def _project_dir_params(project_dir: ProjectDir) -> tuple:
    now = to_db(utc_now())
    return (
        project_dir.path,
        to_db(project_dir.last_scanned),
        project_dir.git_count,
        now,
        now,
    )


def _github_repo_params(repo: GitHubRepo) -> tuple:
    now = to_db(utc_now())
    return (
        repo.name,
        repo.full_name,
        repo.description,
        repo.url,
        repo.clone_url,
        repo.ssh_url,
        repo.is_private,
        repo.is_fork,
        to_db(repo.updated_at),
        now,
        now,
    )
