"""Caching for gum.

Two layers:

- ``FileCache``: the legacy per-key JSON cache (``<dir>/<key>.json``),
  kept for data that has not been migrated yet.
- ``DatabaseCache``: freshness markers in the store's ``cache_metadata``
  table. It holds no data in memory; a fresh read always goes to the
  store, so staleness is bounded by TTL alone.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from gum.database import Database
from gum.errors import MalformedCacheEntry, wrap_storage_error
from gum.models import (
    DirUsage,
    LegacyEnvelope,
    LegacyProjectDir,
    Project,
    ProjectDir,
    decode_payload_items,
    encode_payload_items,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# Default TTLs (seconds), shortest for the most volatile data
DIRS_CACHE_TTL = 30  # changes on every shell visit
PROJECTS_CACHE_TTL = 300  # changes when repos are cloned/removed
PROJECT_DIRS_CACHE_TTL = 3600  # roots rarely change
DEFAULT_CACHE_TTL = 300

PROJECTS_KEY = "projects"
PROJECT_DIRS_KEY = "project-dirs"
DIRS_KEY = "dirs"

DEFAULT_TTLS = {
    DIRS_KEY: DIRS_CACHE_TTL,
    PROJECTS_KEY: PROJECTS_CACHE_TTL,
    PROJECT_DIRS_KEY: PROJECT_DIRS_CACHE_TTL,
}

TtlLike = Union[int, float, timedelta]


def _ttl_seconds(ttl: TtlLike) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


def default_ttl(key: str) -> int:
    """TTL for a cache key.

    >>> default_ttl("dirs") < default_ttl("projects") < default_ttl("project-dirs")
    True
    >>> default_ttl("anything-else")
    300
    """
    return DEFAULT_TTLS.get(key, DEFAULT_CACHE_TTL)


# ---------------------------------------------------------------------------
# Legacy file cache
# ---------------------------------------------------------------------------


class FileCache:
    """Per-key JSON files holding ``{"data", "timestamp", "ttl"}`` envelopes.

    Writes are last-writer-wins; concurrent writers to the same key are not
    merged.

    >>> import tempfile
    >>> cache = FileCache(tempfile.mkdtemp())
    >>> cache.set("greeting", ["hi"], ttl=60)
    >>> cache.get("greeting")
    (['hi'], True)
    >>> cache.get("missing")
    (None, False)
    """

    def __init__(self, base_dir):
        self.base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.base_dir / f"{key}.json"

    def _load(self, key: str) -> LegacyEnvelope:
        """Read and validate one envelope. Raises FileNotFoundError or MalformedCacheEntry."""
        try:
            raw = self.path_for(key).read_text(encoding="utf-8")
            return LegacyEnvelope.model_validate(json.loads(raw))
        except UnicodeDecodeError as exc:
            raise MalformedCacheEntry(key, f"not UTF-8 text: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise MalformedCacheEntry(key, f"invalid JSON: {exc}") from exc
        except ValidationError as exc:
            raise MalformedCacheEntry(key, exc.errors()[0]["msg"]) from exc

    def get(self, key: str, now: Optional[datetime] = None) -> tuple[Any, bool]:
        """Return ``(value, True)`` for a fresh entry, else ``(None, False)``.

        A stale entry is deleted. A malformed entry is a miss and is left
        on disk.
        """
        try:
            envelope = self._load(key)
        except FileNotFoundError:
            return None, False
        except MalformedCacheEntry as exc:
            logger.warning("Treating cache entry as a miss: %s", exc)
            return None, False

        if envelope.is_expired(now):
            logger.debug("Cache entry %s expired, removing", key)
            self.clear(key)
            return None, False
        return envelope.data, True

    def set(self, key: str, value: Any, ttl: TtlLike, now: Optional[datetime] = None) -> None:
        """Write an envelope atomically (temp file + replace)."""
        stamp = ensure_utc(now) if now else utc_now()
        body = json.dumps(
            {"data": value, "timestamp": stamp.isoformat(), "ttl": _ttl_seconds(ttl)},
            default=str,
        )
        target = self.path_for(key)
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, suffix=".tmp")
        except OSError as exc:
            raise wrap_storage_error("cache_set", f"key={key!r}", exc) from exc
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(body)
            os.replace(tmp_path, target)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise wrap_storage_error("cache_set", f"key={key!r}", exc) from exc

    def clear(self, key: str) -> None:
        """Remove one entry. Clearing an absent key is not an error."""
        self.path_for(key).unlink(missing_ok=True)

    def clear_all(self) -> int:
        """Remove every entry in the cache directory. Returns how many went.

        Only top-level ``*.json`` files are touched; backups and the store
        file living in the same directory are left alone.
        """
        if not self.base_dir.is_dir():
            return 0
        removed = 0
        for entry in self.base_dir.glob("*.json"):
            entry.unlink(missing_ok=True)
            removed += 1
        return removed

    def keys(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(p.stem for p in self.base_dir.glob("*.json"))

    def info(self, key: str) -> Optional[dict]:
        """Describe an entry without the expiry side effect of ``get``."""
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            envelope = self._load(key)
        except FileNotFoundError:
            return None
        except MalformedCacheEntry as exc:
            return {"key": key, "path": str(path), "valid": False, "error": exc.reason}
        items = envelope.data if isinstance(envelope.data, list) else None
        return {
            "key": key,
            "path": str(path),
            "valid": True,
            "timestamp": envelope.timestamp,
            "ttl": envelope.ttl,
            "expired": envelope.is_expired(),
            "items": len(items) if items is not None else None,
        }

    # -- typed accessors ------------------------------------------------

    def get_items(self, key: str, now: Optional[datetime] = None) -> Optional[list]:
        """Fresh entry decoded into its legacy payload model, or None.

        A payload that is not a list is treated as a miss. Individual items
        that fail validation are dropped with a warning.
        """
        data, found = self.get(key, now)
        if not found:
            return None
        try:
            items, errors = decode_payload_items(key, data)
        except ValueError as exc:
            logger.warning("Treating cache entry as a miss: %s", MalformedCacheEntry(key, str(exc)))
            return None
        for error in errors:
            logger.warning("Skipping malformed %s cache item: %s", key, error)
        return items

    def get_projects(self, now: Optional[datetime] = None) -> Optional[list[Project]]:
        items = self.get_items(PROJECTS_KEY, now)
        return None if items is None else [item.to_record() for item in items]

    def get_project_dirs(self, now: Optional[datetime] = None) -> Optional[list[ProjectDir]]:
        items = self.get_items(PROJECT_DIRS_KEY, now)
        return None if items is None else [item.to_record() for item in items]

    def get_dirs(self, now: Optional[datetime] = None) -> Optional[list[DirUsage]]:
        items = self.get_items(DIRS_KEY, now)
        return None if items is None else [item.to_record() for item in items]

    def set_project_dirs(self, dirs: list[ProjectDir], ttl: TtlLike = PROJECT_DIRS_CACHE_TTL) -> None:
        items = [
            LegacyProjectDir(path=d.path, last_scanned=d.last_scanned, git_count=d.git_count)
            for d in dirs
        ]
        self.set(PROJECT_DIRS_KEY, encode_payload_items(items), ttl)


# ---------------------------------------------------------------------------
# Store-backed freshness cache
# ---------------------------------------------------------------------------


class DatabaseCache:
    """TTL front for the store.

    ``get_*`` return None on a miss (no marker, or marker older than its
    TTL); the caller refreshes and calls the matching ``set_*``.
    """

    def __init__(self, db: Database, ttls: Optional[dict[str, int]] = None):
        self.db = db
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)

    def ttl_for(self, key: str) -> int:
        return self.ttls.get(key, DEFAULT_CACHE_TTL)

    def is_fresh(self, key: str, now: Optional[datetime] = None) -> bool:
        meta = self.db.get_cache_metadata(key)
        return meta is not None and meta.is_fresh(now)

    def touch(self, key: str, now: Optional[datetime] = None) -> None:
        self.db.upsert_cache_metadata(key, self.ttl_for(key), last_updated=now)

    def get_projects(self, now: Optional[datetime] = None) -> Optional[list[Project]]:
        if not self.is_fresh(PROJECTS_KEY, now):
            return None
        return self.db.list_projects()

    def set_projects(self, projects: list[Project]) -> int:
        count = self.db.replace_projects(projects)
        self.touch(PROJECTS_KEY)
        return count

    def get_project_dirs(self, now: Optional[datetime] = None) -> Optional[list[ProjectDir]]:
        if not self.is_fresh(PROJECT_DIRS_KEY, now):
            return None
        return self.db.list_project_dirs()

    def set_project_dirs(self, dirs: list[ProjectDir]) -> int:
        count = self.db.replace_project_dirs(dirs)
        self.touch(PROJECT_DIRS_KEY)
        return count

    def get_dirs(self, limit: Optional[int] = 1000, now: Optional[datetime] = None) -> Optional[list[DirUsage]]:
        if not self.is_fresh(DIRS_KEY, now):
            return None
        return self.db.list_frequent_dirs(limit, now)

    def set_dirs(self, dirs: list[DirUsage]) -> int:
        for usage in dirs:
            self.db.import_dir_usage(usage)
        self.touch(DIRS_KEY)
        return len(dirs)

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop the freshness marker for key (or all), forcing the next read to miss."""
        return self.db.delete_cache_metadata(key)

    def cache_stats(self, now: Optional[datetime] = None) -> dict:
        stats: dict[str, Any] = {f"{table}_count": count for table, count in self.db.stats().items()}
        stats["linked_projects_count"] = self.db.linked_projects_count()
        stats["cache_info"] = {
            meta.cache_key: {
                "last_updated": meta.last_updated,
                "ttl_seconds": meta.ttl_seconds,
                "is_valid": meta.is_fresh(now),
            }
            for meta in self.db.list_cache_metadata()
        }
        return stats
