"""Typed records for the gum store and the legacy JSON cache.

Store records mirror the five tables (projects, project_dirs, dir_usage,
github_repos, cache_metadata). Legacy payloads are the closed set of
shapes that older releases wrote into ``<cache_dir>/<key>.json``.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC.

    >>> ensure_utc(datetime(2025, 1, 1)).isoformat()
    '2025-01-01T00:00:00+00:00'
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp for storage.

    Fixed-width UTC ISO-8601 so that string comparison in SQL orders
    timestamps chronologically.

    >>> to_db(datetime(2025, 10, 6, 14, 0, tzinfo=timezone.utc))
    '2025-10-06T14:00:00.000000+00:00'
    >>> to_db(None) is None
    True
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


Timestamp = Annotated[datetime, AfterValidator(ensure_utc)]


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------


class Project(BaseModel):
    """A discovered local git working copy. Natural key: ``path``."""

    id: Optional[int] = None
    path: str = Field(min_length=1)
    name: str = ""
    remote_url: Optional[str] = None
    branch: Optional[str] = None
    last_modified: Optional[Timestamp] = None
    git_count: int = 0
    github_repo_id: Optional[int] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @model_validator(mode="after")
    def _default_name(self) -> "Project":
        if not self.name:
            self.name = os.path.basename(self.path.rstrip("/")) or self.path
        return self


class ProjectDir(BaseModel):
    """A root directory scanned for projects. Natural key: ``path``."""

    id: Optional[int] = None
    path: str = Field(min_length=1)
    last_scanned: Optional[Timestamp] = None
    git_count: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class DirUsage(BaseModel):
    """Visit history for one directory. Natural key: ``path``."""

    id: Optional[int] = None
    path: str = Field(min_length=1)
    frequency: int = Field(default=1, ge=0)
    last_seen: Timestamp = Field(default_factory=utc_now)
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class GitHubRepo(BaseModel):
    """Cached remote repository metadata. Natural key: ``full_name``."""

    id: Optional[int] = None
    name: str = ""
    full_name: str = Field(pattern=r"^[^/\s]+/[^/\s]+$")
    description: Optional[str] = None
    url: Optional[str] = None
    clone_url: Optional[str] = None
    ssh_url: Optional[str] = None
    is_private: bool = False
    is_fork: bool = False
    updated_at: Optional[Timestamp] = None
    last_discovered: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None

    @model_validator(mode="after")
    def _default_name(self) -> "GitHubRepo":
        if not self.name:
            self.name = self.repo
        return self

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.full_name.split("/", 1)[1]


class CacheMetadata(BaseModel):
    """Freshness marker for a named cache key."""

    id: Optional[int] = None
    cache_key: str
    last_updated: Timestamp
    ttl_seconds: int
    data_hash: Optional[str] = None
    created_at: Optional[Timestamp] = None

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """True while ``now - last_updated`` is within the TTL.

        >>> t = datetime(2025, 1, 1, tzinfo=timezone.utc)
        >>> m = CacheMetadata(cache_key="projects", last_updated=t, ttl_seconds=300)
        >>> m.is_fresh(t + timedelta(seconds=300))
        True
        >>> m.is_fresh(t + timedelta(seconds=301))
        False
        """
        now = ensure_utc(now) if now else utc_now()
        return now - self.last_updated <= timedelta(seconds=self.ttl_seconds)


# ---------------------------------------------------------------------------
# Legacy cache payloads
# ---------------------------------------------------------------------------

_NANOSECONDS_PER_SECOND = 1_000_000_000


class LegacyEnvelope(BaseModel):
    """The ``{"data", "timestamp", "ttl"}`` wrapper around every cache file.

    ``ttl`` is held in seconds. On disk, a JSON integer is a duration in
    nanoseconds (what older releases always wrote) and a JSON float is
    seconds (what ``FileCache.set`` writes).

    >>> env = LegacyEnvelope.model_validate(
    ...     {"data": [], "timestamp": "2025-10-06T14:00:00Z", "ttl": 300000000000})
    >>> env.ttl
    300.0
    >>> LegacyEnvelope.model_validate(
    ...     {"data": [], "timestamp": "2025-10-06T14:00:00Z", "ttl": 500000000}).ttl
    0.5
    >>> LegacyEnvelope.model_validate(
    ...     {"data": [], "timestamp": "2025-10-06T14:00:00Z", "ttl": 30.0}).ttl
    30.0
    """

    data: Any
    timestamp: Timestamp
    ttl: float = Field(ge=0)

    @field_validator("ttl", mode="before")
    @classmethod
    def _nanoseconds_to_seconds(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return value / _NANOSECONDS_PER_SECOND
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) if now else utc_now()
        return (now - self.timestamp).total_seconds() > self.ttl


class _LegacyItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LegacyProject(_LegacyItem):
    """One entry of ``projects.json``."""

    path: str = Field(alias="Path", min_length=1)
    remote: str = Field(default="", alias="Remote")
    branch: str = Field(default="", alias="Branch")

    def to_record(self) -> Project:
        return Project(
            path=self.path,
            remote_url=self.remote or None,
            branch=self.branch or None,
        )


class LegacyProjectDir(_LegacyItem):
    """One entry of ``project-dirs.json``."""

    path: str = Field(alias="Path", min_length=1)
    last_scanned: Optional[Timestamp] = Field(default=None, alias="LastScanned")
    git_count: int = Field(default=0, alias="GitCount", ge=0)

    def to_record(self) -> ProjectDir:
        scanned = self.last_scanned
        # Zero-valued timestamps (year 1) mean "never scanned"
        if scanned is not None and scanned.year <= 1:
            scanned = None
        return ProjectDir(path=self.path, last_scanned=scanned, git_count=self.git_count)


class LegacyDirUsage(_LegacyItem):
    """One entry of ``dirs.json``."""

    path: str = Field(alias="Path", min_length=1)
    frequency: int = Field(default=1, alias="Frequency", ge=1)
    last_seen: Timestamp = Field(alias="LastSeen")

    def to_record(self) -> DirUsage:
        return DirUsage(path=self.path, frequency=self.frequency, last_seen=self.last_seen)


# Closed set of legacy cache keys and their payload item types.
LEGACY_PAYLOADS: dict[str, type[_LegacyItem]] = {
    "projects": LegacyProject,
    "project-dirs": LegacyProjectDir,
    "dirs": LegacyDirUsage,
}


def decode_payload_items(key: str, data: Any) -> tuple[list[_LegacyItem], list[str]]:
    """Validate a legacy payload list item by item.

    Returns ``(items, errors)``: well-formed items and a message for each
    item that was skipped. Raises ValueError if ``data`` is not a list or
    ``key`` is not a known legacy key.

    >>> items, errors = decode_payload_items("projects", [{"Path": "/a"}, {"Remote": "x"}])
    >>> [i.path for i in items], len(errors)
    (['/a'], 1)
    """
    model = LEGACY_PAYLOADS.get(key)
    if model is None:
        raise ValueError(f"unknown legacy cache key: {key}")
    if not isinstance(data, list):
        raise ValueError(f"payload for '{key}' must be a list, got {type(data).__name__}")

    items: list[_LegacyItem] = []
    errors: list[str] = []
    for index, raw in enumerate(data):
        try:
            items.append(model.model_validate(raw))
        except ValidationError as exc:
            errors.append(f"item {index}: {exc.errors()[0]['msg']}")
    return items, errors


def encode_payload_items(items: list[_LegacyItem]) -> list[dict]:
    """Serialize legacy items with their on-disk field names."""
    return [item.model_dump(mode="json", by_alias=True) for item in items]
