"""Shared fixtures for gum tests."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from gum.config import GumConfig
from gum.database import Database


def write_legacy(cache_dir: Path, filename: str, items, ttl=300_000_000_000, timestamp=None) -> Path:
    """Write a legacy cache envelope the way older releases did.

    ``ttl`` is an integer number of nanoseconds, as older releases wrote it.

    >>> import tempfile
    >>> path = write_legacy(Path(tempfile.mkdtemp()), "projects.json", [{"Path": "/a"}])
    >>> json.loads(path.read_text())["data"]
    [{'Path': '/a'}]
    """
    stamp = timestamp or datetime.now(timezone.utc)
    path = Path(cache_dir) / filename
    path.write_text(
        json.dumps({"data": items, "timestamp": stamp.isoformat(), "ttl": ttl}, indent=2),
        encoding="utf-8",
    )
    return path


def make_repo(path: Path, branch: str = "main", remote: str = None) -> Path:
    """Create a minimal git working copy on disk (no git binary needed)."""
    git_dir = path / ".git"
    (git_dir / "objects" / "ab").mkdir(parents=True)
    (git_dir / "objects" / "ab" / "cdef0123").write_bytes(b"x")
    (git_dir / "objects" / "pack").mkdir()
    (git_dir / "HEAD").write_text(f"ref: refs/heads/{branch}\n")
    config = "[core]\n\trepositoryformatversion = 0\n"
    if remote:
        config += f'[remote "origin"]\n\turl = {remote}\n\tfetch = +refs/heads/*:refs/remotes/origin/*\n'
    (git_dir / "config").write_text(config)
    return path


@pytest.fixture
def cache_dir(tmp_path):
    """Empty legacy cache directory."""
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def db(tmp_path):
    """File-backed store in a temporary directory."""
    database = Database(tmp_path / "gum.db")
    yield database
    database.close()


@pytest.fixture
def config(cache_dir):
    return GumConfig(cache_dir=cache_dir)


@pytest.fixture
def gum_env(tmp_path, cache_dir, monkeypatch):
    """Environment for CLI runs: cache and HOME under tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    env = {
        "GUM_CACHE_DIR": str(cache_dir),
        "HOME": str(home),
    }
    monkeypatch.delenv("GUM_DB_PATH", raising=False)
    monkeypatch.delenv("GUM_BUSY_TIMEOUT", raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture
def legacy_file():
    """Factory: legacy_file(cache_dir, filename, items, ttl=300_000_000_000, timestamp=None)."""
    return write_legacy


@pytest.fixture
def repo_factory():
    """Factory: repo_factory(path, branch="main", remote=None)."""
    return make_repo
