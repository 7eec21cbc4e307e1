"""Project discovery.

Narrow capability interfaces so the store never depends on how repos are
found or where remote metadata comes from:

- ``RepoDiscoverer``: given a root, yield the git working copies under it.
- ``RemoteMetadataSource``: given owner/name, return repo metadata or None.

``GitWalkDiscoverer`` is the filesystem implementation. It reads branch
and origin straight from the git directory and never runs ``git``.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol

from gum.models import GitHubRepo, Project, ProjectDir, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SKIP_DIRS = frozenset({
    "node_modules",
    ".venv",
    "venv",
    "__pycache__",
    ".cache",
    ".tox",
    "vendor",
})


class RepoDiscoverer(Protocol):
    def discover(self, root) -> Iterable[Project]:
        ...


class RemoteMetadataSource(Protocol):
    def fetch(self, owner: str, name: str) -> Optional[GitHubRepo]:
        ...


def resolve_git_dir(repo_path: Path) -> Optional[Path]:
    """The git directory for a working copy, following ``gitdir:`` files."""
    dot_git = repo_path / ".git"
    if dot_git.is_dir():
        return dot_git
    if dot_git.is_file():
        try:
            content = dot_git.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:"):].strip())
            return target if target.is_absolute() else (repo_path / target).resolve()
    return None


def read_branch(git_dir: Path) -> Optional[str]:
    """Current branch from HEAD, or the short hash when detached."""
    try:
        head = (git_dir / "HEAD").read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if head.startswith("ref:"):
        ref = head[len("ref:"):].strip()
        return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    return head[:7] or None


def parse_remote_url(config_text: str, remote: str = "origin") -> Optional[str]:
    """Extract a remote's URL from git config text.

    >>> parse_remote_url('[core]\\n\\tbare = false\\n[remote "origin"]\\n\\turl = git@github.com:shalomb/gum.git\\n')
    'git@github.com:shalomb/gum.git'
    >>> parse_remote_url('[remote "upstream"]\\n\\turl = x\\n') is None
    True
    """
    header = f'[remote "{remote}"]'
    in_section = False
    for raw in config_text.splitlines():
        line = raw.strip()
        if line.startswith("["):
            in_section = line == header
            continue
        if in_section and "=" in line:
            name, _, value = line.partition("=")
            if name.strip() == "url":
                return value.strip() or None
    return None


def count_git_objects(git_dir: Path) -> int:
    """Loose objects plus pack files."""
    objects = git_dir / "objects"
    if not objects.is_dir():
        return 0
    count = 0
    for entry in objects.iterdir():
        if len(entry.name) == 2 and entry.is_dir():
            count += sum(1 for _ in entry.iterdir())
    pack_dir = objects / "pack"
    if pack_dir.is_dir():
        count += sum(1 for p in pack_dir.iterdir() if p.suffix == ".pack")
    return count


def _last_modified(git_dir: Path) -> Optional[datetime]:
    mtimes = []
    for name in ("index", "HEAD", "FETCH_HEAD"):
        try:
            mtimes.append((git_dir / name).stat().st_mtime)
        except OSError:
            continue
    if not mtimes:
        return None
    return datetime.fromtimestamp(max(mtimes), tz=timezone.utc)


def read_project(repo_path: Path) -> Optional[Project]:
    """Build a Project from a working copy, or None if it is not one."""
    git_dir = resolve_git_dir(repo_path)
    if git_dir is None:
        return None
    try:
        config_text = (git_dir / "config").read_text(encoding="utf-8")
    except OSError:
        config_text = ""
    return Project(
        path=str(repo_path),
        name=repo_path.name,
        remote_url=parse_remote_url(config_text),
        branch=read_branch(git_dir),
        last_modified=_last_modified(git_dir),
        git_count=count_git_objects(git_dir),
    )


class GitWalkDiscoverer:
    """Walk a root for ``.git`` entries without descending into repos."""

    def __init__(self, max_depth: Optional[int] = 6, skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS):
        self.max_depth = max_depth
        self.skip_dirs = frozenset(skip_dirs)

    def discover(self, root) -> Iterator[Project]:
        root = Path(os.path.expanduser(str(root)))
        if not root.is_dir():
            logger.debug("Skipping missing root %s", root)
            return
        base_depth = len(root.parts)

        def on_error(exc: OSError) -> None:
            logger.debug("Cannot scan %s: %s", exc.filename, exc)

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            current = Path(dirpath)
            if ".git" in dirnames or ".git" in filenames:
                project = read_project(current)
                if project is not None:
                    yield project
                dirnames[:] = []
                continue
            if self.max_depth is not None and len(current.parts) - base_depth >= self.max_depth:
                dirnames[:] = []
                continue
            dirnames[:] = sorted(
                d for d in dirnames if d not in self.skip_dirs and not d.startswith(".")
            )


def discover_projects(roots: Iterable, discoverer: Optional[RepoDiscoverer] = None) -> list[Project]:
    """All projects under the given roots, de-duplicated by path."""
    discoverer = discoverer or GitWalkDiscoverer()
    found: dict[str, Project] = {}
    for root in roots:
        for project in discoverer.discover(root):
            found.setdefault(project.path, project)
    return list(found.values())


def discover_project_dirs(
    candidates: Iterable,
    discoverer: Optional[RepoDiscoverer] = None,
    now: Optional[datetime] = None,
) -> list[ProjectDir]:
    """ProjectDir records for the candidates that exist, with their repo counts."""
    discoverer = discoverer or GitWalkDiscoverer()
    scanned_at = now or utc_now()
    dirs = []
    for candidate in candidates:
        path = Path(os.path.expanduser(str(candidate)))
        if not path.is_dir():
            continue
        count = sum(1 for _ in discoverer.discover(path))
        dirs.append(ProjectDir(path=str(path), last_scanned=scanned_at, git_count=count))
    return dirs
