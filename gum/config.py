"""Configuration for gum.

The core never reads the environment. ``GumConfig.from_env()`` is the one
place that does, and everything downstream receives resolved paths.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from gum.errors import ConfigError

DEFAULT_BUSY_TIMEOUT = 5.0
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY = 0.05


class GumConfig(BaseModel):
    """Resolved storage locations and contention tuning.

    >>> cfg = GumConfig(cache_dir="/tmp/gum")
    >>> str(cfg.db_path)
    '/tmp/gum/gum.db'
    >>> str(cfg.backup_dir)
    '/tmp/gum/backup'
    """

    cache_dir: Path
    db_path: Optional[Path] = None
    busy_timeout: float = Field(default=DEFAULT_BUSY_TIMEOUT, gt=0)
    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)

    @field_validator("cache_dir", "db_path", mode="before")
    @classmethod
    def _expand(cls, value):
        if value is None or value == "":
            return None
        return Path(os.path.expanduser(str(value)))

    def model_post_init(self, __context) -> None:
        if self.db_path is None:
            self.db_path = self.cache_dir / "gum.db"

    @property
    def backup_dir(self) -> Path:
        return self.cache_dir / "backup"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "GumConfig":
        """Build a config from environment variables.

        GUM_CACHE_DIR and GUM_DB_PATH take precedence; otherwise
        $XDG_CACHE_HOME/gum (or ~/.cache/gum) is used.

        >>> cfg = GumConfig.from_env({"GUM_CACHE_DIR": "/srv/gum"})
        >>> str(cfg.db_path)
        '/srv/gum/gum.db'
        >>> str(GumConfig.from_env({"XDG_CACHE_HOME": "/c"}).cache_dir)
        '/c/gum'
        """
        env = os.environ if environ is None else environ

        cache_dir = env.get("GUM_CACHE_DIR")
        if not cache_dir:
            xdg = env.get("XDG_CACHE_HOME")
            if xdg:
                cache_dir = str(Path(xdg) / "gum")
            else:
                home = env.get("HOME") or str(Path.home())
                cache_dir = str(Path(home) / ".cache" / "gum")

        try:
            timeout = float(env.get("GUM_BUSY_TIMEOUT", DEFAULT_BUSY_TIMEOUT))
        except ValueError as exc:
            raise ConfigError(f"GUM_BUSY_TIMEOUT is not a number: {exc}") from exc

        try:
            return cls(
                cache_dir=cache_dir,
                db_path=env.get("GUM_DB_PATH") or None,
                busy_timeout=timeout,
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    def ensure_writable(self) -> None:
        """Create cache_dir if needed and fail with ConfigError if it is unusable."""
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"cannot create cache directory {self.cache_dir}: {exc}") from exc
        if not os.access(self.cache_dir, os.W_OK):
            raise ConfigError(f"cache directory is not writable: {self.cache_dir}")
