"""Frecency ranking for directory usage.

``score = frequency * 1 / (1 + age_in_days)``

A directory visited once yesterday can still outrank one visited fifty
times a year ago. Everything here is pure: for a fixed
``(frequency, last_seen, now)`` the result never changes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from gum.models import DirUsage, ensure_utc, utc_now

SECONDS_PER_DAY = 86400.0


def age_in_days(last_seen: datetime, now: datetime) -> float:
    """Fractional days between last_seen and now, never negative.

    >>> from datetime import timezone
    >>> now = datetime(2025, 1, 2, 12, tzinfo=timezone.utc)
    >>> age_in_days(datetime(2025, 1, 1, tzinfo=timezone.utc), now)
    1.5
    >>> age_in_days(now + timedelta(hours=1), now)
    0.0
    """
    delta = (ensure_utc(now) - ensure_utc(last_seen)).total_seconds()
    return max(delta, 0.0) / SECONDS_PER_DAY


def frecency_score(frequency: int, last_seen: datetime, now: Optional[datetime] = None) -> float:
    """Score a directory by visit count decayed by age.

    >>> from datetime import timezone
    >>> now = datetime(2025, 1, 31, tzinfo=timezone.utc)
    >>> frecency_score(10, now, now)
    10.0
    >>> frecency_score(5, now - timedelta(days=30), now) < frecency_score(10, now, now)
    True
    >>> round(frecency_score(50, now - timedelta(days=300), now), 4)
    0.1661
    """
    if now is None:
        now = utc_now()
    return frequency * (1.0 / (1.0 + age_in_days(last_seen, now)))


def _sort_key(usage: DirUsage, now: datetime) -> tuple:
    return (-frecency_score(usage.frequency, usage.last_seen, now), -usage.last_seen.timestamp(), usage.path)


def rank_dirs(usages: Iterable[DirUsage], now: Optional[datetime] = None) -> list[DirUsage]:
    """Order usages by descending score, then most recent ``last_seen``.

    Path breaks any remaining tie so the order is total.

    >>> from datetime import timezone
    >>> now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    >>> dirs = [
    ...     DirUsage(path="/old", frequency=50, last_seen=now - timedelta(days=300)),
    ...     DirUsage(path="/new", frequency=1, last_seen=now),
    ... ]
    >>> [d.path for d in rank_dirs(dirs, now)]
    ['/new', '/old']
    """
    if now is None:
        now = utc_now()
    return sorted(usages, key=lambda usage: _sort_key(usage, now))


def format_age(age: timedelta) -> str:
    """Render an age compactly.

    >>> format_age(timedelta(0))
    'now'
    >>> format_age(timedelta(minutes=5))
    '5m ago'
    >>> format_age(timedelta(hours=3))
    '3.0h ago'
    >>> format_age(timedelta(days=2))
    '2.0d ago'
    >>> format_age(timedelta(days=14))
    '2.0w ago'
    >>> format_age(timedelta(days=180))
    '6.0mo ago'
    """
    seconds = age.total_seconds()
    if seconds <= 0:
        return "now"
    hours = seconds / 3600
    if hours < 1:
        return f"{seconds / 60:.0f}m ago"
    if hours < 24:
        return f"{hours:.1f}h ago"
    if hours < 24 * 7:
        return f"{hours / 24:.1f}d ago"
    if hours < 24 * 30:
        return f"{hours / (24 * 7):.1f}w ago"
    return f"{hours / (24 * 30):.1f}mo ago"


# (label, frequency, age) rows shown by ``gum frecency-demo``
DEMO_SCENARIOS = [
    ("Active project (now)", 50, timedelta(0)),
    ("Active project (1 hour ago)", 50, timedelta(hours=1)),
    ("Active project (1 day ago)", 50, timedelta(days=1)),
    ("Active project (1 week ago)", 50, timedelta(days=7)),
    ("Active project (1 month ago)", 50, timedelta(days=30)),
    ("Active project (6 months ago)", 50, timedelta(days=180)),
    ("Rare project (now)", 5, timedelta(0)),
    ("Rare project (1 day ago)", 5, timedelta(days=1)),
    ("Rare project (1 week ago)", 5, timedelta(days=7)),
    ("Rare project (1 month ago)", 5, timedelta(days=30)),
    ("Rare project (6 months ago)", 5, timedelta(days=180)),
    ("Very frequent (now)", 200, timedelta(0)),
    ("Very frequent (1 day ago)", 200, timedelta(days=1)),
    ("Very frequent (1 week ago)", 200, timedelta(days=7)),
    ("Very frequent (1 month ago)", 200, timedelta(days=30)),
    ("Very frequent (6 months ago)", 200, timedelta(days=180)),
]


def demo_rows(now: Optional[datetime] = None) -> list[tuple[str, str, int, float]]:
    """Return ``(label, age, frequency, score)`` for each demo scenario."""
    if now is None:
        now = utc_now()
    return [
        (label, format_age(age), frequency, frecency_score(frequency, now - age, now))
        for label, frequency, age in DEMO_SCENARIOS
    ]
