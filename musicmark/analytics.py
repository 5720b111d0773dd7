"""
Analytics Engine: per-day / per-source statistics and top-song rankings.

Everything is recomputed from a full scan of the user's listens on each
call; there are no rollups. Day buckets use one explicit timezone (UTC
unless configured otherwise), so the same data always lands on the same
dates regardless of the server's local clock.

Usage:
    analytics = ListenAnalytics(store, tz="UTC")
    stats = analytics.get_stats(user_id)
    top   = analytics.get_top_songs(user_id, range="week", limit=20)
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError
from .models import DailyStat, Listen, SourceStat, Stats, TopSong
from .store import DocumentStore

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WEEK_SECONDS = 7 * 24 * 3600
RANGES = ("all", "week")
UNKNOWN_SOURCE = "unknown"


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Map a zone name to a ``tzinfo``. ``None``/``"UTC"`` → UTC."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone {name!r}") from None


class ListenAnalytics:
    """Read-only aggregates over one user's listens."""

    def __init__(
        self,
        store: DocumentStore,
        tz: tzinfo | str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tz: tzinfo = tz if isinstance(tz, tzinfo) else resolve_timezone(tz)
        self.clock = clock

    def _listens(self, user_id: int) -> list[Listen]:
        user_id = int(user_id)
        return [l for l in self.store.snapshot().listens if l.user_id == user_id]

    def _day(self, started_at: int) -> str:
        return datetime.fromtimestamp(started_at, tz=self.tz).strftime("%Y-%m-%d")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self, user_id: int) -> Stats:
        """
        Totals, distinct songs, a daily breakdown and a source breakdown.

        ``unique_titles`` counts distinct (title, artist, album) tuples with
        exact, case-sensitive matching. Listens without a duration add 0.
        """
        day_counts:    Counter                = Counter()
        day_durations: Counter                = Counter()
        day_songs:     dict[str, set]         = defaultdict(set)
        sources:       Counter                = Counter()
        songs:         set[tuple[str, str, str]] = set()
        total_count    = 0
        total_duration = 0

        for listen in self._listens(user_id):
            duration = listen.duration_sec or 0
            day = self._day(listen.started_at)
            song = listen.song_key()

            total_count += 1
            total_duration += duration
            songs.add(song)

            day_counts[day] += 1
            day_durations[day] += duration
            day_songs[day].add(song)
            sources[listen.source or UNKNOWN_SOURCE] += 1

        daily = [
            DailyStat(
                date=day,
                count=day_counts[day],
                duration_sec=day_durations[day],
                unique_titles=len(day_songs[day]),
            )
            for day in sorted(day_counts)
        ]
        by_count = sorted(sources.items(), key=lambda x: (-x[1], x[0]))

        return Stats(
            total_count=total_count,
            total_duration_sec=total_duration,
            unique_titles=len(songs),
            daily=daily,
            sources=[SourceStat(name=name, count=count) for name, count in by_count],
        )

    # ------------------------------------------------------------------
    # Rankings
    # ------------------------------------------------------------------

    def get_top_songs(self, user_id: int, range: str = "all", limit: int = 50) -> list[TopSong]:
        """
        Most-played songs, grouped by (title, artist, album).

        Args:
            user_id: Owner of the listens.
            range:   ``"all"`` or ``"week"``. The latter keeps listens that
                     started within the last 7×24h, measured from now.
            limit:   Maximum number of entries returned.

        Returns:
            ``TopSong`` entries ordered by play count, then most recent play.
        """
        if range not in RANGES:
            raise ValidationError(f"range must be one of {', '.join(RANGES)}")
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        since = int(self.clock()) - WEEK_SECONDS if range == "week" else None

        counts:    Counter                            = Counter()
        last_play: dict[tuple[str, str, str], int]    = {}
        for listen in self._listens(user_id):
            if since is not None and listen.started_at < since:
                continue
            song = listen.song_key()
            counts[song] += 1
            last_play[song] = max(last_play.get(song, listen.started_at), listen.started_at)

        ranked = sorted(counts, key=lambda s: (-counts[s], -last_play[s], s))
        return [
            TopSong(
                title=song[0],
                artist=song[1],
                album=song[2],
                count=counts[song],
                last_play=last_play[song],
            )
            for song in ranked[:limit]
        ]
