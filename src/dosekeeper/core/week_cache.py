"""Week summary cache: per-day ``(taken, total)`` dose counts.

Days are computed lazily through the month cache as weeks come into view and
published one at a time, so a caller rendering a week strip sees each day as
soon as it is ready.  A dose marked taken increments the cached day
immediately; the increment is tracked per schedule time so it can only
consume a dose that was counted as open, which keeps ``taken <= total``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from datetime import date, timedelta

from dosekeeper.core.metrics import DoseKeeperMetrics
from dosekeeper.core.month_cache import MonthCache
from dosekeeper.models import DoseEntry
from dosekeeper.recurrence import day_key, week_monday

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaySummary:
    taken: int
    total: int

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.taken >= self.total


def summarize(entries: Iterable[DoseEntry], *, count_prn: bool = False) -> DaySummary:
    """Count taken and total doses; PRN doses are skipped unless *count_prn*."""
    taken = total = 0
    for entry in entries:
        if entry.prn and not count_prn:
            continue
        total += 1
        if entry.taken:
            taken += 1
    return DaySummary(taken=taken, total=total)


class WeekSummaryCache:
    def __init__(
        self,
        month_cache: MonthCache,
        *,
        count_prn: bool = False,
        metrics: DoseKeeperMetrics | None = None,
    ) -> None:
        self._month_cache = month_cache
        self._count_prn = count_prn
        self._metrics = metrics or DoseKeeperMetrics()
        self._days: dict[str, DaySummary] = {}
        # day key -> counted-but-not-taken doses per schedule time id
        self._open: dict[str, Counter[str]] = {}

    def get(self, day: date) -> DaySummary | None:
        return self._days.get(day_key(day))

    def __contains__(self, day: date) -> bool:
        return day_key(day) in self._days

    def store_day(self, day: date, entries: Iterable[DoseEntry]) -> DaySummary:
        """Cache the summary of an already-enumerated day."""
        counted = [e for e in entries if self._count_prn or not e.prn]
        summary = summarize(counted, count_prn=True)
        key = day_key(day)
        self._days[key] = summary
        self._open[key] = Counter(e.schedule_time_id for e in counted if not e.taken)
        return summary

    async def iter_week(self, monday: date) -> AsyncIterator[tuple[date, DaySummary]]:
        """Yield each day of the week with its summary, computing misses on the way."""
        start = week_monday(monday)
        for offset in range(7):
            day = start + timedelta(days=offset)
            summary = self.get(day)
            if summary is None:
                entries = await self._month_cache.entries_for_day(day)
                summary = self.store_day(day, entries)
                self._metrics.week_day_computed()
            yield day, summary

    async def compute_week(
        self,
        monday: date,
        on_day: Callable[[date, DaySummary], None] | None = None,
    ) -> dict[date, DaySummary]:
        """Fill the whole week; *on_day* is called as each day becomes available."""
        week: dict[date, DaySummary] = {}
        async for day, summary in self.iter_week(monday):
            week[day] = summary
            if on_day is not None:
                on_day(day, summary)
        return week

    def record_optimistic_taken(self, day: date, schedule_time_id: str) -> DaySummary | None:
        """Count one more taken dose for *schedule_time_id* on *day*.

        Returns the updated summary, or None when the day is not cached yet (it
        will pick the dose up from the month cache when computed).  A schedule
        time with no open dose left on that day leaves the summary unchanged.
        """
        key = day_key(day)
        summary = self._days.get(key)
        if summary is None:
            return None
        open_doses = self._open.setdefault(key, Counter())
        if open_doses[schedule_time_id] <= 0:
            logger.debug(
                "No open dose for schedule time %s on %s; summary unchanged",
                schedule_time_id,
                key,
            )
            return summary
        open_doses[schedule_time_id] -= 1
        summary = DaySummary(taken=summary.taken + 1, total=summary.total)
        self._days[key] = summary
        return summary

    def discard_day(self, day: date) -> None:
        key = day_key(day)
        self._days.pop(key, None)
        self._open.pop(key, None)

    def invalidate(self) -> None:
        self._days.clear()
        self._open.clear()
