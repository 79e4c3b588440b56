"""Month cache: per-month snapshots of the rows needed to enumerate any day.

A snapshot holds, for one ``"{year}-{month}"`` key, every schedule and
schedule time of the owning medication list plus the intake logs that fall
inside ``[month_start, month_end)``.

Concurrency model (single event loop):

- **Single flight.**  Concurrent ``ensure_month`` calls for the same key share
  one fetch task.  Callers await it through ``asyncio.shield`` so a caller
  that gets cancelled (the user navigated away) never cancels the fetch.
- **Generation guard.**  ``invalidate()`` bumps a generation counter and drops
  every snapshot.  A fetch that started under an older generation is
  discarded when it finishes; its awaiting callers loop and fetch again.
- **Request sequence.**  Only the most recent ``ensure_month`` call may move
  ``current_key``, so a slow fetch for a month the user already left never
  replaces the month they are looking at.
- **Failure.**  A failed fetch propagates to its callers and leaves nothing
  cached for that key, so the next call fetches again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, tzinfo

from opentelemetry import trace

from dosekeeper.core.enumerator import enumerate_day
from dosekeeper.core.metrics import DoseKeeperMetrics
from dosekeeper.gateway import DoseStore
from dosekeeper.models import DoseEntry, IntakeLog, Medication, Schedule, ScheduleTime
from dosekeeper.recurrence import month_key, month_window

logger = logging.getLogger(__name__)


@dataclass
class MonthSnapshot:
    """Rows fetched for one month under one cache generation."""

    key: str
    start_ms: int
    end_ms: int
    generation: int
    schedules: dict[str, list[Schedule]] = field(default_factory=dict)
    times: dict[str, list[ScheduleTime]] = field(default_factory=dict)
    intake_logs: dict[str, list[IntakeLog]] = field(default_factory=dict)

    def covers(self, ts_ms: int) -> bool:
        return self.start_ms <= ts_ms < self.end_ms

    def add_intake_log(self, medication_id: str, log: IntakeLog) -> bool:
        """Append *log* under *medication_id* unless a log with its id is present."""
        logs = self.intake_logs.setdefault(medication_id, [])
        if any(existing.id == log.id for existing in logs):
            return False
        logs.append(log)
        return True


class MonthCache:
    """Memoizes :class:`MonthSnapshot` objects per month, up to ``max_months``.

    Args:
        store: Where rows are read from.
        medications: Returns the owning medication list at fetch time.
        tz: Zone defining calendar days and month boundaries.
        max_months: Snapshots retained (least recently used evicted first).
        on_commit: Called with each freshly committed snapshot, before any
            caller sees it.
    """

    def __init__(
        self,
        store: DoseStore,
        medications: Callable[[], Sequence[Medication]],
        *,
        tz: tzinfo = UTC,
        max_months: int = 3,
        metrics: DoseKeeperMetrics | None = None,
        on_commit: Callable[[MonthSnapshot], None] | None = None,
    ) -> None:
        if max_months < 1:
            raise ValueError("max_months must be >= 1")
        self._store = store
        self._medications = medications
        self._tz = tz
        self._max_months = max_months
        self._metrics = metrics or DoseKeeperMetrics()
        self.on_commit = on_commit

        self._snapshots: OrderedDict[str, MonthSnapshot] = OrderedDict()
        self._inflight: dict[str, tuple[int, asyncio.Task[MonthSnapshot]]] = {}
        self._generation = 0
        self._request_seq = 0
        self.current_key: str | None = None
        self.fetch_count = 0

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def snapshots(self) -> list[MonthSnapshot]:
        return list(self._snapshots.values())

    def peek(self, day: date) -> MonthSnapshot | None:
        """Return the valid cached snapshot for *day*'s month without fetching."""
        snapshot = self._snapshots.get(month_key(day))
        if snapshot is not None and snapshot.generation == self._generation:
            return snapshot
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure_month(self, day: date) -> MonthSnapshot:
        """Return the snapshot for *day*'s month, fetching it if needed."""
        self._request_seq += 1
        seq = self._request_seq
        key = month_key(day)

        while True:
            snapshot = self.peek(day)
            if snapshot is not None:
                self._snapshots.move_to_end(key)
                self._metrics.month_hit()
                self._publish(key, seq)
                return snapshot

            task = self._fetch_task(day, key)
            try:
                snapshot = await asyncio.shield(task)
            except Exception:
                if seq == self._request_seq:
                    self.current_key = None
                raise

            if snapshot.generation == self._generation:
                self._publish(key, seq)
                return snapshot
            logger.debug("Month %s fetched under stale generation; refetching", key)

    def invalidate(self) -> None:
        """Drop every snapshot so the next ``ensure_month`` refetches."""
        self._generation += 1
        self._snapshots.clear()
        self.current_key = None
        logger.debug("Month cache invalidated (generation=%d)", self._generation)

    def append_intake_log(self, medication_id: str, log: IntakeLog) -> int:
        """Add *log* to every cached snapshot whose window contains it.

        Returns the number of snapshots updated.
        """
        updated = 0
        for snapshot in self._snapshots.values():
            if snapshot.covers(log.taken_ts) and snapshot.add_intake_log(medication_id, log):
                updated += 1
        return updated

    async def entries_for_day(self, day: date) -> list[DoseEntry]:
        """Ensure *day*'s month is loaded, then enumerate the day."""
        snapshot = await self.ensure_month(day)
        return enumerate_day(
            day,
            list(self._medications()),
            snapshot.schedules,
            snapshot.times,
            snapshot.intake_logs,
            tz=self._tz,
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _publish(self, key: str, seq: int) -> None:
        if seq == self._request_seq:
            self.current_key = key

    def _fetch_task(self, day: date, key: str) -> asyncio.Task[MonthSnapshot]:
        generation = self._generation
        inflight = self._inflight.get(key)
        if inflight is not None and inflight[0] == generation:
            return inflight[1]
        task = asyncio.create_task(self._fetch(day, key, generation), name=f"month-fetch-{key}")
        task.add_done_callback(_consume_exception)
        self._inflight[key] = (generation, task)
        return task

    async def _fetch(self, day: date, key: str, generation: int) -> MonthSnapshot:
        tracer = trace.get_tracer("dosekeeper")
        started = time.monotonic()
        outcome = "error"
        try:
            with tracer.start_as_current_span("dosekeeper.month_cache.fetch") as span:
                span.set_attribute("month", key)
                span.set_attribute("generation", generation)
                snapshot = await self._load(day, key, generation)
                span.set_attribute("medications", len(snapshot.schedules))

            if generation != self._generation:
                outcome = "discarded"
                logger.info(
                    "Discarding month %s fetched under generation %d (current %d)",
                    key,
                    generation,
                    self._generation,
                )
                return snapshot

            self._commit(snapshot)
            outcome = "ok"
            return snapshot
        except Exception:
            logger.warning("Month fetch failed for %s", key, exc_info=True)
            raise
        finally:
            entry = self._inflight.get(key)
            if entry is not None and entry[1] is asyncio.current_task():
                del self._inflight[key]
            self._metrics.month_fetch(outcome, (time.monotonic() - started) * 1000)

    async def _load(self, day: date, key: str, generation: int) -> MonthSnapshot:
        start_ms, end_ms = month_window(day, self._tz)
        snapshot = MonthSnapshot(key=key, start_ms=start_ms, end_ms=end_ms, generation=generation)
        medications = list(self._medications())

        async def load_medication(medication: Medication) -> None:
            schedules = await self._store.list_schedules_for_medication(medication.id)
            snapshot.schedules[medication.id] = schedules
            for schedule in schedules:
                snapshot.times[schedule.id] = await self._store.list_times_for_schedule(
                    schedule.id
                )
            snapshot.intake_logs[medication.id] = await self._store.list_intake_logs(
                medication.id, start_ms, end_ms
            )

        await asyncio.gather(*(load_medication(m) for m in medications))
        self.fetch_count += 1
        logger.debug(
            "Fetched month %s: medications=%d schedules=%d",
            key,
            len(medications),
            len(snapshot.times),
        )
        return snapshot

    def _commit(self, snapshot: MonthSnapshot) -> None:
        if self.on_commit is not None:
            self.on_commit(snapshot)
        self._snapshots[snapshot.key] = snapshot
        self._snapshots.move_to_end(snapshot.key)
        while len(self._snapshots) > self._max_months:
            evicted, _ = self._snapshots.popitem(last=False)
            logger.debug("Evicted month %s from cache", evicted)


def _consume_exception(task: asyncio.Task) -> None:
    # Callers that were cancelled while awaiting never retrieve the error.
    if not task.cancelled():
        task.exception()
