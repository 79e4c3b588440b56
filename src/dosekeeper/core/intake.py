"""Intake recorder: optimistic dose marking with a write-behind queue.

``mark_taken`` updates the in-memory timeline at once (the entry, the week
summary and the month snapshot) and hands the log to a bounded queue drained
by one worker task.  The worker retries failed writes with exponential
backoff, reusing the same log id every time so a write that landed but
reported an error is not duplicated.  Writes that run out of attempts are
parked in ``failed`` until :meth:`IntakeRecorder.retry_failed`.

Every optimistic log stays *unconfirmed* until a month fetch returns it.
``reconcile`` runs on each fresh month snapshot:

    in the fetched rows   -> confirmed, forgotten
    still queued/written  -> re-applied to the snapshot
    failed                -> divergence: dropped from the timeline, the week
                             summary day is recomputed, on_divergence is called
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, tzinfo

from dosekeeper.config import IntakeConfig
from dosekeeper.core.metrics import DoseKeeperMetrics
from dosekeeper.core.month_cache import MonthCache, MonthSnapshot
from dosekeeper.core.week_cache import WeekSummaryCache
from dosekeeper.gateway import DoseStore, StorageError
from dosekeeper.models import DoseEntry, IntakeLog, now_ms
from dosekeeper.recurrence import day_window

logger = logging.getLogger(__name__)


class WriteState(enum.StrEnum):
    PENDING = "pending"
    WRITTEN = "written"
    FAILED = "failed"


@dataclass
class PendingIntake:
    """An optimistic intake log and the state of its write."""

    log: IntakeLog
    medication_id: str
    day: date
    state: WriteState = WriteState.PENDING
    attempts: int = 0
    last_error: str | None = None


class IntakeRecorder:
    def __init__(
        self,
        store: DoseStore,
        month_cache: MonthCache,
        week_cache: WeekSummaryCache,
        *,
        config: IntakeConfig | None = None,
        tz: tzinfo = UTC,
        clock: Callable[[], int] = now_ms,
        metrics: DoseKeeperMetrics | None = None,
        on_failure: Callable[[PendingIntake], None] | None = None,
        on_divergence: Callable[[PendingIntake], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._month_cache = month_cache
        self._week_cache = week_cache
        self._config = config or IntakeConfig()
        self._tz = tz
        self._clock = clock
        self._metrics = metrics or DoseKeeperMetrics()
        self.on_failure = on_failure
        self.on_divergence = on_divergence
        self._sleep = sleep

        self._queue: asyncio.Queue[PendingIntake] = asyncio.Queue(
            maxsize=self._config.queue_capacity
        )
        self._unconfirmed: dict[str, PendingIntake] = {}
        self._submitted: dict[str, PendingIntake] = {}
        self._failed: dict[str, PendingIntake] = {}
        self._worker: asyncio.Task | None = None

        self._written_total = 0
        self._failed_total = 0
        self._backpressure_total = 0
        self._divergence_total = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the write worker. Requires a running event loop."""
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._worker_loop(), name="intake-writer")
        logger.debug(
            "IntakeRecorder started: queue_capacity=%d max_attempts=%d",
            self._config.queue_capacity,
            self._config.max_attempts,
        )

    async def stop(self, drain_timeout_s: float = 5.0) -> None:
        """Wait up to *drain_timeout_s* for outstanding writes, then cancel the worker.

        ``Queue.join`` also waits for the write the worker is holding, including
        one sleeping between retries.  Writes still unfinished afterwards are
        moved to ``failed`` so ``retry_failed`` can resubmit them.
        """
        if self._worker is None:
            return

        if drain_timeout_s > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
            except TimeoutError:
                logger.warning(
                    "IntakeRecorder drain timed out after %.1fs; %d writes outstanding",
                    drain_timeout_s,
                    self._outstanding(),
                )

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        submitted = list(self._submitted.values())
        self._submitted.clear()
        for item in submitted:
            if item.state is WriteState.PENDING:
                item.last_error = "recorder stopped before the write completed"
                logger.warning("Intake log %s not persisted before shutdown", item.log.id)
                self._metrics.intake_pending_dec()
                self._fail(item)

        logger.info(
            "IntakeRecorder stopped: written=%d failed=%d backpressure=%d divergence=%d",
            self._written_total,
            self._failed_total,
            self._backpressure_total,
            self._divergence_total,
        )

    def _outstanding(self) -> int:
        return len(self._submitted)

    async def flush(self) -> None:
        """Wait until every queued write has been attempted to completion."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def mark_taken(self, entry: DoseEntry, *, notes: str | None = None) -> IntakeLog | None:
        """Mark *entry* taken now and persist it in the background.

        Returns the optimistic log, or None when the entry was already taken.
        Never raises on storage problems.
        """
        if entry.taken:
            return None

        log = IntakeLog.create(
            entry.schedule_time_id,
            taken_ts=self._intake_timestamp(entry),
            medication_id=entry.medication.id,
            notes=notes,
        )

        entry.taken = True
        self._week_cache.record_optimistic_taken(entry.day, entry.schedule_time_id)
        self._month_cache.append_intake_log(entry.medication.id, log)

        item = PendingIntake(log=log, medication_id=entry.medication.id, day=entry.day)
        self._unconfirmed[log.id] = item
        self._submit(item)
        return log

    def _intake_timestamp(self, entry: DoseEntry) -> int:
        # Keep the log inside the entry's day so it counts for that day.
        now = self._clock()
        start, end = day_window(entry.day, self._tz)
        return now if start <= now < end else entry.timestamp

    def _submit(self, item: PendingIntake) -> None:
        self.start()
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._backpressure_total += 1
            item.last_error = "intake queue full"
            logger.warning(
                "Intake queue full (capacity=%d); log %s marked failed",
                self._config.queue_capacity,
                item.log.id,
            )
            self._fail(item)
            return
        self._submitted[item.log.id] = item
        self._metrics.intake_pending_inc()

    def retry_failed(self) -> int:
        """Re-queue every failed write and re-apply it optimistically."""
        items = list(self._failed.values())
        self._failed.clear()
        for item in items:
            item.state = WriteState.PENDING
            item.attempts = 0
            self._unconfirmed[item.log.id] = item
            self._month_cache.append_intake_log(item.medication_id, item.log)
            self._submit(item)
        if items:
            logger.info("Re-queued %d failed intake writes", len(items))
        return len(items)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._write(item)
            except Exception as exc:
                logger.exception("Intake writer: unexpected error for log %s", item.log.id)
                item.last_error = str(exc)
                self._metrics.intake_pending_dec()
                self._fail(item)
            finally:
                self._queue.task_done()
            self._submitted.pop(item.log.id, None)

    async def _write(self, item: PendingIntake) -> None:
        max_attempts = self._config.max_attempts
        while True:
            item.attempts += 1
            try:
                inserted = await self._store.record_intake(item.log)
            except StorageError as exc:
                item.last_error = str(exc)
                if item.attempts >= max_attempts:
                    logger.error(
                        "Intake log %s not persisted after %d attempts: %s",
                        item.log.id,
                        item.attempts,
                        exc,
                    )
                    self._metrics.intake_pending_dec()
                    self._fail(item)
                    return
                delay = self._config.backoff_delay(item.attempts)
                logger.warning(
                    "Intake write %s failed (attempt %d/%d); retrying in %.2fs",
                    item.log.id,
                    item.attempts,
                    max_attempts,
                    delay,
                )
                await self._sleep(delay)
                continue

            if not inserted:
                logger.debug("Intake log %s already stored", item.log.id)
            item.state = WriteState.WRITTEN
            item.last_error = None
            self._written_total += 1
            self._metrics.intake_pending_dec()
            return

    def _fail(self, item: PendingIntake) -> None:
        item.state = WriteState.FAILED
        self._failed[item.log.id] = item
        self._failed_total += 1
        self._metrics.intake_write_failed()
        self._notify(self.on_failure, item)

    @staticmethod
    def _notify(callback: Callable[[PendingIntake], None] | None, item: PendingIntake) -> None:
        if callback is None:
            return
        try:
            callback(item)
        except Exception:
            logger.exception("Intake callback %r failed for log %s", callback, item.log.id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, snapshot: MonthSnapshot) -> None:
        """Align a freshly fetched month with the optimistic logs inside it."""
        fetched = {log.id for logs in snapshot.intake_logs.values() for log in logs}
        current_times = {t.id for times in snapshot.times.values() for t in times}
        for log_id, item in list(self._unconfirmed.items()):
            if not snapshot.covers(item.log.taken_ts):
                continue
            if log_id in fetched:
                del self._unconfirmed[log_id]
                self._failed.pop(log_id, None)
                continue
            if item.state is WriteState.WRITTEN and item.log.schedule_time_id not in current_times:
                # Stored, but its schedule time was replaced; history keeps it.
                del self._unconfirmed[log_id]
                logger.debug("Intake log %s belongs to a removed schedule time", log_id)
                continue
            if item.state is WriteState.FAILED:
                del self._unconfirmed[log_id]
                self._divergence_total += 1
                self._metrics.intake_divergence()
                self._week_cache.discard_day(item.day)
                logger.warning(
                    "Intake log %s for schedule time %s on %s was never persisted; "
                    "dropping it from the timeline",
                    log_id,
                    item.log.schedule_time_id,
                    item.day.isoformat(),
                )
                self._notify(self.on_divergence, item)
                continue
            snapshot.add_intake_log(item.medication_id, item.log)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def failed(self) -> list[PendingIntake]:
        return list(self._failed.values())

    @property
    def unconfirmed(self) -> list[PendingIntake]:
        return list(self._unconfirmed.values())

    @property
    def stats(self) -> dict[str, int]:
        return {
            "queue_depth": self._queue.qsize(),
            "unconfirmed": len(self._unconfirmed),
            "failed": len(self._failed),
            "written_total": self._written_total,
            "failed_total": self._failed_total,
            "backpressure_total": self._backpressure_total,
            "divergence_total": self._divergence_total,
        }
