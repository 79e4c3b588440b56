"""DoseTimeline: the entry point a client drives.

Owns the session's medication list and wires the month cache, week summary
cache, intake recorder and navigation debouncer together.  Every mutation
goes through the gateway first and then invalidates both caches wholesale.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date

from dosekeeper.config import DoseKeeperConfig
from dosekeeper.core.debounce import Debouncer
from dosekeeper.core.intake import IntakeRecorder, PendingIntake
from dosekeeper.core.metrics import DoseKeeperMetrics
from dosekeeper.core.month_cache import MonthCache
from dosekeeper.core.week_cache import DaySummary, WeekSummaryCache
from dosekeeper.gateway import MedicationGateway, NotFoundError
from dosekeeper.models import DoseEntry, IntakeLog, Medication, Schedule, ScheduleTime, now_ms
from dosekeeper.recurrence import compute_end_date, compute_next_trigger, day_of
from dosekeeper.reminders import ReminderTrigger, build_reminder_triggers, reminder_rows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DoseTimeSpec:
    """One time of day as entered when creating or editing a schedule.

    ``duration`` is ``(value, unit)`` with unit ``days``, ``weeks`` or
    ``months``; it is only used when no explicit end date is given.
    """

    time_local: str
    dosage: str | None = None
    dose_amount: float | None = None
    dose_unit: str | None = None
    instructions: str | None = None
    prn: bool = False
    duration: tuple[int | None, str] | None = None


class DoseTimeline:
    def __init__(
        self,
        gateway: MedicationGateway,
        config: DoseKeeperConfig | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        metrics: DoseKeeperMetrics | None = None,
        on_failure: Callable[[PendingIntake], None] | None = None,
        on_divergence: Callable[[PendingIntake], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or DoseKeeperConfig()
        self._clock = clock
        self.tz = self._config.tzinfo
        self.metrics = metrics or DoseKeeperMetrics(gateway.session.profile_id)

        self.medications: list[Medication] = []
        self.selected_day: date | None = None
        self.entries: list[DoseEntry] = []

        self.month_cache = MonthCache(
            gateway,
            lambda: self.medications,
            tz=self.tz,
            max_months=self._config.cache.max_months,
            metrics=self.metrics,
        )
        self.week_cache = WeekSummaryCache(
            self.month_cache,
            count_prn=self._config.intake.count_prn,
            metrics=self.metrics,
        )
        self.recorder = IntakeRecorder(
            gateway,
            self.month_cache,
            self.week_cache,
            config=self._config.intake,
            tz=self.tz,
            clock=clock,
            metrics=self.metrics,
            on_failure=on_failure,
            on_divergence=on_divergence,
        )
        self.month_cache.on_commit = self.recorder.reconcile
        self._debouncer = Debouncer(self._config.cache.debounce_ms / 1000)

    def today(self) -> date:
        return day_of(self._clock(), self.tz)

    async def load(self) -> list[Medication]:
        """(Re)load the medication list and drop every cached month and week."""
        self.medications = await self._gateway.list_medications()
        self.invalidate()
        logger.info("Loaded %d medications", len(self.medications))
        return self.medications

    async def close(self, drain_timeout_s: float = 5.0) -> None:
        self._debouncer.cancel()
        await self.recorder.stop(drain_timeout_s)

    def invalidate(self) -> None:
        self.month_cache.invalidate()
        self.week_cache.invalidate()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def entries_for_day(self, day: date) -> list[DoseEntry]:
        return await self.month_cache.entries_for_day(day)

    async def compute_week(
        self,
        day: date,
        on_day: Callable[[date, DaySummary], None] | None = None,
    ) -> dict[date, DaySummary]:
        return await self.week_cache.compute_week(day, on_day)

    async def select_day(self, day: date) -> list[DoseEntry] | None:
        """Show *day* after the debounce delay.

        Returns the day's entries, or None when a later selection superseded
        this one.  Storage errors from the month fetch propagate.
        """
        self.selected_day = day
        task = self._debouncer.schedule(lambda: self.entries_for_day(day))
        await asyncio.wait({task})
        if task.cancelled():
            return None
        entries = task.result()
        if entries is None:
            return None
        self.entries = entries
        return entries

    async def reminder_triggers(self) -> list[ReminderTrigger]:
        """Notification payloads for every remindable time of every medication."""
        now = self._clock()
        triggers: list[ReminderTrigger] = []
        for medication in self.medications:
            for schedule in await self._gateway.list_schedules_for_medication(medication.id):
                times = await self._gateway.list_times_for_schedule(schedule.id)
                triggers.extend(build_reminder_triggers(medication, schedule, times, now, self.tz))
        triggers.sort(key=lambda t: (t.next_trigger_ts or 0, t.name))
        return triggers

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def mark_taken(self, entry: DoseEntry, *, notes: str | None = None) -> IntakeLog | None:
        return self.recorder.mark_taken(entry, notes=notes)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _find(self, medication_id: str) -> Medication | None:
        return next((m for m in self.medications if m.id == medication_id), None)

    def _set_medications(self, medications: list[Medication]) -> None:
        self.medications = sorted(medications, key=lambda m: (m.name, m.id))
        self.invalidate()

    async def add_medication(
        self,
        name: str,
        *,
        notes: str | None = None,
        medication_url: str | None = None,
    ) -> Medication:
        medication = Medication.create(
            self._gateway.session,
            name,
            notes=notes,
            medication_url=medication_url,
            created_at=self._clock(),
        )
        await self._gateway.create_medication(medication)
        self._set_medications([*self.medications, medication])
        return medication

    async def update_medication(
        self,
        medication_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
        medication_url: str | None = None,
    ) -> Medication:
        current = self._find(medication_id) or await self._gateway.get_medication(medication_id)
        if current is None:
            raise NotFoundError("update_medication", "medication", medication_id)
        updated = current.with_changes(
            name=name, notes=notes, medication_url=medication_url, updated_at=self._clock()
        )
        await self._gateway.update_medication(updated)
        self._set_medications([m for m in self.medications if m.id != medication_id] + [updated])
        return updated

    async def delete_medication(self, medication_id: str) -> None:
        await self._gateway.delete_medication(medication_id)
        self._set_medications([m for m in self.medications if m.id != medication_id])

    async def soft_delete_medication(self, medication_id: str) -> None:
        await self._gateway.soft_delete_medication(medication_id, updated_at=self._clock())
        self._set_medications([m for m in self.medications if m.id != medication_id])

    async def save_schedule(
        self,
        medication_id: str,
        times: Sequence[DoseTimeSpec],
        *,
        start_date: int | None = None,
        end_date: int | None = None,
        days_of_week: Sequence[str] | None = None,
        reminder_enabled: bool = True,
    ) -> Schedule:
        """Replace the medication's schedule with a daily one at *times*.

        Without an explicit *end_date* the end is derived from the per-time
        durations when every time carries one; otherwise the schedule runs
        forever.
        """
        medication = self._find(medication_id)
        if medication is None:
            raise NotFoundError("save_schedule", "medication", medication_id)

        now = self._clock()
        start = now if start_date is None else start_date
        durations = [dose_time.duration for dose_time in times]
        if end_date is None and durations and None not in durations:
            end_date = compute_end_date(start, durations)

        schedule = Schedule.create(
            medication_id,
            start_date=start,
            end_date=end_date,
            days_of_week=days_of_week,
            frequency_per_day=len(times),
            timezone=self._config.timezone,
            reminder_enabled=reminder_enabled,
        )
        schedule_times: list[ScheduleTime] = []
        for index, dose_time in enumerate(times):
            schedule_time = ScheduleTime.create(
                schedule.id,
                dose_time.time_local,
                dosage=dose_time.dosage,
                dose_amount=dose_time.dose_amount,
                dose_unit=dose_time.dose_unit,
                instructions=dose_time.instructions,
                prn=dose_time.prn,
                sort_order=index,
            )
            next_ts = compute_next_trigger(schedule, schedule_time, now, self.tz)
            schedule_times.append(dataclasses.replace(schedule_time, next_trigger_ts=next_ts))

        reminders = reminder_rows(
            self._gateway.session.user_id, medication, schedule, schedule_times
        )
        await self._gateway.replace_schedule(medication_id, schedule, schedule_times, reminders)
        self.invalidate()
        return schedule
