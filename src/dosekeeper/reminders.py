"""Reminder data for the notification subsystem.

Nothing here delivers notifications.  It derives what a delivery layer needs
for each schedule time (medication name, dosage, time of day, next
occurrence) and the ``reminders`` rows stored alongside a schedule.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, tzinfo
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from dosekeeper.models import Medication, Reminder, Schedule, ScheduleTime, new_id
from dosekeeper.recurrence import compute_next_trigger

if TYPE_CHECKING:
    from dosekeeper.gateway import MedicationGateway

logger = logging.getLogger(__name__)


class ReminderTrigger(BaseModel):
    """Payload handed to the notification delivery layer for one schedule time."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    medication_id: str
    schedule_time_id: str
    name: str = Field(min_length=1)
    dosage: str | None = None
    time_local: str = Field(pattern=r"^\d{2}:\d{2}$")
    days_of_week: list[str] = Field(default_factory=list)
    next_trigger_ts: int | None = None


def _reminder_times(schedule: Schedule, times: Sequence[ScheduleTime]) -> list[ScheduleTime]:
    if not schedule.reminder_enabled:
        return []
    return [t for t in sorted(times, key=lambda t: t.sort_key) if not t.prn]


def build_reminder_triggers(
    medication: Medication,
    schedule: Schedule,
    times: Sequence[ScheduleTime],
    now_ms: int,
    tz: tzinfo = UTC,
) -> list[ReminderTrigger]:
    """Return one trigger per remindable time that still has an occurrence ahead.

    PRN times, schedules with reminders disabled, deleted medications, ended
    schedules and unparsable times produce nothing.
    """
    if medication.is_deleted:
        return []
    days = sorted(schedule.days_of_week)
    triggers: list[ReminderTrigger] = []
    for schedule_time in _reminder_times(schedule, times):
        next_ts = compute_next_trigger(schedule, schedule_time, now_ms, tz)
        if next_ts is None:
            continue
        triggers.append(
            ReminderTrigger(
                medication_id=medication.id,
                schedule_time_id=schedule_time.id,
                name=medication.name,
                dosage=schedule_time.dosage,
                time_local=schedule_time.time_local,
                days_of_week=days,
                next_trigger_ts=next_ts,
            )
        )
    return triggers


def reminder_rows(
    user_id: str,
    medication: Medication,
    schedule: Schedule,
    times: Sequence[ScheduleTime],
) -> list[Reminder]:
    """Build the ``reminders`` rows stored with a schedule."""
    return [
        Reminder(
            id=new_id(),
            user_id=user_id,
            medication_id=medication.id,
            title=medication.name,
            time=schedule_time.time_local,
            message=schedule_time.dosage,
            repeat=schedule.schedule,
            days=schedule.days_of_week_csv,
            active=True,
        )
        for schedule_time in _reminder_times(schedule, times)
    ]


async def refresh_next_triggers(
    gateway: MedicationGateway,
    schedule: Schedule,
    times: Sequence[ScheduleTime],
    now_ms: int,
    tz: tzinfo = UTC,
) -> dict[str, int | None]:
    """Recompute and store ``next_trigger_ts`` for each time of *schedule*."""
    results: dict[str, int | None] = {}
    for schedule_time in times:
        next_ts = compute_next_trigger(schedule, schedule_time, now_ms, tz)
        await gateway.set_next_trigger(schedule_time.id, next_ts)
        results[schedule_time.id] = next_ts
    logger.debug("Refreshed next triggers for schedule %s: %s", schedule.id, results)
    return results
