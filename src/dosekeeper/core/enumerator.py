"""Day enumeration: expand schedules into the ordered dose list of one calendar day."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, date, tzinfo

from dosekeeper.models import DoseEntry, IntakeLog, Medication, Schedule, ScheduleTime
from dosekeeper.recurrence import applies_to, day_window, parse_time_local, timestamp_for

logger = logging.getLogger(__name__)


def taken_time_ids(logs: Iterable[IntakeLog], start_ms: int, end_ms: int) -> set[str]:
    """Schedule time ids with a "taken" log inside ``[start_ms, end_ms)``."""
    return {
        log.schedule_time_id
        for log in logs
        if log.is_taken and start_ms <= log.taken_ts < end_ms
    }


def enumerate_day(
    day: date,
    medications: Sequence[Medication],
    schedule_index: Mapping[str, Sequence[Schedule]],
    time_index: Mapping[str, Sequence[ScheduleTime]],
    intake_index: Mapping[str, Sequence[IntakeLog]],
    *,
    tz: tzinfo = UTC,
) -> list[DoseEntry]:
    """Return every scheduled dose on *day*, sorted by time then medication name.

    Pure and total: a malformed ``time_local`` is read as 00:00 and a schedule
    that cannot be expanded at all is logged and skipped.  Duplicate times
    are kept.
    """
    midnight, next_midnight = day_window(day, tz)
    entries: list[DoseEntry] = []

    for medication in medications:
        taken_ids = taken_time_ids(intake_index.get(medication.id, ()), midnight, next_midnight)
        for schedule in schedule_index.get(medication.id, ()):
            try:
                if not applies_to(schedule, day, tz):
                    continue
                for schedule_time in time_index.get(schedule.id, ()):
                    hour, minute = parse_time_local(schedule_time.time_local)
                    entries.append(
                        DoseEntry(
                            medication=medication,
                            schedule_id=schedule.id,
                            schedule_time_id=schedule_time.id,
                            time_label=schedule_time.time_local,
                            timestamp=timestamp_for(day, hour, minute, tz),
                            day=day,
                            dosage=schedule_time.dosage,
                            prn=schedule_time.prn,
                            taken=schedule_time.id in taken_ids,
                            instructions=schedule_time.instructions,
                        )
                    )
            except Exception:
                logger.exception(
                    "Skipping schedule %s of medication %s on %s",
                    schedule.id,
                    medication.id,
                    day.isoformat(),
                )

    entries.sort(key=lambda e: (e.timestamp, e.medication.name))
    return entries
