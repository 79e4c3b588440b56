"""Value types for medications, schedules, intake logs and the derived dose timeline.

Persisted entities are frozen dataclasses built either through a validating
``create()`` factory (new rows) or a tolerant ``from_row()`` (rows read back
from storage, which must never fail enumeration).  :class:`DoseEntry` is the
only mutable type: its ``taken`` flag is flipped in place when a dose is
recorded.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any

from dosekeeper.recurrence import (
    MalformedDataError,
    format_days_of_week,
    parse_days_of_week,
    parse_time_local,
)

STATUS_TAKEN = "taken"
INTAKE_STATUSES = frozenset({"taken", "missed", "skipped", "snoozed"})
DEFAULT_RECURRENCE = "daily"


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Return a fresh random identifier for a new row."""
    return str(uuid.uuid4())


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


def _as_float(value: Any) -> float | None:
    return None if value is None else float(value)


@dataclass(frozen=True)
class SessionContext:
    """The user and profile every persistence call is scoped to."""

    user_id: str
    profile_id: str


@dataclass(frozen=True)
class Medication:
    """A medication owned by one user profile."""

    id: str
    user_id: str
    profile_id: str
    name: str
    notes: str | None = None
    medication_url: str | None = None
    is_deleted: bool = False
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def create(
        cls,
        session: SessionContext,
        name: str,
        *,
        notes: str | None = None,
        medication_url: str | None = None,
        created_at: int | None = None,
    ) -> Medication:
        name = (name or "").strip()
        if not name:
            raise ValueError("Medication name must be a non-empty string")
        ts = now_ms() if created_at is None else created_at
        return cls(
            id=new_id(),
            user_id=session.user_id,
            profile_id=session.profile_id,
            name=name,
            notes=notes,
            medication_url=medication_url,
            created_at=ts,
            updated_at=ts,
        )

    def with_changes(
        self,
        *,
        name: str | None = None,
        notes: str | None = None,
        medication_url: str | None = None,
        updated_at: int | None = None,
    ) -> Medication:
        """Return a copy with the given fields replaced and ``updated_at`` bumped."""
        return replace(
            self,
            name=self.name if name is None else name,
            notes=self.notes if notes is None else notes,
            medication_url=self.medication_url if medication_url is None else medication_url,
            updated_at=now_ms() if updated_at is None else updated_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Medication:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            profile_id=row["profile_id"],
            name=row["name"],
            notes=row.get("notes"),
            medication_url=row.get("medication_url"),
            is_deleted=_as_bool(row.get("is_deleted"), False),
            created_at=int(row.get("created_at") or 0),
            updated_at=int(row.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class Schedule:
    """When a medication is due: a start, an optional end and a weekday filter.

    ``is_forever`` and ``end_date`` are redundant encodings of the same fact;
    :meth:`create` keeps them consistent.  A row read back with both set is
    treated as open-ended (see :attr:`is_bounded`).
    """

    id: str
    medication_id: str
    schedule: str = DEFAULT_RECURRENCE
    frequency_per_day: int | None = None
    is_forever: bool = True
    start_date: int | None = None
    end_date: int | None = None
    days_of_week: frozenset[str] = frozenset()
    timezone: str | None = None
    reminder_enabled: bool = True

    @property
    def is_bounded(self) -> bool:
        return self.end_date is not None and not self.is_forever

    @property
    def days_of_week_csv(self) -> str | None:
        return format_days_of_week(self.days_of_week)

    @classmethod
    def create(
        cls,
        medication_id: str,
        *,
        start_date: int | None,
        end_date: int | None = None,
        days_of_week: str | Iterable[str] | None = None,
        schedule: str = DEFAULT_RECURRENCE,
        frequency_per_day: int | None = None,
        timezone: str | None = None,
        reminder_enabled: bool = True,
    ) -> Schedule:
        if start_date is not None and end_date is not None and start_date > end_date:
            raise MalformedDataError(
                f"Schedule start_date {start_date} is after end_date {end_date}"
            )
        return cls(
            id=new_id(),
            medication_id=medication_id,
            schedule=schedule,
            frequency_per_day=frequency_per_day,
            is_forever=end_date is None,
            start_date=start_date,
            end_date=end_date,
            days_of_week=parse_days_of_week(days_of_week),
            timezone=timezone,
            reminder_enabled=reminder_enabled,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Schedule:
        return cls(
            id=row["id"],
            medication_id=row["medication_id"],
            schedule=row.get("schedule") or DEFAULT_RECURRENCE,
            frequency_per_day=row.get("frequency_per_day"),
            is_forever=_as_bool(row.get("is_forever"), False),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            days_of_week=parse_days_of_week(row.get("days_of_week")),
            timezone=row.get("timezone"),
            reminder_enabled=_as_bool(row.get("reminder_enabled"), True),
        )


@dataclass(frozen=True)
class ScheduleTime:
    """One time of day within a schedule, with its dosage."""

    id: str
    schedule_id: str
    time_local: str
    dosage: str | None = None
    dose_amount: float | None = None
    dose_unit: str | None = None
    instructions: str | None = None
    prn: bool = False
    sort_order: int | None = None
    next_trigger_ts: int | None = None

    @property
    def sort_key(self) -> tuple[bool, int, str]:
        """Order by ``sort_order`` (unset last), then by ``time_local``."""
        return (self.sort_order is None, self.sort_order or 0, self.time_local)

    @classmethod
    def create(
        cls,
        schedule_id: str,
        time_local: str,
        *,
        dosage: str | None = None,
        dose_amount: float | None = None,
        dose_unit: str | None = None,
        instructions: str | None = None,
        prn: bool = False,
        sort_order: int | None = None,
    ) -> ScheduleTime:
        hour, minute = parse_time_local(time_local, strict=True)
        return cls(
            id=new_id(),
            schedule_id=schedule_id,
            time_local=f"{hour:02d}:{minute:02d}",
            dosage=dosage,
            dose_amount=dose_amount,
            dose_unit=dose_unit,
            instructions=instructions,
            prn=prn,
            sort_order=sort_order,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ScheduleTime:
        return cls(
            id=row["id"],
            schedule_id=row["schedule_id"],
            time_local=row.get("time_local") or "",
            dosage=row.get("dosage"),
            dose_amount=_as_float(row.get("dose_amount")),
            dose_unit=row.get("dose_unit"),
            instructions=row.get("instructions"),
            prn=_as_bool(row.get("prn"), False),
            sort_order=row.get("sort_order"),
            next_trigger_ts=row.get("next_trigger_ts"),
        )


@dataclass(frozen=True)
class IntakeLog:
    """An append-only record of one intake event for a schedule time.

    ``medication_id`` is denormalised so history survives deletion of the
    schedule time it refers to.
    """

    id: str
    schedule_time_id: str
    taken_ts: int
    status: str = STATUS_TAKEN
    medication_id: str | None = None
    actual_dose_amount: float | None = None
    actual_dose_unit: str | None = None
    notes: str | None = None

    @property
    def is_taken(self) -> bool:
        return self.status == STATUS_TAKEN

    @classmethod
    def create(
        cls,
        schedule_time_id: str,
        *,
        taken_ts: int | None = None,
        status: str = STATUS_TAKEN,
        medication_id: str | None = None,
        actual_dose_amount: float | None = None,
        actual_dose_unit: str | None = None,
        notes: str | None = None,
    ) -> IntakeLog:
        if status not in INTAKE_STATUSES:
            raise ValueError(
                f"Unrecognized intake status: {status!r}. "
                f"Must be one of: {', '.join(sorted(INTAKE_STATUSES))}"
            )
        return cls(
            id=new_id(),
            schedule_time_id=schedule_time_id,
            taken_ts=now_ms() if taken_ts is None else taken_ts,
            status=status,
            medication_id=medication_id,
            actual_dose_amount=actual_dose_amount,
            actual_dose_unit=actual_dose_unit,
            notes=notes,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> IntakeLog:
        return cls(
            id=row["id"],
            schedule_time_id=row["schedule_time_id"],
            taken_ts=int(row["taken_ts"]),
            status=row.get("status") or STATUS_TAKEN,
            medication_id=row.get("medication_id"),
            actual_dose_amount=_as_float(row.get("actual_dose_amount")),
            actual_dose_unit=row.get("actual_dose_unit"),
            notes=row.get("notes"),
        )


@dataclass(frozen=True)
class Reminder:
    """Notification data for one medication time; delivery happens elsewhere."""

    id: str
    user_id: str
    medication_id: str
    title: str
    time: str
    message: str | None = None
    repeat: str = DEFAULT_RECURRENCE
    days: str | None = None
    active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Reminder:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            medication_id=row["medication_id"],
            title=row["title"],
            time=row["time"],
            message=row.get("message"),
            repeat=row.get("repeat") or DEFAULT_RECURRENCE,
            days=row.get("days"),
            active=_as_bool(row.get("active"), True),
        )


@dataclass
class DoseEntry:
    """One scheduled dose of a schedule time on one calendar day. Never persisted."""

    medication: Medication
    schedule_id: str
    schedule_time_id: str
    time_label: str
    timestamp: int
    day: date
    dosage: str | None = None
    prn: bool = False
    taken: bool = False
    instructions: str | None = field(default=None, compare=False)
