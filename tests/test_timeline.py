"""Tests for dosekeeper.timeline.DoseTimeline against the in-memory gateway."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest

from dosekeeper.config import CacheConfig, DoseKeeperConfig, IntakeConfig
from dosekeeper.gateway import NotFoundError
from dosekeeper.recurrence import DAY_MS, MalformedDataError, timestamp_for
from dosekeeper.timeline import DoseTimeline, DoseTimeSpec

pytestmark = pytest.mark.unit

JAN_1 = date(2024, 1, 1)
NOW = timestamp_for(JAN_1, 9, 0)


@pytest.fixture
async def timeline(gateway):
    config = DoseKeeperConfig(
        cache=CacheConfig(debounce_ms=10),
        intake=IntakeConfig(base_delay_s=0, max_delay_s=0),
    )
    tl = DoseTimeline(gateway, config, clock=lambda: NOW)
    await tl.load()
    yield tl
    await tl.close(drain_timeout_s=0)


async def _medication_with_schedule(timeline, name="Metformin", times=("08:00", "20:00")):
    med = await timeline.add_medication(name)
    await timeline.save_schedule(med.id, [DoseTimeSpec(t, dosage="500 mg") for t in times])
    return med


# ---------------------------------------------------------------------------
# Loading and reading
# ---------------------------------------------------------------------------


async def test_load_lists_live_medications(gateway, timeline):
    gateway.add_medication("Zinc")
    gateway.add_medication("Aspirin")
    hidden = gateway.add_medication("Old")
    await gateway.soft_delete_medication(hidden.id, updated_at=1)

    meds = await timeline.load()
    assert [m.name for m in meds] == ["Aspirin", "Zinc"]


def test_today_follows_clock(timeline):
    assert timeline.today() == JAN_1


async def test_entries_for_saved_schedule(timeline):
    await _medication_with_schedule(timeline)

    entries = await timeline.entries_for_day(JAN_1)
    assert [(e.time_label, e.dosage) for e in entries] == [("08:00", "500 mg"), ("20:00", "500 mg")]
    assert await timeline.entries_for_day(JAN_1 - timedelta(days=1)) == []


async def test_mark_taken_updates_week(timeline):
    await _medication_with_schedule(timeline)
    await timeline.compute_week(JAN_1)
    morning, _ = await timeline.entries_for_day(JAN_1)

    assert timeline.mark_taken(morning) is not None
    assert timeline.week_cache.get(JAN_1).taken == 1
    await timeline.recorder.flush()


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def test_delete_medication_removes_it_from_timeline(gateway, timeline):
    """A deleted medication leaves no schedules, times or entries behind."""
    med = await _medication_with_schedule(timeline)
    await _medication_with_schedule(timeline, "Aspirin", ("07:00",))
    assert len(await timeline.entries_for_day(JAN_1)) == 3

    await timeline.delete_medication(med.id)

    snapshot = await timeline.month_cache.ensure_month(JAN_1)
    assert snapshot.schedules.get(med.id, []) == []
    assert not any(s.medication_id == med.id for s in gateway.schedules.values())
    assert len(gateway.times) == 1
    entries = await timeline.entries_for_day(JAN_1 + timedelta(days=10))
    assert [e.medication.name for e in entries] == ["Aspirin"]


async def test_delete_keeps_intake_history(gateway, timeline):
    med = await _medication_with_schedule(timeline)
    morning, _ = await timeline.entries_for_day(JAN_1)
    log = timeline.mark_taken(morning)
    await timeline.recorder.flush()

    await timeline.delete_medication(med.id)
    assert gateway.logs == {log.id: log}


async def test_soft_delete_hides_medication(gateway, timeline):
    med = await _medication_with_schedule(timeline)
    await timeline.soft_delete_medication(med.id)

    assert timeline.medications == []
    assert await timeline.entries_for_day(JAN_1) == []
    assert gateway.medications[med.id].is_deleted


async def test_update_medication_renames_entries(timeline):
    med = await _medication_with_schedule(timeline)
    await timeline.entries_for_day(JAN_1)

    updated = await timeline.update_medication(med.id, name="Metformin XR")
    assert updated.updated_at == NOW

    entries = await timeline.entries_for_day(JAN_1)
    assert {e.medication.name for e in entries} == {"Metformin XR"}


async def test_update_unknown_medication(timeline):
    with pytest.raises(NotFoundError):
        await timeline.update_medication("missing", name="X")


async def test_add_medication_rejects_blank_name(timeline):
    with pytest.raises(ValueError):
        await timeline.add_medication("  ")


# ---------------------------------------------------------------------------
# save_schedule
# ---------------------------------------------------------------------------


class TestSaveSchedule:
    async def test_end_date_from_durations(self, gateway, timeline):
        med = await timeline.add_medication("Amoxicillin")
        schedule = await timeline.save_schedule(
            med.id,
            [
                DoseTimeSpec("08:00", duration=(1, "weeks")),
                DoseTimeSpec("20:00", duration=(10, "days")),
            ],
        )

        assert schedule.start_date == NOW
        assert schedule.end_date == NOW + 10 * DAY_MS
        assert not schedule.is_forever
        assert schedule.frequency_per_day == 2
        assert await timeline.entries_for_day(JAN_1 + timedelta(days=10))
        assert await timeline.entries_for_day(JAN_1 + timedelta(days=11)) == []

    async def test_missing_duration_means_forever(self, timeline):
        med = await timeline.add_medication("A")
        schedule = await timeline.save_schedule(
            med.id, [DoseTimeSpec("08:00", duration=(1, "weeks")), DoseTimeSpec("20:00")]
        )
        assert schedule.is_forever
        assert schedule.end_date is None

    async def test_times_ordered_and_triggers_stored(self, gateway, timeline):
        med = await timeline.add_medication("A")
        schedule = await timeline.save_schedule(
            med.id, [DoseTimeSpec("20:00"), DoseTimeSpec("08:00")]
        )

        times = await gateway.list_times_for_schedule(schedule.id)
        assert [(t.time_local, t.sort_order) for t in times] == [("20:00", 0), ("08:00", 1)]
        assert [t.next_trigger_ts for t in times] == [
            timestamp_for(JAN_1, 20, 0),
            timestamp_for(JAN_1 + timedelta(days=1), 8, 0),
        ]

    async def test_replaces_previous_schedule(self, gateway, timeline):
        med = await _medication_with_schedule(timeline)
        await timeline.entries_for_day(JAN_1)

        await timeline.save_schedule(med.id, [DoseTimeSpec("12:00")], days_of_week=["TUE"])

        assert len(gateway.schedules) == 1
        assert [t.time_local for t in gateway.times.values()] == ["12:00"]
        assert await timeline.entries_for_day(JAN_1) == []
        tuesday = await timeline.entries_for_day(JAN_1 + timedelta(days=1))
        assert [e.time_label for e in tuesday] == ["12:00"]

    async def test_reminder_rows_skip_prn(self, gateway, timeline):
        med = await timeline.add_medication("A")
        await timeline.save_schedule(
            med.id, [DoseTimeSpec("08:00", dosage="1 tab"), DoseTimeSpec("22:00", prn=True)]
        )
        reminders = list(gateway.reminders.values())
        assert [(r.title, r.time, r.message) for r in reminders] == [("A", "08:00", "1 tab")]
        assert reminders[0].user_id == gateway.session.user_id

    async def test_reminders_disabled(self, gateway, timeline):
        med = await timeline.add_medication("A")
        await timeline.save_schedule(med.id, [DoseTimeSpec("08:00")], reminder_enabled=False)
        assert gateway.reminders == {}

    async def test_bad_time_rejected_before_writing(self, gateway, timeline):
        med = await timeline.add_medication("A")
        with pytest.raises(MalformedDataError):
            await timeline.save_schedule(med.id, [DoseTimeSpec("25:00")])
        assert gateway.schedules == {}

    async def test_unknown_medication(self, timeline):
        with pytest.raises(NotFoundError):
            await timeline.save_schedule("missing", [DoseTimeSpec("08:00")])


# ---------------------------------------------------------------------------
# Navigation and reminders
# ---------------------------------------------------------------------------


async def test_select_day_coalesces_rapid_navigation(timeline):
    await _medication_with_schedule(timeline)
    days = [JAN_1 + timedelta(days=n) for n in range(4)]

    results = await asyncio.gather(*(timeline.select_day(d) for d in days))

    assert results[:-1] == [None, None, None]
    assert [e.day for e in results[-1]] == [days[-1], days[-1]]
    assert timeline.selected_day == days[-1]
    assert timeline.entries == results[-1]
    assert timeline.month_cache.fetch_count == 1


async def test_reminder_triggers(timeline):
    await _medication_with_schedule(timeline)
    await _medication_with_schedule(timeline, "Ibuprofen", ())
    prn = await timeline.add_medication("Paracetamol")
    await timeline.save_schedule(prn.id, [DoseTimeSpec("12:00", prn=True)])

    triggers = await timeline.reminder_triggers()
    assert [(t.name, t.time_local) for t in triggers] == [
        ("Metformin", "20:00"),
        ("Metformin", "08:00"),
    ]
    assert triggers[0].next_trigger_ts == timestamp_for(JAN_1, 20, 0)
