import datetime as dt
from types import SimpleNamespace

from src.models.dose_log import DoseAction
from src.services.dose_status import (
    DoseStatus,
    collapse_statuses,
    effective_time,
    resolve_medicine,
    resolve_slot,
)

DAY = dt.date(2026, 3, 2)


def at(hh, mm=0):
    return dt.datetime.combine(DAY, dt.time(hh, mm))


def log(action, snoozed_until=None):
    return SimpleNamespace(action=action, snoozed_until=snoozed_until)


def test_upcoming_before_lead_window():
    assert resolve_slot("09:00", None, at(8, 44)).status == DoseStatus.upcoming


def test_due_soon_inside_lead_window_and_after_schedule():
    assert resolve_slot("09:00", None, at(8, 45)).status == DoseStatus.due_soon
    assert resolve_slot("09:00", None, at(9, 29)).status == DoseStatus.due_soon


def test_missed_after_grace():
    assert resolve_slot("09:00", None, at(9, 30)).status == DoseStatus.missed


def test_taken_regardless_of_time():
    for now in (at(6), at(9), at(23, 59)):
        assert resolve_slot("09:00", log(DoseAction.taken), now).status == DoseStatus.taken


def test_active_snooze_reports_snoozed():
    slot = resolve_slot("09:00", log(DoseAction.snoozed, at(9, 5)), at(9, 2))
    assert slot.status == DoseStatus.snoozed
    assert slot.effective_at == at(9, 5)


def test_lapsed_snooze_is_due_at_snooze_end():
    slot = resolve_slot("09:00", log(DoseAction.snoozed, at(9, 5)), at(9, 5))
    assert slot.status == DoseStatus.due_soon
    # 유예시간은 스누즈 종료 시각부터 다시 계산
    assert resolve_slot("09:00", log(DoseAction.snoozed, at(9, 5)), at(9, 34)).status == DoseStatus.due_soon
    assert resolve_slot("09:00", log(DoseAction.snoozed, at(9, 5)), at(9, 35)).status == DoseStatus.missed


def test_logged_missed_stays_missed():
    assert resolve_slot("21:00", log(DoseAction.missed), at(9)).status == DoseStatus.missed


def test_skipped_slot_never_rings():
    assert resolve_slot("09:00", log(DoseAction.skipped), at(9, 10)).status == DoseStatus.upcoming


def test_effective_time_truncates_seconds():
    snoozed = log(DoseAction.snoozed, dt.datetime(2026, 3, 2, 9, 5, 42))
    assert effective_time(DAY, "09:00", snoozed) == at(9, 5)
    assert effective_time(DAY, "09:00", None) == at(9)


def test_medicine_taken_only_when_all_slots_taken():
    logs = {"09:00": log(DoseAction.taken)}
    status, slots = resolve_medicine(["09:00", "21:00"], logs, at(12))
    assert status == DoseStatus.upcoming
    assert [s.status for s in slots] == [DoseStatus.taken, DoseStatus.upcoming]

    logs["21:00"] = log(DoseAction.taken)
    status, _ = resolve_medicine(["09:00", "21:00"], logs, at(22))
    assert status == DoseStatus.taken


def test_collapse_prefers_most_urgent():
    assert collapse_statuses([DoseStatus.missed, DoseStatus.due_soon]) == DoseStatus.due_soon
    assert collapse_statuses([DoseStatus.taken, DoseStatus.missed]) == DoseStatus.missed
    assert collapse_statuses([DoseStatus.taken, DoseStatus.snoozed]) == DoseStatus.snoozed
    assert collapse_statuses([]) == DoseStatus.upcoming
