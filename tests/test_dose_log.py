import datetime as dt

from sqlalchemy import func, select

from src.models.dose_log import DoseAction, DoseLog
from src.services.dose_log import find_dose_logs, group_logs, record_dose_action

from tests.conftest import NOW


def _count_logs(db):
    return db.execute(select(func.count()).select_from(DoseLog)).scalar_one()


def test_upsert_keeps_one_row_per_slot(db, make_medicine):
    med = make_medicine()
    record_dose_action(db, med, DoseAction.snoozed, "09:00", NOW)
    record_dose_action(db, med, DoseAction.taken, "09:00", NOW + dt.timedelta(minutes=5))
    record_dose_action(db, med, DoseAction.taken, "09:00", NOW + dt.timedelta(minutes=6))

    assert _count_logs(db) == 1
    log = find_dose_logs(db, med.owner_cognito_id, NOW.date())[0]
    assert log.action == DoseAction.taken
    assert log.snoozed_until is None
    # 같은 슬롯 taken 재기록은 한 번만 차감
    assert med.remaining_quantity == 29


def test_missed_increments_and_taken_resets_streak(db, make_medicine):
    med = make_medicine(times=["08:00", "12:00", "20:00"])
    record_dose_action(db, med, DoseAction.missed, "08:00", NOW)
    record_dose_action(db, med, DoseAction.missed, "12:00", NOW)
    assert med.missed_streak_count == 2

    record_dose_action(db, med, DoseAction.snoozed, "20:00", NOW)
    assert med.missed_streak_count == 2

    record_dose_action(db, med, DoseAction.taken, "20:00", NOW)
    assert med.missed_streak_count == 0


def test_skipped_resets_streak_without_using_stock(db, make_medicine):
    med = make_medicine(missed_streak_count=3)
    record_dose_action(db, med, DoseAction.skipped, "09:00", NOW)
    assert med.missed_streak_count == 0
    assert med.remaining_quantity == 30


def test_remaining_quantity_never_negative(db, make_medicine):
    med = make_medicine(times=["09:00", "21:00"], remaining_quantity=1)
    record_dose_action(db, med, DoseAction.taken, "09:00", NOW)
    record_dose_action(db, med, DoseAction.taken, "21:00", NOW)
    assert med.remaining_quantity == 0


def test_snooze_sets_until_from_now(db, make_medicine):
    med = make_medicine()
    log = record_dose_action(db, med, DoseAction.snoozed, "09:00", NOW, snooze_minutes=10)
    assert log.snoozed_until == NOW + dt.timedelta(minutes=10)

    default = record_dose_action(db, med, DoseAction.snoozed, "09:00", NOW)
    assert default.snoozed_until == NOW + dt.timedelta(minutes=5)


def test_group_logs_by_medicine_and_time(db, make_medicine):
    a = make_medicine(name="A", times=["09:00"])
    b = make_medicine(name="B", times=["09:00", "21:00"])
    record_dose_action(db, a, DoseAction.taken, "09:00", NOW)
    record_dose_action(db, b, DoseAction.missed, "21:00", NOW)

    grouped = group_logs(find_dose_logs(db, a.owner_cognito_id, NOW.date()))
    assert grouped[a.medicine_id]["09:00"].action == DoseAction.taken
    assert grouped[b.medicine_id]["21:00"].action == DoseAction.missed
    assert "09:00" not in grouped[b.medicine_id]
