import datetime as dt

from sqlalchemy import select

from src.models.dose_log import DoseAction, DoseLog
from src.services.alert_session import AlertedRegistry, AlertKey
from src.services.dose_log import record_dose_action
from src.services.missed_pass import run_missed_pass, streak_threshold_reached

from tests.conftest import NOW


def test_threshold_is_inclusive():
    assert not streak_threshold_reached(4)
    assert streak_threshold_reached(5)
    assert streak_threshold_reached(6)


def test_marks_only_lapsed_open_slots(db, user, make_medicine, dispatcher, placer):
    med = make_medicine(times=["07:00", "08:00", "08:40", "12:00"])
    record_dose_action(db, med, DoseAction.taken, "07:00", NOW)

    outcomes = run_missed_pass(db, user.cognito_id, NOW, dispatcher)

    logs = {row.scheduled_time: row.action for row in db.execute(select(DoseLog)).scalars()}
    assert logs == {"07:00": DoseAction.taken, "08:00": DoseAction.missed}
    assert outcomes == []
    assert placer.calls == []


def test_skips_slots_owned_by_voice_loop(db, user, make_medicine, dispatcher):
    med = make_medicine(times=["08:00"])
    alerted = AlertedRegistry()
    alerted.mark(AlertKey(NOW.date(), med.medicine_id, "08:00"), dt.datetime(2026, 3, 2, 8, 0))

    run_missed_pass(db, user.cognito_id, NOW, dispatcher, alerted=alerted)

    assert db.execute(select(DoseLog)).scalars().first() is None


def test_streak_threshold_escalates_once(db, user, make_medicine, dispatcher, placer):
    make_medicine(times=["08:00"], missed_streak_count=4)

    first = run_missed_pass(db, user.cognito_id, NOW, dispatcher)
    second = run_missed_pass(db, user.cognito_id, NOW + dt.timedelta(minutes=15), dispatcher)

    assert [o.success for o in first] == [True]
    assert second == []
    assert len(placer.calls) == 1
