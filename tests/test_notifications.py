import datetime as dt

from sqlalchemy import select

from src.models.fcm_token import FcmToken
from src.models.notification import Notification
from src.services.fcm_push import deactivate_token, send_push_to_user, upsert_token
from src.services.notifications import delete_notifications_older_than_3_days


def test_old_notifications_are_cleaned_up(db, user):
    today = dt.date.today()
    db.add_all([
        Notification(owner_cognito_id=user.cognito_id, title="old", text="x",
                     noti_date=today - dt.timedelta(days=5), noti_time=dt.time(10, 0)),
        Notification(owner_cognito_id=user.cognito_id, title="new", text="y",
                     noti_date=today, noti_time=dt.time(0, 0)),
    ])
    db.commit()

    assert delete_notifications_older_than_3_days(db) == 1
    assert [n.title for n in db.execute(select(Notification)).scalars()] == ["new"]


def test_fcm_token_upsert_and_deactivate(db, user):
    upsert_token(db, user.cognito_id, "fcm-token-0000000001", "android")
    db.commit()
    upsert_token(db, user.cognito_id, "fcm-token-0000000001", "ios")
    db.commit()

    rows = db.execute(select(FcmToken)).scalars().all()
    assert len(rows) == 1
    assert rows[0].platform == "ios"

    assert deactivate_token(db, user.cognito_id, "fcm-token-0000000001") == 1
    assert deactivate_token(db, "someone-else", "fcm-token-0000000001") == 0
    db.commit()
    assert rows[0].is_active is False


def test_push_is_noop_without_firebase(db, user):
    assert send_push_to_user(db, user.cognito_id, "title", "body") == (0, 0, 0)
