import datetime as dt
import logging
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session
from sqlalchemy import or_, and_

from src.config.settings import settings
from src.models.notification import Notification
from src.services.fcm_push import send_push_to_user

logger = logging.getLogger(__name__)


def _now() -> dt.datetime:
    return dt.datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None, microsecond=0)


def create_notification(db: Session, owner_cognito_id: str, title: str, text: str) -> Notification:
    now = _now()

    row = Notification(
        owner_cognito_id=owner_cognito_id,
        title=title,
        text=text,
        noti_date=now.date(),
        noti_time=now.time(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def notify_patient(
    db: Session,
    owner_cognito_id: str,
    title: str,
    text: str,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    알림함 기록 + FCM 푸시. 실패해도 예외를 올리지 않음
    (복용 기록/보호자 호출 흐름을 막지 않도록)
    """
    try:
        create_notification(db, owner_cognito_id, title, text)
        success, fail, deactivated = send_push_to_user(db, owner_cognito_id, title, text, data)
        db.commit()
        logger.info(
            "[notify] title=%s success=%d fail=%d deactivated=%d", title, success, fail, deactivated
        )
    except Exception:
        db.rollback()
        logger.exception("[notify] failed title=%s", title)


def delete_notifications_older_than_3_days(db: Session) -> int:
    cutoff = _now() - dt.timedelta(days=3)
    cutoff_date = cutoff.date()
    cutoff_time = cutoff.time()

    deleted = (
        db.query(Notification)
        .filter(
            or_(
                Notification.noti_date < cutoff_date,
                and_(Notification.noti_date == cutoff_date, Notification.noti_time < cutoff_time),
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
