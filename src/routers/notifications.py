from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from sqlalchemy import asc

from src.db.database import get_db
from src.auth.dependencies import get_current_user
from src.models.users import User
from src.models.notification import Notification
from src.services.notifications import create_notification


router = APIRouter(prefix="/notifications", tags=["알림"])


class NotificationCreateReq(BaseModel):
    title: str
    text: str


class NotificationItem(BaseModel):
    notification_id: int
    title: str
    text: str
    date: str
    time: str


@router.post("", status_code=status.HTTP_201_CREATED)
def add_notification(
    body: NotificationCreateReq,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    ✅ POST /notifications
    - 로그인 유저의 알림 1개 생성 (noti_date/noti_time은 서버 시각으로 저장)
    - Response (201): {"notification_id": 123}
    """
    row = create_notification(db, current_user.cognito_id, body.title, body.text)
    return {"notification_id": row.notification_id}


@router.get("", response_model=List[NotificationItem])
def get_all_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    ✅ GET /notifications
    - 알림함 전체 (복약 알림, 보호자 호출 결과 포함)
    - 오래된 알림부터: noti_date ASC, noti_time ASC, notification_id ASC
    """
    rows = (
        db.query(Notification)
        .filter(Notification.owner_cognito_id == current_user.cognito_id)
        .order_by(
            asc(Notification.noti_date),
            asc(Notification.noti_time),
            asc(Notification.notification_id),
        )
        .all()
    )

    return [
        NotificationItem(
            notification_id=r.notification_id,
            title=r.title,
            text=r.text,
            date=r.noti_date.isoformat(),
            time=r.noti_time.strftime("%H:%M:%S"),
        )
        for r in rows
    ]


@router.delete("", status_code=status.HTTP_200_OK)
def clear_all_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """DELETE /notifications → {"deleted": 5}"""
    deleted = (
        db.query(Notification)
        .filter(Notification.owner_cognito_id == current_user.cognito_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"deleted": deleted}
