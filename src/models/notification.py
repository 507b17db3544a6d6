# src/models/notification.py
from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING

from sqlalchemy import Date, ForeignKey, Index, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base
from src.models.medicine import BigIntPk

if TYPE_CHECKING:
    from src.models.users import User


class Notification(Base):
    """환자 앱 알림함. 보호자 호출 결과(성공/실패/설정 필요)가 여기에 쌓임"""

    __tablename__ = "notifications"

    notification_id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)

    owner_cognito_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.cognito_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    title: Mapped[str] = mapped_column(String(120), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)

    noti_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    noti_time: Mapped[dt.time] = mapped_column(Time(timezone=False), nullable=False)

    __table_args__ = (
        Index("idx_notifications_owner_date_time", "owner_cognito_id", "noti_date", "noti_time"),
    )

    user: Mapped["User"] = relationship("User", back_populates="notifications", uselist=False)
