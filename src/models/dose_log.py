# src/models/dose_log.py
from __future__ import annotations

import datetime as dt
import enum
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, UniqueConstraint, Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base
from src.models.medicine import BigIntPk

if TYPE_CHECKING:
    from src.models.medicine import Medicine


class DoseAction(str, enum.Enum):
    taken = "taken"
    snoozed = "snoozed"
    missed = "missed"
    skipped = "skipped"


class DoseLog(Base):
    __tablename__ = "dose_logs"

    dose_log_id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)

    medicine_id: Mapped[int] = mapped_column(
        BigIntPk,
        ForeignKey("medicines.medicine_id", ondelete="CASCADE"),
        nullable=False,
    )

    owner_cognito_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.cognito_id", ondelete="CASCADE"),
        nullable=False,
    )

    scheduled_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "09:00"

    action: Mapped[DoseAction] = mapped_column(SqlEnum(DoseAction, name="dose_action"), nullable=False)
    action_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    # action == snoozed 일 때만 값이 있음
    snoozed_until: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # 슬롯(약, 날짜, 시간)당 1건. 이후 기록은 덮어쓰기
        UniqueConstraint("medicine_id", "scheduled_date", "scheduled_time", name="uq_doselog_med_date_time"),
        Index("idx_doselog_owner_date", "owner_cognito_id", "scheduled_date"),
    )

    medicine: Mapped["Medicine"] = relationship("Medicine", back_populates="dose_logs", uselist=False)
