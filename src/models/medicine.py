# src/models/medicine.py
from __future__ import annotations

import datetime as dt
import enum
from typing import List, TYPE_CHECKING

from sqlalchemy import (BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Enum as SqlEnum, func,)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base

if TYPE_CHECKING:
    from src.models.users import User
    from src.models.dose_log import DoseLog

# sqlite는 INTEGER PRIMARY KEY만 autoincrement 됨
BigIntPk = BigInteger().with_variant(Integer, "sqlite")


class MedicineKind(str, enum.Enum):
    medicine = "medicine"
    supplement = "supplement"
    other = "other"


class MedicineSource(str, enum.Enum):
    manual = "manual"
    ocr = "ocr"


class Medicine(Base):
    __tablename__ = "medicines"

    medicine_id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)

    owner_cognito_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.cognito_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    dosage: Mapped[str] = mapped_column(String(60), nullable=False)
    frequency: Mapped[str] = mapped_column(String(60), nullable=False)
    instruction: Mapped[str] = mapped_column(Text, nullable=False, default="")

    kind: Mapped[MedicineKind] = mapped_column(
        SqlEnum(MedicineKind, name="medicine_kind"), nullable=False, default=MedicineKind.medicine
    )
    source: Mapped[MedicineSource] = mapped_column(
        SqlEnum(MedicineSource, name="medicine_source"), nullable=False, default=MedicineSource.manual
    )

    # ["09:00", "21:00"] 형태. 개수 제한 없음
    times: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # 삭제하지 않고 비활성화만 함
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # 연속 미복용 횟수. taken/skipped 시 0으로 초기화
    missed_streak_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_medicines_owner_active", "owner_cognito_id", "is_active"),
    )

    user: Mapped["User"] = relationship("User", back_populates="medicines", uselist=False)

    dose_logs: Mapped[List["DoseLog"]] = relationship(
        "DoseLog",
        back_populates="medicine",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
