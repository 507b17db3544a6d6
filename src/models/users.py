# src/models/users.py
from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base

if TYPE_CHECKING:
    from src.models.medicine import Medicine
    from src.models.notification import Notification
    from src.models.fcm_token import FcmToken


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("cognito_id", name="uq_users_cognito_id"),
    )

    cognito_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)

    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # 보호자(비상 연락처). 전화번호가 없으면 보호자 호출은 "설정 필요"로 응답
    emergency_contact_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    medicines: Mapped[List["Medicine"]] = relationship(
        "Medicine",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    notifications: Mapped[List["Notification"]] = relationship(
        "Notification",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    fcm_tokens: Mapped[List["FcmToken"]] = relationship(
        "FcmToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
