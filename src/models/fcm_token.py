# src/models/fcm_token.py
from __future__ import annotations

import datetime as dt
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base
from src.models.medicine import BigIntPk

if TYPE_CHECKING:
    from src.models.users import User


class FcmToken(Base):
    __tablename__ = "fcm_tokens"

    token_id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)

    owner_cognito_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.cognito_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_seen_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    last_sent_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_fcm_owner_active", "owner_cognito_id", "is_active"),
    )

    user: Mapped["User"] = relationship("User", back_populates="fcm_tokens", uselist=False)
