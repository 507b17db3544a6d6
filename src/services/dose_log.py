# src/services/dose_log.py
from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.config.settings import settings
from src.models.dose_log import DoseAction, DoseLog
from src.models.medicine import Medicine

logger = logging.getLogger(__name__)


# ---------- 조회 ----------
def find_active_medicines(db: Session, owner_cognito_id: str) -> List[Medicine]:
    stmt = (
        select(Medicine)
        .where(Medicine.owner_cognito_id == owner_cognito_id, Medicine.is_active.is_(True))
        .order_by(Medicine.created_at.desc(), Medicine.medicine_id.desc())
    )
    return list(db.execute(stmt).scalars().all())


def find_active_owner_ids(db: Session) -> List[str]:
    stmt = select(Medicine.owner_cognito_id).where(Medicine.is_active.is_(True)).distinct()
    return list(db.execute(stmt).scalars().all())


def find_dose_logs(db: Session, owner_cognito_id: str, day: dt.date) -> List[DoseLog]:
    stmt = select(DoseLog).where(
        DoseLog.owner_cognito_id == owner_cognito_id,
        DoseLog.scheduled_date == day,
    )
    return list(db.execute(stmt).scalars().all())


def find_slot_log(db: Session, medicine_id: int, day: dt.date, scheduled_time: str) -> Optional[DoseLog]:
    stmt = select(DoseLog).where(
        DoseLog.medicine_id == medicine_id,
        DoseLog.scheduled_date == day,
        DoseLog.scheduled_time == scheduled_time,
    )
    return db.execute(stmt).scalars().first()


def group_logs(logs: List[DoseLog]) -> Dict[int, Dict[str, DoseLog]]:
    """{medicine_id: {"09:00": DoseLog}}"""
    grouped: Dict[int, Dict[str, DoseLog]] = defaultdict(dict)
    for log in logs:
        grouped[log.medicine_id][log.scheduled_time] = log
    return grouped


# ---------- 쓰기 ----------
def upsert_dose_log(
    db: Session,
    medicine_id: int,
    owner_cognito_id: str,
    scheduled_date: dt.date,
    scheduled_time: str,
    action: DoseAction,
    action_at: dt.datetime,
    snoozed_until: Optional[dt.datetime] = None,
) -> DoseLog:
    """
    (약, 날짜, 시간) 슬롯당 1건만 유지. 같은 슬롯에 다시 쓰면 덮어씀 (last writer wins).
    commit은 호출자가 한다.
    """
    row = db.execute(
        select(DoseLog).where(
            DoseLog.medicine_id == medicine_id,
            DoseLog.scheduled_date == scheduled_date,
            DoseLog.scheduled_time == scheduled_time,
        )
    ).scalars().first()

    if action != DoseAction.snoozed:
        snoozed_until = None

    if row:
        row.owner_cognito_id = owner_cognito_id
        row.action = action
        row.action_at = action_at
        row.snoozed_until = snoozed_until
    else:
        row = DoseLog(
            medicine_id=medicine_id,
            owner_cognito_id=owner_cognito_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            action=action,
            action_at=action_at,
            snoozed_until=snoozed_until,
        )
        db.add(row)
    db.flush()
    return row


def increment_missed_streak(db: Session, medicine_id: int) -> None:
    db.execute(
        update(Medicine)
        .where(Medicine.medicine_id == medicine_id)
        .values(missed_streak_count=Medicine.missed_streak_count + 1)
    )


def reset_missed_streak(db: Session, medicine_id: int) -> None:
    db.execute(
        update(Medicine)
        .where(Medicine.medicine_id == medicine_id)
        .values(missed_streak_count=0)
    )


def decrement_remaining_quantity(db: Session, medicine_id: int) -> None:
    # 0 아래로는 내려가지 않음
    db.execute(
        update(Medicine)
        .where(Medicine.medicine_id == medicine_id, Medicine.remaining_quantity > 0)
        .values(remaining_quantity=Medicine.remaining_quantity - 1)
    )


def record_dose_action(
    db: Session,
    medicine: Medicine,
    action: DoseAction,
    scheduled_time: str,
    now: dt.datetime,
    snooze_minutes: Optional[int] = None,
) -> DoseLog:
    """
    복용 기록 1건 + 약 카운터 갱신 후 commit.

    - taken   : 연속 미복용 0으로, 남은 수량 -1 (같은 슬롯 중복 taken은 한 번만 차감)
    - skipped : 연속 미복용 0으로
    - missed  : 연속 미복용 +1
    - snoozed : 카운터 변화 없음, snoozed_until = now + snooze_minutes
    """
    previous = db.execute(
        select(DoseLog.action).where(
            DoseLog.medicine_id == medicine.medicine_id,
            DoseLog.scheduled_date == now.date(),
            DoseLog.scheduled_time == scheduled_time,
        )
    ).scalars().first()

    snoozed_until = None
    if action == DoseAction.snoozed:
        minutes = snooze_minutes if snooze_minutes and snooze_minutes > 0 else settings.snooze_minutes
        snoozed_until = now + dt.timedelta(minutes=minutes)

    log = upsert_dose_log(
        db,
        medicine_id=medicine.medicine_id,
        owner_cognito_id=medicine.owner_cognito_id,
        scheduled_date=now.date(),
        scheduled_time=scheduled_time,
        action=action,
        action_at=now,
        snoozed_until=snoozed_until,
    )

    if action == DoseAction.taken:
        reset_missed_streak(db, medicine.medicine_id)
        if previous != DoseAction.taken:
            decrement_remaining_quantity(db, medicine.medicine_id)
    elif action == DoseAction.skipped:
        reset_missed_streak(db, medicine.medicine_id)
    elif action == DoseAction.missed:
        increment_missed_streak(db, medicine.medicine_id)

    db.commit()
    db.refresh(medicine)
    db.refresh(log)

    logger.info(
        "[dose_log] medicine_id=%s slot=%s %s action=%s streak=%d remaining=%d",
        medicine.medicine_id, log.scheduled_date, scheduled_time,
        action.value, medicine.missed_streak_count, medicine.remaining_quantity,
    )
    return log
