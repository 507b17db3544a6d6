from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from src.models.dose_log import DoseAction, DoseLog
from src.models.medicine import Medicine
from src.models.users import User
from src.schemas.schema_medicine import CreateMedicine, DailyProgress, LowStockItem, MedicineItem, SlotItem
from src.services.dose_log import find_active_medicines, find_dose_logs, group_logs, record_dose_action
from src.services.dose_status import DoseStatus, resolve_medicine
from src.services.escalation import EscalationDispatcher, EscalationOutcome, EscalationTrigger
from src.services.missed_pass import streak_threshold_reached

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_QUANTITY = 30
LOW_STOCK_DAYS = 7


def create_medicines(db: Session, bodies: List[CreateMedicine], current_user: User) -> List[Medicine]:
    rows = []
    for body in bodies:
        total = body.total_quantity or DEFAULT_TOTAL_QUANTITY
        row = Medicine(
            owner_cognito_id=current_user.cognito_id,
            name=body.name,
            dosage=body.dosage,
            frequency=body.frequency,
            times=body.times,
            instruction=body.instruction,
            kind=body.kind,
            source=body.source,
            is_active=True,
            total_quantity=total,
            remaining_quantity=total,
            missed_streak_count=0,
        )
        db.add(row)
        rows.append(row)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


def get_owned_medicine(db: Session, medicine_id: int, owner_cognito_id: str) -> Optional[Medicine]:
    medicine = db.get(Medicine, medicine_id)
    if medicine is None or medicine.owner_cognito_id != owner_cognito_id:
        return None
    return medicine


def to_medicine_item(medicine: Medicine, logs_by_time: Optional[Dict[str, DoseLog]] = None, now: Optional[dt.datetime] = None) -> MedicineItem:
    status = None
    slots: List[SlotItem] = []
    if now is not None:
        overall, slot_statuses = resolve_medicine(medicine.times, logs_by_time or {}, now)
        status = overall.value
        slots = [
            SlotItem(
                scheduled_time=s.scheduled_time,
                status=s.status.value,
                effective_at=s.effective_at,
                action=s.action,
            )
            for s in slot_statuses
        ]

    return MedicineItem(
        id=medicine.medicine_id,
        name=medicine.name,
        dosage=medicine.dosage,
        frequency=medicine.frequency,
        instruction=medicine.instruction,
        kind=medicine.kind,
        source=medicine.source,
        times=list(medicine.times),
        is_active=medicine.is_active,
        total_quantity=medicine.total_quantity,
        remaining_quantity=medicine.remaining_quantity,
        missed_streak_count=medicine.missed_streak_count,
        status=status,
        slots=slots,
        created_at=medicine.created_at,
    )


def list_medicines_with_status(db: Session, owner_cognito_id: str, now: dt.datetime) -> List[MedicineItem]:
    medicines = find_active_medicines(db, owner_cognito_id)
    logs = group_logs(find_dose_logs(db, owner_cognito_id, now.date()))
    return [to_medicine_item(m, logs.get(m.medicine_id, {}), now) for m in medicines]


def daily_progress(db: Session, owner_cognito_id: str, now: dt.datetime) -> DailyProgress:
    """오늘 슬롯 기준. pending = 아직 결정 안 된 슬롯(upcoming/due-soon)"""
    counts = {DoseStatus.taken: 0, DoseStatus.missed: 0, DoseStatus.snoozed: 0}
    pending = 0
    total = 0
    for item in list_medicines_with_status(db, owner_cognito_id, now):
        for slot in item.slots:
            total += 1
            status = DoseStatus(slot.status)
            if status in counts:
                counts[status] += 1
            else:
                pending += 1
    return DailyProgress(
        taken=counts[DoseStatus.taken],
        missed=counts[DoseStatus.missed],
        snoozed=counts[DoseStatus.snoozed],
        pending=pending,
        total=total,
    )


def low_stock_items(db: Session, owner_cognito_id: str, days_threshold: int = LOW_STOCK_DAYS) -> List[LowStockItem]:
    items = []
    for med in find_active_medicines(db, owner_cognito_id):
        per_day = max(len(med.times), 1)
        days_left = med.remaining_quantity // per_day
        if days_left > days_threshold:
            continue
        percent_left = round(100 * med.remaining_quantity / med.total_quantity) if med.total_quantity else 0
        items.append(LowStockItem(
            medicine_id=med.medicine_id,
            name=med.name,
            days_left=days_left,
            percent_left=percent_left,
        ))
    items.sort(key=lambda i: i.days_left)
    return items


def apply_dose_action(
    db: Session,
    medicine: Medicine,
    action: DoseAction,
    scheduled_time: str,
    now: dt.datetime,
    dispatcher: EscalationDispatcher,
    snooze_minutes: Optional[int] = None,
) -> Tuple[DoseLog, Optional[EscalationOutcome]]:
    """
    화면 버튼/외부 호출로 들어온 복용 기록.
    missed 기록으로 연속 미복용이 기준 이상이 되면 보호자 호출 (기록은 이미 commit된 뒤).
    """
    log = record_dose_action(db, medicine, action, scheduled_time, now, snooze_minutes=snooze_minutes)

    outcome = None
    if action == DoseAction.missed and streak_threshold_reached(medicine.missed_streak_count):
        outcome = dispatcher.escalate(
            db,
            medicine.owner_cognito_id,
            medicine.name,
            medicine.missed_streak_count,
            EscalationTrigger.missed_streak,
            medicine_id=medicine.medicine_id,
        )
    return log, outcome
