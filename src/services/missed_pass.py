# src/services/missed_pass.py
from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from src.config.settings import settings
from src.models.dose_log import DoseAction
from src.services.alert_session import AlertedRegistry, AlertKey
from src.services.dose_log import find_active_medicines, find_dose_logs, group_logs, record_dose_action
from src.services.dose_status import DoseStatus, resolve_slot
from src.services.escalation import EscalationDispatcher, EscalationOutcome, EscalationTrigger

logger = logging.getLogger(__name__)

_CLOSED_ACTIONS = (DoseAction.taken, DoseAction.skipped, DoseAction.missed)


def streak_threshold_reached(missed_streak_count: int) -> bool:
    return missed_streak_count >= settings.missed_streak_threshold


def run_missed_pass(
    db: Session,
    owner_cognito_id: str,
    now: dt.datetime,
    dispatcher: EscalationDispatcher,
    alerted: Optional[AlertedRegistry] = None,
) -> List[EscalationOutcome]:
    """
    음성 알림을 한 번도 거치지 않은 채 유예시간(30분)이 지난 슬롯을 missed로 기록하고
    연속 미복용 횟수를 올린다. 기준(5회)에 닿으면 보호자 호출.

    - taken/skipped/missed 기록이 이미 있는 슬롯은 건너뜀 (중복 증가 방지)
    - alerted에 있는 슬롯(음성 알림이 나간 슬롯)은 음성 루프가 처리하므로 건너뜀
    """
    medicines = find_active_medicines(db, owner_cognito_id)
    logs = group_logs(find_dose_logs(db, owner_cognito_id, now.date()))
    outcomes: List[EscalationOutcome] = []

    for med in medicines:
        med_logs = logs.get(med.medicine_id, {})
        for hhmm in med.times:
            log = med_logs.get(hhmm)
            if log is not None and log.action in _CLOSED_ACTIONS:
                continue

            slot = resolve_slot(hhmm, log, now)
            if slot.status != DoseStatus.missed:
                continue

            key = AlertKey(now.date(), med.medicine_id, hhmm)
            if alerted is not None and alerted.was_alerted(key, slot.effective_at):
                continue

            try:
                record_dose_action(db, med, DoseAction.missed, hhmm, now)
            except Exception:
                db.rollback()
                logger.exception("[missed_pass] write failed medicine_id=%s slot=%s", med.medicine_id, hhmm)
                continue

            logger.info(
                "[missed_pass] marked missed medicine_id=%s slot=%s streak=%d",
                med.medicine_id, hhmm, med.missed_streak_count,
            )

            if streak_threshold_reached(med.missed_streak_count):
                outcome = dispatcher.escalate(
                    db,
                    owner_cognito_id,
                    med.name,
                    med.missed_streak_count,
                    EscalationTrigger.missed_streak,
                    medicine_id=med.medicine_id,
                )
                outcomes.append(outcome)

    return outcomes
