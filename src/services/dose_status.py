# src/services/dose_status.py
"""
복약 슬롯 상태 계산 (순수 함수).

- 슬롯 = (약, 예정 시각) 하루 단위
- 입력: 예정 시각 목록 + 오늘 복용 기록 + 현재 시각
- 출력: 슬롯별 상태, 그리고 카드에 표시할 약 단위 상태 1개

DB/시계에 접근하지 않으므로 조회할 때마다 불러도 됨.
"""
from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from src.config.settings import settings
from src.models.dose_log import DoseAction


class DoseStatus(str, enum.Enum):
    taken = "taken"
    missed = "missed"
    due_soon = "due-soon"
    upcoming = "upcoming"
    snoozed = "snoozed"


@dataclass(frozen=True)
class SlotStatus:
    scheduled_time: str
    status: DoseStatus
    effective_at: dt.datetime
    action: Optional[DoseAction] = None


def local_now() -> dt.datetime:
    # DB에는 tz 없는 date/time 저장 → 설정된 타임존 기준 naive datetime 사용
    return dt.datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None, microsecond=0)


def parse_hhmm(value: str) -> dt.time:
    hh, mm = value.strip().split(":")
    return dt.time(int(hh), int(mm))


def slot_datetime(day: dt.date, hhmm: str) -> dt.datetime:
    return dt.datetime.combine(day, parse_hhmm(hhmm))


def effective_time(day: dt.date, hhmm: str, log=None) -> dt.datetime:
    """예정 시각. 스누즈 기록이 있으면 스누즈 종료 시각(분 단위 절삭)"""
    if log is not None and log.action == DoseAction.snoozed and log.snoozed_until is not None:
        return log.snoozed_until.replace(second=0, microsecond=0)
    return slot_datetime(day, hhmm)


def resolve_slot(
    hhmm: str,
    log,
    now: dt.datetime,
    day: Optional[dt.date] = None,
    lead_minutes: Optional[int] = None,
    grace_minutes: Optional[int] = None,
) -> SlotStatus:
    day = day or now.date()
    lead = dt.timedelta(minutes=settings.due_soon_lead_minutes if lead_minutes is None else lead_minutes)
    grace = dt.timedelta(minutes=settings.missed_grace_minutes if grace_minutes is None else grace_minutes)

    effective = effective_time(day, hhmm, log)
    action = log.action if log is not None else None

    if action == DoseAction.taken:
        status = DoseStatus.taken
    elif action == DoseAction.skipped:
        # 의도적으로 건너뛴 슬롯은 다시 울리지 않음
        status = DoseStatus.upcoming
    elif action == DoseAction.snoozed and log.snoozed_until is not None and log.snoozed_until > now:
        status = DoseStatus.snoozed
    elif action == DoseAction.missed or now >= effective + grace:
        status = DoseStatus.missed
    elif effective - lead <= now < effective + grace:
        status = DoseStatus.due_soon
    else:
        status = DoseStatus.upcoming

    return SlotStatus(scheduled_time=hhmm, status=status, effective_at=effective, action=action)


def collapse_statuses(statuses: Iterable[DoseStatus]) -> DoseStatus:
    """가장 급한 상태가 이김 (카드가 긴급도를 낮춰 보이지 않도록)"""
    statuses = list(statuses)
    if DoseStatus.due_soon in statuses:
        return DoseStatus.due_soon
    if DoseStatus.missed in statuses:
        return DoseStatus.missed
    if DoseStatus.snoozed in statuses:
        return DoseStatus.snoozed
    if statuses and all(s == DoseStatus.taken for s in statuses):
        return DoseStatus.taken
    return DoseStatus.upcoming


def resolve_medicine(
    times: Iterable[str],
    logs_by_time: Mapping[str, object],
    now: dt.datetime,
    day: Optional[dt.date] = None,
) -> Tuple[DoseStatus, List[SlotStatus]]:
    slots = [resolve_slot(t, logs_by_time.get(t), now, day=day) for t in times]
    return collapse_statuses(s.status for s in slots), slots


def get_clock():
    """라우터 의존성. 테스트에서 고정 시계로 교체"""
    return local_now
