# src/services/alert_session.py
"""
슬롯별 음성 알림 세션 (메모리 전용).

상태 전이 자체는 동기 함수로만 구성하고, 실제 부수효과(기록 저장, 음성 출력,
보호자 호출)는 ReminderEngine이 Transition을 보고 수행한다.

    announcing → listening → resolved
                          ↘ escalating → resolved

세션마다 단조 증가하는 version을 가지며, 타이머/음성 콜백은
(key, version)이 현재 세션과 같을 때만 동작해야 한다.
"""
from __future__ import annotations

import datetime as dt
import enum
import itertools
from dataclasses import dataclass
from threading import RLock
from typing import Dict, List, Optional

from src.models.dose_log import DoseAction
from src.services.intents import Intent, classify_intent


@dataclass(frozen=True, order=True)
class AlertKey:
    day: dt.date
    medicine_id: int
    scheduled_time: str

    def __str__(self) -> str:
        return f"{self.day.isoformat()}-{self.medicine_id}-{self.scheduled_time}"


class AlertPhase(str, enum.Enum):
    announcing = "announcing"
    listening = "listening"
    resolved = "resolved"
    escalating = "escalating"


class Outcome(str, enum.Enum):
    taken = "taken"
    snoozed = "snoozed"
    reprompt = "reprompt"
    auto_snoozed = "auto_snoozed"
    escalated = "escalated"


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    speech: str
    log_action: Optional[DoseAction] = None
    idle_misses: int = 0

    @property
    def closes(self) -> bool:
        return self.outcome != Outcome.reprompt


@dataclass
class AlertSession:
    key: AlertKey
    version: int
    medicine_name: str
    dosage: str
    effective_at: dt.datetime
    phase: AlertPhase = AlertPhase.announcing
    snooze_minutes: int = 5

    def prompt_text(self) -> str:
        return (
            f"It's time to take your {self.medicine_name}, {self.dosage}. "
            "Say taken when done, or say later to snooze."
        )

    def begin_listening(self) -> None:
        if self.phase == AlertPhase.announcing:
            self.phase = AlertPhase.listening

    def hear(self, transcript: str) -> Transition:
        intent = classify_intent(transcript)
        if intent == Intent.taken:
            return self.resolve(DoseAction.taken)
        if intent == Intent.snooze:
            return self.resolve(DoseAction.snoozed)
        return Transition(Outcome.reprompt, "Sorry, I didn't get that. Say taken or remind me later.")

    def resolve(self, action: DoseAction) -> Transition:
        """음성 또는 화면 버튼으로 응답한 경우"""
        self.phase = AlertPhase.resolved
        if action == DoseAction.taken:
            return Transition(
                Outcome.taken,
                f"Great! {self.medicine_name} marked as taken.",
                DoseAction.taken,
            )
        if action == DoseAction.snoozed:
            return Transition(
                Outcome.snoozed,
                f"Okay, I'll remind you about {self.medicine_name} in {self.snooze_minutes} minutes.",
                DoseAction.snoozed,
            )
        raise ValueError(f"unsupported manual action: {action}")

    def time_out(self, idle_misses: int, threshold: int) -> Transition:
        """무응답 타이머 만료. idle_misses는 이번 만료까지 포함한 누적 횟수"""
        self.phase = AlertPhase.escalating
        if idle_misses < threshold:
            transition = Transition(
                Outcome.auto_snoozed,
                f"No response detected. I will remind you about {self.medicine_name} "
                f"again in {self.snooze_minutes} minutes.",
                DoseAction.snoozed,
                idle_misses,
            )
        else:
            transition = Transition(
                Outcome.escalated,
                f"No response detected again. I am alerting your guardian about {self.medicine_name}.",
                DoseAction.missed,
                idle_misses,
            )
        return transition

    def to_dict(self) -> dict:
        return {
            "key": str(self.key),
            "version": self.version,
            "medicineId": self.key.medicine_id,
            "medicineName": self.medicine_name,
            "dosage": self.dosage,
            "scheduledTime": self.key.scheduled_time,
            "phase": self.phase.value,
        }


class AlertedRegistry:
    """
    오늘 이미 알린 슬롯 목록 (날짜별).
    슬롯마다 알림을 띄운 시점의 유효 시각을 기억하고, 스누즈 등으로 유효 시각이
    뒤로 밀리면 다시 알릴 수 있는 상태(retry due)가 된다.
    """

    def __init__(self) -> None:
        self._day: Optional[dt.date] = None
        self._alerted: Dict[AlertKey, dt.datetime] = {}

    @property
    def day(self) -> Optional[dt.date]:
        return self._day

    def rollover(self, day: dt.date) -> bool:
        if self._day == day:
            return False
        self._day = day
        self._alerted.clear()
        return True

    def mark(self, key: AlertKey, effective_at: dt.datetime) -> None:
        if self._day is None:
            self.rollover(key.day)
        if key.day == self._day:
            self._alerted[key] = effective_at

    def unmark(self, key: AlertKey) -> None:
        self._alerted.pop(key, None)

    def was_alerted(self, key: AlertKey, effective_at: Optional[dt.datetime] = None) -> bool:
        marked = self._alerted.get(key)
        if marked is None or key.day != self._day:
            return False
        if effective_at is None:
            return True
        return marked >= effective_at

    def __contains__(self, key: AlertKey) -> bool:
        return self.was_alerted(key)

    def __len__(self) -> int:
        return len(self._alerted)


class AlertSessionTable:
    """
    (날짜, 약, 시간) 키당 열린 세션은 최대 1개.
    열기/닫기는 RLock으로 check-and-set.
    """

    def __init__(self, alerted: AlertedRegistry) -> None:
        self._lock = RLock()
        self._versions = itertools.count(1)
        self._active: Dict[AlertKey, AlertSession] = {}
        self._idle_misses: Dict[AlertKey, int] = {}
        self._snoozed_until: Dict[AlertKey, dt.datetime] = {}
        self.alerted = alerted

    # ---------- 세션 ----------
    def try_open(
        self,
        key: AlertKey,
        medicine_name: str,
        dosage: str,
        effective_at: dt.datetime,
        snooze_minutes: int = 5,
    ) -> Optional[AlertSession]:
        with self._lock:
            if key in self._active:
                return None
            session = AlertSession(
                key=key,
                version=next(self._versions),
                medicine_name=medicine_name,
                dosage=dosage,
                effective_at=effective_at,
                snooze_minutes=snooze_minutes,
            )
            self._active[key] = session
            self.alerted.mark(key, effective_at)
            return session

    def current(self, key: AlertKey, version: int) -> Optional[AlertSession]:
        with self._lock:
            session = self._active.get(key)
            if session is None or session.version != version:
                return None
            return session

    def is_current(self, key: AlertKey, version: int) -> bool:
        return self.current(key, version) is not None

    def find(self, medicine_id: int, scheduled_time: str) -> Optional[AlertSession]:
        with self._lock:
            for session in self._active.values():
                if session.key.medicine_id == medicine_id and session.key.scheduled_time == scheduled_time:
                    return session
            return None

    def close(self, key: AlertKey, version: int) -> bool:
        with self._lock:
            session = self._active.get(key)
            if session is None or session.version != version:
                return False
            del self._active[key]
            return True

    def has_open(self) -> bool:
        with self._lock:
            return bool(self._active)

    def active_sessions(self) -> List[AlertSession]:
        with self._lock:
            return list(self._active.values())

    def drop_all(self) -> List[AlertSession]:
        with self._lock:
            dropped = list(self._active.values())
            self._active.clear()
            return dropped

    # ---------- 슬롯별 상태 ----------
    def idle_misses(self, key: AlertKey) -> int:
        with self._lock:
            return self._idle_misses.get(key, 0)

    def bump_idle_miss(self, key: AlertKey) -> int:
        with self._lock:
            count = self._idle_misses.get(key, 0) + 1
            self._idle_misses[key] = count
            return count

    def clear_idle_miss(self, key: AlertKey) -> None:
        with self._lock:
            self._idle_misses.pop(key, None)

    def set_snooze(self, key: AlertKey, until: dt.datetime) -> None:
        """스누즈 마감 시각 기록 + alerted 해제 → 마감 이후 다시 울릴 수 있음"""
        with self._lock:
            self._snoozed_until[key] = until
            self.alerted.unmark(key)

    def snooze_pending(self, key: AlertKey, now: dt.datetime) -> bool:
        with self._lock:
            until = self._snoozed_until.get(key)
            if until is None:
                return False
            if now < until:
                return True
            # 만료된 스누즈 → retry due
            del self._snoozed_until[key]
            return False

    def snoozed_until(self, key: AlertKey) -> Optional[dt.datetime]:
        with self._lock:
            return self._snoozed_until.get(key)

    def rollover(self, day: dt.date) -> bool:
        """날짜가 바뀌면 전날 상태를 모두 비움"""
        with self._lock:
            if not self.alerted.rollover(day):
                return False
            self._idle_misses = {k: v for k, v in self._idle_misses.items() if k.day == day}
            self._snoozed_until = {k: v for k, v in self._snoozed_until.items() if k.day == day}
            return True
