# src/services/reminder_engine.py
"""
복약 음성 리마인더 엔진 (환자 1명 = 엔진 1개).

sweep()이 주기적으로(15초) 불리며
  1) 유효 시각에 도달한 슬롯에 음성 알림 세션을 연다 (한 번에 하나)
  2) 음성 알림을 거치지 않고 30분 지난 슬롯은 missed 처리 (missed_pass)

세션 흐름
  announcing → 안내 음성 → listening (+ 무응답 타이머)
    - "taken"  → taken 기록
    - "later"  → snoozed 기록 (5분 뒤 다시)
    - 기타     → 다시 말해달라고 안내, 계속 듣기 (타이머 유지)
    - 무응답   → idle-miss +1
                  < 기준: 자동 스누즈
                  >= 기준: missed 기록 + 보호자 호출
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from src.config.settings import settings
from src.db.database import SessionLocal
from src.models.dose_log import DoseAction
from src.models.medicine import Medicine
from src.services.alert_session import (
    AlertedRegistry,
    AlertKey,
    AlertPhase,
    AlertSession,
    AlertSessionTable,
    Outcome,
    Transition,
)
from src.services.dose_log import (
    find_active_medicines,
    find_dose_logs,
    find_slot_log,
    group_logs,
    record_dose_action,
)
from src.services.dose_status import DoseStatus, effective_time, local_now, resolve_slot
from src.services.escalation import EscalationDispatcher, EscalationOutcome, EscalationTrigger
from src.services.missed_pass import run_missed_pass
from src.services.voice import VoiceChannel, VoiceUnavailable

logger = logging.getLogger(__name__)


class ReminderEngine:
    def __init__(
        self,
        owner_cognito_id: str,
        voice: VoiceChannel,
        dispatcher: EscalationDispatcher,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], dt.datetime] = local_now,
    ) -> None:
        self.owner_cognito_id = owner_cognito_id
        self.voice = voice
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.clock = clock

        # 오늘 알린 슬롯 목록은 엔진이 소유하고 세션 테이블에 넘겨준다
        self.alerted = AlertedRegistry()
        self.table = AlertSessionTable(self.alerted)

        self.voice_enabled = True
        self.escalations: List[EscalationOutcome] = []
        self._timers: Dict[AlertKey, asyncio.Task] = {}
        self._alert_tasks: Dict[AlertKey, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._stopped = False

    # ---------- sweep ----------
    async def sweep(self) -> Optional[AlertSession]:
        """return: 이번 sweep에서 새로 연 세션 (없으면 None)"""
        if self._stopped:
            return None
        now = self.clock()
        if self.table.rollover(now.date()):
            logger.info("[reminder] day rollover owner=%s day=%s", self.owner_cognito_id[:6], now.date())

        opened: Optional[AlertSession] = None
        if not self.table.has_open():
            with self.session_factory() as db:
                opened = self._open_next_due(db, now)
        if opened is not None:
            self._alert_tasks[opened.key] = asyncio.create_task(self._run_alert(opened))

        # 보호자 전화가 걸릴 수 있으므로 스레드에서
        outcomes = await asyncio.to_thread(self._missed_pass, now)
        self.escalations.extend(outcomes)
        return opened

    def _missed_pass(self, now: dt.datetime) -> List[EscalationOutcome]:
        with self.session_factory() as db:
            return run_missed_pass(db, self.owner_cognito_id, now, self.dispatcher, alerted=self.alerted)

    def _open_next_due(self, db: Session, now: dt.datetime) -> Optional[AlertSession]:
        medicines = find_active_medicines(db, self.owner_cognito_id)
        logs = group_logs(find_dose_logs(db, self.owner_cognito_id, now.date()))

        for med in medicines:
            med_logs = logs.get(med.medicine_id, {})
            for hhmm in med.times:
                slot = resolve_slot(hhmm, med_logs.get(hhmm), now)
                # 유효 시각(예정 or 스누즈 마감)에 도달했고 아직 missed 전인 슬롯만
                if slot.status != DoseStatus.due_soon or now < slot.effective_at:
                    continue
                key = AlertKey(now.date(), med.medicine_id, hhmm)
                if self.table.snooze_pending(key, now):
                    continue
                if self.alerted.was_alerted(key, slot.effective_at):
                    continue
                session = self.table.try_open(
                    key, med.name, med.dosage, slot.effective_at, snooze_minutes=settings.snooze_minutes
                )
                if session is not None:
                    logger.info(
                        "[reminder] open session key=%s version=%d medicine=%s",
                        key, session.version, med.name,
                    )
                    return session
        return None

    # ---------- 세션 실행 ----------
    async def _run_alert(self, session: AlertSession) -> None:
        try:
            await self.voice.publish({"type": "alert", "session": session.to_dict()})
            await self._speak(session.prompt_text())
            if not self.table.is_current(session.key, session.version):
                return
            session.begin_listening()
            self._start_timer(session)
            if self.voice_enabled:
                await self._listen(session)
        finally:
            task = self._alert_tasks.get(session.key)
            if task is asyncio.current_task():
                del self._alert_tasks[session.key]

    async def _listen(self, session: AlertSession) -> None:
        try:
            async for event in self.voice.start_listening():
                if not self.table.is_current(session.key, session.version):
                    break
                if not event.final:
                    continue
                logger.info("[reminder] heard key=%s text=%r", session.key, event.text)
                transition = await self.handle_transcript(session.key, session.version, event.text)
                if transition is None or transition.closes:
                    break
        except VoiceUnavailable as e:
            # 마이크 권한 거부/미지원 → 음성 루프 종료, 화면 버튼과 타이머는 그대로
            logger.warning("[reminder] voice unavailable (%s), falling back to manual", e.reason)
            self.voice_enabled = False

    async def handle_transcript(self, key: AlertKey, version: int, text: str) -> Optional[Transition]:
        session = self.table.current(key, version)
        if session is None or session.phase != AlertPhase.listening:
            return None
        transition = session.hear(text)
        await self._apply(session, transition)
        return transition

    async def handle_timeout(self, key: AlertKey, version: int) -> Optional[Transition]:
        session = self.table.current(key, version)
        if session is None or session.phase != AlertPhase.listening:
            # 이미 닫힌 세션에 대한 늦은 타이머
            return None
        logged = self._settled_log(session)
        if logged is not None:
            # 다른 경로(약 카드 버튼 등)로 이미 기록된 슬롯 → 덮어쓰지 않고 닫기만
            logger.info("[reminder] slot already logged key=%s action=%s", key, logged[0].value)
            await self._close_without_log(session, *logged)
            return None
        misses = self.table.bump_idle_miss(key)
        transition = session.time_out(misses, settings.idle_miss_threshold)
        logger.info("[reminder] no response key=%s idle_misses=%d -> %s", key, misses, transition.outcome.value)
        await self._apply(session, transition)
        return transition

    async def resolve_manually(self, medicine_id: int, scheduled_time: str, action: DoseAction) -> Optional[Transition]:
        """화면의 '복용 완료'/'스누즈' 버튼"""
        session = self.table.find(medicine_id, scheduled_time)
        if session is None or session.phase not in (AlertPhase.announcing, AlertPhase.listening):
            return None
        transition = session.resolve(action)
        await self._apply(session, transition)
        return transition

    async def dismiss(
        self,
        medicine_id: int,
        scheduled_time: str,
        action: DoseAction,
        snoozed_until: Optional[dt.datetime] = None,
    ) -> Optional[AlertSession]:
        """
        /medicines/dose-action 으로 이미 기록된 슬롯의 열린 세션 정리.
        기록은 다시 쓰지 않고 음성 중단 + 타이머 해제만.
        """
        session = self.table.find(medicine_id, scheduled_time)
        if session is None or session.phase not in (AlertPhase.announcing, AlertPhase.listening):
            return None
        if not await self._close_without_log(session, action, snoozed_until):
            return None
        return session

    def _settled_log(self, session: AlertSession):
        """세션이 열린 뒤 슬롯에 쓰인 기록 → (action, snoozed_until), 없으면 None"""
        key = session.key
        with self.session_factory() as db:
            log = find_slot_log(db, key.medicine_id, key.day, key.scheduled_time)
            if log is None:
                return None
            if log.action in (DoseAction.taken, DoseAction.skipped, DoseAction.missed):
                return log.action, None
            if log.action == DoseAction.snoozed and effective_time(key.day, key.scheduled_time, log) > session.effective_at:
                # 세션을 연 뒤에 새로 걸린 스누즈
                return log.action, log.snoozed_until
        return None

    async def _close_without_log(
        self, session: AlertSession, action: DoseAction, snoozed_until: Optional[dt.datetime]
    ) -> bool:
        key = session.key
        self._cancel_timer(key)
        if not self.table.close(key, session.version):
            return False
        await self.voice.stop_listening()

        self.table.clear_idle_miss(key)
        if action == DoseAction.snoozed and snoozed_until is not None:
            self.table.set_snooze(key, snoozed_until)
        session.phase = AlertPhase.resolved
        logger.info("[reminder] session dismissed key=%s action=%s", key, action.value)

        self._spawn(self.voice.publish({
            "type": "alert_closed",
            "session": session.to_dict(),
            "outcome": action.value,
            "guardianAlert": None,
        }))
        return True

    # ---------- 전이 적용 ----------
    async def _apply(self, session: AlertSession, transition: Transition) -> None:
        key = session.key
        if not transition.closes:
            self._spawn(self._speak(transition.speech))
            return

        # 타이머 먼저 정리 → 세션 닫기 → 그 다음 기록
        self._cancel_timer(key)
        if not self.table.close(key, session.version):
            return
        await self.voice.stop_listening()

        now = self.clock()
        outcome = transition.outcome
        escalation: Optional[EscalationOutcome] = None

        if outcome in (Outcome.taken, Outcome.snoozed):
            self.table.clear_idle_miss(key)
        if outcome in (Outcome.snoozed, Outcome.auto_snoozed):
            self.table.set_snooze(key, now + dt.timedelta(minutes=session.snooze_minutes))

        self._write_log(session, transition.log_action, now)

        if outcome == Outcome.escalated:
            self.table.clear_idle_miss(key)
            escalation = await asyncio.to_thread(self._escalate, session, transition.idle_misses)
            self.escalations.append(escalation)

        session.phase = AlertPhase.resolved
        # 안내 음성은 기다리지 않음 (HTTP/소켓 요청이 음성 출력에 묶이지 않도록)
        self._spawn(self._announce(session, transition, escalation))

    async def _announce(
        self, session: AlertSession, transition: Transition, escalation: Optional[EscalationOutcome]
    ) -> None:
        await self.voice.publish({
            "type": "alert_closed",
            "session": session.to_dict(),
            "outcome": transition.outcome.value,
            "guardianAlert": escalation.as_guardian_alert() if escalation else None,
        })
        await self._speak(transition.speech)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _write_log(self, session: AlertSession, action: Optional[DoseAction], now: dt.datetime) -> None:
        if action is None:
            return
        with self.session_factory() as db:
            medicine = db.get(Medicine, session.key.medicine_id)
            if medicine is None:
                logger.warning("[reminder] medicine gone key=%s", session.key)
                return
            record_dose_action(
                db, medicine, action, session.key.scheduled_time, now,
                snooze_minutes=session.snooze_minutes,
            )

    def _escalate(self, session: AlertSession, idle_misses: int) -> EscalationOutcome:
        with self.session_factory() as db:
            return self.dispatcher.escalate(
                db,
                self.owner_cognito_id,
                session.medicine_name,
                idle_misses,
                EscalationTrigger.voice_idle,
                medicine_id=session.key.medicine_id,
            )

    # ---------- 음성/타이머 ----------
    async def _speak(self, text: str) -> None:
        if not text:
            return
        try:
            await asyncio.wait_for(self.voice.speak(text), timeout=settings.speech_ack_timeout_seconds)
        except asyncio.TimeoutError:
            logger.info("[reminder] speech ack timed out, continuing")

    def _start_timer(self, session: AlertSession) -> None:
        self._cancel_timer(session.key)
        self._timers[session.key] = asyncio.create_task(
            self._no_response_timer(session.key, session.version)
        )

    async def _no_response_timer(self, key: AlertKey, version: int) -> None:
        await asyncio.sleep(settings.no_response_timeout_seconds)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        await self.handle_timeout(key, version)

    def _cancel_timer(self, key: AlertKey) -> None:
        task = self._timers.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ---------- 정리 ----------
    def active_sessions(self) -> List[AlertSession]:
        return self.table.active_sessions()

    async def stop(self) -> None:
        """화면 이탈/소켓 종료: 음성 중단, 타이머 해제, 열린 세션 폐기 (기록 없음)"""
        self._stopped = True
        for key in list(self._timers):
            self._cancel_timer(key)
        current = asyncio.current_task()
        for task in [*self._alert_tasks.values(), *self._background]:
            if task is not current:
                task.cancel()
        self._alert_tasks.clear()
        self._background.clear()
        dropped = self.table.drop_all()
        try:
            await self.voice.stop_listening()
        except Exception:
            logger.info("[reminder] stop_listening failed during stop")
        if dropped:
            logger.info("[reminder] stopped with %d open session(s)", len(dropped))
