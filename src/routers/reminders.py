# src/routers/reminders.py
import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from src.auth.dependencies import get_current_user, user_from_access_token
from src.db.database import get_db, get_session_factory
from src.models.dose_log import DoseAction
from src.models.users import User
from src.schemas.schema_medicine import ResolveSessionReq
from src.services.dose_status import get_clock
from src.services.escalation import EscalationDispatcher, get_dispatcher
from src.services.reminder_engine import ReminderEngine
from src.services.reminder_hub import hub
from src.services.voice import WebSocketVoiceChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reminders", tags=["음성 리마인더"])

_MANUAL_ACTIONS = (DoseAction.taken, DoseAction.snoozed)


@router.websocket("/voice")
async def voice_channel(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
    clock=Depends(get_clock),
):
    """
    환자 앱(브라우저)의 마이크/스피커를 서버 리마인더 엔진에 연결.

    - 연결: ws://.../reminders/voice?token=<Cognito Access Token>
    - 메시지 형식은 WebSocketVoiceChannel 참고
    - 화면 버튼: {"type": "action", "action": "taken" | "snoozed", "medicineId"?: 1, "scheduledTime"?: "09:00"}
    - 연결이 끊기면 열린 세션은 기록 없이 폐기
    """
    try:
        user = user_from_access_token(db, token)
    except HTTPException as e:
        logger.info("[reminders] websocket rejected: %s", e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    owner_id = user.cognito_id
    db.close()

    await websocket.accept()
    channel = WebSocketVoiceChannel(websocket)
    engine = ReminderEngine(owner_id, channel, dispatcher, session_factory=session_factory, clock=clock)

    previous = hub.register(engine)
    if previous is not None:
        logger.info("[reminders] replacing previous engine owner=%s", owner_id[:6])
        await previous.stop()
    logger.info("[reminders] voice channel connected owner=%s", owner_id[:6])

    # 버튼 처리는 수신 루프를 막지 않도록 태스크로 (speech_end를 계속 받아야 함)
    pending: Set[asyncio.Task] = set()
    try:
        await engine.sweep()
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.info("[reminders] ignored non-json message")
                continue
            if not isinstance(message, dict):
                continue

            if message.get("type") == "action":
                try:
                    action = DoseAction(message.get("action"))
                except ValueError:
                    continue
                if action not in _MANUAL_ACTIONS:
                    continue
                medicine_id, scheduled_time = message.get("medicineId"), message.get("scheduledTime")
                if medicine_id is None or not scheduled_time:
                    # 슬롯 지정이 없으면 지금 열린 세션 (한 번에 하나)
                    open_sessions = engine.active_sessions()
                    if not open_sessions:
                        continue
                    medicine_id = open_sessions[0].key.medicine_id
                    scheduled_time = open_sessions[0].key.scheduled_time
                task = asyncio.create_task(engine.resolve_manually(int(medicine_id), str(scheduled_time), action))
                pending.add(task)
                task.add_done_callback(pending.discard)
            else:
                channel.feed(message)
    except WebSocketDisconnect:
        logger.info("[reminders] voice channel disconnected owner=%s", owner_id[:6])
    finally:
        channel.close()
        hub.unregister(engine)
        await engine.stop()
        for task in pending:
            task.cancel()


@router.get("/sessions")
def get_open_sessions(current_user: User = Depends(get_current_user)):
    """현재 열린 알림 세션 (음성 채널 연결 중일 때만, 없으면 빈 배열)"""
    engine = hub.get(current_user.cognito_id)
    if engine is None:
        return {"connected": False, "sessions": []}
    return {
        "connected": True,
        "voiceEnabled": engine.voice_enabled,
        "sessions": [s.to_dict() for s in engine.active_sessions()],
    }


@router.post("/sessions/resolve")
async def resolve_open_session(
    body: ResolveSessionReq,
    current_user: User = Depends(get_current_user),
):
    """
    열린 알림 세션을 화면 버튼으로 닫기 (taken / snoozed). \n
    - 음성 채널 미연결 → 404
    - 해당 슬롯에 열린 세션 없음 → 404
    """
    engine = hub.get(current_user.cognito_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="Voice channel not connected")

    transition = await engine.resolve_manually(body.medicine_id, body.scheduled_time, body.action)
    if transition is None:
        raise HTTPException(status_code=404, detail="No open alert session for this slot")
    return {"outcome": transition.outcome.value, "action": transition.log_action.value}
