# src/main.py
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

import firebase_admin
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from firebase_admin import credentials

import src.models  # noqa: F401  create_all이 모든 테이블을 인식하도록
from src.config.settings import settings
from src.db.database import Base, SessionLocal, engine
from src.routers import fcm, medicines, notifications, reminders
from src.services.dose_log import find_active_owner_ids
from src.services.dose_status import local_now
from src.services.escalation import get_dispatcher
from src.services.missed_pass import run_missed_pass
from src.services.notifications import delete_notifications_older_than_3_days
from src.services.reminder_hub import hub

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _init_firebase() -> None:
    key_path = settings.firebase_key_path
    if not os.path.exists(key_path):
        # 키 파일이 없으면 경고만 (푸시만 꺼지고 나머지는 동작)
        logger.warning("⚠️ [경고] '%s' 파일을 찾을 수 없습니다. (푸시 알림 비활성)", key_path)
        return
    if firebase_admin._apps:
        logger.info("ℹ️ [정보] Firebase가 이미 실행 중입니다.")
        return
    firebase_admin.initialize_app(credentials.Certificate(key_path))
    logger.info("✅ [성공] Firebase(FCM) 서버와 연결되었습니다!")


def _offline_missed_pass() -> int:
    """
    음성 채널이 연결되지 않은 사용자의 missed 처리.
    (연결된 사용자는 각자의 ReminderEngine.sweep()이 처리)
    """
    connected = set(hub.connected_owner_ids())
    now = local_now()
    dispatcher = get_dispatcher()
    escalated = 0

    db = SessionLocal()
    try:
        for owner_id in find_active_owner_ids(db):
            if owner_id in connected:
                continue
            try:
                escalated += len(run_missed_pass(db, owner_id, now, dispatcher))
            except Exception:
                db.rollback()
                logger.exception("[스케줄러 오류][missed_pass] owner=%s", owner_id[:6])
    finally:
        db.close()
    return escalated


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - 시작 시 테이블 생성 + Firebase 연결
    - sweep_interval_seconds(15초)마다 리마인더 sweep + 미연결 사용자 missed 처리
    - 매일 00:00 알림 세션 날짜 초기화 + 3일 지난 notifications 삭제
    - 종료 시 스케줄러 종료, 연결된 엔진 정리
    """
    Base.metadata.create_all(bind=engine)  # 기존 테이블 컬럼 추가는 못함
    _init_firebase()

    scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.timezone))

    async def _reminder_sweep_job():
        try:
            opened = await hub.sweep_all()
            escalated = await asyncio.to_thread(_offline_missed_pass)
            if opened or escalated:
                logger.info("[스케줄러] reminder sweep opened=%d escalated=%d", opened, escalated)
        except Exception:
            logger.exception("[스케줄러 오류][reminder_sweep]")

    def _daily_job():
        rolled = hub.rollover(local_now().date())
        db = SessionLocal()
        try:
            deleted = delete_notifications_older_than_3_days(db)
            logger.info("[스케줄러] 날짜 초기화 engines=%d, 오래된 notifications 삭제=%d", rolled, deleted)
        except Exception:
            db.rollback()
            logger.exception("[스케줄러 오류][daily]")
        finally:
            db.close()

    scheduler.add_job(
        _reminder_sweep_job,
        IntervalTrigger(seconds=settings.sweep_interval_seconds),
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(_daily_job, CronTrigger(hour=0, minute=0))
    scheduler.start()

    try:
        yield
    finally:
        scheduler.shutdown(wait=False)
        for reminder_engine in hub.engines():
            await reminder_engine.stop()
        logger.info("스케줄러 종료됨")


app = FastAPI(lifespan=lifespan)

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 프로덕션에서는 특정 도메인만 허용하도록 수정 필요
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(medicines.router)
app.include_router(reminders.router)
app.include_router(notifications.router)
app.include_router(fcm.router)


# 확인용 엔드포인트
@app.get("/")
async def root():
    return {
        "message": "복약 리마인더 API가 정상 작동 중입니다",
        "version": "1.0.0",
        "telephony": get_dispatcher().status()["configured"],
    }
