# src/routers/medicines.py
import asyncio
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.auth.dependencies import get_current_user
from src.db.database import get_db
from src.models.users import User
from src.schemas.schema_medicine import (
    AlertGuardianReq,
    AlertGuardianRes,
    CreateMedicines,
    DailyProgress,
    DoseActionReq,
    DoseActionRes,
    DoseLogItem,
    GuardianAlert,
    GuardianTestCallRes,
    LowStockItem,
    MedicineItem,
    ResponseDoseLogs,
    ResponseMedicines,
    TelephonyStatus,
)
from src.services.dose_log import find_dose_logs
from src.services.dose_status import get_clock
from src.services.escalation import EscalationDispatcher, EscalationTrigger, get_dispatcher
from src.services.medicine import (
    apply_dose_action,
    create_medicines,
    daily_progress,
    get_owned_medicine,
    list_medicines_with_status,
    low_stock_items,
    to_medicine_item,
)
from src.services.reminder_hub import hub

router = APIRouter(prefix="/medicines", tags=["복약 알림"])


@router.get("", response_model=ResponseMedicines)
def get_medicines(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    활성화된 약 목록 + 실시간 상태.

    status: taken | missed | due-soon | upcoming | snoozed \n
    slots: 예정 시각별 상태 (카드 상세용)
    """
    items = list_medicines_with_status(db, current_user.cognito_id, clock())
    return ResponseMedicines(count=len(items), data=items)


@router.post("", response_model=ResponseMedicines, status_code=status.HTTP_201_CREATED)
def post_medicines(
    body: CreateMedicines,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    약 저장 (수기 입력 or OCR 확인 후). \n
    totalQuantity를 안 보내면 30으로 저장, remainingQuantity도 같은 값으로 시작.
    """
    rows = create_medicines(db, body.medicines, current_user)
    items = [to_medicine_item(r) for r in rows]
    return ResponseMedicines(count=len(items), data=items)


@router.patch("/{medicine_id}/deactivate", response_model=MedicineItem)
def deactivate_medicine(
    medicine_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """삭제 대신 비활성화. 복용 기록은 그대로 남음"""
    medicine = get_owned_medicine(db, medicine_id, current_user.cognito_id)
    if medicine is None:
        raise HTTPException(status_code=404, detail="Medicine not found")
    medicine.is_active = False
    db.commit()
    db.refresh(medicine)
    return to_medicine_item(medicine)


@router.get("/progress", response_model=DailyProgress)
def get_daily_progress(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    return daily_progress(db, current_user.cognito_id, clock())


@router.get("/low-stock", response_model=List[LowStockItem])
def get_low_stock(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """남은 수량이 7일치 이하인 약"""
    return low_stock_items(db, current_user.cognito_id)


@router.get("/{medicine_id}/dose", response_model=ResponseDoseLogs)
def get_today_dose_logs(
    medicine_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    medicine = get_owned_medicine(db, medicine_id, current_user.cognito_id)
    if medicine is None:
        raise HTTPException(status_code=404, detail="Medicine not found")
    logs = [
        log for log in find_dose_logs(db, current_user.cognito_id, clock().date())
        if log.medicine_id == medicine_id
    ]
    return ResponseDoseLogs(data=[DoseLogItem.model_validate(log) for log in logs])


@router.post("/dose-action", response_model=DoseActionRes, response_model_exclude_none=True)
async def post_dose_action(
    body: DoseActionReq,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher),
):
    """
    복용 기록 (taken / snoozed / missed / skipped).

    - 같은 날 같은 슬롯(약, 시간)은 1건만 유지, 다시 보내면 덮어씀
    - taken/skipped → 연속 미복용 0, missed → +1, snoozed → 변화 없음
    - missed로 연속 미복용이 기준(5회) 이상이면 보호자 전화 → guardianAlert 포함
    - 보호자 호출이 실패해도 복용 기록은 저장된 상태로 응답
    - 음성 알림 세션이 열려 있던 슬롯이면 세션을 닫음 (기록은 이 요청의 것 하나만)
    - 약의 복용 시간에 없는 scheduledTime → 400
    """
    medicine = get_owned_medicine(db, body.medicine_id, current_user.cognito_id)
    if medicine is None:
        raise HTTPException(status_code=404, detail="Medicine not found")
    if body.scheduled_time not in (medicine.times or []):
        raise HTTPException(status_code=400, detail="scheduledTime is not one of this medicine's times")

    # 보호자 전화가 걸릴 수 있으므로 스레드에서
    log, outcome = await asyncio.to_thread(
        apply_dose_action,
        db,
        medicine,
        body.action,
        body.scheduled_time,
        clock(),
        dispatcher,
        snooze_minutes=body.snooze_minutes,
    )

    engine = hub.get(current_user.cognito_id)
    if engine is not None:
        await engine.dismiss(medicine.medicine_id, body.scheduled_time, log.action, log.snoozed_until)

    return DoseActionRes(
        dose_log=DoseLogItem.model_validate(log),
        missed_streak_count=medicine.missed_streak_count,
        guardian_alert=GuardianAlert.model_validate(outcome.as_guardian_alert()) if outcome else None,
    )


# ---------- 보호자 호출 ----------
@router.post("/alert-guardian", response_model=AlertGuardianRes, response_model_exclude_none=True)
def alert_guardian(
    body: AlertGuardianReq,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher),
):
    """
    보호자에게 단방향 음성 전화. \n
    - 보호자 번호 없음 → 400, needsSetup: true
    - 전화 서비스 미설정 → 500
    - guardianPhone은 항상 마스킹 (+82****5678)
    """
    outcome = dispatcher.escalate(
        db, current_user.cognito_id, body.medicine_name, body.missed_count, EscalationTrigger.manual
    )
    res = AlertGuardianRes(
        success=outcome.success,
        guardian_name=outcome.guardian_name if outcome.success else None,
        guardian_phone=outcome.guardian_phone if outcome.success else None,
        call_id=outcome.call_id,
        call_status=outcome.call_status,
        message=outcome.message,
        error=outcome.error,
        needs_setup=outcome.needs_setup or None,
        provider_code=outcome.provider_code,
    )
    if outcome.success:
        return res
    return JSONResponse(
        status_code=outcome.http_status or 500,
        content=res.model_dump(by_alias=True, exclude_none=True),
    )


@router.post("/alert-guardian/test", response_model=GuardianTestCallRes, response_model_exclude_none=True)
def alert_guardian_test(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher),
):
    """보호자 전화 테스트 (설정 확인용)"""
    outcome, from_masked = dispatcher.test_call(db, current_user.cognito_id)
    res = GuardianTestCallRes(
        success=outcome.success,
        call_id=outcome.call_id,
        call_status=outcome.call_status,
        message=outcome.message,
        to=outcome.guardian_phone if outcome.success else None,
        from_=from_masked if outcome.success else None,
        error=outcome.error,
        needs_setup=outcome.needs_setup or None,
        provider_code=outcome.provider_code,
    )
    if outcome.success:
        return res
    return JSONResponse(
        status_code=outcome.http_status or 500,
        content=res.model_dump(by_alias=True, exclude_none=True),
    )


@router.get("/alert-guardian/status", response_model=TelephonyStatus)
def alert_guardian_status(
    current_user: User = Depends(get_current_user),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher),
):
    return TelephonyStatus.model_validate(dispatcher.status())
