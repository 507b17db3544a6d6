from __future__ import annotations

from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.db.database import get_db
from src.auth.dependencies import get_current_user
from src.models.users import User
from src.services.fcm_push import upsert_token, deactivate_token

router = APIRouter(prefix="/fcm", tags=["FCM"])


class RegisterTokenReq(BaseModel):
    token: str = Field(..., min_length=10)
    platform: str = "unknown"
    device_id: Optional[str] = None


@router.post("/token", status_code=status.HTTP_201_CREATED)
def register_fcm_token(
    body: RegisterTokenReq,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    FCM 토큰 등록(업서트)

    📌 언제 호출하나요?
    - 로그인 직후 / 앱 실행 직후
    - 토큰이 갱신(onTokenRefresh) 되었을 때

    📌 Body
        {
          "token": "<FCM_DEVICE_TOKEN>",
          "platform": "android" | "ios" | "web" | "unknown",
          "device_id": "<optional-uuid>"
        }

    등록된 기기로 보호자 호출 결과(성공/실패/연락처 필요) 푸시가 갑니다.
    같은 token이 이미 있으면 현재 유저로 다시 연결하고 활성화합니다.
    """
    upsert_token(db, current_user.cognito_id, body.token, body.platform, body.device_id)
    db.commit()
    return {"ok": True}


@router.delete("/token", status_code=status.HTTP_200_OK)
def unregister_fcm_token(
    token: str = Query(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    FCM 토큰 해제(비활성화). 로그아웃 / 푸시 끄기 때 호출.

    - DELETE /fcm/token?token=<FCM_DEVICE_TOKEN>
    - {"updated": 1} → 비활성화 성공
    - {"updated": 0} → 해당 유저의 토큰이 아님 (이미 해제/잘못된 값)
    """
    updated = deactivate_token(db, current_user.cognito_id, token)
    db.commit()
    return {"updated": updated}
