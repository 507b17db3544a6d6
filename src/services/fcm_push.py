# src/services/fcm_push.py
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional, Tuple

import firebase_admin
from firebase_admin import messaging
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.fcm_token import FcmToken

logger = logging.getLogger(__name__)

_DEAD_TOKEN_ERRORS = (messaging.UnregisteredError, messaging.SenderIdMismatchError)


def firebase_ready() -> bool:
    # main.py lifespan에서 initialize_app 되었는지 체크
    return bool(getattr(firebase_admin, "_apps", None))


def _data_to_str(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # FCM data payload는 문자열 값만 허용
    if not data:
        return {}
    return {k: str(v) for k, v in data.items() if v is not None}


def upsert_token(
    db: Session,
    owner_cognito_id: str,
    token: str,
    platform: str = "unknown",
    device_id: Optional[str] = None,
) -> None:
    now = dt.datetime.now().replace(microsecond=0)

    row = db.execute(select(FcmToken).where(FcmToken.token == token)).scalars().first()
    if row:
        row.owner_cognito_id = owner_cognito_id
        row.platform = platform
        row.device_id = device_id
        row.is_active = True
        row.last_seen_at = now
    else:
        db.add(
            FcmToken(
                owner_cognito_id=owner_cognito_id,
                token=token,
                platform=platform,
                device_id=device_id,
                is_active=True,
                last_seen_at=now,
            )
        )


def deactivate_token(db: Session, owner_cognito_id: str, token: str) -> int:
    row = db.execute(
        select(FcmToken).where(
            FcmToken.owner_cognito_id == owner_cognito_id,
            FcmToken.token == token,
        )
    ).scalars().first()
    if not row:
        return 0
    row.is_active = False
    return 1


def send_push_to_user(
    db: Session,
    owner_cognito_id: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> Tuple[int, int, int]:
    """
    return (success_count, fail_count, deactivated_count)
    Firebase 키가 없는 환경(로컬/테스트)에서는 조용히 (0, 0, 0).
    DB commit은 호출자가 한다.
    """
    if not firebase_ready():
        return 0, 0, 0

    tokens = (
        db.execute(
            select(FcmToken).where(
                FcmToken.owner_cognito_id == owner_cognito_id,
                FcmToken.is_active.is_(True),
            )
        )
        .scalars()
        .all()
    )
    if not tokens:
        return 0, 0, 0

    msg = messaging.MulticastMessage(
        tokens=[t.token for t in tokens],
        notification=messaging.Notification(title=title, body=body),
        data=_data_to_str(data),
    )
    resp = messaging.send_each_for_multicast(msg)

    now = dt.datetime.now().replace(microsecond=0)
    deactivated = 0
    for token, r in zip(tokens, resp.responses):
        if r.success:
            token.last_sent_at = now
        elif isinstance(r.exception, _DEAD_TOKEN_ERRORS):
            token.is_active = False
            deactivated += 1

    return resp.success_count, resp.failure_count, deactivated
