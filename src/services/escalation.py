# src/services/escalation.py
"""
보호자 호출 (Twilio 단방향 음성 전화).

- 보호자 번호 없음 → needs_setup (예외 아님)
- Twilio 설정 없음 → not_configured (예외 아님)
- Twilio 오류 → 실패 결과 + provider 에러 코드 (로그만 남김)

결과에 담기는 전화번호는 항상 마스킹된 값.
호출은 best-effort: 복용 기록은 호출 전에 이미 저장되어 있어야 한다.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from src.config.settings import Settings, settings as default_settings
from src.models.users import User
from src.services.notifications import notify_patient

logger = logging.getLogger(__name__)

VOICE = "Polly.Joanna"
LANGUAGE = "en-US"


class EscalationTrigger(str, enum.Enum):
    voice_idle = "voice-idle"          # 음성 알림 무응답 N회
    missed_streak = "missed-streak"    # 연속 미복용 N회
    manual = "manual"                  # 화면에서 직접 호출


@dataclass
class EscalationOutcome:
    success: bool
    trigger: EscalationTrigger
    needs_setup: bool = False
    not_configured: bool = False
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None   # masked
    call_id: Optional[str] = None
    call_status: Optional[str] = None
    error: Optional[str] = None
    provider_code: Optional[int] = None
    http_status: Optional[int] = None
    message: Optional[str] = None

    def as_guardian_alert(self) -> dict:
        """POST /medicines/dose-action 응답의 guardianAlert"""
        alert = {"triggered": True, "success": self.success}
        if self.call_id:
            alert["callId"] = self.call_id
        if self.error:
            alert["error"] = self.error
        if self.needs_setup:
            alert["needsSetup"] = True
        return alert


def normalize_e164(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    trimmed = phone.strip()
    digits = re.sub(r"\D", "", trimmed)
    if not digits:
        return None
    return f"+{digits}"


_MASK_RE = re.compile(r"^(\+\d{2})\d*(\d{4})$")


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """+821012345678 → +82****5678. 형식이 안 맞으면 전부 가림"""
    if not phone:
        return None
    normalized = normalize_e164(phone)
    m = _MASK_RE.match(normalized or "")
    if not m or len(normalized) < 8:
        return "****"
    return f"{m.group(1)}****{m.group(2)}"


_PHONE_RUN_RE = re.compile(r"\+?\d[\d\s-]{7,}\d")


def mask_phone_numbers(text: Optional[str]) -> Optional[str]:
    """문장 안의 전화번호(숫자 10자리 이상)를 mask_phone 형태로. 날짜 같은 짧은 숫자열은 그대로"""
    if not text:
        return text

    def _mask(m: re.Match) -> str:
        run = m.group(0)
        if len(re.sub(r"\D", "", run)) < 10:
            return run
        return mask_phone(run)

    return _PHONE_RUN_RE.sub(_mask, text)


def _mask_uid(uid: str) -> str:
    if not uid:
        return ""
    if len(uid) <= 10:
        return uid[:3] + "..."
    return uid[:6] + "..." + uid[-4:]


class CallPlacer(Protocol):
    def place_call(self, to: str, from_: str, twiml: str) -> Tuple[str, str]:
        ...


class TwilioCallPlacer:
    def __init__(self, account_sid: str, auth_token: str) -> None:
        self._client = Client(account_sid, auth_token)

    def place_call(self, to: str, from_: str, twiml: str) -> Tuple[str, str]:
        call = self._client.calls.create(twiml=twiml, to=to, from_=from_)
        return call.sid, call.status


def guardian_alert_twiml(guardian_name: str, patient_name: str, medicine_name: str, app_name: str) -> str:
    response = VoiceResponse()
    response.say(
        f"Hello {guardian_name}. This is an automated health alert from {app_name}.",
        voice=VOICE, language=LANGUAGE,
    )
    response.pause(length=1)
    response.say(
        f"Cause of this call: {patient_name} has not taken {medicine_name}. "
        "You need to look into this matter immediately.",
        voice=VOICE, language=LANGUAGE,
    )
    response.pause(length=1)
    response.say(
        f"Repeating the cause: {patient_name} has not taken {medicine_name}. Please check now. Thank you.",
        voice=VOICE, language=LANGUAGE,
    )
    return str(response)


def guardian_test_twiml(guardian_name: str, app_name: str) -> str:
    response = VoiceResponse()
    response.say(
        f"Hello {guardian_name}. This is a test call from {app_name} "
        "to verify guardian voice alerts are working.",
        voice=VOICE, language=LANGUAGE,
    )
    response.pause(length=1)
    response.say("No action is required. This was only a system test.", voice=VOICE, language=LANGUAGE)
    return str(response)


class EscalationDispatcher:
    def __init__(
        self,
        placer_factory: Optional[Callable[[Settings], CallPlacer]] = None,
        config: Optional[Settings] = None,
        notify: bool = True,
    ) -> None:
        self._config = config or default_settings
        self._placer_factory = placer_factory or (
            lambda cfg: TwilioCallPlacer(cfg.twilio_account_sid, cfg.twilio_auth_token)
        )
        self._notify = notify

    # ---------- 상태 ----------
    def status(self) -> dict:
        return {
            "configured": self._config.twilio_configured,
            "phoneNumber": mask_phone(self._config.twilio_phone_number),
        }

    # ---------- 보호자 호출 ----------
    def escalate(
        self,
        db: Session,
        owner_cognito_id: str,
        medicine_name: str,
        miss_count: int,
        trigger: EscalationTrigger,
        medicine_id: Optional[int] = None,
    ) -> EscalationOutcome:
        logger.warning(
            "[escalation] trigger=%s owner=%s medicine_id=%s medicine=%s miss_count=%d",
            trigger.value, _mask_uid(owner_cognito_id), medicine_id, medicine_name, miss_count,
        )

        user = db.get(User, owner_cognito_id)
        if user is None:
            return EscalationOutcome(False, trigger, error="User not found", http_status=404)

        guardian_name = user.emergency_contact_name or "Guardian"
        guardian_phone = normalize_e164(user.emergency_contact_phone)
        patient_name = user.name or "The patient"

        if not guardian_phone:
            outcome = EscalationOutcome(
                False, trigger,
                needs_setup=True,
                guardian_name=guardian_name,
                error="No emergency contact phone number configured. Please update profile.",
                http_status=400,
            )
            logger.warning("[escalation] needs_setup owner=%s", _mask_uid(owner_cognito_id))
            self._notify_outcome(db, owner_cognito_id, medicine_name, outcome)
            return outcome

        if not self._config.twilio_configured:
            outcome = EscalationOutcome(
                False, trigger,
                not_configured=True,
                guardian_name=guardian_name,
                guardian_phone=mask_phone(guardian_phone),
                error="Voice call service is not configured",
                http_status=500,
            )
            logger.error("[escalation] telephony not configured")
            self._notify_outcome(db, owner_cognito_id, medicine_name, outcome)
            return outcome

        twiml = guardian_alert_twiml(guardian_name, patient_name, medicine_name, self._config.app_display_name)
        outcome = self._place(
            trigger,
            to=guardian_phone,
            from_=normalize_e164(self._config.twilio_phone_number),
            twiml=twiml,
        )
        outcome.guardian_name = guardian_name
        outcome.guardian_phone = mask_phone(guardian_phone)
        if outcome.success:
            outcome.message = f"Voice alert call initiated to {guardian_name} ({outcome.guardian_phone})"
            logger.info(
                "[escalation] call initiated sid=%s to=%s medicine=%s miss_count=%d trigger=%s",
                outcome.call_id, outcome.guardian_phone, medicine_name, miss_count, trigger.value,
            )

        self._notify_outcome(db, owner_cognito_id, medicine_name, outcome)
        return outcome

    def test_call(self, db: Session, owner_cognito_id: str) -> Tuple[EscalationOutcome, Optional[str]]:
        """return (outcome, masked from-number)"""
        trigger = EscalationTrigger.manual
        user = db.get(User, owner_cognito_id)
        if user is None:
            return EscalationOutcome(False, trigger, error="User not found", http_status=404), None

        guardian_name = user.emergency_contact_name or "Guardian"
        guardian_phone = normalize_e164(user.emergency_contact_phone)
        if not guardian_phone:
            return EscalationOutcome(
                False, trigger, needs_setup=True,
                error="No emergency contact phone configured.", http_status=400,
            ), None

        from_phone = normalize_e164(self._config.twilio_phone_number)
        if not self._config.twilio_configured or not from_phone:
            return EscalationOutcome(
                False, trigger, not_configured=True,
                error="Twilio credentials are not configured.", http_status=500,
            ), None

        outcome = self._place(
            trigger, to=guardian_phone, from_=from_phone,
            twiml=guardian_test_twiml(guardian_name, self._config.app_display_name),
        )
        outcome.guardian_name = guardian_name
        outcome.guardian_phone = mask_phone(guardian_phone)
        if outcome.success:
            outcome.message = "Guardian test call initiated."
        return outcome, mask_phone(from_phone)

    # ---------- 내부 ----------
    def _place(self, trigger: EscalationTrigger, to: str, from_: str, twiml: str) -> EscalationOutcome:
        try:
            placer = self._placer_factory(self._config)
            call_id, call_status = placer.place_call(to=to, from_=from_, twiml=twiml)
            return EscalationOutcome(True, trigger, call_id=call_id, call_status=call_status)
        except TwilioRestException as e:
            # 사업자 오류 문구에 보호자 번호가 그대로 들어 있음 (예: 21211)
            error = mask_phone_numbers(e.msg) or "Failed to initiate guardian alert call"
            logger.error("[escalation] provider error code=%s status=%s msg=%s", e.code, e.status, error)
            return EscalationOutcome(
                False, trigger,
                error=error,
                provider_code=e.code,
                http_status=e.status or 500,
            )
        except Exception as e:
            logger.exception("[escalation] call failed")
            return EscalationOutcome(
                False, trigger,
                error=mask_phone_numbers(str(e)) or "Failed to initiate guardian alert call",
                http_status=500,
            )

    def _notify_outcome(self, db: Session, owner_cognito_id: str, medicine_name: str, outcome: EscalationOutcome) -> None:
        if not self._notify:
            return
        if outcome.success:
            title = "보호자 호출"
            text = f"{medicine_name} 미복용으로 {outcome.guardian_name}님께 전화를 걸었어요."
        elif outcome.needs_setup:
            title = "보호자 연락처 필요"
            text = f"{medicine_name} 미복용 알림을 보낼 보호자 번호가 없어요. 프로필에서 비상 연락처를 등록해 주세요."
        elif outcome.not_configured:
            title = "보호자 호출 불가"
            text = "전화 알림 서비스가 설정되지 않았어요. 관리자에게 문의해 주세요."
        else:
            title = "보호자 호출 실패"
            text = f"{medicine_name} 미복용 보호자 호출에 실패했어요. ({outcome.error})"

        notify_patient(
            db, owner_cognito_id, title, text,
            data={"type": "guardian_alert", "trigger": outcome.trigger.value, "success": outcome.success},
        )


dispatcher = EscalationDispatcher()


def get_dispatcher() -> EscalationDispatcher:
    return dispatcher
