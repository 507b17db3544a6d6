from __future__ import annotations

import datetime as dt
import re
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.models.dose_log import DoseAction
from src.models.medicine import MedicineKind, MedicineSource

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _check_hhmm(value: str) -> str:
    value = value.strip()
    if not _HHMM.match(value):
        raise ValueError("시간은 HH:MM 형식이어야 합니다.")
    return value


class CamelModel(BaseModel):
    # 프론트는 camelCase (medicineId, scheduledTime ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------- 약 등록/조회 ----------
class CreateMedicine(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    dosage: str = Field(min_length=1, max_length=60)
    frequency: str = Field(min_length=1, max_length=60)
    times: List[str] = Field(min_length=1)
    instruction: str = ""
    kind: MedicineKind = Field(default=MedicineKind.medicine, alias="type")
    source: MedicineSource = MedicineSource.manual
    total_quantity: Optional[int] = Field(default=None, gt=0)

    @field_validator("times")
    @classmethod
    def times_are_hhmm(cls, v: List[str]) -> List[str]:
        cleaned = [_check_hhmm(t) for t in v]
        # 순서 유지 + 중복 제거
        return list(dict.fromkeys(cleaned))


class CreateMedicines(CamelModel):
    medicines: List[CreateMedicine] = Field(min_length=1)


class SlotItem(CamelModel):
    scheduled_time: str
    status: str
    effective_at: dt.datetime
    action: Optional[DoseAction] = None


class MedicineItem(CamelModel):
    id: int
    name: str
    dosage: str
    frequency: str
    instruction: str
    kind: MedicineKind = Field(alias="type")
    source: MedicineSource
    times: List[str]
    is_active: bool
    total_quantity: int
    remaining_quantity: int
    missed_streak_count: int
    status: Optional[str] = None
    slots: List[SlotItem] = []
    created_at: Optional[dt.datetime] = None


class ResponseMedicines(CamelModel):
    success: bool = True
    count: int
    data: List[MedicineItem]


# ---------- 복용 기록 ----------
class DoseLogItem(CamelModel):
    id: int = Field(validation_alias=AliasChoices("dose_log_id", "id"))
    medicine_id: int
    user_id: str = Field(validation_alias=AliasChoices("owner_cognito_id", "userId"))
    scheduled_date: dt.date
    scheduled_time: str
    action: DoseAction
    action_at: dt.datetime
    snoozed_until: Optional[dt.datetime] = None


class DoseActionReq(CamelModel):
    medicine_id: int
    action: DoseAction
    scheduled_time: str
    snooze_minutes: Optional[int] = Field(default=None, gt=0, le=120)

    @field_validator("scheduled_time")
    @classmethod
    def scheduled_time_is_hhmm(cls, v: str) -> str:
        return _check_hhmm(v)


class GuardianAlert(CamelModel):
    triggered: bool
    success: bool
    call_id: Optional[str] = None
    error: Optional[str] = None
    needs_setup: Optional[bool] = None


class DoseActionRes(CamelModel):
    success: bool = True
    dose_log: DoseLogItem
    missed_streak_count: int
    guardian_alert: Optional[GuardianAlert] = None


class ResponseDoseLogs(CamelModel):
    success: bool = True
    data: List[DoseLogItem]


# ---------- 오늘 진행률 / 재고 ----------
class DailyProgress(CamelModel):
    taken: int
    missed: int
    snoozed: int
    pending: int
    total: int


class LowStockItem(CamelModel):
    medicine_id: int
    name: str
    days_left: int
    percent_left: int


# ---------- 보호자 호출 ----------
class AlertGuardianReq(CamelModel):
    medicine_name: str = Field(min_length=1)
    missed_count: int = Field(default=0, ge=0)


class AlertGuardianRes(CamelModel):
    success: bool
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None
    call_id: Optional[str] = None
    call_status: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    needs_setup: Optional[bool] = None
    provider_code: Optional[int] = None


class GuardianTestCallRes(CamelModel):
    success: bool
    call_id: Optional[str] = None
    call_status: Optional[str] = None
    message: Optional[str] = None
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    error: Optional[str] = None
    needs_setup: Optional[bool] = None
    provider_code: Optional[int] = None


class TelephonyStatus(CamelModel):
    configured: bool
    phone_number: Optional[str] = None


# ---------- 음성 리마인더 세션 ----------
class ResolveSessionReq(CamelModel):
    medicine_id: int
    scheduled_time: str
    action: DoseAction

    @field_validator("scheduled_time")
    @classmethod
    def scheduled_time_is_hhmm(cls, v: str) -> str:
        return _check_hhmm(v)

    @field_validator("action")
    @classmethod
    def only_taken_or_snoozed(cls, v: DoseAction) -> DoseAction:
        if v not in (DoseAction.taken, DoseAction.snoozed):
            raise ValueError("action은 taken 또는 snoozed만 가능합니다.")
        return v
