# src/config/settings.py
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    cognito_jwks_url: str = ""

    # DATABASE_URL이 있으면 그걸 우선 사용 (로컬/테스트는 sqlite)
    database_url: Optional[str] = None
    db_user: Optional[str] = None
    db_pass: Optional[str] = None
    db_host: str = "localhost"
    db_port: Optional[int] = None
    db_name: Optional[str] = None

    # 보호자 전화 알림 (Twilio)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    app_display_name: str = "Vital AI"

    firebase_key_path: str = "firebase-key.json"
    timezone: str = "Asia/Seoul"

    # 리마인더 엔진 값 (초/분 단위)
    sweep_interval_seconds: int = 15
    no_response_timeout_seconds: float = 60
    speech_ack_timeout_seconds: float = 20
    snooze_minutes: int = 5
    idle_miss_threshold: int = 2
    missed_streak_threshold: int = 5
    due_soon_lead_minutes: int = 15
    missed_grace_minutes: int = 30

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

settings = Settings()
