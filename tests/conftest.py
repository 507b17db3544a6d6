import asyncio
import datetime as dt
import os

# src.db.database가 import 시점에 엔진을 만들기 때문에 가장 먼저 설정
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FIREBASE_KEY_PATH"] = "__missing_firebase_key__.json"

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from twilio.base.exceptions import TwilioRestException

import src.models  # noqa: F401
from src.config.settings import Settings
from src.db.database import Base
from src.models.medicine import Medicine
from src.models.users import User
from src.services.escalation import EscalationDispatcher
from src.services.voice import TranscriptEvent, VoiceChannel, VoiceUnavailable

NOW = dt.datetime(2026, 3, 2, 9, 0)


async def settle(rounds: int = 20) -> None:
    """이벤트 루프를 몇 바퀴 돌려 백그라운드 태스크를 진행시킴"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> dt.datetime:
        self.now = self.now + dt.timedelta(minutes=minutes, seconds=seconds)
        return self.now


class FakeVoiceChannel(VoiceChannel):
    def __init__(self) -> None:
        self.spoken = []
        self.events = []
        self.listening = False
        self.unavailable = None
        self._queue = None

    async def speak(self, text: str) -> None:
        self.spoken.append(text)

    async def start_listening(self):
        if self.unavailable:
            raise VoiceUnavailable(self.unavailable)
        queue = asyncio.Queue()
        self._queue = queue
        self.listening = True
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, VoiceUnavailable):
                    raise item
                yield item
        finally:
            self.listening = False
            if self._queue is queue:
                self._queue = None

    async def stop_listening(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None

    async def publish(self, event: dict) -> None:
        self.events.append(event)

    def say(self, text: str, final: bool = True) -> None:
        assert self._queue is not None, "not listening"
        self._queue.put_nowait(TranscriptEvent(text=text, final=final))

    def fail(self, code: str) -> None:
        self._queue.put_nowait(VoiceUnavailable(code))


class FakeCallPlacer:
    def __init__(self) -> None:
        self.calls = []
        self.error = None

    def place_call(self, to: str, from_: str, twiml: str):
        self.calls.append({"to": to, "from": from_, "twiml": twiml})
        if self.error is not None:
            raise self.error
        return f"CA{len(self.calls):04d}", "queued"


def twilio_error(code: int = 21211, status: int = 400, msg: str = "Invalid 'To' Phone Number"):
    return TwilioRestException(status, "/2010-04-01/Accounts/AC123/Calls.json", msg=msg, code=code)


def telephony_settings(**overrides) -> Settings:
    values = dict(
        twilio_account_sid="ACtest0000",
        twilio_auth_token="secret-token",
        twilio_phone_number="+15005550006",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------- DB ----------
@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    row = User(
        cognito_id="a1b2c3d4-0000-4000-8000-patient00001",
        name="Kim Minsu",
        phone_number="+821099998888",
        emergency_contact_name="Kim Jiyoung",
        emergency_contact_phone="+82 10-1234-5678",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def make_medicine(db, user):
    def _make(name="Metformin", dosage="500mg", times=("09:00",), **kwargs):
        values = dict(
            owner_cognito_id=user.cognito_id,
            name=name,
            dosage=dosage,
            frequency="daily",
            times=list(times),
            instruction="",
            is_active=True,
            total_quantity=30,
            remaining_quantity=30,
            missed_streak_count=0,
        )
        values.update(kwargs)
        row = Medicine(**values)
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _make


# ---------- fakes ----------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def voice():
    return FakeVoiceChannel()


@pytest.fixture
def placer():
    return FakeCallPlacer()


@pytest.fixture
def dispatcher(placer):
    return EscalationDispatcher(placer_factory=lambda cfg: placer, config=telephony_settings())


# ---------- API ----------
@pytest.fixture
def client(session_factory, user, clock, dispatcher):
    from src.auth.dependencies import get_current_user
    from src.db.database import get_db, get_session_factory
    from src.main import app
    from src.services.dose_status import get_clock
    from src.services.escalation import get_dispatcher

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    user_id = user.cognito_id

    def _current_user(db=Depends(_get_db)):
        return db.get(User, user_id)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = _current_user
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    # lifespan(스케줄러)은 띄우지 않음
    yield TestClient(app)

    app.dependency_overrides.clear()
