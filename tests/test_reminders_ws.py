import pytest
from sqlalchemy import select
from starlette.websockets import WebSocketDisconnect

from src.models.dose_log import DoseAction, DoseLog
from src.models.users import User
from src.routers import reminders
from src.services.reminder_hub import hub


def _receive_until(ws, kind):
    seen = []
    while True:
        message = ws.receive_json()
        seen.append(message)
        if message["type"] == kind:
            return message, seen


def test_voice_channel_round_trip(client, monkeypatch, db, user, make_medicine):
    med = make_medicine(times=["09:00"])
    user_id = user.cognito_id
    monkeypatch.setattr(reminders, "user_from_access_token", lambda session, token: session.get(User, user_id))

    with client.websocket_connect("/reminders/voice?token=test-token") as ws:
        alert, _ = _receive_until(ws, "alert")
        assert alert["session"]["medicineId"] == med.medicine_id

        speak, _ = _receive_until(ws, "speak")
        assert "Metformin" in speak["text"]
        ws.send_json({"type": "speech_end", "id": speak["id"]})

        _receive_until(ws, "listen")
        assert hub.get(user_id) is not None
        ws.send_json({"type": "transcript", "text": "I took it", "final": True})

        closed, seen = _receive_until(ws, "alert_closed")
        assert closed["outcome"] == "taken"
        assert closed["guardianAlert"] is None
        assert "listen_stop" in [m["type"] for m in seen]

    assert hub.get(user_id) is None
    db.expire_all()
    log = db.execute(select(DoseLog).where(DoseLog.medicine_id == med.medicine_id)).scalars().one()
    assert log.action == DoseAction.taken


def test_voice_channel_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/reminders/voice") as ws:
            ws.receive_json()
    assert exc.value.code == 1008


def test_action_button_resolves_open_session(client, monkeypatch, db, user, make_medicine):
    med = make_medicine(times=["09:00"])
    user_id = user.cognito_id
    monkeypatch.setattr(reminders, "user_from_access_token", lambda session, token: session.get(User, user_id))

    with client.websocket_connect("/reminders/voice?token=test-token") as ws:
        _receive_until(ws, "speak")
        ws.send_json({"type": "action", "action": "snoozed"})
        closed, _ = _receive_until(ws, "alert_closed")
        assert closed["outcome"] == "snoozed"
        assert closed["session"]["medicineId"] == med.medicine_id

    db.expire_all()
    log = db.execute(select(DoseLog).where(DoseLog.medicine_id == med.medicine_id)).scalars().one()
    assert log.action == DoseAction.snoozed
    assert log.snoozed_until is not None
