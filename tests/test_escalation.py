import pytest
from sqlalchemy import select

from src.models.notification import Notification
from src.services.escalation import (
    EscalationDispatcher,
    EscalationTrigger,
    guardian_alert_twiml,
    mask_phone,
    mask_phone_numbers,
    normalize_e164,
)

from tests.conftest import telephony_settings, twilio_error


@pytest.mark.parametrize(
    "raw, masked",
    [
        ("+821012345678", "+82****5678"),
        ("+82 10-1234-5678", "+82****5678"),
        ("+15005550006", "+15****0006"),
        ("12345", "****"),
        (None, None),
        ("", None),
    ],
)
def test_mask_phone(raw, masked):
    assert mask_phone(raw) == masked


def test_normalize_e164_strips_formatting():
    assert normalize_e164(" +82 (10) 1234-5678 ") == "+821012345678"
    assert normalize_e164("---") is None


def test_alert_twiml_names_patient_and_medicine():
    twiml = guardian_alert_twiml("Kim Jiyoung", "Kim Minsu", "Metformin", "Vital AI")
    assert twiml.startswith("<?xml")
    assert 'voice="Polly.Joanna"' in twiml
    assert "Kim Minsu has not taken Metformin" in twiml
    assert twiml.count("<Say") == 3


def test_escalate_places_call_with_masked_result(db, user, dispatcher, placer):
    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 5, EscalationTrigger.missed_streak)

    assert outcome.success
    assert outcome.call_id == "CA0001"
    assert outcome.guardian_phone == "+82****5678"
    assert outcome.guardian_name == "Kim Jiyoung"
    assert "+82****5678" in outcome.message
    assert placer.calls[0]["to"] == "+821012345678"
    assert placer.calls[0]["from"] == "+15005550006"

    notices = db.execute(select(Notification)).scalars().all()
    assert [n.title for n in notices] == ["보호자 호출"]


def test_escalate_without_guardian_phone_needs_setup(db, user, dispatcher, placer):
    user.emergency_contact_phone = None
    db.commit()

    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 2, EscalationTrigger.voice_idle)

    assert not outcome.success
    assert outcome.needs_setup
    assert outcome.http_status == 400
    assert placer.calls == []
    assert outcome.as_guardian_alert() == {
        "triggered": True,
        "success": False,
        "error": outcome.error,
        "needsSetup": True,
    }


def test_escalate_without_telephony_config(db, user, placer):
    dispatcher = EscalationDispatcher(
        placer_factory=lambda cfg: placer,
        config=telephony_settings(twilio_auth_token=None),
    )
    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 5, EscalationTrigger.manual)

    assert not outcome.success
    assert outcome.not_configured
    assert outcome.http_status == 500
    assert outcome.guardian_phone == "+82****5678"
    assert placer.calls == []


def test_provider_error_is_reported_not_raised(db, user, dispatcher, placer):
    placer.error = twilio_error(code=21211, status=400)

    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 5, EscalationTrigger.missed_streak)

    assert not outcome.success
    assert outcome.provider_code == 21211
    assert outcome.http_status == 400
    assert outcome.error == "Invalid 'To' Phone Number"
    assert outcome.guardian_phone == "+82****5678"
    titles = [n.title for n in db.execute(select(Notification)).scalars().all()]
    assert titles == ["보호자 호출 실패"]


def test_provider_error_text_masks_guardian_number(db, user, dispatcher, placer):
    placer.error = twilio_error(msg="The 'To' number +821012345678 is not a valid phone number.")

    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 5, EscalationTrigger.missed_streak)

    assert outcome.error == "The 'To' number +82****5678 is not a valid phone number."
    assert "+821012345678" not in str(outcome.as_guardian_alert())
    notice = db.execute(select(Notification)).scalars().one()
    assert "+82****5678" in notice.text
    assert "1012345678" not in notice.text


@pytest.mark.parametrize(
    "text, masked",
    [
        ("Call to +82 10-1234-5678 failed", "Call to +82****5678 failed"),
        ("dial 01012345678 rejected", "dial +01****5678 rejected"),
        ("Unable to create record on 2026-03-02", "Unable to create record on 2026-03-02"),
        ("error 21211", "error 21211"),
        (None, None),
    ],
)
def test_mask_phone_numbers_in_text(text, masked):
    assert mask_phone_numbers(text) == masked


def test_unexpected_placer_error_is_reported(db, user, dispatcher, placer):
    placer.error = RuntimeError("connection reset")
    outcome = dispatcher.escalate(db, user.cognito_id, "Metformin", 5, EscalationTrigger.manual)
    assert not outcome.success
    assert outcome.error == "connection reset"
    assert outcome.http_status == 500


def test_test_call_returns_masked_numbers(db, user, dispatcher, placer):
    outcome, from_masked = dispatcher.test_call(db, user.cognito_id)

    assert outcome.success
    assert outcome.guardian_phone == "+82****5678"
    assert from_masked == "+15****0006"
    assert "test call" in placer.calls[0]["twiml"]


def test_status_masks_service_number(dispatcher):
    assert dispatcher.status() == {"configured": True, "phoneNumber": "+15****0006"}
