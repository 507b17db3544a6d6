import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from src.auth import token_verifier
from src.config.settings import settings


@pytest.fixture
def signing_key(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key()))
    jwk["kid"] = "test-kid"
    monkeypatch.setattr(token_verifier, "get_jwks", lambda: {"keys": [jwk]})
    monkeypatch.setattr(settings, "cognito_region", "ap-northeast-2")
    monkeypatch.setattr(settings, "cognito_user_pool_id", "ap-northeast-2_TEST")
    monkeypatch.setattr(settings, "cognito_app_client_id", "client-123")
    return key


def _token(key, **claims):
    payload = {
        "sub": "a1b2c3d4-0000-4000-8000-patient00001",
        "iss": "https://cognito-idp.ap-northeast-2.amazonaws.com/ap-northeast-2_TEST",
        "exp": int(time.time()) + 300,
        "token_use": "access",
        "client_id": "client-123",
    }
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="RS256", headers={"kid": "test-kid"})


def test_valid_access_token(signing_key):
    payload = token_verifier.verify_cognito_access_token(_token(signing_key))
    assert payload["sub"] == "a1b2c3d4-0000-4000-8000-patient00001"


@pytest.mark.parametrize(
    "claims",
    [
        {"token_use": "id"},
        {"client_id": "other-client"},
        {"exp": int(time.time()) - 10},
        {"iss": "https://example.com"},
    ],
)
def test_rejected_tokens(signing_key, claims):
    assert token_verifier.verify_cognito_access_token(_token(signing_key, **claims)) is None


def test_garbage_token_is_rejected(signing_key):
    assert token_verifier.verify_cognito_access_token("not-a-jwt") is None
