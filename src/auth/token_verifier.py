# src/auth/token_verifier.py
import json
import logging
import time
from typing import Optional

import jwt
import requests
from jwt.algorithms import RSAAlgorithm

from src.config.settings import settings

logger = logging.getLogger(__name__)

# JWKS는 처음 필요할 때 받아서 1시간 캐싱
_jwks_cache = {
    "keys": None,
    "expires_at": 0.0,
}
JWKS_TTL_SECONDS = 60 * 60


def _issuer() -> str:
    return f"https://cognito-idp.{settings.cognito_region}.amazonaws.com/{settings.cognito_user_pool_id}"


def get_jwks() -> dict:
    now = time.time()
    if _jwks_cache["keys"] and now < _jwks_cache["expires_at"]:
        return _jwks_cache["keys"]

    res = requests.get(settings.cognito_jwks_url, timeout=5)
    res.raise_for_status()
    _jwks_cache["keys"] = res.json()
    _jwks_cache["expires_at"] = now + JWKS_TTL_SECONDS
    return _jwks_cache["keys"]


def public_key_for(token: str):
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = next((k for k in get_jwks().get("keys", []) if k.get("kid") == kid), None)
    if not key:
        return None
    return RSAAlgorithm.from_jwk(json.dumps(key))


def verify_cognito_access_token(token: str) -> Optional[dict]:
    """
    Access 토큰 검증:
    - RS256 서명 / iss / exp
    - audience 미검증(options.verify_aud=False)
    - token_use == "access"
    - client_id == 앱 클라 ID
    실패 시 None
    """
    try:
        public_key = public_key_for(token)
        if public_key is None:
            return None
        payload = jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            options={"verify_aud": False},
            issuer=_issuer(),
        )
    except (jwt.PyJWTError, requests.RequestException) as e:
        logger.info("[auth] access token rejected: %s", e.__class__.__name__)
        return None
    if payload.get("token_use") != "access":
        return None
    if payload.get("client_id") != settings.cognito_app_client_id:
        return None
    return payload
