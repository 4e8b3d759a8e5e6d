from __future__ import annotations

import secrets
from typing import Any, Dict

from jose import JWTError, jwt

from studio_jobs.config import settings


def _strip_bearer(auth: str) -> str:
    s = (auth or "").strip()
    if not s:
        return ""
    if s.lower().startswith("bearer "):
        return s[7:].strip()
    return s


def _service_claims() -> Dict[str, Any]:
    return {
        "sub": "studio-internal",
        "token_type": "service",
        "is_service": True,
    }


def decode_access_jwt(token: str) -> Dict[str, Any]:
    """
    Accepts either a user access JWT or the service-to-service bearer secret.

    Input may be the raw token or 'Bearer <token>'.
    """
    raw = _strip_bearer(token)

    if settings.SVC_TO_SVC_BEARER:
        svc_raw = _strip_bearer(settings.SVC_TO_SVC_BEARER)
        if raw and svc_raw and secrets.compare_digest(raw, svc_raw):
            return _service_claims()

    if not settings.JWT_SECRET:
        raise ValueError("invalid_token: JWT_SECRET not set")

    try:
        kwargs: Dict[str, Any] = {"algorithms": [settings.JWT_ALG]}
        if settings.JWT_AUDIENCE:
            kwargs["audience"] = settings.JWT_AUDIENCE
        if settings.JWT_ISSUER:
            kwargs["issuer"] = settings.JWT_ISSUER
        return jwt.decode(raw, settings.JWT_SECRET, **kwargs)
    except JWTError as e:
        raise ValueError(f"invalid_token: {e}") from e
