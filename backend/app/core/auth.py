import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class CurrentUser:
    """Authenticated caller. ``id`` is the account email, which keys entitlements."""

    id: str
    email: str
    name: Optional[str] = None


def _decode_options(settings):
    audience = (settings.session_jwt_audience or "").strip()
    decode_kwargs = {}
    options = {"require": ["exp"]}
    if audience:
        decode_kwargs["audience"] = audience
        options["verify_aud"] = True
    else:
        options["verify_aud"] = False
    return decode_kwargs, options


def decode_session_token(token: str) -> dict:
    settings = get_settings()
    if not settings.session_jwt_secret:
        raise HTTPException(500, "SESSION_JWT_SECRET is not configured")

    decode_kwargs, options = _decode_options(settings)
    try:
        return jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError as exc:
        logger.debug("Session token rejected: %s", exc)
        raise HTTPException(401, "Unauthorized") from None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Unauthorized")

    token = authorization.split(" ", 1)[1].strip()
    payload = decode_session_token(token)

    email = str(payload.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(401, "Unauthorized")

    return CurrentUser(id=email, email=email, name=payload.get("name"))
