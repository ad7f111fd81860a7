# app/auth/tokens.py - Session JWT helpers

from datetime import datetime, timedelta, timezone

import jwt

from app.auth.models import SessionTokenPayload
from app.config import get_settings


class JWTDecodeError(Exception):
    """Raised when a JWT cannot be decoded/validated."""


class InvalidJWTTypeError(Exception):
    """Raised when a JWT has a valid signature but unsupported type."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_session_jwt(
    *,
    user_id: str,
    role: str = "user",
    workspace_id: str | None = None,
    expires_in_hours: int = 24,
) -> str:
    """Issue a session JWT. Used by tests and local tooling; sign-in lives elsewhere."""
    settings = get_settings()
    now = _now_utc()
    payload = {
        "type": "session",
        "sub": user_id,
        "user_id": user_id,
        "role": role,
        "workspace_id": workspace_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=expires_in_hours)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_session_jwt(token: str) -> SessionTokenPayload:
    """
    Decode a session JWT.
    Raises InvalidJWTTypeError if token is valid JWT but wrong type.
    Raises JWTDecodeError for invalid/expired signatures and payloads.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.InvalidTokenError as exc:
        raise JWTDecodeError(str(exc)) from exc

    token_type = payload.get("type", "session")
    if token_type != "session":
        raise InvalidJWTTypeError(f"Unsupported JWT type: {token_type}")

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        raise JWTDecodeError("Missing JWT claim: user_id")
    return SessionTokenPayload(
        sub=payload.get("sub") or user_id,
        user_id=user_id,
        role=payload.get("role") or "user",
        workspace_id=payload.get("workspace_id"),
        type="session",
        exp=payload.get("exp"),
        iat=payload.get("iat"),
    )
