# app/auth/dependencies.py - get_current_auth -> AuthContext

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.auth.models import AuthContext
from app.auth.tokens import InvalidJWTTypeError, JWTDecodeError, decode_session_jwt

security = HTTPBearer(auto_error=False)


async def get_current_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthContext:
    """Resolve the caller from a bearer session JWT."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
        )

    try:
        payload = decode_session_jwt(credentials.credentials)
    except InvalidJWTTypeError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid JWT type for session endpoints",
        )
    except JWTDecodeError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    return AuthContext(
        user_id=payload.user_id,
        role=payload.role,
        workspace_id=payload.workspace_id,
    )
