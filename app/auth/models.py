# app/auth/models.py - AuthContext, SessionTokenPayload

from pydantic import BaseModel

ADMIN_ROLES = frozenset({"admin"})


class SessionTokenPayload(BaseModel):
    sub: str
    user_id: str
    role: str = "user"
    workspace_id: str | None = None
    type: str = "session"
    exp: int | None = None
    iat: int | None = None


class AuthContext(BaseModel):
    user_id: str
    role: str = "user"
    workspace_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def can_view(self, owner_user_id: str) -> bool:
        return self.is_admin or owner_user_id == self.user_id
