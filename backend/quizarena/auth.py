"""JWT identity helpers for the real-time channel and the admin routes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

import jwt
from jwt import InvalidTokenError
from pydantic import BaseModel

from .db import Settings, settings as default_settings

Role = Literal["player", "admin"]


class AuthError(Exception):
    pass


class AuthUser(BaseModel):
    user_id: str
    username: str
    avatar: Optional[str] = None
    role: Role = "player"


class AuthService:
    def __init__(self, config: Settings | None = None):
        config = config or default_settings
        self._secret = config.JWT_SECRET
        self._algorithm = config.JWT_ALGORITHM

    def issue_token(
        self,
        user_id: str,
        username: str,
        role: Role = "player",
        avatar: str | None = None,
        expires_in: timedelta = timedelta(days=7),
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "name": username,
            "avatar": avatar,
            "role": role,
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify_user(self, token: str | None) -> AuthUser:
        if not token:
            raise AuthError("Missing token")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except InvalidTokenError as exc:
            raise AuthError("Invalid token") from exc

        user_id = claims.get("sub")
        if not user_id:
            raise AuthError("Token has no subject")
        role = claims.get("role") if claims.get("role") in ("player", "admin") else "player"
        return AuthUser(
            user_id=str(user_id),
            username=claims.get("name") or str(user_id),
            avatar=claims.get("avatar"),
            role=role,
        )

    def has_admin_privilege(self, user: AuthUser) -> bool:
        return user.role == "admin"

    def can_create_sessions(self, user: AuthUser) -> bool:
        return self.has_admin_privilege(user)
