"""
Bearer-token authentication.

Tokens are issued elsewhere (OAuth login lives outside this service); here we
only sign tokens for tooling and tests and turn incoming ones into a
``Caller``. The role on the stored user row wins over the role in the token.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .errors import AuthenticationError, NotFound
from .models import Caller, Role
from .permissions import ensure_admin

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: int,
    role: Role,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {
        "sub": str(user_id),
        "role": Role(role).value,
        "iat": now,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> dict[str, Any]:
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired", {"error": "token_expired"})
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}", {"error": "invalid_token"})

    if payload.get("type") != "access" or not str(payload.get("sub", "")).isdigit():
        raise AuthenticationError("Invalid token", {"error": "invalid_token"})
    return payload


def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Caller:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication required")

    payload = decode_access_token(credentials.credentials)
    try:
        user = request.app.state.services.users.get_user(int(payload["sub"]))
    except NotFound:
        raise AuthenticationError("User no longer exists")
    return Caller(user_id=user.id, role=user.role)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    ensure_admin(caller)
    return caller
