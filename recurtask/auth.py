from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import SecuritySettings
from .db import get_db
from .models import User


logger = logging.getLogger("recurtask.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(*, user: User, security: SecuritySettings) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=int(security.token_minutes))
    to_encode = {
        "sub": str(int(user.id)),
        "username": user.username,
        "exp": expire,
    }
    return jwt.encode(to_encode, security.jwt_secret, algorithm="HS256")


def _decode_token(token: str, security: SecuritySettings) -> dict:
    return jwt.decode(token, security.jwt_secret, algorithms=["HS256"])


def get_current_user_api(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the calling account from a bearer token.

    Issuing tokens is the session layer's job (see `recurtask issue-token`).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not credentials.credentials:
        raise credentials_exception

    try:
        payload = _decode_token(credentials.credentials, request.app.state.settings.security)
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise credentials_exception

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise credentials_exception
    return user
