import datetime as dt
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings


bearer_scheme = HTTPBearer(auto_error=True)

ROLES = ("rider", "driver")


@dataclass(frozen=True)
class Identity:
    id: str
    role: str = "rider"
    name: str | None = None

    @property
    def is_driver(self) -> bool:
        return self.role == "driver"


def create_access_token(user_id: str, role: str = "rider", name: str | None = None) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(minutes=settings.JWT_EXPIRES_MINUTES)).timestamp()),
    }
    if name:
        payload["name"] = name
    # Sign with current secret (first in list)
    return jwt.encode(payload, settings.JWT_SECRETS[0], algorithm="HS256")


def decode_token(token: str) -> Identity:
    """Verify against every configured secret (rotation) and build the identity."""
    payload = None
    last_err: Exception | None = None
    for sec in settings.JWT_SECRETS:
        try:
            payload = jwt.decode(token, sec, algorithms=["HS256"])
            break
        except jwt.ExpiredSignatureError:
            raise
        except jwt.InvalidTokenError as e:
            last_err = e
    if payload is None:
        raise last_err or jwt.InvalidTokenError("no secrets configured")
    user_id = payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("missing subject")
    role = (payload.get("role") or "rider").lower()
    if role not in ROLES:
        raise jwt.InvalidTokenError(f"unknown role {role!r}")
    return Identity(id=str(user_id), role=role, name=payload.get("name"))


def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Identity:
    try:
        return decode_token(creds.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_driver(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_driver:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Driver only")
    return identity


def require_rider(identity: Identity = Depends(get_current_identity)) -> Identity:
    if identity.role != "rider":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rider only")
    return identity
