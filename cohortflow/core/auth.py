"""
Identity collaborator: resolves an HS256 bearer token to the calling learner
and whether they administer cohorts.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from cohortflow.core.config import settings

ADMIN_ROLE = "admin"
LEARNER_ROLE = "learner"

class Identity(BaseModel):
    learner_id: str
    is_admin: bool = False

bearer = HTTPBearer()

def issue_token(learner_id: str, is_admin: bool = False, ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    roles: List[str] = [ADMIN_ROLE] if is_admin else [LEARNER_ROLE]
    payload = {"sub": learner_id, "roles": roles, "iat": int(now.timestamp()),
               "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

def decode_identity(token: str) -> Identity:
    try:
        claims = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM],
                            options={"require": ["sub", "exp"]})
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return Identity(learner_id=claims["sub"], is_admin=ADMIN_ROLE in claims.get("roles", []))

def current_identity(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> Identity:
    return decode_identity(creds.credentials)

def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return identity
