from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy.orm import Session
import os
from dotenv import load_dotenv

import models
from database import get_db

load_dotenv()
SECRET_KEY = os.getenv("SECRET_KEY", "change-this-in-production-minimum-32-chars!")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
SHARE_GRANT_EXPIRE_MINUTES = int(os.getenv("SHARE_GRANT_EXPIRE_MINUTES", "30"))

SHARE_GRANT_SCOPE = "share-access"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login")


def create_access_token(data: dict) -> str:
    """
    Creates a signed JWT for an owner session. Embeds: sub (username), exp (expiry).
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"exp": now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES), "iat": now})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def create_share_grant(share_token: str) -> str:
    """
    Short-lived proof that the share password was supplied in this session.
    Bound to one share token; it never bypasses revocation, expiry or the download cap.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": share_token,
        "scope": SHARE_GRANT_SCOPE,
        "iat": now,
        "exp": now + timedelta(minutes=SHARE_GRANT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_share_grant(grant: Optional[str], share_token: str) -> bool:
    if not grant:
        return False
    try:
        payload = decode_token(grant)
    except JWTError:
        return False
    return payload.get("scope") == SHARE_GRANT_SCOPE and payload.get("sub") == share_token


# ─── Request dependencies ─────────────────────────────────────────────────────

def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    exc = HTTPException(status_code=401, detail="Invalid or expired token")
    try:
        payload = decode_token(token)
    except JWTError:
        raise exc
    username = payload.get("sub")
    # share grants are signed with the same key but are not owner sessions
    if not username or payload.get("scope") == SHARE_GRANT_SCOPE:
        raise exc

    user = db.query(models.User).filter(models.User.username == username).first()
    if not user or not user.is_active:
        raise exc

    if user.locked_until and datetime.now(timezone.utc) < _as_utc(user.locked_until):
        raise HTTPException(status_code=423, detail="Account temporarily locked")

    return user


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
