from datetime import datetime, timedelta
from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# JWT Configuration. Tokens are issued by the external identity service;
# this backend only verifies them.
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = 30

ROLES = ("Admin", "AccountManager", "HOF")

# HTTP Bearer for token extraction
security = HTTPBearer()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, secret_key: Optional[str] = None) -> str:
    """
    Create JWT access token.
    Used by tests and local tooling to mint actor tokens.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, secret_key or SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: Optional[str] = None) -> dict:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, secret_key or SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """
    Extract the actor from the bearer token.

    Returns:
        {"user_id", "email", "role"}
    """
    payload = decode_access_token(credentials.credentials)

    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )
    if payload.get("role") not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {payload.get('role')}"
        )

    return {
        "user_id": str(user_id),
        "email": payload.get("email"),
        "role": payload["role"]
    }
