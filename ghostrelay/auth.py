"""
Authentication module for JWT token management.

A token is issued when an identity proves possession of its signing key
by registering; its subject is the identity id.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from pydantic import BaseModel

from . import config


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    identity_id: str
    alias: str


def create_access_token(identity_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        identity_id: Identity the token authenticates
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": identity_id, "exp": expire}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def verify_token(token: str) -> Optional[str]:
    """
    Verify a JWT token and extract the identity id.

    Args:
        token: JWT token to verify

    Returns:
        Identity id if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")
