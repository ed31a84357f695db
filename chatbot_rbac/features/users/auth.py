"""
Authentication utilities for bearer JWT verification.

Tokens are issued by the identity service and signed with the shared
``JWT_SECRET``; the ``sub`` claim is the local user id.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import jwt
from fastapi import HTTPException, status

from chatbot_rbac.core import config


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer JWT and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["sub"], "verify_exp": True},
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_access_token(
    user_id: str,
    expires_in: Optional[timedelta] = timedelta(hours=1),
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """Issue a token for a local user (used by scripts and tests)."""
    payload: Dict[str, Any] = {"sub": user_id, "iat": datetime.now(timezone.utc)}
    if expires_in is not None:
        payload["exp"] = datetime.now(timezone.utc) + expires_in
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
