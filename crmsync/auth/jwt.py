"""
JWT token creation and validation.
Uses python-jose for JWT handling.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from crmsync.config import get_settings


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode (``sub`` is the application user id)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    settings = get_settings()
    to_encode = data.copy()

    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expiration_minutes))
    to_encode.update({"exp": expire, "iat": now, "type": "access"})

    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_state_token(user_id: str, expires_minutes: int = 15) -> str:
    """Signed OAuth ``state`` binding the Xero callback to a user."""
    settings = get_settings()
    now = datetime.utcnow()
    payload = {
        "sub": user_id,
        "type": "oauth_state",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, expected_type: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise JWTError(f"Token validation failed: {str(e)}")

    if payload.get("type") != expected_type:
        raise JWTError("Invalid token type")
    return payload


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.

    Raises:
        JWTError: If token is invalid or expired
    """
    return _decode(token, "access")


def decode_state_token(token: str) -> str:
    """
    Return the user id carried by an OAuth state token.

    Raises:
        JWTError: If the state is forged, expired or has no subject
    """
    payload = _decode(token, "oauth_state")
    user_id = payload.get("sub")
    if not user_id:
        raise JWTError("State token has no subject")
    return user_id
