"""Signed bearer session tokens carrying the identity-provider user id."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "cg_session"
SESSION_TOKEN_ISSUER = "crystal-grimoire-api"


class SessionTokenError(ValueError):
    """Token is malformed, expired, or not a session token."""


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``; returns the token and its expiry."""
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iss": SESSION_TOKEN_ISSUER,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=SESSION_TOKEN_ISSUER,
        )
    except ExpiredSignatureError as exc:
        raise SessionTokenError("Session token expired.") from exc
    except JWTError as exc:
        raise SessionTokenError("Invalid session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")
    if not str(payload.get("sub") or "").strip():
        raise SessionTokenError("Session token missing subject.")
    return payload
