"""Bearer-token authentication for per-user metering."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import SessionTokenError, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
_CHALLENGE = {"WWW-Authenticate": "Bearer"}


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Metering state is only ever read or written for the caller's own user id."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authentication required.", headers=_CHALLENGE)

    try:
        payload = decode_session_token(credentials.credentials)
    except SessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers=_CHALLENGE) from exc

    return AuthContext(
        user_id=str(payload["sub"]).strip(),
        email=payload.get("email") or None,
    )
