"""Bearer session tokens: signed JWTs naming the caller and their roles."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "scc_session"


@dataclass(frozen=True)
class SessionClaims:
    subject: str
    email: Optional[str]
    roles: Tuple[str, ...]
    expires_at: int


def normalize_roles(roles: Optional[Iterable[Any]]) -> List[str]:
    """Lower-cased, de-duplicated role names in first-seen order."""
    seen: Dict[str, None] = {}
    for role in roles or []:
        name = str(role).strip().lower()
        if name:
            seen.setdefault(name, None)
    return list(seen)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    roles: Optional[Iterable[str]] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``; returns the token and its expiry."""
    subject = str(user_id or "").strip()
    if not subject:
        raise ValueError("Session token requires a subject.")

    issued_at = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((issued_at + timedelta(hours=ttl_hours)).timestamp())
    granted = normalize_roles(roles)

    claims: Dict[str, Any] = {
        "sub": subject,
        "type": SESSION_TOKEN_TYPE,
        "roles": granted,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
        "roles": granted,
    }


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type; raises ValueError on any failure."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    roles = payload.get("roles")
    return SessionClaims(
        subject=subject,
        email=str(payload.get("email") or "").strip() or None,
        roles=tuple(normalize_roles(roles if isinstance(roles, list) else [])),
        expires_at=int(payload.get("exp") or 0),
    )
