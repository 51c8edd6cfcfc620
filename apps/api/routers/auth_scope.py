"""Bearer authentication dependency resolving the calling uploader."""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import SessionClaims, decode_session_token, normalize_roles


auth_scheme = HTTPBearer(auto_error=False)
_CHALLENGE = {"WWW-Authenticate": "Bearer"}


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "AuthContext":
        return cls(user_id=claims.subject, email=claims.email, roles=list(claims.roles))

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return not set(normalize_roles(roles)).isdisjoint(self.roles)


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from the Bearer session token; 401 when absent or invalid."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.", headers=_CHALLENGE)

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers=_CHALLENGE) from exc

    return AuthContext.from_claims(claims)
