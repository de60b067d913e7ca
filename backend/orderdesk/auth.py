from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import AuthConfig

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class StaffSession:
    is_authenticated: bool
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> Optional[str]:
        return self.claims.get("sub")


def decode_staff_token(token: str, config: AuthConfig) -> Dict[str, Any]:
    return jwt.decode(
        token,
        config.jwt_secret,
        algorithms=config.algorithms,
        audience=config.audience,
        issuer=config.issuer,
        options={"verify_aud": config.audience is not None},
    )


async def get_staff_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> StaffSession:
    cred_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="invalid token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not credentials.credentials:
        raise cred_exc
    try:
        claims = decode_staff_token(credentials.credentials, request.app.state.settings.auth)
    except JWTError:
        raise cred_exc
    return StaffSession(is_authenticated=True, claims=claims)
