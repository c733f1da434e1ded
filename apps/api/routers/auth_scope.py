"""Authentication dependencies for dashboard operator sessions."""

from dataclasses import dataclass, field
from typing import Callable, List

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    operator_id: str
    scopes: List[str] = field(default_factory=list)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the operator from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        operator_id=str(payload.get("sub", "")),
        scopes=[str(scope) for scope in payload.get("scopes", [])],
    )


def require_scope(scope: str) -> Callable:
    """Return a dependency that rejects sessions missing `scope`."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if scope not in auth.scopes:
            raise HTTPException(status_code=403, detail=f"Session is missing the '{scope}' scope.")
        return auth

    return _dependency
