from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import JWT_ALGORITHM, JWT_SECRET

bearer_scheme = HTTPBearer(auto_error=False)

HOST_ROLES = {"host", "admin"}


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
        )

    request.state.user_sub = payload.get("sub")
    request.state.user_roles = payload.get("roles") or []
    return payload


def is_host(user: dict) -> bool:
    return bool(HOST_ROLES.intersection(user.get("roles") or []))


def create_token(sub: str, roles: list[str] | None = None, tenant_id: str | None = None) -> str:
    """Used by tests and local tooling."""
    claims = {"sub": sub, "roles": roles or []}
    if tenant_id:
        claims["tenant_id"] = tenant_id
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)
