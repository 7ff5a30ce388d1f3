from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Header, HTTPException, status

from app.auth.jwt import JwtError, decode_jwt, jwt_http_exception
from app.config import allowed_roles_list, settings

ROLE_CUSTOMER = "CUSTOMER"
ROLE_RIDER = "RIDER"
ROLE_OPS = "OPS"
ROLE_ADMIN = "ADMIN"
BACKOFFICE_ROLES = (ROLE_OPS, ROLE_ADMIN)


@dataclass
class AuthContext:
    user_id: str
    role: str

    @property
    def is_backoffice(self) -> bool:
        return self.role in BACKOFFICE_ROLES


def auth_context_from_token(token: str) -> AuthContext:
    try:
        claims = decode_jwt(token, settings.jwt_secret)
    except JwtError as err:
        raise jwt_http_exception("Invalid JWT") from err

    role = claims.get("role")
    user_id = claims.get("sub")
    if role not in allowed_roles_list() or not isinstance(user_id, str) or not user_id:
        raise jwt_http_exception("Invalid JWT claims")
    return AuthContext(user_id=user_id, role=role)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.removeprefix("Bearer ").strip() or None


def get_auth_context(authorization: str | None = Header(default=None)) -> AuthContext:
    token = _bearer_token(authorization)
    if token is None:
        raise jwt_http_exception("Missing bearer token")
    return auth_context_from_token(token)


def get_optional_auth_context(
    authorization: str | None = Header(default=None),
) -> AuthContext | None:
    """Guest checkout is allowed; a token that is present must still be valid."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    return auth_context_from_token(token)


def require_roles(*roles: str) -> Callable[[AuthContext], AuthContext]:
    def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return auth

    return dependency


def ensure_self_or_backoffice(auth: AuthContext, user_id: str) -> None:
    if auth.user_id != user_id and not auth.is_backoffice:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
