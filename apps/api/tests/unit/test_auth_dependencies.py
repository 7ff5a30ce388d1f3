import pytest
from fastapi import HTTPException

from app.auth.dependencies import (
    AuthContext,
    ensure_self_or_backoffice,
    get_auth_context,
    get_optional_auth_context,
    require_roles,
)
from app.auth.jwt import JwtError, decode_jwt, issue_jwt
from app.config import settings


def _bearer(sub: str = "user-1", role: str = "CUSTOMER", **kwargs) -> str:
    return f"Bearer {issue_jwt(sub, role, settings.jwt_secret, **kwargs)}"


def test_get_auth_context_requires_bearer():
    with pytest.raises(HTTPException) as exc_info:
        get_auth_context(None)

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Missing bearer token"
    assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}


def test_get_auth_context_reads_subject_and_role():
    auth = get_auth_context(_bearer("rider-7", "RIDER"))

    assert auth == AuthContext(user_id="rider-7", role="RIDER")
    assert auth.is_backoffice is False


def test_token_signed_with_another_secret_is_rejected():
    token = issue_jwt("user-1", "CUSTOMER", "some-other-secret")

    with pytest.raises(HTTPException) as exc_info:
        get_auth_context(f"Bearer {token}")

    assert exc_info.value.detail == "Invalid JWT"


def test_expired_token_is_rejected():
    with pytest.raises(JwtError, match="Expired"):
        decode_jwt(issue_jwt("user-1", "CUSTOMER", "s", expires_in_s=-10), "s")


def test_unknown_role_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        get_auth_context(_bearer(role="MERCHANT"))

    assert exc_info.value.detail == "Invalid JWT claims"


def test_optional_context_allows_guests_but_not_bad_tokens():
    assert get_optional_auth_context(None) is None

    with pytest.raises(HTTPException):
        get_optional_auth_context("Bearer not.a.jwt")


def test_require_roles_rejects_other_roles():
    dependency = require_roles("OPS", "ADMIN")

    assert dependency(AuthContext(user_id="ops-1", role="OPS")).user_id == "ops-1"
    with pytest.raises(HTTPException) as exc_info:
        dependency(AuthContext(user_id="user-1", role="CUSTOMER"))

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Insufficient role"


def test_self_or_backoffice_guard():
    ensure_self_or_backoffice(AuthContext(user_id="user-1", role="CUSTOMER"), "user-1")
    ensure_self_or_backoffice(AuthContext(user_id="admin-1", role="ADMIN"), "user-1")

    with pytest.raises(HTTPException) as exc_info:
        ensure_self_or_backoffice(AuthContext(user_id="user-2", role="CUSTOMER"), "user-1")

    assert exc_info.value.status_code == 403
