from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from pool_gateway.errors import GatewayError
from pool_gateway.models import User
from pool_gateway.settings import Settings
from pool_gateway.storage.base import UserStore


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str
    user: User | None = None

    @property
    def is_admin(self) -> bool:
        return self.method == "admin_key"


class AdminRequired(GatewayError):
    status_code = 403
    error_type = "permission_error"
    code = "admin_required"


class UserRequired(GatewayError):
    status_code = 403
    error_type = "permission_error"
    code = "user_required"


class Authenticator:
    """Resolves the bearer token to the admin scope or to an enabled user."""

    def __init__(self, settings: Settings, users: UserStore):
        self.admin_api_key = (settings.admin_api_key or "").strip() or None
        self.users = users

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        bearer_token = token.strip()
        if self.admin_api_key and hmac.compare_digest(bearer_token, self.admin_api_key):
            request.state.auth = AuthResult(method="admin_key", principal="admin")
            return None

        user = await self.users.get_user_by_api_key(bearer_token)
        if user is None:
            return _unauthorized("Invalid API key.")
        if not user.enabled:
            return _unauthorized("User is disabled.")
        request.state.auth = AuthResult(
            method="api_key", principal=user.user_id, user=user
        )
        return None


def current_auth(request: Request) -> AuthResult:
    auth = getattr(request.state, "auth", None)
    if not isinstance(auth, AuthResult):
        raise GatewayError("Request was not authenticated.", status_code=401)
    return auth


def require_admin(request: Request) -> AuthResult:
    auth = current_auth(request)
    if not auth.is_admin:
        raise AdminRequired("This endpoint requires the admin API key.")
    return auth


def require_user(request: Request) -> User:
    auth = current_auth(request)
    if auth.user is None:
        raise UserRequired("This endpoint requires a user API key.")
    return auth.user


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
