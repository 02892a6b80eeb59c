from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for failures that map onto an OpenAI-style error payload."""

    status_code = 500
    error_type = "server_error"
    code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        param: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.param = param
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": self.param,
                "code": self.code,
            }
        }


class NoAccountAvailable(GatewayError):
    status_code = 503
    error_type = "service_unavailable"
    code = "no_capacity"


class UpstreamAuthRejected(GatewayError):
    """Upstream answered 403; the account is disabled and selection is retried."""

    status_code = 502
    error_type = "upstream_error"
    code = "upstream_auth_rejected"

    def __init__(self, message: str, *, cookie_id: str) -> None:
        super().__init__(message)
        self.cookie_id = cookie_id


class QuotaExhausted(GatewayError):
    status_code = 429
    error_type = "rate_limit_error"
    code = "quota_exhausted"


class TokenRefreshError(GatewayError):
    status_code = 502
    error_type = "upstream_error"
    code = "token_refresh_failed"


class InvalidGrantError(TokenRefreshError):
    code = "invalid_grant"


class TransientRefreshError(TokenRefreshError):
    pass


class MalformedUpstreamChunk(ValueError):
    """A `data:` record from upstream could not be decoded."""


class UnsupportedModelRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "unsupported_model_request"


class UpstreamRequestError(GatewayError):
    status_code = 502
    error_type = "upstream_error"
    code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.upstream_status = upstream_status


class UpstreamTimeout(UpstreamRequestError):
    status_code = 504
    code = "upstream_timeout"


class AuthorizationStateError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_oauth_state"


class OAuthExchangeError(GatewayError):
    status_code = 502
    error_type = "upstream_error"
    code = "oauth_exchange_failed"


class NotFoundError(GatewayError):
    status_code = 404
    error_type = "invalid_request_error"
    code = "not_found"


class InvalidRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"
