from __future__ import annotations

import hashlib
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from pool_gateway.errors import (
    AuthorizationStateError,
    InvalidGrantError,
    OAuthExchangeError,
    TransientRefreshError,
    UpstreamRequestError,
)
from pool_gateway.models import Account
from pool_gateway.runtime.expiring_map import ExpiringMap
from pool_gateway.utils.token_utils import TokenMetadataParser

if TYPE_CHECKING:
    from pool_gateway.quota import QuotaLedger
    from pool_gateway.storage.base import AccountStore

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: float | None
    id_token: str | None = None


class OAuthProvider(Protocol):
    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> TokenGrant: ...

    async def refresh(self, refresh_token: str) -> TokenGrant: ...


class GoogleOAuthProvider:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | None,
        authorize_url: str,
        token_url: str,
        redirect_uri: str,
        scopes: list[str],
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._authorize_url = authorize_url
        self._token_url = token_url
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._client_getter = client_getter

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "access_type": "offline",
                "client_id": self._client_id,
                "prompt": "consent",
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "scope": " ".join(self._scopes),
                "state": state,
            }
        )
        return f"{self._authorize_url}?{query}"

    async def exchange_code(self, code: str) -> TokenGrant:
        payload = self._client_payload()
        payload.update(
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self._redirect_uri,
            }
        )
        try:
            response = await self._client_getter().post(
                self._token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning("oauth_exchange_error reason=request_error error=%s", exc)
            raise OAuthExchangeError("Token exchange request failed.") from exc

        body = _json_body(response)
        if response.status_code >= 400 or body is None:
            logger.warning("oauth_exchange_error status=%d", response.status_code)
            detail = (body or {}).get("error_description") or (body or {}).get("error")
            raise OAuthExchangeError(
                f"Token exchange failed with status {response.status_code}"
                + (f": {detail}" if detail else ".")
            )
        grant = _grant_from_body(body)
        if grant is None:
            raise OAuthExchangeError("Token exchange response has no access token.")
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        payload = self._client_payload()
        payload.update({"grant_type": "refresh_token", "refresh_token": refresh_token})
        try:
            response = await self._client_getter().post(
                self._token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            raise TransientRefreshError(f"Refresh request failed: {exc}") from exc

        body = _json_body(response)
        if response.status_code >= 400:
            if body is not None and body.get("error") == "invalid_grant":
                raise InvalidGrantError(
                    str(body.get("error_description") or "Refresh token was revoked.")
                )
            raise TransientRefreshError(
                f"Refresh failed with status {response.status_code}."
            )
        if body is None:
            raise TransientRefreshError("Refresh response was not valid JSON.")
        grant = _grant_from_body(body)
        if grant is None:
            raise TransientRefreshError("Refresh response has no access token.")
        if not grant.refresh_token:
            grant.refresh_token = refresh_token
        return grant

    def _client_payload(self) -> dict[str, str]:
        payload = {"client_id": self._client_id}
        if self._client_secret:
            payload["client_secret"] = self._client_secret
        return payload


def _json_body(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _grant_from_body(body: dict[str, Any]) -> TokenGrant | None:
    raw_access = body.get("access_token")
    access_token = str(raw_access).strip() if raw_access is not None else ""
    if not access_token:
        return None
    raw_refresh = body.get("refresh_token")
    refresh_token = str(raw_refresh).strip() if raw_refresh is not None else None
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_at=TokenMetadataParser.extract_expires_at(body),
        id_token=body.get("id_token") if isinstance(body.get("id_token"), str) else None,
    )


@dataclass(slots=True)
class PendingAuthorization:
    user_id: str
    is_shared: bool
    created_at: float = field(default_factory=time.time)


class PendingAuthorizations:
    """Outstanding authorization handshakes keyed by their random state token."""

    def __init__(self, *, ttl_seconds: int, max_entries: int = 4096) -> None:
        self._pending: ExpiringMap[str, PendingAuthorization] = ExpiringMap(
            ttl_seconds=ttl_seconds, max_keys=max_entries
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self._pending.ttl_seconds)

    def create(self, user_id: str, is_shared: bool) -> str:
        state = secrets.token_urlsafe(32)
        self._pending.set(state, PendingAuthorization(user_id=user_id, is_shared=is_shared))
        return state

    def consume(self, state: str) -> PendingAuthorization | None:
        return self._pending.pop(state)

    def __len__(self) -> int:
        return len(self._pending)


def derive_cookie_id(refresh_token: str) -> str:
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()[:32]


def parse_callback_url(callback_url: str) -> tuple[str, str]:
    query = parse_qs(urlparse(callback_url).query)
    if query.get("error"):
        raise AuthorizationStateError(f"Authorization was denied: {query['error'][0]}")
    code = (query.get("code") or [""])[0]
    state = (query.get("state") or [""])[0]
    if not code or not state:
        raise AuthorizationStateError("Callback URL is missing code or state.")
    return code, state


FetchModels = Callable[[str, str | None], Awaitable[dict[str, Any]]]


class AccountAuthorizationService:
    def __init__(
        self,
        *,
        provider: OAuthProvider,
        pending: PendingAuthorizations,
        accounts: AccountStore,
        ledger: QuotaLedger,
        fetch_models: FetchModels,
    ) -> None:
        self._provider = provider
        self._pending = pending
        self._accounts = accounts
        self._ledger = ledger
        self._fetch_models = fetch_models

    def begin(self, user_id: str, *, is_shared: bool) -> dict[str, Any]:
        state = self._pending.create(user_id, is_shared)
        logger.info(
            "oauth_authorize_start user_id=%s is_shared=%s", user_id, is_shared
        )
        return {
            "auth_url": self._provider.authorization_url(state),
            "state": state,
            "expires_in": self._pending.ttl_seconds,
        }

    async def complete(self, *, code: str, state: str) -> Account:
        pending = self._pending.consume(state)
        if pending is None:
            raise AuthorizationStateError("Unknown or expired authorization state.")

        grant = await self._provider.exchange_code(code)
        if not grant.refresh_token:
            raise OAuthExchangeError(
                "Provider did not return a refresh token; re-consent is required."
            )

        cookie_id = derive_cookie_id(grant.refresh_token)
        try:
            payload = await self._fetch_models(grant.access_token, None)
        except UpstreamRequestError as exc:
            logger.warning(
                "oauth_capability_check_failed cookie_id=%s error=%s",
                cookie_id,
                exc.message,
            )
            raise OAuthExchangeError(
                f"Account failed the capability check: {exc.message}"
            ) from exc
        models = payload.get("models")
        if not isinstance(models, dict) or not models:
            raise OAuthExchangeError("Account does not expose any models.")

        existing = await self._accounts.get_account(cookie_id)
        account = Account(
            cookie_id=cookie_id,
            user_id=pending.user_id,
            is_shared=pending.is_shared,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            email=TokenMetadataParser.extract_email(grant.id_token),
        )
        if existing is not None:
            account.created_at = existing.created_at
            account.project_id = existing.project_id
            account.name = existing.name
        account = await self._accounts.upsert_account(account)
        quotas = await self._ledger.store_model_payload(cookie_id, models)
        logger.info(
            "oauth_account_authorized cookie_id=%s user_id=%s is_shared=%s models=%d",
            cookie_id,
            account.user_id,
            account.is_shared,
            len(quotas),
        )
        if account.is_shared:
            await self._ledger.recompute_ceilings_for_all_users(
                [quota.model_name for quota in quotas]
            )
        return account
