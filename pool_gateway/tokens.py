from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from pool_gateway.errors import (
    InvalidGrantError,
    TokenRefreshError,
    TransientRefreshError,
)
from pool_gateway.models import Account
from pool_gateway.oauth import OAuthProvider
from pool_gateway.storage.base import AccountStore
from pool_gateway.utils.token_utils import TokenMetadataParser

logger = logging.getLogger("uvicorn.error")


class TokenLifecycleManager:
    """Keeps account access tokens usable and retires accounts whose refresh fails."""

    def __init__(
        self,
        *,
        oauth: OAuthProvider,
        accounts: AccountStore,
        expiry_margin_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oauth = oauth
        self._accounts = accounts
        self._expiry_margin_seconds = expiry_margin_seconds
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def is_expired(self, account: Account) -> bool:
        return TokenMetadataParser.is_token_expiring(
            account.expires_at,
            margin_seconds=self._expiry_margin_seconds,
            now=self._clock(),
        )

    async def ensure_fresh(self, account: Account) -> Account:
        if not self.is_expired(account):
            return account
        return await self.refresh(account)

    async def refresh(self, account: Account) -> Account:
        lock = self._refresh_locks.setdefault(account.cookie_id, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited on the lock.
            current = await self._accounts.get_account(account.cookie_id) or account
            if current.expires_at != account.expires_at and not self.is_expired(current):
                return current

            if not current.refresh_token:
                logger.warning(
                    "token_refresh_skipped cookie_id=%s reason=missing_refresh_token",
                    current.cookie_id,
                )
                await self._accounts.set_status(
                    current.cookie_id, enabled=False, needs_reauth=True
                )
                raise TransientRefreshError(
                    f"Account {current.cookie_id} has no refresh token."
                )

            logger.info("token_refresh_start cookie_id=%s", current.cookie_id)
            try:
                grant = await self._oauth.refresh(current.refresh_token)
            except InvalidGrantError:
                logger.warning(
                    "token_refresh_error cookie_id=%s reason=invalid_grant action=disable",
                    current.cookie_id,
                )
                await self._accounts.set_status(current.cookie_id, enabled=False)
                raise
            except TokenRefreshError as exc:
                logger.warning(
                    "token_refresh_error cookie_id=%s reason=%s action=needs_reauth",
                    current.cookie_id,
                    exc.message,
                )
                await self._accounts.set_status(
                    current.cookie_id, enabled=False, needs_reauth=True
                )
                raise

            updated = await self._accounts.update_token(
                current.cookie_id,
                access_token=grant.access_token,
                expires_at=grant.expires_at,
                refresh_token=grant.refresh_token,
            )
            logger.info(
                "token_refresh_success cookie_id=%s expires_at=%s",
                current.cookie_id,
                grant.expires_at,
            )
            if updated is not None:
                return updated
            current.access_token = grant.access_token
            current.expires_at = grant.expires_at
            if grant.refresh_token:
                current.refresh_token = grant.refresh_token
            return current
