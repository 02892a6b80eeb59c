from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from typing import TYPE_CHECKING

from pool_gateway.errors import NoAccountAvailable, TokenRefreshError
from pool_gateway.models import Account, User

if TYPE_CHECKING:
    from pool_gateway.quota import QuotaLedger
    from pool_gateway.storage.base import AccountStore
    from pool_gateway.tokens import TokenLifecycleManager

logger = logging.getLogger("uvicorn.error")

SHARED_POOL = "shared"
DEDICATED_POOL = "dedicated"


class AccountSelector:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        ledger: QuotaLedger,
        tokens: TokenLifecycleManager,
        rng: random.Random | None = None,
    ) -> None:
        self._accounts = accounts
        self._ledger = ledger
        self._tokens = tokens
        self._rng = rng or random.Random()

    @staticmethod
    def pool_precedence(user: User) -> tuple[str, str]:
        if user.prefer_shared:
            return (SHARED_POOL, DEDICATED_POOL)
        return (DEDICATED_POOL, SHARED_POOL)

    async def select_account(
        self,
        user: User,
        model: str,
        excluded: Iterable[str] = (),
    ) -> Account:
        """Pick an account with a usable credential for ``model``.

        Every failed refresh adds the account to the exclusion set, so the loop
        ends either with an account or with ``NoAccountAvailable``.
        """
        excluded_ids = set(excluded)
        while True:
            account = await self._pick(user, model, excluded_ids)
            if not self._tokens.is_expired(account):
                return account
            try:
                return await self._tokens.refresh(account)
            except TokenRefreshError as exc:
                logger.warning(
                    "account_selection_refresh_failed cookie_id=%s user_id=%s model=%s code=%s",
                    account.cookie_id,
                    user.user_id,
                    model,
                    exc.code,
                )
                excluded_ids.add(account.cookie_id)

    async def eligible_pools(
        self,
        user: User,
        model: str,
        excluded: set[str],
    ) -> dict[str, list[Account]]:
        shared = await self._accounts.list_accounts(is_shared=True, enabled_only=True)
        dedicated = await self._accounts.list_accounts(
            user_id=user.user_id, is_shared=False, enabled_only=True
        )

        shared_allowed = await self._ledger.user_has_shared_quota(user.user_id, model)
        pools: dict[str, list[Account]] = {SHARED_POOL: [], DEDICATED_POOL: []}
        for pool_name, candidates in ((SHARED_POOL, shared), (DEDICATED_POOL, dedicated)):
            if pool_name == SHARED_POOL and not shared_allowed:
                continue
            for account in candidates:
                if account.cookie_id in excluded:
                    continue
                if await self._ledger.is_model_available(account.cookie_id, model):
                    pools[pool_name].append(account)
        return pools

    async def _pick(self, user: User, model: str, excluded: set[str]) -> Account:
        pools = await self.eligible_pools(user, model, excluded)
        for pool_name in self.pool_precedence(user):
            candidates = pools[pool_name]
            if not candidates:
                continue
            account = self._rng.choice(candidates)
            logger.info(
                "account_selected cookie_id=%s user_id=%s model=%s pool=%s candidates=%d",
                account.cookie_id,
                user.user_id,
                model,
                pool_name,
                len(candidates),
            )
            return account
        logger.warning(
            "account_selection_exhausted user_id=%s model=%s excluded=%d",
            user.user_id,
            model,
            len(excluded),
        )
        raise NoAccountAvailable(f"No available account for model '{model}'.")
