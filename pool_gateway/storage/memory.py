from __future__ import annotations

import time
from dataclasses import replace

from pool_gateway.models import (
    Account,
    ConsumptionRecord,
    ModelQuota,
    SharedPoolSummary,
    SharedQuotaPool,
    User,
)


class InMemoryStore:
    """Process-local store. Each method runs without awaiting, so it is atomic
    with respect to other coroutines on the same event loop."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._accounts: dict[str, Account] = {}
        self._quotas: dict[tuple[str, str], ModelQuota] = {}
        self._shared_pools: dict[tuple[str, str], SharedQuotaPool] = {}
        self._consumption: list[ConsumptionRecord] = []

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # users

    async def get_user(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        return replace(user) if user else None

    async def get_user_by_api_key(self, api_key: str) -> User | None:
        for user in self._users.values():
            if user.api_key == api_key:
                return replace(user)
        return None

    async def create_user(self, user: User) -> User:
        if user.user_id in self._users:
            raise ValueError(f"User '{user.user_id}' already exists.")
        if any(item.api_key == user.api_key for item in self._users.values()):
            raise ValueError("API key is already assigned.")
        self._users[user.user_id] = replace(user)
        return replace(user)

    async def update_user(
        self,
        user_id: str,
        *,
        prefer_shared: bool | None = None,
        enabled: bool | None = None,
    ) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        if prefer_shared is not None:
            user.prefer_shared = prefer_shared
        if enabled is not None:
            user.enabled = enabled
        return replace(user)

    async def list_users(self) -> list[User]:
        users = sorted(self._users.values(), key=lambda item: item.created_at)
        return [replace(user) for user in users]

    async def delete_user(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None

    # accounts

    async def get_account(self, cookie_id: str) -> Account | None:
        account = self._accounts.get(cookie_id)
        return replace(account) if account else None

    async def list_accounts(
        self,
        *,
        user_id: str | None = None,
        is_shared: bool | None = None,
        enabled_only: bool = False,
    ) -> list[Account]:
        matches = [
            account
            for account in self._accounts.values()
            if (user_id is None or account.user_id == user_id)
            and (is_shared is None or account.is_shared == is_shared)
            and (not enabled_only or account.selectable)
        ]
        matches.sort(key=lambda item: item.created_at)
        return [replace(account) for account in matches]

    async def upsert_account(self, account: Account) -> Account:
        existing = self._accounts.get(account.cookie_id)
        stored = replace(account, updated_at=time.time())
        if existing is not None:
            stored.created_at = existing.created_at
        self._accounts[account.cookie_id] = stored
        return replace(stored)

    async def update_token(
        self,
        cookie_id: str,
        *,
        access_token: str,
        expires_at: float | None,
        refresh_token: str | None = None,
    ) -> Account | None:
        account = self._accounts.get(cookie_id)
        if account is None:
            return None
        account.access_token = access_token
        account.expires_at = expires_at
        if refresh_token:
            account.refresh_token = refresh_token
        account.updated_at = time.time()
        return replace(account)

    async def set_status(
        self,
        cookie_id: str,
        *,
        enabled: bool,
        needs_reauth: bool | None = None,
    ) -> Account | None:
        account = self._accounts.get(cookie_id)
        if account is None:
            return None
        account.enabled = enabled
        if needs_reauth is not None:
            account.needs_reauth = needs_reauth
        account.updated_at = time.time()
        return replace(account)

    async def delete_account(self, cookie_id: str) -> bool:
        if self._accounts.pop(cookie_id, None) is None:
            return False
        for key in [key for key in self._quotas if key[0] == cookie_id]:
            del self._quotas[key]
        return True

    async def count_enabled_shared(self) -> int:
        return sum(
            1
            for account in self._accounts.values()
            if account.is_shared and account.selectable
        )

    # quotas

    async def get_quota(self, cookie_id: str, model_name: str) -> ModelQuota | None:
        quota = self._quotas.get((cookie_id, model_name))
        return replace(quota) if quota else None

    async def list_quotas(self, cookie_id: str) -> list[ModelQuota]:
        rows = [
            replace(quota)
            for (owner, _), quota in self._quotas.items()
            if owner == cookie_id
        ]
        rows.sort(key=lambda item: item.model_name)
        return rows

    async def upsert_quotas(self, cookie_id: str, quotas: list[ModelQuota]) -> None:
        for quota in quotas:
            key = (cookie_id, quota.model_name)
            existing = self._quotas.get(key)
            stored = replace(quota, cookie_id=cookie_id)
            if existing is not None:
                stored.available = existing.available
            self._quotas[key] = stored

    async def set_quota_status(
        self, cookie_id: str, model_name: str, *, available: bool
    ) -> ModelQuota | None:
        quota = self._quotas.get((cookie_id, model_name))
        if quota is None:
            return None
        quota.available = available
        return replace(quota)

    async def get_shared_pool(
        self, user_id: str, model_name: str
    ) -> SharedQuotaPool | None:
        pool = self._shared_pools.get((user_id, model_name))
        return replace(pool) if pool else None

    async def list_shared_pools(self, user_id: str) -> list[SharedQuotaPool]:
        rows = [
            replace(pool)
            for (owner, _), pool in self._shared_pools.items()
            if owner == user_id
        ]
        rows.sort(key=lambda item: item.model_name)
        return rows

    async def upsert_shared_ceiling(
        self, user_id: str, model_name: str, ceiling: float
    ) -> SharedQuotaPool:
        key = (user_id, model_name)
        now = time.time()
        pool = self._shared_pools.get(key)
        if pool is None:
            pool = SharedQuotaPool(
                user_id=user_id,
                model_name=model_name,
                quota=ceiling,
                max_quota=ceiling,
                updated_at=now,
            )
            self._shared_pools[key] = pool
        else:
            pool.quota = max(pool.quota, ceiling)
            pool.max_quota = ceiling
            pool.updated_at = now
        return replace(pool)

    async def deduct_shared_pool(
        self, user_id: str, model_name: str, amount: float
    ) -> SharedQuotaPool | None:
        pool = self._shared_pools.get((user_id, model_name))
        if pool is None:
            return None
        pool.quota = max(0.0, pool.quota - amount)
        pool.updated_at = time.time()
        return replace(pool)

    async def shared_pool_summary(
        self, model_name: str | None = None
    ) -> list[SharedPoolSummary]:
        grouped: dict[str, list[ModelQuota]] = {}
        for (cookie_id, name), quota in self._quotas.items():
            if model_name is not None and name != model_name:
                continue
            account = self._accounts.get(cookie_id)
            if account is None or not account.is_shared or not account.selectable:
                continue
            if not quota.available:
                continue
            grouped.setdefault(name, []).append(quota)
        return [_summarize(name, rows) for name, rows in sorted(grouped.items())]

    # consumption log

    async def append(self, record: ConsumptionRecord) -> None:
        self._consumption.append(replace(record))

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 100,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ConsumptionRecord]:
        rows = [
            record
            for record in self._consumption
            if record.user_id == user_id
            and (since is None or record.consumed_at >= since)
            and (until is None or record.consumed_at <= until)
        ]
        rows.sort(key=lambda item: item.consumed_at, reverse=True)
        return [replace(record) for record in rows[: max(0, limit)]]


def _summarize(model_name: str, rows: list[ModelQuota]) -> SharedPoolSummary:
    resets = [row.reset_at for row in rows if row.reset_at is not None]
    return SharedPoolSummary(
        model_name=model_name,
        total_quota=sum(row.quota for row in rows),
        earliest_reset=min(resets) if resets else None,
        available_accounts=len({row.cookie_id for row in rows}),
    )
