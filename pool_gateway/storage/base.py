from __future__ import annotations

from typing import Protocol

from pool_gateway.models import (
    Account,
    ConsumptionRecord,
    ModelQuota,
    SharedPoolSummary,
    SharedQuotaPool,
    User,
)


class UserStore(Protocol):
    async def get_user(self, user_id: str) -> User | None: ...

    async def get_user_by_api_key(self, api_key: str) -> User | None: ...

    async def create_user(self, user: User) -> User: ...

    async def update_user(
        self,
        user_id: str,
        *,
        prefer_shared: bool | None = None,
        enabled: bool | None = None,
    ) -> User | None: ...

    async def list_users(self) -> list[User]: ...

    async def delete_user(self, user_id: str) -> bool: ...


class AccountStore(Protocol):
    async def get_account(self, cookie_id: str) -> Account | None: ...

    async def list_accounts(
        self,
        *,
        user_id: str | None = None,
        is_shared: bool | None = None,
        enabled_only: bool = False,
    ) -> list[Account]:
        """Accounts ordered by creation time, oldest first."""
        ...

    async def upsert_account(self, account: Account) -> Account: ...

    async def update_token(
        self,
        cookie_id: str,
        *,
        access_token: str,
        expires_at: float | None,
        refresh_token: str | None = None,
    ) -> Account | None: ...

    async def set_status(
        self,
        cookie_id: str,
        *,
        enabled: bool,
        needs_reauth: bool | None = None,
    ) -> Account | None: ...

    async def delete_account(self, cookie_id: str) -> bool: ...

    async def count_enabled_shared(self) -> int: ...


class QuotaStore(Protocol):
    async def get_quota(self, cookie_id: str, model_name: str) -> ModelQuota | None: ...

    async def list_quotas(self, cookie_id: str) -> list[ModelQuota]: ...

    async def upsert_quotas(self, cookie_id: str, quotas: list[ModelQuota]) -> None:
        """Insert or update quota rows, leaving the availability toggle untouched."""
        ...

    async def set_quota_status(
        self, cookie_id: str, model_name: str, *, available: bool
    ) -> ModelQuota | None: ...

    async def get_shared_pool(
        self, user_id: str, model_name: str
    ) -> SharedQuotaPool | None: ...

    async def list_shared_pools(self, user_id: str) -> list[SharedQuotaPool]: ...

    async def upsert_shared_ceiling(
        self, user_id: str, model_name: str, ceiling: float
    ) -> SharedQuotaPool:
        """Insert with quota=ceiling, or raise quota to the ceiling without lowering it."""
        ...

    async def deduct_shared_pool(
        self, user_id: str, model_name: str, amount: float
    ) -> SharedQuotaPool | None: ...

    async def shared_pool_summary(
        self, model_name: str | None = None
    ) -> list[SharedPoolSummary]: ...


class ConsumptionLog(Protocol):
    async def append(self, record: ConsumptionRecord) -> None: ...

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 100,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ConsumptionRecord]: ...


class GatewayStore(UserStore, AccountStore, QuotaStore, ConsumptionLog, Protocol):
    async def initialize(self) -> None: ...

    async def close(self) -> None: ...
