from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pool_gateway.models import (
    Account,
    ConsumptionRecord,
    ModelQuota,
    SharedPoolSummary,
    SharedQuotaPool,
)
from pool_gateway.runtime.background import BackgroundTaskGroup

if TYPE_CHECKING:
    from pool_gateway.catalogs.capabilities import ModelCapabilityTable
    from pool_gateway.storage.base import (
        AccountStore,
        ConsumptionLog,
        QuotaStore,
        UserStore,
    )
    from pool_gateway.tokens import TokenLifecycleManager

logger = logging.getLogger("uvicorn.error")

FetchModels = Callable[[str, str | None], Awaitable[dict[str, Any]]]


def parse_reset_time(value: Any) -> float | None:
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def parse_model_quotas(
    cookie_id: str, models: dict[str, Any], *, now: float | None = None
) -> list[ModelQuota]:
    """Turn an upstream ``models`` map into quota rows.

    A model with quota info but no ``remainingFraction`` is exhausted; a model
    without quota info at all is treated as untouched.
    """
    fetched_at = time.time() if now is None else now
    rows: list[ModelQuota] = []
    for model_name, info in models.items():
        if not isinstance(model_name, str) or not model_name.strip():
            continue
        quota_info = info.get("quotaInfo") if isinstance(info, dict) else None
        if isinstance(quota_info, dict):
            raw_fraction = quota_info.get("remainingFraction")
            try:
                fraction = float(raw_fraction) if raw_fraction is not None else 0.0
            except (TypeError, ValueError):
                fraction = 0.0
            reset_at = parse_reset_time(quota_info.get("resetTime"))
        else:
            fraction = 1.0
            reset_at = None
        rows.append(
            ModelQuota(
                cookie_id=cookie_id,
                model_name=model_name.strip(),
                quota=min(1.0, max(0.0, fraction)),
                reset_at=reset_at,
                last_fetched_at=fetched_at,
            )
        )
    return rows


class QuotaLedger:
    def __init__(
        self,
        *,
        quotas: QuotaStore,
        accounts: AccountStore,
        users: UserStore,
        consumption: ConsumptionLog,
        catalog: ModelCapabilityTable,
        tokens: TokenLifecycleManager,
        fetch_models: FetchModels,
        cache_ttl_seconds: float = 300,
        quota_per_shared_account: float = 2.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], float] = time.time,
        log_attempts: int = 3,
        log_retry_base_seconds: float = 0.05,
    ) -> None:
        self._quotas = quotas
        self._accounts = accounts
        self._users = users
        self._consumption = consumption
        self._catalog = catalog
        self._tokens = tokens
        self._fetch_models = fetch_models
        self._cache_ttl_seconds = cache_ttl_seconds
        self._quota_per_shared_account = quota_per_shared_account
        self._audit_hook = audit_hook
        self._clock = clock
        self._log_attempts = max(1, log_attempts)
        self._log_retry_base_seconds = log_retry_base_seconds
        self._refreshes = BackgroundTaskGroup("quota-refresh")

    async def is_model_available(self, cookie_id: str, model: str) -> bool:
        quota = await self._quotas.get_quota(cookie_id, model)
        return quota is not None and quota.available and quota.quota > 0

    def is_stale(self, quota: ModelQuota) -> bool:
        if quota.last_fetched_at is None:
            return True
        return self._clock() - quota.last_fetched_at >= self._cache_ttl_seconds

    async def snapshot(self, account: Account, model: str) -> ModelQuota | None:
        """Cached quota row; a stale row triggers a refresh without waiting on it."""
        quota = await self._quotas.get_quota(account.cookie_id, model)
        if quota is None or self.is_stale(quota):
            self.schedule_refresh(account)
        return quota

    def schedule_refresh(self, account: Account) -> None:
        task = self._refreshes.spawn(
            self.refresh_account_quotas(account), key=account.cookie_id
        )
        if task is not None:
            logger.info("quota_refresh_scheduled cookie_id=%s", account.cookie_id)

    async def refresh_account_quotas(self, account: Account) -> list[ModelQuota]:
        fresh = await self._tokens.ensure_fresh(account)
        payload = await self._fetch_models(fresh.access_token, fresh.project_id)
        models = payload.get("models")
        if not isinstance(models, dict):
            logger.warning(
                "quota_refresh_empty cookie_id=%s reason=missing_models",
                account.cookie_id,
            )
            return []
        return await self.store_model_payload(account.cookie_id, models)

    async def store_model_payload(
        self, cookie_id: str, models: dict[str, Any]
    ) -> list[ModelQuota]:
        rows = parse_model_quotas(cookie_id, models, now=self._clock())
        await self._quotas.upsert_quotas(cookie_id, rows)
        return rows

    async def list_quotas(self, cookie_id: str) -> list[ModelQuota]:
        return await self._quotas.list_quotas(cookie_id)

    async def consume_and_record(
        self,
        *,
        user_id: str,
        cookie_id: str,
        model: str,
        quota_before: float,
        quota_after: float,
        is_shared: bool,
    ) -> ConsumptionRecord | None:
        record = ConsumptionRecord(
            user_id=user_id,
            cookie_id=cookie_id,
            model_name=model,
            quota_before=quota_before,
            quota_after=quota_after,
            quota_consumed=max(0.0, quota_before - quota_after),
            is_shared=is_shared,
            consumed_at=self._clock(),
        )
        for attempt in range(1, self._log_attempts + 1):
            try:
                await self._consumption.append(record)
                break
            except Exception as exc:
                if attempt < self._log_attempts:
                    await asyncio.sleep(self._log_retry_base_seconds * 2 ** (attempt - 1))
                    continue
                logger.warning(
                    "quota_consumption_log_failed user_id=%s cookie_id=%s model=%s attempts=%d error=%r",
                    user_id,
                    cookie_id,
                    model,
                    attempt,
                    exc,
                )
                self._emit(
                    {
                        "event": "quota_consumption_log_failed",
                        **record.to_dict(),
                        "error": repr(exc),
                    }
                )
                return None

        if is_shared and record.quota_consumed > 0:
            await self._quotas.deduct_shared_pool(user_id, model, record.quota_consumed)
        logger.info(
            "quota_consumed user_id=%s cookie_id=%s model=%s before=%.4f after=%.4f consumed=%.4f shared=%s",
            user_id,
            cookie_id,
            model,
            quota_before,
            quota_after,
            record.quota_consumed,
            is_shared,
        )
        return record

    async def recompute_shared_ceiling(self, user_id: str, model: str) -> SharedQuotaPool:
        shared_accounts = await self._accounts.count_enabled_shared()
        ceiling = self._quota_per_shared_account * shared_accounts
        pool = await self._quotas.upsert_shared_ceiling(user_id, model, ceiling)
        logger.info(
            "shared_ceiling_recomputed user_id=%s model=%s shared_accounts=%d ceiling=%.4f quota=%.4f",
            user_id,
            model,
            shared_accounts,
            ceiling,
            pool.quota,
        )
        return pool

    async def recompute_ceilings_for_all_users(self, models: list[str]) -> None:
        users = await self._users.list_users()
        for user in users:
            if not user.enabled:
                continue
            for model in models:
                await self.recompute_shared_ceiling(user.user_id, model)

    async def aggregate_shared_pool(self, model: str) -> SharedPoolSummary:
        summaries = await self._quotas.shared_pool_summary(model)
        if summaries:
            return summaries[0]
        return SharedPoolSummary(
            model_name=model, total_quota=0.0, earliest_reset=None, available_accounts=0
        )

    async def shared_pool_overview(self) -> list[SharedPoolSummary]:
        return await self._quotas.shared_pool_summary()

    async def user_has_shared_quota(self, user_id: str, model: str) -> bool:
        for member in self._catalog.quota_group(model):
            pool = await self._quotas.get_shared_pool(user_id, member)
            if pool is not None and pool.quota > 0:
                return True
        return False

    async def wait_for_refreshes(self) -> None:
        await self._refreshes.drain()

    async def close(self) -> None:
        await self._refreshes.cancel_all()

    def _emit(self, event: dict[str, Any]) -> None:
        if self._audit_hook is not None:
            self._audit_hook(event)
