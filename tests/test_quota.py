from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pool_gateway.catalogs.capabilities import load_internal_capability_table
from pool_gateway.models import ConsumptionRecord
from pool_gateway.quota import QuotaLedger, parse_model_quotas, parse_reset_time
from pool_gateway.storage.memory import InMemoryStore
from pool_gateway.tokens import TokenLifecycleManager
from tests.gateway_test_utils import (
    FakeOAuthProvider,
    make_account,
    make_user,
    models_payload,
    seed_quota,
)

MODEL = "gemini-2.5-pro"


class FailingConsumptionLog:
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, record: ConsumptionRecord) -> None:
        self.attempts += 1
        raise RuntimeError("database unavailable")

    async def list_for_user(self, user_id: str, **kwargs: Any) -> list[ConsumptionRecord]:
        return []


def _ledger(
    store: InMemoryStore,
    *,
    models: dict[str, Any] | None = None,
    consumption: Any = None,
    audit_events: list[dict[str, Any]] | None = None,
) -> QuotaLedger:
    fetch_calls: list[tuple[str, str | None]] = []

    async def fetch_models(access_token: str, project_id: str | None) -> dict[str, Any]:
        fetch_calls.append((access_token, project_id))
        return models or {"models": {}}

    ledger = QuotaLedger(
        quotas=store,
        accounts=store,
        users=store,
        consumption=consumption or store,
        catalog=load_internal_capability_table(),
        tokens=TokenLifecycleManager(oauth=FakeOAuthProvider(), accounts=store),
        fetch_models=fetch_models,
        audit_hook=audit_events.append if audit_events is not None else None,
        log_retry_base_seconds=0.0,
    )
    ledger.fetch_calls = fetch_calls  # type: ignore[attr-defined]
    return ledger


def test_parse_model_quotas_handles_missing_fields() -> None:
    rows = parse_model_quotas(
        "acct-1",
        {
            "exhausted": {"quotaInfo": {"resetTime": "2030-01-01T00:00:00Z"}},
            "untouched": {},
            "partial": {"quotaInfo": {"remainingFraction": 0.25}},
            "overflow": {"quotaInfo": {"remainingFraction": 1.7}},
            " ": {"quotaInfo": {"remainingFraction": 0.5}},
        },
        now=100.0,
    )

    by_name = {row.model_name: row for row in rows}
    assert set(by_name) == {"exhausted", "untouched", "partial", "overflow"}
    assert by_name["exhausted"].quota == 0.0
    assert by_name["exhausted"].reset_at == parse_reset_time("2030-01-01T00:00:00Z")
    assert by_name["untouched"].quota == 1.0
    assert by_name["partial"].quota == 0.25
    assert by_name["overflow"].quota == 1.0
    assert all(row.last_fetched_at == 100.0 for row in rows)


def test_parse_reset_time_accepts_epoch_and_iso() -> None:
    assert parse_reset_time(1700000000) == 1700000000.0
    assert parse_reset_time("1970-01-01T00:01:00Z") == 60.0
    assert parse_reset_time("tomorrow") is None
    assert parse_reset_time(None) is None


def test_ceiling_recompute_raises_balance_to_new_ceiling() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        for index in range(3):
            await store.upsert_account(
                make_account(f"shared-{index}", user_id="owner", is_shared=True)
            )

        pool = await ledger.recompute_shared_ceiling("user-1", MODEL)
        assert (pool.quota, pool.max_quota) == (6.0, 6.0)
        await store.deduct_shared_pool("user-1", MODEL, 1.0)

        await store.upsert_account(make_account("shared-3", user_id="owner", is_shared=True))
        pool = await ledger.recompute_shared_ceiling("user-1", MODEL)

        assert pool.max_quota == 8.0
        assert pool.quota == 8.0

    asyncio.run(run())


def test_ceiling_drop_never_lowers_current_balance() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        for index in range(3):
            await store.upsert_account(
                make_account(f"shared-{index}", user_id="owner", is_shared=True)
            )
        await ledger.recompute_shared_ceiling("user-1", MODEL)

        await store.set_status("shared-0", enabled=False)
        await store.set_status("shared-1", enabled=False)
        pool = await ledger.recompute_shared_ceiling("user-1", MODEL)

        assert pool.max_quota == 2.0
        assert pool.quota == 6.0

    asyncio.run(run())


def test_recompute_for_all_users_skips_disabled_users() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        await store.create_user(make_user("active"))
        disabled = make_user("inactive")
        disabled.enabled = False
        await store.create_user(disabled)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))

        await ledger.recompute_ceilings_for_all_users([MODEL])

        assert (await store.get_shared_pool("active", MODEL)) is not None
        assert (await store.get_shared_pool("inactive", MODEL)) is None

    asyncio.run(run())


def test_consumption_is_recorded_and_shared_pool_deducted() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))
        await ledger.recompute_shared_ceiling("user-1", MODEL)

        record = await ledger.consume_and_record(
            user_id="user-1",
            cookie_id="shared-1",
            model=MODEL,
            quota_before=0.8,
            quota_after=0.6,
            is_shared=True,
        )

        assert record is not None
        assert record.quota_consumed == pytest.approx(0.2)
        pool = await store.get_shared_pool("user-1", MODEL)
        assert pool is not None
        assert pool.quota == pytest.approx(1.8)
        history = await store.list_for_user("user-1")
        assert [item.cookie_id for item in history] == ["shared-1"]

    asyncio.run(run())


def test_negative_delta_is_floored_and_dedicated_use_leaves_pool_alone() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))
        await ledger.recompute_shared_ceiling("user-1", MODEL)

        reset = await ledger.consume_and_record(
            user_id="user-1",
            cookie_id="shared-1",
            model=MODEL,
            quota_before=0.1,
            quota_after=1.0,
            is_shared=True,
        )
        dedicated = await ledger.consume_and_record(
            user_id="user-1",
            cookie_id="dedicated-1",
            model=MODEL,
            quota_before=0.9,
            quota_after=0.5,
            is_shared=False,
        )

        assert reset is not None and reset.quota_consumed == 0.0
        assert dedicated is not None and dedicated.quota_consumed == pytest.approx(0.4)
        pool = await store.get_shared_pool("user-1", MODEL)
        assert pool is not None
        assert pool.quota == 2.0

    asyncio.run(run())


def test_shared_pool_deduction_floors_at_zero() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))
        await ledger.recompute_shared_ceiling("user-1", MODEL)

        pool = await store.deduct_shared_pool("user-1", MODEL, 5.0)

        assert pool is not None
        assert pool.quota == 0.0
        assert await ledger.user_has_shared_quota("user-1", MODEL) is False

    asyncio.run(run())


def test_failed_consumption_log_emits_audit_event(caplog: pytest.LogCaptureFixture) -> None:
    async def run() -> tuple[Any, FailingConsumptionLog, list[dict[str, Any]], float]:
        store = InMemoryStore()
        failing = FailingConsumptionLog()
        audit_events: list[dict[str, Any]] = []
        ledger = _ledger(store, consumption=failing, audit_events=audit_events)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))
        await ledger.recompute_shared_ceiling("user-1", MODEL)
        record = await ledger.consume_and_record(
            user_id="user-1",
            cookie_id="shared-1",
            model=MODEL,
            quota_before=0.8,
            quota_after=0.6,
            is_shared=True,
        )
        pool = await store.get_shared_pool("user-1", MODEL)
        assert pool is not None
        return record, failing, audit_events, pool.quota

    with caplog.at_level("WARNING", logger="uvicorn.error"):
        record, failing, audit_events, pool_quota = asyncio.run(run())

    assert record is None
    assert failing.attempts == 3
    assert audit_events[0]["event"] == "quota_consumption_log_failed"
    assert audit_events[0]["cookie_id"] == "shared-1"
    assert "quota_consumption_log_failed" in caplog.text
    assert pool_quota == 2.0


def test_stale_snapshot_schedules_background_refresh() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store, models=models_payload({MODEL: 0.4, "gemini-2.5-flash": 1.0}))
        account = await store.upsert_account(make_account("acct-1"))
        await seed_quota(store, "acct-1", MODEL, 0.9, fetched_at=0.0)

        cached = await ledger.snapshot(account, MODEL)
        await ledger.wait_for_refreshes()

        assert cached is not None and cached.quota == 0.9
        assert ledger.fetch_calls == [("tok-acct-1", "project-acct-1")]  # type: ignore[attr-defined]
        refreshed = await store.get_quota("acct-1", MODEL)
        assert refreshed is not None
        assert refreshed.quota == 0.4
        assert [row.model_name for row in await ledger.list_quotas("acct-1")] == [
            "gemini-2.5-flash",
            MODEL,
        ]

    asyncio.run(run())


def test_fresh_snapshot_does_not_refetch() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        account = await store.upsert_account(make_account("acct-1"))
        await seed_quota(store, "acct-1", MODEL, 0.9)

        await ledger.snapshot(account, MODEL)
        await ledger.wait_for_refreshes()

        assert ledger.fetch_calls == []  # type: ignore[attr-defined]

    asyncio.run(run())


def test_quota_refresh_keeps_manual_availability_toggle() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store, models=models_payload({MODEL: 0.5}))
        account = await store.upsert_account(make_account("acct-1"))
        await seed_quota(store, "acct-1", MODEL, 0.9)
        await store.set_quota_status("acct-1", MODEL, available=False)

        await ledger.refresh_account_quotas(account)

        quota = await store.get_quota("acct-1", MODEL)
        assert quota is not None
        assert quota.quota == 0.5
        assert quota.available is False
        assert await ledger.is_model_available("acct-1", MODEL) is False

    asyncio.run(run())


def test_aggregate_shared_pool_counts_enabled_shared_accounts() -> None:
    async def run() -> None:
        store = InMemoryStore()
        ledger = _ledger(store)
        await store.upsert_account(make_account("shared-1", user_id="owner", is_shared=True))
        await store.upsert_account(make_account("shared-2", user_id="owner", is_shared=True))
        await store.upsert_account(make_account("off", user_id="owner", is_shared=True, enabled=False))
        await store.upsert_account(make_account("mine"))
        await seed_quota(store, "shared-1", MODEL, 0.5)
        await seed_quota(store, "shared-2", MODEL, 0.25)
        await seed_quota(store, "off", MODEL, 1.0)
        await seed_quota(store, "mine", MODEL, 1.0)

        summary = await ledger.aggregate_shared_pool(MODEL)
        empty = await ledger.aggregate_shared_pool("unknown-model")

        assert summary.total_quota == pytest.approx(0.75)
        assert summary.available_accounts == 2
        assert empty.total_quota == 0.0
        assert empty.available_accounts == 0

    asyncio.run(run())
