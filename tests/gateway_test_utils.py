from __future__ import annotations

import json
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from pool_gateway.catalogs.capabilities import load_internal_capability_table
from pool_gateway.errors import TokenRefreshError
from pool_gateway.models import Account, ModelQuota, User
from pool_gateway.oauth import TokenGrant
from pool_gateway.orchestrator import GatewayOrchestrator
from pool_gateway.quota import QuotaLedger
from pool_gateway.selector import AccountSelector
from pool_gateway.signatures import InMemorySignatureStore
from pool_gateway.storage.memory import InMemoryStore
from pool_gateway.tokens import TokenLifecycleManager
from pool_gateway.translator import ProtocolTranslator
from pool_gateway.upstream import UpstreamClient

UPSTREAM_BASE_URL = "https://upstream.test"
CHAT_PATH = "/v1internal:streamGenerateContent?alt=sse"
MODELS_PATH = "/v1internal:fetchAvailableModels"


class FakeOAuthProvider:
    def __init__(self, *, error: TokenRefreshError | None = None) -> None:
        self.error = error
        self.refresh_calls: list[str] = []
        self.exchange_grant: TokenGrant | None = None

    def authorization_url(self, state: str) -> str:
        return f"https://auth.test/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        assert self.exchange_grant is not None
        return self.exchange_grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"fresh-{refresh_token}",
            refresh_token=None,
            expires_at=time.time() + 3600,
        )


def sse(*records: dict[str, Any]) -> bytes:
    return b"".join(
        f"data: {json.dumps(record, ensure_ascii=False)}\n\n".encode("utf-8")
        for record in records
    )


def text_record(text: str, finish_reason: str | None = None) -> dict[str, Any]:
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"response": {"candidates": [candidate]}}


def models_payload(fractions: dict[str, float]) -> dict[str, Any]:
    return {
        "models": {
            name: {
                "quotaInfo": {
                    "remainingFraction": fraction,
                    "resetTime": "2030-01-01T00:00:00Z",
                }
            }
            for name, fraction in fractions.items()
        }
    }


def make_user(user_id: str = "user-1", *, prefer_shared: bool = False) -> User:
    return User(user_id=user_id, api_key=f"sk-{user_id}", prefer_shared=prefer_shared)


def make_account(
    cookie_id: str,
    *,
    user_id: str = "user-1",
    is_shared: bool = False,
    enabled: bool = True,
    expires_at: float | None = None,
    refresh_token: str | None = "refresh-token",
    created_at: float | None = None,
) -> Account:
    return Account(
        cookie_id=cookie_id,
        user_id=user_id,
        is_shared=is_shared,
        access_token=f"tok-{cookie_id}",
        refresh_token=refresh_token,
        expires_at=time.time() + 3600 if expires_at is None else expires_at,
        enabled=enabled,
        project_id=f"project-{cookie_id}",
        created_at=time.time() if created_at is None else created_at,
    )


async def seed_quota(
    store: InMemoryStore,
    cookie_id: str,
    model: str,
    quota: float = 1.0,
    *,
    fetched_at: float | None = None,
) -> None:
    await store.upsert_quotas(
        cookie_id,
        [
            ModelQuota(
                cookie_id=cookie_id,
                model_name=model,
                quota=quota,
                last_fetched_at=time.time() if fetched_at is None else fetched_at,
            )
        ],
    )


@dataclass
class GatewayHarness:
    store: InMemoryStore
    oauth: FakeOAuthProvider
    tokens: TokenLifecycleManager
    upstream: UpstreamClient
    ledger: QuotaLedger
    signatures: InMemorySignatureStore
    translator: ProtocolTranslator
    selector: AccountSelector
    orchestrator: GatewayOrchestrator
    requests: list[httpx.Request] = field(default_factory=list)
    audit_events: list[dict[str, Any]] = field(default_factory=list)

    def chat_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if "streamGenerateContent" in str(request.url)]

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.upstream.close()


def build_harness(
    chat_handler: Callable[[httpx.Request], Any],
    *,
    models: dict[str, Any] | None = None,
    timeout_seconds: float = 30.0,
    rng: random.Random | None = None,
    oauth: FakeOAuthProvider | None = None,
) -> GatewayHarness:
    """Wire the real components over an in-memory store and a mocked upstream."""
    store = InMemoryStore()
    oauth = oauth or FakeOAuthProvider()
    requests: list[httpx.Request] = []
    models_body = models if models is not None else {"models": {}}

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith(":fetchAvailableModels"):
            return httpx.Response(200, json=models_body)
        result = chat_handler(request)
        if not isinstance(result, httpx.Response):
            result = await result
        return result

    upstream = UpstreamClient(
        base_url=UPSTREAM_BASE_URL,
        chat_path=CHAT_PATH,
        models_path=MODELS_PATH,
        user_agent="pool-gateway-tests",
        timeout_seconds=timeout_seconds,
        transport=httpx.MockTransport(handler),
    )
    catalog = load_internal_capability_table()
    tokens = TokenLifecycleManager(oauth=oauth, accounts=store)
    audit_events: list[dict[str, Any]] = []
    ledger = QuotaLedger(
        quotas=store,
        accounts=store,
        users=store,
        consumption=store,
        catalog=catalog,
        tokens=tokens,
        fetch_models=upstream.fetch_available_models,
        audit_hook=audit_events.append,
        log_retry_base_seconds=0.0,
    )
    signatures = InMemorySignatureStore(ttl_seconds=60)
    translator = ProtocolTranslator(catalog=catalog, signatures=signatures)
    selector = AccountSelector(
        accounts=store, ledger=ledger, tokens=tokens, rng=rng or random.Random(7)
    )
    orchestrator = GatewayOrchestrator(
        selector=selector,
        translator=translator,
        upstream=upstream,
        ledger=ledger,
        tokens=tokens,
        signatures=signatures,
        accounts=store,
        timeout_seconds=timeout_seconds,
        audit_hook=audit_events.append,
    )
    return GatewayHarness(
        store=store,
        oauth=oauth,
        tokens=tokens,
        upstream=upstream,
        ledger=ledger,
        signatures=signatures,
        translator=translator,
        selector=selector,
        orchestrator=orchestrator,
        requests=requests,
        audit_events=audit_events,
    )
