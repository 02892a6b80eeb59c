from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from pool_gateway.errors import (
    GatewayError,
    QuotaExhausted,
    UpstreamAuthRejected,
    UpstreamRequestError,
    UpstreamTimeout,
)
from pool_gateway.runtime.background import BackgroundTaskGroup
from pool_gateway.stream import ReassembledResponse, StreamEvent, StreamReassembler
from pool_gateway.translator import GenerationParams, UpstreamRequest

if TYPE_CHECKING:
    from pool_gateway.models import Account, User
    from pool_gateway.quota import QuotaLedger
    from pool_gateway.selector import AccountSelector
    from pool_gateway.signatures import SignatureStore
    from pool_gateway.storage.base import AccountStore
    from pool_gateway.tokens import TokenLifecycleManager
    from pool_gateway.translator import ProtocolTranslator
    from pool_gateway.upstream import UpstreamClient

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ChatRequest:
    model: str
    messages: list[dict[str, Any]]
    params: GenerationParams = field(default_factory=GenerationParams)
    tools: Any = None
    tool_choice: Any = None


@dataclass(slots=True)
class ExchangeContext:
    request_id: str
    user: User
    account: Account
    upstream_request: UpstreamRequest
    quota_before: float | None
    deadline: float
    started_at: float = field(default_factory=time.monotonic)


class ChatSession:
    """One opened upstream exchange. Events are relayed at most once."""

    def __init__(
        self,
        *,
        orchestrator: GatewayOrchestrator,
        context: ExchangeContext,
        response: httpx.Response,
        keep_parts: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self.context = context
        self._response = response
        self.reassembler = StreamReassembler(keep_parts=keep_parts)
        self._consumed = False
        self._finished = False

    @property
    def result(self) -> ReassembledResponse:
        return self.reassembler.result

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("ChatSession events were already consumed.")
        self._consumed = True
        chunks = self._response.aiter_bytes().__aiter__()
        try:
            while True:
                try:
                    async with asyncio.timeout_at(self.context.deadline):
                        chunk = await anext(chunks)
                except StopAsyncIteration:
                    break
                for event in self.reassembler.feed(chunk):
                    yield event
            for event in self.reassembler.close():
                yield event
        except TimeoutError:
            logger.warning(
                "upstream_stream_timeout request_id=%s cookie_id=%s",
                self.context.request_id,
                self.context.account.cookie_id,
            )
            yield self._fail("upstream_timeout", "Upstream response exceeded the time limit.")
        except httpx.HTTPError as exc:
            logger.warning(
                "upstream_stream_error request_id=%s cookie_id=%s error=%r",
                self.context.request_id,
                self.context.account.cookie_id,
                exc,
            )
            yield self._fail("upstream_stream_error", f"Upstream stream failed: {exc}")
        finally:
            await self.aclose()

    async def collect(self) -> ReassembledResponse:
        async for _ in self.events():
            pass
        return self.result

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._response.aclose()
        self._orchestrator.schedule_finalize(self)

    def _fail(self, code: str, message: str) -> StreamEvent:
        event = StreamEvent(kind="error", content=message, code=code)
        self.result.error = event
        return event


class GatewayOrchestrator:
    def __init__(
        self,
        *,
        selector: AccountSelector,
        translator: ProtocolTranslator,
        upstream: UpstreamClient,
        ledger: QuotaLedger,
        tokens: TokenLifecycleManager,
        signatures: SignatureStore,
        accounts: AccountStore,
        timeout_seconds: float = 600.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._selector = selector
        self._translator = translator
        self._upstream = upstream
        self._ledger = ledger
        self._tokens = tokens
        self._signatures = signatures
        self._accounts = accounts
        self._timeout_seconds = timeout_seconds
        self._audit_hook = audit_hook
        self._background = BackgroundTaskGroup("exchange-finalize")

    async def start_chat(self, user: User, request: ChatRequest) -> ChatSession:
        capability = self._translator.resolve_capability(request.model)
        # Parameter errors surface before any account is touched.
        self._translator.build_generation_config(request.params, capability)

        async def build(account: Account) -> UpstreamRequest:
            return await self._translator.build_request(
                messages=request.messages,
                model=request.model,
                params=request.params,
                tools=request.tools,
                tool_choice=request.tool_choice,
                user_id=user.user_id,
                account=account,
            )

        return await self._open(user, request.model, build)

    async def generate_image(
        self,
        user: User,
        *,
        model: str,
        prompt: str,
        image_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._translator.build_image_request(
            prompt=prompt, model=model, image_config=image_config
        )

        async def build(account: Account) -> UpstreamRequest:
            return self._translator.build_image_request(
                prompt=prompt, model=model, image_config=image_config, account=account
            )

        session = await self._open(user, model, build, keep_parts=True)
        result = await session.collect()
        if result.error is not None:
            if result.error.code == "RESOURCE_EXHAUSTED":
                raise QuotaExhausted(result.error.content)
            raise UpstreamRequestError(result.error.content)
        return {
            "candidates": [
                {
                    "content": {"parts": result.parts, "role": "model"},
                    "finishReason": result.finish_reason or "STOP",
                }
            ]
        }

    async def list_models(self, user: User) -> list[dict[str, Any]]:
        candidates = await self._accounts.list_accounts(
            user_id=user.user_id, enabled_only=True
        )
        if not candidates:
            candidates = await self._accounts.list_accounts(
                is_shared=True, enabled_only=True
            )
        if not candidates:
            return []
        account = candidates[0]
        try:
            quotas = await self._ledger.refresh_account_quotas(account)
        except GatewayError as exc:
            logger.warning(
                "model_list_refresh_failed cookie_id=%s code=%s fallback=stored",
                account.cookie_id,
                exc.code,
            )
            quotas = await self._ledger.list_quotas(account.cookie_id)
        created = int(time.time())
        return [
            {
                "id": quota.model_name,
                "object": "model",
                "created": created,
                "owned_by": "pool-gateway",
            }
            for quota in sorted(quotas, key=lambda item: item.model_name)
        ]

    async def _open(
        self,
        user: User,
        model: str,
        build: Callable[[Account], Awaitable[UpstreamRequest]],
        *,
        keep_parts: bool = False,
    ) -> ChatSession:
        request_id = uuid.uuid4().hex
        deadline = asyncio.get_running_loop().time() + self._timeout_seconds
        excluded: set[str] = set()
        while True:
            account = await self._selector.select_account(user, model, excluded)
            upstream_request = await build(account)
            snapshot = await self._ledger.snapshot(account, model)
            try:
                async with asyncio.timeout_at(deadline):
                    response = await self._upstream.open_stream(
                        account, upstream_request.body
                    )
            except TimeoutError as exc:
                raise UpstreamTimeout(
                    "Upstream did not respond within the time limit."
                ) from exc
            except UpstreamAuthRejected as exc:
                logger.warning(
                    "upstream_auth_rejected request_id=%s cookie_id=%s action=disable_and_reselect",
                    request_id,
                    exc.cookie_id,
                )
                await self._accounts.set_status(exc.cookie_id, enabled=False)
                excluded.add(exc.cookie_id)
                continue
            except QuotaExhausted:
                logger.warning(
                    "upstream_quota_exhausted request_id=%s cookie_id=%s model=%s",
                    request_id,
                    account.cookie_id,
                    model,
                )
                self._ledger.schedule_refresh(account)
                raise

            logger.info(
                "upstream_exchange_open request_id=%s user_id=%s cookie_id=%s model=%s upstream_model=%s",
                request_id,
                user.user_id,
                account.cookie_id,
                model,
                upstream_request.upstream_model,
            )
            context = ExchangeContext(
                request_id=request_id,
                user=user,
                account=account,
                upstream_request=upstream_request,
                quota_before=snapshot.quota if snapshot is not None else None,
                deadline=deadline,
            )
            return ChatSession(
                orchestrator=self,
                context=context,
                response=response,
                keep_parts=keep_parts,
            )

    def schedule_finalize(self, session: ChatSession) -> None:
        self._background.spawn(self._finalize(session))

    async def _finalize(self, session: ChatSession) -> None:
        context = session.context
        result = session.result
        account = context.account
        if result.signature and session.reassembler.saw_tool_calls:
            try:
                await self._signatures.put(context.user.user_id, result.signature)
            except Exception as exc:
                logger.warning(
                    "thought_signature_store_failed user_id=%s cookie_id=%s error=%r",
                    context.user.user_id,
                    account.cookie_id,
                    exc,
                )
            else:
                logger.info(
                    "thought_signature_stored user_id=%s cookie_id=%s",
                    context.user.user_id,
                    account.cookie_id,
                )

        quota_after: float | None = None
        try:
            quotas = await self._ledger.refresh_account_quotas(account)
        except GatewayError as exc:
            logger.warning(
                "quota_refresh_failed cookie_id=%s code=%s", account.cookie_id, exc.code
            )
        except Exception as exc:
            logger.warning(
                "quota_refresh_failed cookie_id=%s error=%r", account.cookie_id, exc
            )
        else:
            for quota in quotas:
                if quota.model_name == context.upstream_request.model:
                    quota_after = quota.quota
                    break

        before = context.quota_before
        if before is None or quota_after is None:
            logger.warning(
                "quota_consumption_skipped request_id=%s cookie_id=%s before=%s after=%s reason=unknown_quota",
                context.request_id,
                account.cookie_id,
                before,
                quota_after,
            )
        else:
            try:
                await self._ledger.consume_and_record(
                    user_id=context.user.user_id,
                    cookie_id=account.cookie_id,
                    model=context.upstream_request.model,
                    quota_before=before,
                    quota_after=quota_after,
                    is_shared=account.is_shared,
                )
            except Exception as exc:
                logger.warning(
                    "quota_consumption_failed request_id=%s cookie_id=%s error=%r",
                    context.request_id,
                    account.cookie_id,
                    exc,
                )

        if self._audit_hook is not None:
            self._audit_hook(
                {
                    "event": "exchange_complete",
                    "request_id": context.request_id,
                    "user_id": context.user.user_id,
                    "cookie_id": account.cookie_id,
                    "model": context.upstream_request.model,
                    "is_shared": account.is_shared,
                    "finish_reason": result.finish_reason,
                    "text_chars": len(result.text),
                    "tool_calls": len(result.tool_calls),
                    "images": len(result.images),
                    "malformed_records": session.reassembler.malformed_records,
                    "error": result.error.code if result.error else None,
                    "duration_ms": round((time.monotonic() - context.started_at) * 1000, 1),
                }
            )

    async def wait_for_background(self) -> None:
        await self._background.drain()
        await self._ledger.wait_for_refreshes()

    async def close(self) -> None:
        await self._background.drain()
        await self._ledger.close()
