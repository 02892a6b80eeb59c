from __future__ import annotations

import logging
import secrets
import uuid
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from pool_gateway.catalogs.capabilities import load_capability_table
from pool_gateway.errors import (
    AuthorizationStateError,
    GatewayError,
    InvalidRequestError,
    NotFoundError,
)
from pool_gateway.gateway.audit import JsonlAuditLogger
from pool_gateway.gateway.auth import (
    AdminRequired,
    AuthResult,
    Authenticator,
    current_auth,
    require_admin,
    require_user,
)
from pool_gateway.models import Account, User
from pool_gateway.oauth import (
    AccountAuthorizationService,
    GoogleOAuthProvider,
    PendingAuthorizations,
    parse_callback_url,
)
from pool_gateway.openai_adapter import ChatCompletionsResponseAdapter
from pool_gateway.orchestrator import ChatRequest, GatewayOrchestrator
from pool_gateway.quota import QuotaLedger
from pool_gateway.selector import AccountSelector
from pool_gateway.settings import get_settings
from pool_gateway.signatures import build_signature_store
from pool_gateway.storage.base import GatewayStore
from pool_gateway.storage.factory import build_store
from pool_gateway.tokens import TokenLifecycleManager
from pool_gateway.translator import (
    GenerationDefaults,
    GenerationParams,
    ProtocolTranslator,
)
from pool_gateway.upstream import UpstreamClient

app = FastAPI(
    title="Pool Gateway",
    description="OpenAI-compatible gateway over a pool of OAuth-authorized upstream accounts.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

AUTHENTICATED_PREFIXES = ("/v1", "/api")
PUBLIC_ROUTES = {("GET", "/api/oauth/callback")}


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    path = request.url.path
    if not path.startswith(AUTHENTICATED_PREFIXES):
        return await call_next(request)
    if (request.method, path.rstrip("/")) in PUBLIC_ROUTES:
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    audit_logger = JsonlAuditLogger(
        path=settings.gateway_audit_log_path,
        enabled=settings.gateway_audit_log_enabled,
    )
    store = build_store(settings.database_url, echo=settings.database_echo, logger=logger)
    await store.initialize()
    catalog = load_capability_table(settings.model_catalog_path)
    upstream = UpstreamClient(
        base_url=settings.upstream_base_url,
        chat_path=settings.upstream_chat_path,
        models_path=settings.upstream_models_path,
        user_agent=settings.upstream_user_agent,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    oauth_provider = GoogleOAuthProvider(
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        authorize_url=settings.oauth_authorize_url,
        token_url=settings.oauth_token_url,
        redirect_uri=settings.oauth_callback_url,
        scopes=settings.oauth_scopes_list,
        client_getter=lambda: upstream.client,
    )
    tokens = TokenLifecycleManager(
        oauth=oauth_provider,
        accounts=store,
        expiry_margin_seconds=settings.token_expiry_margin_seconds,
    )
    ledger = QuotaLedger(
        quotas=store,
        accounts=store,
        users=store,
        consumption=store,
        catalog=catalog,
        tokens=tokens,
        fetch_models=upstream.fetch_available_models,
        cache_ttl_seconds=settings.quota_cache_ttl_seconds,
        quota_per_shared_account=settings.shared_quota_per_account,
        audit_hook=audit_logger.log,
    )
    signatures = build_signature_store(
        ttl_seconds=settings.signature_ttl_seconds,
        redis_url=settings.redis_url,
        logger=logger,
    )
    translator = ProtocolTranslator(
        catalog=catalog,
        signatures=signatures,
        defaults=GenerationDefaults(
            temperature=settings.default_temperature,
            top_p=settings.default_top_p,
            top_k=settings.default_top_k,
            max_tokens=settings.default_max_tokens,
        ),
        system_instruction=settings.system_instruction,
    )
    selector = AccountSelector(accounts=store, ledger=ledger, tokens=tokens)
    orchestrator = GatewayOrchestrator(
        selector=selector,
        translator=translator,
        upstream=upstream,
        ledger=ledger,
        tokens=tokens,
        signatures=signatures,
        accounts=store,
        timeout_seconds=settings.upstream_timeout_seconds,
        audit_hook=audit_logger.log,
    )
    authorizations = AccountAuthorizationService(
        provider=oauth_provider,
        pending=PendingAuthorizations(
            ttl_seconds=settings.oauth_state_ttl_seconds,
            max_entries=settings.oauth_pending_max_entries,
        ),
        accounts=store,
        ledger=ledger,
        fetch_models=upstream.fetch_available_models,
    )

    app.state.settings = settings
    app.state.audit_logger = audit_logger
    app.state.store = store
    app.state.catalog = catalog
    app.state.upstream = upstream
    app.state.tokens = tokens
    app.state.ledger = ledger
    app.state.signatures = signatures
    app.state.translator = translator
    app.state.selector = selector
    app.state.orchestrator = orchestrator
    app.state.authorizations = authorizations
    app.state.authenticator = Authenticator(settings, store)
    logger.info(
        (
            "startup complete store=%s catalog_models=%d oauth_configured=%s "
            "audit_log_enabled=%s audit_log_path=%s"
        ),
        type(store).__name__,
        len(catalog.model_ids),
        settings.oauth_is_configured,
        settings.gateway_audit_log_enabled,
        settings.gateway_audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    orchestrator: GatewayOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.close()
    upstream: UpstreamClient | None = getattr(app.state, "upstream", None)
    if upstream is not None:
        await upstream.close()
    store: GatewayStore | None = getattr(app.state, "store", None)
    if store is not None:
        await store.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")
    return payload


def _required_bool(payload: dict[str, Any], field: str) -> bool:
    value = payload.get(field)
    if not isinstance(value, bool):
        raise InvalidRequestError(f"'{field}' must be a boolean.", param=field)
    return value


def _optional_float_query(request: Request, name: str) -> float | None:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"'{name}' must be a number.", param=name) from exc


def _ensure_owner_or_admin(auth: AuthResult, owner_id: str) -> None:
    if auth.is_admin:
        return
    if auth.user is None or auth.user.user_id != owner_id:
        raise AdminRequired("Only the owner or an administrator may do this.")


async def _owned_account(request: Request, cookie_id: str) -> Account:
    store: GatewayStore = app.state.store
    account = await store.get_account(cookie_id)
    if account is None:
        raise NotFoundError(f"Account '{cookie_id}' does not exist.")
    _ensure_owner_or_admin(current_auth(request), account.user_id)
    return account


async def _recompute_shared_ceilings(cookie_id: str) -> None:
    ledger: QuotaLedger = app.state.ledger
    quotas = await ledger.list_quotas(cookie_id)
    await ledger.recompute_ceilings_for_all_users([quota.model_name for quota in quotas])


def _prompt_from_contents(contents: Any) -> str:
    fragments: list[str] = []
    if not isinstance(contents, list):
        return ""
    for content in contents:
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                fragments.append(part["text"])
    return "\n".join(fragments)


def _image_config_from_generation(generation_config: Any) -> dict[str, Any] | None:
    if not isinstance(generation_config, dict):
        return None
    image_config = generation_config.get("imageConfig")
    if not isinstance(image_config, dict):
        return None
    return {
        "aspect_ratio": image_config.get("aspectRatio"),
        "image_size": image_config.get("imageSize"),
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models(request: Request) -> dict[str, Any]:
    user = require_user(request)
    orchestrator: GatewayOrchestrator = app.state.orchestrator
    return {"object": "list", "data": await orchestrator.list_models(user)}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    user = require_user(request)
    payload = await _read_json_object(request)
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("'messages' must be a non-empty list.", param="messages")
    chat_request = ChatRequest(
        model=str(payload.get("model") or ""),
        messages=messages,
        params=GenerationParams.from_payload(payload),
        tools=payload.get("tools"),
        tool_choice=payload.get("tool_choice"),
    )
    orchestrator: GatewayOrchestrator = app.state.orchestrator
    session = await orchestrator.start_chat(user, chat_request)
    if bool(payload.get("stream")):
        return StreamingResponse(
            ChatCompletionsResponseAdapter.stream(session, chat_request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
    result = await session.collect()
    return JSONResponse(
        content=ChatCompletionsResponseAdapter.completion(
            result, chat_request, request_id=session.context.request_id
        )
    )


@app.post("/v1beta/models/{model_action}")
async def generate_content(model_action: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    model, _, action = model_action.partition(":")
    if action != "generateContent":
        raise NotFoundError(f"Unsupported model action '{action or model_action}'.")
    payload = await _read_json_object(request)
    orchestrator: GatewayOrchestrator = app.state.orchestrator
    return await orchestrator.generate_image(
        user,
        model=model,
        prompt=_prompt_from_contents(payload.get("contents")),
        image_config=_image_config_from_generation(payload.get("generationConfig")),
    )


@app.post("/api/oauth/authorize")
async def oauth_authorize(request: Request) -> dict[str, Any]:
    user = require_user(request)
    payload = await _read_json_object(request)
    if not app.state.settings.oauth_is_configured:
        raise GatewayError("OAuth client is not configured.", status_code=503)
    authorizations: AccountAuthorizationService = app.state.authorizations
    return authorizations.begin(user.user_id, is_shared=bool(payload.get("is_shared")))


@app.get("/api/oauth/callback")
async def oauth_callback(request: Request) -> dict[str, Any]:
    params = request.query_params
    if params.get("error"):
        raise AuthorizationStateError(f"Authorization was denied: {params['error']}")
    code = params.get("code") or ""
    state = params.get("state") or ""
    if not code or not state:
        raise AuthorizationStateError("Callback is missing code or state.")
    authorizations: AccountAuthorizationService = app.state.authorizations
    account = await authorizations.complete(code=code, state=state)
    return {"account": account.to_public_dict()}


@app.post("/api/oauth/callback/manual")
async def oauth_callback_manual(request: Request) -> dict[str, Any]:
    require_user(request)
    payload = await _read_json_object(request)
    callback_url = payload.get("callback_url")
    if not isinstance(callback_url, str) or not callback_url.strip():
        raise InvalidRequestError("'callback_url' is required.", param="callback_url")
    code, state = parse_callback_url(callback_url.strip())
    authorizations: AccountAuthorizationService = app.state.authorizations
    account = await authorizations.complete(code=code, state=state)
    return {"account": account.to_public_dict()}


@app.get("/api/accounts")
async def list_accounts(request: Request) -> dict[str, Any]:
    auth = current_auth(request)
    store: GatewayStore = app.state.store
    if auth.is_admin:
        accounts = await store.list_accounts()
    else:
        user = require_user(request)
        accounts = await store.list_accounts(user_id=user.user_id)
    return {"data": [account.to_public_dict() for account in accounts]}


@app.get("/api/accounts/{cookie_id}/quotas")
async def account_quotas(cookie_id: str, request: Request) -> dict[str, Any]:
    await _owned_account(request, cookie_id)
    ledger: QuotaLedger = app.state.ledger
    quotas = await ledger.list_quotas(cookie_id)
    return {"cookie_id": cookie_id, "data": [quota.to_dict() for quota in quotas]}


@app.put("/api/accounts/{cookie_id}/status")
async def account_status(cookie_id: str, request: Request) -> dict[str, Any]:
    account = await _owned_account(request, cookie_id)
    enabled = _required_bool(await _read_json_object(request), "enabled")
    store: GatewayStore = app.state.store
    updated = await store.set_status(cookie_id, enabled=enabled)
    if updated is None:
        raise NotFoundError(f"Account '{cookie_id}' does not exist.")
    logger.info("account_status_changed cookie_id=%s enabled=%s", cookie_id, enabled)
    if account.is_shared:
        await _recompute_shared_ceilings(cookie_id)
    return {"account": updated.to_public_dict()}


@app.put("/api/accounts/{cookie_id}/quotas/{model_name}/status")
async def account_quota_status(
    cookie_id: str, model_name: str, request: Request
) -> dict[str, Any]:
    await _owned_account(request, cookie_id)
    available = _required_bool(await _read_json_object(request), "available")
    store: GatewayStore = app.state.store
    quota = await store.set_quota_status(cookie_id, model_name, available=available)
    if quota is None:
        raise NotFoundError(f"No quota for model '{model_name}' on account '{cookie_id}'.")
    logger.info(
        "quota_status_changed cookie_id=%s model=%s available=%s",
        cookie_id,
        model_name,
        available,
    )
    return {"quota": quota.to_dict()}


@app.delete("/api/accounts/{cookie_id}")
async def delete_account(cookie_id: str, request: Request) -> dict[str, Any]:
    account = await _owned_account(request, cookie_id)
    ledger: QuotaLedger = app.state.ledger
    store: GatewayStore = app.state.store
    models_before = [quota.model_name for quota in await ledger.list_quotas(cookie_id)]
    deleted = await store.delete_account(cookie_id)
    logger.info("account_deleted cookie_id=%s deleted=%s", cookie_id, deleted)
    if account.is_shared and models_before:
        await ledger.recompute_ceilings_for_all_users(models_before)
    return {"deleted": deleted, "cookie_id": cookie_id}


@app.get("/api/quotas/user")
async def user_quotas(request: Request) -> dict[str, Any]:
    user = require_user(request)
    store: GatewayStore = app.state.store
    pools = await store.list_shared_pools(user.user_id)
    return {"user_id": user.user_id, "data": [pool.to_dict() for pool in pools]}


@app.get("/api/quotas/shared-pool")
async def shared_pool(request: Request) -> dict[str, Any]:
    ledger: QuotaLedger = app.state.ledger
    summaries = await ledger.shared_pool_overview()
    return {"data": [summary.to_dict() for summary in summaries]}


@app.get("/api/quotas/consumption")
async def consumption(request: Request) -> dict[str, Any]:
    auth = current_auth(request)
    if auth.is_admin:
        user_id = request.query_params.get("user_id") or ""
        if not user_id:
            raise InvalidRequestError("'user_id' is required for admin queries.", param="user_id")
    else:
        user_id = require_user(request).user_id
    try:
        limit = int(request.query_params.get("limit") or 100)
    except ValueError as exc:
        raise InvalidRequestError("'limit' must be an integer.", param="limit") from exc
    store: GatewayStore = app.state.store
    records = await store.list_for_user(
        user_id,
        limit=max(1, min(limit, 1000)),
        since=_optional_float_query(request, "since"),
        until=_optional_float_query(request, "until"),
    )
    return {"user_id": user_id, "data": [record.to_dict() for record in records]}


@app.post("/api/users")
async def create_user(request: Request) -> dict[str, Any]:
    require_admin(request)
    payload = await _read_json_object(request)
    name = payload.get("name")
    user = User(
        user_id=uuid.uuid4().hex,
        api_key=f"sk-{secrets.token_hex(24)}",
        name=name if isinstance(name, str) else None,
        prefer_shared=bool(payload.get("prefer_shared", False)),
    )
    store: GatewayStore = app.state.store
    user = await store.create_user(user)
    ledger: QuotaLedger = app.state.ledger
    for summary in await ledger.shared_pool_overview():
        await ledger.recompute_shared_ceiling(user.user_id, summary.model_name)
    logger.info("user_created user_id=%s prefer_shared=%s", user.user_id, user.prefer_shared)
    return {"user": user.to_public_dict(), "api_key": user.api_key}


@app.get("/api/users")
async def list_users(request: Request) -> dict[str, Any]:
    require_admin(request)
    store: GatewayStore = app.state.store
    users = await store.list_users()
    return {"data": [user.to_public_dict() for user in users]}


@app.put("/api/users/{user_id}/status")
async def user_status(user_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    enabled = _required_bool(await _read_json_object(request), "enabled")
    store: GatewayStore = app.state.store
    user = await store.update_user(user_id, enabled=enabled)
    if user is None:
        raise NotFoundError(f"User '{user_id}' does not exist.")
    logger.info("user_status_changed user_id=%s enabled=%s", user_id, enabled)
    return {"user": user.to_public_dict()}


@app.put("/api/users/{user_id}/preference")
async def user_preference(user_id: str, request: Request) -> dict[str, Any]:
    _ensure_owner_or_admin(current_auth(request), user_id)
    prefer_shared = _required_bool(await _read_json_object(request), "prefer_shared")
    store: GatewayStore = app.state.store
    user = await store.update_user(user_id, prefer_shared=prefer_shared)
    if user is None:
        raise NotFoundError(f"User '{user_id}' does not exist.")
    return {"user": user.to_public_dict()}


@app.delete("/api/users/{user_id}")
async def delete_user(user_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    store: GatewayStore = app.state.store
    deleted = await store.delete_user(user_id)
    if not deleted:
        raise NotFoundError(f"User '{user_id}' does not exist.")
    logger.info("user_deleted user_id=%s", user_id)
    return {"deleted": True, "user_id": user_id}


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def run() -> None:
    import uvicorn

    uvicorn.run("pool_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
