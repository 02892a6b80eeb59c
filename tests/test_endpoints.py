from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from pool_gateway.main import app
from pool_gateway.models import Account
from pool_gateway.upstream import UpstreamClient
from tests.client_test_utils import (
    admin_headers,
    bearer,
    build_test_client,
    create_user,
)
from tests.gateway_test_utils import (
    make_account,
    models_payload,
    seed_quota,
    sse,
    text_record,
)

MODEL = "gemini-2.5-flash"


@pytest.fixture
def upstream_calls(monkeypatch: Any) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    async def fake_open_stream(
        self: UpstreamClient, account: Account, body: dict[str, Any]
    ) -> httpx.Response:
        calls.append({"cookie_id": account.cookie_id, "body": body})
        return httpx.Response(
            200, content=sse(text_record("Hello "), text_record("world", finish_reason="STOP"))
        )

    async def fake_fetch_models(
        self: UpstreamClient, access_token: str, project_id: str | None = None
    ) -> dict[str, Any]:
        return models_payload({MODEL: 0.9, "gemini-2.5-pro": 1.0})

    monkeypatch.setattr(UpstreamClient, "open_stream", fake_open_stream)
    monkeypatch.setattr(UpstreamClient, "fetch_available_models", fake_fetch_models)
    return calls


def _seed_account(account: Account, *models: str) -> None:
    async def seed() -> None:
        store = app.state.store
        await store.upsert_account(account)
        for model in models:
            await seed_quota(store, account.cookie_id, model)

    asyncio.run(seed())


def _chat(client: TestClient, api_key: str, **payload: Any) -> httpx.Response:
    body = {"model": MODEL, "messages": [{"role": "user", "content": "hi"}]}
    body.update(payload)
    return client.post("/v1/chat/completions", json=body, headers=bearer(api_key))


def test_chat_completion_non_streaming(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=user_id), MODEL)

        response = _chat(client, api_key, temperature=0.3)

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"]["content"] == "Hello world"
        assert body["choices"][0]["finish_reason"] == "stop"
        assert upstream_calls[0]["cookie_id"] == "acct-1"
        config = upstream_calls[0]["body"]["request"]["generationConfig"]
        assert config["temperature"] == 0.3


def test_chat_completion_streaming(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=user_id), MODEL)

        response = _chat(client, api_key, stream=True)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        lines = [line for line in response.text.split("\n\n") if line]
        assert lines[-1] == "data: [DONE]"
        deltas = [
            json.loads(line[len("data: ") :])["choices"][0]["delta"] for line in lines[:-1]
        ]
        assert "".join(delta.get("content", "") for delta in deltas) == "Hello world"


def test_chat_errors_use_openai_envelope(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        _, api_key = create_user(client)

        no_messages = _chat(client, api_key, messages=[])
        internal_model = _chat(client, api_key, model="chat_20706")
        no_capacity = _chat(client, api_key)

        assert no_messages.status_code == 400
        assert no_messages.json()["error"]["param"] == "messages"
        assert internal_model.status_code == 400
        assert internal_model.json()["error"]["code"] == "unsupported_model_request"
        assert no_capacity.status_code == 503
        assert no_capacity.json()["error"]["code"] == "no_capacity"
        assert upstream_calls == []


def test_models_endpoint_lists_account_models(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=user_id))

        response = client.get("/v1/models", headers=bearer(api_key))

        assert response.status_code == 200
        assert [item["id"] for item in response.json()["data"]] == [MODEL, "gemini-2.5-pro"]


def test_image_generation_route_validates_action(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        _, api_key = create_user(client)

        response = client.post(
            "/v1beta/models/gemini-3-pro-image:countTokens",
            json={"contents": []},
            headers=bearer(api_key),
        )

        assert response.status_code == 404


def test_oauth_authorize_returns_consent_url(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        _, api_key = create_user(client)

        response = client.post(
            "/api/oauth/authorize", json={"is_shared": True}, headers=bearer(api_key)
        )

        assert response.status_code == 200
        body = response.json()
        assert "client_id=test-client" in body["auth_url"]
        assert body["state"] in body["auth_url"]


def test_oauth_authorize_requires_configured_client(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, OAUTH_CLIENT_ID="") as client:
        _, api_key = create_user(client)

        response = client.post("/api/oauth/authorize", json={}, headers=bearer(api_key))

        assert response.status_code == 503


def test_account_management_is_limited_to_owner_or_admin(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        owner_id, owner_key = create_user(client)
        _, other_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=owner_id), MODEL)

        assert client.get("/api/accounts/acct-1/quotas", headers=bearer(other_key)).status_code == 403
        quotas = client.get("/api/accounts/acct-1/quotas", headers=bearer(owner_key))
        assert quotas.status_code == 200
        assert [item["model_name"] for item in quotas.json()["data"]] == [MODEL]

        own = client.get("/api/accounts", headers=bearer(owner_key)).json()["data"]
        assert [item["cookie_id"] for item in own] == ["acct-1"]
        assert "access_token" not in own[0]
        assert client.get("/api/accounts", headers=bearer(other_key)).json()["data"] == []

        toggled = client.put(
            f"/api/accounts/acct-1/quotas/{MODEL}/status",
            json={"available": False},
            headers=bearer(owner_key),
        )
        assert toggled.json()["quota"]["available"] is False

        disabled = client.put(
            "/api/accounts/acct-1/status", json={"enabled": False}, headers=admin_headers()
        )
        assert disabled.json()["account"]["enabled"] is False

        bad = client.put(
            "/api/accounts/acct-1/status", json={"enabled": "no"}, headers=bearer(owner_key)
        )
        assert bad.status_code == 400

        deleted = client.delete("/api/accounts/acct-1", headers=bearer(owner_key))
        assert deleted.json() == {"deleted": True, "cookie_id": "acct-1"}
        assert client.delete("/api/accounts/acct-1", headers=bearer(owner_key)).status_code == 404


def test_new_users_receive_shared_ceiling(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        owner_id, _ = create_user(client)
        _seed_account(make_account("shared-1", user_id=owner_id, is_shared=True), MODEL)

        _, api_key = create_user(client)
        quotas = client.get("/api/quotas/user", headers=bearer(api_key)).json()["data"]
        overview = client.get("/api/quotas/shared-pool", headers=bearer(api_key)).json()["data"]

        assert [(item["model_name"], item["quota"]) for item in quotas] == [(MODEL, 2.0)]
        assert overview[0]["model_name"] == MODEL
        assert overview[0]["available_accounts"] == 1


def test_consumption_history_requires_user_for_admin(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)

        missing = client.get("/api/quotas/consumption", headers=admin_headers())
        as_admin = client.get(
            "/api/quotas/consumption", params={"user_id": user_id}, headers=admin_headers()
        )
        as_user = client.get(
            "/api/quotas/consumption", params={"since": "abc"}, headers=bearer(api_key)
        )

        assert missing.status_code == 400
        assert as_admin.json() == {"user_id": user_id, "data": []}
        assert as_user.status_code == 400
        assert as_user.json()["error"]["param"] == "since"


def test_user_administration(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client, name="alice", prefer_shared=True)
        other_id, _ = create_user(client)

        listed = client.get("/api/users", headers=admin_headers()).json()["data"]
        assert {item["user_id"] for item in listed} == {user_id, other_id}
        assert all("api_key" not in item for item in listed)

        own = client.put(
            f"/api/users/{user_id}/preference",
            json={"prefer_shared": False},
            headers=bearer(api_key),
        )
        assert own.json()["user"]["prefer_shared"] is False
        foreign = client.put(
            f"/api/users/{other_id}/preference",
            json={"prefer_shared": True},
            headers=bearer(api_key),
        )
        assert foreign.status_code == 403

        assert client.delete(f"/api/users/{other_id}", headers=admin_headers()).status_code == 200
        assert client.delete(f"/api/users/{other_id}", headers=admin_headers()).status_code == 404


def test_generate_content_forwards_image_config(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=user_id), "gemini-3-pro-image")

        response = client.post(
            "/v1beta/models/gemini-3-pro-image:generateContent",
            json={
                "contents": [{"role": "user", "parts": [{"text": "a fox"}]}],
                "generationConfig": {
                    "imageConfig": {"aspectRatio": "16:9", "imageSize": "4K"}
                },
            },
            headers=bearer(api_key),
        )

        assert response.status_code == 200, response.text
        config = upstream_calls[0]["body"]["request"]["generationConfig"]
        assert config["imageConfig"] == {"aspectRatio": "16:9", "imageSize": "4K"}


def test_generate_content_rejects_image_size_for_flash_image(
    monkeypatch: Any, upstream_calls: list[dict[str, Any]]
) -> None:
    with build_test_client(monkeypatch) as client:
        user_id, api_key = create_user(client)
        _seed_account(make_account("acct-1", user_id=user_id), "gemini-2.5-flash-image")

        response = client.post(
            "/v1beta/models/gemini-2.5-flash-image:generateContent",
            json={
                "contents": [{"role": "user", "parts": [{"text": "a fox"}]}],
                "generationConfig": {"imageConfig": {"imageSize": "2K"}},
            },
            headers=bearer(api_key),
        )

        assert response.status_code == 400
        assert response.json()["error"]["param"] == "image_size"
        assert upstream_calls == []
