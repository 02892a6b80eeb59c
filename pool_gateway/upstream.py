from __future__ import annotations

import logging
from typing import Any

import httpx

from pool_gateway.errors import (
    GatewayError,
    QuotaExhausted,
    UpstreamAuthRejected,
    UpstreamRequestError,
)
from pool_gateway.models import Account

logger = logging.getLogger("uvicorn.error")

QUOTA_MARKERS = ("RESOURCE_EXHAUSTED", "quota")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    details: dict[str, Any] = {"error_type": type(exc).__name__}
    message = str(exc).strip()
    if message:
        details["error"] = message
    return details


def classify_failure(
    status_code: int, body: str, *, cookie_id: str
) -> GatewayError:
    if status_code == 403:
        return UpstreamAuthRejected(
            "Upstream rejected the account credentials.", cookie_id=cookie_id
        )
    if status_code == 429 or any(marker in body for marker in QUOTA_MARKERS):
        return QuotaExhausted("Upstream quota exhausted (RESOURCE_EXHAUSTED).")
    snippet = body.strip()[:500]
    return UpstreamRequestError(
        f"Upstream returned status {status_code}" + (f": {snippet}" if snippet else "."),
        upstream_status=status_code,
    )


class UpstreamClient:
    """HTTP access to the upstream content API for one account at a time."""

    def __init__(
        self,
        *,
        base_url: str,
        chat_path: str,
        models_path: str,
        user_agent: str,
        timeout_seconds: float = 600.0,
        connect_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._chat_path = chat_path
        self._models_path = models_path
        self._user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "Accept-Encoding": "gzip",
        }

    async def open_stream(self, account: Account, body: dict[str, Any]) -> httpx.Response:
        """Send a generation request; the caller owns and must close the response.

        Non-success statuses are read, closed and raised as gateway errors.
        """
        request = self._client.build_request(
            "POST",
            self._base_url + self._chat_path,
            json=body,
            headers=self._headers(account.access_token),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_request_error cookie_id=%s details=%s",
                account.cookie_id,
                _request_error_details(exc),
            )
            raise UpstreamRequestError(f"Upstream request failed: {exc}") from exc

        if response.status_code < 400:
            return response

        try:
            raw = await response.aread()
        finally:
            await response.aclose()
        text = raw.decode("utf-8", errors="replace")
        logger.warning(
            "upstream_error_status cookie_id=%s status=%d",
            account.cookie_id,
            response.status_code,
        )
        raise classify_failure(response.status_code, text, cookie_id=account.cookie_id)

    async def fetch_available_models(
        self, access_token: str, project_id: str | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._base_url + self._models_path,
                json={"project": project_id} if project_id else {},
                headers=self._headers(access_token),
            )
        except httpx.RequestError as exc:
            raise UpstreamRequestError(f"Model list request failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamRequestError(
                f"Model list request failed with status {response.status_code}.",
                upstream_status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamRequestError("Model list response was not valid JSON.") from exc
        return payload if isinstance(payload, dict) else {}

    async def close(self) -> None:
        await self._client.aclose()
