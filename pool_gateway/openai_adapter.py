from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from pool_gateway.errors import (
    GatewayError,
    QuotaExhausted,
    UpstreamRequestError,
    UpstreamTimeout,
)
from pool_gateway.stream import ReassembledResponse, StreamEvent
from pool_gateway.usage import build_usage

if TYPE_CHECKING:
    from pool_gateway.orchestrator import ChatRequest, ChatSession

logger = logging.getLogger("uvicorn.error")

DONE_LINE = b"data: [DONE]\n\n"


def image_markdown(image: dict[str, str]) -> str:
    return f"\n![image](data:{image['mimeType']};base64,{image['data']})\n"


def error_from_event(event: StreamEvent) -> GatewayError:
    if event.code == "RESOURCE_EXHAUSTED":
        return QuotaExhausted(event.content)
    if event.code == "upstream_timeout":
        return UpstreamTimeout(event.content)
    return UpstreamRequestError(event.content)


class ChatCompletionsResponseAdapter:
    """Renders reassembled upstream events as OpenAI chat completion payloads."""

    @staticmethod
    def chunk(
        completion_id: str,
        created: int,
        model: str,
        delta: dict[str, Any],
        finish_reason: str | None = None,
        **extra: Any,
    ) -> bytes:
        payload: dict[str, Any] = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }
        payload.update(extra)
        return f"data: {json.dumps(payload, separators=(',', ':'), ensure_ascii=False)}\n\n".encode(
            "utf-8"
        )

    @staticmethod
    def tool_calls_delta(tool_calls: list[dict[str, Any]], start_index: int) -> dict[str, Any]:
        return {
            "tool_calls": [
                {
                    "index": start_index + offset,
                    "id": call["id"],
                    "type": "function",
                    "function": {
                        "name": call["function"]["name"],
                        "arguments": call["function"]["arguments"],
                    },
                }
                for offset, call in enumerate(tool_calls)
            ]
        }

    @classmethod
    async def stream(
        cls, session: ChatSession, request: ChatRequest
    ) -> AsyncIterator[bytes]:
        completion_id = f"chatcmpl-{session.context.request_id}"
        created = int(time.time())
        model = request.model
        tool_call_count = 0

        yield cls.chunk(completion_id, created, model, {"role": "assistant", "content": ""})
        async for event in session.events():
            if event.kind == "text":
                yield cls.chunk(completion_id, created, model, {"content": event.content})
            elif event.kind == "reasoning":
                yield cls.chunk(
                    completion_id, created, model, {"reasoning_content": event.content}
                )
            elif event.kind == "tool_calls" and event.tool_calls:
                yield cls.chunk(
                    completion_id,
                    created,
                    model,
                    cls.tool_calls_delta(event.tool_calls, tool_call_count),
                )
                tool_call_count += len(event.tool_calls)
            elif event.kind == "error":
                error = error_from_event(event)
                yield cls.chunk(
                    completion_id,
                    created,
                    model,
                    {"content": f"\n\nError: {event.content}"},
                    error=error.to_payload()["error"],
                )

        result = session.result
        for image in result.images:
            yield cls.chunk(completion_id, created, model, {"content": image_markdown(image)})

        finish_reason = "tool_calls" if result.tool_calls else "stop"
        usage = build_usage(request.messages, result.text, result.tool_calls, model)
        yield cls.chunk(completion_id, created, model, {}, finish_reason, usage=usage)
        yield DONE_LINE
        logger.info(
            "chat_stream_complete request_id=%s model=%s text_chars=%d tool_calls=%d finish_reason=%s",
            session.context.request_id,
            model,
            len(result.text),
            len(result.tool_calls),
            finish_reason,
        )

    @classmethod
    def completion(
        cls,
        result: ReassembledResponse,
        request: ChatRequest,
        *,
        request_id: str,
    ) -> dict[str, Any]:
        if result.error is not None and not (result.text or result.tool_calls):
            raise error_from_event(result.error)

        content = result.text + "".join(image_markdown(image) for image in result.images)
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if result.reasoning:
            message["reasoning_content"] = result.reasoning
        if result.tool_calls:
            message["tool_calls"] = result.tool_calls
        finish_reason = "tool_calls" if result.tool_calls else "stop"
        return {
            "id": f"chatcmpl-{request_id}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": request.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": finish_reason,
                }
            ],
            "usage": build_usage(
                request.messages, result.text, result.tool_calls, request.model
            ),
        }
