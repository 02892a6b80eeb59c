from __future__ import annotations

import codecs
import json
import logging
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

from pool_gateway.errors import MalformedUpstreamChunk

logger = logging.getLogger("uvicorn.error")

EventKind = Literal["text", "reasoning", "image", "tool_calls", "error"]


@dataclass(slots=True)
class StreamEvent:
    kind: EventKind
    content: str = ""
    image: dict[str, str] | None = None
    tool_calls: list[dict[str, Any]] | None = None
    code: str | None = None


@dataclass(slots=True)
class ReassembledResponse:
    text: str = ""
    reasoning: str = ""
    images: list[dict[str, str]] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    parts: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str | None = None
    signature: str | None = None
    error: StreamEvent | None = None


def _tool_call_from_part(function_call: dict[str, Any]) -> dict[str, Any]:
    call_id = function_call.get("id")
    if not isinstance(call_id, str) or not call_id:
        call_id = f"call_{uuid.uuid4().hex[:24]}"
    args = function_call.get("args")
    return {
        "id": call_id,
        "type": "function",
        "function": {
            "name": str(function_call.get("name") or ""),
            "arguments": json.dumps(args if args is not None else {}, ensure_ascii=False),
        },
    }


def parse_data_line(line: str) -> dict[str, Any] | None:
    """Decode one SSE line; ``None`` for lines that carry no record."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except ValueError as exc:
        raise MalformedUpstreamChunk(f"invalid JSON record: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedUpstreamChunk("record is not a JSON object")
    return parsed


class StreamReassembler:
    """Turns upstream SSE bytes into typed events.

    Bytes may arrive split at any offset, including inside a UTF-8 sequence
    or a JSON record; only complete lines are interpreted. Single use.
    """

    def __init__(self, *, keep_parts: bool = False) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_calls: list[dict[str, Any]] = []
        self._keep_parts = keep_parts
        self._closed = False
        self.result = ReassembledResponse()
        self.malformed_records = 0
        self.saw_tool_calls = False

    @property
    def signature(self) -> str | None:
        return self.result.signature

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._closed:
            raise RuntimeError("StreamReassembler is already closed.")
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._process_line(line))
        return events

    def close(self) -> list[StreamEvent]:
        if self._closed:
            return []
        self._closed = True
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events: list[StreamEvent] = []
        for line in tail.split("\n"):
            events.extend(self._process_line(line))
        return events

    async def iter_events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
        for event in self.close():
            yield event

    def _process_line(self, raw_line: str) -> list[StreamEvent]:
        line = raw_line.rstrip("\r")
        try:
            record = parse_data_line(line)
        except MalformedUpstreamChunk as exc:
            self.malformed_records += 1
            logger.warning(
                "upstream_stream_malformed_record count=%d error=%s",
                self.malformed_records,
                exc,
            )
            return []
        if record is None:
            return []
        return self._process_record(record)

    def _process_record(self, record: dict[str, Any]) -> list[StreamEvent]:
        error = record.get("error")
        if isinstance(error, dict):
            event = StreamEvent(
                kind="error",
                content=str(error.get("message") or "Upstream reported an error."),
                code=str(error.get("status") or error.get("code") or "upstream_error"),
            )
            self.result.error = event
            return [event]

        response = record.get("response", record)
        candidates = response.get("candidates") if isinstance(response, dict) else None
        if not isinstance(candidates, list) or not candidates:
            return []
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None

        events: list[StreamEvent] = []
        for part in parts if isinstance(parts, list) else []:
            if not isinstance(part, dict):
                continue
            events.extend(self._process_part(part))

        finish_reason = candidate.get("finishReason")
        if isinstance(finish_reason, str) and finish_reason:
            self.result.finish_reason = finish_reason
            if self._pending_calls:
                calls, self._pending_calls = self._pending_calls, []
                self.result.tool_calls.extend(calls)
                self.saw_tool_calls = True
                events.append(StreamEvent(kind="tool_calls", tool_calls=calls))
        return events

    def _process_part(self, part: dict[str, Any]) -> list[StreamEvent]:
        if self._keep_parts:
            self.result.parts.append(part)
        signature = part.get("thoughtSignature")
        if self.result.signature is None and isinstance(signature, str) and signature:
            self.result.signature = signature

        text = part.get("text")
        if part.get("thought") is True:
            reasoning = text if isinstance(text, str) else ""
            self.result.reasoning += reasoning
            return [StreamEvent(kind="reasoning", content=reasoning)]
        if isinstance(text, str) and text.strip():
            self.result.text += text
            return [StreamEvent(kind="text", content=text)]
        inline_data = part.get("inlineData")
        if isinstance(inline_data, dict) and inline_data.get("data"):
            image = {
                "mimeType": str(inline_data.get("mimeType") or "image/png"),
                "data": str(inline_data["data"]),
            }
            self.result.images.append(image)
            return [StreamEvent(kind="image", image=image)]
        function_call = part.get("functionCall")
        if isinstance(function_call, dict):
            self._pending_calls.append(_tool_call_from_part(function_call))
        return []
