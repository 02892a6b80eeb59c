from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import tiktoken

from pool_gateway.translator import extract_content

logger = logging.getLogger("uvicorn.error")

CHARS_PER_TOKEN = 4


@lru_cache(maxsize=32)
def _resolve_token_encoder(model_hint: str | None) -> Any | None:
    if isinstance(model_hint, str) and model_hint.strip():
        try:
            return tiktoken.encoding_for_model(model_hint.strip())
        except KeyError:
            pass
    try:
        return tiktoken.get_encoding("cl100k_base")
    except (KeyError, ValueError, OSError) as exc:
        # Encodings are downloaded on first use; offline hosts fall back to a heuristic.
        logger.warning("token_encoder_unavailable reason=%r fallback=char_heuristic", exc)
        return None


def count_tokens(text: str, model: str | None = None) -> int:
    if not text:
        return 0
    encoder = _resolve_token_encoder(model)
    if encoder is None:
        return max(1, (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN)
    return len(encoder.encode(text, disallowed_special=()))


def prompt_text(messages: list[dict[str, Any]]) -> str:
    fragments: list[str] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        text, _ = extract_content(message.get("content"))
        if text:
            fragments.append(text)
    return "\n".join(fragments)


def completion_text(content: str, tool_calls: list[dict[str, Any]]) -> str:
    fragments = [content] if content else []
    for call in tool_calls:
        function = call.get("function") if isinstance(call, dict) else None
        if not isinstance(function, dict):
            continue
        fragments.append(str(function.get("name") or ""))
        fragments.append(str(function.get("arguments") or ""))
    return "".join(fragments)


def build_usage(
    messages: list[dict[str, Any]],
    content: str,
    tool_calls: list[dict[str, Any]],
    model: str | None = None,
) -> dict[str, int]:
    prompt_tokens = count_tokens(prompt_text(messages), model)
    completion_tokens = count_tokens(completion_text(content, tool_calls), model)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }
