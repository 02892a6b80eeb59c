from __future__ import annotations

import json
import logging
import random
import re
import secrets
import string
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pool_gateway.errors import InvalidRequestError, UnsupportedModelRequest
from pool_gateway.tool_schema import convert_openai_tools

if TYPE_CHECKING:
    from pool_gateway.catalogs.capabilities import ModelCapability, ModelCapabilityTable
    from pool_gateway.models import Account
    from pool_gateway.signatures import SignatureStore

logger = logging.getLogger("uvicorn.error")

DATA_URI_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)
THINK_BLOCK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
IMAGE_MARKDOWN_RE = re.compile(r"!\[[^\]]*\]\(data:image/[^)]+\)")
EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")

STOP_SEQUENCES = [
    "<|user|>",
    "<|bot|>",
    "<|context_request|>",
    "<|endoftext|>",
    "<|end_of_turn|>",
]
THINKING_BUDGET_TOKENS = 1024
THINKING_MIN_OUTPUT_TOKENS = 2048
SIGNED_PLACEHOLDER_TEXT = "..."
UPSTREAM_USER_AGENT = "antigravity"

_PROJECT_ADJECTIVES = ("useful", "bright", "swift", "calm", "bold")
_PROJECT_NOUNS = ("fuze", "wave", "spark", "flow", "core")

TOOL_CHOICE_MODES = {"none": "NONE", "required": "ANY"}


@dataclass(slots=True)
class GenerationDefaults:
    temperature: float = 1.0
    top_p: float = 0.85
    top_k: int = 50
    max_tokens: int = 8096


@dataclass(slots=True)
class GenerationParams:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    image_config: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> GenerationParams:
        max_tokens = payload.get("max_tokens")
        if max_tokens is None:
            max_tokens = payload.get("max_completion_tokens")
        image_config = payload.get("image_config")
        return cls(
            temperature=_optional_float(payload.get("temperature")),
            top_p=_optional_float(payload.get("top_p")),
            top_k=_optional_int(payload.get("top_k")),
            max_tokens=_optional_int(max_tokens),
            image_config=image_config if isinstance(image_config, dict) else None,
        )


@dataclass(slots=True)
class UpstreamRequest:
    body: dict[str, Any]
    model: str
    upstream_model: str
    capability: ModelCapability
    thinking: bool


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def generate_request_id() -> str:
    return f"agent-{uuid.uuid4()}"


def generate_session_id() -> str:
    return str(-random.randint(1, 9_000_000_000_000_000_000))


def generate_project_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(5))
    return f"{secrets.choice(_PROJECT_ADJECTIVES)}-{secrets.choice(_PROJECT_NOUNS)}-{suffix}"


def has_tool_interaction(messages: list[dict[str, Any]]) -> bool:
    for message in messages:
        if not isinstance(message, dict):
            continue
        if message.get("role") == "tool":
            return True
        if message.get("role") == "assistant" and message.get("tool_calls"):
            return True
    return False


def extract_content(content: Any) -> tuple[str, list[dict[str, Any]]]:
    """Split OpenAI message content into plain text and inline image parts."""
    if content is None:
        return "", []
    if isinstance(content, str):
        return content, []
    if not isinstance(content, list):
        return str(content), []

    text_fragments: list[str] = []
    images: list[dict[str, Any]] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text" and isinstance(item.get("text"), str):
            text_fragments.append(item["text"])
        elif item_type == "image_url":
            image_url = item.get("image_url")
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            if not isinstance(url, str):
                continue
            match = DATA_URI_RE.match(url)
            if match is None:
                continue
            images.append(
                {"inlineData": {"mimeType": f"image/{match.group(1)}", "data": match.group(2)}}
            )
    return "".join(text_fragments), images


def split_think_blocks(text: str) -> tuple[list[str], str]:
    thoughts = [
        block.strip() for block in THINK_BLOCK_RE.findall(text) if block.strip()
    ]
    visible = THINK_BLOCK_RE.sub("", text)
    visible = EXCESS_NEWLINES_RE.sub("\n\n", visible).strip()
    return thoughts, visible


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _coerce_tool_output(content: Any) -> Any:
    if isinstance(content, list):
        text, _ = extract_content(content)
        return text
    return "" if content is None else content


class ProtocolTranslator:
    """Rewrites OpenAI chat requests into the upstream content envelope."""

    def __init__(
        self,
        *,
        catalog: ModelCapabilityTable,
        signatures: SignatureStore,
        defaults: GenerationDefaults | None = None,
        system_instruction: str = "",
    ) -> None:
        self._catalog = catalog
        self._signatures = signatures
        self._defaults = defaults or GenerationDefaults()
        self._system_instruction = system_instruction

    def resolve_capability(self, model: str) -> ModelCapability:
        if not isinstance(model, str) or not model.strip():
            raise InvalidRequestError("Request must include a model.", param="model")
        if self._catalog.is_rejected_completion_model(model):
            raise UnsupportedModelRequest(
                f"Unsupported completion model: {model}", param="model"
            )
        return self._catalog.lookup(model.strip())

    async def build_request(
        self,
        *,
        messages: list[dict[str, Any]],
        model: str,
        params: GenerationParams,
        tools: Any = None,
        tool_choice: Any = None,
        user_id: str | None = None,
        account: Account | None = None,
    ) -> UpstreamRequest:
        capability = self.resolve_capability(model)
        thinking = capability.supports_thinking
        generation_config = self.build_generation_config(params, capability)

        tool_interaction = has_tool_interaction(messages)
        signature: str | None = None
        if thinking and tool_interaction and user_id:
            signature = await self._signatures.get(user_id)
            if signature is None:
                logger.info(
                    "thought_signature_missing user_id=%s model=%s mode=placeholder",
                    user_id,
                    model,
                )

        contents = self.build_contents(
            messages,
            capability=capability,
            signature=signature,
            sign_model_turns=thinking and tool_interaction,
        )

        request: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
            "sessionId": generate_session_id(),
        }
        if self._system_instruction:
            request["systemInstruction"] = {
                "role": "user",
                "parts": [{"text": self._system_instruction}],
            }
        upstream_tools = convert_openai_tools(tools)
        if upstream_tools:
            request["tools"] = upstream_tools
            mode = "VALIDATED"
            if isinstance(tool_choice, str):
                mode = TOOL_CHOICE_MODES.get(tool_choice, mode)
            request["toolConfig"] = {"functionCallingConfig": {"mode": mode}}

        body = {
            "project": self._project_for(account),
            "requestId": generate_request_id(),
            "request": request,
            "model": capability.upstream_model,
            "userAgent": UPSTREAM_USER_AGENT,
        }
        return UpstreamRequest(
            body=body,
            model=model,
            upstream_model=capability.upstream_model,
            capability=capability,
            thinking=thinking,
        )

    def build_image_request(
        self,
        *,
        prompt: str,
        model: str,
        image_config: dict[str, Any] | None = None,
        account: Account | None = None,
    ) -> UpstreamRequest:
        capability = self.resolve_capability(model)
        if not prompt.strip():
            raise InvalidRequestError("Image generation requires a text prompt.")
        generation_config: dict[str, Any] = {"candidateCount": 1}
        image_settings = self._image_config(image_config, capability)
        if image_settings is not None:
            generation_config["imageConfig"] = image_settings
        body = {
            "project": self._project_for(account),
            "requestId": generate_request_id(),
            "request": {
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": generation_config,
            },
            "model": capability.upstream_model,
            "userAgent": UPSTREAM_USER_AGENT,
            "requestType": "image_gen",
        }
        return UpstreamRequest(
            body=body,
            model=model,
            upstream_model=capability.upstream_model,
            capability=capability,
            thinking=False,
        )

    def build_generation_config(
        self, params: GenerationParams, capability: ModelCapability
    ) -> dict[str, Any]:
        thinking = capability.supports_thinking
        max_tokens = params.max_tokens
        if max_tokens is None:
            max_tokens = self._defaults.max_tokens
        if thinking:
            max_tokens = max(max_tokens, THINKING_MIN_OUTPUT_TOKENS)

        config: dict[str, Any] = {
            "temperature": (
                params.temperature
                if params.temperature is not None
                else self._defaults.temperature
            ),
            "candidateCount": 1,
            "maxOutputTokens": max_tokens,
            "topP": params.top_p if params.top_p is not None else self._defaults.top_p,
            "topK": params.top_k if params.top_k is not None else self._defaults.top_k,
            "stopSequences": list(STOP_SEQUENCES),
        }
        if capability.thinking_config:
            config["thinkingConfig"] = {
                "includeThoughts": thinking,
                "thinkingBudget": THINKING_BUDGET_TOKENS if thinking else 0,
            }
        if thinking and capability.drop_top_p_when_thinking:
            del config["topP"]
        if capability.is_image_model:
            image_settings = self._image_config(params.image_config, capability)
            if image_settings is not None:
                config["imageConfig"] = image_settings
        return config

    def build_contents(
        self,
        messages: list[dict[str, Any]],
        *,
        capability: ModelCapability,
        signature: str | None = None,
        sign_model_turns: bool = False,
    ) -> list[dict[str, Any]]:
        thinking = capability.supports_thinking
        contents: list[dict[str, Any]] = []
        for message in messages:
            if not isinstance(message, dict):
                continue
            role = message.get("role")
            if role in ("user", "system"):
                contents.append(
                    {"role": "user", "parts": _user_parts(message.get("content"), thinking)}
                )
            elif role == "assistant":
                _append_assistant_turn(
                    contents,
                    message,
                    image_model=capability.is_image_model,
                    thinking=thinking,
                    signature=signature,
                    sign_turn=sign_model_turns,
                )
            elif role == "tool":
                _append_tool_result(contents, message)
        return contents

    def _image_config(
        self, image_config: dict[str, Any] | None, capability: ModelCapability
    ) -> dict[str, Any] | None:
        if not image_config:
            return None
        settings: dict[str, Any] = {}
        aspect_ratio = image_config.get("aspect_ratio")
        if aspect_ratio:
            settings["aspectRatio"] = aspect_ratio
        image_size = image_config.get("image_size")
        if image_size:
            if capability.rejects("image_size"):
                raise UnsupportedModelRequest(
                    f"Unsupported parameter: image_size for {capability.name}",
                    param="image_size",
                )
            settings["imageSize"] = image_size
        return settings

    @staticmethod
    def _project_for(account: Account | None) -> str:
        if account is not None and account.project_id:
            return account.project_id
        return generate_project_id()


def _user_parts(content: Any, thinking: bool) -> list[dict[str, Any]]:
    text, images = extract_content(content)
    parts: list[dict[str, Any]] = []
    if text:
        part: dict[str, Any] = {"text": text}
        if thinking and images:
            part["thought"] = False
        parts.append(part)
    parts.extend(images)
    if not parts:
        parts.append({"text": ""})
    return parts


def _function_call_parts(
    tool_calls: list[Any], *, thinking: bool, signature: str | None
) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for call in tool_calls:
        if not isinstance(call, dict):
            continue
        function = call.get("function") if isinstance(call.get("function"), dict) else {}
        part: dict[str, Any] = {
            "functionCall": {
                "id": call.get("id"),
                "name": function.get("name"),
                "args": parse_tool_arguments(function.get("arguments")),
            }
        }
        if thinking and signature:
            part["thoughtSignature"] = signature
        parts.append(part)
    return parts


def _synthetic_thought(signature: str | None) -> dict[str, Any]:
    if signature:
        return {
            "text": SIGNED_PLACEHOLDER_TEXT,
            "thought": True,
            "thoughtSignature": signature,
        }
    return {"text": "", "thought": True}


def _append_assistant_turn(
    contents: list[dict[str, Any]],
    message: dict[str, Any],
    *,
    image_model: bool,
    thinking: bool,
    signature: str | None,
    sign_turn: bool,
) -> None:
    raw_tool_calls = message.get("tool_calls")
    tool_calls = raw_tool_calls if isinstance(raw_tool_calls, list) else []
    text, _ = extract_content(message.get("content"))
    has_content = bool(text.strip())
    call_parts = _function_call_parts(tool_calls, thinking=thinking, signature=signature)

    previous = contents[-1] if contents else None
    if previous is not None and previous["role"] == "model" and call_parts and not has_content:
        if sign_turn and not any(part.get("thought") is True for part in previous["parts"]):
            previous["parts"].insert(0, _synthetic_thought(signature))
        previous["parts"].extend(call_parts)
        return

    parts: list[dict[str, Any]] = []
    if has_content and image_model:
        visible = IMAGE_MARKDOWN_RE.sub("", text)
        visible = EXCESS_NEWLINES_RE.sub("\n\n", visible).strip()
        if visible:
            parts.append({"text": visible, "thought": True})
    elif has_content:
        thoughts, visible = split_think_blocks(text)
        for thought in thoughts:
            parts.append(
                {"text": thought, "thought": True, "thoughtSignature": signature or ""}
            )
        if sign_turn and not thoughts:
            parts.insert(0, _synthetic_thought(signature))
        if visible:
            parts.append({"text": visible, "thought": False} if thinking else {"text": visible})
        elif thinking and not thoughts and not parts and not call_parts:
            parts.append({"text": "", "thought": False})
    elif sign_turn and call_parts:
        parts.append(_synthetic_thought(signature))

    parts.extend(call_parts)
    if not parts:
        parts.append({"text": "", "thought": False} if thinking else {"text": ""})
    contents.append({"role": "model", "parts": parts})


def _append_tool_result(contents: list[dict[str, Any]], message: dict[str, Any]) -> None:
    call_id = message.get("tool_call_id")
    function_name = ""
    for turn in reversed(contents):
        if turn["role"] != "model":
            continue
        for part in turn["parts"]:
            call = part.get("functionCall")
            if isinstance(call, dict) and call.get("id") == call_id:
                function_name = str(call.get("name") or "")
                break
        if function_name:
            break
    if not function_name and isinstance(message.get("name"), str):
        function_name = message["name"]

    response_part = {
        "functionResponse": {
            "id": call_id,
            "name": function_name,
            "response": {"output": _coerce_tool_output(message.get("content"))},
        }
    }
    previous = contents[-1] if contents else None
    if (
        previous is not None
        and previous["role"] == "user"
        and any("functionResponse" in part for part in previous["parts"])
    ):
        previous["parts"].append(response_part)
        return
    contents.append({"role": "user", "parts": [response_part]})
