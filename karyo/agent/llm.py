"""Language model adapters over direct httpx calls.

Provides:
- LanguageModel: the protocol the orchestrator and context manager use
- AnthropicModel: Anthropic Messages API (SSE streaming)
- OpenAIModel: OpenAI Chat Completions API (SSE streaming)
- GoogleModel: Gemini generateContent API (SSE streaming)
- create_model(): picks an adapter from the model id prefix

No provider SDKs: payloads are built and parsed by hand, the same way for
streaming and non-streaming calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

import httpx

from karyo.agent.limits import provider_for
from karyo.agent.models import (
    Message,
    ModelResponse,
    Part,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Usage,
)
from karyo.config import Settings
from karyo.tokens import payload_text

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_RETRY_STATUSES = frozenset({429, 500, 529})
_MAX_RETRY_AFTER = 30.0


class ModelError(RuntimeError):
    """A provider call failed or returned something unusable."""


class ConfigError(ValueError):
    """The model cannot be constructed from the current settings."""


@runtime_checkable
class LanguageModel(Protocol):
    model_id: str

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text_delta and tool_call events, then one response event."""
        ...

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelResponse: ...

    async def aclose(self) -> None: ...


def _error_detail(response: httpx.Response) -> str:
    try:
        error = response.json().get("error", {})
        if isinstance(error, dict):
            kind = error.get("type") or error.get("status") or "unknown"
            return f"{kind} - {error.get('message', 'unknown error')}"
        return str(error)
    except (ValueError, AttributeError):
        return f"HTTP {response.status_code}: {response.text[:500]}"


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ModelError(f"Malformed JSON from provider: {e}") from e


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    arguments = _load_json(raw)
    if not isinstance(arguments, dict):
        raise ModelError(f"Tool arguments must be a JSON object, got: {raw[:200]}")
    return arguments


class _HttpModel:
    """Shared httpx plumbing: client lifecycle, retrying POST, SSE line reader."""

    provider = ""

    def __init__(
        self,
        model_id: str,
        *,
        base_url: str,
        headers: dict[str, str],
        max_tokens: int = 8192,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model_id = model_id
        self.max_tokens = max_tokens
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"content-type": "application/json", **headers},
            timeout=timeout or httpx.Timeout(connect=10.0, read=300.0, write=10.0, pool=10.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with one retry on 429/500/529 or timeout. Raises ModelError."""
        last_error: ModelError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post(path, json=payload)
                if response.status_code == 200:
                    return _load_json(response.text)

                detail = _error_detail(response)
                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    try:
                        retry_after = float(response.headers.get("retry-after", "1"))
                    except ValueError:
                        retry_after = 1.0
                    retry_after = min(retry_after, _MAX_RETRY_AFTER)
                    logger.warning(
                        "%s API error %d, retrying in %.1fs: %s",
                        self.provider, response.status_code, retry_after, detail,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ModelError(f"{self.provider} API error ({response.status_code}): {detail}")
                break
            except httpx.TimeoutException as e:
                last_error = ModelError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("%s API timeout, retrying: %s", self.provider, e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ModelError("API call failed with unknown error")

    async def _sse_events(self, path: str, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any] | None]:
        """Yield decoded `data:` payloads; None marks the OpenAI [DONE] sentinel."""
        try:
            async with self._http.stream("POST", path, json=payload) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise ModelError(
                        f"{self.provider} API error ({response.status_code}): {_error_detail(response)}"
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        yield None
                        return
                    yield _load_json(data)
        except httpx.HTTPError as e:
            raise ModelError(f"HTTP error during stream: {e}") from e


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to Messages API content blocks."""
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if isinstance(msg.content, str):
            converted.append({"role": msg.role, "content": msg.content})
            continue

        blocks: list[dict[str, Any]] = []
        for part in msg.content:
            match part:
                case TextPart(text=text):
                    if text:
                        blocks.append({"type": "text", "text": text})
                case ToolCallPart(id=call_id, name=name, arguments=arguments):
                    blocks.append({"type": "tool_use", "id": call_id, "name": name, "input": arguments})
                case ToolResultPart(call_id=call_id, result=result, is_error=is_error):
                    block: dict[str, Any] = {
                        "type": "tool_result",
                        "tool_use_id": call_id,
                        "content": payload_text(result),
                    }
                    if is_error:
                        block["is_error"] = True
                    blocks.append(block)
        converted.append({"role": msg.role, "content": blocks})
    return converted


def _anthropic_parts(content: list[dict[str, Any]]) -> list[Part]:
    parts: list[Part] = []
    for block in content:
        if block.get("type") == "text":
            parts.append(TextPart(block.get("text", "")))
        elif block.get("type") == "tool_use":
            parts.append(ToolCallPart(
                id=block.get("id", ""),
                name=block.get("name", ""),
                arguments=block.get("input") or {},
            ))
    return parts


class AnthropicStreamParser:
    """Accumulates Messages API SSE events into stream events and a response.

    Skips ping keepalives. stop_reason arrives in message_delta, not
    message_start. In-stream error events (HTTP 200 with an error body)
    raise ModelError.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}
        self._parts: list[Part] = []
        self.stop_reason = ""
        self.usage = Usage()

    def feed(self, data: dict[str, Any]) -> list[StreamEvent]:
        event_type = data.get("type")

        if event_type == "error":
            error = data.get("error", {})
            raise ModelError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage", {})
            self.usage.input_tokens += usage.get("input_tokens", 0)
            self.usage.output_tokens += usage.get("output_tokens", 0)
            return []

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                self._blocks[data.get("index", 0)] = {
                    "type": "tool_use", "id": block.get("id", ""), "name": block.get("name", ""), "json": "",
                }
            else:
                self._blocks[data.get("index", 0)] = {"type": "text", "text": block.get("text", "")}
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            block = self._blocks.get(data.get("index", 0))
            if block is None:
                return []
            if delta.get("type") == "text_delta":
                text = delta.get("text", "")
                block["text"] = block.get("text", "") + text
                return [StreamEvent(type="text_delta", text=text)] if text else []
            if delta.get("type") == "input_json_delta":
                if block["type"] != "tool_use":
                    raise ModelError(f"input_json_delta for a {block['type']} block at index {data.get('index', 0)}")
                block["json"] += delta.get("partial_json", "")
            return []

        if event_type == "content_block_stop":
            block = self._blocks.pop(data.get("index", 0), None)
            if block is None:
                return []
            if block["type"] == "tool_use":
                call = ToolCallPart(id=block["id"], name=block["name"], arguments=_parse_arguments(block["json"]))
                self._parts.append(call)
                return [StreamEvent(type="tool_call", tool_call=call)]
            if block["text"]:
                self._parts.append(TextPart(block["text"]))
            return []

        if event_type == "message_delta":
            self.stop_reason = data.get("delta", {}).get("stop_reason") or self.stop_reason
            self.usage.output_tokens = data.get("usage", {}).get("output_tokens", self.usage.output_tokens)
            return []

        return []

    def response(self) -> ModelResponse:
        return ModelResponse(parts=list(self._parts), stop_reason=self.stop_reason, usage=self.usage)


class AnthropicModel(_HttpModel):
    provider = "anthropic"

    def __init__(
        self,
        model_id: str,
        api_key: str,
        *,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 8192,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            model_id,
            base_url=base_url,
            headers={"x-api-key": api_key, "anthropic-version": _API_VERSION},
            max_tokens=max_tokens,
            timeout=timeout,
            transport=transport,
        )

    def build_payload(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the Messages API payload shared by stream() and generate()."""
        payload: dict[str, Any] = {
            "model": self.model_id,
            "max_tokens": max_output_tokens or self.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": to_anthropic_messages(messages),
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelResponse:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens)
        data = await self._post("/v1/messages", payload)
        usage = data.get("usage") or {}
        return ModelResponse(
            parts=_anthropic_parts(data.get("content", [])),
            stop_reason=data.get("stop_reason") or "",
            usage=Usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
        )

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens, stream=True)
        parser = AnthropicStreamParser()
        async for data in self._sse_events("/v1/messages", payload):
            if data is None:
                break
            for event in parser.feed(data):
                yield event
        yield StreamEvent(type="response", response=parser.response())


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


def to_openai_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to Chat Completions messages.

    Tool results become role "tool" messages; any text sharing a user
    message with them follows as a plain user message.
    """
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if isinstance(msg.content, str):
            converted.append({"role": msg.role, "content": msg.content})
            continue

        if msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            calls = msg.tool_calls
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in calls
                ]
            converted.append(entry)
            continue

        for result in msg.tool_results:
            converted.append({
                "role": "tool",
                "tool_call_id": result.call_id,
                "content": payload_text(result.result),
            })
        if msg.text:
            converted.append({"role": "user", "content": msg.text})
    return converted


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


def _openai_usage(usage: dict[str, Any] | None) -> Usage:
    usage = usage or {}
    return Usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))


class OpenAIStreamParser:
    """Accumulates Chat Completions chunks; tool calls are keyed by index."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._calls: dict[int, dict[str, str]] = {}
        self.stop_reason = ""
        self.usage = Usage()

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        if "error" in chunk:
            error = chunk["error"] or {}
            raise ModelError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")
        if chunk.get("usage"):
            self.usage = _openai_usage(chunk["usage"])

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                self._text.append(text)
                events.append(StreamEvent(type="text_delta", text=text))
            for call in delta.get("tool_calls") or []:
                slot = self._calls.setdefault(call.get("index", 0), {"id": "", "name": "", "arguments": ""})
                function = call.get("function") or {}
                slot["id"] = call.get("id") or slot["id"]
                slot["name"] = function.get("name") or slot["name"]
                slot["arguments"] += function.get("arguments") or ""
            if choice.get("finish_reason"):
                self.stop_reason = choice["finish_reason"]
        return events

    @property
    def text(self) -> str:
        return "".join(self._text)

    def finish(self) -> list[ToolCallPart]:
        return [
            ToolCallPart(id=slot["id"], name=slot["name"], arguments=_parse_arguments(slot["arguments"]))
            for _, slot in sorted(self._calls.items())
        ]


class OpenAIModel(_HttpModel):
    provider = "openai"

    def __init__(
        self,
        model_id: str,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com",
        max_tokens: int = 8192,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            model_id,
            base_url=base_url,
            headers={"authorization": f"Bearer {api_key}"},
            max_tokens=max_tokens,
            timeout=timeout,
            transport=transport,
        )

    def build_payload(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_id,
            "max_completion_tokens": max_output_tokens or self.max_tokens,
            "messages": to_openai_messages(system_prompt, messages),
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelResponse:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens)
        data = await self._post("/v1/chat/completions", payload)
        choices = data.get("choices") or []
        if not choices:
            raise ModelError("OpenAI response contained no choices")

        message = choices[0].get("message") or {}
        parts: list[Part] = []
        if message.get("content"):
            parts.append(TextPart(message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            parts.append(ToolCallPart(
                id=call.get("id", ""),
                name=function.get("name", ""),
                arguments=_parse_arguments(function.get("arguments", "")),
            ))
        return ModelResponse(
            parts=parts,
            stop_reason=choices[0].get("finish_reason") or "",
            usage=_openai_usage(data.get("usage")),
        )

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens, stream=True)
        parser = OpenAIStreamParser()
        async for chunk in self._sse_events("/v1/chat/completions", payload):
            if chunk is None:
                break
            for event in parser.feed(chunk):
                yield event

        calls = parser.finish()
        for call in calls:
            yield StreamEvent(type="tool_call", tool_call=call)

        parts: list[Part] = []
        if parser.text:
            parts.append(TextPart(parser.text))
        parts.extend(calls)
        yield StreamEvent(
            type="response",
            response=ModelResponse(parts=parts, stop_reason=parser.stop_reason, usage=parser.usage),
        )


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------

# OpenAPI subset accepted in Gemini function declarations
_GOOGLE_SCHEMA_KEYS = frozenset({
    "type", "format", "description", "nullable", "enum", "items", "properties", "required",
    "minimum", "maximum", "minItems", "maxItems", "minLength", "maxLength", "pattern", "anyOf",
})


def to_google_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Reduce a pydantic JSON schema to the subset Gemini accepts.

    Optional fields (`anyOf: [X, {"type": "null"}]`) become X with
    `nullable: true`; titles, defaults and additionalProperties are dropped.
    """
    variants = schema.get("anyOf")
    if variants:
        concrete = [v for v in variants if v.get("type") != "null"]
        if len(concrete) == 1:
            reduced = to_google_schema(concrete[0])
            if len(concrete) < len(variants):
                reduced["nullable"] = True
            if "description" in schema:
                reduced["description"] = schema["description"]
            return reduced

    reduced: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GOOGLE_SCHEMA_KEYS:
            continue
        if key == "properties":
            value = {name: to_google_schema(prop) for name, prop in value.items()}
        elif key == "items":
            value = to_google_schema(value)
        elif key == "anyOf":
            value = [to_google_schema(v) for v in value if v.get("type") != "null"]
        reduced[key] = value
    return reduced


def to_google_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{
        "functionDeclarations": [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": to_google_schema(tool.get("input_schema", {"type": "object", "properties": {}})),
            }
            for tool in tools
        ],
    }]


def to_google_contents(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to Gemini contents.

    Function responses are matched to calls by name, so call ids are
    resolved against the assistant messages that issued them.
    """
    call_names: dict[str, str] = {}
    contents: list[dict[str, Any]] = []
    for msg in messages:
        role = "model" if msg.role == "assistant" else "user"
        parts: list[dict[str, Any]] = []
        for part in msg.parts:
            match part:
                case TextPart(text=text):
                    if text:
                        parts.append({"text": text})
                case ToolCallPart(id=call_id, name=name, arguments=arguments):
                    call_names[call_id] = name
                    parts.append({"functionCall": {"name": name, "args": arguments}})
                case ToolResultPart(call_id=call_id, result=result, is_error=is_error):
                    key = "error" if is_error else "output"
                    parts.append({
                        "functionResponse": {
                            "name": call_names.get(call_id, ""),
                            "response": {key: payload_text(result)},
                        },
                    })
        if parts:
            contents.append({"role": role, "parts": parts})
    return contents


def _google_usage(usage: dict[str, Any] | None) -> Usage:
    usage = usage or {}
    return Usage(usage.get("promptTokenCount", 0), usage.get("candidatesTokenCount", 0))


def _google_call(function_call: dict[str, Any]) -> ToolCallPart:
    arguments = function_call.get("args") or {}
    if not isinstance(arguments, dict):
        raise ModelError(f"Tool arguments must be a JSON object, got: {str(arguments)[:200]}")
    return ToolCallPart(
        # Older Gemini models do not assign call ids
        id=function_call.get("id") or f"call_{uuid.uuid4().hex[:24]}",
        name=function_call.get("name", ""),
        arguments=arguments,
    )


class GoogleStreamParser:
    """Accumulates generateContent chunks.

    Each SSE chunk is a complete GenerateContentResponse: text arrives as
    deltas, function calls arrive whole. The non-streaming response is fed
    through the same parser as a single chunk.
    """

    def __init__(self) -> None:
        self._text: list[str] = []
        self._calls: list[ToolCallPart] = []
        self.stop_reason = ""
        self.usage = Usage()
        self.candidates = 0

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        if "error" in chunk:
            error = chunk["error"] or {}
            raise ModelError(f"{error.get('status', 'unknown')}: {error.get('message', '')}")
        if chunk.get("usageMetadata"):
            self.usage = _google_usage(chunk["usageMetadata"])

        events: list[StreamEvent] = []
        for candidate in (chunk.get("candidates") or [])[:1]:
            self.candidates += 1
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "functionCall" in part:
                    call = _google_call(part["functionCall"])
                    self._calls.append(call)
                    events.append(StreamEvent(type="tool_call", tool_call=call))
                elif part.get("text") and not part.get("thought"):
                    self._text.append(part["text"])
                    events.append(StreamEvent(type="text_delta", text=part["text"]))
            if candidate.get("finishReason"):
                self.stop_reason = candidate["finishReason"]
        return events

    def response(self) -> ModelResponse:
        parts: list[Part] = []
        if self._text:
            parts.append(TextPart("".join(self._text)))
        parts.extend(self._calls)
        return ModelResponse(parts=parts, stop_reason=self.stop_reason, usage=self.usage)


class GoogleModel(_HttpModel):
    provider = "google"

    def __init__(
        self,
        model_id: str,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com",
        max_tokens: int = 8192,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            model_id,
            base_url=base_url,
            headers={"x-goog-api-key": api_key},
            max_tokens=max_tokens,
            timeout=timeout,
            transport=transport,
        )

    def build_payload(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": to_google_contents(messages),
            "generationConfig": {"maxOutputTokens": max_output_tokens or self.max_tokens},
        }
        if tools:
            payload["tools"] = to_google_tools(tools)
        return payload

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelResponse:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens)
        data = await self._post(f"/v1beta/models/{self.model_id}:generateContent", payload)
        parser = GoogleStreamParser()
        parser.feed(data)
        if not parser.candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "unknown")
            raise ModelError(f"Gemini response contained no candidates (block reason: {reason})")
        return parser.response()

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(system_prompt, messages, tools, max_output_tokens)
        parser = GoogleStreamParser()
        path = f"/v1beta/models/{self.model_id}:streamGenerateContent?alt=sse"
        async for chunk in self._sse_events(path, payload):
            if chunk is None:
                break
            for event in parser.feed(chunk):
                yield event
        yield StreamEvent(type="response", response=parser.response())


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_model(settings: Settings, model_id: str | None = None) -> LanguageModel:
    """Build the adapter for a model id (defaults to settings.model)."""
    model_id = model_id or settings.model
    provider = provider_for(model_id)
    timeout = httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=10.0,
        pool=10.0,
    )

    if provider == "anthropic":
        if not settings.anthropic_api_key:
            raise ConfigError("ANTHROPIC_API_KEY is not set")
        return AnthropicModel(
            model_id,
            settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            max_tokens=settings.max_tokens,
            timeout=timeout,
        )

    if provider == "openai":
        if not settings.openai_api_key:
            raise ConfigError("OPENAI_API_KEY is not set")
        return OpenAIModel(
            model_id,
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_tokens=settings.max_tokens,
            timeout=timeout,
        )

    if provider == "google":
        if not settings.google_api_key:
            raise ConfigError("GOOGLE_API_KEY is not set")
        return GoogleModel(
            model_id,
            settings.google_api_key,
            base_url=settings.google_base_url,
            max_tokens=settings.max_tokens,
            timeout=timeout,
        )

    raise ConfigError(f"Unknown model provider for {model_id!r}")
