from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from taskpilot.messages import (
    ContentBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    block_from_dict,
)
from taskpilot.tools.protocol import ToolSpec

STOP_REASONS = {"end_turn", "tool_use", "max_tokens", "stop_sequence"}


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class LLMResponse:
    content: list[ContentBlock]
    stop_reason: str
    usage: Usage | None = None


class LLMProvider(Protocol):
    def create_message(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
    ) -> LLMResponse:
        ...


@dataclass(frozen=True)
class AnthropicClient:
    base_url: str
    api_key: str
    timeout_s: float = 300.0
    api_version: str = "2023-06-01"

    def create_message(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
    ) -> LLMResponse:
        url = f"{self.base_url.rstrip('/')}/v1/messages"
        headers = {"x-api-key": self.api_key, "anthropic-version": self.api_version}
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [message.to_dict() for message in messages],
        }
        if tools:
            payload["tools"] = [tool.to_dict() for tool in tools]
        client = _shared_http_client()
        response = client.post(url, headers=headers, json=payload, timeout=self.timeout_s)
        response.raise_for_status()
        data = response.json()
        content = [
            block
            for block in (block_from_dict(item) for item in data.get("content") or [])
            if block is not None
        ]
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = Usage(
                input_tokens=int(usage_raw.get("input_tokens", 0)),
                output_tokens=int(usage_raw.get("output_tokens", 0)),
            )
        stop_reason = data.get("stop_reason")
        if stop_reason not in STOP_REASONS:
            stop_reason = "end_turn"
        return LLMResponse(content=content, stop_reason=stop_reason, usage=usage)


_OPENAI_FINISH_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def _to_openai_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for message in messages:
        if isinstance(message.content, str):
            converted.append({"role": message.role, "content": message.content})
            continue
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.text() or None}
            calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(block.input)},
                }
                for block in message.content
                if isinstance(block, ToolUseBlock)
            ]
            if calls:
                entry["tool_calls"] = calls
            converted.append(entry)
            continue
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                converted.append(
                    {"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content}
                )
        text = message.text()
        if text:
            converted.append({"role": "user", "content": text})
    return converted


@dataclass(frozen=True)
class OpenAIClient:
    base_url: str
    api_key: str
    timeout_s: float = 60.0
    default_temperature: float = 0.2

    def create_message(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
    ) -> LLMResponse:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": _to_openai_messages(system, messages),
            "temperature": self.default_temperature,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ]
        client = _shared_http_client()
        response = client.post(url, headers=headers, json=payload, timeout=self.timeout_s)
        response.raise_for_status()
        data = response.json()
        choice = data["choices"][0]
        message = choice.get("message") or {}
        content: list[ContentBlock] = []
        text = message.get("content")
        if isinstance(text, str) and text:
            content.append(TextBlock(text=text))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            try:
                args = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                args = {}
            content.append(
                ToolUseBlock(
                    id=str(call.get("id", "")),
                    name=str(function.get("name", "")),
                    input=args if isinstance(args, dict) else {},
                )
            )
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = Usage(
                input_tokens=int(usage_raw.get("prompt_tokens", 0)),
                output_tokens=int(usage_raw.get("completion_tokens", 0)),
            )
        stop_reason = _OPENAI_FINISH_REASONS.get(choice.get("finish_reason") or "stop", "end_turn")
        return LLMResponse(content=content, stop_reason=stop_reason, usage=usage)
