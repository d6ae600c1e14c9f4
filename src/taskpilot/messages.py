"""Conversation messages and their typed content blocks.

A message is ``user`` or ``assistant``; its content is either plain text or an
ordered list of blocks. Blocks are serialized to the provider-neutral wire
shape (``{"type": "text", "text": ...}`` and friends) for snapshots and HTTP
clients.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            payload["is_error"] = True
        return payload


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | list[ContentBlock]

    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    def tool_use_ids(self) -> list[str]:
        return [block.id for block in self.blocks() if isinstance(block, ToolUseBlock)]

    def tool_result_ids(self) -> list[str]:
        return [
            block.tool_use_id for block in self.blocks() if isinstance(block, ToolResultBlock)
        ]

    def text(self) -> str:
        return "\n".join(block.text for block in self.blocks() if isinstance(block, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}


def block_from_dict(raw: Any) -> ContentBlock | None:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "text":
        text = raw.get("text")
        return TextBlock(text=text if isinstance(text, str) else "")
    if kind == "tool_use":
        call_id = raw.get("id")
        name = raw.get("name")
        if not isinstance(call_id, str) or not isinstance(name, str):
            return None
        args = raw.get("input")
        return ToolUseBlock(id=call_id, name=name, input=args if isinstance(args, dict) else {})
    if kind == "tool_result":
        tool_use_id = raw.get("tool_use_id")
        if not isinstance(tool_use_id, str):
            return None
        content = raw.get("content")
        if not isinstance(content, str):
            content = json.dumps(content)
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=content,
            is_error=bool(raw.get("is_error", False)),
        )
    return None


def message_from_dict(raw: Any) -> Message | None:
    if not isinstance(raw, dict):
        return None
    role = raw.get("role")
    if role not in ("user", "assistant"):
        return None
    content = raw.get("content")
    if isinstance(content, str):
        return Message(role=role, content=content)
    if isinstance(content, list):
        blocks = [block for block in (block_from_dict(item) for item in content) if block]
        return Message(role=role, content=blocks)
    return None


def messages_to_dicts(messages: list[Message]) -> list[dict[str, Any]]:
    return [message.to_dict() for message in messages]
