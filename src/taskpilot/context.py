"""Context window management.

Token counts are estimated at roughly four characters per token. Compaction
keeps the first (pinned) user message and the most recent messages verbatim,
shrinks oversized tool results in the older middle section, and then drops
the oldest assistant/user pairs. Dropping whole pairs keeps role alternation
intact and never separates a ``tool_use`` from its ``tool_result``.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, replace
from typing import Literal

from taskpilot.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
MAX_TOOL_RESULT_CHARS = 20_000
COMPACTED_TOOL_RESULT_CHARS = 2_000
MIN_RECENT_MESSAGES = 6
DEFAULT_CONTEXT_WINDOW = 100_000
OUTPUT_RESERVE_TOKENS = 4_096
TRUNCATION_MARKER = "\n[... {count} characters truncated ...]"

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "opus-4-5": 200_000,
    "sonnet-4-5": 200_000,
    "sonnet-4": 200_000,
    "sonnet-3-5": 200_000,
    "haiku-3-5": 200_000,
    "haiku-3": 200_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gemini-2.5-pro": 1_000_000,
    "gemini-2.5-flash": 1_000_000,
}


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _block_tokens(block: object) -> int:
    if isinstance(block, TextBlock):
        return estimate_tokens(block.text)
    if isinstance(block, ToolUseBlock):
        return estimate_tokens(block.name) + estimate_tokens(json.dumps(block.input))
    if isinstance(block, ToolResultBlock):
        return estimate_tokens(block.content)
    return 0


def estimate_message_tokens(message: Message) -> int:
    if isinstance(message.content, str):
        return MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message.content)
    return MESSAGE_OVERHEAD_TOKENS + sum(_block_tokens(block) for block in message.content)


def estimate_messages_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)


def truncate_tool_result(result: str, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    if len(result) <= max_chars:
        return result
    removed = len(result) - max_chars
    return result[:max_chars] + TRUNCATION_MARKER.format(count=removed)


CompactionKind = Literal["none", "truncated", "dropped", "over_budget"]


@dataclass(frozen=True)
class CompactionResult:
    messages: list[Message]
    kind: CompactionKind
    removed_messages: int
    estimated_tokens: int


class ContextManager:
    def __init__(
        self,
        model_key: str | None = None,
        context_window: int | None = None,
        min_recent_messages: int = MIN_RECENT_MESSAGES,
    ) -> None:
        self.model_key = model_key or ""
        self.context_window = context_window or self._lookup_window(self.model_key)
        self.min_recent_messages = min_recent_messages

    @staticmethod
    def _lookup_window(model_key: str) -> int:
        lowered = model_key.lower()
        for key, window in MODEL_CONTEXT_WINDOWS.items():
            if key in lowered:
                return window
        return DEFAULT_CONTEXT_WINDOW

    def get_available_tokens(self, system_prompt_tokens: int = 0) -> int:
        return max(0, self.context_window - OUTPUT_RESERVE_TOKENS - system_prompt_tokens)

    def compact_messages(self, messages: list[Message], system_prompt_tokens: int) -> list[Message]:
        return self.compact_messages_with_meta(messages, system_prompt_tokens).messages

    def compact_messages_with_meta(
        self, messages: list[Message], system_prompt_tokens: int
    ) -> CompactionResult:
        available = self.get_available_tokens(system_prompt_tokens)
        total = estimate_messages_tokens(messages)
        if total <= available or len(messages) <= self.min_recent_messages + 1:
            kind: CompactionKind = "none" if total <= available else "over_budget"
            return CompactionResult(list(messages), kind, 0, total)

        pinned = messages[0]
        recent_start = len(messages) - self.min_recent_messages
        if messages[recent_start].role == "user":
            # The recent window must open on an assistant turn so that no
            # tool_result is kept without its tool_use.
            recent_start -= 1
        middle = [self._shrink_tool_results(message) for message in messages[1:recent_start]]
        recent = list(messages[recent_start:])
        candidate = [pinned, *middle, *recent]
        total = estimate_messages_tokens(candidate)
        if total <= available:
            return CompactionResult(candidate, "truncated", 0, total)

        removed = 0
        # middle starts right after the pinned user message, so it alternates
        # assistant/user; a pair never splits a tool_use from its results.
        while total > available and len(middle) >= 2:
            first, second = middle[0], middle[1]
            if first.role != "assistant" or second.role != "user":
                break
            if set(second.tool_result_ids()) - set(first.tool_use_ids()):
                break
            middle = middle[2:]
            removed += 2
            total = estimate_messages_tokens([pinned, *middle, *recent])

        if removed:
            pinned = self._annotate_pinned(pinned, removed)
        compacted = [pinned, *middle, *recent]
        total = estimate_messages_tokens(compacted)
        kind = "dropped" if removed else "truncated"
        if total > available:
            kind = "over_budget"
        return CompactionResult(compacted, kind, removed, total)

    @staticmethod
    def _shrink_tool_results(message: Message) -> Message:
        if isinstance(message.content, str):
            return message
        changed = False
        blocks = []
        for block in message.content:
            if (
                isinstance(block, ToolResultBlock)
                and len(block.content) > COMPACTED_TOOL_RESULT_CHARS
            ):
                blocks.append(
                    replace(
                        block,
                        content=truncate_tool_result(block.content, COMPACTED_TOOL_RESULT_CHARS),
                    )
                )
                changed = True
            else:
                blocks.append(block)
        return Message(role=message.role, content=blocks) if changed else message

    @staticmethod
    def _annotate_pinned(pinned: Message, removed: int) -> Message:
        note = f"[{removed} earlier messages were removed to fit the context window]"
        if isinstance(pinned.content, str):
            return Message(role=pinned.role, content=f"{pinned.content}\n\n{note}")
        return Message(role=pinned.role, content=[*pinned.content, TextBlock(text=note)])
