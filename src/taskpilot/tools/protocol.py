from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ToolSpec:
    """A tool as advertised to the model: name, prose description, JSON schema."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class CommandTerminationReason(str, Enum):
    NORMAL = "normal"
    USER_STOPPED = "user_stopped"
    TIMEOUT = "timeout"
    ERROR = "error"


_TERMINATION_PREFIXES = {
    CommandTerminationReason.NORMAL: "",
    CommandTerminationReason.USER_STOPPED: (
        "[USER STOPPED] The user intentionally interrupted this command. "
        "Do not retry automatically. Ask the user if they want you to continue "
        "or try a different approach.\n\n"
    ),
    CommandTerminationReason.TIMEOUT: (
        "[TIMEOUT] Command exceeded time limit. Consider: 1) Breaking into smaller "
        "steps, 2) Using a longer timeout if available, 3) Asking the user to run "
        "this manually.\n\n"
    ),
    CommandTerminationReason.ERROR: (
        "[EXECUTION ERROR] The command could not be spawned or executed properly.\n\n"
    ),
}


def get_termination_context_prefix(reason: CommandTerminationReason | str | None) -> str:
    if reason is None:
        return ""
    try:
        key = CommandTerminationReason(reason)
    except ValueError:
        return ""
    return _TERMINATION_PREFIXES[key]


def apply_termination_context(result: Any, result_text: str) -> str:
    """Prefix serialized command output with guidance keyed on its termination reason."""

    if not isinstance(result, dict):
        return result_text
    prefix = get_termination_context_prefix(result.get("termination_reason"))
    return prefix + result_text if prefix else result_text
