from taskpilot.tools.protocol import CommandTerminationReason, ToolSpec
from taskpilot.tools.registry import ToolDefinition, ToolRegistry, build_default_registry
from taskpilot.tools.runner import ToolBatchResult, ToolRunner

__all__ = [
    "CommandTerminationReason",
    "ToolSpec",
    "ToolDefinition",
    "ToolRegistry",
    "build_default_registry",
    "ToolBatchResult",
    "ToolRunner",
]
