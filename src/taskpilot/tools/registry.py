from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal

import httpx

from taskpilot.config import ToolSettings
from taskpilot.errors import ToolInputError, ToolNotFoundError
from taskpilot.models import Workspace
from taskpilot.tools.protocol import CommandTerminationReason, ToolSpec

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]
FileEffect = Literal["read", "create"]

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "boolean": (bool,),
    "integer": (int,),
    "number": (int, float),
    "object": (dict,),
    "array": (list,),
}


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]
    handle: Handler
    file_effect: FileEffect | None = None

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name, description=self.description, input_schema=self.input_schema
        )


def validate_input(name: str, schema: dict[str, Any], args: Any) -> dict[str, Any]:
    """Check ``args`` against a flat JSON object schema; raise ``ToolInputError``."""

    if not isinstance(args, dict):
        raise ToolInputError(name, "input must be an object")
    properties = schema.get("properties") or {}
    for key in schema.get("required") or []:
        if key not in args:
            raise ToolInputError(name, f"missing required field '{key}'")
    for key, value in args.items():
        prop = properties.get(key)
        if prop is None:
            continue
        expected = _JSON_TYPES.get(prop.get("type", ""))
        if expected is None:
            continue
        # bool is an int subclass; keep them apart.
        if isinstance(value, bool) and bool not in expected:
            raise ToolInputError(name, f"field '{key}' must be {prop['type']}")
        if not isinstance(value, expected):
            raise ToolInputError(name, f"field '{key}' must be {prop['type']}")
    return args


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._cleanups: list[Callable[[], None]] = []

    def register(self, definition: ToolDefinition) -> None:
        self._tools[definition.name] = definition

    def on_cleanup(self, callback: Callable[[], None]) -> None:
        self._cleanups.append(callback)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def file_effect(self, name: str) -> FileEffect | None:
        definition = self._tools.get(name)
        return definition.file_effect if definition else None

    def get_tools(self) -> list[ToolSpec]:
        return [definition.spec() for definition in self._tools.values()]

    def get_tool_descriptions(self) -> str:
        lines: list[str] = []
        for tool in self._tools.values():
            properties = tool.input_schema.get("properties") or {}
            args_desc = (
                ", ".join(f"{key}: {value.get('type', 'any')}" for key, value in properties.items())
                or "none"
            )
            lines.append(f"- {tool.name}: {tool.description} (args: {args_desc})")
        return "\n".join(lines)

    def execute_tool(self, name: str, args: Any) -> Any:
        definition = self._tools.get(name)
        if definition is None:
            raise ToolNotFoundError(name)
        validated = validate_input(name, definition.input_schema, args)
        return definition.handle(validated)

    def cleanup(self) -> None:
        callbacks, self._cleanups = self._cleanups, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.warning("Tool cleanup failed", exc_info=True)


def _resolve_root(root: Path, target: str) -> Path:
    candidate = Path(target)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    root_resolved = root.resolve()
    if resolved == root_resolved or root_resolved in resolved.parents:
        return resolved
    raise ValueError("path is outside the workspace root")


def _require(workspace: Workspace, permission: str) -> None:
    if not workspace.permissions.get(permission, False):
        raise PermissionError(f"Permission denied: workspace does not allow {permission}")


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


def _read_capped(response: httpx.Response, max_bytes: int) -> bytes:
    """Read at most ``max_bytes + 1`` bytes so callers can tell the body was cut."""

    buffer = bytearray()
    for chunk in response.iter_bytes():
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            break
    return bytes(buffer[: max_bytes + 1])


@dataclass
class _WebSession:
    timeout_s: float
    client: httpx.Client | None = field(default=None)

    def get(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client(timeout=self.timeout_s, follow_redirects=False)
        return self.client

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


def build_default_registry(workspace: Workspace, settings: ToolSettings) -> ToolRegistry:
    registry = ToolRegistry()
    root = Path(workspace.path)
    web = _WebSession(timeout_s=settings.web_timeout_s)
    registry.on_cleanup(web.close)

    def read_file(args: dict[str, Any]) -> dict[str, Any]:
        _require(workspace, "read")
        path = _resolve_root(root, args["path"])
        if path.stat().st_size > settings.fs_max_bytes:
            raise ValueError("file exceeds max read size")
        return {
            "success": True,
            "path": str(path),
            "content": path.read_text(encoding="utf-8", errors="replace"),
        }

    def write_file(args: dict[str, Any]) -> dict[str, Any]:
        _require(workspace, "write")
        path = _resolve_root(root, args["path"])
        content = args["content"]
        if len(content.encode("utf-8")) > settings.fs_max_bytes:
            raise ValueError("content exceeds max write size")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return {"success": True, "path": str(path), "bytes": path.stat().st_size}

    def list_directory(args: dict[str, Any]) -> dict[str, Any]:
        _require(workspace, "read")
        path = _resolve_root(root, args.get("path") or ".")
        if not path.is_dir():
            raise NotADirectoryError(f"ENOTDIR: not a directory, {path}")
        entries = []
        for name in sorted(os.listdir(path)):
            entries.append(name + "/" if (path / name).is_dir() else name)
        return {"success": True, "path": str(path), "entries": entries}

    def run_command(args: dict[str, Any]) -> dict[str, Any]:
        _require(workspace, "shell")
        if not settings.shell_enabled:
            raise PermissionError("Permission denied: shell commands are disabled")
        timeout = float(args.get("timeout_s") or settings.command_timeout_s)
        try:
            tokens = shlex.split(args["command"])
        except ValueError as exc:
            raise ToolInputError("run_command", str(exc)) from exc
        if not tokens:
            raise ToolInputError("run_command", "command is empty")
        try:
            result = subprocess.run(
                tokens,
                cwd=root,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.stdout if isinstance(exc.stdout, str) else ""
            return {
                "success": False,
                "error": f"Command timed out after {timeout:g}s",
                "output": output,
                "termination_reason": CommandTerminationReason.TIMEOUT.value,
            }
        except OSError as exc:
            return {
                "success": False,
                "error": f"Failed to spawn command: {exc}",
                "termination_reason": CommandTerminationReason.ERROR.value,
            }
        return {
            "success": result.returncode == 0,
            "exit_code": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "termination_reason": CommandTerminationReason.NORMAL.value,
        }

    def web_fetch(args: dict[str, Any]) -> dict[str, Any]:
        _require(workspace, "network")
        current = args["url"]
        if not (current.startswith("http://") or current.startswith("https://")):
            raise ToolInputError("web_fetch", "url must start with http:// or https://")
        client = web.get()
        for _ in range(settings.web_max_redirects + 1):
            with client.stream("GET", current) as response:
                if response.status_code in {301, 302, 303, 307, 308}:
                    location = response.headers.get("location")
                    if not location:
                        break
                    current = str(response.url.join(location))
                    continue
                content = _read_capped(response, settings.web_max_bytes)
            text = content[: settings.web_max_bytes].decode("utf-8", errors="replace")
            if len(content) > settings.web_max_bytes:
                text += "\n[truncated]"
            return {
                "success": response.status_code < 400,
                "url": current,
                "status": response.status_code,
                "content": text,
            }
        raise ValueError("too many redirects")

    path_prop = {"type": "string", "description": "Path relative to the workspace root"}
    registry.register(
        ToolDefinition(
            name="read_file",
            description=f"Read a UTF-8 text file within {root}",
            input_schema=_object_schema({"path": path_prop}, ["path"]),
            handle=read_file,
            file_effect="read",
        )
    )
    registry.register(
        ToolDefinition(
            name="write_file",
            description=f"Create or overwrite a text file within {root}",
            input_schema=_object_schema(
                {"path": path_prop, "content": {"type": "string"}}, ["path", "content"]
            ),
            handle=write_file,
            file_effect="create",
        )
    )
    registry.register(
        ToolDefinition(
            name="list_directory",
            description=f"List directory entries within {root}",
            input_schema=_object_schema({"path": path_prop}, []),
            handle=list_directory,
        )
    )
    if settings.shell_enabled and workspace.permissions.get("shell", False):
        registry.register(
            ToolDefinition(
                name="run_command",
                description="Run a command in the workspace directory (no shell operators)",
                input_schema=_object_schema(
                    {"command": {"type": "string"}, "timeout_s": {"type": "number"}},
                    ["command"],
                ),
                handle=run_command,
            )
        )
    if workspace.permissions.get("network", False):
        registry.register(
            ToolDefinition(
                name="web_fetch",
                description="Fetch a URL over HTTP(S) with size and redirect limits",
                input_schema=_object_schema({"url": {"type": "string"}}, ["url"]),
                handle=web_fetch,
            )
        )
    return registry
