import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal


@dataclass(frozen=True)
class Paths:
    base_dir: Path

    @property
    def data_dir(self) -> Path:
        return self.base_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / "taskpilot.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def workspace_dir(self) -> Path:
        return self.data_dir / "workspace"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"


@dataclass(frozen=True)
class GuardrailConfig:
    max_tokens_per_task: int = 100_000
    token_budget_enabled: bool = True
    max_cost_per_task: float = 1.00
    cost_budget_enabled: bool = False
    max_iterations_per_task: int = 50
    iteration_limit_enabled: bool = True


@dataclass(frozen=True)
class ExecutorSettings:
    llm_timeout_s: float = 120.0
    max_step_iterations: int = 10
    max_empty_responses: int = 3
    max_tokens: int = 4096


@dataclass(frozen=True)
class DaemonSettings:
    max_task_retries: int = 2
    retry_delay_s: float = 30.0
    max_concurrent_tasks: int = 3


LLMProviderName = Literal["anthropic", "openai"]


@dataclass(frozen=True)
class LLMSettings:
    provider: LLMProviderName
    model: str
    base_url: str
    api_key: str | None = None
    model_key: str | None = None


@dataclass(frozen=True)
class ToolSettings:
    fs_max_bytes: int = 1_000_000
    web_max_bytes: int = 1_000_000
    web_timeout_s: float = 20.0
    web_max_redirects: int = 5
    shell_enabled: bool = False
    command_timeout_s: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    llm: LLMSettings
    tools: ToolSettings = ToolSettings()
    guardrails: GuardrailConfig = GuardrailConfig()
    executor: ExecutorSettings = ExecutorSettings()
    daemon: DaemonSettings = DaemonSettings()


def load_paths(base_dir: Path | None = None) -> Paths:
    resolved = base_dir or (Path.home() / ".taskpilot")
    return Paths(base_dir=resolved)


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def load_config(path: Path) -> AppConfig:
    payload = json.loads(path.read_text())
    llm = _section(payload, "llm")
    tools = _section(payload, "tools")
    guardrails = _section(payload, "guardrails")
    executor = _section(payload, "executor")
    daemon = _section(payload, "daemon")
    tool_defaults = ToolSettings()
    guard_defaults = GuardrailConfig()
    exec_defaults = ExecutorSettings()
    daemon_defaults = DaemonSettings()
    return AppConfig(
        llm=LLMSettings(
            provider=llm["provider"],
            model=llm["model"],
            base_url=llm["base_url"],
            api_key=llm.get("api_key"),
            model_key=llm.get("model_key"),
        ),
        tools=ToolSettings(
            fs_max_bytes=int(tools.get("fs_max_bytes", tool_defaults.fs_max_bytes)),
            web_max_bytes=int(tools.get("web_max_bytes", tool_defaults.web_max_bytes)),
            web_timeout_s=float(tools.get("web_timeout_s", tool_defaults.web_timeout_s)),
            web_max_redirects=int(tools.get("web_max_redirects", tool_defaults.web_max_redirects)),
            shell_enabled=bool(tools.get("shell_enabled", tool_defaults.shell_enabled)),
            command_timeout_s=float(tools.get("command_timeout_s", tool_defaults.command_timeout_s)),
        ),
        guardrails=GuardrailConfig(
            max_tokens_per_task=int(
                guardrails.get("max_tokens_per_task", guard_defaults.max_tokens_per_task)
            ),
            token_budget_enabled=bool(
                guardrails.get("token_budget_enabled", guard_defaults.token_budget_enabled)
            ),
            max_cost_per_task=float(
                guardrails.get("max_cost_per_task", guard_defaults.max_cost_per_task)
            ),
            cost_budget_enabled=bool(
                guardrails.get("cost_budget_enabled", guard_defaults.cost_budget_enabled)
            ),
            max_iterations_per_task=int(
                guardrails.get("max_iterations_per_task", guard_defaults.max_iterations_per_task)
            ),
            iteration_limit_enabled=bool(
                guardrails.get("iteration_limit_enabled", guard_defaults.iteration_limit_enabled)
            ),
        ),
        executor=ExecutorSettings(
            llm_timeout_s=float(executor.get("llm_timeout_s", exec_defaults.llm_timeout_s)),
            max_step_iterations=int(
                executor.get("max_step_iterations", exec_defaults.max_step_iterations)
            ),
            max_empty_responses=int(
                executor.get("max_empty_responses", exec_defaults.max_empty_responses)
            ),
            max_tokens=int(executor.get("max_tokens", exec_defaults.max_tokens)),
        ),
        daemon=DaemonSettings(
            max_task_retries=int(daemon.get("max_task_retries", daemon_defaults.max_task_retries)),
            retry_delay_s=float(daemon.get("retry_delay_s", daemon_defaults.retry_delay_s)),
            max_concurrent_tasks=int(
                daemon.get("max_concurrent_tasks", daemon_defaults.max_concurrent_tasks)
            ),
        ),
    )


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "llm": {
            "provider": config.llm.provider,
            "model": config.llm.model,
            "base_url": config.llm.base_url,
            "api_key": config.llm.api_key,
            "model_key": config.llm.model_key,
        },
        "tools": {
            "fs_max_bytes": config.tools.fs_max_bytes,
            "web_max_bytes": config.tools.web_max_bytes,
            "web_timeout_s": config.tools.web_timeout_s,
            "web_max_redirects": config.tools.web_max_redirects,
            "shell_enabled": config.tools.shell_enabled,
            "command_timeout_s": config.tools.command_timeout_s,
        },
        "guardrails": {
            "max_tokens_per_task": config.guardrails.max_tokens_per_task,
            "token_budget_enabled": config.guardrails.token_budget_enabled,
            "max_cost_per_task": config.guardrails.max_cost_per_task,
            "cost_budget_enabled": config.guardrails.cost_budget_enabled,
            "max_iterations_per_task": config.guardrails.max_iterations_per_task,
            "iteration_limit_enabled": config.guardrails.iteration_limit_enabled,
        },
        "executor": {
            "llm_timeout_s": config.executor.llm_timeout_s,
            "max_step_iterations": config.executor.max_step_iterations,
            "max_empty_responses": config.executor.max_empty_responses,
            "max_tokens": config.executor.max_tokens,
        },
        "daemon": {
            "max_task_retries": config.daemon.max_task_retries,
            "retry_delay_s": config.daemon.retry_delay_s,
            "max_concurrent_tasks": config.daemon.max_concurrent_tasks,
        },
    }
    path.write_text(json.dumps(payload, indent=2))
