from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

RecoveryPolicyName = Literal["requeue", "surface"]
StrategyName = Literal["weighted", "round_robin"]

DEFAULT_WORKSPACE_DIR = "~/.multiverse"
DEFAULT_RUNNER_MAX_LOOPS = 5
DEFAULT_WORKER_KIND = "codex-cli"
DEFAULT_COOLDOWN_SECONDS = 120


@dataclass(slots=True)
class OrchestratorConfig:
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    agent_runner_path: str = "agent-runner"
    pool_ids: list[str] = field(default_factory=lambda: ["default"])
    project_root: str = "."
    tick_seconds: float = 2.0
    grace_seconds: float = 5.0
    recovery_policy: RecoveryPolicyName = "requeue"
    runner_max_loops: int = DEFAULT_RUNNER_MAX_LOOPS
    worker_kind: str = DEFAULT_WORKER_KIND


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    backoff_factor: float = 2.0
    require_human: bool = True


@dataclass(slots=True)
class ToolCandidate:
    tool: str
    model: str = ""
    weight: int = 1
    cli_path: str = ""
    flags: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    tool_specific: dict[str, Any] = field(default_factory=dict)
    system_prompt: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCandidate:
        return cls(
            tool=str(data.get("tool", "")),
            model=str(data.get("model", "")),
            weight=int(data.get("weight", 1)),
            cli_path=str(data.get("cli_path", "")),
            flags=[str(item) for item in data.get("flags", [])],
            env={str(k): str(v) for k, v in dict(data.get("env", {})).items()},
            tool_specific=dict(data.get("tool_specific", {})),
            system_prompt=str(data.get("system_prompt", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "model": self.model,
            "weight": self.weight,
            "cli_path": self.cli_path,
            "flags": list(self.flags),
            "env": dict(self.env),
            "tool_specific": dict(self.tool_specific),
            "system_prompt": self.system_prompt,
        }

    @property
    def key(self) -> str:
        return f"{self.tool}:{self.model}" if self.model else self.tool


@dataclass(slots=True)
class ToolCategoryConfig:
    strategy: StrategyName = "weighted"
    candidates: list[ToolCandidate] = field(default_factory=list)
    fallback_on_rate_limit: bool = True
    cooldown_sec: int = DEFAULT_COOLDOWN_SECONDS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCategoryConfig:
        return cls(
            strategy=data.get("strategy", "weighted"),
            candidates=[
                ToolCandidate.from_dict(item)
                for item in data.get("candidates", [])
                if isinstance(item, dict)
            ],
            fallback_on_rate_limit=bool(data.get("fallback_on_rate_limit", True)),
            cooldown_sec=int(data.get("cooldown_sec", DEFAULT_COOLDOWN_SECONDS)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "fallback_on_rate_limit": self.fallback_on_rate_limit,
            "cooldown_sec": self.cooldown_sec,
            "candidates": [candidate.to_dict() for candidate in self.candidates],
        }


@dataclass(slots=True)
class ToolingConfig:
    active_profile: str = ""
    force: str = ""
    profiles: dict[str, dict[str, ToolCategoryConfig]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolingConfig:
        profiles: dict[str, dict[str, ToolCategoryConfig]] = {}
        raw_profiles = data.get("profiles", {})
        if isinstance(raw_profiles, dict):
            for profile_name, categories in raw_profiles.items():
                if not isinstance(categories, dict):
                    continue
                profiles[str(profile_name)] = {
                    str(category): ToolCategoryConfig.from_dict(value)
                    for category, value in categories.items()
                    if isinstance(value, dict)
                }
        return cls(
            active_profile=str(data.get("active_profile", "")),
            force=str(data.get("force", "")),
            profiles=profiles,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_profile": self.active_profile,
            "force": self.force,
            "profiles": {
                name: {category: value.to_dict() for category, value in categories.items()}
                for name, categories in self.profiles.items()
            },
        }


@dataclass(slots=True)
class MultiverseConfig:
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    tooling: ToolingConfig = field(default_factory=ToolingConfig)

    @classmethod
    def default(cls) -> MultiverseConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MultiverseConfig:
        return cls(
            orchestrator=OrchestratorConfig(**data.get("orchestrator", {})),
            retry=RetryConfig(**data.get("retry", {})),
            tooling=ToolingConfig.from_dict(data.get("tooling", {})),
        )

    def to_dict(self) -> dict:
        return {
            "orchestrator": {
                "workspace_dir": self.orchestrator.workspace_dir,
                "agent_runner_path": self.orchestrator.agent_runner_path,
                "pool_ids": list(self.orchestrator.pool_ids),
                "project_root": self.orchestrator.project_root,
                "tick_seconds": self.orchestrator.tick_seconds,
                "grace_seconds": self.orchestrator.grace_seconds,
                "recovery_policy": self.orchestrator.recovery_policy,
                "runner_max_loops": self.orchestrator.runner_max_loops,
                "worker_kind": self.orchestrator.worker_kind,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "backoff_base_seconds": self.retry.backoff_base_seconds,
                "backoff_max_seconds": self.retry.backoff_max_seconds,
                "backoff_factor": self.retry.backoff_factor,
                "require_human": self.retry.require_human,
            },
            "tooling": self.tooling.to_dict(),
        }

    def workspace_path(self) -> Path:
        return Path(self.orchestrator.workspace_dir).expanduser().resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(
            f"{json.dumps(str(key), ensure_ascii=False)} = {_toml_value(item)}"
            for key, item in value.items()
        )
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MultiverseConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["orchestrator", "retry"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")

    tooling = data["tooling"]
    lines.append("[tooling]")
    lines.append(f"active_profile = {_toml_value(tooling['active_profile'])}")
    lines.append(f"force = {_toml_value(tooling['force'])}")
    lines.append("")
    for profile_name, categories in tooling["profiles"].items():
        for category, value in categories.items():
            lines.append(
                f"[tooling.profiles.{json.dumps(profile_name)}.{json.dumps(category)}]"
            )
            for key, item in value.items():
                lines.append(f"{key} = {_toml_value(item)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MultiverseConfig:
    if not path.exists():
        return MultiverseConfig.default()
    return MultiverseConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: MultiverseConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
