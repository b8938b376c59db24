from pathlib import Path

from multiverse import __version__
from multiverse.config import (
    DEFAULT_COOLDOWN_SECONDS,
    MultiverseConfig,
    ToolCandidate,
    ToolCategoryConfig,
    dumps_toml,
    load_config,
    save_config,
)


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.orchestrator.pool_ids == ["default"]
    assert config.orchestrator.recovery_policy == "requeue"
    assert config.retry.max_attempts == 3
    assert config.retry.require_human is True
    assert config.tooling.profiles == {}


def test_config_roundtrip_with_tooling_profile(tmp_path: Path) -> None:
    path = tmp_path / "multiverse.toml"
    config = MultiverseConfig.default()
    config.orchestrator.pool_ids = ["default", "gpu"]
    config.orchestrator.tick_seconds = 0.5
    config.retry.max_attempts = 5
    config.retry.require_human = False
    config.tooling.active_profile = "fast"
    config.tooling.profiles["fast"] = {
        "plan": ToolCategoryConfig(
            strategy="round_robin",
            cooldown_sec=30,
            candidates=[
                ToolCandidate(tool="codex-cli", model="gpt-5.2", weight=2, flags=["--quiet"]),
                ToolCandidate(tool="openai-chat", env={"OPENAI_BASE_URL": "http://localhost"}),
            ],
        )
    }

    save_config(path, config)
    loaded = load_config(path)

    assert loaded.orchestrator.pool_ids == ["default", "gpu"]
    assert loaded.orchestrator.tick_seconds == 0.5
    assert loaded.retry.max_attempts == 5
    assert loaded.retry.require_human is False
    plan = loaded.tooling.profiles["fast"]["plan"]
    assert plan.strategy == "round_robin"
    assert plan.cooldown_sec == 30
    assert [candidate.key for candidate in plan.candidates] == ["codex-cli:gpt-5.2", "openai-chat"]
    assert plan.candidates[0].flags == ["--quiet"]
    assert plan.candidates[1].env == {"OPENAI_BASE_URL": "http://localhost"}


def test_category_defaults_apply_when_omitted() -> None:
    category = ToolCategoryConfig.from_dict({"candidates": [{"tool": "mock"}]})

    assert category.strategy == "weighted"
    assert category.fallback_on_rate_limit is True
    assert category.cooldown_sec == DEFAULT_COOLDOWN_SECONDS
    assert category.candidates[0].weight == 1


def test_toml_dump_contains_retry_and_orchestrator_fields() -> None:
    rendered = dumps_toml(MultiverseConfig.default())

    assert "[orchestrator]" in rendered
    assert 'agent_runner_path = "agent-runner"' in rendered
    assert "[retry]" in rendered
    assert "backoff_base_seconds = 5" in rendered
    assert "[tooling]" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    assert f'version = "{__version__}"' in pyproject.read_text(encoding="utf-8")
