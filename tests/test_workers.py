import pytest
import yaml

from multiverse.errors import InvariantViolation, UnsupportedKindError, UnsupportedModeError, ValidationFailure
from multiverse.state.models import NodeDesign, SuggestedImpl, TaskState
from multiverse.workers import (
    AdapterConfig,
    AgentRunnerAdapter,
    CodexAdapter,
    WorkerRequest,
    build_task_document,
    build_task_prompt,
    create,
    normalize_reasoning_effort,
    register,
    registered_kinds,
    render_task_yaml,
)
from multiverse.workers.claude import DEFAULT_CLAUDE_MODEL
from multiverse.workers.codex import DEFAULT_CODEX_MODEL
from multiverse.workers.gemini import DEFAULT_GEMINI_MODEL


def test_builtin_kinds_are_registered() -> None:
    assert registered_kinds() == [
        "agent-runner",
        "claude-code",
        "claude-code-cli",
        "codex-cli",
        "gemini-cli",
    ]
    assert create("claude-code-cli").kind == "claude-code-cli"
    with pytest.raises(UnsupportedKindError):
        create("cursor")
    with pytest.raises(InvariantViolation):
        register("codex-cli", CodexAdapter)


def test_codex_build_command_shape() -> None:
    plan = create("codex-cli").build(WorkerRequest(prompt="fix the bug"))

    assert plan.argv == [
        "codex",
        "exec",
        "--dangerously-bypass-approvals-and-sandbox",
        "-C",
        "/workspace/project",
        "--json",
        "-m",
        DEFAULT_CODEX_MODEL,
        "-c",
        "reasoning_effort=medium",
        "fix the bug",
    ]
    assert plan.stdin == ""


def test_codex_host_mode_with_stdin() -> None:
    adapter = create("codex-cli", AdapterConfig(cli_path="/opt/codex", flags=["--quiet"]))
    plan = adapter.build(
        WorkerRequest(
            prompt="plan it",
            model="gpt-5.2",
            workdir="/repo",
            reasoning_effort="xhigh",
            temperature=0.2,
            max_tokens=512,
            use_stdin=True,
            tool_specific={"docker_mode": False, "json_output": False},
        )
    )

    assert plan.argv == [
        "/opt/codex",
        "exec",
        "-C",
        "/repo",
        "-m",
        "gpt-5.2",
        "-c",
        "reasoning_effort=high",
        "-c",
        "temperature=0.20",
        "-c",
        "max_tokens=512",
        "--quiet",
        "-",
    ]
    assert plan.stdin == "plan it"
    assert plan.workdir == "/repo"


def test_reasoning_effort_normalization() -> None:
    assert normalize_reasoning_effort(" LOW ") == "low"
    assert normalize_reasoning_effort("extra_high") == "high"
    assert normalize_reasoning_effort("bogus") == "medium"


def test_claude_build_command_shape() -> None:
    plan = create("claude-code").build(WorkerRequest(prompt="hello"))

    assert plan.argv == ["claude", "--model", DEFAULT_CLAUDE_MODEL, "-p", "hello"]


def test_gemini_flags() -> None:
    adapter = create("gemini-cli")

    default = adapter.build(WorkerRequest(prompt="hi"))
    cautious = adapter.build(
        WorkerRequest(prompt="hi", use_stdin=True, tool_specific={"yolo": False, "json_output": False})
    )

    assert default.argv == [
        "gemini",
        "--model",
        DEFAULT_GEMINI_MODEL,
        "--output-format",
        "json",
        "--yolo",
        "-p",
        "hi",
    ]
    assert cautious.argv == ["gemini", "--model", DEFAULT_GEMINI_MODEL, "-p", "-"]
    assert cautious.stdin == "hi"


def test_requests_are_validated() -> None:
    adapter = create("codex-cli")

    with pytest.raises(ValidationFailure):
        adapter.build(WorkerRequest(prompt=""))
    with pytest.raises(UnsupportedModeError):
        adapter.build(WorkerRequest(prompt="x", mode="chat"))


def test_env_layers_merge() -> None:
    adapter = create("claude-code", AdapterConfig(extra_env={"A": "1", "B": "base"}))

    plan = adapter.build(WorkerRequest(prompt="x", extra_env={"B": "request"}))

    assert plan.env == {"A": "1", "B": "request"}


def _node() -> NodeDesign:
    return NodeDesign(
        node_id="t1",
        name="Add login",
        summary="Login with email",
        phase_name="Implementation",
        wbs_level=3,
        dependencies=["t0"],
        acceptance_criteria=["User can log in", "Bad password is rejected"],
        suggested_impl=SuggestedImpl(language="go", file_paths=["auth/login.go"]),
    )


def test_task_prompt_sections() -> None:
    prompt = build_task_prompt("Add login", _node())

    assert prompt.startswith("Execute task: Add login\n\nDescription:\nLogin with email")
    assert "Acceptance Criteria:\n- User can log in\n- Bad password is rejected" in prompt
    assert "Suggested Implementation:\nLanguage: go\nTarget Files:\n- auth/login.go" in prompt
    assert build_task_prompt("Bare", None) == "Execute task: Bare"


def test_task_document_uses_runner_settings() -> None:
    task = TaskState(
        task_id="t1",
        node_id="t1",
        inputs={"runner_max_loops": 7, "runner_worker_kind": "claude-code"},
    )

    document = build_task_document(task, _node())

    assert document["version"] == "1"
    assert document["runner"] == {"max_loops": 7, "worker": {"kind": "claude-code"}}
    assert document["task"]["title"] == "Add login"
    assert document["task"]["dependencies"] == ["t0"]
    assert document["task"]["suggested_impl"]["file_paths"] == ["auth/login.go"]
    assert yaml.safe_load(render_task_yaml(document)) == document


def test_task_document_defaults_without_inputs_or_node() -> None:
    document = build_task_document(TaskState(task_id="t9", node_id="t9"), None)

    assert document["task"]["title"] == "t9"
    assert document["runner"] == {"max_loops": 5, "worker": {"kind": "codex-cli"}}
    assert "suggested_impl" not in document["task"]


def test_agent_runner_feeds_document_on_stdin() -> None:
    adapter = AgentRunnerAdapter(AdapterConfig(cli_path="/usr/local/bin/agent-runner"))
    task = TaskState(task_id="t1", node_id="t1")

    request = adapter.request_for_task(task, _node(), workdir="/repo", timeout=30.0)
    plan = adapter.build(request)

    assert plan.argv == ["/usr/local/bin/agent-runner"]
    assert plan.workdir == "/repo"
    assert plan.timeout == 30.0
    assert yaml.safe_load(plan.stdin)["task"]["id"] == "t1"
