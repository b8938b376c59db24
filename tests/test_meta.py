import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from multiverse.errors import MetaAgentError
from multiverse.meta import (
    CodexCLIProvider,
    MockMetaProvider,
    OpenAIChatProvider,
    extract_json,
    extract_yaml,
    parse_meta_message,
)
from multiverse.meta.openai_chat import is_retryable
from multiverse.meta.prompts import (
    DECOMPOSE_SYSTEM_PROMPT,
    MAX_PROMPT_TASKS,
    PLAN_PATCH_SYSTEM_PROMPT,
    build_decompose_user_prompt,
    build_plan_patch_user_prompt,
    status_priority,
    trim_wbs_bfs,
)
from multiverse.meta.protocol import (
    ConversationMessage,
    DecomposeContext,
    DecomposeRequest,
    ExistingTaskSummary,
    PlanPatchContext,
    PlanPatchRequest,
)
from multiverse.state.models import NodeIndexEntry
from multiverse.wbs import new_wbs, place_node
from multiverse.workers.codex import DEFAULT_META_MODEL

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
PLAN_REPLY = json.dumps(
    {
        "type": "plan_patch",
        "version": 1,
        "payload": {
            "understanding": "add a task",
            "operations": [{"op": "create", "temp_id": "temp-001", "title": "Task"}],
        },
    }
)


def _status_error(code: int) -> APIStatusError:
    return APIStatusError(
        f"status {code}", response=httpx.Response(code, request=REQUEST), body=None
    )


def test_extract_json_variants() -> None:
    assert extract_json('Here you go:\n```json\n{"a": 1}\n```\nthanks') == '{"a": 1}'
    assert extract_json('```\n{"a": 2}\n```') == '{"a": 2}'
    assert extract_json('prefix {"a": {"b": 3}} suffix {"c": 4}') == '{"a": {"b": 3}}'
    assert extract_json('use {braces} then {"ok": true}') == '{"ok": true}'


def test_extract_yaml_from_prose() -> None:
    text = "Sure!\ntype: plan_patch\nversion: 1\npayload:\n  understanding: x"

    assert extract_yaml(text) == "type: plan_patch\nversion: 1\npayload:\n  understanding: x"
    assert extract_yaml("```yaml\nkey: value\n```") == "key: value"


def test_parse_meta_message_accepts_envelope_bare_and_yaml() -> None:
    assert parse_meta_message(PLAN_REPLY, "plan_patch")["understanding"] == "add a task"
    assert parse_meta_message('{"understanding": "bare"}', "plan_patch") == {
        "understanding": "bare"
    }
    yaml_reply = (
        "Sure!\ntype: plan_patch\nversion: 1\npayload:\n  understanding: yaml\n  operations: []"
    )
    assert parse_meta_message(yaml_reply, "plan_patch") == {
        "understanding": "yaml",
        "operations": [],
    }


@pytest.mark.parametrize(
    "reply",
    [
        "",
        "[1, 2]",
        '{"type": "decompose", "payload": {}}',
        '{"type": "plan_patch", "payload": [1]}',
    ],
)
def test_parse_meta_message_rejects_bad_replies(reply: str) -> None:
    with pytest.raises(MetaAgentError):
        parse_meta_message(reply, "plan_patch")


def test_decompose_prompt_lists_context() -> None:
    request = DecomposeRequest(
        user_input="Add OAuth",
        context=DecomposeContext(
            workspace_path="/repo",
            existing_tasks=[
                ExistingTaskSummary(id="t1", title="Login", status="PENDING", dependencies=["t0"])
            ],
            conversation_history=[ConversationMessage(role="user", content="hi")],
        ),
    )

    prompt = build_decompose_user_prompt(request)

    assert prompt.startswith("## User Request\nAdd OAuth\n")
    assert "Workspace: /repo" in prompt
    assert "- [PENDING] t1: Login (depends: t0)" in prompt
    assert "### Conversation History\nuser: hi" in prompt
    assert prompt.endswith("Please decompose this request into structured tasks.")


def test_plan_patch_prompt_truncates_large_context() -> None:
    tasks = [
        ExistingTaskSummary(id=f"t{index:03d}", title="Done", status="SUCCEEDED")
        for index in range(MAX_PROMPT_TASKS)
    ]
    tasks.append(ExistingTaskSummary(id="zz-running", title="Busy", status="RUNNING", parent_id="p1"))
    wbs = new_wbs("/repo")
    place_node(wbs, "p1", wbs.root_node_id, None)
    history = [ConversationMessage(role="user", content=f"m{index}") for index in range(12)]
    history.append(ConversationMessage(role="assistant", content="x" * 400))

    prompt = build_plan_patch_user_prompt(
        PlanPatchRequest(
            user_input="Split the parser task",
            context=PlanPatchContext(
                workspace_path="/repo",
                existing_tasks=tasks,
                existing_wbs=wbs,
                conversation_history=history,
            ),
        )
    )
    lines = prompt.splitlines()

    assert lines[:4] == ["User Input:", "Split the parser task", "", "Context:"]
    assert "(showing first 200 of 201 tasks, prioritized by status)" in lines
    assert lines[lines.index("Existing Tasks:") + 2].startswith("- zz-running: Busy (RUNNING)")
    assert "parent=p1]" in prompt
    assert f"WBS Structure (Root: {wbs.root_node_id}):" in lines
    assert "  - p1: parent=node-root, children=[none]" in lines
    assert "- [user] m2" not in lines
    assert "- [user] m3" in lines
    assert f"- [assistant] {'x' * 300}..." in lines


def test_trim_wbs_bfs_keeps_nearest_nodes() -> None:
    nodes = [
        NodeIndexEntry(node_id="root", children=["a", "b"]),
        NodeIndexEntry(node_id="a", parent_id="root", children=["a1"]),
        NodeIndexEntry(node_id="b", parent_id="root"),
        NodeIndexEntry(node_id="a1", parent_id="a"),
    ]

    assert [node.node_id for node in trim_wbs_bfs(nodes, "root", 3)] == ["root", "a", "b"]
    assert len(trim_wbs_bfs(nodes, "root", 10)) == 4
    assert [status_priority(status) for status in ["RUNNING", "BLOCKED", "READY", "FAILED"]] == [
        0,
        1,
        2,
        3,
    ]


def test_mock_provider_round_trips_through_extraction() -> None:
    provider = MockMetaProvider()

    patch = asyncio.run(provider.plan_patch(PlanPatchRequest(user_input="build it")))
    plan = asyncio.run(provider.decompose(DecomposeRequest(user_input="build it")))

    assert [op.temp_id for op in patch.operations] == ["temp-001", "temp-002"]
    assert patch.operations[1].dependencies == ["temp-001"]
    assert patch.operations[1].suggested_impl["file_paths"] == ["internal/mock/mock.go"]
    assert [phase.name for phase in plan.phases] == ["Conceptual Design", "Implementation"]
    assert [call[0] for call in provider.calls] == [PLAN_PATCH_SYSTEM_PROMPT, DECOMPOSE_SYSTEM_PROMPT]


def test_mock_provider_surfaces_malformed_replies() -> None:
    bad_ops = MockMetaProvider(plan_patch_reply='{"operations": "not a list"}')
    wrong_type = MockMetaProvider(plan_patch_reply='{"type": "decompose", "payload": {}}')

    with pytest.raises(MetaAgentError) as excinfo:
        asyncio.run(bad_ops.plan_patch(PlanPatchRequest(user_input="x")))
    assert excinfo.value.provider == "mock"
    with pytest.raises(MetaAgentError) as excinfo:
        asyncio.run(wrong_type.plan_patch(PlanPatchRequest(user_input="x")))
    assert excinfo.value.provider == "mock"


class FakeCompletions:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=outcome))])


def _openai(outcomes: list, **kwargs) -> tuple[OpenAIChatProvider, FakeCompletions, list[float]]:
    completions = FakeCompletions(outcomes)
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    provider = OpenAIChatProvider(
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
        sleep=_sleep,
        **kwargs,
    )
    return provider, completions, delays


def test_openai_provider_retries_transient_errors() -> None:
    provider, completions, delays = _openai(
        [APIConnectionError(request=REQUEST), _status_error(503), PLAN_REPLY]
    )

    response = asyncio.run(provider.plan_patch(PlanPatchRequest(user_input="add a task")))

    assert response.understanding == "add a task"
    assert delays == [1.0, 2.0]
    assert len(completions.calls) == 3
    assert completions.calls[0]["model"] == DEFAULT_META_MODEL
    assert completions.calls[0]["messages"][0] == {
        "role": "system",
        "content": PLAN_PATCH_SYSTEM_PROMPT,
    }


def test_openai_provider_does_not_retry_client_errors() -> None:
    provider, _, delays = _openai([_status_error(400)])

    with pytest.raises(MetaAgentError) as excinfo:
        asyncio.run(provider.plan_patch(PlanPatchRequest(user_input="x")))

    assert excinfo.value.retriable is False
    assert delays == []


def test_openai_provider_gives_up_after_max_retries() -> None:
    provider, completions, delays = _openai(
        [APIConnectionError(request=REQUEST), APIConnectionError(request=REQUEST)], max_retries=1
    )

    with pytest.raises(MetaAgentError) as excinfo:
        asyncio.run(provider.plan_patch(PlanPatchRequest(user_input="x")))

    assert excinfo.value.retriable is True
    assert delays == [1.0]
    assert len(completions.calls) == 2


def test_openai_provider_uses_candidate_prompt_for_decompose() -> None:
    reply = json.dumps({"type": "decompose", "payload": {"understanding": "ok", "phases": []}})
    provider, completions, _ = _openai([reply, ""], model="gpt-test", system_prompt="Be brief.")

    assert asyncio.run(provider.decompose(DecomposeRequest(user_input="x"))).understanding == "ok"
    assert completions.calls[0]["messages"][0]["content"] == "Be brief."
    assert completions.calls[0]["model"] == "gpt-test"
    with pytest.raises(MetaAgentError, match="empty"):
        asyncio.run(provider.decompose(DecomposeRequest(user_input="x")))


def test_is_retryable_classification() -> None:
    assert is_retryable(APIConnectionError(request=REQUEST))
    assert is_retryable(_status_error(429))
    assert is_retryable(_status_error(500))
    assert not is_retryable(_status_error(404))
    assert not is_retryable(ValueError("nope"))


def _fake_cli(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-codex"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json, sys\n"
        "from pathlib import Path\n"
        "here = Path(sys.argv[0])\n"
        "here.with_suffix('.args').write_text(json.dumps(sys.argv[1:]))\n"
        "here.with_suffix('.stdin').write_text(sys.stdin.read())\n"
        f"{body}\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def test_cli_provider_runs_codex_with_prompt_on_stdin(tmp_path: Path) -> None:
    script = _fake_cli(tmp_path, f"print({PLAN_REPLY!r})")
    provider = CodexCLIProvider(cli_path=str(script))

    response = asyncio.run(provider.plan_patch(PlanPatchRequest(user_input="add a task")))

    assert [op.title for op in response.operations] == ["Task"]
    args = json.loads(script.with_suffix(".args").read_text(encoding="utf-8"))
    assert args == ["exec", "-m", DEFAULT_META_MODEL, "-c", "reasoning_effort=medium", "-"]
    stdin = script.with_suffix(".stdin").read_text(encoding="utf-8")
    assert stdin.startswith(PLAN_PATCH_SYSTEM_PROMPT)
    assert "User Input:\nadd a task" in stdin


def test_cli_provider_failures_become_meta_errors(tmp_path: Path) -> None:
    failing = CodexCLIProvider(cli_path=str(_fake_cli(tmp_path, "print('quota'); sys.exit(1)")))
    missing = CodexCLIProvider(cli_path=str(tmp_path / "absent"))

    with pytest.raises(MetaAgentError, match="exit status 1") as excinfo:
        asyncio.run(failing.plan_patch(PlanPatchRequest(user_input="x")))
    assert excinfo.value.provider == "codex-cli"
    with pytest.raises(MetaAgentError) as excinfo:
        asyncio.run(missing.plan_patch(PlanPatchRequest(user_input="x")))
    assert excinfo.value.retriable is False
