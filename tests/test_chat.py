import asyncio
import json
from pathlib import Path

import pytest

from multiverse.chat import GREETING, ChatHandler
from multiverse.errors import MetaAgentError
from multiverse.events import CHAT_PROGRESS, RecordingEmitter
from multiverse.meta import MockMetaProvider
from multiverse.meta.base import MetaClient
from multiverse.meta.protocol import PotentialConflict


def _steps(events: RecordingEmitter) -> list[str]:
    return [payload["step"] for payload in events.named(CHAT_PROGRESS)]


def test_message_creates_tasks_and_records_history(repo) -> None:
    events = RecordingEmitter()
    handler = ChatHandler(repo, MockMetaProvider(), events=events)
    session = handler.create_session()

    response = asyncio.run(handler.handle_message(session.id, "Build auth"))

    assert len(response.generated_tasks) == 2
    assert response.understanding == "Mock: request understood"
    assert "Created: 2" in response.message.content
    assert "- **Mock design task**: Design task produced by the mock planner" in (
        response.message.content
    )
    assert _steps(events) == ["Processing", "Analyzing", "Planning", "Persisting", "Completed"]
    history = handler.history(session.id)
    assert [(item.role, item.content) for item in history[:2]] == [
        ("system", GREETING),
        ("user", "Build auth"),
    ]
    assert history[2].role == "assistant"
    assert history[2].generated_tasks == [task.task_id for task in response.generated_tasks]
    assert len(repo.state.load_tasks().tasks) == 2


def test_follow_up_message_carries_context(repo) -> None:
    meta = MockMetaProvider()
    handler = ChatHandler(repo, meta, runner_max_loops=9)
    session = handler.create_session()

    first = asyncio.run(handler.handle_message(session.id, "Build auth"))
    asyncio.run(handler.handle_message(session.id, "Now add tests"))

    prompt = meta.calls[-1][1]
    assert "Existing Tasks:" in prompt
    assert f"- {first.generated_tasks[0].task_id}: Mock design task (PENDING)" in prompt
    assert "- [user] Build auth" in prompt
    assert "WBS Structure" in prompt
    assert first.generated_tasks[0].inputs["runner_max_loops"] == 9


def test_existing_tasks_report_parents_below_root(repo, make_task) -> None:
    make_task("a")
    make_task("b", parent="a", deps=["a"], name="Child")
    handler = ChatHandler(repo, MockMetaProvider())

    summaries = {item.id: item for item in handler.existing_tasks()}

    assert summaries["a"].parent_id is None
    assert summaries["b"].parent_id == "a"
    assert summaries["b"].title == "Child"
    assert summaries["b"].dependencies == ["a"]


def test_filter_conflicts_keeps_existing_files(repo) -> None:
    project = Path(repo.project_root)
    (project / "app.py").write_text("", encoding="utf-8")
    handler = ChatHandler(repo, MockMetaProvider())

    kept = handler.filter_conflicts(
        [
            PotentialConflict(file="app.py", warning="touched twice"),
            PotentialConflict(file=str(project / "app.py")),
            PotentialConflict(file="missing.py"),
            PotentialConflict(file=" "),
        ]
    )

    assert [item.file for item in kept] == ["app.py", str(project / "app.py")]


def test_conflicts_are_mentioned_in_reply(repo) -> None:
    (Path(repo.project_root) / "app.py").write_text("", encoding="utf-8")
    reply = json.dumps(
        {
            "understanding": "Touching app",
            "operations": [{"op": "create", "temp_id": "temp-001", "title": "Edit app"}],
            "potential_conflicts": [
                {"file": "app.py", "tasks": ["temp-001"], "warning": "shared module"},
                {"file": "gone.py", "warning": "ignored"},
            ],
        }
    )
    handler = ChatHandler(repo, MockMetaProvider(plan_patch_reply=reply))
    session = handler.create_session()

    response = asyncio.run(handler.handle_message(session.id, "edit app"))

    assert [item.file for item in response.conflicts] == ["app.py"]
    assert "- `app.py`: shared module" in response.message.content
    assert "gone.py" not in response.message.content


def test_meta_failure_apologises_and_raises(repo) -> None:
    events = RecordingEmitter()
    handler = ChatHandler(repo, MockMetaProvider(plan_patch_reply=""), events=events)
    session = handler.create_session()

    with pytest.raises(MetaAgentError):
        asyncio.run(handler.handle_message(session.id, "Build auth"))

    assert _steps(events) == ["Processing", "Analyzing", "Planning", "Failed"]
    assert handler.history(session.id)[-1].content.startswith("Sorry, the plan update failed")
    assert repo.state.load_tasks().tasks == []


class SlowMeta(MetaClient):
    @property
    def name(self) -> str:
        return "slow"

    async def decompose(self, request):
        raise NotImplementedError

    async def plan_patch(self, request):
        await asyncio.sleep(10)


def test_meta_timeout_becomes_retriable_error(repo) -> None:
    events = RecordingEmitter()
    handler = ChatHandler(repo, SlowMeta(), events=events, meta_timeout=0.05)
    session = handler.create_session()

    with pytest.raises(MetaAgentError, match="timed out") as excinfo:
        asyncio.run(handler.handle_message(session.id, "Build auth"))

    assert excinfo.value.retriable is True
    assert excinfo.value.provider == "slow"
    assert _steps(events)[-1] == "Failed"
