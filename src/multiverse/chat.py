from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from multiverse.config import DEFAULT_RUNNER_MAX_LOOPS, DEFAULT_WORKER_KIND
from multiverse.errors import MetaAgentError, MultiverseError
from multiverse.events import CHAT_PROGRESS, EventEmitter, NullEmitter, chat_progress
from multiverse.meta.base import MetaClient
from multiverse.meta.protocol import (
    ConversationMessage,
    ExistingTaskSummary,
    PlanPatchContext,
    PlanPatchRequest,
    PlanPatchResponse,
    PotentialConflict,
)
from multiverse.planpatch import PlanPatchEngine, PlanPatchResult
from multiverse.state.models import TaskState
from multiverse.state.repository import WorkspaceRepository
from multiverse.state.sessions import ChatMessage, ChatSession, ChatSessionStore
from multiverse.workers.agent_runner import task_title

log = logging.getLogger(__name__)

DEFAULT_META_TIMEOUT_SECONDS = 15 * 60
HISTORY_LIMIT = 10
GREETING = (
    "Chat session started. Describe the feature you want to build "
    "or the problem you want solved."
)


@dataclass(slots=True)
class ChatResponse:
    message: ChatMessage
    generated_tasks: list[TaskState] = field(default_factory=list)
    understanding: str = ""
    conflicts: list[PotentialConflict] = field(default_factory=list)
    result: PlanPatchResult | None = None


class ChatHandler:
    """Turns one user message into a plan patch applied to the workspace."""

    def __init__(
        self,
        repo: WorkspaceRepository,
        meta: MetaClient,
        *,
        sessions: ChatSessionStore | None = None,
        events: EventEmitter | None = None,
        engine: PlanPatchEngine | None = None,
        meta_timeout: float = DEFAULT_META_TIMEOUT_SECONDS,
        runner_max_loops: int = DEFAULT_RUNNER_MAX_LOOPS,
        worker_kind: str = DEFAULT_WORKER_KIND,
    ) -> None:
        self.repo = repo
        self.meta = meta
        self.sessions = sessions or ChatSessionStore(repo.chat_dir)
        self.events = events or NullEmitter()
        self.engine = engine or PlanPatchEngine(
            repo,
            self.events,
            runner_max_loops=runner_max_loops,
            worker_kind=worker_kind,
        )
        self.meta_timeout = meta_timeout

    def _progress(self, session_id: str, step: str, message: str) -> None:
        self.events.emit(CHAT_PROGRESS, chat_progress(session_id, step, message))

    def create_session(self) -> ChatSession:
        session = self.sessions.create_session(workspace_id=self.repo.workspace_id)
        self.sessions.append_message(
            ChatMessage(session_id=session.id, role="system", content=GREETING)
        )
        log.info("chat session %s created", session.id)
        return session

    def history(self, session_id: str) -> list[ChatMessage]:
        return self.sessions.load_messages(session_id)

    def existing_tasks(self) -> list[ExistingTaskSummary]:
        tasks = self.repo.state.load_tasks()
        wbs = self.repo.load_wbs_or_none()
        summaries: list[ExistingTaskSummary] = []
        for task in tasks.tasks:
            node = self.repo.design.find_node(task.node_id)
            entry = wbs.entry(task.node_id) if wbs is not None else None
            parent = entry.parent_id if entry is not None else None
            if wbs is not None and parent == wbs.root_node_id:
                parent = None
            summaries.append(
                ExistingTaskSummary(
                    id=task.task_id,
                    title=task_title(task, node),
                    status=task.status,
                    dependencies=list(node.dependencies) if node else [],
                    phase_name=node.phase_name if node else "",
                    milestone=node.milestone if node else "",
                    wbs_level=node.wbs_level if node else 0,
                    parent_id=parent,
                )
            )
        return summaries

    def build_plan_patch_request(self, session_id: str, message: str) -> PlanPatchRequest:
        history = [
            ConversationMessage(role=item.role, content=item.content)
            for item in self.sessions.recent_messages(session_id, HISTORY_LIMIT)
        ]
        return PlanPatchRequest(
            user_input=message,
            context=PlanPatchContext(
                workspace_path=str(self.repo.project_root),
                existing_tasks=self.existing_tasks(),
                existing_wbs=self.repo.load_wbs_or_none(),
                conversation_history=history,
            ),
        )

    def filter_conflicts(self, conflicts: list[PotentialConflict]) -> list[PotentialConflict]:
        """Keep conflicts whose file exists under the project root."""
        kept: list[PotentialConflict] = []
        for conflict in conflicts:
            name = conflict.file.strip()
            if not name:
                continue
            path = Path(name)
            if not path.is_absolute():
                path = self.repo.project_root / path
            if path.exists():
                kept.append(conflict)
            else:
                log.debug("dropping conflict for missing file %s", name)
        return kept

    @staticmethod
    def render_reply(
        response: PlanPatchResponse,
        result: PlanPatchResult,
        conflicts: list[PotentialConflict],
    ) -> str:
        lines = [response.understanding, ""]
        if result.created_tasks:
            lines.append(f"Created: {len(result.created_tasks)}")
            by_temp = {real: temp for temp, real in result.temp_to_real.items()}
            ops = {op.temp_id: op for op in response.operations if op.temp_id}
            for task in result.created_tasks:
                op = ops.get(by_temp.get(task.task_id, ""))
                title = op.title if op and op.title else task.task_id
                description = op.description if op and op.description else ""
                lines.append(f"- **{title}**" + (f": {description}" if description else ""))
            lines.append("")
        for label, ids in (
            ("Updated", result.updated_task_ids),
            ("Moved", result.moved_task_ids),
            ("Deleted", result.deleted_task_ids),
        ):
            if ids:
                lines.append(f"{label}: {len(ids)}")
                lines.extend(f"- {task_id}" for task_id in ids)
                lines.append("")
        if conflicts:
            lines.append("**Note**: potential conflicts detected in these files:")
            lines.extend(f"- `{item.file}`: {item.warning}" for item in conflicts)
        return "\n".join(lines).strip() + "\n"

    async def handle_message(self, session_id: str, message: str) -> ChatResponse:
        started = time.monotonic()
        log.info("handling chat message for %s (%d chars)", session_id, len(message))
        self._progress(session_id, "Processing", "Message received...")
        try:
            self.sessions.append_message(
                ChatMessage(session_id=session_id, role="user", content=message)
            )
            self._progress(session_id, "Analyzing", "Collecting context...")
            request = self.build_plan_patch_request(session_id, message)
        except MultiverseError as exc:
            self._progress(session_id, "Failed", f"Could not prepare the request: {exc}")
            raise

        self._progress(session_id, "Planning", "Meta-agent is updating the plan...")
        try:
            response = await asyncio.wait_for(
                self.meta.plan_patch(request), timeout=self.meta_timeout
            )
        except (MetaAgentError, TimeoutError) as exc:
            error = exc if isinstance(exc, MetaAgentError) else MetaAgentError(
                f"meta-agent timed out after {self.meta_timeout:.0f}s",
                provider=self.meta.name,
                retriable=True,
            )
            self._progress(session_id, "Failed", f"Plan update failed: {error}")
            self.sessions.append_message(
                ChatMessage(
                    session_id=session_id,
                    role="assistant",
                    content=f"Sorry, the plan update failed: {error}",
                )
            )
            if error is exc:
                raise
            raise error from exc

        self._progress(
            session_id, "Persisting", f"Saving {len(response.operations)} change(s)..."
        )
        try:
            result = self.engine.apply(session_id, response)
        except MultiverseError as exc:
            self._progress(session_id, "Failed", f"Saving the plan failed: {exc}")
            raise

        conflicts = self.filter_conflicts(response.potential_conflicts)
        self._progress(session_id, "Completed", "Done.")
        reply = self.sessions.append_message(
            ChatMessage(
                session_id=session_id,
                role="assistant",
                content=self.render_reply(response, result, conflicts),
                generated_tasks=result.created_task_ids,
            )
        )
        log.info(
            "chat message handled for %s: created=%d in %.2fs",
            session_id,
            len(result.created_tasks),
            time.monotonic() - started,
        )
        return ChatResponse(
            message=reply,
            generated_tasks=list(result.created_tasks),
            understanding=response.understanding,
            conflicts=conflicts,
            result=result,
        )
