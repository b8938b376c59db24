from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from multiverse.backlog import BacklogStore
from multiverse.chat import ChatHandler
from multiverse.config import DEFAULT_WORKSPACE_DIR, MultiverseConfig, load_config, save_config
from multiverse.errors import MultiverseError
from multiverse.events import TASK_LOG, EventBus
from multiverse.meta import CodexCLIProvider, MetaClient, MockMetaProvider, ToolingMetaClient
from multiverse.orchestrator import Orchestrator
from multiverse.queue import FilesystemQueue
from multiverse.scheduler import Scheduler
from multiverse.state import SnapshotStore, WorkspaceRepository
from multiverse.taskgraph import TaskGraphManager
from multiverse.workers.agent_runner import task_title

log = logging.getLogger(__name__)

CONFIG_FILENAME = "multiverse.toml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: MultiverseConfig
    repo: WorkspaceRepository
    events: EventBus

    def scheduler(self) -> Scheduler:
        return Scheduler(self.repo, FilesystemQueue(self.repo.queue_dir), self.events)


def _log_event(name: str, payload: dict[str, Any]) -> None:
    if name == TASK_LOG:
        log.debug("[%s %s] %s", payload.get("task_id"), payload.get("stream"), payload.get("line"))
        return
    log.info("event %s %s", name, json.dumps(payload, ensure_ascii=False, default=str))


def _load_runtime(workspace_value: str | None) -> Runtime:
    workspace = Path(workspace_value or DEFAULT_WORKSPACE_DIR).expanduser().resolve()
    config_path = workspace / CONFIG_FILENAME
    config = load_config(config_path)
    config.orchestrator.workspace_dir = str(workspace)
    repo = WorkspaceRepository(workspace, project_root=Path(config.orchestrator.project_root))
    events = EventBus()
    events.subscribe("*", _log_event)
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        repo=repo,
        events=events,
    )


def _runtime(ctx: click.Context) -> Runtime:
    return ctx.ensure_object(dict)["runtime"]


@click.group()
@click.option(
    "--workspace",
    "workspace_value",
    default=None,
    help=f"Workspace directory (default {DEFAULT_WORKSPACE_DIR}).",
)
@click.option("--verbose", is_flag=True, default=False)
@click.pass_context
def cli(ctx: click.Context, workspace_value: str | None, verbose: bool) -> None:
    """Multiverse task orchestrator."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    ctx.ensure_object(dict)["runtime"] = _load_runtime(workspace_value)


@cli.command("init")
@click.pass_context
def init_command(ctx: click.Context) -> None:
    runtime = _runtime(ctx)
    try:
        runtime.repo.init()
        if not runtime.config_path.exists():
            save_config(runtime.config_path, runtime.config)
    except (MultiverseError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Initialized workspace in {runtime.workspace}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Workspace ID: {runtime.repo.workspace_id}")


async def _run_until_signal(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, orchestrator.stop)
    try:
        await orchestrator.run()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


@cli.command("run")
@click.option("--agent-runner", "agent_runner", default=None, help="Path to the agent-runner binary.")
@click.option("--pool", "pools", multiple=True, help="Pool to serve; repeatable.")
@click.pass_context
def run_command(ctx: click.Context, agent_runner: str | None, pools: tuple[str, ...]) -> None:
    runtime = _runtime(ctx)
    settings = runtime.config.orchestrator
    if agent_runner:
        settings.agent_runner_path = agent_runner
    if pools:
        settings.pool_ids = list(pools)
    try:
        runtime.repo.init()
        orchestrator = Orchestrator.from_config(
            runtime.config, repo=runtime.repo, events=runtime.events
        )
        orchestrator.start()
    except (MultiverseError, OSError) as exc:
        raise click.ClickException(f"startup failed: {exc}") from exc
    click.echo(f"Orchestrator running on pools {', '.join(settings.pool_ids)}; Ctrl-C to stop.")
    asyncio.run(_run_until_signal(orchestrator))
    click.echo("Orchestrator stopped.")


@cli.command("tasks")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def tasks_command(ctx: click.Context, as_json: bool) -> None:
    runtime = _runtime(ctx)
    tasks = runtime.repo.state.load_tasks()
    if as_json:
        click.echo(json.dumps(tasks.to_dict(), ensure_ascii=False, indent=2))
        return
    if not tasks.tasks:
        click.echo("No tasks.")
        return
    for task in tasks.tasks:
        node = runtime.repo.design.find_node(task.node_id)
        click.echo(
            f"{task.task_id}  {task.status:<10} attempts={task.attempt_count}  "
            f"{task_title(task, node)}"
        )


@cli.command("graph")
@click.pass_context
def graph_command(ctx: click.Context) -> None:
    manager = TaskGraphManager(_runtime(ctx).repo)
    cycle = manager.detect_cycle()
    if cycle:
        raise click.ClickException(f"dependency cycle among: {', '.join(cycle)}")
    click.echo("Execution order:")
    for index, task_id in enumerate(manager.execution_order(), start=1):
        click.echo(f"{index:>3}. {task_id}")
    ready = manager.ready_tasks()
    blocked = manager.blocked_tasks()
    click.echo(f"Ready: {', '.join(ready) if ready else 'none'}")
    click.echo(f"Blocked: {', '.join(blocked) if blocked else 'none'}")


@cli.command("schedule")
@click.argument("task_id")
@click.pass_context
def schedule_command(ctx: click.Context, task_id: str) -> None:
    try:
        job = _runtime(ctx).scheduler().schedule_task(task_id)
    except MultiverseError as exc:
        raise click.ClickException(str(exc)) from exc
    if job is None:
        click.echo(f"Task {task_id} is blocked on unfinished dependencies.")
    else:
        click.echo(f"Queued {task_id} as {job.job_id} on pool {job.pool_id}")


@cli.command("cancel")
@click.argument("task_id")
@click.pass_context
def cancel_command(ctx: click.Context, task_id: str) -> None:
    try:
        _runtime(ctx).scheduler().cancel_task(task_id)
    except MultiverseError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Canceled {task_id}")


@cli.group("snapshot")
def snapshot_group() -> None:
    """Point-in-time copies of the workspace state."""


@snapshot_group.command("create")
@click.argument("description", default="")
@click.pass_context
def snapshot_create(ctx: click.Context, description: str) -> None:
    try:
        snapshot = SnapshotStore(_runtime(ctx).repo).create_snapshot(description)
    except (MultiverseError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Snapshot {snapshot.id} created")


@snapshot_group.command("list")
@click.pass_context
def snapshot_list(ctx: click.Context) -> None:
    snapshots = SnapshotStore(_runtime(ctx).repo).list_snapshots()
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for snapshot in snapshots:
        click.echo(f"{snapshot.id}  {snapshot.created_at}  {snapshot.description}")


@snapshot_group.command("restore")
@click.argument("snapshot_id")
@click.pass_context
def snapshot_restore(ctx: click.Context, snapshot_id: str) -> None:
    try:
        backup = SnapshotStore(_runtime(ctx).repo).restore_snapshot(snapshot_id)
    except (MultiverseError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {snapshot_id}; previous state saved to {backup}")


@cli.group("backlog")
def backlog_group() -> None:
    """Failures and questions waiting on a human."""


@backlog_group.command("list")
@click.option("--all", "include_all", is_flag=True, default=False)
@click.pass_context
def backlog_list(ctx: click.Context, include_all: bool) -> None:
    store = BacklogStore(_runtime(ctx).repo.backlog_dir)
    items = store.list_items() if include_all else store.list_unresolved()
    if not items:
        click.echo("Backlog is empty.")
        return
    for item in items:
        state = "resolved" if item.resolved_at else "open"
        click.echo(f"{item.id}  p{item.priority} {item.type:<8} {state:<8} {item.title}")


@backlog_group.command("resolve")
@click.argument("item_id")
@click.argument("resolution")
@click.pass_context
def backlog_resolve(ctx: click.Context, item_id: str, resolution: str) -> None:
    try:
        BacklogStore(_runtime(ctx).repo.backlog_dir).resolve(item_id, resolution)
    except MultiverseError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Resolved {item_id}")


@cli.command("history")
@click.option("--kind", default=None, help="Only show actions of this kind.")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def history_command(ctx: click.Context, kind: str | None, limit: int) -> None:
    actions = _runtime(ctx).repo.history.list_actions()
    if kind:
        actions = [action for action in actions if action.kind == kind]
    if not actions:
        click.echo("No history.")
        return
    for action in actions[-limit:]:
        click.echo(f"{action.at}  {action.kind:<18} {json.dumps(action.payload, ensure_ascii=False)}")


def _meta_client(runtime: Runtime, provider: str) -> MetaClient:
    if provider == "mock":
        return MockMetaProvider()
    tooling = runtime.config.tooling
    return ToolingMetaClient(
        tooling,
        fallback=CodexCLIProvider(),
        event_hook=lambda event: log.info("tooling %s", event),
    )


@cli.command("chat")
@click.argument("message")
@click.option("--session", "session_id", default=None, help="Continue an existing session.")
@click.option(
    "--provider",
    type=click.Choice(["tooling", "mock"]),
    default="tooling",
    show_default=True,
)
@click.pass_context
def chat_command(ctx: click.Context, message: str, session_id: str | None, provider: str) -> None:
    runtime = _runtime(ctx)
    settings = runtime.config.orchestrator
    handler = ChatHandler(
        runtime.repo,
        _meta_client(runtime, provider),
        events=runtime.events,
        runner_max_loops=settings.runner_max_loops,
        worker_kind=settings.worker_kind,
    )
    try:
        runtime.repo.init()
        if session_id is None:
            session_id = handler.create_session().id
        response = asyncio.run(handler.handle_message(session_id, message))
    except MultiverseError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session: {session_id}")
    click.echo(response.message.content)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
