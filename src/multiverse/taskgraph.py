from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from multiverse.errors import InvariantViolation, NotFoundError
from multiverse.scheduler import DEPENDENCY_DONE, TaskStatus
from multiverse.state.models import TaskState
from multiverse.state.repository import WorkspaceRepository


@dataclass(slots=True)
class GraphNode:
    task: TaskState
    depends_on: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def in_degree(self) -> int:
        return len(self.depends_on)


@dataclass(slots=True)
class TaskEdge:
    source: str
    target: str
    satisfied: bool


@dataclass(slots=True)
class TaskGraph:
    nodes: dict[str, GraphNode] = field(default_factory=dict)
    edges: list[TaskEdge] = field(default_factory=list)


@dataclass(slots=True)
class DependencyInfo:
    task_id: str
    depends_on: list[str]
    depended_by: list[str]
    unsatisfied: list[str]

    @property
    def all_satisfied(self) -> bool:
        return not self.unsatisfied


class TaskGraphManager:
    """Topological view over ``tasks.json``; edges come from node design dependencies."""

    def __init__(self, repo: WorkspaceRepository) -> None:
        self.repo = repo

    def build_graph(self) -> TaskGraph:
        tasks = self.repo.state.load_tasks().tasks
        graph = TaskGraph(nodes={task.task_id: GraphNode(task=task) for task in tasks})
        by_node: dict[str, list[str]] = {}
        for task in tasks:
            by_node.setdefault(task.node_id, []).append(task.task_id)

        for task in sorted(tasks, key=lambda item: item.task_id):
            node = self.repo.design.find_node(task.node_id)
            if node is None:
                continue
            current = graph.nodes[task.task_id]
            for dep in node.dependencies:
                dep_tasks = by_node.get(dep) or ([dep] if dep in graph.nodes else [])
                if not dep_tasks:
                    current.missing.append(dep)
                    continue
                for dep_task_id in dep_tasks:
                    if dep_task_id == task.task_id or dep_task_id in current.depends_on:
                        continue
                    source = graph.nodes[dep_task_id]
                    graph.edges.append(
                        TaskEdge(
                            source=dep_task_id,
                            target=task.task_id,
                            satisfied=source.task.status in DEPENDENCY_DONE,
                        )
                    )
                    current.depends_on.append(dep_task_id)
                    source.dependents.append(task.task_id)
        return graph

    @staticmethod
    def _kahn(graph: TaskGraph) -> tuple[list[str], dict[str, int]]:
        in_degree = {task_id: node.in_degree for task_id, node in graph.nodes.items()}
        queue = deque(sorted(task_id for task_id, degree in in_degree.items() if degree == 0))
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            released: list[str] = []
            for dependent in graph.nodes[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            queue.extend(sorted(released))
        return order, in_degree

    def execution_order(self) -> list[str]:
        graph = self.build_graph()
        order, _ = self._kahn(graph)
        if len(order) != len(graph.nodes):
            raise InvariantViolation("cycle detected in task dependencies")
        return order

    def detect_cycle(self) -> list[str]:
        """Task ids still carrying in-degree after Kahn's pass; empty when acyclic."""
        graph = self.build_graph()
        order, in_degree = self._kahn(graph)
        if len(order) == len(graph.nodes):
            return []
        return sorted(task_id for task_id, degree in in_degree.items() if degree > 0)

    def blocked_tasks(self) -> list[str]:
        graph = self.build_graph()
        blocked = {edge.target for edge in graph.edges if not edge.satisfied}
        blocked.update(task_id for task_id, node in graph.nodes.items() if node.missing)
        return sorted(blocked)

    def ready_tasks(self) -> list[str]:
        graph = self.build_graph()
        blocked = set(self.blocked_tasks())
        return sorted(
            task_id
            for task_id, node in graph.nodes.items()
            if node.task.status == TaskStatus.PENDING and task_id not in blocked
        )

    def dependency_info(self, task_id: str) -> DependencyInfo:
        graph = self.build_graph()
        node = graph.nodes.get(task_id)
        if node is None:
            raise NotFoundError(f"task not found: {task_id}", kind="task", key=task_id)
        unsatisfied = [
            dep for dep in node.depends_on if graph.nodes[dep].task.status not in DEPENDENCY_DONE
        ]
        unsatisfied.extend(node.missing)
        return DependencyInfo(
            task_id=task_id,
            depends_on=list(node.depends_on),
            depended_by=list(node.dependents),
            unsatisfied=unsatisfied,
        )
