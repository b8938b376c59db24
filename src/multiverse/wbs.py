from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from multiverse.errors import InvariantViolation, ValidationFailure
from multiverse.state.models import DEFAULT_ROOT_NODE_ID, WBS, NodeIndexEntry, utcnow_iso


@dataclass(slots=True)
class Position:
    index: int | None = None
    before: str | None = None
    after: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None) -> Position | None:
        if not data:
            return None
        index = data.get("index")
        before = data.get("before")
        after = data.get("after")
        given = [value for value in (index, before, after) if value is not None and value != ""]
        if len(given) > 1:
            raise ValidationFailure("position must set exactly one of index, before, after")
        if not given:
            return None
        return cls(
            index=int(index) if index is not None else None,
            before=str(before) if before else None,
            after=str(after) if after else None,
        )

    def to_dict(self) -> dict:
        if self.index is not None:
            return {"index": self.index}
        if self.before:
            return {"before": self.before}
        if self.after:
            return {"after": self.after}
        return {}


def new_wbs(project_root: str, root_node_id: str = DEFAULT_ROOT_NODE_ID) -> WBS:
    now = utcnow_iso()
    return WBS(
        wbs_id=str(uuid.uuid4()),
        project_root=project_root,
        created_at=now,
        updated_at=now,
        root_node_id=root_node_id,
        node_index=[NodeIndexEntry(node_id=root_node_id)],
    )


def ensure_root(wbs: WBS) -> NodeIndexEntry:
    root = wbs.entry(wbs.root_node_id)
    if root is None:
        root = NodeIndexEntry(node_id=wbs.root_node_id)
        wbs.node_index.insert(0, root)
    return root


def insert_child(children: list[str], child_id: str, position: Position | None) -> None:
    """Insert ``child_id``; unknown before/after anchors append, indexes are clamped."""
    if child_id in children:
        children.remove(child_id)
    if position is None:
        children.append(child_id)
        return
    if position.index is not None:
        index = max(0, min(position.index, len(children)))
        children.insert(index, child_id)
        return
    anchor = position.before or position.after
    if anchor in children:
        index = children.index(anchor)
        children.insert(index if position.before else index + 1, child_id)
        return
    children.append(child_id)


def detach(wbs: WBS, node_id: str) -> None:
    for entry in wbs.node_index:
        if node_id in entry.children:
            entry.children[:] = [child for child in entry.children if child != node_id]


def descendants(wbs: WBS, node_id: str) -> list[str]:
    """Depth-first, pre-order subtree ids excluding ``node_id`` itself."""
    by_id = {entry.node_id: entry for entry in wbs.node_index}
    result: list[str] = []
    seen: set[str] = {node_id}
    stack = list(reversed(by_id[node_id].children)) if node_id in by_id else []
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        result.append(current)
        entry = by_id.get(current)
        if entry is not None:
            stack.extend(reversed(entry.children))
    return result


def place_node(wbs: WBS, node_id: str, parent_id: str, position: Position | None) -> None:
    parent = wbs.entry(parent_id)
    if parent is None:
        raise ValidationFailure(f"move target parent does not exist: {parent_id}")
    if node_id == parent_id or parent_id in descendants(wbs, node_id):
        raise ValidationFailure(f"cannot move {node_id} under its own descendant {parent_id}")
    node = wbs.entry(node_id)
    if node is None:
        node = NodeIndexEntry(node_id=node_id)
        wbs.node_index.append(node)
    detach(wbs, node_id)
    node.parent_id = parent_id
    insert_child(parent.children, node_id, position)


def remove_node(wbs: WBS, node_id: str, *, cascade: bool) -> list[str]:
    """Remove a node; returns every id removed from ``node_index``.

    Without cascade the node's children are spliced into its parent at the
    node's former position and re-parented.
    """
    if node_id == wbs.root_node_id:
        raise ValidationFailure(f"cannot delete root node: {node_id}")
    node = wbs.entry(node_id)
    if node is None:
        return []
    removed = [node_id]
    parent = wbs.entry(node.parent_id) if node.parent_id else None
    if cascade:
        removed.extend(descendants(wbs, node_id))
        detach(wbs, node_id)
    else:
        orphans = list(node.children)
        if parent is not None and node_id in parent.children:
            index = parent.children.index(node_id)
            parent.children[index:index + 1] = [
                child for child in orphans if child not in parent.children
            ]
        else:
            detach(wbs, node_id)
            if parent is None:
                parent = ensure_root(wbs)
            parent.children.extend(child for child in orphans if child not in parent.children)
        for child_id in orphans:
            child = wbs.entry(child_id)
            if child is not None:
                child.parent_id = parent.node_id
    dropped = set(removed)
    wbs.node_index[:] = [entry for entry in wbs.node_index if entry.node_id not in dropped]
    return removed


def bfs_order(wbs: WBS, limit: int | None = None) -> list[str]:
    by_id = {entry.node_id: entry for entry in wbs.node_index}
    order: list[str] = []
    seen: set[str] = set()
    queue = deque([wbs.root_node_id])
    while queue:
        current = queue.popleft()
        if current in seen or current not in by_id:
            continue
        seen.add(current)
        order.append(current)
        if limit is not None and len(order) >= limit:
            break
        queue.extend(by_id[current].children)
    return order


def validate_wbs(wbs: WBS) -> None:
    by_id: dict[str, NodeIndexEntry] = {}
    for entry in wbs.node_index:
        if entry.node_id in by_id:
            raise InvariantViolation(f"duplicate node in node_index: {entry.node_id}")
        by_id[entry.node_id] = entry

    if wbs.root_node_id not in by_id:
        raise InvariantViolation(f"root node missing from node_index: {wbs.root_node_id}")

    for entry in wbs.node_index:
        if len(set(entry.children)) != len(entry.children):
            raise InvariantViolation(f"duplicate children under {entry.node_id}")
        for child_id in entry.children:
            child = by_id.get(child_id)
            if child is None:
                raise InvariantViolation(f"child {child_id} of {entry.node_id} not in node_index")
            if child.parent_id != entry.node_id:
                raise InvariantViolation(
                    f"child {child_id} listed under {entry.node_id} but parent_id is "
                    f"{child.parent_id}"
                )
        if entry.node_id == wbs.root_node_id:
            continue
        if not entry.parent_id:
            raise InvariantViolation(f"non-root node has no parent: {entry.node_id}")
        parent = by_id.get(entry.parent_id)
        if parent is None:
            raise InvariantViolation(
                f"parent {entry.parent_id} of {entry.node_id} does not exist"
            )
        if parent.children.count(entry.node_id) != 1:
            raise InvariantViolation(
                f"node {entry.node_id} must appear exactly once in {entry.parent_id}.children"
            )

    reachable = set(bfs_order(wbs))
    unreachable = sorted(set(by_id) - reachable)
    if unreachable:
        raise InvariantViolation(f"nodes not reachable from root: {', '.join(unreachable)}")


def find_dependency_cycle(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Return the nodes left on a cycle (Kahn residue), or ``[]`` when acyclic."""
    nodes = set(dependencies)
    for deps in dependencies.values():
        nodes.update(deps)
    in_degree = {node: 0 for node in nodes}
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    for node, deps in dependencies.items():
        for dep in set(deps):
            in_degree[node] += 1
            dependents[dep].append(node)
    queue = deque(sorted(node for node, degree in in_degree.items() if degree == 0))
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for dependent in sorted(dependents[current]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    if visited == len(nodes):
        return []
    return sorted(node for node, degree in in_degree.items() if degree > 0)
