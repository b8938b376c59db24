from multiverse.state.repository import WorkspaceRepository, workspace_id
from multiverse.state.sessions import ChatMessage, ChatSession, ChatSessionStore
from multiverse.state.snapshots import SnapshotStore

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ChatSessionStore",
    "SnapshotStore",
    "WorkspaceRepository",
    "workspace_id",
]
