"""Task orchestration core for a local agent-based development assistant."""

__version__ = "0.1.0"
