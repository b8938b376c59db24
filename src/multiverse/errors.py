from __future__ import annotations


class MultiverseError(RuntimeError):
    """Base class for orchestration failures."""


class InvariantViolation(MultiverseError):
    """Raised when WBS invariants or state-machine preconditions are broken."""


class ValidationFailure(MultiverseError):
    """Raised when a plan patch or request is malformed and must be rejected whole."""


class NotFoundError(MultiverseError):
    """Raised when loading an entity that does not exist."""

    def __init__(self, message: str, *, kind: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.key = key


class PersistenceIOError(MultiverseError):
    """Raised when an atomic write or append fails."""

    def __init__(self, message: str, *, stage: str | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.path = path


class ProcessFailure(MultiverseError):
    """Raised when a worker process fails to spawn or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.retriable = retriable


class OrchestratorStateError(MultiverseError):
    """Raised on an illegal Start/Pause/Resume call."""


class MetaAgentError(MultiverseError):
    """Raised when a meta-agent provider fails or returns an unparseable payload."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class UnsupportedKindError(ValidationFailure):
    """Raised when no worker adapter is registered for a kind."""


class UnsupportedModeError(ValidationFailure):
    """Raised when a worker adapter does not support the requested mode."""
