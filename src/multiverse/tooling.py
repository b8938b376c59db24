from __future__ import annotations

import logging
import os
import random
import shutil
import threading
import time
from collections.abc import Callable

from multiverse.config import (
    DEFAULT_COOLDOWN_SECONDS,
    ToolCandidate,
    ToolCategoryConfig,
    ToolingConfig,
)

log = logging.getLogger(__name__)

CATEGORY_META = "meta"
CATEGORY_TASK = "task"
CATEGORY_PLAN = "plan"
CATEGORY_EXECUTION = "execution"
CATEGORY_WORKER = "worker"

DEFAULT_CLI_PATHS = {
    "codex-cli": "codex",
    "claude-code": "claude",
    "claude-code-cli": "claude",
    "gemini-cli": "gemini",
}

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429", "resource exhausted")


def is_rate_limit_error(error: BaseException | str | None) -> bool:
    if error is None:
        return False
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def parse_force(value: str) -> ToolCandidate | None:
    """``"tool"`` or ``"tool:model"``; blank disables forcing."""
    value = value.strip()
    if not value:
        return None
    tool, _, model = value.partition(":")
    tool = tool.strip()
    if not tool:
        return None
    return ToolCandidate(tool=tool, model=model.strip())


def default_cli_path(tool: str) -> str:
    return DEFAULT_CLI_PATHS.get(tool, tool)


class Selector:
    """Picks a tool candidate per category from the active tooling profile.

    Candidates whose binary is missing, or which were rate limited within
    the category cooldown, are skipped. ``weighted`` picks randomly in
    proportion to weight; ``round_robin`` cycles per category.
    """

    def __init__(
        self,
        config: ToolingConfig | None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        which: Callable[[str], str | None] = shutil.which,
        environ: dict[str, str] | None = None,
    ) -> None:
        self.config = config or ToolingConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._which = which
        self._environ = environ if environ is not None else os.environ
        self._lock = threading.Lock()
        self._cooldowns: dict[str, dict[str, float]] = {}
        self._next_index: dict[str, int] = {}
        self.profile = self._resolve_profile()

    def _resolve_profile(self) -> dict[str, ToolCategoryConfig] | None:
        profiles = self.config.profiles
        if self.config.active_profile and self.config.active_profile in profiles:
            return profiles[self.config.active_profile]
        if profiles:
            return next(iter(profiles.values()))
        return None

    def force_candidate(self) -> ToolCandidate | None:
        return parse_force(self.config.force)

    def category(self, name: str) -> ToolCategoryConfig | None:
        if not self.profile:
            return None
        found = self.profile.get(name)
        if found is None and name != CATEGORY_META:
            found = self.profile.get(CATEGORY_META)
        return found

    def is_available(self, candidate: ToolCandidate) -> bool:
        tool = candidate.tool.strip().lower()
        if tool == "openai-chat":
            return bool(self._environ.get("OPENAI_API_KEY"))
        if tool == "mock":
            return True
        path = candidate.cli_path.strip() or default_cli_path(tool)
        return bool(path) and self._which(path) is not None

    def available_candidates(self, name: str, candidates: list[ToolCandidate]) -> list[ToolCandidate]:
        now = self._clock()
        with self._lock:
            cooling = dict(self._cooldowns.get(name, {}))
        return [
            candidate
            for candidate in candidates
            if self.is_available(candidate) and cooling.get(candidate.key, 0.0) <= now
        ]

    def select(self, name: str) -> ToolCandidate | None:
        forced = self.force_candidate()
        if forced is not None:
            return forced
        config = self.category(name)
        if config is None or not config.candidates:
            return None
        candidates = self.available_candidates(name, config.candidates)
        if not candidates:
            return None
        if config.strategy.lower() == "round_robin":
            return self._pick_round_robin(name, candidates)
        return self._pick_weighted(candidates)

    def _pick_weighted(self, candidates: list[ToolCandidate]) -> ToolCandidate:
        weights = [candidate.weight if candidate.weight > 0 else 1 for candidate in candidates]
        roll = self._rng.randrange(sum(weights))
        for candidate, weight in zip(candidates, weights):
            if roll < weight:
                return candidate
            roll -= weight
        return candidates[0]

    def _pick_round_robin(self, name: str, candidates: list[ToolCandidate]) -> ToolCandidate:
        with self._lock:
            index = self._next_index.get(name, 0)
            if index >= len(candidates):
                index = 0
            self._next_index[name] = (index + 1) % len(candidates)
        return candidates[index]

    def mark_rate_limited(self, name: str, candidate: ToolCandidate, cooldown_sec: int = 0) -> None:
        if cooldown_sec <= 0:
            cooldown_sec = DEFAULT_COOLDOWN_SECONDS
        until = self._clock() + cooldown_sec
        with self._lock:
            self._cooldowns.setdefault(name, {})[candidate.key] = until
        log.warning("candidate %s cooling down for %ss in category %s", candidate.key, cooldown_sec, name)

    def should_fallback_on_rate_limit(self, name: str) -> bool:
        config = self.category(name)
        return bool(config and config.fallback_on_rate_limit)

    def cooldown_sec(self, name: str) -> int:
        config = self.category(name)
        return config.cooldown_sec if config else 0
