from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from multiverse.config import ToolCandidate, ToolingConfig
from multiverse.errors import MetaAgentError
from multiverse.meta.base import MetaClient
from multiverse.meta.cli import CLIMetaProvider
from multiverse.meta.mock import MockMetaProvider
from multiverse.meta.openai_chat import OpenAIChatProvider
from multiverse.meta.protocol import (
    DecomposeRequest,
    DecomposeResponse,
    PlanPatchRequest,
    PlanPatchResponse,
)
from multiverse.tooling import CATEGORY_PLAN, Selector, is_rate_limit_error

log = logging.getLogger(__name__)

ToolingEventHook = Callable[[dict[str, Any]], None]
ClientFactory = Callable[[ToolCandidate], MetaClient]
T = TypeVar("T")


def client_for_candidate(candidate: ToolCandidate, *, api_key: str | None = None) -> MetaClient:
    tool = candidate.tool.strip().lower()
    if tool == "mock":
        return MockMetaProvider()
    if tool == "openai-chat":
        return OpenAIChatProvider(
            model=candidate.model,
            api_key=api_key,
            system_prompt=candidate.system_prompt,
        )
    return CLIMetaProvider(
        tool,
        model=candidate.model,
        system_prompt=candidate.system_prompt,
        cli_path=candidate.cli_path,
        flags=candidate.flags,
        env=candidate.env,
        tool_specific=candidate.tool_specific,
    )


class ToolingMetaClient(MetaClient):
    """Routes meta calls to the candidate the tooling profile selects.

    A rate-limited candidate is put on cooldown and the next one is tried
    when the category allows it; any other error is surfaced. When no
    candidate is usable the optional fallback client answers.
    """

    def __init__(
        self,
        config: ToolingConfig | None,
        *,
        fallback: MetaClient | None = None,
        selector: Selector | None = None,
        client_factory: ClientFactory | None = None,
        event_hook: ToolingEventHook | None = None,
    ) -> None:
        self.selector = selector or Selector(config)
        self.fallback = fallback
        self.client_factory = client_factory or client_for_candidate
        self.event_hook = event_hook

    @property
    def name(self) -> str:
        return "tooling"

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _call_fallback(self, category: str, call: Callable[[MetaClient], Awaitable[T]]) -> T:
        if self.fallback is None:
            raise MetaAgentError(f"no fallback meta client for category {category}", provider=self.name)
        self._emit({"event": "tooling_fallback", "category": category, "client": self.fallback.name})
        log.warning("no tooling candidate usable for %s; using fallback %s", category, self.fallback.name)
        return await call(self.fallback)

    async def _call(self, category: str, call: Callable[[MetaClient], Awaitable[T]]) -> T:
        forced = self.selector.force_candidate()
        if forced is not None:
            self._emit({"event": "tooling_forced", "category": category, "candidate": forced.key})
            return await call(self.client_factory(forced))

        config = self.selector.category(category)
        if config is None or not config.candidates:
            return await self._call_fallback(category, call)

        last_error: Exception | None = None
        for _ in range(len(config.candidates)):
            candidate = self.selector.select(category)
            if candidate is None:
                break
            self._emit({"event": "tooling_selected", "category": category, "candidate": candidate.key})
            try:
                return await call(self.client_factory(candidate))
            except MetaAgentError as exc:
                last_error = exc
                if not (is_rate_limit_error(exc) and self.selector.should_fallback_on_rate_limit(category)):
                    raise
                self.selector.mark_rate_limited(category, candidate, self.selector.cooldown_sec(category))
                self._emit(
                    {
                        "event": "tooling_rate_limited",
                        "category": category,
                        "candidate": candidate.key,
                        "error": str(exc),
                    }
                )

        if self.fallback is not None:
            return await self._call_fallback(category, call)
        if last_error is not None:
            raise last_error
        raise MetaAgentError(f"no available candidate for category {category}", provider=self.name)

    async def decompose(self, request: DecomposeRequest) -> DecomposeResponse:
        return await self._call(CATEGORY_PLAN, lambda client: client.decompose(request))

    async def plan_patch(self, request: PlanPatchRequest) -> PlanPatchResponse:
        return await self._call(CATEGORY_PLAN, lambda client: client.plan_patch(request))
