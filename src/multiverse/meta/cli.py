from __future__ import annotations

import logging
import time

from multiverse.errors import MetaAgentError, ProcessFailure
from multiverse.executor import execute_plan
from multiverse.meta.base import TextMetaClient
from multiverse.workers import registry
from multiverse.workers.base import AdapterConfig, WorkerRequest
from multiverse.workers.codex import DEFAULT_META_MODEL, DEFAULT_REASONING_EFFORT

log = logging.getLogger(__name__)

DEFAULT_META_TIMEOUT_SECONDS = 600.0


class CLIMetaProvider(TextMetaClient):
    """Meta client that shells out to an agent CLI with the prompt on stdin."""

    def __init__(
        self,
        kind: str,
        *,
        model: str = "",
        system_prompt: str = "",
        cli_path: str = "",
        flags: list[str] | None = None,
        env: dict[str, str] | None = None,
        tool_specific: dict | None = None,
        timeout: float = DEFAULT_META_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(system_prompt=system_prompt)
        self.kind = kind
        self.model = model
        self.timeout = timeout
        self.adapter_config = AdapterConfig(
            kind=kind,
            cli_path=cli_path,
            model=model,
            extra_env=dict(env or {}),
            flags=list(flags or []),
        )
        # Replies are parsed as text, so structured output modes stay off.
        self.tool_specific = {"docker_mode": False, "json_output": False, **(tool_specific or {})}

    @property
    def name(self) -> str:
        return self.kind

    def build_request(self, prompt: str) -> WorkerRequest:
        return WorkerRequest(
            prompt=prompt,
            model=self.model,
            reasoning_effort=DEFAULT_REASONING_EFFORT,
            timeout=self.timeout,
            use_stdin=True,
            tool_specific=dict(self.tool_specific),
        )

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        prompt = f"{system_prompt}\n\n{user_prompt}"
        plan = registry.build(self.kind, self.adapter_config, self.build_request(prompt))
        log.info("calling %s prompt=%d chars", self.kind, len(prompt))
        log.debug("%s exec plan: %s", self.kind, plan.argv)
        started = time.monotonic()
        try:
            result = await execute_plan(plan)
        except ProcessFailure as exc:
            raise MetaAgentError(str(exc), provider=self.name, retriable=exc.retriable) from exc
        if result.error is not None:
            raise MetaAgentError(
                f"{self.kind} call failed: {result.error} (output: {result.output.strip()[-2000:]})",
                provider=self.name,
                retriable=result.timed_out,
            )
        response = result.output.strip()
        log.info(
            "%s call completed: %d chars in %.2fs",
            self.kind,
            len(response),
            time.monotonic() - started,
        )
        return response


class CodexCLIProvider(CLIMetaProvider):
    """``codex exec`` on the host with the planning model."""

    def __init__(self, *, model: str = "", **kwargs) -> None:
        super().__init__("codex-cli", model=model or DEFAULT_META_MODEL, **kwargs)
