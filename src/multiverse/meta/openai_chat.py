from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from openai import APIConnectionError, APIStatusError, OpenAI

from multiverse.errors import MetaAgentError
from multiverse.meta.base import TextMetaClient
from multiverse.workers.codex import DEFAULT_META_MODEL

log = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0


def is_retryable(exc: Exception) -> bool:
    """Network failures, 429 and 5xx are retried; other API errors are not."""
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code == 429 or 500 <= exc.status_code < 600
    return False


class OpenAIChatProvider(TextMetaClient):
    """Meta client backed by the OpenAI chat-completions API."""

    def __init__(
        self,
        *,
        model: str = "",
        api_key: str | None = None,
        system_prompt: str = "",
        client: Any | None = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(system_prompt=system_prompt)
        self.model = model or DEFAULT_META_MODEL
        self.api_key = api_key
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._client = client

    @property
    def name(self) -> str:
        return "openai-chat"

    def _get_client(self) -> Any:
        if self._client is None:
            # Retries are handled here so the backoff schedule stays predictable.
            self._client = OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        client = self._get_client()

        def _request() -> Any:
            return client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )

        started = time.monotonic()
        log.info("calling %s model=%s prompt=%d chars", self.name, self.model, len(user_prompt))
        for attempt in range(self.max_retries + 1):
            try:
                payload = await asyncio.to_thread(_request)
            except Exception as exc:
                retriable = is_retryable(exc)
                if not retriable or attempt >= self.max_retries:
                    raise MetaAgentError(
                        f"OpenAI chat request failed: {exc}",
                        provider=self.name,
                        retriable=retriable,
                    ) from exc
                delay = self.base_delay * (2**attempt)
                log.warning(
                    "%s request failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.name,
                    attempt + 1,
                    self.max_retries,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            content = self._extract_text(payload).strip()
            log.info(
                "%s call completed: %d chars in %.2fs",
                self.name,
                len(content),
                time.monotonic() - started,
            )
            if not content:
                raise MetaAgentError("OpenAI chat returned an empty message", provider=self.name)
            return content
        raise MetaAgentError("OpenAI chat retries exhausted", provider=self.name, retriable=True)
