from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from multiverse.errors import MetaAgentError, ValidationFailure
from multiverse.meta.extract import parse_meta_message
from multiverse.meta.prompts import (
    DECOMPOSE_SYSTEM_PROMPT,
    PLAN_PATCH_SYSTEM_PROMPT,
    build_decompose_user_prompt,
    build_plan_patch_user_prompt,
)
from multiverse.meta.protocol import (
    DecomposeRequest,
    DecomposeResponse,
    PlanPatchRequest,
    PlanPatchResponse,
)

log = logging.getLogger(__name__)


class MetaClient(ABC):
    """Planning interface consumed by the chat handler."""

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def decompose(self, request: DecomposeRequest) -> DecomposeResponse:
        raise NotImplementedError

    @abstractmethod
    async def plan_patch(self, request: PlanPatchRequest) -> PlanPatchResponse:
        raise NotImplementedError


class TextMetaClient(MetaClient):
    """Meta client over a text-completion transport.

    Subclasses implement ``_complete``; prompt building and tolerant
    parsing of the reply live here.
    """

    def __init__(self, *, system_prompt: str = "") -> None:
        self.system_prompt = system_prompt

    @abstractmethod
    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError

    def _parse(self, reply: str, expected_type: str) -> dict:
        try:
            return parse_meta_message(reply, expected_type)
        except MetaAgentError as exc:
            exc.provider = exc.provider or self.name
            raise

    async def decompose(self, request: DecomposeRequest) -> DecomposeResponse:
        log.info(
            "%s decompose: input=%d chars, existing_tasks=%d",
            self.name,
            len(request.user_input),
            len(request.context.existing_tasks),
        )
        reply = await self._complete(
            self.system_prompt or DECOMPOSE_SYSTEM_PROMPT,
            build_decompose_user_prompt(request),
        )
        response = DecomposeResponse.from_dict(self._parse(reply, "decompose"))
        log.info(
            "%s decompose completed: phases=%d conflicts=%d",
            self.name,
            len(response.phases),
            len(response.potential_conflicts),
        )
        return response

    async def plan_patch(self, request: PlanPatchRequest) -> PlanPatchResponse:
        log.info(
            "%s plan_patch: input=%d chars, existing_tasks=%d",
            self.name,
            len(request.user_input),
            len(request.context.existing_tasks),
        )
        # The candidate system prompt is tuned for decomposition; plan patches keep their own.
        reply = await self._complete(PLAN_PATCH_SYSTEM_PROMPT, build_plan_patch_user_prompt(request))
        try:
            response = PlanPatchResponse.from_dict(self._parse(reply, "plan_patch"))
        except ValidationFailure as exc:
            raise MetaAgentError(f"malformed plan_patch payload: {exc}", provider=self.name) from exc
        log.info(
            "%s plan_patch completed: operations=%d conflicts=%d",
            self.name,
            len(response.operations),
            len(response.potential_conflicts),
        )
        return response
