from __future__ import annotations

import json

from multiverse.meta.base import TextMetaClient
from multiverse.meta.prompts import DECOMPOSE_SYSTEM_PROMPT, PLAN_PATCH_SYSTEM_PROMPT

MOCK_PLAN_PATCH = {
    "type": "plan_patch",
    "version": 1,
    "payload": {
        "understanding": "Mock: request understood",
        "operations": [
            {
                "op": "create",
                "temp_id": "temp-001",
                "title": "Mock design task",
                "description": "Design task produced by the mock planner",
                "acceptance_criteria": ["A design document exists"],
                "dependencies": [],
                "wbs_level": 1,
                "phase_name": "Conceptual Design",
                "milestone": "M1-Mock-Design",
            },
            {
                "op": "create",
                "temp_id": "temp-002",
                "title": "Mock implementation task",
                "description": "Implementation task produced by the mock planner",
                "acceptance_criteria": ["The feature is implemented", "Tests pass"],
                "dependencies": ["temp-001"],
                "wbs_level": 3,
                "phase_name": "Implementation",
                "milestone": "M2-Mock-Impl",
                "suggested_impl": {
                    "language": "go",
                    "file_paths": ["internal/mock/mock.go"],
                    "constraints": ["Keep backward compatibility"],
                },
            },
        ],
        "potential_conflicts": [],
    },
}

MOCK_DECOMPOSE = {
    "type": "decompose",
    "version": 1,
    "payload": {
        "understanding": "Mock: request understood",
        "phases": [
            {
                "name": "Conceptual Design",
                "milestone": "M1-Mock-Design",
                "tasks": [
                    {
                        "id": "temp-001",
                        "title": "Mock design task",
                        "description": "Design task produced by the mock planner",
                        "acceptance_criteria": ["A design document exists"],
                        "dependencies": [],
                        "wbs_level": 1,
                        "estimated_effort": "small",
                    }
                ],
            },
            {
                "name": "Implementation",
                "milestone": "M2-Mock-Impl",
                "tasks": [
                    {
                        "id": "temp-002",
                        "title": "Mock implementation task",
                        "description": "Implementation task produced by the mock planner",
                        "acceptance_criteria": ["The feature is implemented", "Tests pass"],
                        "dependencies": ["temp-001"],
                        "wbs_level": 3,
                        "estimated_effort": "medium",
                    }
                ],
            },
        ],
        "potential_conflicts": [],
    },
}


class MockMetaProvider(TextMetaClient):
    """Deterministic planner used offline and in tests.

    Replies go through the same extraction path as real providers, wrapped
    in a markdown fence the way chat models usually answer.
    """

    def __init__(self, *, plan_patch_reply: str | None = None, decompose_reply: str | None = None) -> None:
        super().__init__()
        self.plan_patch_reply = plan_patch_reply
        self.decompose_reply = decompose_reply
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "mock"

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if system_prompt == PLAN_PATCH_SYSTEM_PROMPT:
            if self.plan_patch_reply is not None:
                return self.plan_patch_reply
            return f"```json\n{json.dumps(MOCK_PLAN_PATCH, indent=2)}\n```"
        if system_prompt == DECOMPOSE_SYSTEM_PROMPT or "decompose" in user_prompt:
            if self.decompose_reply is not None:
                return self.decompose_reply
            return f"```json\n{json.dumps(MOCK_DECOMPOSE, indent=2)}\n```"
        return "Mock response"
