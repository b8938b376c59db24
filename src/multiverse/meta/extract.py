from __future__ import annotations

import json
import re
from typing import Any

import yaml

from multiverse.errors import MetaAgentError
from multiverse.meta.protocol import MetaMessage

_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_YAML_FENCE = re.compile(r"```ya?ml\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)
_YAML_TYPE_LINE = re.compile(r"^type:\s+\w+", re.MULTILINE)


def _fenced(text: str, pattern: re.Pattern[str]) -> str | None:
    match = pattern.search(text)
    if match:
        body = match.group(1).strip()
        if body:
            return body
    return None


def extract_json(text: str) -> str:
    """Return the JSON document embedded in a model reply.

    Looks for a ```json fence, then any fence, then the first balanced
    top-level object in the text.
    """
    for pattern in (_JSON_FENCE, _ANY_FENCE):
        body = _fenced(text, pattern)
        if body is not None:
            return body
    stripped = text.strip().strip("`").strip()
    decoder = json.JSONDecoder()
    start = stripped.find("{")
    while start != -1:
        try:
            _, end = decoder.raw_decode(stripped, start)
        except json.JSONDecodeError:
            start = stripped.find("{", start + 1)
            continue
        return stripped[start:end]
    return stripped


def extract_yaml(text: str) -> str:
    """Return the YAML document embedded in a model reply."""
    for pattern in (_YAML_FENCE, _ANY_FENCE):
        body = _fenced(text, pattern)
        if body is not None:
            return body
    stripped = text.strip().strip("`").strip()
    match = _YAML_TYPE_LINE.search(stripped)
    if match:
        return stripped[match.start() :].strip()
    return stripped


def _load_document(text: str) -> Any:
    candidate = extract_json(text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    # JSON is a YAML subset, so YAML parsing is the broader fallback.
    try:
        return yaml.safe_load(extract_yaml(text))
    except yaml.YAMLError as exc:
        raise MetaAgentError(f"meta-agent reply is neither JSON nor YAML: {exc}") from exc


def parse_meta_message(text: str, expected_type: str) -> dict[str, Any]:
    """Parse a model reply into the payload of an ``expected_type`` message.

    Accepts the ``{type, version, payload}`` envelope or a bare payload.
    """
    if not text or not text.strip():
        raise MetaAgentError("meta-agent returned an empty reply")
    document = _load_document(text)
    if not isinstance(document, dict):
        raise MetaAgentError(
            f"meta-agent reply must be a mapping, got {type(document).__name__}"
        )
    if "type" in document and "payload" in document:
        message = MetaMessage.from_dict(document)
        if message.type != expected_type:
            raise MetaAgentError(
                f"unexpected meta message type: {message.type} (expected {expected_type})"
            )
        if not isinstance(message.payload, dict):
            raise MetaAgentError(f"{expected_type} payload must be a mapping")
        return message.payload
    return document
