"""Parallel-safety classification for tool-call batches."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from loguru import logger

from tandem.errors import ClassificationParseError
from tandem.tools.registry import CapabilityRegistry
from tandem.types import ToolInvocation

RESOURCE_FIELDS = ("path", "target_file", "file_path")


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode an invocation payload. Empty payloads decode to ``{}``."""

    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ClassificationParseError(f"invalid arguments: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ClassificationParseError(f"arguments must be an object, got {type(payload).__name__}")
    return payload


def resource_of(arguments: dict[str, Any]) -> str | None:
    for key in RESOURCE_FIELDS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resource_of_invocation(invocation: ToolInvocation) -> str | None:
    """Resource id of an invocation, ``None`` when absent or unparseable."""

    try:
        return resource_of(parse_arguments(invocation.arguments))
    except ClassificationParseError:
        return None


def can_parallelize(invocations: Sequence[ToolInvocation], registry: CapabilityRegistry) -> bool:
    """Decide whether a batch may run concurrently.

    At most one mutating invocation may run alongside any number of reads,
    and two mutations on the same resource always serialize.
    """

    if len(invocations) < 2:
        return False

    mutating = [invocation for invocation in invocations if registry.is_mutating(invocation.name)]
    if not mutating:
        return True

    seen: set[str] = set()
    for invocation in mutating:
        try:
            resource = resource_of(parse_arguments(invocation.arguments))
        except ClassificationParseError as exc:
            logger.warning("safety.unparseable id={} name={} error={}", invocation.id, invocation.name, exc)
            return False
        if resource is None:
            continue
        if resource in seen:
            logger.debug("safety.conflict resource={}", resource)
            return False
        seen.add(resource)

    return len(mutating) <= 1
