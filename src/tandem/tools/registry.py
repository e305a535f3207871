"""Capability registry."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger
from pydantic import BaseModel
from republic import Tool, tool_from_model

from tandem.errors import DuplicateCapabilityError
from tandem.utils import tokenize

EXTERNAL_PREFIX_RE = re.compile(r"^mcp__\w+?__")
EXTERNAL_DESCRIPTION_KEYWORDS = 10


class Category(StrEnum):
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_SEARCH = "file_search"
    SYSTEM = "system"
    GIT = "git"
    WEB = "web"
    PLANNING = "planning"
    MEDIA = "media"
    DOCUMENT = "document"
    UTILITY = "utility"
    CODEBASE = "codebase"
    EXTERNAL = "external"


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Capability metadata and runtime handle."""

    name: str
    tool: Tool
    mutates_state: bool
    category: Category = Category.UTILITY
    keywords: tuple[str, ...] = ()
    priority: int = 5
    source: str = "builtin"

    @property
    def description(self) -> str:
        return self.tool.description or ""

    def schema(self) -> dict[str, Any]:
        return self.tool.schema()


class CapabilityRegistry:
    """Declaration-ordered catalog of capabilities offered to the model."""

    def __init__(self, descriptors: Iterable[CapabilityDescriptor] = ()) -> None:
        self._capabilities: dict[str, CapabilityDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: CapabilityDescriptor) -> CapabilityDescriptor:
        if descriptor.name in self._capabilities:
            raise DuplicateCapabilityError(descriptor.name)
        self._capabilities[descriptor.name] = descriptor
        logger.debug(
            "registry.register name={} mutates={} source={}",
            descriptor.name,
            descriptor.mutates_state,
            descriptor.source,
        )
        return descriptor

    def register_external(
        self,
        *,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: Callable[..., Any],
        mutates_state: bool = True,
    ) -> CapabilityDescriptor:
        """Register a proxy for a tool served by an external process.

        Keywords are derived from the name (server prefix removed) and the
        leading words of the description.
        """

        keywords = [
            *tokenize(EXTERNAL_PREFIX_RE.sub("", name).replace("_", " ")),
            *tokenize(description)[:EXTERNAL_DESCRIPTION_KEYWORDS],
        ]
        tool = Tool(name=name, description=description, parameters=parameters, handler=handler)
        return self.register(
            CapabilityDescriptor(
                name=name,
                tool=tool,
                mutates_state=mutates_state,
                category=Category.EXTERNAL,
                keywords=tuple(dict.fromkeys(keywords)),
                priority=4,
                source="external",
            )
        )

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def get(self, name: str) -> CapabilityDescriptor | None:
        return self._capabilities.get(name)

    def descriptors(self) -> list[CapabilityDescriptor]:
        return list(self._capabilities.values())

    def names(self) -> list[str]:
        return list(self._capabilities)

    def index_of(self, name: str) -> int:
        return self.names().index(name)

    def is_mutating(self, name: str) -> bool:
        """Unknown capabilities are treated as mutating."""

        descriptor = self.get(name)
        return True if descriptor is None else descriptor.mutates_state

    def schemas(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        if names is None:
            return [descriptor.schema() for descriptor in self.descriptors()]
        wanted = set(names)
        return [descriptor.schema() for descriptor in self.descriptors() if descriptor.name in wanted]

    def serialize(self, names: Iterable[str] | None = None) -> str:
        return json.dumps(self.schemas(names), ensure_ascii=False, sort_keys=True)

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities


def capability(
    model: type[BaseModel],
    handler: Callable[[Any], Any],
    *,
    name: str,
    description: str,
    mutates_state: bool,
    category: Category,
    keywords: Iterable[str] = (),
    priority: int = 5,
) -> CapabilityDescriptor:
    """Build a descriptor from a pydantic input model and a handler."""

    return CapabilityDescriptor(
        name=name,
        tool=tool_from_model(model, handler, name=name, description=description),
        mutates_state=mutates_state,
        category=category,
        keywords=tuple(keyword.lower() for keyword in keywords),
        priority=priority,
    )
