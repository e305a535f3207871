"""Built-in workspace capabilities."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from pydantic import BaseModel, Field

from tandem.errors import ToolExecutionError
from tandem.tools.registry import CapabilityDescriptor, CapabilityRegistry, Category, capability

MAX_SEARCH_MATCHES = 50
MAX_VIEW_ENTRIES = 200
DEFAULT_ALWAYS_INCLUDE = ("view_file", "bash", "search", "str_replace_editor")


class ViewFileInput(BaseModel):
    """View file contents or a directory listing."""

    path: str = Field(..., description="Path to file or directory")
    start_line: int | None = Field(default=None, description="First line to show (1-based)")
    end_line: int | None = Field(default=None, description="Last line to show (inclusive)")


class CreateFileInput(BaseModel):
    """Create a new file with content."""

    path: str = Field(..., description="Path of the file to create")
    content: str = Field(..., description="File contents")


class StrReplaceInput(BaseModel):
    """Replace text in an existing file."""

    path: str = Field(..., description="Path to the file")
    old_str: str = Field(..., description="Text to replace")
    new_str: str = Field(..., description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace all occurrences")


class SearchInput(BaseModel):
    """Search for text content in files."""

    query: str = Field(..., description="Text or regex to search for")
    path: str = Field(default=".", description="Base directory")
    regex: bool = Field(default=False, description="Treat query as a regular expression")
    case_sensitive: bool = Field(default=False, description="Case-sensitive search")


class BashInput(BaseModel):
    """Run a shell command."""

    command: str = Field(..., description="Shell command to run")


def resolve_path(workspace: Path, raw_path: str) -> Path:
    path = Path(raw_path)
    if path.is_absolute():
        return path
    return workspace / path


def create_view_file(workspace: Path) -> CapabilityDescriptor:
    def _handler(params: ViewFileInput) -> str:
        target = resolve_path(workspace, params.path)
        if target.is_dir():
            entries = sorted(target.iterdir())[:MAX_VIEW_ENTRIES]
            return "\n".join(f"{entry.name}/" if entry.is_dir() else entry.name for entry in entries) or "(empty)"
        try:
            lines = target.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeError) as exc:
            raise ToolExecutionError("view_file", str(exc)) from exc

        start = max((params.start_line or 1) - 1, 0)
        end = len(lines) if params.end_line is None else max(params.end_line, start)
        return "\n".join(f"{idx:4}| {line}" for idx, line in enumerate(lines[start:end], start=start + 1))

    return capability(
        ViewFileInput,
        _handler,
        name="view_file",
        description="View file contents or directory listings",
        mutates_state=False,
        category=Category.FILE_READ,
        keywords=["view", "read", "show", "display", "content", "file", "open", "look", "see", "check", "list",
                  "directory", "ls", "cat"],
        priority=10,
    )


def create_create_file(workspace: Path) -> CapabilityDescriptor:
    def _handler(params: CreateFileInput) -> str:
        target = resolve_path(workspace, params.path)
        if target.exists():
            raise ToolExecutionError("create_file", f"{params.path} already exists, use str_replace_editor")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(params.content, encoding="utf-8")
        except OSError as exc:
            raise ToolExecutionError("create_file", str(exc)) from exc
        return f"created {params.path}"

    return capability(
        CreateFileInput,
        _handler,
        name="create_file",
        description="Create new files with content",
        mutates_state=True,
        category=Category.FILE_WRITE,
        keywords=["create", "new", "write", "generate", "make", "add", "initialize", "init", "touch"],
        priority=8,
    )


def create_str_replace_editor(workspace: Path) -> CapabilityDescriptor:
    def _handler(params: StrReplaceInput) -> str:
        target = resolve_path(workspace, params.path)
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            raise ToolExecutionError("str_replace_editor", str(exc)) from exc

        count = content.count(params.old_str)
        if count == 0:
            raise ToolExecutionError("str_replace_editor", "old_str not found")
        if count > 1 and not params.replace_all:
            raise ToolExecutionError(
                "str_replace_editor", f"old_str appears {count} times, must be unique (use replace_all=true)"
            )

        if params.replace_all:
            updated = content.replace(params.old_str, params.new_str)
        else:
            updated = content.replace(params.old_str, params.new_str, 1)
        try:
            target.write_text(updated, encoding="utf-8")
        except OSError as exc:
            raise ToolExecutionError("str_replace_editor", str(exc)) from exc
        return updated

    return capability(
        StrReplaceInput,
        _handler,
        name="str_replace_editor",
        description="Replace text in existing files",
        mutates_state=True,
        category=Category.FILE_WRITE,
        keywords=["edit", "modify", "change", "update", "replace", "fix", "refactor", "alter", "patch"],
        priority=10,
    )


def create_search(workspace: Path) -> CapabilityDescriptor:
    def _handler(params: SearchInput) -> str:
        base = resolve_path(workspace, params.path)
        flags = 0 if params.case_sensitive else re.IGNORECASE
        pattern = params.query if params.regex else re.escape(params.query)
        try:
            regex = re.compile(pattern, flags)
        except re.error as exc:
            raise ToolExecutionError("search", str(exc)) from exc

        matches: list[str] = []
        for file_path in sorted(base.rglob("*")):
            if not file_path.is_file():
                continue
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeError):
                continue
            for idx, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{file_path.relative_to(base)}:{idx}:{line}")
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "none"

    return capability(
        SearchInput,
        _handler,
        name="search",
        description="Search for text content or files",
        mutates_state=False,
        category=Category.FILE_SEARCH,
        keywords=["search", "find", "locate", "grep", "look for", "where", "which", "query", "pattern", "regex"],
        priority=10,
    )


def create_bash(workspace: Path) -> CapabilityDescriptor:
    def _handler(params: BashInput) -> str:
        bash_executable = shutil.which("bash") or "bash"
        try:
            result = subprocess.run(  # noqa: S603
                [bash_executable, "-lc", params.command],
                cwd=workspace,
                capture_output=True,
                text=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ToolExecutionError("bash", str(exc)) from exc

        output = ((result.stdout or "") + (result.stderr or "")).strip()
        if result.returncode != 0:
            raise ToolExecutionError("bash", f"exit={result.returncode}\n{output or '(empty)'}")
        return output or "(empty)"

    return capability(
        BashInput,
        _handler,
        name="bash",
        description="Execute bash commands",
        mutates_state=True,
        category=Category.SYSTEM,
        keywords=["bash", "terminal", "command", "run", "execute", "shell", "npm", "yarn", "pip", "install", "build",
                  "test", "compile"],
        priority=9,
    )


def build_builtin_registry(workspace: Path) -> CapabilityRegistry:
    """Build the registry of built-in capabilities bound to a workspace."""

    return CapabilityRegistry([
        create_view_file(workspace),
        create_create_file(workspace),
        create_str_replace_editor(workspace),
        create_search(workspace),
        create_bash(workspace),
    ])
