from __future__ import annotations

import json
from pathlib import Path

import pytest

from tandem.core.checkpoint import FileSnapshotCheckpointer
from tandem.tools.builtin import DEFAULT_ALWAYS_INCLUDE, build_builtin_registry
from tandem.tools.executor import CapabilityExecutor
from tandem.types import ToolInvocation


def _call(name: str, **arguments: object) -> ToolInvocation:
    return ToolInvocation(id=f"{name}_1", name=name, arguments=json.dumps(arguments))


@pytest.fixture
def executor(tmp_path: Path) -> CapabilityExecutor:
    return CapabilityExecutor(build_builtin_registry(tmp_path), checkpointer=FileSnapshotCheckpointer(tmp_path))


def test_builtin_registry_metadata(tmp_path: Path) -> None:
    registry = build_builtin_registry(tmp_path)
    assert set(DEFAULT_ALWAYS_INCLUDE) <= set(registry.names())
    assert not registry.is_mutating("view_file")
    assert not registry.is_mutating("search")
    assert registry.is_mutating("create_file")
    assert registry.is_mutating("str_replace_editor")
    assert registry.is_mutating("bash")


@pytest.mark.asyncio
async def test_create_view_and_edit_file(executor: CapabilityExecutor, tmp_path: Path) -> None:
    created = await executor.invoke(_call("create_file", path="pkg/a.py", content="x = 1\ny = 2\n"))
    assert created.success
    assert (tmp_path / "pkg" / "a.py").read_text(encoding="utf-8") == "x = 1\ny = 2\n"

    again = await executor.invoke(_call("create_file", path="pkg/a.py", content=""))
    assert not again.success and "already exists" in again.error

    viewed = await executor.invoke(_call("view_file", path="pkg/a.py", start_line=2))
    assert viewed.output == "   2| y = 2"

    edited = await executor.invoke(_call("str_replace_editor", path="pkg/a.py", old_str="x = 1", new_str="x = 3"))
    assert edited.success
    assert edited.output == "x = 3\ny = 2\n"


@pytest.mark.asyncio
async def test_str_replace_requires_unique_match(executor: CapabilityExecutor, tmp_path: Path) -> None:
    (tmp_path / "b.txt").write_text("aa aa", encoding="utf-8")

    ambiguous = await executor.invoke(_call("str_replace_editor", path="b.txt", old_str="aa", new_str="b"))
    assert not ambiguous.success and "2 times" in ambiguous.error

    replaced = await executor.invoke(
        _call("str_replace_editor", path="b.txt", old_str="aa", new_str="b", replace_all=True)
    )
    assert replaced.output == "b b"


@pytest.mark.asyncio
async def test_search_finds_lines(executor: CapabilityExecutor, tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "m.py").write_text("def main():\n    # TODO: fix\n", encoding="utf-8")

    found = await executor.invoke(_call("search", query="todo"))
    assert found.output == "src/m.py:2:    # TODO: fix"

    strict = await executor.invoke(_call("search", query="todo", case_sensitive=True))
    assert strict.output == "none"


@pytest.mark.asyncio
async def test_bash_reports_exit_code(executor: CapabilityExecutor) -> None:
    ok = await executor.invoke(_call("bash", command="echo hello"))
    assert ok.output.startswith("hello")

    failed = await executor.invoke(_call("bash", command="exit 3"))
    assert not failed.success
    assert failed.error.startswith("exit=3")


@pytest.mark.asyncio
async def test_invalid_arguments_fail_validation(executor: CapabilityExecutor) -> None:
    outcome = await executor.invoke(_call("view_file"))
    assert not outcome.success


@pytest.mark.asyncio
async def test_checkpoint_taken_before_mutation(tmp_path: Path) -> None:
    checkpointer = FileSnapshotCheckpointer(tmp_path)
    executor = CapabilityExecutor(build_builtin_registry(tmp_path), checkpointer=checkpointer)
    (tmp_path / "c.txt").write_text("before", encoding="utf-8")

    await executor.invoke(_call("str_replace_editor", path="c.txt", old_str="before", new_str="after"))
    await executor.invoke(_call("create_file", path="new.txt", content="n"))
    await executor.invoke(_call("view_file", path="c.txt"))

    snapshots = checkpointer.snapshots
    assert [(snapshot.path.name, snapshot.content, snapshot.existed) for snapshot in snapshots] == [
        ("c.txt", "before", True),
        ("new.txt", "", False),
    ]
