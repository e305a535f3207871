from __future__ import annotations

import json

import pytest

from tandem.errors import ClassificationParseError
from tandem.tools.safety import can_parallelize, parse_arguments, resource_of_invocation
from tandem.types import ToolInvocation


def _call(idx: int, name: str, **arguments: object) -> ToolInvocation:
    return ToolInvocation(id=f"call_{idx}", name=name, arguments=json.dumps(arguments))


def test_reads_with_single_write_can_parallelize(registry) -> None:
    batch = [
        _call(1, "view_file", path="a.txt"),
        _call(2, "view_file", path="x"),
        _call(3, "create_file", path="a.txt", content="hi"),
    ]
    assert can_parallelize(batch, registry) is True


def test_two_writes_to_same_resource_serialize(registry) -> None:
    batch = [_call(1, "create_file", path="a.txt"), _call(2, "create_file", path="a.txt")]
    assert can_parallelize(batch, registry) is False


def test_two_writes_to_distinct_resources_serialize(registry) -> None:
    batch = [_call(1, "create_file", path="a.txt"), _call(2, "edit_file", target_file="b.txt")]
    assert can_parallelize(batch, registry) is False


def test_read_only_batch_can_parallelize(registry) -> None:
    batch = [_call(1, "view_file", path="a"), _call(2, "search", query="x")]
    assert can_parallelize(batch, registry) is True


def test_single_invocation_runs_sequentially(registry) -> None:
    assert can_parallelize([_call(1, "view_file", path="a")], registry) is False


def test_unknown_capability_is_treated_as_mutating(registry) -> None:
    batch = [_call(1, "mystery", path="a"), _call(2, "create_file", path="b")]
    assert can_parallelize(batch, registry) is False


def test_unparseable_mutating_payload_forces_sequential(registry) -> None:
    batch = [
        _call(1, "view_file", path="a"),
        ToolInvocation(id="call_2", name="create_file", arguments='{"path": "a'),
    ]
    assert can_parallelize(batch, registry) is False


def test_parse_arguments() -> None:
    assert parse_arguments("") == {}
    assert parse_arguments("  ") == {}
    assert parse_arguments('{"a": 1}') == {"a": 1}
    with pytest.raises(ClassificationParseError):
        parse_arguments("[1, 2]")
    with pytest.raises(ClassificationParseError):
        parse_arguments("{oops")


def test_resource_field_precedence() -> None:
    call = _call(1, "x", file_path="c", target_file="b", path="a")
    assert resource_of_invocation(call) == "a"
    assert resource_of_invocation(_call(2, "x", file_path="c")) == "c"
    assert resource_of_invocation(ToolInvocation(id="3", name="x", arguments="nope")) is None
