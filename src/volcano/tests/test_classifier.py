"""Tests for the tool-call concurrency classifier."""

from __future__ import annotations

import pytest

from volcano.agents import ClassifierPolicy, GroupMode, classify, default_id_key, is_parallel_safe
from volcano.llm import ToolCallRequest


def call(name: str, /, **arguments: object) -> ToolCallRequest:
    return ToolCallRequest(name, dict(arguments))


def modes(calls: list[ToolCallRequest], policy: ClassifierPolicy | None = None) -> list[tuple[str, int]]:
    groups = classify(calls, policy) if policy else classify(calls)
    return [(g.mode.value, len(g.calls)) for g in groups]


def test_distinct_ids_run_in_parallel() -> None:
    calls = [call("crm.get_user", userId="a"), call("crm.get_user", userId="b"), call("crm.get_user", userId="c")]
    groups = classify(calls)
    assert len(groups) == 1
    assert groups[0].parallel
    assert groups[0].calls == tuple(calls)


def test_unsafe_runs_are_sequential() -> None:
    # duplicate arguments
    assert not is_parallel_safe([call("t", id="1"), call("t", id="1")])
    # missing identifier
    assert not is_parallel_safe([call("t", name="a"), call("t", name="b")])
    # empty identifier
    assert not is_parallel_safe([call("t", id=""), call("t", id="b")])
    assert not is_parallel_safe([call("t", id=None), call("t", id="b")])
    # shared identifier, different payload
    assert not is_parallel_safe([call("t", id="1", note="x"), call("t", id="1", note="y")])
    # a single call
    assert not is_parallel_safe([call("t", id="1")])


def test_identifier_keys_are_case_insensitive_suffixes() -> None:
    assert is_parallel_safe([call("t", ID="1"), call("t", ID="2")])
    assert is_parallel_safe([call("t", order_id=1), call("t", order_id=2)])
    assert is_parallel_safe([call("t", OrderId="x"), call("t", OrderId="y")])


@pytest.mark.parametrize("key", ["id", "ID", "user_id", "USER_ID", "item-id", "userId", "orderID"])
def test_identifier_keys(key: str) -> None:
    assert default_id_key(key)


@pytest.mark.parametrize("key", ["paid", "valid", "uuid", "android", "rapid", "PAID", "Id_card", "idx", "i"])
def test_words_ending_in_id_are_not_identifiers(key: str) -> None:
    assert not default_id_key(key)
    assert not is_parallel_safe([call("t", **{key: "a"}), call("t", **{key: "b"})])


def test_groups_preserve_request_order() -> None:
    calls = [
        call("a.search", query="x"),
        call("a.notify", channel="ops"),
        call("a.get_user", userId="1"),
        call("a.get_user", userId="2"),
        call("a.search", query="y"),
    ]
    groups = classify(calls)
    assert modes(calls) == [("sequential", 2), ("parallel", 2), ("sequential", 1)]
    flattened = [c for g in groups for c in g.calls]
    assert flattened == calls


def test_only_consecutive_calls_form_a_run() -> None:
    calls = [call("t", id="1"), call("u", id="1"), call("t", id="2")]
    assert modes(calls) == [("sequential", 3)]


def test_disable_parallel_forces_one_sequential_group() -> None:
    calls = [call("t", id="1"), call("t", id="2")]
    assert modes(calls, ClassifierPolicy(disable_parallel=True)) == [("sequential", 2)]


def test_custom_identifier_matcher() -> None:
    calls = [call("t", sku="A-1"), call("t", sku="A-2")]
    assert modes(calls) == [("sequential", 2)]
    assert modes(calls, ClassifierPolicy(id_key=lambda key: key == "sku")) == [("parallel", 2)]


def test_empty_input() -> None:
    assert classify([]) == []
    assert GroupMode("parallel") is GroupMode.PARALLEL
