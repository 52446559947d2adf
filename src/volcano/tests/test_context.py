"""Tests for prompt synthesis and the context block."""

from __future__ import annotations

from volcano.agents import StepResult, build_history_context, compose_prompt, render_injected, tool_results_block
from volcano.agents.context import CONTEXT_HEADER
from volcano.mcp import ToolCallRecord


def record(name: str, result: object) -> ToolCallRecord:
    return ToolCallRecord(name=name, arguments={}, result=result, duration_ms=1.0)


def context(history: list[StepResult], max_chars: int = 20480, max_tool_results: int = 8) -> str:
    return build_history_context(history, max_tool_results=max_tool_results, max_chars=max_chars)


def test_empty_history_has_no_context() -> None:
    assert context([]) == ""
    assert context([StepResult(prompt="p")]) == ""


def test_previous_answer_block() -> None:
    assert context([StepResult(llm_output="OK")]) == "\n\n[Context from previous steps]\nPrevious LLM answer:\nOK\n"


def test_only_the_last_result_is_used() -> None:
    history = [StepResult(llm_output="first"), StepResult(llm_output="second")]
    assert "first" not in context(history)
    assert "second" in context(history)


def test_tool_results_are_listed() -> None:
    result = StepResult(llm_output="done", tool_calls=[record("w.get_weather", "Sunny"), record("w.stats", {"n": 2})])
    assert context([result]) == (
        CONTEXT_HEADER
        + "Previous LLM answer:\ndone\n"
        + "Previous tool results:\n"
        + "- w.get_weather -> Sunny\n"
        + '- w.stats -> {"n":2}\n'
    )


def test_explicit_tool_result_is_carried() -> None:
    result = StepResult(tool=record("get_weather", "Rain"))
    assert context([result]) == CONTEXT_HEADER + "Previous tool results:\n- get_weather -> Rain\n"


def test_only_the_most_recent_tool_results_are_kept() -> None:
    result = StepResult(tool_calls=[record(f"t{i}", i) for i in range(5)])
    block = context([result], max_tool_results=2)
    assert "- t3 -> 3\n- t4 -> 4\n" in block
    assert "t2" not in block
    assert context([result], max_tool_results=0) == ""


def test_block_never_exceeds_max_chars() -> None:
    result = StepResult(llm_output="x" * 100, tool_calls=[record("t", "y" * 50)])
    full = context([result])
    for limit in (0, 10, len(CONTEXT_HEADER), 60, 150, len(full) - 1, len(full)):
        assert len(context([result], max_chars=limit)) <= limit
    assert context([result], max_chars=len(full)) == full
    # the first oversized chunk ends the block
    assert context([result], max_chars=len(CONTEXT_HEADER) + 30) == CONTEXT_HEADER + "Previous LLM answer:\n"


def test_compose_prompt() -> None:
    assert compose_prompt("Q") == "Q"
    assert compose_prompt("Q", instructions="Be brief") == "Be brief\n\nQ"
    assert compose_prompt("Q", instructions="I", context="C", injected="J") == "I\n\nQJC"


def test_tool_results_block() -> None:
    assert tool_results_block([]) == ""
    assert tool_results_block([record("a", 1), record("b", "two")]) == "\n\n[Tool results]\n- a -> 1\n- b -> two\n"


def test_render_injected() -> None:
    assert render_injected("Task", "Find Etna") == "\n\n[Task]\nFind Etna\n"
    assert render_injected("Context", {"city": "Catania", "n": 3}) == "\n\n[Context]\n- city: Catania\n- n: 3\n"
