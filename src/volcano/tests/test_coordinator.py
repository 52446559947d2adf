"""Tests for multi-agent coordination."""

from __future__ import annotations

import pytest

from volcano.agents import NO_AGENTS_MESSAGE, Delegate, InvokeTool, RecordingObserver, Workflow, parse_directive
from volcano.mcp import ServerHandle, ToolRuntime
from volcano.runtime.observability import RecordingTelemetry, SpanKind
from volcano.testing import MockLLM


def researcher(llm: MockLLM) -> Workflow:
    return Workflow(llm=llm, name="researcher", description="Finds facts").then("Research")


# ═════════════════════════════════════════════════════════════════════════════
# Directives
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "reply,expected",
    [
        ("USE researcher: find facts about Etna", ("use", "researcher", "find facts about Etna")),
        ("Let me think.\nUSE writer:   draft it  \nthanks", ("use", "writer", "draft it")),
        ("Thinking...\nDONE: Etna is active.\nIt erupted in 2021.", ("done", "Etna is active.\nIt erupted in 2021.", "")),
        ("DONE: use USE a: b", ("done", "use USE a: b", "")),
        ("USE a: first\nDONE: later", ("use", "a", "first")),
        ("I am not sure what to do", None),
    ],
)
def test_parse_directive(reply: str, expected: tuple[str, str, str] | None) -> None:
    assert parse_directive(reply) == expected


# ═════════════════════════════════════════════════════════════════════════════
# Delegation
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_delegate_then_finish() -> None:
    coordinator = MockLLM(["USE researcher: find facts about Etna", "DONE: Etna is active"])
    agent_llm = MockLLM(["Etna erupted in 2021"])
    (result,) = await Workflow(llm=coordinator).then(Delegate("Report on Etna", (researcher(agent_llm),))).run()

    assert result.llm_output == "Etna is active"
    assert result.delegations is not None
    assert [(d.agent, d.task, d.result) for d in result.delegations] == [
        ("researcher", "find facts about Etna", "Etna erupted in 2021")
    ]
    assert "- researcher: Finds facts" in coordinator.prompts[0]
    assert "Task: Report on Etna" in coordinator.prompts[0]
    assert agent_llm.prompts == ["Research\n\n[Task from coordinator]\nfind facts about Etna\n"]
    assert coordinator.prompts[1] == (
        coordinator.prompts[0]
        + "\n\nCoordinator: USE researcher: find facts about Etna"
        + "\n\nAgent 'researcher' completed their task: Etna erupted in 2021"
    )


@pytest.mark.asyncio
async def test_agent_without_steps_answers_the_task_directly() -> None:
    coordinator = MockLLM(["USE writer: write a haiku", "DONE: see above"])
    writer_llm = MockLLM(["lava glows at night"])
    writer = Workflow(llm=writer_llm, name="writer", description="Writes prose")
    (result,) = await Workflow(llm=coordinator).then(Delegate("Poem", (writer,))).run()
    assert writer_llm.prompts == ["write a haiku"]
    assert result.delegations is not None and result.delegations[0].result == "lava glows at night"


@pytest.mark.asyncio
async def test_agents_inherit_the_parent_model() -> None:
    llm = MockLLM(["USE writer: hello", "hi there", "DONE: greeted"])
    writer = Workflow(name="writer", description="Writes prose")
    (result,) = await Workflow(llm=llm).then(Delegate("Greet", (writer,))).run()
    assert llm.prompts[1] == "hello"
    assert result.llm_output == "greeted"


@pytest.mark.asyncio
async def test_unknown_agent_is_reported_back() -> None:
    coordinator = MockLLM(["USE ghost: boo", "DONE: fine"])
    (result,) = await Workflow(llm=coordinator).then(Delegate("Task", (researcher(MockLLM()),))).run()
    assert "\n\nError: agent 'ghost' not found. Available agents: researcher" in coordinator.prompts[1]
    assert result.delegations == []
    assert result.llm_output == "fine"


@pytest.mark.asyncio
async def test_reply_without_directive_is_the_answer() -> None:
    coordinator = MockLLM(["Just the answer"])
    (result,) = await Workflow(llm=coordinator).then(Delegate("Task", (researcher(MockLLM()),))).run()
    assert result.llm_output == "Just the answer"
    assert coordinator.call_count == 1


@pytest.mark.asyncio
async def test_no_usable_agents() -> None:
    coordinator = MockLLM()
    anonymous = Workflow(name="helper").then("x")
    (result,) = await Workflow(llm=coordinator).then(Delegate("Task", (anonymous,))).run()
    assert result.llm_output == NO_AGENTS_MESSAGE
    assert coordinator.call_count == 0


# ═════════════════════════════════════════════════════════════════════════════
# Safety cap
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_delegation_cap_defaults_to_ten() -> None:
    coordinator = MockLLM(default="USE researcher: again")
    (result,) = await Workflow(llm=coordinator).then(Delegate("Loop", (researcher(MockLLM()),))).run()
    assert coordinator.call_count == 10
    assert result.delegations is not None and len(result.delegations) == 10
    assert result.llm_output == "USE researcher: again"


@pytest.mark.asyncio
async def test_delegation_cap_overrides() -> None:
    coordinator = MockLLM(default="USE researcher: again")
    await Workflow(llm=coordinator).then(Delegate("Loop", (researcher(MockLLM()),), max_iterations=2)).run()
    assert coordinator.call_count == 2

    coordinator = MockLLM(default="USE researcher: again")
    await Workflow(llm=coordinator, max_delegations=3).then(Delegate("Loop", (researcher(MockLLM()),))).run()
    assert coordinator.call_count == 3


# ═════════════════════════════════════════════════════════════════════════════
# Nested runs
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_delegated_tool_calls_are_recorded(runtime: ToolRuntime, weather: ServerHandle) -> None:
    coordinator = MockLLM(["USE forecaster: Catania", "DONE: sunny"])
    forecaster = Workflow(name="forecaster", description="Checks weather").then(
        InvokeTool(weather, "get_weather", {"city": "Catania"}))
    (result,) = await Workflow(llm=coordinator, runtime=runtime).then(Delegate("Weather?", (forecaster,))).run()
    assert result.delegations is not None
    (delegation,) = result.delegations
    assert delegation.result == "Sunny in Catania"
    assert [r.name for r in delegation.tool_calls] == ["get_weather"]
    assert result.tool_ms == pytest.approx(delegation.tool_calls[0].duration_ms)


@pytest.mark.asyncio
async def test_delegated_runs_are_nested() -> None:
    observer, sink = RecordingObserver(), RecordingTelemetry()
    coordinator = MockLLM(["USE researcher: dig", "DONE: found"])
    await (
        Workflow(llm=coordinator, telemetry=sink, name="boss")
        .then(Delegate("Task", (researcher(MockLLM(["facts"])),)))
        .run(observer)
    )
    assert observer.of("start") == [(0, "Delegate", False), (0, "Generate", True)]
    agents = sink.spans_of(SpanKind.AGENT)
    assert sorted(s.name for s in agents) == ["agent.boss", "agent.researcher"]
    child = next(s for s in agents if s.name == "agent.researcher")
    assert child.parent is not None and child.parent.kind is SpanKind.STEP
