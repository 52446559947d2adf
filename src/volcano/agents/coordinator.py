"""Multi-agent coordination.

A coordinator model is shown the roster of named agents and replies each turn
with one directive:

    USE <agent name>: <task>     run that agent on the task
    DONE: <answer>               finish with the answer

The chosen agent runs as a nested workflow with the task injected into its
first prompt. Its answer is fed back into the coordinator conversation and the
next turn begins. A reply without a directive is taken as the final answer.
"""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING

from volcano.runtime.observability import get_logger

from .context import compose_prompt, render_injected
from .results import DelegationRecord, StepResult, last_text
from .steps import Generate

if TYPE_CHECKING:
    from volcano.runtime.observability import Span

    from .interpreter import Interpreter, LeafConfig
    from .steps import Delegate
    from .workflow import Workflow

NO_AGENTS_MESSAGE = "No agents available or agents missing name/description"

_USE = re.compile(r"\bUSE\s+([A-Za-z0-9_.-]+)\s*:\s*([^\n]*)")
_DONE = re.compile(r"\bDONE:\s*(.*)", re.DOTALL)

log = get_logger("volcano.coordinator")


def coordinator_prompt(task: str, agents: list[Workflow]) -> str:
    roster = "\n".join(f"- {a.name}: {a.description}" for a in agents)
    return (
        "You are a coordinator. You can coordinate work by delegating to these agents:\n"
        f"{roster}\n\n"
        f"Task: {task}\n\n"
        "Reply with exactly one directive:\n"
        "USE <agent name>: <task for that agent>\n"
        "DONE: <final answer>"
    )


def parse_directive(reply: str) -> tuple[str, str, str] | None:
    """('use', name, task) or ('done', answer, '') for the earliest directive, None without one."""
    use, done = _USE.search(reply), _DONE.search(reply)
    if done and (use is None or done.start() < use.start()):
        return "done", done.group(1).strip(), ""
    if use:
        return "use", use.group(1), use.group(2).strip()
    return None


async def run_coordinator(interp: Interpreter, step: Delegate, cfg: LeafConfig, span: Span) -> StepResult:
    result = StepResult(prompt=step.prompt, delegations=[])
    agents = [a for a in step.agents if a.name and a.description]
    if not agents:
        result.llm_output = NO_AGENTS_MESSAGE
        return result

    llm = cfg.require_llm()
    roster = {a.name: a for a in agents if a.name}
    base = interp.prompt_for(coordinator_prompt(step.prompt, agents), cfg)
    conversation = ""
    text = ""
    max_turns = step.max_iterations or interp.config.max_delegations

    for _ in range(max_turns):
        reply, ms = await interp.call_llm(cfg, lambda: llm.generate(base + conversation), parent=span, op="generate")
        result.llm_ms += ms
        text = reply
        match parse_directive(reply):
            case None:
                break
            case ("done", answer, _):
                text = answer
                break
            case ("use", name, task):
                conversation += f"\n\nCoordinator: {reply}"
                if (agent := roster.get(name)) is None:
                    log.warning("coordinator chose unknown agent", agent=name)
                    conversation += (f"\n\nError: agent '{name}' not found. "
                                     f"Available agents: {', '.join(roster)}")
                    continue
                record = await _delegate(interp, agent, name, task, span)
                result.delegations.append(record)
                result.tool_ms += sum(r.duration_ms for r in record.tool_calls)
                conversation += f"\n\nAgent '{name}' completed their task: {record.result}"

    result.llm_output = text
    return result


async def _delegate(interp: Interpreter, agent: Workflow, name: str, task: str, span: Span) -> DelegationRecord:
    log.debug("delegating", agent=name, task=task)
    start = time.perf_counter()
    results = await interp.run_workflow(
        agent,
        injected=render_injected("Task from coordinator", task) if agent.steps else "",
        parent_span=span,
        default_steps=(Generate(task),),
    )
    return DelegationRecord(
        agent=name,
        task=task,
        result=last_text(results),
        tool_calls=tuple(record for r in results for record in r.tool_records),
        duration_ms=(time.perf_counter() - start) * 1000,
    )
