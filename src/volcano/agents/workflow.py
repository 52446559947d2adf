"""Workflow builder.

A Workflow is an immutable declaration: a configuration plus a tuple of
steps. Every combinator returns a new Workflow and leaves the receiver
untouched, so partially built workflows can be shared and extended freely.

Example:
    >>> wf = (
    ...     Workflow(llm=llm, instructions="Be concise")
    ...     .then("List three facts about volcanoes")
    ...     .then(AutoSelect("Check today's eruptions", (quake_server,)))
    ...     .branch(lambda rs: "erupting" in rs[-1].text,
    ...             if_true=lambda w: w.then("Write an alert"),
    ...             if_false=lambda w: w.then("Write an all-clear"))
    ... )
    >>> results = await wf.run()
    >>> async for result in wf.stream():
    ...     print(result.llm_output)
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from volcano.foundation.config import get_settings
from volcano.foundation.errors import ConcurrencyGuardError
from volcano.mcp import get_runtime
from volcano.runtime.observability import SafeTelemetry, log_context, telemetry_from_settings
from volcano.runtime.retry import RetryPolicy

from .interpreter import Interpreter, RunConfig
from .steps import (
    RETRY_UNTIL_DEFAULT,
    Branch,
    Compose,
    ForEach,
    Generate,
    Parallel,
    ResetHistory,
    RetryUntil,
    Switch,
    While,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from volcano.llm import LLMAdapter
    from volcano.mcp import ToolRuntime
    from volcano.runtime.observability import TelemetrySink

    from .classifier import IdKeyMatcher
    from .observer import WorkflowObserver
    from .results import StepResult
    from .steps import Body, LeafStep, PostHook, PreHook, Predicate, Step


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    """Workflow-level settings. None means: inherit from the enclosing run, else from VolcanoSettings."""

    llm: LLMAdapter | None = None
    instructions: str | None = None
    timeout: float | None = None
    retry: RetryPolicy | None = None
    context_max_chars: int | None = None
    context_max_tool_results: int | None = None
    max_tool_iterations: int | None = None
    max_delegations: int | None = None
    disable_parallel_tool_execution: bool | None = None
    tool_id_key: IdKeyMatcher | None = None
    name: str | None = None
    description: str | None = None
    telemetry: TelemetrySink | None = None
    runtime: ToolRuntime | None = None


class Workflow:
    """Immutable builder and runner for agent workflows.

    Args:
        llm: Default model adapter for every step
        instructions: Prepended to every prompt
        timeout: Seconds per model or tool call
        retry: RetryPolicy (or its fields as a mapping); delay and backoff are exclusive
        context_max_chars / context_max_tool_results: Context block limits
        max_tool_iterations: Turn cap for AutoSelect steps
        max_delegations: Turn cap for Delegate steps
        disable_parallel_tool_execution: Run every requested tool call sequentially
        tool_id_key: Predicate naming identifier-like tool arguments
        name / description: Required for use as a delegation target
        telemetry: TelemetrySink (settings decide when omitted)
        runtime: ToolRuntime (the process-wide runtime when omitted)
    """

    __slots__ = ("_config", "_steps", "_running")

    def __init__(
        self,
        *,
        llm: LLMAdapter | None = None,
        instructions: str | None = None,
        timeout: float | None = None,
        retry: RetryPolicy | Mapping[str, Any] | None = None,
        context_max_chars: int | None = None,
        context_max_tool_results: int | None = None,
        max_tool_iterations: int | None = None,
        max_delegations: int | None = None,
        disable_parallel_tool_execution: bool | None = None,
        tool_id_key: IdKeyMatcher | None = None,
        name: str | None = None,
        description: str | None = None,
        telemetry: TelemetrySink | None = None,
        runtime: ToolRuntime | None = None,
    ) -> None:
        if retry is not None and not isinstance(retry, RetryPolicy):
            retry = RetryPolicy.model_validate(dict(retry))
        self._config = WorkflowConfig(
            llm=llm, instructions=instructions, timeout=timeout, retry=retry,
            context_max_chars=context_max_chars, context_max_tool_results=context_max_tool_results,
            max_tool_iterations=max_tool_iterations, max_delegations=max_delegations,
            disable_parallel_tool_execution=disable_parallel_tool_execution, tool_id_key=tool_id_key,
            name=name, description=description, telemetry=telemetry, runtime=runtime,
        )
        self._steps: tuple[Step, ...] = ()
        self._running = False

    @classmethod
    def _build(cls, config: WorkflowConfig, steps: tuple[Step, ...]) -> Workflow:
        wf = cls.__new__(cls)
        wf._config, wf._steps, wf._running = config, steps, False
        return wf

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    @property
    def name(self) -> str | None:
        return self._config.name

    @property
    def description(self) -> str | None:
        return self._config.description

    @property
    def running(self) -> bool:
        return self._running

    def with_config(self, **changes: Any) -> Workflow:
        """Same steps, updated configuration."""
        if (retry := changes.get("retry")) is not None and not isinstance(retry, RetryPolicy):
            changes["retry"] = RetryPolicy.model_validate(dict(retry))
        return Workflow._build(dataclasses.replace(self._config, **changes), self._steps)

    def _append(self, *steps: Step) -> Workflow:
        return Workflow._build(self._config, self._steps + steps)

    # ─────────────────────────────────────────────────────────────────
    # Combinators
    # ─────────────────────────────────────────────────────────────────

    def then(self, step: Step | str, **overrides: Any) -> Workflow:
        """Append a step. A string is shorthand for Generate(prompt, **overrides)."""
        return self._append(Generate(step, **overrides) if isinstance(step, str) else step)

    def reset_history(self) -> Workflow:
        """Later prompts stop seeing earlier context; results are kept."""
        return self._append(ResetHistory())

    def parallel(self, steps: Sequence[LeafStep] | Mapping[str, LeafStep], *, pre: PreHook | None = None,
                 post: PostHook | None = None) -> Workflow:
        return self._append(Parallel(steps if isinstance(steps, Mapping) else tuple(steps), pre=pre, post=post))

    def branch(self, condition: Predicate, *, if_true: Body, if_false: Body, pre: PreHook | None = None,
               post: PostHook | None = None) -> Workflow:
        return self._append(Branch(condition, if_true, if_false, pre=pre, post=post))

    def switch(self, selector: Callable[[list[StepResult]], Hashable], cases: Mapping[Hashable, Body], *,
               default: Body | None = None, pre: PreHook | None = None, post: PostHook | None = None) -> Workflow:
        return self._append(Switch(selector, dict(cases), default, pre=pre, post=post))

    def while_(self, condition: Predicate, body: Body, *, max_iterations: int = 10, timeout: float | None = None,
               pre: PreHook | None = None, post: PostHook | None = None) -> Workflow:
        return self._append(While(condition, body, max_iterations, timeout, pre=pre, post=post))

    def for_each(self, items: Sequence[Any], body: Callable[[Any, Workflow], Workflow], *,
                 pre: PreHook | None = None, post: PostHook | None = None) -> Workflow:
        return self._append(ForEach(tuple(items), body, pre=pre, post=post))

    def retry_until(self, body: Body, success: Callable[[StepResult], bool], *,
                    retry: RetryPolicy | Mapping[str, Any] | None = None, pre: PreHook | None = None,
                    post: PostHook | None = None) -> Workflow:
        if retry is not None and not isinstance(retry, RetryPolicy):
            retry = RetryPolicy.model_validate(dict(retry))
        return self._append(RetryUntil(body, success, retry or RETRY_UNTIL_DEFAULT, pre=pre, post=post))

    def run_agent(self, workflow: Workflow, *, context: Mapping[str, Any] | None = None, pre: PreHook | None = None,
                  post: PostHook | None = None) -> Workflow:
        """Run a prebuilt workflow inline with its own configuration."""
        return self._append(Compose(workflow, dict(context) if context else None, pre=pre, post=post))

    # ─────────────────────────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────────────────────────

    async def run(self, observer: WorkflowObserver | None = None) -> list[StepResult]:
        """Execute every step; returns all results or raises the first unrecoverable error."""
        self._acquire()
        try:
            with log_context(workflow=self.name or "anonymous"):
                return [result async for result in self._execute(observer)]
        finally:
            self._running = False

    def stream(self, observer: WorkflowObserver | None = None) -> AsyncIterator[StepResult]:
        """Yield results as their top-level steps complete."""
        self._check_idle()
        return self._stream(observer)

    async def _stream(self, observer: WorkflowObserver | None) -> AsyncIterator[StepResult]:
        self._acquire()
        try:
            async for result in self._execute(observer):
                yield result
        finally:
            self._running = False

    def _check_idle(self) -> None:
        if self._running:
            raise ConcurrencyGuardError(f"Workflow '{self.name}' is already running" if self.name
                                        else "Workflow is already running")

    def _acquire(self) -> None:
        self._check_idle()
        self._running = True

    async def _execute(self, observer: WorkflowObserver | None) -> AsyncIterator[StepResult]:
        settings = get_settings()
        telemetry = SafeTelemetry(self._config.telemetry or telemetry_from_settings(settings.telemetry))
        interpreter = Interpreter(
            config=RunConfig.resolve(self._config, settings),
            runtime=self._config.runtime or get_runtime(),
            telemetry=telemetry,
            settings=settings,
            observer=observer,
        )
        try:
            async for result in interpreter.iterate(self._steps):
                yield result
        finally:
            telemetry.flush()

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self) -> str:
        label = f"name={self.name!r}, " if self.name else ""
        return f"Workflow({label}steps={len(self._steps)})"
