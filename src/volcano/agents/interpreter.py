"""Control-flow interpreter.

An Interpreter executes one workflow run. It owns the run's result trace and
its context history, and exposes the guarded call paths leaf steps use:

- call_llm:  llm span -> timeout -> classify -> retry
- call_tool: tool span -> (validate) -> pooled call -> classify -> retry

Combinator bodies execute inline on the same interpreter, so predicates see
every result recorded so far and prompts see the shared context history.
Parallel children and composed workflows get child interpreters.

Errors carry `step_id`: the 0-based index of the top-level step that failed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar, assert_never

from volcano.foundation.errors import (
    ConfigurationError,
    RetryExhaustedError,
    WorkflowError,
    classify_exception,
)
from volcano.llm import normalize_token_usage, provider_id, record_token_usage, supports_streaming
from volcano.runtime.observability import SpanKind, get_logger
from volcano.runtime.retry import RetryPolicy, execute_with_retry, with_timeout

from .classifier import ClassifierPolicy
from .context import build_history_context, compose_prompt, render_injected
from .observer import notify, wants_tokens
from .results import StepResult, Trace
from .steps import (
    AutoSelect,
    Branch,
    Compose,
    Deferred,
    Delegate,
    ForEach,
    Generate,
    InvokeTool,
    Parallel,
    ResetHistory,
    RetryUntil,
    Switch,
    While,
    step_label,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from volcano.foundation.config import VolcanoSettings
    from volcano.llm import LLMAdapter
    from volcano.mcp import ServerHandle, ToolCallRecord, ToolDefinition, ToolRuntime
    from volcano.runtime.observability import Span, TelemetrySink

    from .steps import Body, Combinator, LeafStep, Step
    from .workflow import Workflow, WorkflowConfig

T = TypeVar("T")

log = get_logger("volcano.agent")


# ─────────────────────────────────────────────────────────────────────────────
# Resolved configuration
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Workflow configuration with every default filled in."""

    llm: LLMAdapter | None
    instructions: str | None
    timeout: float | None
    retry: RetryPolicy
    context_max_chars: int
    context_max_tool_results: int
    max_tool_iterations: int
    max_delegations: int
    classifier: ClassifierPolicy
    name: str | None = None
    description: str | None = None

    @classmethod
    def resolve(cls, config: WorkflowConfig, settings: VolcanoSettings, parent: RunConfig | None = None) -> RunConfig:
        """Explicit values win, then the enclosing run's, then settings."""
        agent = settings.agent

        def pick(name: str, default: Any) -> Any:
            if (value := getattr(config, name)) is not None:
                return value
            return getattr(parent, name) if parent is not None else default

        disable = config.disable_parallel_tool_execution
        id_key = config.tool_id_key
        base = parent.classifier if parent is not None else ClassifierPolicy(
            disable_parallel=agent.disable_parallel_tool_execution)
        classifier = ClassifierPolicy(
            id_key=id_key if id_key is not None else base.id_key,
            disable_parallel=disable if disable is not None else base.disable_parallel,
        )
        return cls(
            llm=pick("llm", None),
            instructions=pick("instructions", None),
            timeout=pick("timeout", agent.timeout),
            retry=pick("retry", None) or RetryPolicy.from_settings(settings.retry),
            context_max_chars=pick("context_max_chars", agent.context_max_chars),
            context_max_tool_results=pick("context_max_tool_results", agent.context_max_tool_results),
            max_tool_iterations=pick("max_tool_iterations", agent.max_tool_iterations),
            max_delegations=pick("max_delegations", agent.max_delegations),
            classifier=classifier,
            name=config.name,
            description=config.description,
        )


@dataclass(frozen=True, slots=True)
class LeafConfig:
    """Effective settings for one leaf step (step overrides over the run config)."""

    llm: LLMAdapter | None
    instructions: str | None
    timeout: float | None
    retry: RetryPolicy
    context_max_chars: int
    context_max_tool_results: int

    @classmethod
    def of(cls, step: LeafStep, run: RunConfig) -> LeafConfig:
        return cls(
            llm=step.llm or run.llm,
            instructions=step.instructions if step.instructions is not None else run.instructions,
            timeout=step.timeout if step.timeout is not None else run.timeout,
            retry=step.retry or run.retry,
            context_max_chars=step.context_max_chars if step.context_max_chars is not None else run.context_max_chars,
            context_max_tool_results=(step.context_max_tool_results if step.context_max_tool_results is not None
                                      else run.context_max_tool_results),
        )

    def require_llm(self) -> LLMAdapter:
        if self.llm is None:
            raise ConfigurationError("No LLM provided. Pass llm= to the workflow or to the step.")
        return self.llm


# ─────────────────────────────────────────────────────────────────────────────
# Interpreter
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(eq=False)
class Interpreter:
    """Executes steps for one run.

    Attributes:
        config: Resolved run configuration
        runtime: Tool runtime (pool and caches)
        telemetry: Sink for spans and metrics
        observer: Optional progress observer
        nested: True for composed/delegated runs (observers may hide banners)
        step_id: Top-level step index stamped on errors; inherited by child runs
        history: Context history (shared with inline bodies)
        injected: Extra context for the first prompt-bearing step
    """

    config: RunConfig
    runtime: ToolRuntime
    telemetry: TelemetrySink
    settings: VolcanoSettings
    observer: Any = None
    nested: bool = False
    step_id: int | None = None
    history: list[StepResult] = field(default_factory=list)
    injected: str = ""
    trace: Trace = field(default_factory=Trace)
    span: Span | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    _inherit_step_id: bool = False

    @property
    def agent_name(self) -> str | None:
        return self.config.name

    # ─────────────────────────────────────────────────────────────────
    # Runs
    # ─────────────────────────────────────────────────────────────────

    async def iterate(self, steps: Sequence[Step], parent_span: Span | None = None) -> AsyncIterator[StepResult]:
        """Execute `steps` in order, yielding each result once its top-level step completes."""
        attrs = {"agent.name": self.agent_name or "anonymous", "agent.steps": len(steps), "nested": self.nested}
        self.span = self.telemetry.start_span(SpanKind.AGENT, f"agent.{self.agent_name or 'run'}", attrs, parent_span)
        start = time.perf_counter()
        error: BaseException | None = None
        log.debug("run started", run_id=self.run_id, agent=self.agent_name, steps=len(steps), nested=self.nested)
        try:
            for index, step in enumerate(tuple(steps)):
                if not self._inherit_step_id:
                    self.step_id = index
                notify(self.observer, "on_step_start", index, step, self.nested)
                mark = len(self.trace)
                try:
                    await self.execute(step)
                except WorkflowError as e:
                    raise e.with_step(self.step_id)
                for result in self.trace[mark:]:
                    notify(self.observer, "on_step_end", index, result, self.nested)
                    yield result
        except GeneratorExit:
            raise
        except BaseException as e:
            error = e
            self.telemetry.record_metric("agent.errors", 1, {"agent_name": self.agent_name or "anonymous",
                                                             "error.code": getattr(e, "code", type(e).__name__)})
            raise
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            self.span.set_attribute("agent.results", len(self.trace))
            self.telemetry.end_span(self.span, error)
            self.telemetry.record_metric("agent.duration", elapsed, {"agent_name": self.agent_name or "anonymous"})
            log.debug("run finished", run_id=self.run_id, results=len(self.trace), duration_ms=round(elapsed, 2),
                      failed=error is not None)

    async def run(self, steps: Sequence[Step], parent_span: Span | None = None) -> list[StepResult]:
        return [r async for r in self.iterate(steps, parent_span)]

    def child(self, config: RunConfig, *, history: list[StepResult] | None = None, injected: str = "",
              nested: bool = True) -> Interpreter:
        """Interpreter for a composed/delegated/parallel run sharing this run's services."""
        return Interpreter(
            config=config, runtime=self.runtime, telemetry=self.telemetry, settings=self.settings,
            observer=self.observer, nested=nested, step_id=self.step_id, history=list(history or []),
            injected=injected, span=self.span, run_id=self.run_id, _inherit_step_id=True,
        )

    async def run_workflow(self, workflow: Workflow, *, injected: str = "", parent_span: Span | None = None,
                           default_steps: Sequence[Step] = ()) -> list[StepResult]:
        """Run a prebuilt workflow nested under this one, with its own config and numbering."""
        config = RunConfig.resolve(workflow.config, self.settings, parent=self.config)
        child = self.child(config, injected=injected)
        return await child.run(workflow.steps or tuple(default_steps), parent_span or self.span)

    # ─────────────────────────────────────────────────────────────────
    # Step dispatch
    # ─────────────────────────────────────────────────────────────────

    async def execute(self, step: Step) -> list[StepResult]:
        """Execute one step, recording its results in the trace. Returns those results."""
        match step:
            case Generate() | InvokeTool() | AutoSelect() | Delegate():
                return [self.record(await self.execute_leaf(step))]
            case ResetHistory():
                self.history.clear()
                return []
            case Deferred(factory=factory):
                return await self.execute(factory(list(self.trace)))
            case Branch() | Switch() | While() | ForEach() | RetryUntil() | Parallel() | Compose():
                _run_hook(step.pre, "pre")
                produced = await self._combinator(step)
                _run_hook(step.post, "post", produced)
                return produced
            case _:
                assert_never(step)

    async def _combinator(self, step: Combinator) -> list[StepResult]:
        match step:
            case Branch(condition=condition, if_true=if_true, if_false=if_false):
                return await self.inline(if_true if condition(list(self.trace)) else if_false)
            case Switch(selector=selector, cases=cases, default=default):
                key = str(selector(list(self.trace)))
                body = cases.get(key, default)
                if body is None:
                    raise ConfigurationError(f"switch: no case for {key!r} and no default")
                return await self.inline(body)
            case While():
                return await self._while(step)
            case ForEach(items=items, body=body):
                produced: list[StepResult] = []
                for item in items:
                    produced += await self.inline(lambda w, item=item: body(item, w))
                return produced
            case RetryUntil():
                return await self._retry_until(step)
            case Parallel():
                return [self.record(await self._parallel(step))]
            case Compose(workflow=workflow, context=context):
                injected = render_injected("Context from parent workflow", context) if context else ""
                results = await self.run_workflow(workflow, injected=injected)
                for r in results:
                    self.record(r)
                return results
            case _:
                assert_never(step)

    def record(self, result: StepResult) -> StepResult:
        self.trace.record(result)
        self.history.append(result)
        return result

    async def inline(self, body: Body) -> list[StepResult]:
        produced: list[StepResult] = []
        for step in resolve_body(body):
            produced += await self.execute(step)
        return produced

    async def _while(self, step: While) -> list[StepResult]:
        produced: list[StepResult] = []
        start = time.monotonic()
        for iteration in range(step.max_iterations):
            if step.timeout is not None and time.monotonic() - start >= step.timeout:
                log.debug("while loop timed out", iterations=iteration, timeout=step.timeout)
                break
            if not step.condition(list(self.trace)):
                break
            produced += await self.inline(step.body)
        return produced

    async def _retry_until(self, step: RetryUntil) -> list[StepResult]:
        policy = step.retry
        produced: list[StepResult] = []
        for attempt in range(policy.attempts):
            results = await self.inline(step.body)
            produced += results
            if results and step.success(results[-1]):
                return produced
            if attempt + 1 < policy.attempts and (wait := policy.get_delay(attempt)) > 0:
                log.debug("retry_until condition not met", attempt=attempt + 1, wait=wait)
                await asyncio.sleep(wait)
        raise RetryExhaustedError(
            f"retry_until: success condition not met after {policy.attempts} attempts",
            attempts=policy.attempts, step_id=self.step_id,
        )

    async def _parallel(self, step: Parallel) -> StepResult:
        snapshot = list(self.history)
        injected, self.injected = self.injected, ""
        children: list[LeafStep] = list(step.steps.values()) if isinstance(step.steps, Mapping) else list(step.steps)

        async def one(child: LeafStep) -> StepResult:
            return await self.child(self.config, history=snapshot, injected=injected).execute_leaf(child)

        start = time.perf_counter()
        results = await asyncio.gather(*(one(c) for c in children))
        elapsed = (time.perf_counter() - start) * 1000
        merged = StepResult(duration_ms=elapsed, llm_ms=sum(r.llm_ms for r in results),
                            tool_ms=sum(r.tool_ms for r in results))
        if isinstance(step.steps, Mapping):
            merged.parallel = dict(zip(step.steps.keys(), results, strict=True))
        else:
            merged.parallel_results = list(results)
        return merged

    # ─────────────────────────────────────────────────────────────────
    # Leaf steps
    # ─────────────────────────────────────────────────────────────────

    async def execute_leaf(self, step: LeafStep) -> StepResult:
        from .coordinator import run_coordinator
        from .toolloop import run_tool_loop

        cfg = LeafConfig.of(step, self.config)
        _run_hook(step.pre, "pre")
        label = step_label(step)
        span = self.telemetry.start_span(SpanKind.STEP, label, {"step.type": type(step).__name__,
                                                                 "step.index": self.step_id}, self.span)
        log.debug("step started", run_id=self.run_id, step=self.step_id, label=label)
        start = time.perf_counter()
        try:
            match step:
                case Generate():
                    result = await self._generate(step, cfg, span)
                case InvokeTool():
                    result = await self._invoke_tool(step, cfg, span)
                case AutoSelect():
                    result = await run_tool_loop(self, step, cfg, span)
                case Delegate():
                    result = await run_coordinator(self, step, cfg, span)
                case _:
                    assert_never(step)
        except BaseException as e:
            if isinstance(e, WorkflowError):
                e.with_step(self.step_id)
            self.telemetry.end_span(span, e)
            self.telemetry.record_metric("step.errors", 1, {"step.type": type(step).__name__,
                                                            "error.code": getattr(e, "code", type(e).__name__)})
            raise
        result.duration_ms = (time.perf_counter() - start) * 1000
        span.set_attribute("step.llm_ms", result.llm_ms)
        span.set_attribute("step.tool_ms", result.tool_ms)
        self.telemetry.end_span(span)
        self.telemetry.record_metric("step.duration", result.duration_ms, {"step.type": type(step).__name__})
        log.debug("step finished", run_id=self.run_id, step=self.step_id, duration_ms=round(result.duration_ms, 2))
        _run_hook(step.post, "post", result)
        return result

    def prompt_for(self, prompt: str, cfg: LeafConfig) -> str:
        """Full prompt: instructions, the step prompt, injected context (once), history context."""
        injected, self.injected = self.injected, ""
        context = build_history_context(self.history, max_tool_results=cfg.context_max_tool_results,
                                        max_chars=cfg.context_max_chars)
        return compose_prompt(prompt, instructions=cfg.instructions, context=context, injected=injected)

    async def _generate(self, step: Generate, cfg: LeafConfig, span: Span) -> StepResult:
        llm = cfg.require_llm()
        prompt = self.prompt_for(step.prompt, cfg)
        if wants_tokens(self.observer) and supports_streaming(llm):
            output, ms = await self.call_llm(cfg, lambda: self._stream(llm, prompt), parent=span, op="stream")
        else:
            output, ms = await self.call_llm(cfg, lambda: llm.generate(prompt), parent=span, op="generate")
        return StepResult(prompt=step.prompt, llm_output=output, llm_ms=ms)

    async def _stream(self, llm: Any, prompt: str) -> str:
        parts: list[str] = []
        async for token in llm.stream_tokens(prompt):
            parts.append(token)
            notify(self.observer, "on_token", token)
        return "".join(parts)

    async def _invoke_tool(self, step: InvokeTool, cfg: LeafConfig, span: Span) -> StepResult:
        result = StepResult(prompt=step.prompt)
        if step.prompt is not None:
            llm = cfg.require_llm()
            prompt = self.prompt_for(step.prompt, cfg)
            result.llm_output, result.llm_ms = await self.call_llm(cfg, lambda: llm.generate(prompt), parent=span,
                                                                   op="generate")
        record = await self.call_tool(step.handle, step.tool, step.args, cfg, parent=span)
        result.tool, result.tool_ms = record, record.duration_ms
        return result

    # ─────────────────────────────────────────────────────────────────
    # Guarded call paths
    # ─────────────────────────────────────────────────────────────────

    async def call_llm(self, cfg: LeafConfig, operation: Callable[[], Awaitable[T]], *, parent: Span | None,
                       op: str) -> tuple[T, float]:
        """One model call under timeout and retry. Returns (value, elapsed ms including retries)."""
        llm = cfg.require_llm()
        provider = provider_id(llm)
        model = getattr(llm, "model", None) or "unknown"
        attrs = {"provider": provider, "model": model, "agent_name": self.agent_name or "anonymous"}

        async def attempt() -> T:
            span = self.telemetry.start_span(SpanKind.LLM, f"llm.{op}", {**attrs, "llm.operation": op}, parent)
            try:
                value = await with_timeout(operation(), cfg.timeout, label="LLM call", step_id=self.step_id,
                                           provider=provider)
            except Exception as e:
                error = classify_exception(e, kind="llm", step_id=self.step_id, provider=provider)
                self.telemetry.end_span(span, error)
                self.telemetry.record_metric("llm.errors", 1, {**attrs, "error.code": str(error.code)})
                if error is e:
                    raise
                raise error from e
            self.telemetry.end_span(span)
            self.telemetry.record_metric("llm.calls", 1, attrs)
            usage = getattr(value, "usage", None) or getattr(llm, "last_usage", None)
            record_token_usage(self.telemetry, normalize_token_usage(usage),
                               provider=provider, model=model, agent_name=self.agent_name)
            return value

        start = time.perf_counter()
        value = await execute_with_retry(attempt, cfg.retry, label=f"LLM {provider}", step_id=self.step_id)
        return value, (time.perf_counter() - start) * 1000

    async def call_tool(self, handle: ServerHandle, tool: str, arguments: dict[str, Any], cfg: LeafConfig, *,
                        parent: Span | None, definition: ToolDefinition | None = None) -> ToolCallRecord:
        """One tool call under retry. Explicit calls are validated; resolved definitions were already checked."""
        attrs = {"provider": handle.provider, "tool": handle.qualify(tool), "agent_name": self.agent_name or "anonymous"}

        async def attempt() -> ToolCallRecord:
            span = self.telemetry.start_span(SpanKind.TOOL, f"tool.{tool}", dict(attrs), parent)
            try:
                if definition is not None:
                    record = await self.runtime.invoke_definition(definition, arguments, timeout=cfg.timeout)
                else:
                    record = await self.runtime.call(handle, tool, arguments, timeout=cfg.timeout)
            except Exception as e:
                error = classify_exception(e, kind="tool", step_id=self.step_id, provider=handle.provider)
                self.telemetry.end_span(span, error)
                self.telemetry.record_metric("mcp.errors", 1, {**attrs, "error.code": str(error.code)})
                if error is e:
                    raise
                raise error from e
            span.set_attribute("tool.duration_ms", record.duration_ms)
            self.telemetry.end_span(span)
            self.telemetry.record_metric("mcp.calls", 1, attrs)
            return record

        return await execute_with_retry(attempt, cfg.retry, label=f"Tool {handle.qualify(tool)}",
                                        step_id=self.step_id)


def resolve_body(body: Body) -> tuple[Step, ...]:
    """Steps of a combinator body: a prebuilt Workflow or a builder callable."""
    from .workflow import Workflow

    if isinstance(body, Workflow):
        return body.steps
    built = body(Workflow())
    if not isinstance(built, Workflow):
        raise ConfigurationError(f"combinator body must return a Workflow, got {type(built).__name__}")
    return built.steps


def _run_hook(hook: Callable[..., None] | None, kind: str, *args: Any) -> None:
    if hook is None:
        return
    try:
        hook(*args)
    except Exception as e:
        log.warning(f"{kind} hook failed", error=str(e))
