"""Step declarations.

A workflow is a tuple of steps. Steps are frozen dataclasses forming a closed
union (`Step`), matched exhaustively by the interpreter.

Leaf steps talk to a model and/or tool servers and carry per-step overrides
(StepConfig). Combinators carry bodies: either a prebuilt Workflow or a
callable receiving an empty Workflow and returning one. Bodies run inline
under the enclosing workflow's configuration and context history.
Combinators accept keyword-only `pre`/`post` hooks: `pre` runs once before
the combinator starts, `post` once after it finishes with every result it
produced (a loop's hooks wrap the whole loop, not each iteration).

Example:
    >>> Generate("Summarize the report", instructions="Be brief", timeout=30)
    >>> InvokeTool(weather, "get_weather", {"city": "Paris"})
    >>> AutoSelect("Plan my day", (weather, calendar), max_iterations=3)
    >>> Branch(lambda rs: "yes" in rs[-1].text, if_true=lambda w: w.then(...), if_false=...)
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeAlias, Union

from volcano.foundation.errors import ConfigurationError
from volcano.runtime.retry import RetryPolicy

if TYPE_CHECKING:
    from volcano.llm import LLMAdapter
    from volcano.mcp import ServerHandle

    from .results import StepResult
    from .workflow import Workflow

JsonDict = dict[str, Any]
Predicate: TypeAlias = "Callable[[list[StepResult]], bool]"
Body: TypeAlias = "Workflow | Callable[[Workflow], Workflow]"

RETRY_UNTIL_DEFAULT = RetryPolicy(attempts=5, backoff=1.5)

PreHook: TypeAlias = "Callable[[], None]"
PostHook: TypeAlias = "Callable[[list[StepResult]], None]"


def _hook() -> Any:
    return field(default=None, compare=False, kw_only=True)


@dataclass(frozen=True, slots=True, kw_only=True)
class StepConfig:
    """Per-step overrides shared by leaf steps. None inherits the workflow value.

    `pre` runs before the step; `post` receives the finished result. Hook
    exceptions are logged and ignored.
    """

    llm: LLMAdapter | None = None
    instructions: str | None = None
    timeout: float | None = None
    retry: RetryPolicy | None = None
    context_max_chars: int | None = None
    context_max_tool_results: int | None = None
    pre: Callable[[], None] | None = field(default=None, compare=False)
    post: Callable[[StepResult], None] | None = field(default=None, compare=False)


# ─────────────────────────────────────────────────────────────────────────────
# Leaf steps
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Generate(StepConfig):
    """Ask the model; the reply is the step output."""

    prompt: str


@dataclass(frozen=True, slots=True)
class InvokeTool(StepConfig):
    """Call one tool with declared arguments.

    With a `prompt`, the model is asked first and the tool is called after.
    """

    handle: ServerHandle
    tool: str
    args: JsonDict = field(default_factory=dict)
    prompt: str | None = None


@dataclass(frozen=True, slots=True)
class AutoSelect(StepConfig):
    """Let the model pick and call tools from `handles` until it answers."""

    prompt: str
    handles: tuple[ServerHandle, ...]
    max_iterations: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.handles, tuple):
            object.__setattr__(self, "handles", tuple(self.handles))


@dataclass(frozen=True, slots=True)
class Delegate(StepConfig):
    """Coordinator model delegating sub-tasks to named child workflows."""

    prompt: str
    agents: tuple[Workflow, ...]
    max_iterations: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.agents, tuple):
            object.__setattr__(self, "agents", tuple(self.agents))


LeafStep: TypeAlias = Union[Generate, InvokeTool, AutoSelect, Delegate]

Step: TypeAlias = Union[Generate, InvokeTool, AutoSelect, Delegate]
LEAF_TYPES = (Generate, InvokeTool, AutoSelect, Delegate)


# ─────────────────────────────────────────────────────────────────────────────
# Combinators
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Branch:
    """Run `if_true` or `if_false` depending on the results so far."""

    condition: Predicate
    if_true: Body
    if_false: Body
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()


@dataclass(frozen=True, slots=True)
class Switch:
    """Run the case selected by `selector(results)`, else `default`.

    Case keys and the selected value are compared as strings, so a selector
    returning 1 picks case "1".
    """

    selector: Callable[[list[StepResult]], Hashable]
    cases: Mapping[str, Body]
    default: Body | None = None
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()

    def __post_init__(self) -> None:
        object.__setattr__(self, "cases", {str(k): v for k, v in self.cases.items()})


@dataclass(frozen=True, slots=True)
class While:
    """Repeat `body` while `condition` holds, at most `max_iterations` times.

    `condition` sees the enclosing results plus everything the loop produced.
    A `timeout` (seconds) stops further iterations once exceeded.
    """

    condition: Predicate
    body: Body
    max_iterations: int = 10
    timeout: float | None = None
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigurationError("while max_iterations must be >= 1")


@dataclass(frozen=True, slots=True)
class ForEach:
    """Run `body(item, workflow)` once per item, in order."""

    items: Sequence[Any]
    body: Callable[[Any, Workflow], Workflow]
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()


@dataclass(frozen=True, slots=True)
class RetryUntil:
    """Re-run `body` until `success(last_result)` holds.

    Failed attempts stay in the trace. Waits between attempts follow `retry`;
    RetryExhaustedError is raised after the last failed attempt.
    """

    body: Body
    success: Callable[[StepResult], bool]
    retry: RetryPolicy = RETRY_UNTIL_DEFAULT
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()


@dataclass(frozen=True, slots=True)
class Parallel:
    """Run leaf steps concurrently, each with a snapshot of the context.

    A sequence yields `parallel_results` in declared order; a mapping yields
    `parallel` keyed the same way.
    """

    steps: tuple[LeafStep, ...] | Mapping[str, LeafStep]
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()

    def __post_init__(self) -> None:
        if not isinstance(self.steps, Mapping):
            object.__setattr__(self, "steps", tuple(self.steps))
        children = tuple(self.steps.values()) if isinstance(self.steps, Mapping) else self.steps
        if not children:
            raise ConfigurationError("parallel needs at least one step")
        if bad := [type(s).__name__ for s in children if not isinstance(s, LEAF_TYPES)]:
            raise ConfigurationError(f"parallel accepts leaf steps only, got {', '.join(bad)}")

    @property
    def named(self) -> bool:
        return isinstance(self.steps, Mapping)


@dataclass(frozen=True, slots=True)
class Compose:
    """Run a prebuilt workflow with its own configuration and step numbering.

    `context` entries are injected into the composed workflow's first prompt.
    """

    workflow: Workflow
    context: Mapping[str, Any] | None = None
    pre: PreHook | None = _hook()
    post: PostHook | None = _hook()


@dataclass(frozen=True, slots=True)
class ResetHistory:
    """Clear the context history; the result trace is kept."""


@dataclass(frozen=True, slots=True)
class Deferred:
    """Build the step at run time from the results so far."""

    factory: Callable[[list[StepResult]], Step]


Combinator: TypeAlias = Union[Branch, Switch, While, ForEach, RetryUntil, Parallel, Compose]

Step: TypeAlias = Union[
    Generate, InvokeTool, AutoSelect, Delegate,
    Branch, Switch, While, ForEach, RetryUntil, Parallel, Compose, ResetHistory, Deferred,
]


def step_label(step: Step) -> str:
    """Short human description used in logs and span names."""
    match step:
        case Generate(prompt=p) | AutoSelect(prompt=p) | Delegate(prompt=p):
            return f"{type(step).__name__}: {_clip(p)}"
        case InvokeTool(handle=h, tool=t):
            return f"InvokeTool: {h.id}.{t}"
        case Compose(workflow=w):
            return f"Compose: {w.name or 'workflow'}"
        case _:
            return type(step).__name__


def _clip(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."
