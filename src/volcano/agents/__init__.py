"""Agent workflows: steps, combinators, the interpreter and multi-agent coordination.

Quick Start:
    >>> from volcano.agents import Workflow, AutoSelect, Delegate
    >>> researcher = Workflow(llm=llm, name="researcher", description="Finds facts").then(AutoSelect("...", (web,)))
    >>> writer = Workflow(llm=llm, name="writer", description="Writes prose")
    >>> results = await Workflow(llm=llm).then(Delegate("Write a report on Etna", (researcher, writer))).run()
"""

from .classifier import DEFAULT_POLICY, CallGroup, ClassifierPolicy, GroupMode, classify, default_id_key, is_parallel_safe
from .context import build_history_context, compose_prompt, render_injected, tool_results_block
from .coordinator import NO_AGENTS_MESSAGE, coordinator_prompt, parse_directive
from .interpreter import Interpreter, LeafConfig, RunConfig
from .observer import RecordingObserver, WorkflowObserver
from .results import DelegationRecord, StepResult, Trace, as_text, last_text
from .steps import (
    LEAF_TYPES,
    RETRY_UNTIL_DEFAULT,
    AutoSelect,
    Branch,
    Compose,
    Deferred,
    Delegate,
    ForEach,
    Generate,
    InvokeTool,
    LeafStep,
    Parallel,
    ResetHistory,
    RetryUntil,
    Step,
    StepConfig,
    Switch,
    While,
    step_label,
)
from .toolloop import NO_TOOLS_MESSAGE
from .workflow import Workflow, WorkflowConfig

__all__ = [
    # Builder
    "Workflow", "WorkflowConfig",
    # Steps
    "Step", "LeafStep", "StepConfig", "Generate", "InvokeTool", "AutoSelect", "Delegate",
    "Branch", "Switch", "While", "ForEach", "RetryUntil", "Parallel", "Compose", "ResetHistory", "Deferred",
    "LEAF_TYPES", "RETRY_UNTIL_DEFAULT", "step_label",
    # Results
    "StepResult", "DelegationRecord", "Trace", "last_text", "as_text",
    # Execution
    "Interpreter", "RunConfig", "LeafConfig", "WorkflowObserver", "RecordingObserver",
    # Context
    "build_history_context", "compose_prompt", "render_injected", "tool_results_block",
    # Tool concurrency
    "classify", "is_parallel_safe", "default_id_key", "ClassifierPolicy", "CallGroup", "GroupMode", "DEFAULT_POLICY",
    # Coordination
    "coordinator_prompt", "parse_directive", "NO_AGENTS_MESSAGE", "NO_TOOLS_MESSAGE",
]
