"""Concurrency-safety classifier for tool calls requested in one model turn.

Consecutive calls to the same tool form a candidate run. A run may execute in
parallel only when:

- it has more than one call
- no two calls carry identical arguments
- every call carries an identifier-like argument (`id`, `userId`, `order_id`...)
- those identifier values are present, non-empty and pairwise distinct

Everything else executes sequentially, in request order; adjacent sequential
runs merge into one group. Distinct identifiers are taken as evidence the
calls touch different resources.

Example:
    >>> calls = [ToolCallRequest("s.get_user", {"userId": "a"}), ToolCallRequest("s.get_user", {"userId": "b"})]
    >>> [g.mode for g in classify(calls)]
    ['parallel']
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from itertools import groupby
from typing import Any, Generic, Protocol, TypeVar

import orjson


class _Call(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def arguments(self) -> dict[str, Any]: ...


C = TypeVar("C", bound=_Call)

IdKeyMatcher = Callable[[str], bool]


class GroupMode(StrEnum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True, slots=True)
class CallGroup(Generic[C]):
    """Calls executed together: concurrently or one after another."""

    mode: GroupMode
    calls: tuple[C, ...]

    @property
    def parallel(self) -> bool:
        return self.mode is GroupMode.PARALLEL


def default_id_key(key: str) -> bool:
    """A key naming an identifier: `id`, a `_id`/`-id` suffix, or a camelCase `Id`/`ID` suffix.

    Words that merely end in "id" (`paid`, `valid`, `uuid`) do not count.
    """
    lowered = key.lower()
    if lowered == "id" or lowered.endswith(("_id", "-id")):
        return True
    return len(key) > 2 and key[-2:] in ("Id", "ID") and key[-3].islower()


@dataclass(frozen=True, slots=True)
class ClassifierPolicy:
    """Configurable classification rule.

    Attributes:
        id_key: Predicate deciding which argument names identify a resource
        disable_parallel: Force a single sequential group
    """

    id_key: IdKeyMatcher = default_id_key
    disable_parallel: bool = False


DEFAULT_POLICY = ClassifierPolicy()


def classify(calls: Sequence[C], policy: ClassifierPolicy = DEFAULT_POLICY) -> list[CallGroup[C]]:
    """Partition calls into ordered PARALLEL/SEQUENTIAL groups."""
    if not calls:
        return []
    if policy.disable_parallel:
        return [CallGroup(GroupMode.SEQUENTIAL, tuple(calls))]

    groups: list[CallGroup[C]] = []
    pending: list[C] = []
    for _, run in groupby(calls, key=lambda c: c.name):
        batch = list(run)
        if is_parallel_safe(batch, policy.id_key):
            if pending:
                groups.append(CallGroup(GroupMode.SEQUENTIAL, tuple(pending)))
                pending = []
            groups.append(CallGroup(GroupMode.PARALLEL, tuple(batch)))
        else:
            pending += batch
    if pending:
        groups.append(CallGroup(GroupMode.SEQUENTIAL, tuple(pending)))
    return groups


def is_parallel_safe(run: Sequence[_Call], id_key: IdKeyMatcher = default_id_key) -> bool:
    """Whether a run of same-tool calls may execute concurrently."""
    if len(run) < 2:
        return False
    if len({_fingerprint(c.arguments) for c in run}) != len(run):
        return False

    identities: list[tuple[tuple[str, Any], ...]] = []
    for call in run:
        ids = tuple(sorted((k, v) for k, v in call.arguments.items() if id_key(k)))
        if not ids or any(v is None or v == "" for _, v in ids):
            return False
        identities.append(tuple((k, _fingerprint(v)) for k, v in ids))
    return len(set(identities)) == len(identities)


def _fingerprint(value: Any) -> bytes:
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS, default=str)
