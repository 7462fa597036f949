from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from crm_triggers.core.config import get_settings
from crm_triggers.triggers.errors import TriggerRecursionError


class ExecutionContext:
    """State shared by one root record operation and everything it triggers.

    Guards are names of handlers currently running; a handler whose name is
    already active is skipped instead of re-entered. Nothing here outlives the
    root operation.
    """

    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        self.depth = 0
        self._active_guards: set[str] = set()

    def is_guarded(self, name: str) -> bool:
        return name in self._active_guards

    @property
    def active_guards(self) -> frozenset[str]:
        return frozenset(self._active_guards)

    @contextmanager
    def guard(self, name: str) -> Iterator[bool]:
        if name in self._active_guards:
            yield False
            return

        self._active_guards.add(name)
        try:
            yield True
        finally:
            self._active_guards.discard(name)

    @contextmanager
    def nested(self) -> Iterator[ExecutionContext]:
        if self.depth >= self.max_depth:
            raise TriggerRecursionError(self.depth + 1, self.max_depth)
        self.depth += 1
        try:
            yield self
        finally:
            self.depth -= 1


_execution_var: ContextVar[ExecutionContext | None] = ContextVar("trigger_execution", default=None)


def current_execution() -> ExecutionContext | None:
    return _execution_var.get()


@contextmanager
def execution_scope() -> Iterator[ExecutionContext]:
    """Enter the active execution context, creating a root one if needed."""
    existing = _execution_var.get()
    if existing is not None:
        with existing.nested() as execution:
            yield execution
        return

    execution = ExecutionContext(max_depth=get_settings().trigger_max_depth)
    token = _execution_var.set(execution)
    try:
        with execution.nested():
            yield execution
    finally:
        _execution_var.reset(token)
