from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TriggerScope:
    """The handler run that is currently executing."""

    entity_type: str
    phase: str
    depth: int
    guard: str | None = None

    def as_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"entity_type": self.entity_type, "phase": self.phase, "depth": self.depth}
        if self.guard is not None:
            fields["guard"] = self.guard
        return fields


correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
trigger_scope_var: ContextVar[TriggerScope | None] = ContextVar("trigger_scope", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_trigger_scope() -> TriggerScope | None:
    return trigger_scope_var.get()


@contextmanager
def trigger_scope(scope: TriggerScope) -> Iterator[TriggerScope]:
    # nested handler runs shadow the outer scope until they return
    token = trigger_scope_var.set(scope)
    try:
        yield scope
    finally:
        trigger_scope_var.reset(token)


def get_log_context() -> dict[str, Any]:
    context: dict[str, Any] = {"correlation_id": get_correlation_id()}
    scope = get_trigger_scope()
    if scope is not None:
        context.update(scope.as_fields())
    return context
