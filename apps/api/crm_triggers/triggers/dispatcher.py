from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from crm_triggers.context import TriggerScope, trigger_scope
from crm_triggers.metrics import observe_trigger_guard_skip, observe_trigger_run, observe_trigger_validation_errors
from crm_triggers.otel import trigger_span
from crm_triggers.triggers.errors import RecordValidationError, TriggerConfigurationError
from crm_triggers.triggers.execution import ExecutionContext, execution_scope
from crm_triggers.triggers.types import TriggerPhase

if TYPE_CHECKING:
    from crm_triggers.crm.notifications import Notifier
    from crm_triggers.triggers.store import EntityStore


logger = logging.getLogger("crm_triggers.triggers")


@dataclass
class TriggerContext:
    """One phase of one lifecycle event, bound to its old and new batches.

    ``new`` holds live ORM instances in before-phases (handlers may assign
    fields on them) and read-only snapshots in after-phases. ``old`` always
    holds snapshots.
    """

    entity_type: str
    phase: TriggerPhase
    old: list[Any] | None
    new: list[Any] | None
    execution: ExecutionContext
    store: EntityStore | None = None
    errors: dict[uuid.UUID, list[str]] = field(default_factory=dict)

    @property
    def records(self) -> list[Any]:
        if self.new is not None:
            return self.new
        return self.old or []

    @property
    def session(self) -> Session:
        if self.store is None:
            raise TriggerConfigurationError(f"{self.entity_type}.{self.phase.value} has no entity store bound")
        return self.store.session

    @property
    def notifier(self) -> Notifier:
        if self.store is None:
            raise TriggerConfigurationError(f"{self.entity_type}.{self.phase.value} has no entity store bound")
        return self.store.notifier

    def add_error(self, record: Any, message: str) -> None:
        if not self.phase.is_before:
            raise TriggerConfigurationError(
                f"validation errors can only be attached in before-phases, not {self.phase.value}"
            )
        self.errors.setdefault(record.id, []).append(message)

    def has_error(self, record: Any) -> bool:
        return bool(self.errors.get(record.id))

    def validation_errors(self) -> list[RecordValidationError]:
        return [
            RecordValidationError(record_id, message)
            for record_id, messages in self.errors.items()
            for message in messages
        ]

    def old_by_id(self) -> dict[uuid.UUID, Any]:
        return {record.id: record for record in self.old or []}

    def pairs(self) -> list[tuple[Any, Any]]:
        old_map = self.old_by_id()
        return [(old_map[record.id], record) for record in self.new or [] if record.id in old_map]

    def changed(self, field_name: str) -> list[tuple[Any, Any]]:
        return [(old, new) for old, new in self.pairs() if getattr(old, field_name) != getattr(new, field_name)]


TriggerHandler = Callable[[TriggerContext], None]


@dataclass(frozen=True)
class RegisteredHandler:
    handler: TriggerHandler
    guarded: bool = False


class TriggerDispatcher:
    """Routes a lifecycle phase of one entity type to at most one handler.

    Phases without a handler are no-ops. A guarded handler is skipped while a
    run of the same handler is already in progress in the execution context,
    which stops a handler whose own saves re-trigger it from applying its
    effects twice.
    """

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        self._handlers: dict[TriggerPhase, RegisteredHandler] = {}

    def register(self, phase: TriggerPhase, handler: TriggerHandler, *, guarded: bool = False) -> None:
        if phase in self._handlers:
            raise TriggerConfigurationError(f"{self.entity_type}.{phase.value} already has a handler")
        self._handlers[phase] = RegisteredHandler(handler=handler, guarded=guarded)

    def on(self, phase: TriggerPhase, *, guarded: bool = False) -> Callable[[TriggerHandler], TriggerHandler]:
        def decorator(handler: TriggerHandler) -> TriggerHandler:
            self.register(phase, handler, guarded=guarded)
            return handler

        return decorator

    def handler_for(self, phase: TriggerPhase) -> TriggerHandler | None:
        registered = self._handlers.get(phase)
        return registered.handler if registered is not None else None

    def guard_name(self, phase: TriggerPhase) -> str:
        return f"{self.entity_type}.{phase.value}"

    def run(
        self,
        phase: TriggerPhase,
        *,
        old: list[Any] | None = None,
        new: list[Any] | None = None,
        store: EntityStore | None = None,
        execution: ExecutionContext | None = None,
    ) -> TriggerContext:
        self._validate_batches(phase, old, new)
        if execution is None:
            with execution_scope() as scoped:
                return self._dispatch(phase, old, new, store, scoped)
        return self._dispatch(phase, old, new, store, execution)

    def _validate_batches(self, phase: TriggerPhase, old: list[Any] | None, new: list[Any] | None) -> None:
        if phase.requires_old and old is None:
            raise TriggerConfigurationError(f"{self.entity_type}.{phase.value} requires the old batch")
        if phase.requires_new and new is None:
            raise TriggerConfigurationError(f"{self.entity_type}.{phase.value} requires the new batch")
        if not phase.requires_old and old is not None:
            raise TriggerConfigurationError(f"{self.entity_type}.{phase.value} does not accept an old batch")
        if not phase.requires_new and new is not None:
            raise TriggerConfigurationError(f"{self.entity_type}.{phase.value} does not accept a new batch")

        if old is not None and new is not None:
            if len(old) != len(new):
                raise TriggerConfigurationError(
                    f"{self.entity_type}.{phase.value} old and new batches differ in size ({len(old)} != {len(new)})"
                )
            for old_record, new_record in zip(old, new):
                if old_record.id != new_record.id:
                    raise TriggerConfigurationError(
                        f"{self.entity_type}.{phase.value} batches are not aligned: {old_record.id} != {new_record.id}"
                    )

    def _dispatch(
        self,
        phase: TriggerPhase,
        old: list[Any] | None,
        new: list[Any] | None,
        store: EntityStore | None,
        execution: ExecutionContext,
    ) -> TriggerContext:
        context = TriggerContext(
            entity_type=self.entity_type,
            phase=phase,
            old=old,
            new=new,
            execution=execution,
            store=store,
        )
        registered = self._handlers.get(phase)
        if registered is None:
            return context

        if not registered.guarded:
            self._invoke(registered.handler, context)
            return context

        guard = self.guard_name(phase)
        with execution.guard(guard) as acquired:
            if not acquired:
                observe_trigger_guard_skip(guard)
                logger.debug(
                    "trigger.skipped_reentrant",
                    extra={"entity_type": self.entity_type, "phase": phase.value, "guard": guard},
                )
                return context
            self._invoke(registered.handler, context, guard)
        return context

    def _invoke(self, handler: TriggerHandler, context: TriggerContext, guard: str | None = None) -> None:
        phase = context.phase.value
        batch_size = len(context.records)
        scope = TriggerScope(self.entity_type, phase, context.execution.depth, guard)
        started = time.perf_counter()
        with trigger_scope(scope), trigger_span(scope, batch_size=batch_size) as span:
            try:
                handler(context)
            except Exception as exc:
                logger.error(
                    "trigger.failed",
                    extra={
                        "entity_type": self.entity_type,
                        "phase": phase,
                        "batch_size": batch_size,
                        "error": str(exc),
                    },
                )
                raise
            finally:
                observe_trigger_run(self.entity_type, phase, time.perf_counter() - started)

            error_count = sum(len(messages) for messages in context.errors.values())
            span.set_attribute("error_count", error_count)
            observe_trigger_validation_errors(self.entity_type, phase, error_count)
            logger.info(
                "trigger.completed",
                extra={
                    "entity_type": self.entity_type,
                    "phase": phase,
                    "batch_size": batch_size,
                    "depth": context.execution.depth,
                    "error_count": error_count,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )


class TriggerRegistry:
    """Maps ORM model classes to the dispatcher for their entity type."""

    def __init__(self) -> None:
        self._dispatchers: dict[type, TriggerDispatcher] = {}

    def add(self, model: type, dispatcher: TriggerDispatcher) -> None:
        if model in self._dispatchers:
            raise TriggerConfigurationError(f"{model.__name__} already has a dispatcher")
        self._dispatchers[model] = dispatcher

    def dispatcher_for(self, model: type) -> TriggerDispatcher:
        dispatcher = self._dispatchers.get(model)
        if dispatcher is None:
            return TriggerDispatcher(getattr(model, "__tablename__", model.__name__))
        return dispatcher

    def __contains__(self, model: type) -> bool:
        return model in self._dispatchers
