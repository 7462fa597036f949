from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import ColumnElement, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_triggers.crm.models import utcnow
from crm_triggers.triggers.dispatcher import TriggerContext, TriggerDispatcher, TriggerRegistry
from crm_triggers.triggers.errors import BatchSaveError, TriggerConfigurationError, TriggerQueryError
from crm_triggers.triggers.execution import execution_scope
from crm_triggers.triggers.types import RecordChange, RecordResult, RecordSnapshot, SaveResult, TriggerPhase


logger = logging.getLogger("crm_triggers.triggers.store")

NOT_FOUND = "record not found"
IMMUTABLE_FIELDS = frozenset({"id", "created_at", "deleted_at", "row_version"})


class EntityStore:
    """Bulk reads and trigger-firing writes over one SQLAlchemy session.

    Every write runs the before-phase of the record type's dispatcher,
    persists the records that passed, then runs the after-phase with
    snapshots of what was persisted. Writes made by handlers go through the
    same store and therefore fire triggers of their own within the same
    execution context. The store flushes but never commits or rolls back.
    """

    def __init__(self, session: Session, registry: TriggerRegistry | None = None, notifier: Any = None) -> None:
        if registry is None:
            from crm_triggers.crm.rules import get_registry

            registry = get_registry()
        if notifier is None:
            from crm_triggers.crm.notifications import get_notifier

            notifier = get_notifier()
        self.session = session
        self.registry = registry
        self.notifier = notifier

    def query(
        self,
        model: type[Any],
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        include_deleted: bool = False,
    ) -> list[Any]:
        stmt = select(model).where(*criteria)
        if not include_deleted and hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))
        if order_by:
            stmt = stmt.order_by(*order_by)
        try:
            with self.session.no_autoflush:
                return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise TriggerQueryError(getattr(model, "__tablename__", model.__name__), str(exc)) from exc

    def insert(self, model: type[Any], records: Sequence[Any], *, allow_partial: bool = True) -> SaveResult:
        dispatcher = self.registry.dispatcher_for(model)
        with execution_scope() as execution:
            for record in records:
                if record.id is None:
                    record.id = uuid.uuid4()
            batch = list(records)

            before = dispatcher.run(TriggerPhase.BEFORE_INSERT, new=batch, store=self, execution=execution)
            result, accepted = self._partition(batch, before)
            self._reject_if_required(result, allow_partial)
            if not accepted:
                return result

            self.session.add_all(accepted)
            self.session.flush()

            dispatcher.run(
                TriggerPhase.AFTER_INSERT,
                new=self._snapshots(dispatcher, accepted),
                store=self,
                execution=execution,
            )
            return result

    def update(
        self,
        model: type[Any],
        changes: Sequence[RecordChange],
        *,
        allow_partial: bool = True,
    ) -> SaveResult:
        dispatcher = self.registry.dispatcher_for(model)
        self._check_fields(model, changes)
        with execution_scope() as execution:
            rows, missing = self._load(model, [change.id for change in changes], deleted=False)
            old = [self._snapshot(dispatcher, row) for row in rows]
            changes_by_id = {change.id: change for change in changes}
            for row in rows:
                for field_name, value in changes_by_id[row.id].values.items():
                    setattr(row, field_name, value)

            try:
                before = dispatcher.run(TriggerPhase.BEFORE_UPDATE, old=old, new=rows, store=self, execution=execution)
            except BaseException:
                # rows are live in the session, so a later flush would persist these
                for snapshot, row in zip(old, rows):
                    self._restore(row, snapshot)
                raise
            result, accepted = self._partition(rows, before, missing)
            rejected_ids = {row.id for row in rows} if not (allow_partial or result.ok) else set(before.errors)
            for snapshot, row in zip(old, rows):
                if row.id in rejected_ids:
                    self._restore(row, snapshot)
            self._reject_if_required(result, allow_partial)
            if not accepted:
                return result

            accepted_ids = {row.id for row in accepted}
            for row in accepted:
                self._touch(row)
            self.session.flush()

            dispatcher.run(
                TriggerPhase.AFTER_UPDATE,
                old=[snapshot for snapshot in old if snapshot.id in accepted_ids],
                new=self._snapshots(dispatcher, accepted),
                store=self,
                execution=execution,
            )
            return result

    save = update

    def delete(self, model: type[Any], ids: Sequence[uuid.UUID], *, allow_partial: bool = True) -> SaveResult:
        dispatcher = self.registry.dispatcher_for(model)
        with execution_scope() as execution:
            rows, missing = self._load(model, ids, deleted=False)
            old = [self._snapshot(dispatcher, row) for row in rows]

            before = dispatcher.run(TriggerPhase.BEFORE_DELETE, old=old, store=self, execution=execution)
            result, accepted = self._partition(rows, before, missing)
            self._reject_if_required(result, allow_partial)
            if not accepted:
                return result

            accepted_ids = {row.id for row in accepted}
            for row in accepted:
                row.deleted_at = utcnow()
                self._touch(row)
            self.session.flush()

            dispatcher.run(
                TriggerPhase.AFTER_DELETE,
                old=[snapshot for snapshot in old if snapshot.id in accepted_ids],
                store=self,
                execution=execution,
            )
            return result

    def undelete(self, model: type[Any], ids: Sequence[uuid.UUID], *, allow_partial: bool = True) -> SaveResult:
        dispatcher = self.registry.dispatcher_for(model)
        with execution_scope() as execution:
            rows, missing = self._load(model, ids, deleted=True)
            result = SaveResult(
                [RecordResult(id=row.id, success=True) for row in rows]
                + [RecordResult(id=record_id, success=False, errors=[NOT_FOUND]) for record_id in missing]
            )
            self._reject_if_required(result, allow_partial)
            if not rows:
                return result

            for row in rows:
                row.deleted_at = None
                self._touch(row)
            self.session.flush()

            dispatcher.run(
                TriggerPhase.AFTER_UNDELETE,
                new=self._snapshots(dispatcher, rows),
                store=self,
                execution=execution,
            )
            return result

    def _check_fields(self, model: type[Any], changes: Sequence[RecordChange]) -> None:
        columns = {column.key for column in inspect(model).column_attrs}
        for change in changes:
            unknown = sorted(set(change.values) - (columns - IMMUTABLE_FIELDS))
            if unknown:
                raise TriggerConfigurationError(
                    f"{model.__name__} changes may not set: {', '.join(unknown)}"
                )

    def _load(self, model: type[Any], ids: Sequence[uuid.UUID], *, deleted: bool) -> tuple[list[Any], list[uuid.UUID]]:
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return [], []
        criteria = [model.id.in_(wanted)]
        if hasattr(model, "deleted_at"):
            criteria.append(model.deleted_at.is_not(None) if deleted else model.deleted_at.is_(None))
        found = {row.id: row for row in self.query(model, *criteria, include_deleted=True)}
        rows = [found[record_id] for record_id in wanted if record_id in found]
        missing = [record_id for record_id in wanted if record_id not in found]
        return rows, missing

    def _partition(
        self,
        batch: list[Any],
        context: TriggerContext,
        missing: Sequence[uuid.UUID] = (),
    ) -> tuple[SaveResult, list[Any]]:
        messages: dict[uuid.UUID, list[str]] = {}
        for error in context.validation_errors():
            messages.setdefault(error.record_id, []).append(error.message)

        results: list[RecordResult] = []
        accepted: list[Any] = []
        for record in batch:
            errors = messages.get(record.id, [])
            results.append(RecordResult(id=record.id, success=not errors, errors=errors))
            if not errors:
                accepted.append(record)
        for record_id in missing:
            results.append(RecordResult(id=record_id, success=False, errors=[NOT_FOUND]))
        return SaveResult(results), accepted

    def _reject_if_required(self, result: SaveResult, allow_partial: bool) -> None:
        if allow_partial or result.ok:
            return
        logger.info(
            "trigger.batch_rejected",
            extra={
                "batch_size": len(result.results),
                "error_count": len(result.failed),
                "record_ids": [str(item.id) for item in result.failed],
            },
        )
        raise BatchSaveError(result)

    def _snapshot(self, dispatcher: TriggerDispatcher, row: Any) -> RecordSnapshot:
        return RecordSnapshot.of(dispatcher.entity_type, row)

    def _snapshots(self, dispatcher: TriggerDispatcher, rows: Sequence[Any]) -> list[RecordSnapshot]:
        return [self._snapshot(dispatcher, row) for row in rows]

    def _restore(self, row: Any, snapshot: RecordSnapshot) -> None:
        for field_name, value in snapshot.values.items():
            if getattr(row, field_name) != value:
                setattr(row, field_name, value)

    def _touch(self, row: Any) -> None:
        if hasattr(row, "updated_at"):
            row.updated_at = utcnow()
        if hasattr(row, "row_version"):
            row.row_version = int(row.row_version or 0) + 1
