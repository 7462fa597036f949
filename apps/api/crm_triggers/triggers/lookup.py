from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_triggers.triggers.errors import TriggerQueryError


logger = logging.getLogger("crm_triggers.triggers.lookup")

RelatedT = TypeVar("RelatedT")


def collect_keys(batch: Iterable[Any], key: str) -> set[Any]:
    return {value for value in (getattr(record, key, None) for record in batch) if value is not None}


def build_lookup_map(
    session: Session,
    batch: Iterable[Any],
    *,
    key: str,
    related: type[RelatedT],
    related_key: str,
    criteria: Sequence[ColumnElement[bool]] = (),
    order_by: Sequence[Any] = (),
    include_deleted: bool = False,
) -> dict[Any, RelatedT]:
    """Resolve at most one related row per distinct ``key`` value in ``batch``.

    One query is issued for ``related`` rows whose ``related_key`` is among the
    collected keys and which satisfy ``criteria``. Rows are read in
    ``order_by`` order and the first one per key wins, so the ordering is the
    tie-break between several matches. Keys with no match get no entry; an
    empty key set issues no query at all.
    """
    keys = collect_keys(batch, key)
    if not keys:
        return {}

    column = getattr(related, related_key)
    stmt = select(related).where(column.in_(keys), *criteria)
    if not include_deleted and hasattr(related, "deleted_at"):
        stmt = stmt.where(getattr(related, "deleted_at").is_(None))
    if order_by:
        stmt = stmt.order_by(*order_by)

    try:
        with session.no_autoflush:
            rows = session.scalars(stmt).all()
    except SQLAlchemyError as exc:
        logger.error(
            "trigger.lookup_failed",
            extra={"entity_type": getattr(related, "__tablename__", related.__name__), "error": str(exc)},
        )
        raise TriggerQueryError(getattr(related, "__tablename__", related.__name__), str(exc)) from exc

    resolved: dict[Any, RelatedT] = {}
    for row in rows:
        resolved.setdefault(getattr(row, related_key), row)
    return resolved
