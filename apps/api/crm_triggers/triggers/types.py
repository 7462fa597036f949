from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from sqlalchemy import inspect


class TriggerPhase(str, Enum):
    BEFORE_INSERT = "before_insert"
    AFTER_INSERT = "after_insert"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    AFTER_UNDELETE = "after_undelete"

    @property
    def requires_old(self) -> bool:
        return self in {
            TriggerPhase.BEFORE_UPDATE,
            TriggerPhase.AFTER_UPDATE,
            TriggerPhase.BEFORE_DELETE,
            TriggerPhase.AFTER_DELETE,
        }

    @property
    def requires_new(self) -> bool:
        return self in {
            TriggerPhase.BEFORE_INSERT,
            TriggerPhase.AFTER_INSERT,
            TriggerPhase.BEFORE_UPDATE,
            TriggerPhase.AFTER_UPDATE,
            TriggerPhase.AFTER_UNDELETE,
        }

    @property
    def is_before(self) -> bool:
        return self.value.startswith("before_")


class RecordSnapshot:
    """Read-only view of a record's column values at one point in time."""

    __slots__ = ("id", "_kind", "_values")

    def __init__(self, kind: str, values: Mapping[str, Any]) -> None:
        object.__setattr__(self, "_kind", kind)
        object.__setattr__(self, "id", values.get("id"))
        object.__setattr__(self, "_values", MappingProxyType(dict(values)))

    @classmethod
    def of(cls, kind: str, entity: Any) -> RecordSnapshot:
        mapper = inspect(entity).mapper
        return cls(kind, {column.key: getattr(entity, column.key) for column in mapper.column_attrs})

    @property
    def values(self) -> Mapping[str, Any]:
        return self._values

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __repr__(self) -> str:
        return f"RecordSnapshot({self._kind!r}, id={self.id!s})"


@dataclass(frozen=True)
class RecordChange:
    id: uuid.UUID
    values: dict[str, Any]


@dataclass
class RecordResult:
    id: uuid.UUID | None
    success: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class SaveResult:
    results: list[RecordResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[RecordResult]:
        return [item for item in self.results if item.success]

    @property
    def failed(self) -> list[RecordResult]:
        return [item for item in self.results if not item.success]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def succeeded_ids(self) -> list[uuid.UUID]:
        return [item.id for item in self.succeeded if item.id is not None]
