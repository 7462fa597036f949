from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crm_triggers.triggers.types import SaveResult


class TriggerError(Exception):
    """Base error for trigger dispatch and record persistence failures."""


class TriggerConfigurationError(TriggerError):
    """Raised before any handler runs when a trigger call is malformed."""


class TriggerRecursionError(TriggerError):
    """Raised when nested record operations exceed the configured depth."""

    def __init__(self, depth: int, max_depth: int) -> None:
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"Trigger depth {depth} exceeds the configured maximum of {max_depth}")


class RecordValidationError(TriggerError):
    """A validation failure attached to one record; siblings are unaffected."""

    def __init__(self, record_id: uuid.UUID | None, message: str) -> None:
        self.record_id = record_id
        self.message = message
        super().__init__(message)


class BatchSaveError(TriggerError):
    """Raised by all-or-none saves when at least one record was rejected."""

    def __init__(self, result: SaveResult) -> None:
        self.result = result
        failed = len(result.failed)
        super().__init__(f"{failed} of {len(result.results)} records failed validation; nothing was saved")


class TriggerQueryError(TriggerError):
    """A lookup or query failure; aborts the running handler."""

    def __init__(self, entity_type: str, message: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Lookup on '{entity_type}' failed: {message}")


class BestEffortError(TriggerError):
    """A side-effect failure that callers catch and log instead of propagating."""
