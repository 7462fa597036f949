from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_triggers.context import get_correlation_id
from crm_triggers.core.database import get_db
from crm_triggers.crm.models import CRMAccount, CRMContact, CRMOpportunity
from crm_triggers.crm.schemas import (
    AccountChange,
    AccountCreate,
    ContactChange,
    ContactCreate,
    OpportunityChange,
    OpportunityCreate,
    RecordIds,
    SaveResultRead,
)
from crm_triggers.triggers.errors import (
    BatchSaveError,
    TriggerConfigurationError,
    TriggerError,
    TriggerQueryError,
    TriggerRecursionError,
)
from crm_triggers.triggers.store import EntityStore
from crm_triggers.triggers.types import RecordChange, SaveResult


logger = logging.getLogger("crm_triggers.crm.api")

accounts_router = APIRouter(prefix="/api/crm/accounts", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/crm/contacts", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/api/crm/opportunities", tags=["crm.opportunities"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("x-correlation-id")
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _write(
    request: Request,
    db: Session,
    code: str,
    operation: Callable[[EntityStore], SaveResult],
) -> SaveResultRead | JSONResponse:
    """Run one store operation in its own transaction and map trigger errors to the envelope."""
    try:
        result = operation(EntityStore(db))
        db.commit()
    except BatchSaveError as exc:
        db.rollback()
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code=f"{code}_rejected",
            message=str(exc),
            details=SaveResultRead.from_result(exc.result).model_dump(mode="json"),
        )
    except TriggerConfigurationError as exc:
        db.rollback()
        return error_response(request, status_code=status.HTTP_400_BAD_REQUEST, code=f"{code}_invalid", message=str(exc))
    except TriggerRecursionError as exc:
        db.rollback()
        logger.error("trigger.recursion_limit", extra={"depth": exc.depth, "error": str(exc)})
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=f"{code}_recursion_limit",
            message=str(exc),
            details={"depth": exc.depth, "max_depth": exc.max_depth},
        )
    except TriggerQueryError as exc:
        db.rollback()
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=f"{code}_lookup_failed",
            message=str(exc),
            details={"entity_type": exc.entity_type},
        )
    except TriggerError as exc:
        db.rollback()
        return error_response(request, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, code=f"{code}_failed", message=str(exc))
    return SaveResultRead.from_result(result)


def _changes(items: list[Any]) -> list[RecordChange]:
    return [RecordChange(id=item.id, values=item.values.model_dump(exclude_unset=True)) for item in items]


@accounts_router.post("", response_model=SaveResultRead)
def insert_accounts(
    request: Request,
    dtos: list[AccountCreate],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    records = [CRMAccount(**dto.model_dump()) for dto in dtos]
    return _write(request, db, "crm_account_insert", lambda store: store.insert(CRMAccount, records, allow_partial=allow_partial))


@accounts_router.patch("", response_model=SaveResultRead)
def update_accounts(
    request: Request,
    items: list[AccountChange],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    changes = _changes(items)
    return _write(request, db, "crm_account_update", lambda store: store.update(CRMAccount, changes, allow_partial=allow_partial))


@accounts_router.post("/delete", response_model=SaveResultRead)
def delete_accounts(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(request, db, "crm_account_delete", lambda store: store.delete(CRMAccount, dto.ids, allow_partial=allow_partial))


@accounts_router.post("/undelete", response_model=SaveResultRead)
def undelete_accounts(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(request, db, "crm_account_undelete", lambda store: store.undelete(CRMAccount, dto.ids, allow_partial=allow_partial))


@contacts_router.post("", response_model=SaveResultRead)
def insert_contacts(
    request: Request,
    dtos: list[ContactCreate],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    records = [CRMContact(**dto.model_dump()) for dto in dtos]
    return _write(request, db, "crm_contact_insert", lambda store: store.insert(CRMContact, records, allow_partial=allow_partial))


@contacts_router.patch("", response_model=SaveResultRead)
def update_contacts(
    request: Request,
    items: list[ContactChange],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    changes = _changes(items)
    return _write(request, db, "crm_contact_update", lambda store: store.update(CRMContact, changes, allow_partial=allow_partial))


@contacts_router.post("/delete", response_model=SaveResultRead)
def delete_contacts(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(request, db, "crm_contact_delete", lambda store: store.delete(CRMContact, dto.ids, allow_partial=allow_partial))


@contacts_router.post("/undelete", response_model=SaveResultRead)
def undelete_contacts(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(request, db, "crm_contact_undelete", lambda store: store.undelete(CRMContact, dto.ids, allow_partial=allow_partial))


@opportunities_router.post("", response_model=SaveResultRead)
def insert_opportunities(
    request: Request,
    dtos: list[OpportunityCreate],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    records = [CRMOpportunity(**dto.model_dump()) for dto in dtos]
    return _write(
        request,
        db,
        "crm_opportunity_insert",
        lambda store: store.insert(CRMOpportunity, records, allow_partial=allow_partial),
    )


@opportunities_router.patch("", response_model=SaveResultRead)
def update_opportunities(
    request: Request,
    items: list[OpportunityChange],
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    changes = _changes(items)
    return _write(
        request,
        db,
        "crm_opportunity_update",
        lambda store: store.update(CRMOpportunity, changes, allow_partial=allow_partial),
    )


@opportunities_router.post("/delete", response_model=SaveResultRead)
def delete_opportunities(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(
        request,
        db,
        "crm_opportunity_delete",
        lambda store: store.delete(CRMOpportunity, dto.ids, allow_partial=allow_partial),
    )


@opportunities_router.post("/undelete", response_model=SaveResultRead)
def undelete_opportunities(
    request: Request,
    dto: RecordIds,
    allow_partial: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> SaveResultRead | JSONResponse:
    return _write(
        request,
        db,
        "crm_opportunity_undelete",
        lambda store: store.undelete(CRMOpportunity, dto.ids, allow_partial=allow_partial),
    )
