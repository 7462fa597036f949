from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, select

from crm_triggers.core.config import get_settings
from crm_triggers.crm.models import STAGE_TYPE_OPEN, CRMOpportunity, CRMPipelineStage
from crm_triggers.triggers.dispatcher import TriggerContext, TriggerDispatcher
from crm_triggers.triggers.lookup import build_lookup_map
from crm_triggers.triggers.types import RecordChange, TriggerPhase


logger = logging.getLogger("crm_triggers.crm.rules")

ACCOUNT_STATUS_CLOSED = "Closed"

dispatcher = TriggerDispatcher("account")


def _open_stage_ids() -> Select[tuple[uuid.UUID]]:
    return select(CRMPipelineStage.id).where(CRMPipelineStage.stage_type == STAGE_TYPE_OPEN)


def first_open_opportunity(ctx: TriggerContext, accounts: Iterable[Any]) -> dict[uuid.UUID, CRMOpportunity]:
    return build_lookup_map(
        ctx.session,
        accounts,
        key="id",
        related=CRMOpportunity,
        related_key="account_id",
        criteria=[CRMOpportunity.stage_id.in_(_open_stage_ids())],
        order_by=[CRMOpportunity.name.asc(), CRMOpportunity.id.asc()],
    )


def reject_with_open_opportunities(ctx: TriggerContext, accounts: list[Any], action: str) -> None:
    open_opportunities = first_open_opportunity(ctx, accounts)
    for account in accounts:
        opportunity = open_opportunities.get(account.id)
        if opportunity is not None:
            ctx.add_error(account, f"cannot {action} an account with open opportunity '{opportunity.name}'")


def propagate_owner_change(ctx: TriggerContext) -> list[RecordChange]:
    new_owner_by_account = {new.id: new.owner_email for _, new in ctx.changed("owner_email")}
    if not new_owner_by_account:
        return []

    opportunities = ctx.store.query(
        CRMOpportunity,
        CRMOpportunity.account_id.in_(list(new_owner_by_account)),
        CRMOpportunity.stage_id.in_(_open_stage_ids()),
        order_by=[CRMOpportunity.id.asc()],
    )
    changes = [
        RecordChange(id=opportunity.id, values={"owner_email": new_owner_by_account[opportunity.account_id]})
        for opportunity in opportunities
        if opportunity.owner_email != new_owner_by_account[opportunity.account_id]
    ]
    if not changes:
        return []

    result = ctx.store.save(CRMOpportunity, changes)
    if not result.ok:
        logger.warning(
            "account.owner_propagation_rejected",
            extra={
                "entity_type": "account",
                "error_count": len(result.failed),
                "record_ids": [str(item.id) for item in result.failed],
            },
        )
    return changes


@dispatcher.on(TriggerPhase.BEFORE_INSERT)
def before_insert(ctx: TriggerContext) -> None:
    settings = get_settings()
    for account in ctx.new or []:
        if account.status is None:
            account.status = settings.account_default_status
        if account.rating is None:
            account.rating = settings.account_default_rating


@dispatcher.on(TriggerPhase.BEFORE_UPDATE)
def before_update(ctx: TriggerContext) -> None:
    closing = [new for _, new in ctx.changed("status") if new.status == ACCOUNT_STATUS_CLOSED]
    reject_with_open_opportunities(ctx, closing, "close")


@dispatcher.on(TriggerPhase.AFTER_UPDATE, guarded=True)
def after_update(ctx: TriggerContext) -> None:
    propagate_owner_change(ctx)


@dispatcher.on(TriggerPhase.BEFORE_DELETE)
def before_delete(ctx: TriggerContext) -> None:
    reject_with_open_opportunities(ctx, list(ctx.old or []), "delete")
