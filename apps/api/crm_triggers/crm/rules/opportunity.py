from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import timedelta
from decimal import Decimal
from typing import Any

from crm_triggers.core.config import get_settings
from crm_triggers.crm.models import (
    STAGE_TYPE_CLOSED_LOST,
    STAGE_TYPE_CLOSED_WON,
    CRMActivity,
    CRMContact,
    CRMOpportunity,
    CRMPipelineStage,
    utcnow,
)
from crm_triggers.crm.notifications import Notification, notify_best_effort
from crm_triggers.triggers.dispatcher import TriggerContext, TriggerDispatcher
from crm_triggers.triggers.lookup import build_lookup_map
from crm_triggers.triggers.types import RecordChange, TriggerPhase


logger = logging.getLogger("crm_triggers.crm.rules")

dispatcher = TriggerDispatcher("opportunity")


def _amount(record: Any) -> Decimal:
    return Decimal(str(record.amount)) if record.amount is not None else Decimal("0")


def load_stages(ctx: TriggerContext, records: Iterable[Any]) -> dict[uuid.UUID, CRMPipelineStage]:
    return build_lookup_map(ctx.session, records, key="stage_id", related=CRMPipelineStage, related_key="id")


def apply_defaults(ctx: TriggerContext, stages: dict[uuid.UUID, CRMPipelineStage]) -> None:
    default_type = get_settings().opportunity_default_type
    for opportunity in ctx.new or []:
        if opportunity.opportunity_type is None:
            opportunity.opportunity_type = default_type
        if opportunity.probability is None:
            stage = stages.get(opportunity.stage_id)
            if stage is not None and stage.default_probability is not None:
                opportunity.probability = stage.default_probability


def assign_primary_contacts(ctx: TriggerContext) -> None:
    """Point each new opportunity without a primary contact at its account's decision maker."""
    pending = [opportunity for opportunity in ctx.new or [] if opportunity.primary_contact_id is None]
    contacts = build_lookup_map(
        ctx.session,
        pending,
        key="account_id",
        related=CRMContact,
        related_key="account_id",
        criteria=[CRMContact.title == get_settings().opportunity_primary_contact_title],
        order_by=[CRMContact.last_name.asc(), CRMContact.first_name.asc(), CRMContact.id.asc()],
    )
    for opportunity in pending:
        contact = contacts.get(opportunity.account_id)
        if contact is not None:
            opportunity.primary_contact_id = contact.id


def validate_opportunities(ctx: TriggerContext, stages: dict[uuid.UUID, CRMPipelineStage]) -> None:
    if ctx.old is None:
        entering = {opportunity.id for opportunity in ctx.new or []}
    else:
        entering = {opportunity.id for _, opportunity in ctx.changed("stage_id")}
    for opportunity in ctx.new or []:
        stage = stages.get(opportunity.stage_id)
        if stage is None:
            ctx.add_error(opportunity, "stage does not exist")
            continue
        if not stage.is_active and opportunity.id in entering:
            ctx.add_error(opportunity, f"stage '{stage.name}' is inactive")
            continue
        amount = _amount(opportunity)
        if amount < 0:
            ctx.add_error(opportunity, "amount must not be negative")
        elif stage.stage_type == STAGE_TYPE_CLOSED_WON and amount == 0:
            ctx.add_error(opportunity, "closed won opportunities require an amount")


def stamp_close_dates(ctx: TriggerContext, stages: dict[uuid.UUID, CRMPipelineStage]) -> None:
    for _, opportunity in ctx.changed("stage_id"):
        stage = stages.get(opportunity.stage_id)
        if stage is None:
            continue
        if stage.stage_type == STAGE_TYPE_CLOSED_WON and opportunity.closed_won_at is None:
            opportunity.closed_won_at = utcnow()
        elif stage.stage_type == STAGE_TYPE_CLOSED_LOST and opportunity.closed_lost_at is None:
            opportunity.closed_lost_at = utcnow()


def create_follow_up_tasks(ctx: TriggerContext, records: Iterable[Any], subject: str) -> list[CRMActivity]:
    due_at = utcnow() + timedelta(days=get_settings().follow_up_task_due_days)
    tasks = [
        CRMActivity(
            related_type="opportunity",
            related_id=opportunity.id,
            activity_type="Task",
            subject=f"{subject}: {opportunity.name}",
            assigned_to_email=opportunity.owner_email,
            due_at=due_at,
            status="Open",
        )
        for opportunity in records
    ]
    if tasks:
        ctx.store.insert(CRMActivity, tasks)
    return tasks


def audit_stage_changes(ctx: TriggerContext) -> list[RecordChange]:
    """Append one timestamped line per stage change to the description.

    Only ``id`` and ``description`` are saved back. That save is itself an
    opportunity update, so the handler calling this must be guarded.
    """
    changed = [(old, new) for old, new in ctx.changed("stage_id") if new.stage_id is not None]
    if not changed:
        return []

    stages = load_stages(ctx, [record for pair in changed for record in pair])
    stamp = utcnow().isoformat(timespec="seconds")

    def stage_name(stage_id: uuid.UUID | None) -> str:
        stage = stages.get(stage_id) if stage_id is not None else None
        return stage.name if stage is not None else "(none)"

    changes: list[RecordChange] = []
    for old, new in changed:
        line = f"{stamp} Stage changed from {stage_name(old.stage_id)} to {stage_name(new.stage_id)}"
        description = f"{new.description}\n{line}" if new.description else line
        changes.append(RecordChange(id=new.id, values={"description": description}))

    result = ctx.store.save(CRMOpportunity, changes)
    if not result.ok:
        logger.warning(
            "opportunity.stage_audit_rejected",
            extra={
                "entity_type": "opportunity",
                "error_count": len(result.failed),
                "record_ids": [str(item.id) for item in result.failed],
            },
        )
    return changes


def notify_closed_won(ctx: TriggerContext) -> int:
    moved = [new for _, new in ctx.changed("stage_id")]
    stages = load_stages(ctx, moved)
    won = [
        opportunity
        for opportunity in moved
        if opportunity.owner_email and getattr(stages.get(opportunity.stage_id), "stage_type", None) == STAGE_TYPE_CLOSED_WON
    ]
    return notify_best_effort(
        ctx.notifier,
        [
            Notification(
                recipient=opportunity.owner_email,
                subject=f"Opportunity won: {opportunity.name}",
                body=f"{opportunity.name} was closed won for {_amount(opportunity)}.",
            )
            for opportunity in won
        ],
    )


def notify_deleted(ctx: TriggerContext) -> int:
    return notify_best_effort(
        ctx.notifier,
        [
            Notification(
                recipient=opportunity.owner_email,
                subject=f"Opportunity deleted: {opportunity.name}",
                body=f"{opportunity.name} ({opportunity.id}) was deleted.",
            )
            for opportunity in ctx.old or []
            if opportunity.owner_email
        ],
    )


@dispatcher.on(TriggerPhase.BEFORE_INSERT)
def before_insert(ctx: TriggerContext) -> None:
    stages = load_stages(ctx, ctx.new or [])
    apply_defaults(ctx, stages)
    assign_primary_contacts(ctx)
    validate_opportunities(ctx, stages)


@dispatcher.on(TriggerPhase.AFTER_INSERT)
def after_insert(ctx: TriggerContext) -> None:
    threshold = get_settings().opportunity_large_deal_threshold
    large_deals = [opportunity for opportunity in ctx.new or [] if _amount(opportunity) >= threshold]
    create_follow_up_tasks(ctx, large_deals, "Follow up on large deal")


@dispatcher.on(TriggerPhase.BEFORE_UPDATE)
def before_update(ctx: TriggerContext) -> None:
    stages = load_stages(ctx, ctx.new or [])
    validate_opportunities(ctx, stages)
    stamp_close_dates(ctx, stages)


@dispatcher.on(TriggerPhase.AFTER_UPDATE, guarded=True)
def after_update(ctx: TriggerContext) -> None:
    changes = audit_stage_changes(ctx)
    if changes:
        logger.info(
            "opportunity.stage_audited",
            extra={"entity_type": "opportunity", "batch_size": len(changes)},
        )
    notify_closed_won(ctx)


@dispatcher.on(TriggerPhase.BEFORE_DELETE)
def before_delete(ctx: TriggerContext) -> None:
    stages = load_stages(ctx, ctx.old or [])
    for opportunity in ctx.old or []:
        stage = stages.get(opportunity.stage_id)
        if stage is not None and stage.is_closed:
            ctx.add_error(opportunity, "closed opportunities cannot be deleted")


@dispatcher.on(TriggerPhase.AFTER_DELETE)
def after_delete(ctx: TriggerContext) -> None:
    notify_deleted(ctx)


@dispatcher.on(TriggerPhase.AFTER_UNDELETE)
def after_undelete(ctx: TriggerContext) -> None:
    create_follow_up_tasks(ctx, ctx.new or [], "Review restored opportunity")
