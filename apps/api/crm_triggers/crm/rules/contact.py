from __future__ import annotations

from pydantic import EmailStr, TypeAdapter, ValidationError

from crm_triggers.crm.models import CRMAccount
from crm_triggers.triggers.dispatcher import TriggerContext, TriggerDispatcher
from crm_triggers.triggers.lookup import build_lookup_map
from crm_triggers.triggers.types import TriggerPhase


dispatcher = TriggerDispatcher("contact")

_email_adapter = TypeAdapter(EmailStr)


def email_problem(value: str) -> str | None:
    try:
        _email_adapter.validate_python(value)
    except ValidationError as exc:
        error = exc.errors()[0]
        return str(error.get("ctx", {}).get("reason") or error["msg"])
    return None


def validate_emails(ctx: TriggerContext) -> None:
    for contact in ctx.new or []:
        if not contact.email:
            continue
        problem = email_problem(contact.email)
        if problem is not None:
            ctx.add_error(contact, f"invalid email address: {contact.email} ({problem})")


def inherit_account_fields(ctx: TriggerContext) -> None:
    accounts = build_lookup_map(ctx.session, ctx.new or [], key="account_id", related=CRMAccount, related_key="id")
    for contact in ctx.new or []:
        account = accounts.get(contact.account_id)
        if account is None:
            ctx.add_error(contact, "account does not exist")
            continue
        if contact.owner_email is None:
            contact.owner_email = account.owner_email
        if contact.mailing_country is None:
            contact.mailing_country = account.billing_country


@dispatcher.on(TriggerPhase.BEFORE_INSERT)
def before_insert(ctx: TriggerContext) -> None:
    inherit_account_fields(ctx)
    validate_emails(ctx)


@dispatcher.on(TriggerPhase.BEFORE_UPDATE)
def before_update(ctx: TriggerContext) -> None:
    validate_emails(ctx)
