from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from crm_triggers.triggers.types import SaveResult


class AccountCreate(BaseModel):
    name: str = Field(min_length=1)
    status: str | None = None
    industry: str | None = None
    rating: str | None = None
    owner_email: str | None = None
    primary_region_code: str | None = None
    billing_country: str | None = None


class AccountUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    status: str | None = None
    industry: str | None = None
    rating: str | None = None
    owner_email: str | None = None
    primary_region_code: str | None = None
    billing_country: str | None = None


class ContactCreate(BaseModel):
    account_id: UUID
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str | None = None
    title: str | None = None
    owner_email: str | None = None
    mailing_country: str | None = None


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    title: str | None = None
    owner_email: str | None = None
    mailing_country: str | None = None


class OpportunityCreate(BaseModel):
    account_id: UUID
    name: str = Field(min_length=1)
    stage_id: UUID
    amount: Decimal = Decimal("0")
    opportunity_type: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    owner_email: str | None = None
    primary_contact_id: UUID | None = None
    description: str | None = None


class OpportunityUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    stage_id: UUID | None = None
    amount: Decimal | None = None
    opportunity_type: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    owner_email: str | None = None
    primary_contact_id: UUID | None = None
    description: str | None = None
    close_reason: str | None = None


class AccountChange(BaseModel):
    id: UUID
    values: AccountUpdate


class ContactChange(BaseModel):
    id: UUID
    values: ContactUpdate


class OpportunityChange(BaseModel):
    id: UUID
    values: OpportunityUpdate


class RecordIds(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class RecordResultRead(BaseModel):
    id: UUID | None
    success: bool
    errors: list[str]


class SaveResultRead(BaseModel):
    ok: bool
    succeeded: int
    failed: int
    results: list[RecordResultRead]

    @classmethod
    def from_result(cls, result: SaveResult) -> SaveResultRead:
        return cls(
            ok=result.ok,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            results=[RecordResultRead(id=item.id, success=item.success, errors=item.errors) for item in result.results],
        )
