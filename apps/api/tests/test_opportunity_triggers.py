from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_triggers.core.config import get_settings
from crm_triggers.core.database import Base
from crm_triggers.crm.models import (
    STAGE_TYPE_CLOSED_LOST,
    STAGE_TYPE_CLOSED_WON,
    STAGE_TYPE_OPEN,
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMOpportunity,
    CRMPipelineStage,
)
from crm_triggers.crm.rules import opportunity as opportunity_rules
from crm_triggers.triggers.errors import BatchSaveError, TriggerQueryError
from crm_triggers.triggers.store import EntityStore
from crm_triggers.triggers.types import RecordChange


class RecordingNotifier:
    backend = "recording"

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> None:
        if recipient in self.fail_for:
            raise ConnectionError(f"mail relay refused {recipient}")
        self.sent.append((recipient, subject, body))


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("OPPORTUNITY_DEFAULT_TYPE", "New Customer")
    monkeypatch.setenv("OPPORTUNITY_LARGE_DEAL_THRESHOLD", "100000")
    monkeypatch.setenv("NOTIFICATION_BACKEND", "log")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def stages(db_session: Session) -> dict[str, uuid.UUID]:
    prospect = CRMPipelineStage(name="Prospecting", position=1, stage_type=STAGE_TYPE_OPEN, default_probability=10)
    negotiation = CRMPipelineStage(name="Negotiation", position=2, stage_type=STAGE_TYPE_OPEN, default_probability=60)
    won = CRMPipelineStage(name="Closed Won", position=90, stage_type=STAGE_TYPE_CLOSED_WON, default_probability=100)
    lost = CRMPipelineStage(name="Closed Lost", position=91, stage_type=STAGE_TYPE_CLOSED_LOST, default_probability=0)
    db_session.add_all([prospect, negotiation, won, lost])
    db_session.commit()
    return {"prospect": prospect.id, "negotiation": negotiation.id, "won": won.id, "lost": lost.id}


@pytest.fixture()
def account_id(db_session: Session) -> uuid.UUID:
    account = CRMAccount(name="Acme", status="Active", owner_email="owner@acme.test")
    db_session.add(account)
    db_session.flush()
    db_session.add_all(
        [
            CRMContact(account_id=account.id, first_name="Zoe", last_name="Young", title="Decision Maker"),
            CRMContact(account_id=account.id, first_name="Amy", last_name="Adams", title="Decision Maker"),
            CRMContact(account_id=account.id, first_name="Al", last_name="Aardvark", title="Engineer"),
        ]
    )
    db_session.commit()
    return account.id


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def store(db_session: Session, notifier: RecordingNotifier) -> EntityStore:
    return EntityStore(db_session, notifier=notifier)


def _opportunity(account_id: uuid.UUID, stage_id: uuid.UUID, name: str, **values: object) -> CRMOpportunity:
    values.setdefault("amount", Decimal("1000"))
    values.setdefault("owner_email", "rep@acme.test")
    return CRMOpportunity(account_id=account_id, stage_id=stage_id, name=name, **values)


def _insert(store: EntityStore, *records: CRMOpportunity) -> list[uuid.UUID]:
    result = store.insert(CRMOpportunity, list(records))
    assert result.ok, result.failed
    store.session.commit()
    return [record.id for record in records]


def test_insert_applies_defaults_only_where_missing(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    plain = _opportunity(account_id, stages["prospect"], "Plain")
    typed = _opportunity(account_id, stages["negotiation"], "Typed", opportunity_type="Renewal", probability=35)

    _insert(store, plain, typed)

    saved = {row.name: row for row in db_session.scalars(select(CRMOpportunity))}
    assert saved["Plain"].opportunity_type == "New Customer"
    assert saved["Plain"].probability == 10
    assert saved["Typed"].opportunity_type == "Renewal"
    assert saved["Typed"].probability == 35


def test_insert_assigns_first_decision_maker_by_name(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    [opportunity_id] = _insert(store, _opportunity(account_id, stages["prospect"], "Needs Contact"))

    opportunity = db_session.get(CRMOpportunity, opportunity_id)
    assert opportunity is not None
    contact = db_session.get(CRMContact, opportunity.primary_contact_id)
    assert contact is not None
    assert (contact.first_name, contact.last_name) == ("Amy", "Adams")


def test_insert_rejects_invalid_records_and_keeps_the_rest(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    good = _opportunity(account_id, stages["prospect"], "Good")
    negative = _opportunity(account_id, stages["prospect"], "Negative", amount=Decimal("-5"))
    empty_win = _opportunity(account_id, stages["won"], "Empty Win", amount=Decimal("0"))
    lost_stage = _opportunity(account_id, uuid.uuid4(), "Unknown Stage")

    result = store.insert(CRMOpportunity, [good, negative, empty_win, lost_stage])
    db_session.commit()

    assert result.succeeded_ids == [good.id]
    errors = {item.id: item.errors for item in result.failed}
    assert errors == {
        negative.id: ["amount must not be negative"],
        empty_win.id: ["closed won opportunities require an amount"],
        lost_stage.id: ["stage does not exist"],
    }
    assert [row.name for row in db_session.scalars(select(CRMOpportunity))] == ["Good"]


def test_large_deals_get_a_follow_up_task(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    big, small = _insert(
        store,
        _opportunity(account_id, stages["prospect"], "Big", amount=Decimal("250000")),
        _opportunity(account_id, stages["prospect"], "Small", amount=Decimal("500")),
    )

    tasks = db_session.scalars(select(CRMActivity)).all()
    assert [(task.related_id, task.subject) for task in tasks] == [(big, "Follow up on large deal: Big")]
    assert tasks[0].assigned_to_email == "rep@acme.test"
    assert tasks[0].due_at is not None
    assert small not in {task.related_id for task in tasks}


def test_update_partial_failure_saves_valid_siblings(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    first, second, third = _insert(
        store,
        _opportunity(account_id, stages["prospect"], "First"),
        _opportunity(account_id, stages["prospect"], "Second"),
        _opportunity(account_id, stages["prospect"], "Third"),
    )

    result = store.update(
        CRMOpportunity,
        [
            RecordChange(id=first, values={"amount": Decimal("2000")}),
            RecordChange(id=second, values={"amount": Decimal("-1")}),
            RecordChange(id=third, values={"amount": Decimal("3000")}),
        ],
    )
    db_session.commit()
    db_session.expire_all()

    assert [item.success for item in result.results] == [True, False, True]
    assert result.failed[0].errors == ["amount must not be negative"]
    amounts = {row.name: row.amount for row in db_session.scalars(select(CRMOpportunity))}
    assert amounts == {"First": Decimal("2000"), "Second": Decimal("1000"), "Third": Decimal("3000")}


def test_all_or_none_update_persists_nothing(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    first, second = _insert(
        store,
        _opportunity(account_id, stages["prospect"], "First"),
        _opportunity(account_id, stages["prospect"], "Second"),
    )

    with pytest.raises(BatchSaveError) as exc_info:
        store.update(
            CRMOpportunity,
            [
                RecordChange(id=first, values={"amount": Decimal("2000")}),
                RecordChange(id=second, values={"amount": Decimal("-1")}),
            ],
            allow_partial=False,
        )
    db_session.rollback()

    assert [item.id for item in exc_info.value.result.failed] == [second]
    amounts = {row.name: row.amount for row in db_session.scalars(select(CRMOpportunity))}
    assert amounts == {"First": Decimal("1000"), "Second": Decimal("1000")}


def test_update_reports_missing_records(store: EntityStore, stages: dict[str, uuid.UUID], account_id: uuid.UUID) -> None:
    [existing] = _insert(store, _opportunity(account_id, stages["prospect"], "Existing"))
    missing = uuid.uuid4()

    result = store.update(
        CRMOpportunity,
        [RecordChange(id=existing, values={"name": "Renamed"}), RecordChange(id=missing, values={"name": "Ghost"})],
    )

    assert result.succeeded_ids == [existing]
    assert [(item.id, item.errors) for item in result.failed] == [(missing, ["record not found"])]


def test_stage_change_is_audited_exactly_once(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    [opportunity_id] = _insert(
        store,
        _opportunity(account_id, stages["prospect"], "Audited", description="Inbound lead"),
    )

    result = store.update(CRMOpportunity, [RecordChange(id=opportunity_id, values={"stage_id": stages["negotiation"]})])
    db_session.commit()
    db_session.expire_all()

    assert result.ok
    opportunity = db_session.get(CRMOpportunity, opportunity_id)
    assert opportunity is not None
    lines = opportunity.description.splitlines()
    assert lines[0] == "Inbound lead"
    assert len(lines) == 2
    assert lines[1].endswith("Stage changed from Prospecting to Negotiation")


def test_saving_without_changes_adds_no_audit_lines(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    [opportunity_id] = _insert(store, _opportunity(account_id, stages["prospect"], "Stable"))

    for _ in range(2):
        result = store.update(CRMOpportunity, [RecordChange(id=opportunity_id, values={"stage_id": stages["prospect"]})])
        db_session.commit()
        assert result.ok

    opportunity = db_session.get(CRMOpportunity, opportunity_id)
    assert opportunity is not None
    assert opportunity.description is None


def test_closing_stamps_dates_and_notifies_each_owner_once(
    store: EntityStore,
    db_session: Session,
    notifier: RecordingNotifier,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    ids = _insert(
        store,
        _opportunity(account_id, stages["negotiation"], "Deal A", owner_email="ana@acme.test"),
        _opportunity(account_id, stages["negotiation"], "Deal B", owner_email="ANA@acme.test"),
        _opportunity(account_id, stages["negotiation"], "Deal C", owner_email="bo@acme.test"),
        _opportunity(account_id, stages["negotiation"], "Deal D", owner_email="cy@acme.test"),
    )

    won, lost = ids[:3], ids[3]
    result = store.update(
        CRMOpportunity,
        [RecordChange(id=record_id, values={"stage_id": stages["won"]}) for record_id in won]
        + [RecordChange(id=lost, values={"stage_id": stages["lost"]})],
    )
    db_session.commit()

    assert result.ok
    recipients = sorted(recipient.lower() for recipient, _, _ in notifier.sent)
    assert recipients == ["ana@acme.test", "bo@acme.test"]
    merged = next(subject for recipient, subject, _ in notifier.sent if recipient.lower() == "ana@acme.test")
    assert merged.endswith("(+1 more)")

    rows = {row.name: row for row in db_session.scalars(select(CRMOpportunity))}
    assert rows["Deal A"].closed_won_at is not None
    assert rows["Deal D"].closed_lost_at is not None
    assert rows["Deal D"].closed_won_at is None


def test_notification_failures_do_not_fail_the_save(
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    notifier = RecordingNotifier(fail_for={"ana@acme.test"})
    store = EntityStore(db_session, notifier=notifier)
    first, second = _insert(
        store,
        _opportunity(account_id, stages["negotiation"], "Deal A", owner_email="ana@acme.test"),
        _opportunity(account_id, stages["negotiation"], "Deal B", owner_email="bo@acme.test"),
    )

    result = store.update(
        CRMOpportunity,
        [RecordChange(id=first, values={"stage_id": stages["won"]}), RecordChange(id=second, values={"stage_id": stages["won"]})],
    )
    db_session.commit()

    assert result.ok
    assert [recipient for recipient, _, _ in notifier.sent] == ["bo@acme.test"]
    assert {row.stage_id for row in db_session.scalars(select(CRMOpportunity))} == {stages["won"]}


def test_closed_opportunities_cannot_be_deleted(
    store: EntityStore,
    db_session: Session,
    notifier: RecordingNotifier,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    closed, open_ = _insert(
        store,
        _opportunity(account_id, stages["won"], "Closed", owner_email="ana@acme.test"),
        _opportunity(account_id, stages["prospect"], "Open", owner_email="bo@acme.test"),
    )

    result = store.delete(CRMOpportunity, [closed, open_])
    db_session.commit()

    assert result.succeeded_ids == [open_]
    assert result.failed[0].errors == ["closed opportunities cannot be deleted"]
    rows = {row.name: row for row in db_session.scalars(select(CRMOpportunity))}
    assert rows["Closed"].deleted_at is None
    assert rows["Open"].deleted_at is not None
    assert [recipient for recipient, _, _ in notifier.sent] == ["bo@acme.test"]


def test_undelete_restores_and_creates_review_task(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    [opportunity_id] = _insert(store, _opportunity(account_id, stages["prospect"], "Restored"))
    assert store.delete(CRMOpportunity, [opportunity_id]).ok
    db_session.commit()

    result = store.undelete(CRMOpportunity, [opportunity_id, uuid.uuid4()])
    db_session.commit()

    assert result.succeeded_ids == [opportunity_id]
    opportunity = db_session.get(CRMOpportunity, opportunity_id)
    assert opportunity is not None
    assert opportunity.deleted_at is None
    subjects = [task.subject for task in db_session.scalars(select(CRMActivity))]
    assert subjects == ["Review restored opportunity: Restored"]


def test_failed_update_hook_leaves_nothing_to_flush(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    [opportunity_id] = _insert(store, _opportunity(account_id, stages["prospect"], "Guarded"))

    def unavailable(ctx, records):  # type: ignore[no-untyped-def]
        raise TriggerQueryError("crm_pipeline_stage", "connection reset")

    monkeypatch.setattr(opportunity_rules, "load_stages", unavailable)

    with pytest.raises(TriggerQueryError, match="crm_pipeline_stage"):
        store.update(CRMOpportunity, [RecordChange(id=opportunity_id, values={"amount": Decimal("-50")})])

    opportunity = db_session.get(CRMOpportunity, opportunity_id)
    assert opportunity is not None
    assert opportunity.amount == Decimal("1000")
    db_session.flush()
    db_session.commit()
    db_session.expire_all()
    assert db_session.get(CRMOpportunity, opportunity_id).amount == Decimal("1000")


def test_inactive_stages_cannot_be_entered(
    store: EntityStore,
    db_session: Session,
    stages: dict[str, uuid.UUID],
    account_id: uuid.UUID,
) -> None:
    [parked] = _insert(store, _opportunity(account_id, stages["negotiation"], "Parked"))
    retired = db_session.get(CRMPipelineStage, stages["negotiation"])
    assert retired is not None
    retired.is_active = False
    db_session.commit()

    inserted = store.insert(CRMOpportunity, [_opportunity(account_id, stages["negotiation"], "Too Late")])
    edited = store.update(CRMOpportunity, [RecordChange(id=parked, values={"amount": Decimal("1500")})])
    moved = store.update(CRMOpportunity, [RecordChange(id=parked, values={"stage_id": stages["prospect"]})])
    db_session.commit()
    moved_back = store.update(CRMOpportunity, [RecordChange(id=parked, values={"stage_id": stages["negotiation"]})])
    db_session.commit()

    assert inserted.failed[0].errors == ["stage 'Negotiation' is inactive"]
    assert edited.ok
    assert moved.ok
    assert moved_back.failed[0].errors == ["stage 'Negotiation' is inactive"]
    names = [row.name for row in db_session.scalars(select(CRMOpportunity))]
    assert names == ["Parked"]
