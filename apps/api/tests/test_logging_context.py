from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_triggers.context import (
    TriggerScope,
    get_log_context,
    reset_correlation_id,
    set_correlation_id,
    trigger_scope,
)
from crm_triggers.core.config import get_settings
from crm_triggers.core.database import Base, get_db
from crm_triggers.crm.models import STAGE_TYPE_OPEN, CRMAccount, CRMPipelineStage
from crm_triggers.logging import JsonLogFormatter, LogContextFilter
from crm_triggers.main import app
from crm_triggers.triggers.dispatcher import TriggerDispatcher
from crm_triggers.triggers.types import TriggerPhase


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
    monkeypatch.setenv("NOTIFICATION_BACKEND", "log")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _record(msg: str, **fields: object) -> logging.LogRecord:
    record = logging.LogRecord("crm_triggers.triggers", logging.INFO, __file__, 1, msg, None, None)
    for key, value in fields.items():
        setattr(record, key, value)
    return record


def test_json_formatter_splits_trigger_and_event_fields() -> None:
    record = _record(
        "trigger.completed",
        correlation_id="fmt-1",
        entity_type="opportunity",
        phase="before_update",
        depth=1,
        batch_size=3,
        error_count=1,
        secret="must not leak",
        error="x" * 600,
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "trigger.completed"
    assert payload["logger"] == "crm_triggers.triggers"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["trigger"] == {"entity_type": "opportunity", "phase": "before_update", "depth": 1}
    assert payload["fields"]["batch_size"] == 3
    assert payload["fields"]["error_count"] == 1
    assert len(payload["fields"]["error"]) == 500
    assert "secret" not in payload["fields"]


def test_context_filter_fills_running_trigger_without_overriding_extras() -> None:
    scope = TriggerScope("opportunity", "after_update", 2, "opportunity.after_update")
    token = set_correlation_id("scope-1")
    try:
        with trigger_scope(scope):
            bare = _record("notification.failed")
            explicit = _record("trigger.lookup_failed", entity_type="crm_pipeline_stage")
            LogContextFilter().filter(bare)
            LogContextFilter().filter(explicit)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(bare))
    assert payload["correlation_id"] == "scope-1"
    assert payload["trigger"] == {
        "entity_type": "opportunity",
        "phase": "after_update",
        "depth": 2,
        "guard": "opportunity.after_update",
    }
    assert explicit.entity_type == "crm_pipeline_stage"
    assert explicit.phase == "after_update"
    assert get_log_context() == {"correlation_id": None}


def test_handlers_run_inside_their_trigger_scope() -> None:
    seen: list[dict[str, object]] = []
    dispatcher = TriggerDispatcher("widget")

    @dispatcher.on(TriggerPhase.AFTER_DELETE, guarded=True)
    def capture(ctx) -> None:  # type: ignore[no-untyped-def]
        seen.append(get_log_context())

    dispatcher.run(TriggerPhase.AFTER_DELETE, old=[])

    assert seen == [
        {"correlation_id": None, "entity_type": "widget", "phase": "after_delete", "depth": 1, "guard": "widget.after_delete"}
    ]
    assert get_log_context() == {"correlation_id": None}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/crm/accounts", json=[{"name": "Log Account"}], headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "crm_triggers.request" and record.getMessage() == "http.request"]
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "POST"
        and getattr(record, "path", None) == "/api/crm/accounts"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_trigger_runs_log_with_request_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    account = CRMAccount(name="Acme", status="Active")
    stage = CRMPipelineStage(name="Open", position=1, stage_type=STAGE_TYPE_OPEN)
    db_session.add_all([account, stage])
    db_session.commit()

    response = client.post(
        "/api/crm/opportunities",
        json=[
            {"account_id": str(account.id), "name": "Logged", "stage_id": str(stage.id), "amount": str(Decimal("10"))},
            {"account_id": str(account.id), "name": "Broken", "stage_id": str(uuid.uuid4())},
        ],
        headers={"X-Correlation-Id": "trig-42"},
    )
    assert response.status_code == 200

    trigger_records = [
        record
        for record in caplog.records
        if record.name == "crm_triggers.triggers" and record.getMessage() == "trigger.completed"
    ]
    assert any(
        getattr(record, "entity_type", None) == "opportunity"
        and getattr(record, "phase", None) == "before_insert"
        and getattr(record, "batch_size", None) == 2
        and getattr(record, "error_count", None) == 1
        and getattr(record, "correlation_id", None) == "trig-42"
        for record in trigger_records
    )
