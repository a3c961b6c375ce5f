from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import (
    BusinessUnit,
    Client,
    EmailLog,
    EmailPreferences,
    Notification,
    Opportunity,
    Service,
    Task,
    User,
)
from app.crm.repositories import SqlEntityStore
from app.notifications import EmailService
from app.workflows.service import WorkflowRunError, WorkflowService


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class RecordingTransport:
    def __init__(self) -> None:
        self.messages: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.messages.append(message)


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
    monkeypatch.setenv("APP_URL", "https://app.wondrlab.test")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def service(transport: RecordingTransport) -> WorkflowService:
    return WorkflowService(
        email_service_factory=lambda: EmailService(
            transport,
            enabled=True,
            from_address="noreply@wondrlab.test",
            from_name="WondrlabApp",
            reply_to="support@wondrlab.test",
        )
    )


def _seed(session: Session) -> tuple[Client, Service]:
    seller = User(username="seller", email="seller@wondrlab.test", role="sales")
    head = User(username="head", email="head@wondrlab.test", role="bu_head")
    session.add_all([seller, head])
    session.flush()
    session.add_all([EmailPreferences(user_id=seller.id), EmailPreferences(user_id=head.id)])
    session.add(BusinessUnit(name="Creative", description="", owner_user_id=head.id))
    service = Service(name="Brand Identity", description="", business_unit="Creative")
    client = Client(name="Initech", industry="Software", account_owner_id=seller.id)
    session.add_all([service, client])
    session.flush()
    won = Opportunity(
        name="Initech Rebrand",
        client_id=client.id,
        service_id=service.id,
        assigned_user_id=seller.id,
        status="won",
    )
    session.add(won)
    session.flush()
    session.add(
        Task(
            name="Collect assets",
            opportunity_id=won.id,
            assigned_user_id=seller.id,
            due_date=NOW - timedelta(hours=26),
        )
    )
    session.commit()
    return client, service


def test_run_processes_both_workflows(
    db_session: Session,
    service: WorkflowService,
    transport: RecordingTransport,
) -> None:
    client, won_service = _seed(db_session)
    before = REGISTRY.get_sample_value("workflow_runs_total", {"status": "succeeded"}) or 0.0

    result = service.run_workflows(db_session, now=NOW)

    assert result.status == "succeeded"
    assert result.overdue_tasks.processed == 1
    assert result.overdue_tasks.escalations == 1
    assert result.won_opportunities.services_added == 1
    assert result.started_at <= result.finished_at
    stored = SqlEntityStore(db_session).get_client(client.id)
    assert stored is not None
    assert stored.services_used == [won_service.id]

    logs = db_session.scalars(select(EmailLog)).all()
    assert logs
    assert all(log.correlation_id == f"workflow-run:{result.run_id}" for log in logs)
    assert "app url: https://app.wondrlab.test" in transport.messages[0].get_content()
    assert REGISTRY.get_sample_value("workflow_runs_total", {"status": "succeeded"}) == before + 1


def test_second_run_renotifies_overdue_tasks_but_not_won_opportunities(
    db_session: Session,
    service: WorkflowService,
) -> None:
    _seed(db_session)

    first = service.run_workflows(db_session, now=NOW)
    second = service.run_workflows(db_session, now=NOW + timedelta(hours=1))

    assert first.run_id != second.run_id
    assert second.won_opportunities.processed == 0
    assert second.won_opportunities.skipped == 1
    assert second.overdue_tasks.processed == 1

    types = [notification.type for notification in db_session.scalars(select(Notification)).all()]
    assert types.count("task_overdue") == 2
    assert types.count("task_overdue_escalation") == 2
    assert types.count("opportunity_won") == 2
    assert len(audit.audit_entries) == 1


def test_failed_scan_in_one_processor_still_runs_the_other(
    db_session: Session,
    service: WorkflowService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, won_service = _seed(db_session)

    def broken_scan(self: SqlEntityStore, now: datetime) -> list:
        raise RuntimeError("tasks table locked")

    monkeypatch.setattr(SqlEntityStore, "list_overdue_tasks", broken_scan)

    result = service.run_workflows(db_session, now=NOW)

    assert result.status == "partial"
    assert result.overdue_tasks.status == "failed"
    assert result.overdue_tasks.error == "tasks table locked"
    assert result.won_opportunities.status == "succeeded"
    stored = SqlEntityStore(db_session).get_client(client.id)
    assert stored is not None
    assert stored.services_used == [won_service.id]


def test_total_failure_raises_with_the_result(
    db_session: Session,
    service: WorkflowService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed(db_session)

    def broken(*args: object, **kwargs: object) -> list:
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(SqlEntityStore, "list_overdue_tasks", broken)
    monkeypatch.setattr(SqlEntityStore, "list_won_opportunities", broken)
    before = REGISTRY.get_sample_value("workflow_runs_total", {"status": "failed"}) or 0.0

    with pytest.raises(WorkflowRunError) as exc_info:
        service.run_workflows(db_session, now=NOW)

    result = exc_info.value.result
    assert result.status == "failed"
    assert result.overdue_tasks.status == "failed"
    assert result.won_opportunities.status == "failed"
    assert db_session.scalars(select(Notification)).all() == []
    assert REGISTRY.get_sample_value("workflow_runs_total", {"status": "failed"}) == before + 1


def test_threshold_is_configurable(
    db_session: Session,
    service: WorkflowService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed(db_session)
    monkeypatch.setenv("WORKFLOW_ESCALATION_THRESHOLD_HOURS", "48")
    get_settings.cache_clear()

    result = service.run_workflows(db_session, now=NOW)

    assert result.overdue_tasks.processed == 1
    assert result.overdue_tasks.escalations == 0
