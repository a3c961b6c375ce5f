from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Client, ClientService, Opportunity, Service, User
from app.main import app
from app.middleware.correlation_id import resolve_correlation_id
from app.workflows.service import WorkflowService


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WORKFLOW_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("SEED_DEFAULT_BUSINESS_UNITS", "false")
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="ops-user", roles=["workflows.execute"])
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_won_opportunity(session: Session) -> None:
    owner = User(username="owner", email="owner@wondrlab.test", role="sales")
    session.add(owner)
    session.flush()
    service = Service(name="Media Buy", description="", business_unit="Media Planning")
    client = Client(name="Hooli", industry="Tech", account_owner_id=owner.id)
    session.add_all([service, client])
    session.flush()
    session.add(
        Opportunity(
            name="Hooli Launch",
            client_id=client.id,
            service_id=service.id,
            assigned_user_id=owner.id,
            status="won",
        )
    )
    session.commit()


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id")


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})
    assert response.headers.get("x-correlation-id") == "abc-123"


def test_malformed_correlation_id_is_replaced() -> None:
    assert resolve_correlation_id("abc-123") == "abc-123"
    assert resolve_correlation_id("workflow-run:42") == "workflow-run:42"
    replaced = resolve_correlation_id("bad id with spaces\n")
    assert replaced != "bad id with spaces\n"
    assert len(replaced) == 36
    assert len(resolve_correlation_id("x" * 500)) == 36


def test_manual_run_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    _seed_won_opportunity(db_session)

    response = client.post("/api/workflows/run", headers={"X-Correlation-Id": "corr-audit-1"})
    assert response.status_code == 200

    assert db_session.query(ClientService).count() == 1
    service_audits = [entry for entry in audit.audit_entries if entry["action"] == "client.service_added"]
    assert service_audits
    assert service_audits[-1]["correlation_id"] == "corr-audit-1"


def test_scheduled_run_gets_its_own_correlation_id(db_session: Session) -> None:
    _seed_won_opportunity(db_session)

    result = WorkflowService().run_workflows(db_session)

    assert get_correlation_id() is None
    assert audit.audit_entries[-1]["correlation_id"] == f"workflow-run:{result.run_id}"


def test_existing_correlation_id_is_kept_and_restored(db_session: Session) -> None:
    token = set_correlation_id("outer-1")
    try:
        WorkflowService().run_workflows(db_session)
        assert get_correlation_id() == "outer-1"
    finally:
        reset_correlation_id(token)
