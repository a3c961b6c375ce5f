from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from email.message import EmailMessage

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.database import Base
from app.crm.models import (
    BusinessUnit,
    Client,
    ClientService,
    EmailLog,
    EmailPreferences,
    Notification,
    Opportunity,
    Service,
    User,
)
from app.crm.repositories import SqlEntityStore
from app.crm.schemas import ClientRead
from app.notifications import EmailService, Notifier
from app.workflows.escalation import EscalationResolver
from app.workflows.processors import WonOpportunityProcessor


class RecordingTransport:
    def __init__(self) -> None:
        self.messages: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.messages.append(message)


@dataclass
class Fixture:
    account_owner: User
    seller: User
    bu_owner: User
    client: Client
    service: Service
    opportunity: Opportunity


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
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def email_service(transport: RecordingTransport) -> EmailService:
    return EmailService(
        transport,
        enabled=True,
        from_address="noreply@wondrlab.test",
        from_name="WondrlabApp",
        reply_to="support@wondrlab.test",
    )


def _create_user(session: Session, username: str, role: str = "sales") -> User:
    user = User(username=username, email=f"{username}@wondrlab.test", role=role)
    session.add(user)
    session.flush()
    session.add(EmailPreferences(user_id=user.id))
    return user


def _seed(session: Session, *, status: str = "won") -> Fixture:
    account_owner = _create_user(session, "owner")
    seller = _create_user(session, "seller")
    bu_owner = _create_user(session, "head", role="bu_head")
    session.add(BusinessUnit(name="Digital Marketing", description="", owner_user_id=bu_owner.id))
    service = Service(name="Paid Social", description="", business_unit="Digital Marketing")
    client = Client(name="Globex", industry="Energy", account_owner_id=account_owner.id)
    session.add_all([service, client])
    session.flush()
    opportunity = Opportunity(
        name="Globex Q3 Campaign",
        client_id=client.id,
        service_id=service.id,
        assigned_user_id=seller.id,
        status=status,
    )
    session.add(opportunity)
    session.commit()
    return Fixture(
        account_owner=account_owner,
        seller=seller,
        bu_owner=bu_owner,
        client=client,
        service=service,
        opportunity=opportunity,
    )


def _processor(session: Session, email_service: EmailService) -> WonOpportunityProcessor:
    store = SqlEntityStore(session)
    return WonOpportunityProcessor(
        store,
        Notifier(store, email_service),
        EscalationResolver(store),
        app_url="https://app.wondrlab.test",
    )


def _services_used(session: Session, client_id: uuid.UUID) -> list[uuid.UUID]:
    client = SqlEntityStore(session).get_client(client_id)
    assert client is not None
    return client.services_used


def test_won_opportunity_adds_service_and_notifies(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.status == "succeeded"
    assert result.scanned == 1
    assert result.processed == 1
    assert result.services_added == 1
    assert result.notifications_created == 2
    assert _services_used(db_session, fixture.client.id) == [fixture.service.id]

    notifications = db_session.scalars(select(Notification)).all()
    by_user = {notification.user_id: notification for notification in notifications}
    assert set(by_user) == {fixture.account_owner.id, fixture.bu_owner.id}
    assert by_user[fixture.account_owner.id].title == "Opportunity Won"
    assert by_user[fixture.account_owner.id].message == (
        'Opportunity "Globex Q3 Campaign" for service "Paid Social" has been won and added to client\'s services.'
    )
    assert by_user[fixture.bu_owner.id].title == "Opportunity Won - BU Notification"
    assert all(notification.type == "opportunity_won" for notification in notifications)
    assert all(notification.related_id == fixture.opportunity.id for notification in notifications)

    assert len(transport.messages) == 1
    message = transport.messages[0]
    assert message["Subject"] == "Opportunity Won: Globex Q3 Campaign"
    assert message["To"] == "owner@wondrlab.test, head@wondrlab.test, seller@wondrlab.test"
    assert "service name: Paid Social" in message.get_content()
    assert len(db_session.scalars(select(EmailLog)).all()) == 3

    assert len(audit.audit_entries) == 1
    entry = audit.audit_entries[0]
    assert entry["action"] == "client.service_added"
    assert entry["actor_user_id"] == "system.workflow"
    assert entry["after"] == {"services_used": [str(fixture.service.id)]}


def test_second_pass_is_a_no_op(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    processor = _processor(db_session, email_service)

    processor.process_won_opportunities()
    second = processor.process_won_opportunities()

    assert second.status == "succeeded"
    assert second.processed == 0
    assert second.skipped == 1
    assert _services_used(db_session, fixture.client.id) == [fixture.service.id]
    assert len(db_session.scalars(select(Notification)).all()) == 2
    assert len(transport.messages) == 1


def test_service_already_on_client_is_skipped(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    db_session.add(ClientService(client_id=fixture.client.id, service_id=fixture.service.id))
    db_session.commit()

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.skipped == 1
    assert result.services_added == 0
    assert db_session.scalars(select(Notification)).all() == []
    assert transport.messages == []
    assert len(audit.audit_entries) == 0


def test_open_opportunities_are_not_propagated(db_session: Session, email_service: EmailService) -> None:
    fixture = _seed(db_session, status="negotiation")

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.scanned == 0
    assert _services_used(db_session, fixture.client.id) == []


def test_deleted_opportunity_is_ignored(db_session: Session, email_service: EmailService) -> None:
    fixture = _seed(db_session)
    fixture.opportunity.is_deleted = True
    db_session.commit()

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.scanned == 0
    assert _services_used(db_session, fixture.client.id) == []


def test_missing_service_keeps_append_but_sends_nothing(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    missing_service_id = uuid.uuid4()
    fixture.opportunity.service_id = missing_service_id
    db_session.commit()

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.status == "succeeded"
    assert result.skipped == 1
    assert result.services_added == 1
    assert _services_used(db_session, fixture.client.id) == [missing_service_id]
    assert db_session.scalars(select(Notification)).all() == []
    assert transport.messages == []


def test_missing_client_is_skipped(db_session: Session, email_service: EmailService) -> None:
    fixture = _seed(db_session)
    fixture.opportunity.client_id = uuid.uuid4()
    db_session.commit()

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.status == "succeeded"
    assert result.skipped == 1
    assert db_session.scalars(select(ClientService)).all() == []


def test_recipients_are_filtered_by_preferences(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    preferences = db_session.scalar(select(EmailPreferences).where(EmailPreferences.user_id == fixture.seller.id))
    assert preferences is not None
    preferences.opportunity_won = False
    head_preferences = db_session.scalar(
        select(EmailPreferences).where(EmailPreferences.user_id == fixture.bu_owner.id)
    )
    assert head_preferences is not None
    head_preferences.email_frequency = "disabled"
    db_session.commit()

    _processor(db_session, email_service).process_won_opportunities()

    assert len(transport.messages) == 1
    assert transport.messages[0]["To"] == "owner@wondrlab.test"


def test_all_recipients_opted_out_sends_no_email(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    for preferences in db_session.scalars(select(EmailPreferences)).all():
        preferences.opportunity_won = False
    db_session.commit()

    result = _processor(db_session, email_service).process_won_opportunities()

    assert result.emails_sent == 0
    assert result.notifications_created == 2
    assert _services_used(db_session, fixture.client.id) == [fixture.service.id]
    assert transport.messages == []
    assert db_session.scalars(select(EmailLog)).all() == []


def test_account_owner_who_also_sold_is_emailed_once(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)
    fixture.opportunity.assigned_user_id = fixture.account_owner.id
    db_session.commit()

    _processor(db_session, email_service).process_won_opportunities()

    assert transport.messages[0]["To"] == "owner@wondrlab.test, head@wondrlab.test"


def test_append_lost_to_another_writer_is_skipped(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)

    class RacingStore(SqlEntityStore):
        def get_client(self, client_id: uuid.UUID) -> ClientRead | None:
            client = super().get_client(client_id)
            # A concurrent run propagates the same opportunity right after our read.
            self.session.add(ClientService(client_id=fixture.client.id, service_id=fixture.service.id))
            self.session.commit()
            return client

    store = RacingStore(db_session)
    processor = WonOpportunityProcessor(
        store,
        Notifier(store, email_service),
        EscalationResolver(store),
        app_url="https://app.wondrlab.test",
    )

    result = processor.process_won_opportunities()

    assert result.status == "succeeded"
    assert result.skipped == 1
    assert result.processed == 0
    assert result.services_added == 0
    assert result.notifications_created == 0
    assert _services_used(db_session, fixture.client.id) == [fixture.service.id]
    assert db_session.scalars(select(Notification)).all() == []
    assert transport.messages == []
    assert len(audit.audit_entries) == 0


def test_failed_owner_lookup_still_notifies_account_owner(
    db_session: Session,
    email_service: EmailService,
    transport: RecordingTransport,
) -> None:
    fixture = _seed(db_session)

    class TimingOutStore(SqlEntityStore):
        def get_active_business_unit(self, name: str):  # type: ignore[no-untyped-def]
            self.session.execute(text("SELECT owner_user_id FROM business_units_timeout"))

    store = TimingOutStore(db_session)
    processor = WonOpportunityProcessor(
        store,
        Notifier(store, email_service),
        EscalationResolver(store),
        app_url="https://app.wondrlab.test",
    )

    result = processor.process_won_opportunities()

    assert result.status == "succeeded"
    assert result.failures == []
    assert result.processed == 1
    assert result.notifications_created == 1
    assert _services_used(db_session, fixture.client.id) == [fixture.service.id]
    notifications = db_session.scalars(select(Notification)).all()
    assert [(notification.user_id, notification.title) for notification in notifications] == [
        (fixture.account_owner.id, "Opportunity Won")
    ]
    assert transport.messages[0]["To"] == "owner@wondrlab.test, seller@wondrlab.test"
