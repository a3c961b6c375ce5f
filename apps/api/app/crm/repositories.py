from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.crm.models import (
    BusinessUnit,
    BusinessUnitStatus,
    Client,
    ClientService,
    EmailLog,
    EmailPreferences,
    Notification,
    Opportunity,
    OpportunityStatus,
    Service,
    Task,
    TaskStatus,
    User,
    utcnow,
)
from app.crm.schemas import (
    BusinessUnitRead,
    ClientRead,
    EmailLogCreate,
    EmailPreferencesRead,
    NotificationCreate,
    NotificationRead,
    OpportunityRead,
    OverdueTaskView,
    ServiceRead,
    UserRead,
)


class EntityStore(Protocol):
    def list_overdue_tasks(self, now: datetime) -> list[OverdueTaskView]: ...

    def list_won_opportunities(self) -> list[OpportunityRead]: ...

    def get_client(self, client_id: uuid.UUID) -> ClientRead | None: ...

    def get_service(self, service_id: uuid.UUID) -> ServiceRead | None: ...

    def get_user(self, user_id: uuid.UUID) -> UserRead | None: ...

    def get_active_business_unit(self, name: str) -> BusinessUnitRead | None: ...

    def find_first_user_by_role(self, role: str) -> uuid.UUID | None: ...

    def get_email_preferences(self, user_id: uuid.UUID) -> EmailPreferencesRead | None: ...

    def add_notification(self, dto: NotificationCreate) -> NotificationRead: ...

    def add_service_to_client(self, client_id: uuid.UUID, service_id: uuid.UUID) -> bool: ...

    def add_email_log(self, dto: EmailLogCreate) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlEntityStore:
    def __init__(self, session: Session):
        self.session = session

    def list_overdue_tasks(self, now: datetime) -> list[OverdueTaskView]:
        stmt = (
            select(
                Task.id,
                Task.name,
                Task.opportunity_id,
                Task.assigned_user_id,
                Task.due_date,
                Task.status,
                Task.description,
                Opportunity.name.label("opportunity_name"),
                Client.name.label("client_name"),
                Service.name.label("service_name"),
                Service.business_unit.label("business_unit"),
                User.email.label("assigned_user_email"),
                User.username.label("assigned_user_name"),
            )
            .join(Opportunity, Opportunity.id == Task.opportunity_id)
            .join(Client, Client.id == Opportunity.client_id)
            .join(Service, Service.id == Opportunity.service_id)
            .join(User, User.id == Task.assigned_user_id)
            .where(
                and_(
                    Task.status != TaskStatus.COMPLETED.value,
                    Task.due_date < now,
                )
            )
            .order_by(Task.due_date.asc())
        )
        rows = self.session.execute(stmt).all()
        return [OverdueTaskView.model_validate(dict(row._mapping)) for row in rows]

    def list_won_opportunities(self) -> list[OpportunityRead]:
        stmt = (
            select(Opportunity)
            .where(
                and_(
                    Opportunity.status == OpportunityStatus.WON.value,
                    Opportunity.is_deleted.is_(False),
                )
            )
            .order_by(Opportunity.due_date.asc())
        )
        return [OpportunityRead.model_validate(row) for row in self.session.scalars(stmt).all()]

    def get_client(self, client_id: uuid.UUID) -> ClientRead | None:
        client = self.session.scalar(
            select(Client)
            .options(selectinload(Client.service_links))
            .where(Client.id == client_id)
            .execution_options(populate_existing=True)
        )
        if client is None:
            return None
        return ClientRead.model_validate(client)

    def get_service(self, service_id: uuid.UUID) -> ServiceRead | None:
        service = self.session.scalar(select(Service).where(Service.id == service_id))
        if service is None:
            return None
        return ServiceRead.model_validate(service)

    def get_user(self, user_id: uuid.UUID) -> UserRead | None:
        user = self.session.scalar(select(User).where(User.id == user_id))
        if user is None:
            return None
        return UserRead.model_validate(user)

    def get_active_business_unit(self, name: str) -> BusinessUnitRead | None:
        business_unit = self.session.scalar(
            select(BusinessUnit)
            .where(
                and_(
                    BusinessUnit.name == name,
                    BusinessUnit.status == BusinessUnitStatus.ACTIVE.value,
                )
            )
            .limit(1)
        )
        if business_unit is None:
            return None
        return BusinessUnitRead.model_validate(business_unit)

    def find_first_user_by_role(self, role: str) -> uuid.UUID | None:
        # No ordering: any holder of the role is an acceptable match.
        return self.session.scalar(select(User.id).where(User.role == role).limit(1))

    def get_email_preferences(self, user_id: uuid.UUID) -> EmailPreferencesRead | None:
        preferences = self.session.scalar(select(EmailPreferences).where(EmailPreferences.user_id == user_id))
        if preferences is None:
            return None
        return EmailPreferencesRead.model_validate(preferences)

    def add_notification(self, dto: NotificationCreate) -> NotificationRead:
        notification = Notification(**dto.model_dump(mode="python"))
        self.session.add(notification)
        self.session.flush()
        return NotificationRead.model_validate(notification)

    def add_service_to_client(self, client_id: uuid.UUID, service_id: uuid.UUID) -> bool:
        values = {"client_id": client_id, "service_id": service_id, "added_at": utcnow()}
        dialect_name = self.session.get_bind().dialect.name

        if dialect_name == "postgresql":
            stmt = pg_insert(ClientService).values(**values).on_conflict_do_nothing(
                index_elements=["client_id", "service_id"]
            )
        elif dialect_name == "sqlite":
            stmt = sqlite_insert(ClientService).values(**values).on_conflict_do_nothing(
                index_elements=["client_id", "service_id"]
            )
        else:
            try:
                with self.session.begin_nested():
                    self.session.add(ClientService(**values))
            except IntegrityError:
                return False
            return True

        result = self.session.execute(stmt)
        return bool(result.rowcount)

    def add_email_log(self, dto: EmailLogCreate) -> None:
        self.session.add(EmailLog(**dto.model_dump(mode="python")))
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
