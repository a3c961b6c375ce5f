from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


EmailFrequency = Literal["immediate", "daily", "weekly", "disabled"]
EmailLogStatus = Literal["sent", "failed"]


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    role: str


class BusinessUnitRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str
    status: str
    owner_user_id: UUID | None


class ServiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str
    business_unit: str
    status: str


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    industry: str
    account_owner_id: UUID
    status: str
    services_used: list[UUID] = Field(default_factory=list)


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    client_id: UUID
    service_id: UUID
    assigned_user_id: UUID
    status: str
    priority: str
    estimated_value: Decimal
    due_date: date | None
    notes: str | None = None


class OverdueTaskView(BaseModel):
    """A task past due, enriched with the assignee and business-unit context."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    opportunity_id: UUID
    assigned_user_id: UUID
    due_date: datetime
    status: str
    description: str | None = None
    opportunity_name: str
    client_name: str
    service_name: str
    business_unit: str
    assigned_user_email: str
    assigned_user_name: str


class NotificationCreate(BaseModel):
    user_id: UUID
    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    related_to: str = Field(min_length=1)
    related_id: UUID


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    type: str
    title: str
    message: str
    related_to: str
    related_id: UUID
    is_read: bool
    created_at: datetime


class EmailPreferencesRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    task_assignments: bool
    task_overdue: bool
    task_escalations: bool
    opportunity_updates: bool
    opportunity_won: bool
    daily_digest: bool
    weekly_digest: bool
    email_frequency: EmailFrequency
    digest_time: str


class EmailLogCreate(BaseModel):
    recipient_email: str
    subject: str
    template_name: str | None = None
    status: EmailLogStatus
    message_id: str | None = None
    error_message: str | None = None
    correlation_id: str | None = None
