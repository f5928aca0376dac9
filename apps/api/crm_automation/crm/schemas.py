from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


TaskPriority = Literal["low", "medium", "high", "urgent"]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: str = "NEW"
    owner_user_id: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: str | None = None
    owner_user_id: str | None = None
    notes: str | None = None
    tags: list[str] | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    source: str | None
    status: str
    owner_user_id: str | None
    notes: str | None
    tags: list[str]
    client_id: UUID | None
    created_at: datetime
    updated_at: datetime


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    notes: str | None = None
    status: str = "ACTIVE"
    owner_user_id: str | None = None
    tags: list[str] = Field(default_factory=list)


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    notes: str | None
    status: str
    owner_user_id: str | None
    tags: list[str]
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    priority: TaskPriority = "medium"
    status: str = "todo"
    assignee_user_id: str | None = None
    lead_id: UUID | None = None
    client_id: UUID | None = None
    project_id: UUID | None = None
    due_at: datetime | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    priority: str
    status: str
    assignee_user_id: str | None
    lead_id: UUID | None
    client_id: UUID | None
    project_id: UUID | None
    due_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class QuoteCreate(BaseModel):
    quote_number: str = Field(min_length=1)
    lead_id: UUID | None = None
    total: Decimal = Field(default=Decimal("0"), ge=0)


class QuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quote_number: str
    lead_id: UUID | None
    status: str
    total: Decimal
    accepted_at: datetime | None
    created_at: datetime
    updated_at: datetime
