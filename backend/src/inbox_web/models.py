from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Channel = Literal["SMS", "WHATSAPP", "EMAIL"]
MessageDirection = Literal["INBOUND", "OUTBOUND"]
MessageStatus = Literal["PENDING", "SENT", "DELIVERED", "READ", "FAILED"]
ConversationState = Literal["OPEN", "WAITING", "CLOSED"]
ConversationWorkspace = Literal["all", "unassigned", "mine"]
ConversationAction = Literal["assign", "unassign"]
UserRole = Literal["admin", "agent"]

# Column widths of the contacts and messages tables.
MAX_NAME_LENGTH = 256
MAX_EMAIL_LENGTH = 256
MAX_PHONE_LENGTH = 32
MAX_EXTERNAL_ID_LENGTH = 256


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    normalized = _optional_text(value)
    if normalized is None:
        return None
    return "".join(normalized.split())


def normalize_email(value: str | None) -> str | None:
    normalized = _optional_text(value)
    if normalized is None:
        return None
    return normalized.lower()


class UserSummary(BaseModel):
    id: str
    name: str
    email: str


class UserItem(UserSummary):
    role: UserRole
    created_at: datetime


class UserListResponse(BaseModel):
    users: list[UserItem]


class UserCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=256)
    role: UserRole = "agent"

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name cannot be blank")
        return normalized

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = normalize_email(value)
        if normalized is None or "@" not in normalized:
            raise ValueError("email must be a valid address")
        return normalized


class UserSessionResponse(BaseModel):
    user: UserItem
    session_token: str
    expires_at: datetime


class AdminLoginRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


class AdminLoginResponse(BaseModel):
    authenticated: bool
    session_token: str
    expires_at: datetime


class ContactItem(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    last_contacted_at: datetime | None = None
    created_at: datetime
    message_count: int = 0


class ContactSummary(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class ContactListResponse(BaseModel):
    contacts: list[ContactItem]


class ContactCreateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=MAX_NAME_LENGTH)
    email: str | None = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    phone: str | None = Field(default=None, max_length=MAX_PHONE_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str | None) -> str | None:
        return _optional_text(value)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        normalized = normalize_email(value)
        if normalized is not None and "@" not in normalized:
            raise ValueError("email must be a valid address")
        return normalized

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        return normalize_phone(value)

    @model_validator(mode="after")
    def _require_contact_method(self) -> ContactCreateRequest:
        if self.email is None and self.phone is None:
            raise ValueError("provide at least email or phone")
        return self


class ContactUpdateRequest(BaseModel):
    """Partial update; fields left out keep their value, explicit nulls clear them."""

    name: str | None = Field(default=None, max_length=MAX_NAME_LENGTH)
    email: str | None = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    phone: str | None = Field(default=None, max_length=MAX_PHONE_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str | None) -> str | None:
        return _optional_text(value)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        normalized = normalize_email(value)
        if normalized is not None and "@" not in normalized:
            raise ValueError("email must be a valid address")
        return normalized

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        return normalize_phone(value)

    @model_validator(mode="after")
    def _require_any_field(self) -> ContactUpdateRequest:
        if not self.model_fields_set:
            raise ValueError("provide at least one of name, email or phone")
        return self


class MessageItem(BaseModel):
    id: str
    conversation_id: str
    contact_id: str
    channel: Channel
    content: str
    direction: MessageDirection
    status: MessageStatus
    external_id: str | None = None
    user: UserSummary | None = None
    created_at: datetime


class MessageListResponse(BaseModel):
    conversation_id: str | None = None
    messages: list[MessageItem]


class SendMessageRequest(BaseModel):
    contact_id: str = Field(min_length=1, max_length=64)
    channel: Channel
    content: str = Field(min_length=1, max_length=4000)

    @field_validator("contact_id")
    @classmethod
    def _normalize_contact_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("contact_id cannot be blank")
        return normalized

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("content cannot be blank")
        return normalized


class SendMessageResponse(BaseModel):
    success: bool = True
    message: MessageItem


class LastMessagePreview(BaseModel):
    content: str
    channel: Channel
    direction: MessageDirection
    created_at: datetime


class ConversationItem(BaseModel):
    id: str
    contact: ContactSummary
    state: ConversationState
    assigned_to: UserSummary | None = None
    last_message: LastMessagePreview | None = None
    last_message_at: datetime
    unread_count: int
    created_at: datetime


class ConversationListResponse(BaseModel):
    conversations: list[ConversationItem]


class ConversationStatsResponse(BaseModel):
    unassigned: int
    assigned: int
    waiting: int
    closed: int


class ConversationUpdateRequest(BaseModel):
    action: ConversationAction | None = None
    state: ConversationState | None = None

    @model_validator(mode="after")
    def _require_change(self) -> ConversationUpdateRequest:
        if self.action is None and self.state is None:
            raise ValueError("provide an action or a state")
        return self


class NoteItem(BaseModel):
    id: str
    contact_id: str
    content: str
    user: UserSummary | None = None
    created_at: datetime


class NoteListResponse(BaseModel):
    notes: list[NoteItem]


class NoteCreateRequest(BaseModel):
    contact_id: str = Field(min_length=1, max_length=64)
    content: str = Field(min_length=1, max_length=4000)

    @field_validator("contact_id", "content")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized


class WebhookAckResponse(BaseModel):
    success: bool = True
    deduped: bool = False
    conversation_id: str | None = None
    message_id: str | None = None


class StatusCallbackResponse(BaseModel):
    success: bool = True
    updated: bool
    status: MessageStatus | None = None
