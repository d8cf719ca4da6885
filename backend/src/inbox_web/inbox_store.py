from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, Mapping, Protocol
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, create_engine, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .conversation_state import (
    INITIAL_STATE,
    ConversationTransition,
    apply_assign,
    apply_message_activity,
    apply_set_state,
    apply_unassign,
)
from .inbound import InboundMessage
from .models import (
    MAX_EMAIL_LENGTH,
    MAX_EXTERNAL_ID_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PHONE_LENGTH,
    Channel,
    ConversationState,
    MessageDirection,
    MessageStatus,
    UserRole,
)

logger = logging.getLogger(__name__)

_STATUS_RANK: dict[str, int] = {"PENDING": 0, "SENT": 1, "DELIVERED": 2, "READ": 3}


class ContactNotFoundError(LookupError):
    """Raised when a contact id does not exist."""


class ConversationNotFoundError(LookupError):
    """Raised when a conversation id does not exist."""


class UserNotFoundError(LookupError):
    """Raised when a team user id does not exist."""


class ContactConflictError(ValueError):
    def __init__(self, field: str, value: str) -> None:
        super().__init__(f"contact with {field} {value!r} already exists")
        self.field = field


class UserConflictError(ValueError):
    """Raised when a team user email is already registered."""


class ContactValidationError(ValueError):
    """Raised when a contact would be left without an email and a phone."""


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    name: str
    email: str
    role: UserRole
    created_at: datetime


@dataclass(frozen=True)
class ContactRecord:
    contact_id: str
    name: str | None
    email: str | None
    phone: str | None
    last_contacted_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    contact_id: str
    state: ConversationState
    assigned_to_id: str | None
    last_message_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    contact_id: str
    channel: Channel
    content: str
    direction: MessageDirection
    status: MessageStatus
    external_id: str | None
    user_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class NoteRecord:
    note_id: str
    contact_id: str
    user_id: str | None
    content: str
    created_at: datetime


@dataclass(frozen=True)
class InboundOutcome:
    deduped: bool
    contact: ContactRecord
    conversation: ConversationRecord
    message: MessageRecord
    contact_created: bool = False
    conversation_created: bool = False


@dataclass(frozen=True)
class OutboundOutcome:
    contact: ContactRecord
    conversation: ConversationRecord
    message: MessageRecord


@dataclass(frozen=True)
class StatusUpdateOutcome:
    message: MessageRecord | None
    updated: bool


@dataclass(frozen=True)
class ConversationSnapshot:
    conversation: ConversationRecord
    contact: ContactRecord
    last_message: MessageRecord | None
    unread_count: int


@dataclass(frozen=True)
class ConversationStats:
    unassigned: int
    assigned: int
    waiting: int
    closed: int


class InboxRepository(Protocol):
    def reset(self) -> None: ...

    def create_user(self, *, name: str, email: str, role: UserRole) -> UserRecord: ...

    def get_user(self, user_id: str) -> UserRecord | None: ...

    def list_users(self) -> list[UserRecord]: ...

    def create_contact(self, *, name: str | None, email: str | None, phone: str | None) -> ContactRecord: ...

    def get_contact(self, contact_id: str) -> ContactRecord | None: ...

    def update_contact(self, contact_id: str, *, changes: Mapping[str, str | None]) -> ContactRecord: ...

    def list_contacts(self, *, search: str | None) -> list[tuple[ContactRecord, int]]: ...

    def get_or_create_conversation(self, contact_id: str) -> ConversationRecord: ...

    def find_message_by_external_id(self, channel: Channel, external_id: str) -> MessageRecord | None: ...

    def ingest_inbound(
        self,
        message: InboundMessage,
        *,
        status: MessageStatus,
        occurred_at: datetime,
    ) -> InboundOutcome: ...

    def record_outbound(
        self,
        *,
        contact_id: str,
        channel: Channel,
        content: str,
        external_id: str | None,
        status: MessageStatus,
        user_id: str | None,
        occurred_at: datetime,
    ) -> OutboundOutcome: ...

    def update_message_status(self, *, channel: Channel, external_id: str, status: MessageStatus) -> StatusUpdateOutcome: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def latest_conversation_for_contact(self, contact_id: str) -> ConversationRecord | None: ...

    def list_conversation_snapshots(
        self,
        *,
        unassigned_only: bool,
        assigned_to_id: str | None,
        channel: Channel | None,
        state: ConversationState | None,
    ) -> list[ConversationSnapshot]: ...

    def conversation_stats(self, *, user_id: str) -> ConversationStats: ...

    def assign_conversation(self, conversation_id: str, *, user_id: str) -> ConversationRecord: ...

    def unassign_conversation(self, conversation_id: str) -> ConversationRecord: ...

    def set_conversation_state(self, conversation_id: str, *, state: ConversationState) -> ConversationRecord: ...

    def list_messages(self, conversation_id: str) -> list[MessageRecord]: ...

    def add_note(self, *, contact_id: str, user_id: str | None, content: str) -> NoteRecord: ...

    def list_notes(self, contact_id: str) -> list[NoteRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def status_advances(current: MessageStatus, new: MessageStatus) -> bool:
    """Delivery receipts only move a message forward; FAILED cannot undo a delivery."""
    if current == new:
        return False
    if new == "FAILED":
        return current in {"PENDING", "SENT"}
    if current == "FAILED":
        return False
    return _STATUS_RANK[new] > _STATUS_RANK[current]


def unread_count(messages: Iterable[MessageRecord]) -> int:
    """Inbound messages received since the team last replied."""
    count = 0
    for message in messages:
        if message.direction == "OUTBOUND":
            count = 0
        else:
            count += 1
    return count


def _contact_sort_key(item: tuple[ContactRecord, int]) -> tuple[int, float, float]:
    contact = item[0]
    if contact.last_contacted_at is None:
        return (1, 0.0, -contact.created_at.timestamp())
    return (0, -contact.last_contacted_at.timestamp(), -contact.created_at.timestamp())


def _contact_matches(contact: ContactRecord, search: str) -> bool:
    term = search.lower()
    return any(
        value is not None and term in value.lower()
        for value in (contact.name, contact.email, contact.phone)
    )


def _apply_contact_changes(contact: ContactRecord, changes: Mapping[str, str | None]) -> ContactRecord:
    updated = replace(
        contact,
        name=changes.get("name", contact.name),
        email=changes.get("email", contact.email),
        phone=changes.get("phone", contact.phone),
    )
    if updated.email is None and updated.phone is None:
        raise ContactValidationError("contact must keep at least an email or a phone")
    return updated


def _transition_of(record: ConversationRecord) -> ConversationTransition:
    return ConversationTransition(
        state=record.state,
        assigned_to_id=record.assigned_to_id,
        last_message_at=record.last_message_at,
    )


def _with_transition(record: ConversationRecord, transition: ConversationTransition) -> ConversationRecord:
    return replace(
        record,
        state=transition.state,
        assigned_to_id=transition.assigned_to_id,
        last_message_at=transition.last_message_at,
    )


def _snapshot(
    conversation: ConversationRecord,
    contact: ContactRecord,
    messages: list[MessageRecord],
    channel: Channel | None,
) -> ConversationSnapshot | None:
    if channel is not None:
        channel_messages = [message for message in messages if message.channel == channel]
        if not channel_messages:
            return None
        last_message = channel_messages[-1]
    else:
        last_message = messages[-1] if messages else None
    return ConversationSnapshot(
        conversation=conversation,
        contact=contact,
        last_message=last_message,
        unread_count=unread_count(messages),
    )


class InMemoryInboxRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._users: dict[str, UserRecord] = {}
        self._contacts: dict[str, ContactRecord] = {}
        self._contact_by_phone: dict[str, str] = {}
        self._contact_by_email: dict[str, str] = {}
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversations_by_contact: dict[str, list[str]] = defaultdict(list)
        self._messages: dict[str, MessageRecord] = {}
        self._messages_by_conversation: dict[str, list[str]] = defaultdict(list)
        self._message_by_external_id: dict[tuple[str, str], str] = {}
        self._notes_by_contact: dict[str, list[NoteRecord]] = defaultdict(list)

    def reset(self) -> None:
        with self._lock:
            self._users.clear()
            self._contacts.clear()
            self._contact_by_phone.clear()
            self._contact_by_email.clear()
            self._conversations.clear()
            self._conversations_by_contact.clear()
            self._messages.clear()
            self._messages_by_conversation.clear()
            self._message_by_external_id.clear()
            self._notes_by_contact.clear()

    def create_user(self, *, name: str, email: str, role: UserRole) -> UserRecord:
        with self._lock:
            if any(user.email == email for user in self._users.values()):
                raise UserConflictError(f"user with email {email!r} already exists")
            record = UserRecord(user_id=_new_id("usr"), name=name, email=email, role=role, created_at=_now_utc())
            self._users[record.user_id] = record
            return record

    def get_user(self, user_id: str) -> UserRecord | None:
        with self._lock:
            return self._users.get(user_id)

    def list_users(self) -> list[UserRecord]:
        with self._lock:
            return sorted(self._users.values(), key=lambda item: item.created_at)

    def create_contact(self, *, name: str | None, email: str | None, phone: str | None) -> ContactRecord:
        if email is None and phone is None:
            raise ContactValidationError("provide at least email or phone")
        with self._lock:
            self._ensure_unique_locked(email=email, phone=phone, exclude_id=None)
            record = ContactRecord(
                contact_id=_new_id("ct"),
                name=name,
                email=email,
                phone=phone,
                last_contacted_at=None,
                created_at=_now_utc(),
            )
            self._store_contact_locked(record, previous=None)
            return record

    def get_contact(self, contact_id: str) -> ContactRecord | None:
        with self._lock:
            return self._contacts.get(contact_id)

    def update_contact(self, contact_id: str, *, changes: Mapping[str, str | None]) -> ContactRecord:
        with self._lock:
            existing = self._contacts.get(contact_id)
            if existing is None:
                raise ContactNotFoundError(contact_id)
            updated = _apply_contact_changes(existing, changes)
            self._ensure_unique_locked(email=updated.email, phone=updated.phone, exclude_id=contact_id)
            self._store_contact_locked(updated, previous=existing)
            return updated

    def list_contacts(self, *, search: str | None) -> list[tuple[ContactRecord, int]]:
        with self._lock:
            counts: dict[str, int] = defaultdict(int)
            for message in self._messages.values():
                counts[message.contact_id] += 1
            items = [
                (contact, counts[contact.contact_id])
                for contact in self._contacts.values()
                if not search or _contact_matches(contact, search)
            ]
        return sorted(items, key=_contact_sort_key)

    def get_or_create_conversation(self, contact_id: str) -> ConversationRecord:
        with self._lock:
            if contact_id not in self._contacts:
                raise ContactNotFoundError(contact_id)
            conversation, _ = self._get_or_create_conversation_locked(contact_id, now=_now_utc())
            return conversation

    def find_message_by_external_id(self, channel: Channel, external_id: str) -> MessageRecord | None:
        with self._lock:
            message_id = self._message_by_external_id.get((channel, external_id))
            return self._messages.get(message_id) if message_id is not None else None

    def ingest_inbound(
        self,
        message: InboundMessage,
        *,
        status: MessageStatus,
        occurred_at: datetime,
    ) -> InboundOutcome:
        with self._lock:
            if message.provider_message_id:
                existing_id = self._message_by_external_id.get((message.channel, message.provider_message_id))
                if existing_id is not None:
                    existing = self._messages[existing_id]
                    return InboundOutcome(
                        deduped=True,
                        contact=self._contacts[existing.contact_id],
                        conversation=self._conversations[existing.conversation_id],
                        message=existing,
                    )

            contact, contact_created = self._find_or_create_sender_locked(message, now=occurred_at)
            conversation, conversation_created = self._get_or_create_conversation_locked(
                contact.contact_id,
                now=occurred_at,
            )
            record = self._append_message_locked(
                conversation=conversation,
                channel=message.channel,
                content=message.body_text,
                direction="INBOUND",
                status=status,
                external_id=message.provider_message_id,
                user_id=None,
                occurred_at=occurred_at,
            )
            contact, conversation = self._touch_activity_locked(contact, conversation, occurred_at=occurred_at)
            return InboundOutcome(
                deduped=False,
                contact=contact,
                conversation=conversation,
                message=record,
                contact_created=contact_created,
                conversation_created=conversation_created,
            )

    def record_outbound(
        self,
        *,
        contact_id: str,
        channel: Channel,
        content: str,
        external_id: str | None,
        status: MessageStatus,
        user_id: str | None,
        occurred_at: datetime,
    ) -> OutboundOutcome:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is None:
                raise ContactNotFoundError(contact_id)
            conversation, _ = self._get_or_create_conversation_locked(contact_id, now=occurred_at)
            record = self._append_message_locked(
                conversation=conversation,
                channel=channel,
                content=content,
                direction="OUTBOUND",
                status=status,
                external_id=external_id,
                user_id=user_id,
                occurred_at=occurred_at,
            )
            contact, conversation = self._touch_activity_locked(contact, conversation, occurred_at=occurred_at)
            return OutboundOutcome(contact=contact, conversation=conversation, message=record)

    def update_message_status(self, *, channel: Channel, external_id: str, status: MessageStatus) -> StatusUpdateOutcome:
        with self._lock:
            message_id = self._message_by_external_id.get((channel, external_id))
            if message_id is None:
                return StatusUpdateOutcome(message=None, updated=False)
            existing = self._messages[message_id]
            if not status_advances(existing.status, status):
                return StatusUpdateOutcome(message=existing, updated=False)
            updated = replace(existing, status=status)
            self._messages[message_id] = updated
            return StatusUpdateOutcome(message=updated, updated=True)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def latest_conversation_for_contact(self, contact_id: str) -> ConversationRecord | None:
        with self._lock:
            candidates = [self._conversations[item] for item in self._conversations_by_contact.get(contact_id, [])]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.last_message_at)

    def list_conversation_snapshots(
        self,
        *,
        unassigned_only: bool,
        assigned_to_id: str | None,
        channel: Channel | None,
        state: ConversationState | None,
    ) -> list[ConversationSnapshot]:
        snapshots: list[ConversationSnapshot] = []
        with self._lock:
            for conversation in self._conversations.values():
                if unassigned_only and conversation.assigned_to_id is not None:
                    continue
                if assigned_to_id is not None and conversation.assigned_to_id != assigned_to_id:
                    continue
                if state is not None and conversation.state != state:
                    continue
                messages = [self._messages[item] for item in self._messages_by_conversation.get(conversation.conversation_id, [])]
                snapshot = _snapshot(conversation, self._contacts[conversation.contact_id], messages, channel)
                if snapshot is not None:
                    snapshots.append(snapshot)
        snapshots.sort(key=lambda item: item.conversation.last_message_at, reverse=True)
        return snapshots

    def conversation_stats(self, *, user_id: str) -> ConversationStats:
        with self._lock:
            conversations = list(self._conversations.values())
        return ConversationStats(
            unassigned=sum(1 for item in conversations if item.state == "OPEN" and item.assigned_to_id is None),
            assigned=sum(1 for item in conversations if item.state == "OPEN" and item.assigned_to_id == user_id),
            waiting=sum(1 for item in conversations if item.state == "WAITING"),
            closed=sum(1 for item in conversations if item.state == "CLOSED"),
        )

    def assign_conversation(self, conversation_id: str, *, user_id: str) -> ConversationRecord:
        with self._lock:
            if user_id not in self._users:
                raise UserNotFoundError(user_id)
            existing = self._require_conversation_locked(conversation_id)
            return self._save_conversation_locked(_with_transition(existing, apply_assign(_transition_of(existing), user_id=user_id)))

    def unassign_conversation(self, conversation_id: str) -> ConversationRecord:
        with self._lock:
            existing = self._require_conversation_locked(conversation_id)
            return self._save_conversation_locked(_with_transition(existing, apply_unassign(_transition_of(existing))))

    def set_conversation_state(self, conversation_id: str, *, state: ConversationState) -> ConversationRecord:
        with self._lock:
            existing = self._require_conversation_locked(conversation_id)
            return self._save_conversation_locked(
                _with_transition(existing, apply_set_state(_transition_of(existing), state=state))
            )

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._lock:
            return [self._messages[item] for item in self._messages_by_conversation.get(conversation_id, [])]

    def add_note(self, *, contact_id: str, user_id: str | None, content: str) -> NoteRecord:
        with self._lock:
            if contact_id not in self._contacts:
                raise ContactNotFoundError(contact_id)
            record = NoteRecord(
                note_id=_new_id("note"),
                contact_id=contact_id,
                user_id=user_id,
                content=content,
                created_at=_now_utc(),
            )
            self._notes_by_contact[contact_id].append(record)
            return record

    def list_notes(self, contact_id: str) -> list[NoteRecord]:
        with self._lock:
            return list(reversed(self._notes_by_contact.get(contact_id, [])))

    def _ensure_unique_locked(self, *, email: str | None, phone: str | None, exclude_id: str | None) -> None:
        if phone is not None and self._contact_by_phone.get(phone, exclude_id) != exclude_id:
            raise ContactConflictError("phone", phone)
        if email is not None and self._contact_by_email.get(email, exclude_id) != exclude_id:
            raise ContactConflictError("email", email)

    def _store_contact_locked(self, record: ContactRecord, *, previous: ContactRecord | None) -> None:
        if previous is not None:
            if previous.phone is not None:
                self._contact_by_phone.pop(previous.phone, None)
            if previous.email is not None:
                self._contact_by_email.pop(previous.email, None)
        self._contacts[record.contact_id] = record
        if record.phone is not None:
            self._contact_by_phone[record.phone] = record.contact_id
        if record.email is not None:
            self._contact_by_email[record.email] = record.contact_id

    def _find_or_create_sender_locked(self, message: InboundMessage, *, now: datetime) -> tuple[ContactRecord, bool]:
        if message.sender_phone is not None:
            existing_id = self._contact_by_phone.get(message.sender_phone)
        else:
            existing_id = self._contact_by_email.get(message.sender_email or "")
        if existing_id is not None:
            return self._contacts[existing_id], False
        record = ContactRecord(
            contact_id=_new_id("ct"),
            name=message.sender_name,
            email=message.sender_email,
            phone=message.sender_phone,
            last_contacted_at=None,
            created_at=now,
        )
        self._store_contact_locked(record, previous=None)
        return record, True

    def _get_or_create_conversation_locked(self, contact_id: str, *, now: datetime) -> tuple[ConversationRecord, bool]:
        conversation_ids = self._conversations_by_contact.get(contact_id)
        if conversation_ids:
            return self._conversations[conversation_ids[-1]], False
        record = ConversationRecord(
            conversation_id=_new_id("conv"),
            contact_id=contact_id,
            state=INITIAL_STATE,
            assigned_to_id=None,
            last_message_at=now,
            created_at=now,
        )
        self._conversations[record.conversation_id] = record
        self._conversations_by_contact[contact_id].append(record.conversation_id)
        return record, True

    def _append_message_locked(
        self,
        *,
        conversation: ConversationRecord,
        channel: Channel,
        content: str,
        direction: MessageDirection,
        status: MessageStatus,
        external_id: str | None,
        user_id: str | None,
        occurred_at: datetime,
    ) -> MessageRecord:
        record = MessageRecord(
            message_id=_new_id("msg"),
            conversation_id=conversation.conversation_id,
            contact_id=conversation.contact_id,
            channel=channel,
            content=content,
            direction=direction,
            status=status,
            external_id=external_id,
            user_id=user_id,
            created_at=occurred_at,
        )
        self._messages[record.message_id] = record
        self._messages_by_conversation[conversation.conversation_id].append(record.message_id)
        if external_id:
            self._message_by_external_id[(channel, external_id)] = record.message_id
        return record

    def _touch_activity_locked(
        self,
        contact: ContactRecord,
        conversation: ConversationRecord,
        *,
        occurred_at: datetime,
    ) -> tuple[ContactRecord, ConversationRecord]:
        if contact.last_contacted_at is None or contact.last_contacted_at < occurred_at:
            contact = replace(contact, last_contacted_at=occurred_at)
        self._contacts[contact.contact_id] = contact
        conversation = self._save_conversation_locked(
            _with_transition(conversation, apply_message_activity(_transition_of(conversation), occurred_at=occurred_at))
        )
        return contact, conversation

    def _require_conversation_locked(self, conversation_id: str) -> ConversationRecord:
        existing = self._conversations.get(conversation_id)
        if existing is None:
            raise ConversationNotFoundError(conversation_id)
        return existing

    def _save_conversation_locked(self, record: ConversationRecord) -> ConversationRecord:
        self._conversations[record.conversation_id] = record
        return record


class InboxBase(DeclarativeBase):
    pass


class _UserRow(InboxBase):
    __tablename__ = "inbox_users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="agent")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ContactRow(InboxBase):
    __tablename__ = "contacts"

    contact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(MAX_NAME_LENGTH), nullable=True)
    email: Mapped[str | None] = mapped_column(String(MAX_EMAIL_LENGTH), nullable=True, unique=True)
    phone: Mapped[str | None] = mapped_column(String(MAX_PHONE_LENGTH), nullable=True, unique=True)
    last_contacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationRow(InboxBase):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.contact_id"), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN", index=True)
    assigned_to_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("inbox_users.user_id"), nullable=True, index=True
    )
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(InboxBase):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("channel", "external_id", name="uq_messages_channel_external_id"),)

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.contact_id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(MAX_EXTERNAL_ID_LENGTH), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("inbox_users.user_id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _NoteRow(InboxBase):
    __tablename__ = "notes"

    note_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.contact_id"), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("inbox_users.user_id"), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def get_or_create_conversation(session: Session, contact_id: str, *, now: datetime) -> tuple[_ConversationRow, bool]:
    """Resolve the contact's most recently created conversation, creating one when none exists.

    Must be called inside the caller's transaction so the lookup and the insert
    commit (or roll back) together with the message that triggered them.
    """
    row = session.scalar(
        select(_ConversationRow)
        .where(_ConversationRow.contact_id == contact_id)
        .order_by(_ConversationRow.created_at.desc())
        .limit(1)
    )
    if row is not None:
        return row, False
    row = _ConversationRow(
        conversation_id=_new_id("conv"),
        contact_id=contact_id,
        state=INITIAL_STATE,
        assigned_to_id=None,
        last_message_at=now,
        created_at=now,
    )
    session.add(row)
    session.flush()
    return row, True


class SqlAlchemyInboxRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for INBOX_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            InboxBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_NoteRow))
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))
                session.execute(delete(_ContactRow))
                session.execute(delete(_UserRow))

    def create_user(self, *, name: str, email: str, role: UserRole) -> UserRecord:
        row = _UserRow(user_id=_new_id("usr"), name=name, email=email, role=role, created_at=_now_utc())
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise UserConflictError(f"user with email {email!r} already exists") from exc
        return self._user_record(row)

    def get_user(self, user_id: str) -> UserRecord | None:
        with self._session() as session:
            row = session.get(_UserRow, user_id)
            return self._user_record(row) if row is not None else None

    def list_users(self) -> list[UserRecord]:
        with self._session() as session:
            rows = session.scalars(select(_UserRow).order_by(_UserRow.created_at.asc())).all()
            return [self._user_record(row) for row in rows]

    def create_contact(self, *, name: str | None, email: str | None, phone: str | None) -> ContactRecord:
        if email is None and phone is None:
            raise ContactValidationError("provide at least email or phone")
        row = _ContactRow(
            contact_id=_new_id("ct"),
            name=name,
            email=email,
            phone=phone,
            last_contacted_at=None,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    self._ensure_unique(session, email=email, phone=phone, exclude_id=None)
                    session.add(row)
        except IntegrityError as exc:
            raise ContactConflictError("phone" if phone else "email", phone or email or "") from exc
        return self._contact_record(row)

    def get_contact(self, contact_id: str) -> ContactRecord | None:
        with self._session() as session:
            row = session.get(_ContactRow, contact_id)
            return self._contact_record(row) if row is not None else None

    def update_contact(self, contact_id: str, *, changes: Mapping[str, str | None]) -> ContactRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ContactRow, contact_id, with_for_update=True)
                    if row is None:
                        raise ContactNotFoundError(contact_id)
                    updated = _apply_contact_changes(self._contact_record(row), changes)
                    self._ensure_unique(session, email=updated.email, phone=updated.phone, exclude_id=contact_id)
                    row.name = updated.name
                    row.email = updated.email
                    row.phone = updated.phone
                    session.flush()
                    return self._contact_record(row)
        except IntegrityError as exc:
            raise ContactConflictError("phone" if "phone" in changes else "email", str(changes)) from exc

    def list_contacts(self, *, search: str | None) -> list[tuple[ContactRecord, int]]:
        with self._session() as session:
            query = select(_ContactRow)
            if search:
                term = search.lower()
                query = query.where(
                    or_(
                        func.lower(_ContactRow.name).contains(term, autoescape=True),
                        func.lower(_ContactRow.email).contains(term, autoescape=True),
                        _ContactRow.phone.contains(search, autoescape=True),
                    )
                )
            rows = session.scalars(query).all()
            counts = dict(
                session.execute(
                    select(_MessageRow.contact_id, func.count()).group_by(_MessageRow.contact_id)
                ).all()
            )
            items = [(self._contact_record(row), int(counts.get(row.contact_id, 0))) for row in rows]
        return sorted(items, key=_contact_sort_key)

    def get_or_create_conversation(self, contact_id: str) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                contact = session.get(_ContactRow, contact_id, with_for_update=True)
                if contact is None:
                    raise ContactNotFoundError(contact_id)
                row, _ = get_or_create_conversation(session, contact_id, now=_now_utc())
                return self._conversation_record(row)

    def find_message_by_external_id(self, channel: Channel, external_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = self._message_by_external_id(session, channel, external_id)
            return self._message_record(row) if row is not None else None

    def ingest_inbound(
        self,
        message: InboundMessage,
        *,
        status: MessageStatus,
        occurred_at: datetime,
    ) -> InboundOutcome:
        try:
            return self._ingest_inbound_once(message, status=status, occurred_at=occurred_at)
        except IntegrityError:
            # A concurrent delivery inserted the same sender or message first; the retry reads its rows.
            logger.info(
                "inbound %s %s raced a concurrent insert, retrying",
                message.channel,
                message.provider_message_id,
            )
            return self._ingest_inbound_once(message, status=status, occurred_at=occurred_at)

    def _ingest_inbound_once(
        self,
        message: InboundMessage,
        *,
        status: MessageStatus,
        occurred_at: datetime,
    ) -> InboundOutcome:
        with self._session() as session:
            with session.begin():
                if message.provider_message_id:
                    existing = self._message_by_external_id(session, message.channel, message.provider_message_id)
                    if existing is not None:
                        return InboundOutcome(
                            deduped=True,
                            contact=self._contact_record(session.get(_ContactRow, existing.contact_id)),
                            conversation=self._conversation_record(
                                session.get(_ConversationRow, existing.conversation_id)
                            ),
                            message=self._message_record(existing),
                        )

                contact, contact_created = self._find_or_create_sender(session, message, now=occurred_at)
                conversation, conversation_created = get_or_create_conversation(
                    session,
                    contact.contact_id,
                    now=occurred_at,
                )
                row = self._append_message(
                    session,
                    conversation=conversation,
                    channel=message.channel,
                    content=message.body_text,
                    direction="INBOUND",
                    status=status,
                    external_id=message.provider_message_id,
                    user_id=None,
                    occurred_at=occurred_at,
                )
                self._touch_activity(contact, conversation, occurred_at=occurred_at)
                session.flush()
                return InboundOutcome(
                    deduped=False,
                    contact=self._contact_record(contact),
                    conversation=self._conversation_record(conversation),
                    message=self._message_record(row),
                    contact_created=contact_created,
                    conversation_created=conversation_created,
                )

    def record_outbound(
        self,
        *,
        contact_id: str,
        channel: Channel,
        content: str,
        external_id: str | None,
        status: MessageStatus,
        user_id: str | None,
        occurred_at: datetime,
    ) -> OutboundOutcome:
        with self._session() as session:
            with session.begin():
                contact = session.get(_ContactRow, contact_id, with_for_update=True)
                if contact is None:
                    raise ContactNotFoundError(contact_id)
                conversation, _ = get_or_create_conversation(session, contact_id, now=occurred_at)
                row = self._append_message(
                    session,
                    conversation=conversation,
                    channel=channel,
                    content=content,
                    direction="OUTBOUND",
                    status=status,
                    external_id=external_id,
                    user_id=user_id,
                    occurred_at=occurred_at,
                )
                self._touch_activity(contact, conversation, occurred_at=occurred_at)
                session.flush()
                return OutboundOutcome(
                    contact=self._contact_record(contact),
                    conversation=self._conversation_record(conversation),
                    message=self._message_record(row),
                )

    def update_message_status(self, *, channel: Channel, external_id: str, status: MessageStatus) -> StatusUpdateOutcome:
        with self._session() as session:
            with session.begin():
                row = self._message_by_external_id(session, channel, external_id, for_update=True)
                if row is None:
                    return StatusUpdateOutcome(message=None, updated=False)
                if not status_advances(row.status, status):  # type: ignore[arg-type]
                    return StatusUpdateOutcome(message=self._message_record(row), updated=False)
                row.status = status
                session.flush()
                return StatusUpdateOutcome(message=self._message_record(row), updated=True)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def latest_conversation_for_contact(self, contact_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ConversationRow)
                .where(_ConversationRow.contact_id == contact_id)
                .order_by(_ConversationRow.last_message_at.desc())
                .limit(1)
            )
            return self._conversation_record(row) if row is not None else None

    def list_conversation_snapshots(
        self,
        *,
        unassigned_only: bool,
        assigned_to_id: str | None,
        channel: Channel | None,
        state: ConversationState | None,
    ) -> list[ConversationSnapshot]:
        with self._session() as session:
            query = select(_ConversationRow, _ContactRow).join(
                _ContactRow, _ContactRow.contact_id == _ConversationRow.contact_id
            )
            if unassigned_only:
                query = query.where(_ConversationRow.assigned_to_id.is_(None))
            if assigned_to_id is not None:
                query = query.where(_ConversationRow.assigned_to_id == assigned_to_id)
            if state is not None:
                query = query.where(_ConversationRow.state == state)
            pairs = session.execute(query.order_by(_ConversationRow.last_message_at.desc())).all()
            if not pairs:
                return []

            conversation_ids = [conversation.conversation_id for conversation, _ in pairs]
            messages_by_conversation: dict[str, list[MessageRecord]] = defaultdict(list)
            message_rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id.in_(conversation_ids))
                .order_by(_MessageRow.created_at.asc())
            ).all()
            for row in message_rows:
                messages_by_conversation[row.conversation_id].append(self._message_record(row))

            snapshots: list[ConversationSnapshot] = []
            for conversation, contact in pairs:
                snapshot = _snapshot(
                    self._conversation_record(conversation),
                    self._contact_record(contact),
                    messages_by_conversation.get(conversation.conversation_id, []),
                    channel,
                )
                if snapshot is not None:
                    snapshots.append(snapshot)
            return snapshots

    def conversation_stats(self, *, user_id: str) -> ConversationStats:
        def _count(session: Session, *conditions) -> int:
            return int(session.scalar(select(func.count()).select_from(_ConversationRow).where(*conditions)) or 0)

        with self._session() as session:
            return ConversationStats(
                unassigned=_count(session, _ConversationRow.state == "OPEN", _ConversationRow.assigned_to_id.is_(None)),
                assigned=_count(session, _ConversationRow.state == "OPEN", _ConversationRow.assigned_to_id == user_id),
                waiting=_count(session, _ConversationRow.state == "WAITING"),
                closed=_count(session, _ConversationRow.state == "CLOSED"),
            )

    def assign_conversation(self, conversation_id: str, *, user_id: str) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_UserRow, user_id) is None:
                    raise UserNotFoundError(user_id)
                row = self._require_conversation(session, conversation_id)
                self._apply_transition(row, apply_assign(self._transition(row), user_id=user_id))
                session.flush()
                return self._conversation_record(row)

    def unassign_conversation(self, conversation_id: str) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = self._require_conversation(session, conversation_id)
                self._apply_transition(row, apply_unassign(self._transition(row)))
                session.flush()
                return self._conversation_record(row)

    def set_conversation_state(self, conversation_id: str, *, state: ConversationState) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = self._require_conversation(session, conversation_id)
                self._apply_transition(row, apply_set_state(self._transition(row), state=state))
                session.flush()
                return self._conversation_record(row)

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.asc())
            ).all()
            return [self._message_record(row) for row in rows]

    def add_note(self, *, contact_id: str, user_id: str | None, content: str) -> NoteRecord:
        row = _NoteRow(
            note_id=_new_id("note"),
            contact_id=contact_id,
            user_id=user_id,
            content=content,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                if session.get(_ContactRow, contact_id) is None:
                    raise ContactNotFoundError(contact_id)
                session.add(row)
        return self._note_record(row)

    def list_notes(self, contact_id: str) -> list[NoteRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_NoteRow).where(_NoteRow.contact_id == contact_id).order_by(_NoteRow.created_at.desc())
            ).all()
            return [self._note_record(row) for row in rows]

    @staticmethod
    def _ensure_unique(session: Session, *, email: str | None, phone: str | None, exclude_id: str | None) -> None:
        if phone is not None:
            owner = session.scalar(select(_ContactRow.contact_id).where(_ContactRow.phone == phone))
            if owner is not None and owner != exclude_id:
                raise ContactConflictError("phone", phone)
        if email is not None:
            owner = session.scalar(select(_ContactRow.contact_id).where(_ContactRow.email == email))
            if owner is not None and owner != exclude_id:
                raise ContactConflictError("email", email)

    @staticmethod
    def _message_by_external_id(
        session: Session,
        channel: str,
        external_id: str,
        *,
        for_update: bool = False,
    ) -> _MessageRow | None:
        query = select(_MessageRow).where(
            _MessageRow.channel == channel,
            _MessageRow.external_id == external_id,
        )
        if for_update:
            query = query.with_for_update()
        return session.scalar(query)

    @staticmethod
    def _find_or_create_sender(session: Session, message: InboundMessage, *, now: datetime) -> tuple[_ContactRow, bool]:
        if message.sender_phone is not None:
            condition = _ContactRow.phone == message.sender_phone
        else:
            condition = _ContactRow.email == message.sender_email
        row = session.scalar(select(_ContactRow).where(condition).with_for_update())
        if row is not None:
            return row, False
        row = _ContactRow(
            contact_id=_new_id("ct"),
            name=message.sender_name,
            email=message.sender_email,
            phone=message.sender_phone,
            last_contacted_at=None,
            created_at=now,
        )
        session.add(row)
        session.flush()
        return row, True

    @staticmethod
    def _append_message(
        session: Session,
        *,
        conversation: _ConversationRow,
        channel: Channel,
        content: str,
        direction: MessageDirection,
        status: MessageStatus,
        external_id: str | None,
        user_id: str | None,
        occurred_at: datetime,
    ) -> _MessageRow:
        row = _MessageRow(
            message_id=_new_id("msg"),
            conversation_id=conversation.conversation_id,
            contact_id=conversation.contact_id,
            channel=channel,
            content=content,
            direction=direction,
            status=status,
            external_id=external_id,
            user_id=user_id,
            created_at=occurred_at,
        )
        session.add(row)
        return row

    def _touch_activity(self, contact: _ContactRow, conversation: _ConversationRow, *, occurred_at: datetime) -> None:
        if contact.last_contacted_at is None or _coerce_utc(contact.last_contacted_at) < occurred_at:
            contact.last_contacted_at = occurred_at
        self._apply_transition(conversation, apply_message_activity(self._transition(conversation), occurred_at=occurred_at))

    @staticmethod
    def _require_conversation(session: Session, conversation_id: str) -> _ConversationRow:
        row = session.get(_ConversationRow, conversation_id, with_for_update=True)
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return row

    @staticmethod
    def _transition(row: _ConversationRow) -> ConversationTransition:
        return ConversationTransition(
            state=row.state,  # type: ignore[arg-type]
            assigned_to_id=row.assigned_to_id,
            last_message_at=_coerce_utc(row.last_message_at),
        )

    @staticmethod
    def _apply_transition(row: _ConversationRow, transition: ConversationTransition) -> None:
        row.state = transition.state
        row.assigned_to_id = transition.assigned_to_id
        row.last_message_at = transition.last_message_at

    @staticmethod
    def _user_record(row: _UserRow) -> UserRecord:
        return UserRecord(
            user_id=row.user_id,
            name=row.name,
            email=row.email,
            role=row.role,  # type: ignore[arg-type]
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _contact_record(row: _ContactRow) -> ContactRecord:
        return ContactRecord(
            contact_id=row.contact_id,
            name=row.name,
            email=row.email,
            phone=row.phone,
            last_contacted_at=_coerce_utc(row.last_contacted_at) if row.last_contacted_at is not None else None,
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            contact_id=row.contact_id,
            state=row.state,  # type: ignore[arg-type]
            assigned_to_id=row.assigned_to_id,
            last_message_at=_coerce_utc(row.last_message_at),
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            contact_id=row.contact_id,
            channel=row.channel,  # type: ignore[arg-type]
            content=row.content,
            direction=row.direction,  # type: ignore[arg-type]
            status=row.status,  # type: ignore[arg-type]
            external_id=row.external_id,
            user_id=row.user_id,
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _note_record(row: _NoteRow) -> NoteRecord:
        return NoteRecord(
            note_id=row.note_id,
            contact_id=row.contact_id,
            user_id=row.user_id,
            content=row.content,
            created_at=_coerce_utc(row.created_at),
        )


def create_inbox_repository(*, backend: str, database_url: str) -> InboxRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyInboxRepository(database_url)
    if normalized == "inmemory":
        return InMemoryInboxRepository()
    raise RuntimeError(f"unsupported INBOX_STORE_BACKEND: {backend}")
