from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping

from .channels import (
    ChannelAdapter,
    DispatchError,
    ProviderNotConfiguredError,
    map_provider_status,
    mask_contact_target,
)
from .inbound import InboundMessage, TwilioStatusCallback
from .inbox_store import (
    ContactNotFoundError,
    ContactRecord,
    ConversationNotFoundError,
    ConversationRecord,
    ConversationSnapshot,
    InboxRepository,
    MessageRecord,
    NoteRecord,
    UserNotFoundError,
    UserRecord,
    unread_count,
)
from .models import (
    Channel,
    ContactCreateRequest,
    ContactItem,
    ContactListResponse,
    ContactSummary,
    ContactUpdateRequest,
    ConversationItem,
    ConversationListResponse,
    ConversationState,
    ConversationStatsResponse,
    ConversationUpdateRequest,
    ConversationWorkspace,
    LastMessagePreview,
    MessageItem,
    MessageListResponse,
    NoteItem,
    NoteListResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusCallbackResponse,
    UserCreateRequest,
    UserItem,
    UserListResponse,
    UserSummary,
    WebhookAckResponse,
)

logger = logging.getLogger(__name__)


class MissingChannelAddressError(ValueError):
    """Raised when a contact has no phone (SMS/WhatsApp) or email (Email) for the requested channel."""

    def __init__(self, channel: Channel) -> None:
        attribute = "email" if channel == "EMAIL" else "phone"
        super().__init__(f"contact has no {attribute} for channel {channel}")
        self.channel = channel


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _destination_for(contact: ContactRecord, channel: Channel) -> str | None:
    if channel == "EMAIL":
        return contact.email
    return contact.phone


class InboxService:
    def __init__(
        self,
        *,
        repository: InboxRepository,
        adapters: Mapping[Channel, ChannelAdapter],
    ) -> None:
        self._repository = repository
        self._adapters = dict(adapters)

    @property
    def repository(self) -> InboxRepository:
        return self._repository

    def reset(self) -> None:
        self._repository.reset()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def ingest_inbound(self, message: InboundMessage, *, source: str) -> WebhookAckResponse:
        status = map_provider_status(message.provider_status, direction="INBOUND")
        outcome = self._repository.ingest_inbound(message, status=status, occurred_at=_now_utc())
        sender = message.sender_phone or message.sender_email or ""
        if outcome.deduped:
            logger.info(
                "inbound %s message %s from %s already stored, acknowledging replay (source=%s)",
                message.channel,
                message.provider_message_id,
                mask_contact_target(sender, message.channel),
                source,
            )
        else:
            logger.info(
                "inbound %s message stored: message_id=%s conversation_id=%s sender=%s new_contact=%s new_conversation=%s",
                message.channel,
                outcome.message.message_id,
                outcome.conversation.conversation_id,
                mask_contact_target(sender, message.channel),
                outcome.contact_created,
                outcome.conversation_created,
            )
        return WebhookAckResponse(
            success=True,
            deduped=outcome.deduped,
            conversation_id=outcome.conversation.conversation_id,
            message_id=outcome.message.message_id,
        )

    def apply_status_update(self, callback: TwilioStatusCallback) -> StatusCallbackResponse:
        status = map_provider_status(callback.message_status, direction="OUTBOUND")
        outcome = self._repository.update_message_status(
            channel=callback.channel,
            external_id=callback.message_sid,
            status=status,
        )
        if outcome.message is None:
            logger.debug("status callback for unknown %s message %s ignored", callback.channel, callback.message_sid)
            return StatusCallbackResponse(success=True, updated=False, status=None)
        if outcome.updated:
            logger.info(
                "message %s status -> %s (provider=%s error_code=%s)",
                outcome.message.message_id,
                outcome.message.status,
                callback.message_status,
                callback.error_code,
            )
        else:
            logger.debug(
                "status %s for message %s ignored, current status %s",
                status,
                outcome.message.message_id,
                outcome.message.status,
            )
        return StatusCallbackResponse(success=True, updated=outcome.updated, status=outcome.message.status)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_message(self, payload: SendMessageRequest, *, user_id: str | None) -> SendMessageResponse:
        contact = self._repository.get_contact(payload.contact_id)
        if contact is None:
            raise ContactNotFoundError(payload.contact_id)
        destination = _destination_for(contact, payload.channel)
        if not destination:
            raise MissingChannelAddressError(payload.channel)

        adapter = self._adapters.get(payload.channel)
        if adapter is None:
            raise ProviderNotConfiguredError(payload.channel, f"{payload.channel} provider not configured")

        masked = mask_contact_target(destination, payload.channel)
        try:
            result = adapter.send(destination, payload.content)
        except ProviderNotConfiguredError as exc:
            logger.warning("outbound %s to %s not sent: %s", payload.channel, masked, exc.message)
            raise
        except DispatchError as exc:
            logger.warning(
                "outbound %s to %s failed: error_code=%s %s",
                payload.channel,
                masked,
                exc.error_code,
                exc.message,
            )
            raise

        outcome = self._repository.record_outbound(
            contact_id=contact.contact_id,
            channel=payload.channel,
            content=payload.content,
            external_id=result.external_id,
            status=result.status,
            user_id=user_id,
            occurred_at=result.attempted_at,
        )
        logger.info(
            "outbound %s message %s sent to %s (provider_status=%s)",
            payload.channel,
            outcome.message.message_id,
            masked,
            result.provider_status,
        )
        return SendMessageResponse(success=True, message=self._to_message_item(outcome.message))

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def create_contact(self, payload: ContactCreateRequest) -> ContactItem:
        record = self._repository.create_contact(name=payload.name, email=payload.email, phone=payload.phone)
        return self._to_contact_item(record, message_count=0)

    def list_contacts(self, *, search: str | None = None) -> ContactListResponse:
        items = self._repository.list_contacts(search=(search or "").strip() or None)
        return ContactListResponse(
            contacts=[self._to_contact_item(contact, message_count=count) for contact, count in items]
        )

    def get_contact(self, contact_id: str) -> ContactItem:
        record = self._repository.get_contact(contact_id)
        if record is None:
            raise ContactNotFoundError(contact_id)
        conversation = self._repository.latest_conversation_for_contact(contact_id)
        message_count = len(self._repository.list_messages(conversation.conversation_id)) if conversation else 0
        return self._to_contact_item(record, message_count=message_count)

    def update_contact(self, contact_id: str, payload: ContactUpdateRequest) -> ContactItem:
        changes = {field: getattr(payload, field) for field in payload.model_fields_set}
        self._repository.update_contact(contact_id, changes=changes)
        return self.get_contact(contact_id)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def list_conversations(
        self,
        *,
        user_id: str,
        workspace: ConversationWorkspace = "all",
        channel: Channel | None = None,
        state: ConversationState | None = None,
    ) -> ConversationListResponse:
        snapshots = self._repository.list_conversation_snapshots(
            unassigned_only=workspace == "unassigned",
            assigned_to_id=user_id if workspace == "mine" else None,
            channel=channel,
            state=state,
        )
        users = self._user_lookup()
        return ConversationListResponse(conversations=[self._to_conversation_item(item, users) for item in snapshots])

    def get_conversation(self, conversation_id: str) -> ConversationItem:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return self._conversation_item(conversation)

    def conversation_stats(self, *, user_id: str) -> ConversationStatsResponse:
        stats = self._repository.conversation_stats(user_id=user_id)
        return ConversationStatsResponse(
            unassigned=stats.unassigned,
            assigned=stats.assigned,
            waiting=stats.waiting,
            closed=stats.closed,
        )

    def update_conversation(
        self,
        conversation_id: str,
        payload: ConversationUpdateRequest,
        *,
        user_id: str,
    ) -> ConversationItem:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        # Assignment runs first so an explicit state in the same request wins over assign's OPEN.
        if payload.action == "assign":
            conversation = self._repository.assign_conversation(conversation_id, user_id=user_id)
        elif payload.action == "unassign":
            conversation = self._repository.unassign_conversation(conversation_id)
        if payload.state is not None:
            conversation = self._repository.set_conversation_state(conversation_id, state=payload.state)
        logger.info(
            "conversation %s updated by %s: action=%s state=%s",
            conversation_id,
            user_id,
            payload.action,
            conversation.state,
        )
        return self._conversation_item(conversation)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def list_messages(self, *, conversation_id: str | None = None, contact_id: str | None = None) -> MessageListResponse:
        if conversation_id is not None:
            if self._repository.get_conversation(conversation_id) is None:
                raise ConversationNotFoundError(conversation_id)
            resolved_id: str | None = conversation_id
        elif contact_id is not None:
            if self._repository.get_contact(contact_id) is None:
                raise ContactNotFoundError(contact_id)
            latest = self._repository.latest_conversation_for_contact(contact_id)
            resolved_id = latest.conversation_id if latest is not None else None
        else:
            raise ValueError("provide conversation_id or contact_id")

        if resolved_id is None:
            return MessageListResponse(conversation_id=None, messages=[])
        users = self._user_lookup()
        return MessageListResponse(
            conversation_id=resolved_id,
            messages=[self._to_message_item(item, users) for item in self._repository.list_messages(resolved_id)],
        )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_note(self, *, contact_id: str, content: str, user_id: str | None) -> NoteItem:
        record = self._repository.add_note(contact_id=contact_id, user_id=user_id, content=content)
        return self._to_note_item(record, self._user_lookup())

    def list_notes(self, contact_id: str) -> NoteListResponse:
        if self._repository.get_contact(contact_id) is None:
            raise ContactNotFoundError(contact_id)
        users = self._user_lookup()
        return NoteListResponse(notes=[self._to_note_item(item, users) for item in self._repository.list_notes(contact_id)])

    # ------------------------------------------------------------------
    # Team users
    # ------------------------------------------------------------------

    def create_user(self, payload: UserCreateRequest) -> UserItem:
        return self._to_user_item(self._repository.create_user(name=payload.name, email=payload.email, role=payload.role))

    def list_users(self) -> UserListResponse:
        return UserListResponse(users=[self._to_user_item(item) for item in self._repository.list_users()])

    def get_user(self, user_id: str) -> UserItem:
        record = self._repository.get_user(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        return self._to_user_item(record)

    # ------------------------------------------------------------------
    # Response mapping
    # ------------------------------------------------------------------

    def _user_lookup(self) -> dict[str, UserRecord]:
        return {user.user_id: user for user in self._repository.list_users()}

    def _conversation_item(self, conversation: ConversationRecord) -> ConversationItem:
        contact = self._repository.get_contact(conversation.contact_id)
        if contact is None:
            raise ContactNotFoundError(conversation.contact_id)
        messages = self._repository.list_messages(conversation.conversation_id)
        snapshot = ConversationSnapshot(
            conversation=conversation,
            contact=contact,
            last_message=messages[-1] if messages else None,
            unread_count=unread_count(messages),
        )
        return self._to_conversation_item(snapshot, self._user_lookup())

    @staticmethod
    def _user_summary(user_id: str | None, users: Mapping[str, UserRecord]) -> UserSummary | None:
        if user_id is None:
            return None
        user = users.get(user_id)
        if user is None:
            return None
        return UserSummary(id=user.user_id, name=user.name, email=user.email)

    @staticmethod
    def _to_user_item(record: UserRecord) -> UserItem:
        return UserItem(
            id=record.user_id,
            name=record.name,
            email=record.email,
            role=record.role,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_contact_item(record: ContactRecord, *, message_count: int) -> ContactItem:
        return ContactItem(
            id=record.contact_id,
            name=record.name,
            email=record.email,
            phone=record.phone,
            last_contacted_at=record.last_contacted_at,
            created_at=record.created_at,
            message_count=message_count,
        )

    def _to_message_item(self, record: MessageRecord, users: Mapping[str, UserRecord] | None = None) -> MessageItem:
        if users is None:
            users = self._user_lookup() if record.user_id else {}
        return MessageItem(
            id=record.message_id,
            conversation_id=record.conversation_id,
            contact_id=record.contact_id,
            channel=record.channel,
            content=record.content,
            direction=record.direction,
            status=record.status,
            external_id=record.external_id,
            user=self._user_summary(record.user_id, users),
            created_at=record.created_at,
        )

    def _to_note_item(self, record: NoteRecord, users: Mapping[str, UserRecord]) -> NoteItem:
        return NoteItem(
            id=record.note_id,
            contact_id=record.contact_id,
            content=record.content,
            user=self._user_summary(record.user_id, users),
            created_at=record.created_at,
        )

    def _to_conversation_item(self, snapshot: ConversationSnapshot, users: Mapping[str, UserRecord]) -> ConversationItem:
        conversation = snapshot.conversation
        contact = snapshot.contact
        last_message = None
        if snapshot.last_message is not None:
            last_message = LastMessagePreview(
                content=snapshot.last_message.content,
                channel=snapshot.last_message.channel,
                direction=snapshot.last_message.direction,
                created_at=snapshot.last_message.created_at,
            )
        return ConversationItem(
            id=conversation.conversation_id,
            contact=ContactSummary(id=contact.contact_id, name=contact.name, email=contact.email, phone=contact.phone),
            state=conversation.state,
            assigned_to=self._user_summary(conversation.assigned_to_id, users),
            last_message=last_message,
            last_message_at=conversation.last_message_at,
            unread_count=snapshot.unread_count,
            created_at=conversation.created_at,
        )
