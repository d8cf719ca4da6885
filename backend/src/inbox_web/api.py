from __future__ import annotations

import json
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from .channels import DispatchError, ProviderNotConfiguredError
from .config import Settings
from .inbound import InboundPayloadError, parse_email_inbound, parse_twilio_inbound, parse_twilio_status
from .inbox import InboxService, MissingChannelAddressError
from .inbox_store import (
    ContactConflictError,
    ContactNotFoundError,
    ContactValidationError,
    ConversationNotFoundError,
    UserConflictError,
    UserNotFoundError,
)
from .models import (
    AdminLoginRequest,
    AdminLoginResponse,
    Channel,
    ContactCreateRequest,
    ContactItem,
    ContactListResponse,
    ContactUpdateRequest,
    ConversationItem,
    ConversationListResponse,
    ConversationState,
    ConversationStatsResponse,
    ConversationUpdateRequest,
    ConversationWorkspace,
    MessageListResponse,
    NoteCreateRequest,
    NoteItem,
    NoteListResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusCallbackResponse,
    UserCreateRequest,
    UserItem,
    UserListResponse,
    UserSessionResponse,
    WebhookAckResponse,
)
from .user_tokens import ADMIN_SUBJECT, UserTokenError, create_user_token, decode_user_token, encode_user_token
from .webhook_security import public_webhook_url, verify_email_secret, verify_twilio_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inbox"])

_ADMIN_SESSION_TTL_MINUTES = 480


def get_inbox_service(request: Request) -> InboxService:
    return request.app.state.inbox_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _bearer_token(request: Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ").strip()


def require_admin(request: Request, settings: Settings = Depends(get_app_settings)) -> None:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "admin session required")
    try:
        payload = decode_user_token(token, secret=settings.admin_session_secret)
        if payload.user_id != ADMIN_SUBJECT:
            raise UserTokenError("not an admin token")
    except UserTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def require_user(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: InboxService = Depends(get_inbox_service),
) -> str:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "session required")
    try:
        payload = decode_user_token(token, secret=settings.user_session_secret)
    except UserTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    if service.repository.get_user(payload.user_id) is None:
        raise HTTPException(401, "session user not found")
    return payload.user_id


def _signed_url(request: Request, settings: Settings) -> str:
    return public_webhook_url(
        settings,
        request_url=str(request.url),
        path=request.url.path,
        query=request.url.query,
    )


async def _read_twilio_form(request: Request, settings: Settings) -> dict[str, str]:
    raw_body = await request.body()
    form = dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
    verification = verify_twilio_signature(
        settings=settings,
        url=_signed_url(request, settings),
        form_data=form,
        headers=request.headers,
    )
    if not verification.verified:
        if settings.webhook_signature_mode == "log_only":
            logger.warning("twilio webhook signature check failed (log_only): %s", verification.reason)
        else:
            logger.warning("twilio webhook rejected: %s", verification.reason)
            raise HTTPException(403, f"invalid webhook signature: {verification.reason}")
    return form


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks/twilio", response_model=WebhookAckResponse)
async def twilio_inbound_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: InboxService = Depends(get_inbox_service),
) -> WebhookAckResponse:
    form = await _read_twilio_form(request, settings)
    try:
        inbound = parse_twilio_inbound(form)
    except InboundPayloadError as exc:
        raise HTTPException(400, str(exc)) from exc
    return await run_in_threadpool(service.ingest_inbound, inbound.to_inbound_message(), source="twilio")


@router.post("/webhooks/twilio/status", response_model=StatusCallbackResponse)
async def twilio_status_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: InboxService = Depends(get_inbox_service),
) -> StatusCallbackResponse:
    form = await _read_twilio_form(request, settings)
    try:
        callback = parse_twilio_status(form)
    except InboundPayloadError as exc:
        raise HTTPException(400, str(exc)) from exc
    return await run_in_threadpool(service.apply_status_update, callback)


@router.post("/webhooks/email", response_model=WebhookAckResponse)
async def email_inbound_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: InboxService = Depends(get_inbox_service),
) -> WebhookAckResponse:
    verification = verify_email_secret(settings=settings, headers=request.headers)
    if not verification.verified:
        if settings.webhook_signature_mode == "log_only":
            logger.warning("email webhook secret check failed (log_only): %s", verification.reason)
        else:
            logger.warning("email webhook rejected: %s", verification.reason)
            raise HTTPException(403, f"invalid webhook secret: {verification.reason}")

    raw_body = await request.body()
    try:
        inbound = parse_email_inbound(json.loads(raw_body or b"null"))
    except ValueError as exc:
        # InboundPayloadError and json.JSONDecodeError are both ValueErrors.
        raise HTTPException(400, str(exc)) from exc
    return await run_in_threadpool(service.ingest_inbound, inbound.to_inbound_message(), source="email")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.post("/messages/send", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    payload: SendMessageRequest,
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> SendMessageResponse:
    try:
        return service.send_message(payload, user_id=user_id)
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {payload.contact_id}") from exc
    except MissingChannelAddressError as exc:
        raise HTTPException(400, str(exc)) from exc
    except ProviderNotConfiguredError as exc:
        raise HTTPException(503, exc.message) from exc
    except DispatchError as exc:
        raise HTTPException(502, f"dispatch failed: {exc.message}") from exc


@router.get("/messages", response_model=MessageListResponse)
def list_messages(
    conversation_id: str | None = None,
    contact_id: str | None = None,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> MessageListResponse:
    if not conversation_id and not contact_id:
        raise HTTPException(400, "conversation_id or contact_id is required")
    try:
        return service.list_messages(conversation_id=conversation_id or None, contact_id=contact_id or None)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {contact_id}") from exc


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    workspace: ConversationWorkspace = "all",
    channel: Channel | None = None,
    state: ConversationState | None = None,
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ConversationListResponse:
    return service.list_conversations(user_id=user_id, workspace=workspace, channel=channel, state=state)


@router.get("/conversations/stats", response_model=ConversationStatsResponse)
def conversation_stats(
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ConversationStatsResponse:
    return service.conversation_stats(user_id=user_id)


@router.get("/conversations/{conversation_id}", response_model=ConversationItem)
def get_conversation(
    conversation_id: str,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ConversationItem:
    try:
        return service.get_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.patch("/conversations/{conversation_id}", response_model=ConversationItem)
def update_conversation(
    conversation_id: str,
    payload: ConversationUpdateRequest,
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ConversationItem:
    try:
        return service.update_conversation(conversation_id, payload, user_id=user_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except UserNotFoundError as exc:
        raise HTTPException(404, f"user not found: {user_id}") from exc


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@router.get("/contacts", response_model=ContactListResponse)
def list_contacts(
    search: str | None = None,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ContactListResponse:
    return service.list_contacts(search=search)


@router.post("/contacts", response_model=ContactItem, status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: ContactCreateRequest,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ContactItem:
    try:
        return service.create_contact(payload)
    except ContactConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ContactValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


@router.get("/contacts/{contact_id}", response_model=ContactItem)
def get_contact(
    contact_id: str,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ContactItem:
    try:
        return service.get_contact(contact_id)
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {contact_id}") from exc


@router.patch("/contacts/{contact_id}", response_model=ContactItem)
def update_contact(
    contact_id: str,
    payload: ContactUpdateRequest,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> ContactItem:
    try:
        return service.update_contact(contact_id, payload)
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {contact_id}") from exc
    except ContactConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ContactValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


@router.get("/notes", response_model=NoteListResponse)
def list_notes(
    contact_id: str,
    _user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> NoteListResponse:
    try:
        return service.list_notes(contact_id)
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {contact_id}") from exc


@router.post("/notes", response_model=NoteItem, status_code=status.HTTP_201_CREATED)
def create_note(
    payload: NoteCreateRequest,
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> NoteItem:
    try:
        return service.add_note(contact_id=payload.contact_id, content=payload.content, user_id=user_id)
    except ContactNotFoundError as exc:
        raise HTTPException(404, f"contact not found: {payload.contact_id}") from exc


# ---------------------------------------------------------------------------
# Team auth
# ---------------------------------------------------------------------------


@router.post("/admin/login", response_model=AdminLoginResponse)
def admin_login(payload: AdminLoginRequest, settings: Settings = Depends(get_app_settings)) -> AdminLoginResponse:
    if not settings.admin_password:
        raise HTTPException(503, "admin password not configured")
    if payload.password != settings.admin_password:
        raise HTTPException(401, "invalid password")
    token_payload = create_user_token(user_id=ADMIN_SUBJECT, ttl_minutes=_ADMIN_SESSION_TTL_MINUTES)
    token = encode_user_token(token_payload, secret=settings.admin_session_secret)
    return AdminLoginResponse(
        authenticated=True,
        session_token=token,
        expires_at=token_payload.expires_at,
    )


@router.get("/admin/users", response_model=UserListResponse, dependencies=[Depends(require_admin)])
def list_users(service: InboxService = Depends(get_inbox_service)) -> UserListResponse:
    return service.list_users()


@router.post(
    "/admin/users",
    response_model=UserItem,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_user(payload: UserCreateRequest, service: InboxService = Depends(get_inbox_service)) -> UserItem:
    try:
        return service.create_user(payload)
    except UserConflictError as exc:
        raise HTTPException(409, str(exc)) from exc


@router.post("/admin/users/{user_id}/session", response_model=UserSessionResponse, dependencies=[Depends(require_admin)])
def create_user_session(
    user_id: str,
    settings: Settings = Depends(get_app_settings),
    service: InboxService = Depends(get_inbox_service),
) -> UserSessionResponse:
    try:
        user = service.get_user(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(404, f"user not found: {user_id}") from exc
    token_payload = create_user_token(user_id=user.id, ttl_minutes=settings.user_session_ttl_minutes)
    return UserSessionResponse(
        user=user,
        session_token=encode_user_token(token_payload, secret=settings.user_session_secret),
        expires_at=token_payload.expires_at,
    )


@router.get("/me", response_model=UserItem)
def current_user(
    user_id: str = Depends(require_user),
    service: InboxService = Depends(get_inbox_service),
) -> UserItem:
    return service.get_user(user_id)
