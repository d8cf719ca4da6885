from __future__ import annotations

from fastapi.testclient import TestClient

from inbox_web.channels import StubChannelAdapter, TwilioWhatsAppAdapter
from inbox_web.config import Settings
from inbox_web.inbox import InboxService
from inbox_web.inbox_store import InMemoryInboxRepository
from inbox_web.main import create_app
from inbox_web.models import SendMessageRequest
from inbox_web.user_tokens import create_user_token, encode_user_token

_PREFIX = "/api/v1"
_SETTINGS = Settings(
    webhook_signature_mode="off",
    admin_password="admin-pass-001",
    admin_session_secret="admin-secret-001",
    user_session_secret="user-secret-001",
)


class _Harness:
    def __init__(self) -> None:
        self.repository = InMemoryInboxRepository()
        self.adapters = {
            "SMS": StubChannelAdapter("SMS"),
            # WhatsApp sender number deliberately left unset.
            "WHATSAPP": TwilioWhatsAppAdapter(account_sid="AC1", auth_token="tok", from_number=""),
            "EMAIL": StubChannelAdapter("EMAIL", provider_status="sent"),
        }
        app = create_app(_SETTINGS, repository=self.repository, adapters=self.adapters)
        self.client = TestClient(app)
        self.user = self.repository.create_user(name="Agent Smith", email="agent@example.com", role="agent")
        self.headers = self.headers_for(self.user.user_id)

    @staticmethod
    def headers_for(user_id: str) -> dict[str, str]:
        token = encode_user_token(
            create_user_token(user_id=user_id, ttl_minutes=30),
            secret=_SETTINGS.user_session_secret,
        )
        return {"Authorization": f"Bearer {token}"}

    def create_contact(self, **payload: str) -> dict:
        response = self.client.post(f"{_PREFIX}/contacts", json=payload, headers=self.headers)
        assert response.status_code == 201, response.text
        return response.json()

    def inbound_sms(self, sid: str, phone: str, body: str = "Hi") -> dict:
        response = self.client.post(f"{_PREFIX}/webhooks/twilio", data={"MessageSid": sid, "From": phone, "Body": body})
        assert response.status_code == 200, response.text
        return response.json()


def test_inbox_endpoints_require_a_valid_user_session() -> None:
    harness = _Harness()

    assert harness.client.get(f"{_PREFIX}/conversations").status_code == 401
    assert harness.client.get(f"{_PREFIX}/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401
    assert harness.client.get(f"{_PREFIX}/me", headers=harness.headers_for("usr_deleted")).status_code == 401

    me = harness.client.get(f"{_PREFIX}/me", headers=harness.headers)
    assert me.status_code == 200
    assert me.json()["email"] == "agent@example.com"


def test_admin_login_creates_users_and_mints_sessions() -> None:
    harness = _Harness()

    assert harness.client.post(f"{_PREFIX}/admin/login", json={"password": "wrong"}).status_code == 401
    login = harness.client.post(f"{_PREFIX}/admin/login", json={"password": "admin-pass-001"})
    assert login.status_code == 200
    admin_headers = {"Authorization": f"Bearer {login.json()['session_token']}"}

    assert harness.client.get(f"{_PREFIX}/admin/users", headers=harness.headers).status_code == 401

    created = harness.client.post(
        f"{_PREFIX}/admin/users",
        json={"name": "Bea", "email": "Bea@Example.com"},
        headers=admin_headers,
    )
    assert created.status_code == 201
    assert created.json()["email"] == "bea@example.com"
    assert created.json()["role"] == "agent"

    duplicate = harness.client.post(
        f"{_PREFIX}/admin/users",
        json={"name": "Bea Again", "email": "bea@example.com"},
        headers=admin_headers,
    )
    assert duplicate.status_code == 409

    users = harness.client.get(f"{_PREFIX}/admin/users", headers=admin_headers).json()["users"]
    assert {user["email"] for user in users} == {"agent@example.com", "bea@example.com"}

    session = harness.client.post(f"{_PREFIX}/admin/users/{created.json()['id']}/session", headers=admin_headers)
    assert session.status_code == 200
    me = harness.client.get(
        f"{_PREFIX}/me",
        headers={"Authorization": f"Bearer {session.json()['session_token']}"},
    )
    assert me.json()["name"] == "Bea"

    missing = harness.client.post(f"{_PREFIX}/admin/users/usr_missing/session", headers=admin_headers)
    assert missing.status_code == 404


def test_contact_without_email_or_phone_is_rejected() -> None:
    harness = _Harness()

    response = harness.client.post(f"{_PREFIX}/contacts", json={}, headers=harness.headers)
    blank = harness.client.post(f"{_PREFIX}/contacts", json={"name": "Ghost", "email": " ", "phone": ""}, headers=harness.headers)

    assert response.status_code == 400
    assert blank.status_code == 400
    assert harness.repository.list_contacts(search=None) == []


def test_contact_crud_and_conflicts() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Sam", phone="+1 555 123 0000")
    assert contact["phone"] == "+15551230000"

    conflict = harness.client.post(f"{_PREFIX}/contacts", json={"phone": "+15551230000"}, headers=harness.headers)
    assert conflict.status_code == 409

    updated = harness.client.patch(
        f"{_PREFIX}/contacts/{contact['id']}",
        json={"email": "Sam@Example.com"},
        headers=harness.headers,
    )
    assert updated.status_code == 200
    assert updated.json()["email"] == "sam@example.com"
    assert updated.json()["phone"] == "+15551230000"

    assert harness.client.patch(f"{_PREFIX}/contacts/{contact['id']}", json={}, headers=harness.headers).status_code == 400
    cleared = harness.client.patch(
        f"{_PREFIX}/contacts/{contact['id']}",
        json={"email": None, "phone": None},
        headers=harness.headers,
    )
    assert cleared.status_code == 400

    fetched = harness.client.get(f"{_PREFIX}/contacts/{contact['id']}", headers=harness.headers)
    assert fetched.json()["name"] == "Sam"
    assert harness.client.get(f"{_PREFIX}/contacts/ct_missing", headers=harness.headers).status_code == 404

    listed = harness.client.get(f"{_PREFIX}/contacts", params={"search": "sam@"}, headers=harness.headers)
    assert [item["id"] for item in listed.json()["contacts"]] == [contact["id"]]


def test_send_sms_dispatches_and_records_outbound_message() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Sam", phone="+15551230000")

    response = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": contact["id"], "channel": "SMS", "content": "Hello Sam"},
        headers=harness.headers,
    )

    assert response.status_code == 201
    message = response.json()["message"]
    assert message["direction"] == "OUTBOUND"
    assert message["status"] == "PENDING"
    assert message["user"]["id"] == harness.user.user_id
    assert message["external_id"].startswith("stub-sms-")
    assert harness.adapters["SMS"].sent == [("+15551230000", "Hello Sam")]

    thread = harness.client.get(f"{_PREFIX}/messages", params={"contact_id": contact["id"]}, headers=harness.headers)
    assert [item["content"] for item in thread.json()["messages"]] == ["Hello Sam"]
    stored = harness.client.get(f"{_PREFIX}/contacts/{contact['id']}", headers=harness.headers).json()
    assert stored["last_contacted_at"] is not None


def test_send_to_channel_without_matching_address_is_rejected_before_dispatch() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Mail Only", email="mail@example.com")

    response = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": contact["id"], "channel": "SMS", "content": "Hi"},
        headers=harness.headers,
    )

    assert response.status_code == 400
    assert harness.adapters["SMS"].sent == []
    assert harness.repository.latest_conversation_for_contact(contact["id"]) is None


def test_send_whatsapp_without_sender_credential_creates_no_message() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Sam", phone="+15551230000")

    response = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": contact["id"], "channel": "WHATSAPP", "content": "Hola"},
        headers=harness.headers,
    )

    assert response.status_code == 503
    assert "TWILIO_WHATSAPP_NUMBER" in response.json()["detail"]
    assert harness.repository.latest_conversation_for_contact(contact["id"]) is None
    assert harness.repository.list_contacts(search=None)[0][1] == 0


def test_send_dispatch_failure_returns_502_and_creates_no_message() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Broken", phone="+1555fail")

    response = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": contact["id"], "channel": "SMS", "content": "Hi"},
        headers=harness.headers,
    )

    assert response.status_code == 502
    assert response.json()["detail"].startswith("dispatch failed")
    assert harness.repository.latest_conversation_for_contact(contact["id"]) is None


def test_send_validation_errors() -> None:
    harness = _Harness()

    unknown = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": "ct_missing", "channel": "SMS", "content": "Hi"},
        headers=harness.headers,
    )
    bad_channel = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": "ct_missing", "channel": "FAX", "content": "Hi"},
        headers=harness.headers,
    )
    blank = harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": "ct_missing", "channel": "SMS", "content": "   "},
        headers=harness.headers,
    )

    assert unknown.status_code == 404
    assert bad_channel.status_code == 400
    assert blank.status_code == 400


def test_conversation_listing_workspaces_and_assignment() -> None:
    harness = _Harness()
    first = harness.inbound_sms("SM1", "+15550000001", "First")
    second = harness.inbound_sms("SM2", "+15550000002", "Second")

    everything = harness.client.get(f"{_PREFIX}/conversations", headers=harness.headers).json()["conversations"]
    assert [item["id"] for item in everything] == [second["conversation_id"], first["conversation_id"]]
    assert everything[0]["last_message"]["content"] == "Second"
    assert everything[0]["unread_count"] == 1
    assert everything[0]["assigned_to"] is None

    assigned = harness.client.patch(
        f"{_PREFIX}/conversations/{first['conversation_id']}",
        json={"action": "assign"},
        headers=harness.headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["state"] == "OPEN"
    assert assigned.json()["assigned_to"]["id"] == harness.user.user_id

    mine = harness.client.get(f"{_PREFIX}/conversations", params={"workspace": "mine"}, headers=harness.headers)
    assert [item["id"] for item in mine.json()["conversations"]] == [first["conversation_id"]]
    unassigned = harness.client.get(f"{_PREFIX}/conversations", params={"workspace": "unassigned"}, headers=harness.headers)
    assert [item["id"] for item in unassigned.json()["conversations"]] == [second["conversation_id"]]

    stats = harness.client.get(f"{_PREFIX}/conversations/stats", headers=harness.headers).json()
    assert stats == {"unassigned": 1, "assigned": 1, "waiting": 0, "closed": 0}

    released = harness.client.patch(
        f"{_PREFIX}/conversations/{first['conversation_id']}",
        json={"action": "unassign"},
        headers=harness.headers,
    )
    assert released.json()["assigned_to"] is None
    assert released.json()["state"] == "OPEN"


def test_conversation_state_updates_and_filters() -> None:
    harness = _Harness()
    inbound = harness.inbound_sms("SM1", "+15550000001")
    conversation_id = inbound["conversation_id"]

    waiting = harness.client.patch(
        f"{_PREFIX}/conversations/{conversation_id}",
        json={"action": "assign", "state": "WAITING"},
        headers=harness.headers,
    )
    assert waiting.json()["state"] == "WAITING"
    assert waiting.json()["assigned_to"]["id"] == harness.user.user_id

    filtered = harness.client.get(f"{_PREFIX}/conversations", params={"state": "WAITING"}, headers=harness.headers)
    assert [item["id"] for item in filtered.json()["conversations"]] == [conversation_id]
    by_channel = harness.client.get(f"{_PREFIX}/conversations", params={"channel": "EMAIL"}, headers=harness.headers)
    assert by_channel.json()["conversations"] == []

    closed = harness.client.patch(
        f"{_PREFIX}/conversations/{conversation_id}",
        json={"state": "CLOSED"},
        headers=harness.headers,
    )
    assert closed.json()["state"] == "CLOSED"
    harness.inbound_sms("SM2", "+15550000001", "Reopen please")
    reopened = harness.client.get(f"{_PREFIX}/conversations/{conversation_id}", headers=harness.headers)
    assert reopened.json()["state"] == "OPEN"

    assert harness.client.patch(
        f"{_PREFIX}/conversations/{conversation_id}", json={"state": "ARCHIVED"}, headers=harness.headers
    ).status_code == 400
    assert harness.client.patch(
        f"{_PREFIX}/conversations/{conversation_id}", json={}, headers=harness.headers
    ).status_code == 400
    assert harness.client.get(
        f"{_PREFIX}/conversations", params={"workspace": "everyone"}, headers=harness.headers
    ).status_code == 400
    assert harness.client.get(f"{_PREFIX}/conversations/conv_missing", headers=harness.headers).status_code == 404


def test_unread_count_resets_after_reply() -> None:
    harness = _Harness()
    inbound = harness.inbound_sms("SM1", "+15550000001")
    harness.inbound_sms("SM2", "+15550000001")
    contact_id = harness.client.get(f"{_PREFIX}/contacts", headers=harness.headers).json()["contacts"][0]["id"]

    before = harness.client.get(f"{_PREFIX}/conversations/{inbound['conversation_id']}", headers=harness.headers)
    assert before.json()["unread_count"] == 2

    harness.client.post(
        f"{_PREFIX}/messages/send",
        json={"contact_id": contact_id, "channel": "SMS", "content": "On it"},
        headers=harness.headers,
    )
    after = harness.client.get(f"{_PREFIX}/conversations/{inbound['conversation_id']}", headers=harness.headers)
    assert after.json()["unread_count"] == 0
    assert after.json()["last_message"]["direction"] == "OUTBOUND"


def test_messages_listing_requires_a_filter() -> None:
    harness = _Harness()
    inbound = harness.inbound_sms("SM1", "+15550000001")

    assert harness.client.get(f"{_PREFIX}/messages", headers=harness.headers).status_code == 400
    assert harness.client.get(
        f"{_PREFIX}/messages", params={"conversation_id": "conv_missing"}, headers=harness.headers
    ).status_code == 404

    listed = harness.client.get(
        f"{_PREFIX}/messages", params={"conversation_id": inbound["conversation_id"]}, headers=harness.headers
    )
    assert listed.json()["conversation_id"] == inbound["conversation_id"]
    assert [item["external_id"] for item in listed.json()["messages"]] == ["SM1"]


def test_notes_are_attached_to_contacts() -> None:
    harness = _Harness()
    contact = harness.create_contact(name="Sam", email="sam@example.com")

    created = harness.client.post(
        f"{_PREFIX}/notes",
        json={"contact_id": contact["id"], "content": "Prefers email"},
        headers=harness.headers,
    )
    assert created.status_code == 201
    assert created.json()["user"]["name"] == "Agent Smith"

    notes = harness.client.get(f"{_PREFIX}/notes", params={"contact_id": contact["id"]}, headers=harness.headers)
    assert [note["content"] for note in notes.json()["notes"]] == ["Prefers email"]

    missing = harness.client.post(
        f"{_PREFIX}/notes",
        json={"contact_id": "ct_missing", "content": "x"},
        headers=harness.headers,
    )
    assert missing.status_code == 404


def test_inbox_service_needs_only_a_repository_and_adapters() -> None:
    repository = InMemoryInboxRepository()
    service = InboxService(repository=repository, adapters={"SMS": StubChannelAdapter("SMS")})
    contact = repository.create_contact(name="Sam", email=None, phone="+15559998888")

    sent = service.send_message(
        SendMessageRequest(contact_id=contact.contact_id, channel="SMS", content="Hello Sam"),
        user_id=None,
    )

    assert sent.message.direction == "OUTBOUND"
    assert [message.message_id for message in repository.list_messages(sent.message.conversation_id)] == [
        sent.message.id
    ]
